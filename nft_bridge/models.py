from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

MINT_EVENT = "process_mint_event"
TRANSFER_EVENT = "process_transfer_event"
METADATA_UPDATE = "process_metadata_update"

TOKEN_URI_SELECTOR = "0xc87b56dd"  # tokenURI(uint256)
URI_SELECTOR = "0x0e89341c"  # uri(uint256)


@dataclass(frozen=True)
class Operation:
    name: str
    args: Tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.args, tuple):
            object.__setattr__(self, "args", tuple(self.args))

    @property
    def chain(self) -> str:
        return str(self.args[0])

    @property
    def contract(self) -> str:
        return bytes(self.args[1]).hex()

    @property
    def has_event_identity(self) -> bool:
        return self.name in {MINT_EVENT, TRANSFER_EVENT} and len(self.args) >= 4

    @property
    def block_number(self) -> int:
        return int(self.args[2])

    @property
    def event_id(self) -> str:
        return str(self.args[3])


@dataclass
class ChainEvent:
    id: str
    chain_id: int
    chain_name: str
    contract_address: str
    block_number: int
    transaction_hash: str
    log_index: int
    from_address: str
    to_address: str
    token_id: int


class ContractKind:
    name = ""
    uri_selector = ""

    def token_uri_call_data(self, token_id: int) -> str:
        return self.uri_selector + format(int(token_id), "064x")

    def format_uri(self, uri: str, token_id: int) -> str:
        return uri

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Erc721(ContractKind):
    name = "erc721"
    uri_selector = TOKEN_URI_SELECTOR


class Erc1155(ContractKind):
    name = "erc1155"
    uri_selector = URI_SELECTOR

    def format_uri(self, uri: str, token_id: int) -> str:
        # EIP-1155 clients substitute {id} with the lowercase 64-char hex id.
        return uri.replace("{id}", format(int(token_id), "064x"))


CONTRACT_KINDS: Dict[str, ContractKind] = {
    Erc721.name: Erc721(),
    Erc1155.name: Erc1155(),
}


def contract_kind(type_name: str) -> ContractKind:
    kind = CONTRACT_KINDS.get(str(type_name).strip().lower())
    if kind is None:
        raise ValueError(f"unsupported contract type: {type_name}")
    return kind


@dataclass
class ContractInfo:
    chain_id: int
    address: str
    type: str
    last_processed_block: int = 0

    @property
    def key(self) -> Tuple[int, str]:
        return (self.chain_id, self.address.lower())

    @property
    def kind(self) -> ContractKind:
        return contract_kind(self.type)


@dataclass
class TrackedToken:
    chain: str
    address: bytes
    contract_type: str
    token_id: int
    rowid: int
    metadata: Optional[Any] = field(default=None)
