import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .codec import (
    address_to_bytes,
    bytes_to_address,
    create_metadata_update_operation,
    operation_args_for_wire,
)
from .config import AppConfig
from .errors import ConfigurationError, DuplicateOperationError, LedgerError, LedgerUnavailableError
from .models import MINT_EVENT, TRANSFER_EVENT, ContractInfo, Operation, TrackedToken

logger = logging.getLogger(__name__)

DUPLICATE_MARKER = "duplicate key value violates unique constraint"
UNAVAILABLE_STATUSES = {502, 503, 504}


def _query_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return value


def _hex_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


class LedgerClient:
    """Client for the destination ledger gateway.

    Serves both roles the pipeline needs from the ledger: the contract registry
    (contract listing and idempotency queries) and the publisher that applies
    operations in unique, atomic transactions.
    """

    def __init__(
        self,
        node_url: str,
        blockchain_rid: str,
        chain_ids: Dict[str, int],
        api_key: Optional[str] = None,
        module: str = "tokens",
        timeout_sec: int = 30,
    ):
        if not node_url or not blockchain_rid:
            raise ConfigurationError("ledger node url and blockchain rid are required")
        self.node_url = node_url.rstrip("/")
        self.blockchain_rid = blockchain_rid
        self.chain_ids = {k.lower(): v for k, v in chain_ids.items()}
        self.api_key = api_key
        self.module = module
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "LedgerClient":
        return cls(
            node_url=cfg.ledger_node_url,
            blockchain_rid=cfg.ledger_blockchain_rid,
            chain_ids={c.name: c.chain_id for c in cfg.chains},
            api_key=cfg.ledger_api_key,
            module=cfg.ledger_module,
        )

    async def __aenter__(self) -> "LedgerClient":
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
        logger.info(f"Connecting to ledger at {self.node_url} with blockchain RID {self.blockchain_rid}")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _qualified(self, name: str) -> str:
        return f"{self.module}.{name}" if self.module else name

    async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        if not self._session:
            raise RuntimeError("ledger session is not initialized")
        url = f"{self.node_url}/{path}/{self.blockchain_rid}"
        try:
            async with self._session.post(url, json=payload) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    if DUPLICATE_MARKER in body:
                        raise DuplicateOperationError(body)
                    if resp.status in UNAVAILABLE_STATUSES:
                        raise LedgerUnavailableError(f"ledger {path} unavailable, HTTP {resp.status}")
                    raise LedgerError(f"ledger {path} failed with HTTP {resp.status}: {body[:500]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LedgerUnavailableError(f"ledger {path} request failed: {type(e).__name__}: {e}") from e
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError as e:
            raise LedgerError(f"ledger {path} returned invalid JSON") from e

    async def query(self, name: str, **args: Any) -> Any:
        payload = {"type": self._qualified(name)}
        payload.update({k: _query_value(v) for k, v in args.items()})
        return await self._post("query", payload)

    async def send_operations(self, operations: Sequence[Operation]) -> None:
        payload = {
            "operations": [
                {"name": self._qualified(op.name), "args": operation_args_for_wire(op)}
                for op in operations
            ],
            "nonce": uuid.uuid4().hex,
        }
        await self._post("tx", payload)

    async def list_contracts(self) -> List[ContractInfo]:
        rows = await self.query("list_contracts") or []
        contracts: List[ContractInfo] = []
        for row in rows:
            chain = str(row["chain"]).lower()
            chain_id = self.chain_ids.get(chain)
            if chain_id is None:
                logger.warning(f"Skipping contract on unconfigured chain {chain}")
                continue
            contracts.append(
                ContractInfo(
                    chain_id=chain_id,
                    address=bytes_to_address(_hex_bytes(row["address"])),
                    type=str(row.get("type", "erc721")).lower(),
                    last_processed_block=int(row.get("block_height") or 0),
                )
            )
        return contracts

    async def is_event_processed(self, chain: str, address: str, event_id: str) -> bool:
        try:
            return bool(
                await self.query(
                    "is_event_processed",
                    chain=chain,
                    address=address_to_bytes(address),
                    event_id=event_id,
                )
            )
        except LedgerError as e:
            logger.error(f"Error checking if event {event_id} is processed: {e}")
            return False

    async def has_mint_occurred(self, chain: str, address: str, token_id: int) -> bool:
        # query name as registered on the ledger
        return bool(
            await self.query(
                "has_mint_occured",
                chain=chain,
                address=address_to_bytes(address),
                token_id=int(token_id),
            )
        )

    async def list_minted_tokens(self, after_rowid: int, take: int) -> List[TrackedToken]:
        rows = await self.query("list_minted_tokens", after_rowid=int(after_rowid), take=int(take)) or []
        return [
            TrackedToken(
                chain=str(row["chain"]),
                address=_hex_bytes(row["address"]),
                contract_type=str(row.get("contract_type", "erc721")).lower(),
                token_id=int(row["token_id"]),
                rowid=int(row["rowid"]),
                metadata=row.get("metadata"),
            )
            for row in rows
        ]

    async def submit_batch(self, operations: Sequence[Operation]) -> None:
        if not operations:
            return
        checks = await asyncio.gather(
            *(self._is_unprocessed(op) for op in operations)
        )
        pending = [op for op, keep in zip(operations, checks) if keep]
        if not pending:
            logger.debug("All operations were already processed, skipping batch")
            return
        await self.send_operations(pending)
        logger.info(
            f"Processed batch of {len(pending)} events "
            f"({len(operations) - len(pending)} were already processed)"
        )

    async def _is_unprocessed(self, operation: Operation) -> bool:
        if operation.name not in {MINT_EVENT, TRANSFER_EVENT}:
            return True
        processed = await self.is_event_processed(
            operation.chain, "0x" + operation.contract, operation.event_id
        )
        return not processed

    async def submit_single(self, operation: Operation) -> None:
        await self.send_operations([operation])

    async def update_token_metadata(self, chain: str, address: bytes, token_id: int, metadata: Any) -> None:
        await self.submit_single(create_metadata_update_operation(chain, address, token_id, metadata))

    async def register_chain(self, chain: str) -> None:
        await self.submit_single(Operation("register_chain", (chain,)))

    async def register_contract(
        self,
        chain: str,
        address: str,
        project: str,
        collection: str,
        block_height: int,
        contract_type: str,
    ) -> None:
        await self.submit_single(
            Operation(
                "register_contract",
                (
                    chain,
                    address_to_bytes(address),
                    project,
                    collection,
                    int(block_height),
                    contract_type,
                ),
            )
        )
