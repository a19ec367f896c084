import json
import logging
from typing import Any, Dict, List, Optional

from web3 import Web3

from .models import (
    METADATA_UPDATE,
    MINT_EVENT,
    TRANSFER_EVENT,
    ChainEvent,
    Operation,
)

logger = logging.getLogger(__name__)

TRANSFER_TOPIC0 = (
    "0xddf252ad1be2c89b69c2b068fc378daa"
    "952ba7f163c4a11628f55a4df523b3ef"
)
BIGINT_TAG = "$bigint"
BYTES_TAG = "$bytes"


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x"):
        addr = "0x" + addr
    if len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def address_to_bytes(addr: str) -> bytes:
    return bytes.fromhex(normalize_address(addr)[2:])


def bytes_to_address(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def parse_hex_int(value: Optional[Any]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def extract_topic_address(topic: str) -> str:
    try:
        raw = bytes.fromhex(topic[2:] if topic.startswith("0x") else topic)
        if len(raw) != 32 or any(raw[:12]):
            raise ValueError(f"topic is not a left-padded address: {topic}")
        return Web3.to_checksum_address("0x" + raw[12:].hex())
    except ValueError as e:
        logger.info(f"Failed to parse address from topic: {e}. Falling back to raw slice.")
        fallback = decode_topic_address(topic)
        try:
            return Web3.to_checksum_address(fallback)
        except ValueError:
            return fallback


def create_event_id(transaction_hash: str, log_index: int) -> str:
    return f"{transaction_hash}_{log_index}"


def is_erc721_transfer(log: Dict[str, Any]) -> bool:
    topics = log.get("topics") or []
    data = log.get("data") or "0x"
    return len(topics) == 4 and data in {"0x", ""}


def event_from_log(chain_id: int, chain_name: str, contract_address: str, log: Dict[str, Any]) -> ChainEvent:
    topics = log["topics"]
    tx_hash = str(log["transactionHash"])
    log_index = parse_hex_int(log.get("logIndex"))
    return ChainEvent(
        id=create_event_id(tx_hash, log_index),
        chain_id=chain_id,
        chain_name=chain_name,
        contract_address=contract_address,
        block_number=parse_hex_int(log.get("blockNumber")),
        transaction_hash=tx_hash,
        log_index=log_index,
        from_address=extract_topic_address(topics[1]),
        to_address=extract_topic_address(topics[2]),
        token_id=int(topics[3], 16),
    )


def encode_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str, float)):
        return value
    if isinstance(value, int):
        return {BIGINT_TAG: str(value)}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {BYTES_TAG: bytes(value).hex()}
    if isinstance(value, (list, tuple)):
        return [encode_value(x) for x in value]
    if isinstance(value, dict):
        return {str(k): encode_value(v) for k, v in value.items()}
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def decode_value(value: Any) -> Any:
    if isinstance(value, list):
        return [decode_value(x) for x in value]
    if isinstance(value, dict):
        if len(value) == 1 and BIGINT_TAG in value:
            return int(value[BIGINT_TAG])
        if len(value) == 1 and BYTES_TAG in value:
            return bytes.fromhex(value[BYTES_TAG])
        return {k: decode_value(v) for k, v in value.items()}
    return value


def serialize_operation(operation: Operation) -> str:
    return json.dumps(
        {"name": operation.name, "args": encode_value(list(operation.args))},
        ensure_ascii=False,
        separators=(",", ":"),
    )


def deserialize_operation(payload: str) -> Operation:
    raw = json.loads(payload)
    return Operation(name=str(raw["name"]), args=tuple(decode_value(raw.get("args", []))))


def token_name(metadata: Any, token_id: int) -> str:
    if isinstance(metadata, dict) and metadata.get("name"):
        return str(metadata["name"])
    return f"Token {token_id}"


def create_mint_operation(
    chain: str,
    contract_address: str,
    block_number: int,
    event_id: str,
    token_id: int,
    to_address: str,
    amount: int,
    metadata: Any,
) -> Operation:
    return Operation(
        name=MINT_EVENT,
        args=(
            chain,
            address_to_bytes(contract_address),
            int(block_number),
            event_id,
            int(token_id),
            token_name(metadata, token_id),
            address_to_bytes(to_address),
            int(amount),
            json.dumps(metadata, ensure_ascii=False),
        ),
    )


def create_transfer_operation(
    chain: str,
    contract_address: str,
    block_number: int,
    event_id: str,
    token_id: int,
    from_address: str,
    to_address: str,
    amount: int,
) -> Operation:
    return Operation(
        name=TRANSFER_EVENT,
        args=(
            chain,
            address_to_bytes(contract_address),
            int(block_number),
            event_id,
            int(token_id),
            address_to_bytes(from_address),
            address_to_bytes(to_address),
            int(amount),
        ),
    )


def create_metadata_update_operation(
    chain: str, contract_address: bytes, token_id: int, metadata: Any
) -> Operation:
    return Operation(
        name=METADATA_UPDATE,
        args=(chain, bytes(contract_address), int(token_id), json.dumps(metadata, ensure_ascii=False)),
    )


def operation_args_for_wire(operation: Operation) -> List[Any]:
    return encode_value(list(operation.args))
