import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError

MAX_BLOCK_RANGE = 1999
MAX_RETRIES = 5
QUEUE_CHECK_INTERVAL_SEC = 10
LISTENER_RESTART_SEC = 5
METADATA_MAX_RETRIES = 5
METADATA_MAX_RETRY_TIME_SEC = 60
METADATA_MAX_BACKOFF_SEC = 10
DEFAULT_IPFS_GATEWAY = "https://ipfs.io/ipfs/"


@dataclass
class ChainConfig:
    chain_id: int
    name: str
    rpc_url: str


@dataclass
class AppConfig:
    chains: List[ChainConfig]
    ledger_node_url: str
    ledger_blockchain_rid: str
    ledger_api_key: Optional[str] = None
    ledger_module: str = "tokens"
    sqlite_path: str = "./data/bridge_queue.db"
    batch_size: int = 100
    batch_max_wait_ms: int = 10000
    batch_check_interval_ms: int = 1000
    batch_max_rejections: int = 3
    queue_size_threshold: int = 10000
    queue_retry_delay_sec: float = 5.0
    queue_max_attempts: int = 10
    backpressure_poll_sec: float = 60.0
    max_rpc_retries: int = 5
    rpc_timeout_sec: int = 30
    poll_interval_sec: float = 60.0
    contract_discovery_interval_sec: float = 300.0
    metadata_page_size: int = 10
    metadata_item_delay_sec: float = 0.2
    metadata_page_delay_sec: float = 1.0
    metadata_idle_delay_sec: float = 60.0
    metadata_error_cooldown_sec: float = 60.0
    ipfs_gateway: str = DEFAULT_IPFS_GATEWAY
    log_level: str = "info"
    enable_api: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 3000

    def chain_by_id(self, chain_id: int) -> Optional[ChainConfig]:
        for c in self.chains:
            if c.chain_id == int(chain_id):
                return c
        return None

    def chain_by_name(self, name: str) -> Optional[ChainConfig]:
        name = str(name).strip().lower()
        for c in self.chains:
            if c.name.lower() == name:
                return c
        return None


def _positive_int(raw: Dict[str, Any], key: str, default: int) -> int:
    try:
        value = int(raw.get(key, default))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be an integer") from e
    if value <= 0:
        raise ConfigurationError(f"{key} must be >= 1")
    return value


def _positive_float(raw: Dict[str, Any], key: str, default: float) -> float:
    try:
        value = float(raw.get(key, default))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be a number") from e
    if value < 0:
        raise ConfigurationError(f"{key} must be >= 0")
    return value


def parse_config(raw: Dict[str, Any]) -> AppConfig:
    chains: List[ChainConfig] = []
    for item in raw.get("CHAINS", []):
        try:
            chain = ChainConfig(
                chain_id=int(item["chain_id"]),
                name=str(item["name"]).strip().lower(),
                rpc_url=str(item.get("rpc_url", "")).strip(),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid chain entry: {item}") from e
        if not chain.rpc_url:
            raise ConfigurationError(f"chain {chain.name} has no rpc_url")
        chains.append(chain)
    if not chains:
        raise ConfigurationError("CHAINS cannot be empty")
    if len({c.chain_id for c in chains}) != len(chains):
        raise ConfigurationError("CHAINS contains duplicate chain_id values")
    if len({c.name for c in chains}) != len(chains):
        raise ConfigurationError("CHAINS contains duplicate names")

    node_url = str(raw.get("LEDGER_NODE_URL", "")).strip().rstrip("/")
    blockchain_rid = str(raw.get("LEDGER_BLOCKCHAIN_RID", "")).strip()
    if not node_url or not blockchain_rid:
        raise ConfigurationError("LEDGER_NODE_URL and LEDGER_BLOCKCHAIN_RID are required")

    api_key = str(raw.get("LEDGER_API_KEY", "")).strip() or None
    gateway = str(raw.get("IPFS_GATEWAY", DEFAULT_IPFS_GATEWAY)).strip()
    if not gateway.endswith("/"):
        gateway += "/"

    return AppConfig(
        chains=chains,
        ledger_node_url=node_url,
        ledger_blockchain_rid=blockchain_rid,
        ledger_api_key=api_key,
        ledger_module=str(raw.get("LEDGER_MODULE", "tokens")).strip(),
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/bridge_queue.db")),
        batch_size=_positive_int(raw, "BATCH_SIZE", 100),
        batch_max_wait_ms=_positive_int(raw, "BATCH_MAX_WAIT_MS", 10000),
        batch_check_interval_ms=_positive_int(raw, "BATCH_CHECK_INTERVAL_MS", 1000),
        batch_max_rejections=_positive_int(raw, "BATCH_MAX_REJECTIONS", 3),
        queue_size_threshold=_positive_int(raw, "QUEUE_SIZE_THRESHOLD", 10000),
        queue_retry_delay_sec=_positive_float(raw, "QUEUE_RETRY_DELAY_SEC", 5.0),
        queue_max_attempts=_positive_int(raw, "QUEUE_MAX_ATTEMPTS", 10),
        backpressure_poll_sec=_positive_float(raw, "BACKPRESSURE_POLL_SEC", 60.0),
        max_rpc_retries=_positive_int(raw, "MAX_RPC_RETRIES", 5),
        rpc_timeout_sec=_positive_int(raw, "RPC_TIMEOUT_SEC", 30),
        poll_interval_sec=_positive_float(raw, "POLL_INTERVAL_SEC", 60.0),
        contract_discovery_interval_sec=_positive_float(raw, "CONTRACT_DISCOVERY_INTERVAL_SEC", 300.0),
        metadata_page_size=_positive_int(raw, "METADATA_PAGE_SIZE", 10),
        metadata_item_delay_sec=_positive_float(raw, "METADATA_ITEM_DELAY_SEC", 0.2),
        metadata_page_delay_sec=_positive_float(raw, "METADATA_PAGE_DELAY_SEC", 1.0),
        metadata_idle_delay_sec=_positive_float(raw, "METADATA_IDLE_DELAY_SEC", 60.0),
        metadata_error_cooldown_sec=_positive_float(raw, "METADATA_ERROR_COOLDOWN_SEC", 60.0),
        ipfs_gateway=gateway,
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        enable_api=bool(raw.get("ENABLE_API", True)),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 3000)),
    )


def load_config(path: str) -> AppConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"config file is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError("config root must be a JSON object")
    return parse_config(raw)
