import asyncio
import base64
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import unquote

import aiohttp

from .codec import bytes_to_address
from .config import (
    DEFAULT_IPFS_GATEWAY,
    METADATA_MAX_BACKOFF_SEC,
    METADATA_MAX_RETRIES,
    METADATA_MAX_RETRY_TIME_SEC,
)
from .errors import MetadataFetchError, ProviderError, ProviderNotFoundError, RPCError, TokenDoesNotExist
from .models import TrackedToken, contract_kind
from .rpc import RPCClient

logger = logging.getLogger(__name__)

PLACEHOLDER_METADATA: Dict[str, Any] = {
    "name": "Unavailable",
    "description": "Metadata could not be fetched",
    "image": "https://example.com/placeholder-image.png",
    "attributes": [],
}

NONEXISTENT_TOKEN_MARKERS = (
    "invalid token id",
    "nonexistent token",
    "owner query for nonexistent",
    "uri query for nonexistent",
)


def placeholder_metadata() -> Dict[str, Any]:
    return json.loads(json.dumps(PLACEHOLDER_METADATA))


def metadata_equal(a: Any, b: Any) -> bool:
    """Structural equality over JSON value trees.

    Object key order is ignored, array order is not, and booleans never
    compare equal to numbers.
    """
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(metadata_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(metadata_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    if type(a) is not type(b):
        return False
    return a == b


def decode_abi_string(result: Optional[str]) -> Optional[str]:
    if not result or result == "0x":
        return None
    data = bytes.fromhex(result[2:] if result.startswith("0x") else result)
    if len(data) < 64:
        return None
    offset = int.from_bytes(data[0:32], "big")
    if offset + 32 > len(data):
        return None
    length = int.from_bytes(data[offset : offset + 32], "big")
    raw = data[offset + 32 : offset + 32 + length]
    if len(raw) != length:
        return None
    return raw.decode("utf-8", errors="replace")


def parse_stored_metadata(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


class MetadataService:
    def __init__(
        self,
        rpc_clients: Optional[Dict[str, RPCClient]] = None,
        ipfs_gateway: str = DEFAULT_IPFS_GATEWAY,
        timeout_sec: int = 20,
        backoff_base_sec: float = 1.0,
        max_backoff_sec: float = METADATA_MAX_BACKOFF_SEC,
    ):
        self.rpc_clients = {k.lower(): v for k, v in (rpc_clients or {}).items()}
        self.ipfs_gateway = ipfs_gateway if ipfs_gateway.endswith("/") else ipfs_gateway + "/"
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self.backoff_base_sec = backoff_base_sec
        self.max_backoff_sec = max_backoff_sec
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "MetadataService":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def rpc_for(self, chain: str) -> RPCClient:
        rpc = self.rpc_clients.get(str(chain).lower())
        if rpc is None:
            raise ProviderNotFoundError(chain)
        return rpc

    def ipfs_to_http(self, uri: str) -> str:
        uri = uri.strip()
        if uri.startswith("ipfs://ipfs/"):
            return self.ipfs_gateway + uri[len("ipfs://ipfs/"):]
        if uri.startswith("ipfs://"):
            return self.ipfs_gateway + uri[len("ipfs://"):]
        return uri

    async def _get(self, url: str) -> Tuple[int, bytes]:
        if not self._session:
            raise RuntimeError("metadata session is not initialized")
        async with self._session.get(url) as resp:
            return resp.status, await resp.read()

    async def fetch_metadata_with_retry(
        self,
        token_uri: str,
        max_retries: int = METADATA_MAX_RETRIES,
        max_retry_time: float = METADATA_MAX_RETRY_TIME_SEC,
    ) -> Any:
        if token_uri.startswith("data:"):
            inline = self._decode_data_uri(token_uri)
            if inline is None:
                logger.warning(f"Unusable inline metadata URI, using placeholder: {token_uri[:64]}")
                return placeholder_metadata()
            return inline

        url = self.ipfs_to_http(token_uri)
        start = time.monotonic()
        retry_count = 0

        while retry_count < max_retries and time.monotonic() - start < max_retry_time:
            try:
                logger.debug(f"Fetching metadata from {url}")
                status, body = await self._get(url)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                retry_count += 1
                logger.error(f"Error fetching metadata from {token_uri}: {type(e).__name__}: {e}")
                await self._backoff(retry_count, start, max_retry_time)
                continue

            if 200 <= status < 300:
                try:
                    return json.loads(body)
                except ValueError as e:
                    retry_count += 1
                    logger.error(f"Invalid metadata JSON from {token_uri}: {e}")
                    continue
            if status >= 500:
                retry_count += 1
                logger.debug(f"Received {status} from {url}, retrying")
                await self._backoff(retry_count, start, max_retry_time)
                continue
            raise MetadataFetchError(f"HTTP error! status: {status} for {url}")

        logger.error(f"Failed to fetch metadata after retries, using placeholder for {token_uri}")
        return placeholder_metadata()

    async def _backoff(self, retry_count: int, start: float, max_retry_time: float) -> None:
        delay = min(self.backoff_base_sec * (2 ** retry_count), self.max_backoff_sec)
        remaining = max_retry_time - (time.monotonic() - start)
        if remaining <= 0:
            return
        await asyncio.sleep(min(delay, remaining))

    def _decode_data_uri(self, uri: str) -> Optional[Any]:
        header, _, payload = uri.partition(",")
        if "json" not in header:
            return None
        try:
            if header.endswith(";base64"):
                text = base64.b64decode(payload).decode("utf-8")
            else:
                text = unquote(payload)
            return json.loads(text)
        except ValueError as e:
            logger.error(f"Invalid inline metadata: {e}")
            return None

    async def resolve_token_uri(
        self, chain: str, contract_address: str, contract_type: str, token_id: int
    ) -> Optional[str]:
        kind = contract_kind(contract_type)
        rpc = self.rpc_for(chain)
        logger.debug(f"Getting token URI for {token_id} on {contract_address} ({chain}, {kind.name})")
        try:
            result = await rpc.eth_call(contract_address, kind.token_uri_call_data(token_id))
        except RPCError as e:
            text = f"{e.rpc_message} {e.data or ''}".lower()
            if any(marker in text for marker in NONEXISTENT_TOKEN_MARKERS):
                raise TokenDoesNotExist(token_id) from e
            logger.error(f"Error fetching token URI for {token_id} on {contract_address} ({chain}): {e}")
            return None
        except ProviderError as e:
            logger.error(f"Error fetching token URI for {token_id} on {contract_address} ({chain}): {e}")
            return None
        try:
            uri = decode_abi_string(result)
        except ValueError as e:
            logger.error(f"Undecodable token URI for {token_id} on {contract_address} ({chain}): {e}")
            return None
        if not uri:
            return None
        return kind.format_uri(uri, token_id)

    async def get_token_metadata(
        self, chain: str, contract_address: str, contract_type: str, token_id: int
    ) -> Any:
        token_uri = await self.resolve_token_uri(chain, contract_address, contract_type, token_id)
        if not token_uri:
            raise TokenDoesNotExist(token_id)
        return await self.fetch_metadata_with_retry(token_uri)


class MetadataReconciler:
    def __init__(
        self,
        ledger: Any,
        metadata: MetadataService,
        page_size: int = 10,
        item_delay_sec: float = 0.2,
        page_delay_sec: float = 1.0,
        idle_delay_sec: float = 60.0,
        error_cooldown_sec: float = 60.0,
    ):
        self.ledger = ledger
        self.metadata = metadata
        self.page_size = max(1, int(page_size))
        self.item_delay_sec = item_delay_sec
        self.page_delay_sec = page_delay_sec
        self.idle_delay_sec = idle_delay_sec
        self.error_cooldown_sec = error_cooldown_sec
        self.after_rowid = 0
        self.stats = {"checked": 0, "updated": 0, "errors": 0, "sweeps": 0}

    async def process_token(self, token: TrackedToken) -> bool:
        address = bytes_to_address(token.address)
        try:
            token_uri = await self.metadata.resolve_token_uri(
                token.chain, address, token.contract_type, token.token_id
            )
            if not token_uri:
                logger.error(f"TokenURI not found for token {token.token_id} on contract {address} ({token.chain})")
                return False
            fresh = await self.metadata.fetch_metadata_with_retry(token_uri)
            self.stats["checked"] += 1
            if metadata_equal(fresh, parse_stored_metadata(token.metadata)):
                return False
            await self.ledger.update_token_metadata(token.chain, token.address, token.token_id, fresh)
            self.stats["updated"] += 1
            logger.info(f"Updated metadata for token {token.token_id} on contract {address} ({token.chain})")
            return True
        except TokenDoesNotExist as e:
            logger.debug(f"Skipping metadata for {address} ({token.chain}): {e}")
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(
                f"Error processing metadata for token {token.token_id} on contract {address} ({token.chain}): {e}"
            )
        return False

    async def run_page(self) -> int:
        logger.debug(f"Fetching tokens from rowid {self.after_rowid}")
        tokens = await self.ledger.list_minted_tokens(self.after_rowid, self.page_size)
        if not tokens:
            self.after_rowid = 0
            self.stats["sweeps"] += 1
            return 0
        for token in tokens:
            await self.process_token(token)
            await asyncio.sleep(self.item_delay_sec)
        self.after_rowid = tokens[-1].rowid
        return len(tokens)

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("Starting metadata update process")
        while not stop_event.is_set():
            try:
                count = await self.run_page()
            except Exception as e:
                logger.error(f"Error in metadata update process: {e}")
                await asyncio.sleep(self.error_cooldown_sec)
                continue
            await asyncio.sleep(self.page_delay_sec if count else self.idle_delay_sec)
