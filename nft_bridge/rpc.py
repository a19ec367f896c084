import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import ProviderError, RPCError

logger = logging.getLogger(__name__)


class RPCClient:
    def __init__(
        self, url: str, max_retries: int = 5, timeout_sec: int = 30, name: str = "", backoff_sec: float = 0.5
    ):
        self.url = url
        self.backoff_sec = backoff_sec
        self.name = name or url
        self.max_retries = max_retries
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = self.backoff_sec
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    if resp.status >= 500:
                        raise ProviderError(f"[RPC: {self.name}] HTTP {resp.status} on {method}")
                    data = await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, ProviderError) as e:
                logger.warning(
                    f"[RPC: {self.name}] {method} attempt #{attempt} failed: {type(e).__name__}: {e}"
                )
                if attempt >= self.max_retries:
                    raise ProviderError(f"[RPC: {self.name}] {method} failed after {attempt} attempts: {e}") from e
                await asyncio.sleep(backoff)
                backoff *= 2
                continue

            if not isinstance(data, dict):
                raise ProviderError(f"[RPC: {self.name}] unexpected response for {method}: {data!r}")
            if data.get("error"):
                err = data["error"]
                if isinstance(err, dict):
                    raise RPCError(err.get("code"), str(err.get("message", "")), err.get("data"))
                raise RPCError(None, str(err))
            return data.get("result")
        raise ProviderError(f"[RPC: {self.name}] {method} was not attempted")

    async def get_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        return result or []

    async def new_filter(
        self,
        from_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> str:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": "latest"}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        return str(await self.call("eth_newFilter", [f]))

    async def get_filter_logs(self, filter_id: str) -> List[Dict[str, Any]]:
        result = await self.call("eth_getFilterLogs", [filter_id])
        return result or []

    async def get_filter_changes(self, filter_id: str) -> List[Dict[str, Any]]:
        result = await self.call("eth_getFilterChanges", [filter_id])
        return result or []

    async def uninstall_filter(self, filter_id: str) -> bool:
        return bool(await self.call("eth_uninstallFilter", [filter_id]))

    async def eth_call(self, to: str, data: str) -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, "latest"])
        return result

    async def get_code(self, address: str) -> str:
        result = await self.call("eth_getCode", [address, "latest"])
        return str(result or "0x")
