import contextlib
import os
import sys
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from aiohttp import web

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from nft_bridge.codec import TRANSFER_TOPIC0, create_transfer_operation
from nft_bridge.config import ChainConfig
from nft_bridge.errors import LedgerUnavailableError, RPCError, TokenDoesNotExist
from nft_bridge.models import MINT_EVENT
from nft_bridge.storage import OperationQueue

CONTRACT = "0x" + "ab" * 20
OTHER_CONTRACT = "0x" + "cd" * 20
ZERO_ADDRESS = "0x" + "00" * 20
ALICE = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
BOB = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"
ETHEREUM = ChainConfig(chain_id=1, name="ethereum", rpc_url="http://localhost:8545")


def topic_for(address: str) -> str:
    return "0x" + "00" * 12 + address.lower()[2:]


def make_log(
    block: int,
    token_id: int,
    from_address: str = ZERO_ADDRESS,
    to_address: str = ALICE,
    log_index: int = 0,
    address: str = CONTRACT,
) -> Dict[str, Any]:
    return {
        "address": address,
        "topics": [
            TRANSFER_TOPIC0,
            topic_for(from_address),
            topic_for(to_address),
            "0x" + format(token_id, "064x"),
        ],
        "data": "0x",
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "transactionHash": "0x" + format(block * 1000 + log_index, "064x"),
    }


def make_transfer(block: int, contract: str = CONTRACT, token_id: int = 1):
    return create_transfer_operation(
        "ethereum",
        contract,
        block,
        f"0x{block:064x}_0",
        token_id,
        ALICE,
        BOB,
        1,
    )


@contextlib.asynccontextmanager
async def serve(app: web.Application):
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    try:
        yield f"http://{host}:{port}"
    finally:
        await runner.cleanup()


class FakeRPC:
    def __init__(self, head: int = 0, logs: Optional[List[Dict[str, Any]]] = None):
        self.head = head
        self.logs = list(logs or [])
        self.get_logs_errors: List[Exception] = []
        self.get_logs_calls: List[Tuple[int, int]] = []
        self.new_filter_calls: List[int] = []
        self.filters: Dict[str, Dict[str, int]] = {}
        self.call_results: Dict[str, Any] = {}
        self._next_filter = 1

    def _in_range(self, lo: int, hi: int) -> List[Dict[str, Any]]:
        return [l for l in self.logs if lo <= int(l["blockNumber"], 16) <= hi]

    async def get_block_number(self) -> int:
        return self.head

    async def get_logs(self, from_block, to_block, address=None, topics=None):
        self.get_logs_calls.append((from_block, to_block))
        if self.get_logs_errors:
            raise self.get_logs_errors.pop(0)
        return self._in_range(from_block, to_block)

    async def new_filter(self, from_block, address=None, topics=None):
        filter_id = hex(self._next_filter)
        self._next_filter += 1
        self.new_filter_calls.append(from_block)
        self.filters[filter_id] = {"from": from_block, "next": self.head + 1}
        return filter_id

    async def get_filter_logs(self, filter_id):
        if filter_id not in self.filters:
            raise RPCError(-32000, "filter not found")
        return self._in_range(self.filters[filter_id]["from"], self.head)

    async def get_filter_changes(self, filter_id):
        if filter_id not in self.filters:
            raise RPCError(-32000, "filter not found")
        f = self.filters[filter_id]
        logs = self._in_range(f["next"], self.head)
        f["next"] = self.head + 1
        return logs

    async def uninstall_filter(self, filter_id):
        return self.filters.pop(filter_id, None) is not None

    async def eth_call(self, to, data):
        result = self.call_results.get(data)
        if isinstance(result, Exception):
            raise result
        return result


class FakeLedger:
    def __init__(self):
        self.processed: Set[str] = set()
        self.minted: Set[Tuple[str, str, int]] = set()
        self.contracts: List[Any] = []
        self.tokens: List[Any] = []
        self.batches: List[List[Any]] = []
        self.updates: List[Tuple[str, bytes, int, Any]] = []
        self.fail_batches = 0

    async def is_event_processed(self, chain, address, event_id):
        return event_id in self.processed

    async def has_mint_occurred(self, chain, address, token_id):
        return (chain, address.lower(), int(token_id)) in self.minted

    async def list_contracts(self):
        return list(self.contracts)

    async def submit_batch(self, operations):
        if self.fail_batches:
            self.fail_batches -= 1
            raise LedgerUnavailableError("ledger unavailable")
        self.batches.append(list(operations))
        for op in operations:
            self.processed.add(op.event_id)
            if op.name == MINT_EVENT:
                self.minted.add((op.chain, "0x" + op.contract, int(op.args[4])))

    async def list_minted_tokens(self, after_rowid, take):
        return [t for t in self.tokens if t.rowid > after_rowid][:take]

    async def update_token_metadata(self, chain, address, token_id, metadata):
        self.updates.append((chain, address, token_id, metadata))


class FakeMetadata:
    def __init__(self, missing=(), broken=()):
        self.missing = set(missing)
        self.broken = set(broken)
        self.requests: List[Tuple[str, str, str, int]] = []

    async def get_token_metadata(self, chain, contract_address, contract_type, token_id):
        self.requests.append((chain, contract_address, contract_type, token_id))
        if token_id in self.missing:
            raise TokenDoesNotExist(token_id)
        if token_id in self.broken:
            raise RuntimeError("metadata host unreachable")
        return {"name": f"Token #{token_id}", "image": f"ipfs://image/{token_id}"}


@pytest.fixture
def queue(tmp_path):
    q = OperationQueue(str(tmp_path / "queue.db"), retry_delay_sec=0, max_attempts=3)
    yield q
    q.close()


@pytest.fixture
def fake_ledger():
    return FakeLedger()

