import pytest
from aiohttp import web

from conftest import CONTRACT, make_transfer, serve
from nft_bridge.errors import (
    ConfigurationError,
    DuplicateOperationError,
    LedgerError,
    LedgerUnavailableError,
    ProviderError,
    RPCError,
)
from nft_bridge.ledger import LedgerClient
from nft_bridge.rpc import RPCClient

RID = "00" * 32


class FakeLedgerNode:
    def __init__(self):
        self.queries = []
        self.txs = []
        self.processed = set()
        self.tx_status = 200
        self.tx_body = "{}"

    async def query(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.queries.append(body)
        name = body["type"]
        if name == "tokens.list_contracts":
            return web.json_response(
                [
                    {"chain": "ethereum", "address": "ab" * 20, "type": "erc721", "block_height": 100},
                    {"chain": "unknown", "address": "cd" * 20, "type": "erc721", "block_height": 1},
                ]
            )
        if name == "tokens.is_event_processed":
            return web.json_response(body["event_id"] in self.processed)
        if name == "tokens.has_mint_occured":
            return web.json_response(True)
        return web.json_response({"error": "unknown query"}, status=400)

    async def tx(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.txs.append(body)
        return web.Response(status=self.tx_status, text=self.tx_body)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/query/{rid}", self.query)
        app.router.add_post("/tx/{rid}", self.tx)
        return app


@pytest.mark.asyncio
async def test_list_contracts_and_queries():
    node = FakeLedgerNode()
    async with serve(node.app()) as url:
        async with LedgerClient(url, RID, {"ethereum": 1}) as ledger:
            contracts = await ledger.list_contracts()
            assert await ledger.has_mint_occurred("ethereum", CONTRACT, 5)

    assert len(contracts) == 1
    assert contracts[0].chain_id == 1
    assert contracts[0].address == CONTRACT
    assert contracts[0].last_processed_block == 100
    assert node.queries[-1] == {
        "type": "tokens.has_mint_occured",
        "chain": "ethereum",
        "address": "ab" * 20,
        "token_id": 5,
    }


@pytest.mark.asyncio
async def test_submit_batch_skips_processed_events():
    node = FakeLedgerNode()
    first, second = make_transfer(1), make_transfer(2)
    node.processed.add(first.event_id)
    async with serve(node.app()) as url:
        async with LedgerClient(url, RID, {"ethereum": 1}) as ledger:
            await ledger.submit_batch([first, second])

    assert len(node.txs) == 1
    ops = node.txs[0]["operations"]
    assert [op["name"] for op in ops] == ["tokens.process_transfer_event"]
    assert ops[0]["args"][1] == {"$bytes": "ab" * 20}
    assert ops[0]["args"][2] == {"$bigint": "2"}
    assert ops[0]["args"][6] == {"$bytes": "fb6916095ca1df60bb79ce92ce3ea74c37c5d359"}
    assert node.txs[0]["nonce"]


@pytest.mark.asyncio
async def test_duplicate_rejection_is_typed():
    node = FakeLedgerNode()
    node.tx_status = 500
    node.tx_body = 'ERROR: duplicate key value violates unique constraint "processed_event_pkey"'
    async with serve(node.app()) as url:
        async with LedgerClient(url, RID, {"ethereum": 1}) as ledger:
            with pytest.raises(DuplicateOperationError):
                await ledger.submit_single(make_transfer(1))

            node.tx_body = "node is syncing"
            with pytest.raises(LedgerError) as exc:
                await ledger.register_chain("ethereum")
            assert not isinstance(exc.value, DuplicateOperationError)
            assert not isinstance(exc.value, LedgerUnavailableError)

            node.tx_status = 503
            with pytest.raises(LedgerUnavailableError):
                await ledger.submit_single(make_transfer(2))


@pytest.mark.asyncio
async def test_unreachable_ledger_is_unavailable():
    async with LedgerClient("http://127.0.0.1:1", RID, {"ethereum": 1}) as ledger:
        with pytest.raises(LedgerUnavailableError):
            await ledger.submit_single(make_transfer(1))


@pytest.mark.asyncio
async def test_metadata_update_operation_on_the_wire():
    node = FakeLedgerNode()
    async with serve(node.app()) as url:
        async with LedgerClient(url, RID, {"ethereum": 1}, module="") as ledger:
            await ledger.update_token_metadata("ethereum", bytes.fromhex("ab" * 20), 3, {"name": "New"})

    op = node.txs[0]["operations"][0]
    assert op["name"] == "process_metadata_update"
    assert op["args"] == ["ethereum", {"$bytes": "ab" * 20}, {"$bigint": "3"}, '{"name": "New"}']


def test_ledger_requires_node_and_rid():
    with pytest.raises(ConfigurationError):
        LedgerClient("", RID, {})


class FakeRPCNode:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(await request.json())
        status, payload = self.responses.pop(0)
        if status != 200:
            return web.Response(status=status, text="upstream error")
        payload = dict(payload, jsonrpc="2.0", id=self.requests[-1]["id"])
        return web.json_response(payload)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/", self.handle)
        return app


@pytest.mark.asyncio
async def test_rpc_client_retries_server_errors():
    node = FakeRPCNode([(502, None), (200, {"result": "0x10"})])
    async with serve(node.app()) as url:
        async with RPCClient(url + "/", max_retries=3, backoff_sec=0) as rpc:
            assert await rpc.get_block_number() == 16
    assert len(node.requests) == 2


@pytest.mark.asyncio
async def test_rpc_client_gives_up_with_provider_error():
    node = FakeRPCNode([(503, None)] * 2)
    async with serve(node.app()) as url:
        async with RPCClient(url + "/", max_retries=2, backoff_sec=0) as rpc:
            with pytest.raises(ProviderError):
                await rpc.get_block_number()


@pytest.mark.asyncio
async def test_rpc_errors_are_not_retried():
    node = FakeRPCNode([(200, {"error": {"code": -32005, "message": "query returned more than 10000 results"}})])
    async with serve(node.app()) as url:
        async with RPCClient(url + "/") as rpc:
            with pytest.raises(RPCError) as exc:
                await rpc.get_logs(0, 5000, address=CONTRACT)
    assert exc.value.is_too_many_results
    assert node.requests[0]["params"][0] == {"fromBlock": "0x0", "toBlock": "0x1388", "address": CONTRACT}
