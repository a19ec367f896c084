import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional, Tuple

from .codec import (
    TRANSFER_TOPIC0,
    create_mint_operation,
    create_transfer_operation,
    event_from_log,
    is_erc721_transfer,
    parse_hex_int,
)
from .config import LISTENER_RESTART_SEC, MAX_BLOCK_RANGE, MAX_RETRIES, AppConfig, ChainConfig
from .errors import ProviderError, ProviderNotFoundError, RPCError, TokenDoesNotExist
from .metadata import MetadataService
from .models import ChainEvent, ContractInfo, Operation, contract_kind
from .rpc import RPCClient
from .storage import OperationQueue

logger = logging.getLogger(__name__)

ERC721_AMOUNT = 1


def log_sort_key(log: Dict[str, Any]) -> Tuple[int, int]:
    return parse_hex_int(log.get("blockNumber")), parse_hex_int(log.get("logIndex"))


class ContractWatcher:
    """Backfill-then-listen task for one (chain, contract).

    ``cursor`` is the last block this watcher has scanned. ``checkpoint`` is
    the last block below which every event was handled; it is persisted and
    stops advancing for the rest of the run once an event fails, so that a
    restart re-observes the failed event.
    """

    def __init__(
        self,
        contract: ContractInfo,
        chain: ChainConfig,
        rpc: RPCClient,
        ledger: Any,
        metadata: MetadataService,
        queue: OperationQueue,
        queue_size_threshold: int = 10000,
        backpressure_poll_sec: float = 60.0,
        poll_interval_sec: float = 60.0,
        restart_delay_sec: float = LISTENER_RESTART_SEC,
        backoff_base_sec: float = 1.0,
        max_block_range: int = MAX_BLOCK_RANGE,
        max_retries: int = MAX_RETRIES,
    ):
        self.contract = contract
        self.chain = chain
        self.rpc = rpc
        self.ledger = ledger
        self.metadata = metadata
        self.queue = queue
        self.queue_size_threshold = queue_size_threshold
        self.backpressure_poll_sec = backpressure_poll_sec
        self.poll_interval_sec = poll_interval_sec
        self.restart_delay_sec = restart_delay_sec
        self.backoff_base_sec = backoff_base_sec
        self.max_block_range = max_block_range
        self.max_retries = max_retries
        self.address = contract.address.lower()
        self.label = f"{self.address} on chain {chain.name}"

        stored = queue.get_checkpoint(chain.name, self.address) or 0
        start = max(int(contract.last_processed_block or 0), stored)
        self.cursor = max(0, start - 1)
        self.checkpoint = stored
        self.checkpoint_frozen = False
        self.filter_id: Optional[str] = None
        self.listening = False
        self.stats = {"handled": 0, "published": 0, "failed": 0, "skipped_windows": 0, "restarts": 0}

    def snapshot(self) -> Dict[str, Any]:
        return {
            "chain": self.chain.name,
            "address": self.address,
            "type": self.contract.type,
            "cursor": self.cursor,
            "checkpoint": self.checkpoint,
            "checkpointFrozen": self.checkpoint_frozen,
            "listening": self.listening,
            "stats": dict(self.stats),
        }

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.process_historical_events(stop_event)
                break
            except Exception as e:
                logger.error(f"Historical backfill failed for {self.label}: {e}")
                await asyncio.sleep(self.restart_delay_sec)
        await self.listen(stop_event)

    def _window_done(self, to_block: int, ok: bool) -> None:
        self.cursor = max(self.cursor, to_block)
        if not ok and not self.checkpoint_frozen:
            self.checkpoint_frozen = True
            logger.warning(f"Checkpoint for {self.label} held at {self.checkpoint} after a failed event")
        if self.checkpoint_frozen or to_block <= self.checkpoint:
            return
        self.checkpoint = to_block
        self.queue.set_checkpoint(self.chain.name, self.address, to_block)

    async def process_historical_events(self, stop_event: asyncio.Event) -> None:
        current_block = await self.rpc.get_block_number()
        from_block = self.cursor + 1
        if from_block > current_block:
            logger.info(f"Contract {self.label} is up to date")
            return

        while from_block <= current_block and not stop_event.is_set():
            queue_size = self.queue.get_queue_size()
            if queue_size > self.queue_size_threshold:
                logger.info(
                    f"Queue size {queue_size} is above {self.queue_size_threshold}, "
                    f"throttling {self.label} for {self.backpressure_poll_sec}s"
                )
                await asyncio.sleep(self.backpressure_poll_sec)
                continue
            to_block = min(from_block + self.max_block_range, current_block)
            last_block = await self.process_block_range(from_block, to_block)
            from_block = last_block + 1

        logger.info(f"Finished processing historical events for contract {self.label}")

    async def process_block_range(self, from_block: int, to_block: int) -> int:
        retry_count = 0
        while retry_count < self.max_retries:
            try:
                logger.info(f"Processing historical events for {self.label} from block {from_block} to {to_block}")
                logs = await self.rpc.get_logs(
                    from_block=from_block,
                    to_block=to_block,
                    address=self.address,
                    topics=[TRANSFER_TOPIC0],
                )
            except RPCError as e:
                retry_count += 1
                if e.is_too_many_results:
                    to_block = max(from_block, (from_block + to_block) // 2)
                    logger.debug(f"Reducing block range due to too many results. New toBlock: {to_block}")
                    continue
                logger.error(f"Error fetching events for {self.label} from block {from_block} to {to_block}: {e}")
                await asyncio.sleep(self.backoff_base_sec * retry_count)
                continue
            except Exception as e:
                retry_count += 1
                logger.error(f"Error fetching events for {self.label} from block {from_block} to {to_block}: {e}")
                await asyncio.sleep(self.backoff_base_sec * retry_count)
                continue

            ok = await self.handle_logs(logs)
            self._window_done(to_block, ok)
            logger.debug(f"Processed events up to block {to_block} for {self.label}")
            return to_block

        self.stats["skipped_windows"] += 1
        logger.error(
            f"Max retries reached for block range {from_block} to {to_block} on {self.label}. "
            f"Skipping this range, events in it may be missing."
        )
        self.cursor = max(self.cursor, to_block)
        return to_block

    async def handle_logs(self, logs: List[Dict[str, Any]]) -> bool:
        ok = True
        for log in sorted(logs, key=log_sort_key):
            if not await self.handle_log(log):
                ok = False
        return ok

    async def handle_log(self, log: Dict[str, Any]) -> bool:
        if log.get("removed"):
            return True
        if not is_erc721_transfer(log):
            return True
        tx_hash = log.get("transactionHash")
        try:
            event = event_from_log(self.chain.chain_id, self.chain.name, self.address, log)
            self.stats["handled"] += 1
            if self.queue.is_event_known(self.chain.name, self.address, event.id):
                logger.debug(f"Event already queued: {event.id}")
                return True
            if await self.ledger.is_event_processed(self.chain.name, self.address, event.id):
                logger.debug(f"Event already processed: {event.id}")
                return True
            operation = await self.create_operation(event)
            if self.queue.publish(operation):
                self.stats["published"] += 1
                logger.info(f"Operation published to queue: {operation.name} {event.id}")
            return True
        except TokenDoesNotExist as e:
            logger.debug(f"Token does not exist: {e}")
            return True
        except Exception as e:
            self.stats["failed"] += 1
            logger.error(f"Error processing event {tx_hash} for {self.label}: {type(e).__name__}: {e}")
            return False

    async def create_operation(self, event: ChainEvent) -> Operation:
        has_mint = await self.ledger.has_mint_occurred(event.chain_name, event.contract_address, event.token_id)
        if not has_mint:
            metadata = await self.metadata.get_token_metadata(
                event.chain_name, event.contract_address, self.contract.type, event.token_id
            )
            return create_mint_operation(
                event.chain_name,
                event.contract_address,
                event.block_number,
                event.id,
                event.token_id,
                event.to_address,
                ERC721_AMOUNT,
                metadata,
            )
        return create_transfer_operation(
            event.chain_name,
            event.contract_address,
            event.block_number,
            event.id,
            event.token_id,
            event.from_address,
            event.to_address,
            ERC721_AMOUNT,
        )

    async def install_filter(self) -> List[Dict[str, Any]]:
        self.filter_id = await self.rpc.new_filter(
            from_block=self.cursor + 1,
            address=self.address,
            topics=[TRANSFER_TOPIC0],
        )
        logger.debug(f"Installed filter {self.filter_id} for {self.label} from block {self.cursor + 1}")
        return await self.rpc.get_filter_logs(self.filter_id)

    async def setup_listener(self) -> None:
        current_block = await self.rpc.get_block_number()
        logs = await self.install_filter()
        ok = await self.handle_logs(logs)
        self._window_done(max(current_block, self.cursor), ok)
        self.listening = True
        logger.info(f"Event listener started for contract {self.label} from block {self.cursor + 1}")

    async def poll_once(self) -> int:
        current_block = await self.rpc.get_block_number()
        if self.filter_id is None:
            logs = await self.install_filter()
        else:
            try:
                logs = await self.rpc.get_filter_changes(self.filter_id)
            except RPCError as e:
                if not e.is_filter_not_found:
                    raise
                logger.info(f"Filter not found, recreating for {self.label}")
                logs = await self.install_filter()
        if logs:
            logger.debug(f"Received {len(logs)} Transfer logs from contract {self.label}")
        ok = await self.handle_logs(logs)
        self._window_done(max(current_block, self.cursor), ok)
        return len(logs)

    async def poll_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await asyncio.sleep(self.poll_interval_sec)
            try:
                await self.poll_once()
            except ProviderError:
                raise
            except Exception as e:
                logger.error(f"Error polling for events on {self.label}: {e}")

    async def teardown_listener(self) -> None:
        self.listening = False
        filter_id, self.filter_id = self.filter_id, None
        if filter_id is None:
            return
        try:
            await self.rpc.uninstall_filter(filter_id)
        except (RPCError, ProviderError) as e:
            logger.debug(f"Could not uninstall filter {filter_id} for {self.label}: {e}")

    async def listen(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.setup_listener()
                await self.poll_loop(stop_event)
            except ProviderError as e:
                logger.error(f"Error in provider for chain {self.chain.name}: {e}")
            except Exception as e:
                logger.error(f"Error setting up listener for contract {self.label}: {e}")
            await self.teardown_listener()
            if stop_event.is_set():
                break
            self.stats["restarts"] += 1
            logger.info(f"Restarting listener for {self.label} in {self.restart_delay_sec}s")
            await asyncio.sleep(self.restart_delay_sec)


class EventSource:
    def __init__(
        self,
        cfg: AppConfig,
        rpc_clients: Dict[int, RPCClient],
        ledger: Any,
        metadata: MetadataService,
        queue: OperationQueue,
    ):
        self.cfg = cfg
        self.rpc_clients = rpc_clients
        self.ledger = ledger
        self.metadata = metadata
        self.queue = queue
        self.watchers: Dict[Tuple[int, str], ContractWatcher] = {}
        self.tasks: Dict[Tuple[int, str], asyncio.Task] = {}

    def build_watcher(self, contract: ContractInfo) -> ContractWatcher:
        chain = self.cfg.chain_by_id(contract.chain_id)
        rpc = self.rpc_clients.get(contract.chain_id)
        if chain is None or rpc is None:
            raise ProviderNotFoundError(contract.chain_id)
        contract_kind(contract.type)
        return ContractWatcher(
            contract=contract,
            chain=chain,
            rpc=rpc,
            ledger=self.ledger,
            metadata=self.metadata,
            queue=self.queue,
            queue_size_threshold=self.cfg.queue_size_threshold,
            backpressure_poll_sec=self.cfg.backpressure_poll_sec,
            poll_interval_sec=self.cfg.poll_interval_sec,
        )

    def add_contracts(self, contracts: List[ContractInfo], stop_event: asyncio.Event) -> List[ContractInfo]:
        started: List[ContractInfo] = []
        for contract in contracts:
            key = contract.key
            if key in self.watchers:
                continue
            try:
                watcher = self.build_watcher(contract)
            except (ProviderNotFoundError, ValueError) as e:
                logger.error(f"Cannot monitor contract {contract.address} on chain {contract.chain_id}: {e}")
                continue
            self.watchers[key] = watcher
            self.tasks[key] = asyncio.create_task(watcher.run(stop_event))
            started.append(contract)
            logger.info(f"Monitoring contract {contract.address} ({contract.type}) on chain {watcher.chain.name}")
        return started

    async def start(self, stop_event: asyncio.Event) -> None:
        contracts = await self.ledger.list_contracts()
        self.add_contracts(contracts, stop_event)

    async def discovery_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await asyncio.sleep(self.cfg.contract_discovery_interval_sec)
            try:
                contracts = await self.ledger.list_contracts()
                started = self.add_contracts(contracts, stop_event)
                if started:
                    logger.info(f"Found {len(started)} new contracts to monitor")
            except Exception as e:
                logger.error(f"Error in contract monitoring: {e}")

    async def stop(self) -> None:
        for task in self.tasks.values():
            task.cancel()
        for task in self.tasks.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for watcher in self.watchers.values():
            await watcher.teardown_listener()
