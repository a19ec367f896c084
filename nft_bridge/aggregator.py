import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Hashable, List, Optional, Sequence

from .errors import DuplicateOperationError, LedgerUnavailableError
from .models import Operation

logger = logging.getLogger(__name__)

Publisher = Callable[[Sequence[Operation]], Awaitable[None]]
RejectHandler = Callable[[Operation, str], None]


class BatchAggregator:
    """Groups queued operations into batches for the ledger.

    A batch is flushed when it reaches ``batch_size`` or when its oldest
    operation has waited ``max_wait_sec``. All access to the buffer goes
    through ``self.lock``; asyncio locks wake waiters in FIFO order and are
    not re-entrant, so an append and a flush never interleave.

    When the ledger is unreachable the whole batch stays buffered. When it
    rejects a batch, the batch is resubmitted one operation at a time:
    duplicates are dropped as already applied, and an operation rejected
    ``max_rejections`` times is handed to ``on_rejected`` and dropped.
    """

    def __init__(
        self,
        publish: Publisher,
        batch_size: int = 100,
        max_wait_sec: float = 10.0,
        check_interval_sec: float = 1.0,
        max_rejections: int = 3,
        on_rejected: Optional[RejectHandler] = None,
    ):
        self.publish = publish
        self.batch_size = max(1, int(batch_size))
        self.max_wait_sec = max_wait_sec
        self.check_interval_sec = check_interval_sec
        self.max_rejections = max(1, int(max_rejections))
        self.on_rejected = on_rejected
        self.lock = asyncio.Lock()
        self.batch: List[Operation] = []
        self.batch_started = time.monotonic()
        self.rejections: Dict[Hashable, int] = {}
        self.stats = {
            "flushed_batches": 0,
            "flushed_operations": 0,
            "failed_flushes": 0,
            "duplicates": 0,
            "rejected": 0,
        }

    def __len__(self) -> int:
        return len(self.batch)

    def should_flush(self, now: Optional[float] = None) -> bool:
        if not self.batch:
            return False
        if len(self.batch) >= self.batch_size:
            return True
        elapsed = (now if now is not None else time.monotonic()) - self.batch_started
        return elapsed >= self.max_wait_sec

    async def add(self, operation: Operation) -> None:
        """Buffer ``operation``, flushing when the batch is due.

        Raises only when ``operation`` itself was not applied, so the queue
        consumer can release it durably; other operations of the batch stay
        buffered or are dropped here.
        """
        async with self.lock:
            if not self.batch:
                self.batch_started = time.monotonic()
            self.batch.append(operation)
            if self.should_flush():
                await self._flush_locked(trigger=operation)

    async def flush(self, force: bool = False) -> int:
        async with self.lock:
            if not self.batch:
                return 0
            if not force and not self.should_flush():
                return 0
            return await self._flush_locked()

    @staticmethod
    def _key(operation: Operation) -> Hashable:
        if operation.has_event_identity:
            return (operation.chain, operation.contract, operation.event_id)
        return id(operation)

    def _retain(self, operations: List[Operation]) -> None:
        if operations and not self.batch:
            self.batch_started = time.monotonic()
        self.batch = operations + self.batch

    async def _flush_locked(self, trigger: Optional[Operation] = None) -> int:
        snapshot = list(self.batch)
        self.batch = []
        self.batch_started = time.monotonic()
        try:
            await self.publish(snapshot)
        except LedgerUnavailableError as e:
            self.stats["failed_flushes"] += 1
            logger.error(f"Error publishing batch of {len(snapshot)} operations: {e}")
            # the trigger goes back to the queue through the raised error
            self._retain([op for op in snapshot if op is not trigger])
            raise
        except Exception as e:
            self.stats["failed_flushes"] += 1
            logger.warning(f"Ledger rejected batch of {len(snapshot)} operations, resubmitting one by one: {e}")
            return await self._publish_each(snapshot, trigger)
        for op in snapshot:
            self.rejections.pop(self._key(op), None)
        self.stats["flushed_batches"] += 1
        self.stats["flushed_operations"] += len(snapshot)
        logger.info(f"Published batch of {len(snapshot)} operations")
        return len(snapshot)

    async def _publish_each(self, snapshot: List[Operation], trigger: Optional[Operation]) -> int:
        applied = 0
        retained: List[Operation] = []
        trigger_error: Optional[Exception] = None
        for i, op in enumerate(snapshot):
            try:
                await self.publish([op])
            except DuplicateOperationError:
                self.rejections.pop(self._key(op), None)
                self.stats["duplicates"] += 1
                logger.info(f"Operation already applied, skipping: {op.name} {op.event_id}")
                continue
            except LedgerUnavailableError:
                self._retain(retained + [o for o in snapshot[i:] if o is not trigger])
                self.stats["flushed_operations"] += applied
                raise
            except Exception as e:
                if op is trigger:
                    trigger_error = e
                else:
                    self._reject(op, e, retained)
                continue
            self.rejections.pop(self._key(op), None)
            applied += 1
        self._retain(retained)
        self.stats["flushed_operations"] += applied
        if trigger_error is not None:
            raise trigger_error
        return applied

    def _reject(self, operation: Operation, error: Exception, retained: List[Operation]) -> None:
        key = self._key(operation)
        count = self.rejections.get(key, 0) + 1
        if count < self.max_rejections:
            self.rejections[key] = count
            retained.append(operation)
            logger.warning(f"Ledger rejected {operation.name} {operation.event_id} ({count}/{self.max_rejections}): {error}")
            return
        self.rejections.pop(key, None)
        self.stats["rejected"] += 1
        logger.error(f"Giving up on {operation.name} {operation.event_id} after {count} rejections: {error}")
        if self.on_rejected is not None:
            self.on_rejected(operation, f"{type(error).__name__}: {error}")

    async def flush_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await asyncio.sleep(self.check_interval_sec)
            try:
                await self.flush(force=False)
            except Exception as e:
                logger.warning(f"Timed batch flush failed, keeping {len(self.batch)} operations buffered: {e}")
