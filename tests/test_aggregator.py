import asyncio

import pytest

from conftest import make_transfer
from nft_bridge.aggregator import BatchAggregator
from nft_bridge.errors import DuplicateOperationError, LedgerError, LedgerUnavailableError
from nft_bridge.storage import FAILED, PENDING, PROCESSING


class RecordingPublisher:
    def __init__(self, failures=0):
        self.batches = []
        self.failures = failures

    async def __call__(self, operations):
        if self.failures:
            self.failures -= 1
            raise LedgerUnavailableError("ledger unavailable")
        self.batches.append(list(operations))


@pytest.mark.asyncio
async def test_flushes_when_batch_is_full():
    publisher = RecordingPublisher()
    agg = BatchAggregator(publisher, batch_size=3, max_wait_sec=3600)
    ops = [make_transfer(b) for b in (1, 2, 3, 4)]
    for op in ops:
        await agg.add(op)

    assert publisher.batches == [ops[:3]]
    assert len(agg) == 1
    assert agg.stats["flushed_operations"] == 3


@pytest.mark.asyncio
async def test_flush_loop_publishes_after_max_wait():
    publisher = RecordingPublisher()
    agg = BatchAggregator(publisher, batch_size=100, max_wait_sec=0.05, check_interval_sec=0.01)
    stop = asyncio.Event()
    task = asyncio.create_task(agg.flush_loop(stop))
    op = make_transfer(1)
    await agg.add(op)
    assert publisher.batches == []

    await asyncio.sleep(0.3)
    stop.set()
    await task

    assert publisher.batches == [[op]]
    assert len(agg) == 0


def test_should_flush_uses_batch_age():
    agg = BatchAggregator(RecordingPublisher(), batch_size=10, max_wait_sec=10)
    assert not agg.should_flush()
    agg.batch.append(make_transfer(1))
    agg.batch_started = 100.0
    assert not agg.should_flush(now=105.0)
    assert agg.should_flush(now=110.0)


@pytest.mark.asyncio
async def test_failed_flush_keeps_operations_in_order():
    publisher = RecordingPublisher(failures=1)
    agg = BatchAggregator(publisher, batch_size=10, max_wait_sec=3600)
    ops = [make_transfer(b) for b in (1, 2)]
    for op in ops:
        await agg.add(op)

    with pytest.raises(LedgerError):
        await agg.flush(force=True)
    assert agg.batch == ops
    assert agg.stats["failed_flushes"] == 1

    assert await agg.flush(force=True) == 2
    assert publisher.batches == [ops]


@pytest.mark.asyncio
async def test_failed_size_flush_hands_trigger_back_to_caller():
    publisher = RecordingPublisher(failures=1)
    agg = BatchAggregator(publisher, batch_size=2, max_wait_sec=3600)
    first, second = make_transfer(1), make_transfer(2)
    await agg.add(first)

    with pytest.raises(LedgerError):
        await agg.add(second)
    assert agg.batch == [first]

    await agg.add(second)
    assert publisher.batches == [[first, second]]


@pytest.mark.asyncio
async def test_flush_without_force_waits_for_threshold():
    publisher = RecordingPublisher()
    agg = BatchAggregator(publisher, batch_size=10, max_wait_sec=3600)
    await agg.add(make_transfer(1))
    assert await agg.flush() == 0
    assert await agg.flush(force=True) == 1


class RejectingLedger:
    """Rejects every submission that contains ``bad_block``."""

    def __init__(self, bad_block, error):
        self.bad_block = bad_block
        self.error = error
        self.applied = []

    async def __call__(self, operations):
        if any(op.block_number == self.bad_block for op in operations):
            raise self.error
        self.applied.extend(op.block_number for op in operations)


async def drain(queue, agg):
    while await queue.consume_once(agg.add):
        pass


@pytest.mark.asyncio
async def test_duplicate_in_batch_does_not_block_later_operations(queue):
    ledger = RejectingLedger(1, DuplicateOperationError("duplicate key value violates unique constraint"))
    agg = BatchAggregator(ledger, batch_size=2, max_wait_sec=3600, on_rejected=queue.park)
    for block in range(1, 6):
        queue.publish(make_transfer(block))

    await drain(queue, agg)
    assert await agg.flush(force=True) == 1

    assert ledger.applied == [2, 3, 4, 5]
    assert queue.get_queue_sizes() == {PENDING: 0, PROCESSING: 0, FAILED: 0}
    assert agg.stats["duplicates"] == 1
    assert len(agg) == 0


@pytest.mark.asyncio
async def test_rejected_operation_is_parked_after_max_rejections(queue):
    ledger = RejectingLedger(1, LedgerError("operation rejected"))
    agg = BatchAggregator(ledger, batch_size=2, max_wait_sec=3600, max_rejections=3, on_rejected=queue.park)
    for block in range(1, 6):
        queue.publish(make_transfer(block))

    await drain(queue, agg)
    await agg.flush(force=True)

    assert ledger.applied == [2, 3, 4, 5]
    assert len(agg) == 0
    assert agg.stats["rejected"] == 1
    assert queue.get_queue_sizes() == {PENDING: 0, PROCESSING: 0, FAILED: 1}
    [parked] = queue.list_entries(FAILED)
    assert parked["event_id"] == make_transfer(1).event_id
    assert parked["last_error"] == "LedgerError: operation rejected"

    assert queue.requeue_failed() == 1
    assert queue.get_queue_size() == 1


@pytest.mark.asyncio
async def test_rejected_trigger_is_released_to_the_queue(queue):
    ledger = RejectingLedger(1, LedgerError("operation rejected"))
    agg = BatchAggregator(ledger, batch_size=1, max_wait_sec=3600, on_rejected=queue.park)
    queue.publish(make_transfer(1))
    queue.publish(make_transfer(2))

    await drain(queue, agg)

    assert ledger.applied == [2]
    [failed] = queue.list_entries(FAILED)
    assert failed["block_number"] == 1
    assert failed["attempts"] == 3
    assert agg.stats["rejected"] == 0


@pytest.mark.asyncio
async def test_unavailable_ledger_keeps_buffered_operations():
    ledger = RejectingLedger(1, LedgerUnavailableError("ledger unavailable"))
    agg = BatchAggregator(ledger, batch_size=10, max_wait_sec=3600)
    ops = [make_transfer(b) for b in (1, 2)]
    for op in ops:
        await agg.add(op)

    with pytest.raises(LedgerUnavailableError):
        await agg.flush(force=True)
    assert agg.batch == ops
    assert ledger.applied == []
