import asyncio
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .codec import deserialize_operation, serialize_operation
from .config import QUEUE_CHECK_INTERVAL_SEC
from .errors import DuplicateOperationError
from .models import Operation

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
FAILED = "failed"

QueueKey = Tuple[str, str]
Handler = Callable[[Operation], Awaitable[None]]


def contract_key(address: Any) -> str:
    if isinstance(address, (bytes, bytearray)):
        return bytes(address).hex()
    text = str(address).strip().lower()
    return text[2:] if text.startswith("0x") else text


class OperationQueue:
    """Durable per-(chain, contract) operation queue on sqlite.

    Every row is in exactly one of three states: ``pending`` (main queue),
    ``processing`` (handed to the consumer, not yet acknowledged) or
    ``failed``. Rows are delivered per queue in ``(block_number, id)`` order;
    a row that goes back to ``pending`` keeps its key and therefore its place
    at the front of its queue.
    """

    def __init__(
        self,
        db_path: str,
        retry_delay_sec: float = 5.0,
        max_attempts: int = 10,
        idle_sleep_sec: float = 1.0,
        error_sleep_sec: float = 5.0,
    ):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self.retry_delay_sec = retry_delay_sec
        self.max_attempts = max(1, int(max_attempts))
        self.idle_sleep_sec = idle_sleep_sec
        self.error_sleep_sec = error_sleep_sec
        self.paused: Dict[QueueKey, float] = {}
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS operations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chain TEXT NOT NULL,
                contract TEXT NOT NULL,
                event_id TEXT NOT NULL,
                block_number INTEGER NOT NULL,
                name TEXT NOT NULL,
                payload TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_operations_queue
                ON operations(chain, contract, state, block_number, id);
            CREATE INDEX IF NOT EXISTS idx_operations_state ON operations(state);

            CREATE TABLE IF NOT EXISTS processed_events (
                chain TEXT NOT NULL,
                contract TEXT NOT NULL,
                event_id TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY(chain, contract, event_id)
            );

            CREATE TABLE IF NOT EXISTS checkpoints (
                chain TEXT NOT NULL,
                contract TEXT NOT NULL,
                block_number INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY(chain, contract)
            );
            """
        )
        self.conn.commit()

    def publish(self, operation: Operation) -> bool:
        if not operation.has_event_identity:
            raise ValueError(f"operation {operation.name} has no event identity and cannot be queued")
        chain = operation.chain
        contract = operation.contract
        event_id = operation.event_id
        block_number = operation.block_number
        payload = serialize_operation(operation)
        now = int(time.time())

        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            cur.execute(
                """
                INSERT OR IGNORE INTO processed_events(chain, contract, event_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (chain, contract, event_id, now),
            )
            if cur.rowcount != 1:
                self.conn.rollback()
                logger.debug(f"Event already processed or queued: {chain}:{contract}:{event_id}")
                return False
            cur.execute(
                """
                INSERT INTO operations(
                    chain, contract, event_id, block_number, name, payload,
                    state, attempts, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                """,
                (chain, contract, event_id, block_number, operation.name, payload, now, now),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        logger.debug(f"Published operation: {operation.name} for block {block_number}")
        return True

    def is_event_known(self, chain: str, contract: Any, event_id: str) -> bool:
        row = self.conn.execute(
            """
            SELECT 1 FROM processed_events
            WHERE chain = ? AND contract = ? AND event_id = ?
            """,
            (chain, contract_key(contract), event_id),
        ).fetchone()
        return row is not None

    def get_queue_size(self) -> int:
        row = self.conn.execute(
            "SELECT COUNT(1) AS c FROM operations WHERE state = 'pending'"
        ).fetchone()
        return int(row["c"]) if row else 0

    def get_queue_sizes(self) -> Dict[str, int]:
        sizes = {PENDING: 0, PROCESSING: 0, FAILED: 0}
        rows = self.conn.execute(
            "SELECT state, COUNT(1) AS c FROM operations GROUP BY state"
        ).fetchall()
        for row in rows:
            sizes[str(row["state"])] = int(row["c"])
        return sizes

    def list_queue_keys(self) -> List[QueueKey]:
        rows = self.conn.execute(
            """
            SELECT DISTINCT chain, contract
            FROM operations
            WHERE state = 'pending'
            ORDER BY chain ASC, contract ASC
            """
        ).fetchall()
        return [(str(r["chain"]), str(r["contract"])) for r in rows]

    def list_entries(self, state: str, limit_n: int = 100) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT id, chain, contract, event_id, block_number, name, attempts, last_error
            FROM operations
            WHERE state = ?
            ORDER BY chain ASC, contract ASC, block_number ASC, id ASC
            LIMIT ?
            """,
            (state, max(1, int(limit_n))),
        ).fetchall()
        return [dict(r) for r in rows]

    def claim_next(self, key: QueueKey) -> Optional[sqlite3.Row]:
        chain, contract = key
        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        row = cur.execute(
            """
            SELECT *
            FROM operations
            WHERE chain = ? AND contract = ? AND state = 'pending'
            ORDER BY block_number ASC, id ASC
            LIMIT 1
            """,
            (chain, contract),
        ).fetchone()
        if not row:
            self.conn.rollback()
            return None
        cur.execute(
            """
            UPDATE operations
            SET state = 'processing',
                updated_at = ?
            WHERE id = ? AND state = 'pending'
            """,
            (int(time.time()), int(row["id"])),
        )
        if cur.rowcount != 1:
            self.conn.rollback()
            return None
        self.conn.commit()
        return row

    def ack(self, entry_id: int) -> None:
        self.conn.execute(
            "DELETE FROM operations WHERE id = ? AND state = 'processing'",
            (int(entry_id),),
        )
        self.conn.commit()

    def release(self, entry_id: int, error: str) -> str:
        """Return a processing row to its queue, or park it as failed once
        it has used up its attempts. Returns the new state."""
        row = self.conn.execute(
            "SELECT attempts FROM operations WHERE id = ?", (int(entry_id),)
        ).fetchone()
        if not row:
            return FAILED
        attempts = int(row["attempts"]) + 1
        state = FAILED if attempts >= self.max_attempts else PENDING
        self.conn.execute(
            """
            UPDATE operations
            SET state = ?,
                attempts = ?,
                last_error = ?,
                updated_at = ?
            WHERE id = ? AND state = 'processing'
            """,
            (state, attempts, error[:1000], int(time.time()), int(entry_id)),
        )
        self.conn.commit()
        return state

    def mark_failed(self, entry_id: int, error: str) -> None:
        self.conn.execute(
            """
            UPDATE operations
            SET state = 'failed',
                last_error = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (error[:1000], int(time.time()), int(entry_id)),
        )
        self.conn.commit()

    def park(self, operation: Operation, error: str) -> None:
        """Store an already-acknowledged operation the ledger keeps rejecting
        as ``failed`` so ``requeue_failed`` can replay it later."""
        if not operation.has_event_identity:
            logger.error(f"Dropping rejected {operation.name} without event identity: {error}")
            return
        now = int(time.time())
        self.conn.execute(
            """
            INSERT INTO operations(
                chain, contract, event_id, block_number, name, payload,
                state, attempts, last_error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 'failed', 0, ?, ?, ?)
            """,
            (
                operation.chain,
                operation.contract,
                operation.event_id,
                operation.block_number,
                operation.name,
                serialize_operation(operation),
                error[:1000],
                now,
                now,
            ),
        )
        self.conn.commit()
        logger.error(f"Parked rejected operation {operation.name} from block {operation.block_number}: {error}")

    def recover_in_progress_operations(self) -> int:
        cur = self.conn.execute(
            """
            UPDATE operations
            SET state = 'pending',
                updated_at = ?
            WHERE state = 'processing'
            """,
            (int(time.time()),),
        )
        self.conn.commit()
        recovered = max(0, cur.rowcount)
        if recovered:
            logger.info(f"Recovered {recovered} operations from processing state")
        return recovered

    def requeue_failed(self, chain: Optional[str] = None, contract: Optional[Any] = None) -> int:
        sql = """
            UPDATE operations
            SET state = 'pending',
                attempts = 0,
                updated_at = ?
            WHERE state = 'failed'
        """
        params: List[Any] = [int(time.time())]
        if chain:
            sql += " AND chain = ?"
            params.append(chain)
        if contract:
            sql += " AND contract = ?"
            params.append(contract_key(contract))
        cur = self.conn.execute(sql, params)
        self.conn.commit()
        moved = max(0, cur.rowcount)
        if moved:
            logger.info(f"Moved {moved} failed operations back to the main queue")
        return moved

    def get_checkpoint(self, chain: str, contract: Any) -> Optional[int]:
        row = self.conn.execute(
            "SELECT block_number FROM checkpoints WHERE chain = ? AND contract = ?",
            (chain, contract_key(contract)),
        ).fetchone()
        return int(row["block_number"]) if row else None

    def set_checkpoint(self, chain: str, contract: Any, block_number: int) -> None:
        self.conn.execute(
            """
            INSERT INTO checkpoints(chain, contract, block_number, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(chain, contract) DO UPDATE SET
                block_number = MAX(checkpoints.block_number, excluded.block_number),
                updated_at = excluded.updated_at
            """,
            (chain, contract_key(contract), int(block_number), int(time.time())),
        )
        self.conn.commit()

    def is_paused(self, key: QueueKey, now: Optional[float] = None) -> bool:
        resume_at = self.paused.get(key)
        if resume_at is None:
            return False
        if (now if now is not None else time.monotonic()) >= resume_at:
            self.paused.pop(key, None)
            return False
        return True

    def pause(self, key: QueueKey) -> None:
        self.paused[key] = time.monotonic() + self.retry_delay_sec

    async def deliver(self, row: sqlite3.Row, handler: Handler) -> None:
        entry_id = int(row["id"])
        key = (str(row["chain"]), str(row["contract"]))
        block_number = int(row["block_number"])
        try:
            operation = deserialize_operation(str(row["payload"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Undecodable operation {entry_id} from block {block_number}, moved to failed: {e}")
            self.mark_failed(entry_id, f"decode_failed: {e}")
            return

        logger.debug(f"Processing operation: {operation.name} from block {block_number}")
        try:
            await handler(operation)
        except DuplicateOperationError:
            self.ack(entry_id)
            logger.info(f"Duplicate event detected, skipping: {operation.event_id}")
            return
        except Exception as e:
            state = self.release(entry_id, f"{type(e).__name__}: {e}")
            if state == FAILED:
                logger.error(
                    f"Operation {operation.name} from block {block_number} exhausted "
                    f"{self.max_attempts} attempts, moved to failed: {e}"
                )
            else:
                self.pause(key)
                logger.error(
                    f"Failed to process operation {operation.name} from block {block_number}, "
                    f"pausing {key[0]}:{key[1]} for {self.retry_delay_sec}s: {e}"
                )
            return
        self.ack(entry_id)
        logger.debug(f"Successfully processed operation: {operation.name} from block {block_number}")

    async def consume_once(self, handler: Handler) -> int:
        delivered = 0
        now = time.monotonic()
        for key in self.list_queue_keys():
            if self.is_paused(key, now):
                continue
            row = self.claim_next(key)
            if row is None:
                continue
            await self.deliver(row, handler)
            delivered += 1
        return delivered

    async def consume(self, handler: Handler, stop_event: Optional[asyncio.Event] = None) -> None:
        logger.info("Started consuming operations")
        while stop_event is None or not stop_event.is_set():
            try:
                delivered = await self.consume_once(handler)
            except sqlite3.Error as e:
                logger.error(f"Error in operation consumption loop: {e}")
                await asyncio.sleep(self.error_sleep_sec)
                continue
            if not delivered:
                await asyncio.sleep(self.idle_sleep_sec)

    async def log_sizes_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            sizes = self.get_queue_sizes()
            logger.debug(
                f"Queue sizes - Main: {sizes[PENDING]}, Processing: {sizes[PROCESSING]}, "
                f"Failed: {sizes[FAILED]}"
            )
            await asyncio.sleep(QUEUE_CHECK_INTERVAL_SEC)
