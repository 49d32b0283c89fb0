import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple
from .schema import Outcome, TaskRecord, utcnow

logger = logging.getLogger(__name__)


class TaskAlreadyCompleted(RuntimeError):
    """Raised on a second terminal write for the same task id."""


class TaskStore:
    """In-memory task outcomes with per-entry expiry.

    Records live on the event loop thread. Writes never await, so no lock is
    held across a suspension point and unrelated task ids never contend.
    """

    def __init__(self, ttl_seconds: float = 30 * 60, max_entries: int = 10000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._records: Dict[str, Tuple[TaskRecord, float]] = {}

    def __len__(self) -> int:
        return len(self._records)

    def put(self, task_id: str, outcome: Outcome, raw_response: Any = None) -> TaskRecord:
        existing = self._live(task_id)
        if existing is not None and existing.terminal:
            raise TaskAlreadyCompleted(f"Task {task_id} already has a terminal outcome")

        record = TaskRecord(
            task_id=task_id,
            outcome=outcome,
            terminal=True,
            raw_response=raw_response if raw_response is not None else outcome.raw_response,
            created_at=existing.created_at if existing else utcnow(),
        )
        self._write(record)
        logger.debug(
            "[%s] Stored terminal outcome at %s (created %s)",
            task_id, record.updated_at.isoformat(), record.created_at.isoformat(),
        )
        return record

    def put_snapshot(self, task_id: str, raw_response: Any) -> Optional[TaskRecord]:
        existing = self._live(task_id)
        if existing is not None and existing.terminal:
            logger.warning("[%s] Ignoring snapshot write after terminal outcome", task_id)
            return None

        record = TaskRecord(
            task_id=task_id,
            outcome=Outcome(success=True, raw_response=raw_response),
            terminal=False,
            raw_response=raw_response,
            created_at=existing.created_at if existing else utcnow(),
        )
        self._write(record)
        return record

    def get(self, task_id: str) -> Optional[TaskRecord]:
        return self._live(task_id)

    def contains(self, task_id: str) -> bool:
        return self._live(task_id) is not None

    def delete(self, task_id: str) -> bool:
        return self._records.pop(task_id, None) is not None

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._records.items() if expires_at <= now]
        for key in expired:
            self._records.pop(key, None)
        if expired:
            logger.info("Cleaned up %d expired task results", len(expired))
        return len(expired)

    async def run_sweeper(self, interval_seconds: float):
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()

    def _live(self, task_id: str) -> Optional[TaskRecord]:
        entry = self._records.get(task_id)
        if entry is None:
            return None
        record, expires_at = entry
        if expires_at <= self._clock():
            self._records.pop(task_id, None)
            return None
        return record

    def _write(self, record: TaskRecord):
        if record.task_id not in self._records and len(self._records) >= self.max_entries:
            self._evict_one()
        self._records[record.task_id] = (record, self._clock() + self.ttl_seconds)

    def _evict_one(self):
        self.sweep()
        if len(self._records) < self.max_entries:
            return
        victim = min(self._records, key=lambda k: self._records[k][1])
        self._records.pop(victim, None)
        logger.warning("[%s] Evicted task result under memory pressure", victim)
