"""
Usage log: one persisted row per completed AI request.

UsageRepository reads and writes the usage_records / user_quotas tables.
UsageRecorder puts writes on a bounded background queue so recording never
blocks or fails a request; dropped and failed writes are logged and counted.
"""

from __future__ import annotations

import queue
import sqlite3
import threading
import time
from dataclasses import dataclass, field

from storyloom.config import USAGE_QUEUE_MAX
from storyloom.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter

logger = get_logger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    user_id: str
    endpoint: str
    tokens_in: int | None = None
    tokens_out: int | None = None
    estimated_cost_usd: float | None = None
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class QuotaOverride:
    daily_requests: int | None
    monthly_requests: int | None


class UsageRepository:
    """SQLite access for usage records and per-user quota overrides."""

    @retry_on_db_lock()
    def insert(self, record: UsageRecord) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO usage_records
                    (user_id, endpoint, tokens_in, tokens_out, estimated_cost_usd, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.endpoint,
                    record.tokens_in,
                    record.tokens_out,
                    record.estimated_cost_usd,
                    record.created_at,
                ),
            )

    def count_since(self, user_id: str, since: float) -> int:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM usage_records WHERE user_id = ? AND created_at >= ?",
                (user_id, since),
            ).fetchone()
        return int(row[0]) if row else 0

    def get_quota_override(self, user_id: str) -> QuotaOverride | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT daily_requests, monthly_requests FROM user_quotas WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return QuotaOverride(daily_requests=row[0], monthly_requests=row[1])


_STOP = object()


class UsageRecorder:
    """
    Best-effort, non-blocking usage recording.

    record() never raises: a full queue drops the record, a failed write is
    logged. Both are counted (usage.dropped / usage.write_failed) so lost
    records show up in telemetry instead of disappearing.
    """

    def __init__(
        self,
        repository: UsageRepository | None = None,
        maxsize: int = USAGE_QUEUE_MAX,
    ) -> None:
        self.repository = repository or UsageRepository()
        self._queue: queue.Queue[object] = queue.Queue(maxsize=maxsize)
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._drain, name="usage-recorder", daemon=True
            )
            self._thread.start()

    def record(
        self,
        user_id: str,
        endpoint: str,
        tokens_in: int | None = None,
        tokens_out: int | None = None,
        estimated_cost_usd: float | None = None,
    ) -> None:
        self.start()
        item = UsageRecord(user_id, endpoint, tokens_in, tokens_out, estimated_cost_usd)
        try:
            self._queue.put_nowait(item)
        except queue.Full:
            counter("usage.dropped")
            logger.warning("Usage queue full, dropping record for endpoint %s", endpoint)

    def _write(self, item: UsageRecord) -> None:
        try:
            self.repository.insert(item)
            counter("usage.recorded")
        except (sqlite3.Error, RuntimeError, FileNotFoundError) as e:
            counter("usage.write_failed")
            logger.error("Failed to record usage for %s: %s", item.endpoint, e)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, UsageRecord):
                    self._write(item)
            finally:
                self._queue.task_done()

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until queued records are written (tests, shutdown). False on timeout."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is not None and thread.is_alive():
            self._queue.put(_STOP)
            thread.join(timeout=5.0)
