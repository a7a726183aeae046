"""
Audit Trail — structured records of every visibility decision and grant.

Authorization code calls ``AuditTrail.emit`` which only enqueues; a background
consumer delivers entries to the configured sink. A slow or failing sink can
therefore never stall or fail an authorization decision. Delivery problems are
surfaced as warnings.

Security Note:
    Audit entries carry identifiers, ring ids and key names only. Never put
    secret values or credentials in ``details``.
"""
import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Optional, Protocol

import orjson
from pydantic import BaseModel, Field

from .models import utcnow

logger = logging.getLogger("ringvault")

_INSERT_AUDIT = """
INSERT INTO auth.ring_vault_audit
    (ring_id, key_name, operation, actor_identifier, result, details, created_at)
VALUES ($1, $2, $3, $4, $5, $6, $7)
"""


class AuditEntry(BaseModel):
    operation: str
    key_name: Optional[str] = None
    actor_identifier: str
    result: str
    timestamp: datetime = Field(default_factory=utcnow)
    ring_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class AuditSink(Protocol):
    """Append-only destination for audit entries."""

    def record(self, entry: AuditEntry) -> Any:
        ...


class MemoryAuditSink:
    """Keeps entries in a list. Used by tests and local tooling."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def operations(self) -> list[str]:
        return [e.operation for e in self.entries]


class LoggingAuditSink:
    """Writes each entry as one JSON log line."""

    def __init__(self, name: str = "ringvault.audit", level: int = logging.INFO):
        self._logger = logging.getLogger(name)
        self._level = level

    async def record(self, entry: AuditEntry) -> None:
        self._logger.log(
            self._level, "%s", orjson.dumps(entry.model_dump(mode="json")).decode(),
        )


class PostgresAuditSink:
    """Inserts entries through an asyncpg-compatible connection pool."""

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def record(self, entry: AuditEntry) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_AUDIT,
                entry.ring_id,
                entry.key_name,
                entry.operation,
                entry.actor_identifier,
                entry.result,
                orjson.dumps(entry.details).decode(),
                entry.timestamp,
            )


class AuditTrail:
    """Queue between business logic and the audit sink.

    Args:
        sink: Destination with a ``record(entry)`` method (sync or async).
        maxsize: Queue bound; entries emitted while full are dropped with a
            warning.
    """

    def __init__(self, sink: AuditSink, maxsize: int = 1000):
        self._sink = sink
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0
        self.failed = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def emit(self, entry: AuditEntry) -> None:
        """Enqueue an entry without waiting."""
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Audit queue full, dropped entry op=%s key=%s actor=%s",
                entry.operation, entry.key_name, entry.actor_identifier,
            )

    def record(
        self,
        operation: str,
        actor: str,
        result: str,
        key_name: Optional[str] = None,
        ring_id: Optional[str] = None,
        **details: Any,
    ) -> AuditEntry:
        """Build and emit an entry; returns it for convenience."""
        entry = AuditEntry(
            operation=operation,
            key_name=key_name,
            actor_identifier=actor,
            result=result,
            ring_id=ring_id,
            details=details,
        )
        self.emit(entry)
        return entry

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def _deliver(self, entry: AuditEntry) -> None:
        try:
            result = self._sink.record(entry)
            if inspect.isawaitable(result):
                await result
        except Exception as err:
            self.failed += 1
            logger.warning(
                "Audit sink failed for op=%s key=%s: %s",
                entry.operation, entry.key_name, err,
            )

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._deliver(entry)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        """Start the background consumer on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def flush(self) -> None:
        """Wait until every queued entry has been handed to the sink."""
        if self._task is not None and not self._task.done():
            await self._queue.join()
            return
        while not self._queue.empty():
            entry = self._queue.get_nowait()
            try:
                await self._deliver(entry)
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """Flush pending entries and stop the consumer."""
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def __aenter__(self) -> "AuditTrail":
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
