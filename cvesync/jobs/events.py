"""Per-job log with replay-then-stream fan-out.

Entries are persisted in ``job_logs`` and pushed to every live subscriber
of the same job. ``append`` and ``subscribe`` share one lock, so a
subscriber's replay snapshot and its registration happen in the same
critical section: each entry reaches it exactly once, either in the replay
or on the live queue.

Usage:
    replay, sub = await hub.subscribe(job_id)
    async with sub:
        for entry in replay:
            ...
        async for entry in sub:
            ...
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncConnection

from cvesync.core.database import Database
from cvesync.core.logging import get_logger
from cvesync.models.job import JobLog
from cvesync.schemas.job import LogEntry

logger = get_logger(__name__)


class LogSubscription:
    """Live stream of one job's entries appended after subscription."""

    def __init__(self, hub: LogHub, job_id: uuid.UUID) -> None:
        self.hub = hub
        self.job_id = job_id
        self._queue: asyncio.Queue[LogEntry | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, entry: LogEntry) -> None:
        if not self._closed:
            self._queue.put_nowait(entry)

    async def get(self, timeout: float | None = None) -> LogEntry | None:
        """Next live entry, or None when ``timeout`` elapses first.

        Raises StopAsyncIteration when the subscription is closed and drained.
        """
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        try:
            entry = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if entry is None:
            raise StopAsyncIteration
        return entry

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.hub._unregister(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> LogSubscription:
        return self

    async def __anext__(self) -> LogEntry:
        entry = await self.get()
        if entry is None:
            raise StopAsyncIteration
        return entry

    async def __aenter__(self) -> LogSubscription:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()


class LogHub:
    def __init__(self, db: Database) -> None:
        self.db = db
        self._lock = asyncio.Lock()
        self._subscribers: dict[uuid.UUID, set[LogSubscription]] = defaultdict(set)

    async def append(
        self,
        job_id: uuid.UUID,
        level: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Persist an entry, then push it to the job's live subscribers."""
        level = level.upper()
        timestamp = datetime.now(timezone.utc)

        async def _insert(conn: AsyncConnection) -> int:
            result = await conn.execute(
                insert(JobLog).values(
                    job_id=job_id,
                    timestamp=timestamp,
                    level=level,
                    message=message,
                    details=details,
                )
            )
            return result.inserted_primary_key[0]

        async with self._lock:
            entry_id = await self.db.run(_insert)
            entry = LogEntry(
                id=entry_id,
                job_id=job_id,
                timestamp=timestamp,
                level=level,
                message=message,
                details=details,
            )
            for sub in list(self._subscribers.get(job_id, ())):
                sub._push(entry)

        self._mirror(entry)
        return entry

    async def subscribe(self, job_id: uuid.UUID) -> tuple[list[LogEntry], LogSubscription]:
        """Return every stored entry plus a subscription for the ones that follow."""
        async with self._lock:
            replay = await self._fetch(job_id)
            sub = LogSubscription(self, job_id)
            self._subscribers[job_id].add(sub)
        return replay, sub

    async def get_logs(self, job_id: uuid.UUID) -> list[LogEntry]:
        return await self._fetch(job_id)

    def finish(self, job_id: uuid.UUID) -> None:
        """End every live subscription of a job that reached a terminal state."""
        for sub in list(self._subscribers.get(job_id, ())):
            sub.close()

    def subscriber_count(self, job_id: uuid.UUID) -> int:
        return len(self._subscribers.get(job_id, ()))

    def _unregister(self, sub: LogSubscription) -> None:
        subs = self._subscribers.get(sub.job_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.job_id]

    async def _fetch(self, job_id: uuid.UUID) -> list[LogEntry]:
        rows = await self.db.fetch_all(
            select(JobLog.__table__).where(JobLog.job_id == job_id).order_by(JobLog.id)
        )
        return [LogEntry.model_validate(dict(row)) for row in rows]

    @staticmethod
    def _mirror(entry: LogEntry) -> None:
        log = {
            "WARNING": logger.warning,
            "ERROR": logger.error,
        }.get(entry.level, logger.info)
        log(entry.message, job_id=str(entry.job_id), details=entry.details)


class JobLogger:
    """Log handle bound to one job, given to ingestion runs."""

    def __init__(self, hub: LogHub, job_id: uuid.UUID) -> None:
        self.hub = hub
        self.job_id = job_id

    async def info(self, message: str, **details: Any) -> LogEntry:
        return await self.hub.append(self.job_id, "INFO", message, details or None)

    async def warning(self, message: str, **details: Any) -> LogEntry:
        return await self.hub.append(self.job_id, "WARNING", message, details or None)

    async def error(self, message: str, **details: Any) -> LogEntry:
        return await self.hub.append(self.job_id, "ERROR", message, details or None)
