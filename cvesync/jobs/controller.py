"""Background job lifecycle — start, progress, cancellation and recovery.

A job row is created RUNNING before any corpus I/O and only ever leaves
that state once, to COMPLETED or FAILED. Every status write is guarded by
``status == RUNNING`` so the run itself, the stuck-job sweep and startup
recovery can never overwrite each other's terminal outcome.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, insert, select, update

from cvesync.core.database import Database
from cvesync.core.logging import get_logger
from cvesync.ingest.base import BaseIngestor
from cvesync.jobs.events import JobLogger, LogHub, LogSubscription
from cvesync.models.job import JobRun
from cvesync.schemas.job import JobOut, LogEntry

if TYPE_CHECKING:
    from cvesync.ingest.persistence import BatchResult

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"
ORPHANED_MESSAGE = "Orphaned job - process restarted"
SHUTDOWN_MESSAGE = "Interrupted by shutdown"


class JobStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobPhase(str, Enum):
    INITIALIZING = "INITIALIZING"
    PREPARING_REPO = "PREPARING_REPO"
    SCANNING_FILES = "SCANNING_FILES"
    PROCESSING = "PROCESSING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"


class JobCancelled(Exception):
    """Raised by a run at a batch boundary once cancellation was observed."""


class UnknownJobKindError(KeyError):
    """No ingestor is registered under the requested job kind."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timezone-aware columns back naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class JobContext:
    """Handle a running ingestor uses to report progress and poll cancellation."""

    def __init__(
        self,
        controller: JobController,
        job_id: uuid.UUID,
        token: CancellationToken,
        log: JobLogger,
    ) -> None:
        self.controller = controller
        self.job_id = job_id
        self.token = token
        self.log = log
        self.phase = JobPhase.INITIALIZING
        self.total: int | None = None
        self.consumed = 0
        self.added = 0
        self.updated = 0
        self.unchanged = 0
        self._last_beat = time.monotonic()

    @property
    def processed(self) -> int:
        return self.added + self.updated + self.unchanged

    @property
    def progress_percent(self) -> int:
        if not self.total:
            return 0
        return min(99, self.consumed * 100 // self.total)

    def counts(self) -> dict[str, int]:
        return {
            "items_processed": self.processed,
            "items_added": self.added,
            "items_updated": self.updated,
            "items_unchanged": self.unchanged,
        }

    async def set_phase(self, phase: JobPhase, *, total: int | None = None) -> None:
        self.phase = phase
        values: dict[str, Any] = {"current_phase": phase.value}
        if total is not None:
            self.total = total
            values["total_files"] = total
        await self.controller._touch(self.job_id, **values)
        self._last_beat = time.monotonic()

    async def record_batch(self, result: BatchResult, size: int) -> None:
        """Account for one committed batch of ``size`` consumed documents."""
        self.consumed += size
        self.added += result.added
        self.updated += result.updated
        self.unchanged += result.unchanged
        await self.controller._touch(
            self.job_id, progress_percent=self.progress_percent, **self.counts()
        )
        self._last_beat = time.monotonic()

    async def beat(self) -> None:
        """Refresh the heartbeat if the last one is older than the configured interval."""
        if time.monotonic() - self._last_beat < self.controller.heartbeat_interval:
            return
        await self.controller._touch(self.job_id)
        self._last_beat = time.monotonic()

    async def cancellation_requested(self) -> bool:
        if self.token.cancelled:
            return True
        flagged = await self.controller.db.scalar(
            select(JobRun.cancel_requested).where(JobRun.id == self.job_id)
        )
        if flagged:
            self.token.cancel()
        return bool(flagged)

    async def raise_if_cancelled(self) -> None:
        """Call only between batches, never while one is being written."""
        if await self.cancellation_requested():
            raise JobCancelled(CANCELLED_MESSAGE)


class JobController:
    def __init__(
        self,
        db: Database,
        hub: LogHub,
        ingestors: Iterable[BaseIngestor],
        *,
        stuck_threshold_minutes: int = 10,
        sweep_interval: float = 60,
        heartbeat_interval: float = 5.0,
    ) -> None:
        self.db = db
        self.hub = hub
        self.ingestors: dict[str, BaseIngestor] = {i.metadata.name: i for i in ingestors}
        self.stuck_threshold_minutes = stuck_threshold_minutes
        self.sweep_interval = sweep_interval
        self.heartbeat_interval = heartbeat_interval
        self._tasks: dict[uuid.UUID, asyncio.Task[None]] = {}
        self._tokens: dict[uuid.UUID, CancellationToken] = {}
        self._recovered = False
        self._recovery_lock = asyncio.Lock()
        self._monitor: asyncio.Task[None] | None = None

    def kinds(self) -> list[str]:
        return sorted(self.ingestors)

    # ── Lifecycle of the controller itself ───────────────────────────────────

    async def startup(self) -> None:
        """Fail jobs left RUNNING by a previous process, then start the stuck-job monitor."""
        from cvesync.core.scheduler import stuck_job_monitor

        await self._ensure_recovered()
        if self._monitor is None:
            self._monitor = asyncio.create_task(
                stuck_job_monitor(self, self.sweep_interval),
                name="stuck-job-monitor",
            )

    async def shutdown(self) -> None:
        if self._monitor is not None:
            self._monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._monitor
            self._monitor = None

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Operations ───────────────────────────────────────────────────────────

    async def start_job(self, kind: str) -> uuid.UUID:
        """Create a RUNNING job and spawn its run; returns without waiting for it."""
        ingestor = self.ingestors.get(kind)
        if ingestor is None:
            raise UnknownJobKindError(kind)

        await self._ensure_recovered()

        job_id = uuid.uuid4()
        now = _utcnow()
        await self.db.execute(
            insert(JobRun).values(
                id=job_id,
                kind=kind,
                status=JobStatus.RUNNING.value,
                current_phase=JobPhase.INITIALIZING.value,
                started_at=now,
                last_heartbeat=now,
            )
        )

        token = CancellationToken()
        self._tokens[job_id] = token
        task = asyncio.create_task(
            self._execute(job_id, ingestor, token),
            name=f"job-{kind}-{job_id}",
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        logger.info("Job started", job_id=str(job_id), kind=kind)
        return job_id

    async def cancel_job(self, job_id: uuid.UUID) -> bool:
        """Request cancellation; False when the job is unknown or already terminal."""
        updated = await self.db.execute(
            update(JobRun)
            .where(JobRun.id == job_id, JobRun.status == JobStatus.RUNNING.value)
            .values(cancel_requested=True)
        )
        if not updated:
            return False
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        await self.hub.append(job_id, "WARNING", "Cancellation requested")
        return True

    async def get_job(self, job_id: uuid.UUID) -> JobOut | None:
        row = await self.db.fetch_one(select(JobRun.__table__).where(JobRun.id == job_id))
        return JobOut.model_validate(dict(row)) if row is not None else None

    async def list_jobs(self, limit: int = 50) -> list[JobOut]:
        rows = await self.db.fetch_all(
            select(JobRun.__table__).order_by(JobRun.started_at.desc()).limit(limit)
        )
        return [JobOut.model_validate(dict(row)) for row in rows]

    async def count_jobs(self) -> int:
        return await self.db.scalar(select(func.count()).select_from(JobRun))

    async def get_logs(self, job_id: uuid.UUID) -> list[LogEntry]:
        return await self.hub.get_logs(job_id)

    async def subscribe_logs(
        self, job_id: uuid.UUID
    ) -> tuple[list[LogEntry], LogSubscription]:
        """Replay plus live stream; the stream ends when the job is terminal."""
        replay, sub = await self.hub.subscribe(job_id)
        job = await self.get_job(job_id)
        if job is None or job.status != JobStatus.RUNNING.value:
            sub.close()
        return replay, sub

    async def wait(self, job_id: uuid.UUID) -> JobOut | None:
        """Block until this process's run of ``job_id`` is over, then return its row."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return await self.get_job(job_id)

    # ── Supervisory corrections ──────────────────────────────────────────────

    async def _ensure_recovered(self) -> None:
        async with self._recovery_lock:
            if not self._recovered:
                await self.recover_orphans()

    async def recover_orphans(self) -> list[uuid.UUID]:
        """Fail every RUNNING job not owned by a run of this process."""
        stmt = select(JobRun.id).where(JobRun.status == JobStatus.RUNNING.value)
        if self._tasks:
            stmt = stmt.where(JobRun.id.not_in(list(self._tasks)))
        rows = await self.db.fetch_all(stmt)
        orphaned = [row["id"] for row in rows]

        now = _utcnow()
        for job_id in orphaned:
            if await self._terminate(job_id, JobStatus.FAILED, now, error_msg=ORPHANED_MESSAGE):
                await self.hub.append(job_id, "ERROR", ORPHANED_MESSAGE)
        if orphaned:
            logger.warning("Orphaned jobs marked as failed", count=len(orphaned))
        self._recovered = True
        return orphaned

    async def sweep_stuck(self, now: datetime | None = None) -> list[uuid.UUID]:
        """Fail RUNNING jobs whose heartbeat is older than the stuck threshold."""
        now = now or _utcnow()
        cutoff = now - timedelta(minutes=self.stuck_threshold_minutes)
        rows = await self.db.fetch_all(
            select(JobRun.id, JobRun.last_heartbeat, JobRun.started_at).where(
                JobRun.status == JobStatus.RUNNING.value
            )
        )
        message = f"Job detected as stuck (no heartbeat for {self.stuck_threshold_minutes}+ minutes)"

        stuck: list[uuid.UUID] = []
        for row in rows:
            last_seen = _as_utc(row["last_heartbeat"] or row["started_at"])
            if last_seen >= cutoff:
                continue
            if not await self._terminate(row["id"], JobStatus.FAILED, now, error_msg=message):
                continue
            stuck.append(row["id"])
            token = self._tokens.get(row["id"])
            if token is not None:
                token.cancel()
            await self.hub.append(row["id"], "ERROR", message)
            self.hub.finish(row["id"])
            logger.warning("Stuck job marked as failed", job_id=str(row["id"]), last_heartbeat=str(last_seen))
        return stuck

    # ── Run execution ────────────────────────────────────────────────────────

    async def _execute(
        self, job_id: uuid.UUID, ingestor: BaseIngestor, token: CancellationToken
    ) -> None:
        log = JobLogger(self.hub, job_id)
        ctx = JobContext(self, job_id, token, log)
        try:
            await log.info("Job started", kind=ingestor.metadata.name)
            summary = await ingestor.run(ctx)
        except JobCancelled:
            await self._finish(ctx, JobStatus.FAILED, error_msg=CANCELLED_MESSAGE)
            await self._safe_log(log.warning, "Job cancelled", processed=ctx.processed)
        except asyncio.CancelledError:
            await self._finish(ctx, JobStatus.FAILED, error_msg=SHUTDOWN_MESSAGE)
            raise
        except Exception as exc:
            logger.exception("Job failed", job_id=str(job_id))
            await self._finish(ctx, JobStatus.FAILED, error_msg=str(exc) or type(exc).__name__)
            await self._safe_log(log.error, "Job failed", error=str(exc))
        else:
            await self._finish(ctx, JobStatus.COMPLETED, summary=summary)
            await self._safe_log(log.info, "Job completed", **ctx.counts())
        finally:
            self._tokens.pop(job_id, None)
            self.hub.finish(job_id)

    async def _finish(self, ctx: JobContext, status: JobStatus, **values: Any) -> None:
        values.update(ctx.counts())
        if status is JobStatus.COMPLETED:
            values.update(current_phase=JobPhase.COMPLETED.value, progress_percent=100)
        try:
            await self._terminate(ctx.job_id, status, _utcnow(), **values)
        except Exception:
            logger.exception("Could not record job outcome", job_id=str(ctx.job_id), status=status.value)

    @staticmethod
    async def _safe_log(method: Any, message: str, **details: Any) -> None:
        try:
            await method(message, **details)
        except Exception:
            logger.exception("Could not append job log entry", message=message)

    async def _terminate(
        self, job_id: uuid.UUID, status: JobStatus, now: datetime, **values: Any
    ) -> bool:
        updated = await self.db.execute(
            update(JobRun)
            .where(JobRun.id == job_id, JobRun.status == JobStatus.RUNNING.value)
            .values(status=status.value, finished_at=now, last_heartbeat=now, **values)
        )
        return bool(updated)

    async def _touch(self, job_id: uuid.UUID, **values: Any) -> None:
        await self.db.execute(
            update(JobRun)
            .where(JobRun.id == job_id, JobRun.status == JobStatus.RUNNING.value)
            .values(last_heartbeat=_utcnow(), **values)
        )
