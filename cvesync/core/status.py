"""Sync-status snapshot: store size against the corpus, tracked revision and jobs."""

from __future__ import annotations

import asyncio

from sqlalchemy import func, select

from cvesync.core.database import Database
from cvesync.ingest.corpus import CorpusSyncManager
from cvesync.ingest.cvelist import REVISION_KEY
from cvesync.ingest.persistence import read_sync_value
from cvesync.jobs.controller import JobStatus
from cvesync.models.cve import Cve
from cvesync.models.job import JobRun
from cvesync.schemas.job import JobOut
from cvesync.schemas.status import SyncStatus

# Share of corpus documents that must be stored to report "healthy"
HEALTHY_COMPLETENESS = 95


def count_corpus_documents(corpus: CorpusSyncManager) -> int | None:
    if not corpus.documents_dir.is_dir():
        return None
    return sum(1 for _ in corpus.iter_documents())


async def _job(db: Database, stmt) -> JobOut | None:
    row = await db.fetch_one(stmt.limit(1))
    return JobOut.model_validate(dict(row)) if row is not None else None


async def get_sync_status(db: Database, corpus: CorpusSyncManager) -> SyncStatus:
    record_count = await db.scalar(select(func.count()).select_from(Cve))
    file_count = await asyncio.to_thread(count_corpus_documents, corpus)

    completeness = None
    missing = None
    if file_count:
        completeness = round(record_count * 100 / file_count)
        missing = max(0, file_count - record_count)

    if record_count == 0:
        state = "empty"
    elif completeness is not None and completeness >= HEALTHY_COMPLETENESS:
        state = "healthy"
    else:
        state = "incomplete"

    jobs = select(JobRun.__table__)
    last_job = await _job(
        db,
        jobs.where(JobRun.status != JobStatus.RUNNING.value).order_by(JobRun.finished_at.desc()),
    )
    running_job = await _job(
        db,
        jobs.where(JobRun.status == JobStatus.RUNNING.value).order_by(JobRun.started_at.desc()),
    )

    return SyncStatus(
        record_count=record_count,
        corpus_file_count=file_count,
        completeness_percent=completeness,
        missing_records=missing,
        revision=await read_sync_value(db, REVISION_KEY),
        state=state,
        last_job=last_job,
        running_job=running_job,
    )
