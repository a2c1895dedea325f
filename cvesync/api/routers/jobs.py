"""Jobs API router — start, inspect and cancel ingestion runs, read and stream their logs."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from cvesync.api.dependencies import get_controller
from cvesync.core.config import get_settings
from cvesync.core.logging import get_logger
from cvesync.jobs.controller import JobController, UnknownJobKindError
from cvesync.jobs.events import LogSubscription
from cvesync.schemas.job import CancelResult, JobCreate, JobList, JobOut, LogEntry

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = get_logger(__name__)

ControllerDep = Annotated[JobController, Depends(get_controller)]

# Seconds of silence before a keep-alive comment is sent on a log stream
KEEPALIVE_SECONDS = 15.0


@router.get("", response_model=JobList)
async def list_jobs(
    controller: ControllerDep,
    limit: int | None = Query(None, ge=1, le=500, description="Defaults to JOBS_LIST_LIMIT"),
) -> JobList:
    items = await controller.list_jobs(limit or get_settings().jobs_list_limit)
    total = await controller.count_jobs()
    return JobList(total=total, items=items)


@router.post("", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED)
async def start_job(payload: JobCreate, controller: ControllerDep) -> JobOut:
    try:
        job_id = await controller.start_job(payload.kind)
    except UnknownJobKindError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown job kind: {payload.kind!r}. Available: {controller.kinds()}",
        )
    job = await controller.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: uuid.UUID, controller: ControllerDep) -> JobOut:
    job = await controller.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.post("/{job_id}/cancel", response_model=CancelResult)
async def cancel_job(job_id: uuid.UUID, controller: ControllerDep) -> CancelResult:
    if await controller.cancel_job(job_id):
        logger.info("Job cancellation requested", job_id=str(job_id))
        return CancelResult(id=job_id, cancelled=True)
    if await controller.get_job(job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job is not running")


@router.get("/{job_id}/logs", response_model=list[LogEntry])
async def get_job_logs(job_id: uuid.UUID, controller: ControllerDep) -> list[LogEntry]:
    if await controller.get_job(job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return await controller.get_logs(job_id)


@router.get("/{job_id}/logs/stream")
async def stream_job_logs(job_id: uuid.UUID, controller: ControllerDep) -> StreamingResponse:
    """Server-sent events: every stored entry, then live ones until the job ends."""
    if await controller.get_job(job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    replay, sub = await controller.subscribe_logs(job_id)
    return StreamingResponse(
        _event_stream(replay, sub),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _sse(entry: LogEntry) -> str:
    return f"id: {entry.id}\nevent: log\ndata: {entry.model_dump_json()}\n\n"


async def _event_stream(replay: list[LogEntry], sub: LogSubscription) -> AsyncIterator[str]:
    async with sub:
        for entry in replay:
            yield _sse(entry)
        while True:
            try:
                entry = await sub.get(timeout=KEEPALIVE_SECONDS)
            except StopAsyncIteration:
                break
            if entry is None:
                yield ": keep-alive\n\n"
                continue
            yield _sse(entry)
    yield "event: end\ndata: {}\n\n"
