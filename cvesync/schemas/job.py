"""Schemas for ingestion jobs and their log entries."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobCreate(BaseModel):
    kind: str = Field(default="cvelist", description="Registered ingestor name")


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    kind: str
    status: str
    current_phase: str | None
    started_at: datetime
    finished_at: datetime | None
    last_heartbeat: datetime | None
    cancel_requested: bool
    progress_percent: int
    total_files: int | None
    items_processed: int
    items_added: int
    items_updated: int
    items_unchanged: int
    summary: dict[str, Any] | None
    error_msg: str | None


class JobList(BaseModel):
    total: int
    items: list[JobOut]


class LogEntry(BaseModel):
    """One job log line, as stored and as pushed to live subscribers."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: uuid.UUID
    timestamp: datetime
    level: str
    message: str
    details: dict[str, Any] | None = None


class CancelResult(BaseModel):
    id: uuid.UUID
    cancelled: bool
