"""Schemas for the health endpoint's sync-status snapshot."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from cvesync.schemas.job import JobOut


class SyncStatus(BaseModel):
    record_count: int
    corpus_file_count: int | None = Field(None, description="None when no working copy exists")
    completeness_percent: int | None = None
    missing_records: int | None = None
    revision: str | None = Field(None, description="Upstream revision the store reflects")
    state: Literal["empty", "incomplete", "healthy"]
    last_job: JobOut | None = Field(None, description="Most recently finished job")
    running_job: JobOut | None = None


class HealthOut(BaseModel):
    status: str = "ok"
    version: str
    sync: SyncStatus
