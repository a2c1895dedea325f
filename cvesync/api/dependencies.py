"""FastAPI dependency providers.

The services live on ``app.state`` (created in the lifespan); tests swap
them through ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Request

from cvesync.core.database import Database
from cvesync.ingest.corpus import CorpusSyncManager
from cvesync.jobs.controller import JobController


def get_db(request: Request) -> Database:
    """Return the application's storage access layer."""
    return request.app.state.db


def get_controller(request: Request) -> JobController:
    """Return the application's job controller."""
    return request.app.state.controller


def get_corpus(request: Request) -> CorpusSyncManager:
    """Return the working copy of the upstream corpus."""
    return request.app.state.corpus
