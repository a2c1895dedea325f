"""FastAPI application factory with lifespan management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cvesync import __version__
from cvesync.api.dependencies import get_corpus, get_db
from cvesync.api.routers import cves, jobs
from cvesync.core.config import Settings, get_settings
from cvesync.core.database import Database
from cvesync.core.logging import configure_logging, get_logger
from cvesync.core.status import get_sync_status
from cvesync.ingest.corpus import CorpusSyncManager
from cvesync.ingest.cvelist import CveListIngestor
from cvesync.jobs.controller import JobController
from cvesync.jobs.events import LogHub
from cvesync.schemas.status import HealthOut

logger = get_logger(__name__)


def build_corpus(settings: Settings) -> CorpusSyncManager:
    return CorpusSyncManager(
        settings.corpus_path,
        settings.corpus_repo_url,
        git_binary=settings.git_binary,
        clone_timeout=settings.git_clone_timeout,
        pull_timeout=settings.git_pull_timeout,
        command_timeout=settings.git_command_timeout,
    )


def build_controller(db: Database, settings: Settings, corpus: CorpusSyncManager) -> JobController:
    """Wire the log hub and every ingestor into a controller."""
    ingestors = [CveListIngestor(db, corpus, batch_size=settings.ingest_batch_size)]
    return JobController(
        db,
        LogHub(db),
        ingestors,
        stuck_threshold_minutes=settings.stuck_job_threshold_minutes,
        sweep_interval=settings.stuck_job_check_interval_seconds,
        heartbeat_interval=settings.heartbeat_interval_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    configure_logging()
    settings = get_settings()
    logger.info("Starting cvesync", debug=settings.app_debug, database=settings.database_url)

    db = Database(settings.database_url, recycle_after=settings.db_recycle_after)
    await db.connect()
    await db.create_schema()

    corpus = build_corpus(settings)
    # Orphan recovery happens here, before the first request can start a job
    controller = build_controller(db, settings, corpus)
    await controller.startup()
    logger.info("Ingestors ready", kinds=controller.kinds())

    app.state.db = db
    app.state.controller = controller
    app.state.corpus = corpus

    yield

    # Cleanup
    await controller.shutdown()
    await db.close()
    logger.info("cvesync stopped")


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="cvesync",
        description="Local CVE corpus mirror with observable ingestion jobs",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    api_prefix = "/api/v1"
    app.include_router(jobs.router, prefix=api_prefix)
    app.include_router(cves.router, prefix=api_prefix)

    @app.get(f"{api_prefix}/health", tags=["health"], response_model=HealthOut)
    async def health(
        db: Annotated[Database, Depends(get_db)],
        corpus: Annotated[CorpusSyncManager, Depends(get_corpus)],
    ) -> HealthOut:
        return HealthOut(version=__version__, sync=await get_sync_status(db, corpus))

    return app


app = create_app()
