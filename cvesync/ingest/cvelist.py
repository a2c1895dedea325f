"""CVE List V5 ingestion run — corpus sync, file selection, batched persistence."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from cvesync.core.database import Database
from cvesync.core.logging import get_logger
from cvesync.ingest.base import BaseIngestor, IngestorMetadata
from cvesync.ingest.corpus import CorpusSyncManager, SyncMode
from cvesync.ingest.normalizer import MalformedDocumentError, load_document
from cvesync.ingest.persistence import BatchPersister, read_sync_value, write_sync_value
from cvesync.jobs.controller import JobPhase
from cvesync.models.cve import Cve
from cvesync.schemas.cve import CanonicalCve

if TYPE_CHECKING:
    from cvesync.jobs.controller import JobContext

logger = get_logger(__name__)

REVISION_KEY = "cvelist_revision"


class CveListIngestor(BaseIngestor):
    metadata = IngestorMetadata(
        name="cvelist",
        display_name="CVE List V5",
        version="1.0.0",
        description="Synchronizes the CVE Program's cvelistV5 repository into the local store",
    )

    def __init__(
        self,
        db: Database,
        corpus: CorpusSyncManager,
        *,
        batch_size: int = 500,
        persister: BatchPersister | None = None,
    ) -> None:
        self.db = db
        self.corpus = corpus
        self.batch_size = batch_size
        self.persister = persister or BatchPersister(db)

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        loop = asyncio.get_running_loop()

        # 1. Bring the working copy up to date and pick the mode
        await ctx.set_phase(JobPhase.PREPARING_REPO)
        record_count = await self.db.scalar(select(func.count()).select_from(Cve)) or 0
        stored_revision = await read_sync_value(self.db, REVISION_KEY)
        await ctx.raise_if_cancelled()
        plan = await self.corpus.prepare(record_count, stored_revision, ctx.log)

        summary: dict[str, Any] = {
            "mode": plan.mode.value,
            "from_revision": plan.old_revision,
            "revision": plan.new_revision,
            "files": 0,
            "skipped": 0,
        }

        if plan.no_changes:
            await ctx.log.info("No changes to process", revision=plan.new_revision[:8])
            if stored_revision != plan.new_revision:
                await write_sync_value(self.db, REVISION_KEY, plan.new_revision)
            summary.update(ctx.counts())
            return summary

        # 2. Select the documents to read
        await ctx.set_phase(JobPhase.SCANNING_FILES)
        files: list[Path] | None = None
        if plan.mode is SyncMode.INCREMENTAL and plan.old_revision:
            files = await self.corpus.changed_files(plan.old_revision, plan.new_revision, ctx.log)
        if files is None:
            await ctx.log.info("Scanning corpus for advisory documents")
            files = await loop.run_in_executor(None, lambda: list(self.corpus.iter_documents()))
            summary["mode"] = SyncMode.FULL.value
        summary["files"] = len(files)

        # 3. Normalize and persist, one transaction per batch
        await ctx.set_phase(JobPhase.PROCESSING, total=len(files))
        await ctx.log.info("Processing documents", count=len(files), mode=summary["mode"])

        batch: list[CanonicalCve] = []
        consumed = 0
        for path in files:
            try:
                record = await loop.run_in_executor(None, load_document, path)
            except MalformedDocumentError as exc:
                summary["skipped"] += 1
                await ctx.log.warning("Skipping malformed document", file=path.name, error=str(exc))
            else:
                batch.append(record)
            consumed += 1
            await ctx.beat()

            if consumed >= self.batch_size:
                await self._flush(ctx, batch, consumed)
                batch, consumed = [], 0

        if consumed:
            await self._flush(ctx, batch, consumed)

        # 4. Remember where this run left off
        await ctx.set_phase(JobPhase.FINALIZING)
        await write_sync_value(self.db, REVISION_KEY, plan.new_revision)
        summary.update(ctx.counts())
        await ctx.log.info(
            "Ingestion finished",
            processed=ctx.processed,
            added=ctx.added,
            updated=ctx.updated,
            unchanged=ctx.unchanged,
            skipped=summary["skipped"],
        )
        return summary

    async def _flush(self, ctx: JobContext, batch: list[CanonicalCve], consumed: int) -> None:
        result = await self.persister.process_batch(batch)
        await ctx.record_batch(result, consumed)
        logger.debug(
            "Batch committed",
            job_id=str(ctx.job_id),
            added=result.added,
            updated=result.updated,
            unchanged=result.unchanged,
        )
        # Let API requests and log subscribers run between batches
        await asyncio.sleep(0)
        await ctx.raise_if_cancelled()
