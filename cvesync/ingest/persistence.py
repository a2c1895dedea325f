"""Diff-upsert of normalized records, one atomic transaction per batch."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncConnection

from cvesync.core.database import Database
from cvesync.core.hashing import compute_hash, diff_records
from cvesync.core.logging import get_logger
from cvesync.models.change import CveChange
from cvesync.models.cve import Cve
from cvesync.models.satellites import AffectedProduct, CveReference, Metric, Remediation, Weakness
from cvesync.models.sync_metadata import SyncMetadata
from cvesync.schemas.cve import CanonicalCve

logger = get_logger(__name__)


@dataclass
class BatchResult:
    added: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def changed(self) -> int:
        return self.added + self.updated

    @property
    def processed(self) -> int:
        return self.added + self.updated + self.unchanged


def _dialect_insert(conn: AsyncConnection, model: type) -> Any:
    """INSERT construct supporting ``on_conflict_do_update`` for the connected dialect."""
    dialect = conn.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported on dialect {dialect!r}")


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _record_row(record: CanonicalCve, payload: dict[str, Any], digest: str) -> dict[str, Any]:
    return {
        "id": record.id,
        "title": record.title,
        "description": record.description,
        "assigner": record.assigner,
        "vuln_status": record.vuln_status,
        "published": _parse_timestamp(record.published),
        "last_modified": _parse_timestamp(record.last_modified),
        "cvss_version": record.cvss_version,
        "cvss_score": record.cvss_score,
        "cvss_severity": record.cvss_severity,
        "cvss_vector": record.cvss_vector,
        "normalized_hash": digest,
        "payload": payload,
    }


def _satellite_rows(record: CanonicalCve) -> dict[type, list[dict[str, Any]]]:
    cve_id = record.id
    return {
        Metric: [
            {
                "cve_id": cve_id,
                "cvss_version": m.version,
                "score": m.score,
                "severity": m.severity,
                "vector_string": m.vector,
                "source": m.source,
            }
            for m in record.metrics
        ],
        CveReference: [
            {"cve_id": cve_id, "url": r.url, "tags": list(r.tags)} for r in record.references
        ],
        AffectedProduct: [
            {
                "cve_id": cve_id,
                "vendor": a.vendor,
                "product": a.product,
                "default_status": a.default_status,
                "modules": list(a.modules),
                "versions": [v.model_dump(mode="json") for v in a.versions],
            }
            for a in record.affected
        ],
        Remediation: [
            {"cve_id": cve_id, "kind": r.kind, "text": r.text, "language": r.language}
            for r in record.remediations
        ],
        Weakness: [
            {"cve_id": cve_id, "cwe_id": w.cwe_id, "description": w.description}
            for w in record.weaknesses
        ],
    }


class BatchPersister:
    """Writes batches of canonical records through a ``Database``.

    Per record: an unchanged content hash is a no-op; otherwise a change
    record is appended (when a previous payload exists and differs), the
    record row is upserted and every satellite table is replaced wholesale
    for that id. The whole batch is one transaction, so a failure leaves no
    trace of it and propagates to the caller.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def process_batch(self, records: Sequence[CanonicalCve]) -> BatchResult:
        if not records:
            return BatchResult()

        async def _work(conn: AsyncConnection) -> BatchResult:
            return await self._apply(conn, records)

        result = await self.db.transaction(_work)
        logger.debug(
            "Batch persisted",
            size=len(records),
            added=result.added,
            updated=result.updated,
            unchanged=result.unchanged,
        )
        return result

    async def _apply(self, conn: AsyncConnection, records: Sequence[CanonicalCve]) -> BatchResult:
        ids = sorted({r.id for r in records})
        rows = await conn.execute(
            select(Cve.id, Cve.normalized_hash, Cve.payload).where(Cve.id.in_(ids))
        )
        stored: dict[str, tuple[str, dict[str, Any] | None]] = {
            row.id: (row.normalized_hash, row.payload) for row in rows
        }

        result = BatchResult()
        now = datetime.now(timezone.utc)
        for record in records:
            payload = record.to_payload()
            digest = compute_hash(payload)
            previous = stored.get(record.id)

            if previous is not None and previous[0] == digest:
                result.unchanged += 1
                continue

            if previous is None:
                result.added += 1
            else:
                result.updated += 1
                old_payload = previous[1]
                if old_payload:
                    diff = diff_records(old_payload, payload)
                    if diff:
                        await conn.execute(
                            insert(CveChange).values(cve_id=record.id, change_date=now, diff=diff)
                        )

            await self._upsert(conn, _record_row(record, payload, digest))
            await self._replace_satellites(conn, record)
            # A repeated id later in the same batch compares against this version
            stored[record.id] = (digest, payload)

        return result

    async def _upsert(self, conn: AsyncConnection, row: dict[str, Any]) -> None:
        stmt = _dialect_insert(conn, Cve).values(**row)
        updates = {k: stmt.excluded[k] for k in row if k != "id"}
        updates["updated_at"] = func.now()
        await conn.execute(stmt.on_conflict_do_update(index_elements=[Cve.id], set_=updates))

    @staticmethod
    async def _replace_satellites(conn: AsyncConnection, record: CanonicalCve) -> None:
        for model, rows in _satellite_rows(record).items():
            await conn.execute(delete(model).where(model.cve_id == record.id))
            if rows:
                await conn.execute(insert(model), rows)


# ── Sync metadata ────────────────────────────────────────────────────────────


async def read_sync_value(db: Database, key: str) -> str | None:
    return await db.scalar(select(SyncMetadata.value).where(SyncMetadata.key == key))


async def write_sync_value(db: Database, key: str, value: str) -> None:
    """Insert or overwrite one key of the sync metadata table."""

    async def _op(conn: AsyncConnection) -> None:
        stmt = _dialect_insert(conn, SyncMetadata).values(key=key, value=value)
        await conn.execute(
            stmt.on_conflict_do_update(
                index_elements=[SyncMetadata.key],
                set_={"value": stmt.excluded.value, "updated_at": func.now()},
            )
        )

    await db.run(_op)
