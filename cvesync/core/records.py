"""Point lookup of a stored vulnerability record for the query layer."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncConnection

from cvesync.core.database import Database
from cvesync.models.change import CveChange
from cvesync.models.cve import Cve
from cvesync.models.satellites import AffectedProduct, CveReference, Metric, Remediation, Weakness
from cvesync.schemas.cve import (
    AffectedEntry,
    ChangeOut,
    CveDetail,
    Reference,
    RemediationText,
    SeverityMetric,
    WeaknessEntry,
)

CHANGE_HISTORY_LIMIT = 50


async def get_record(db: Database, cve_id: str) -> CveDetail | None:
    """Return the record with all satellites and its most recent changes, or None."""
    cve_id = cve_id.strip().upper()

    async def _load(conn: AsyncConnection) -> CveDetail | None:
        record = (
            await conn.execute(select(Cve.__table__).where(Cve.id == cve_id))
        ).mappings().first()
        if record is None:
            return None

        async def _rows(model: type) -> list:
            result = await conn.execute(
                select(model.__table__).where(model.cve_id == cve_id).order_by(model.id)
            )
            return list(result.mappings())

        changes = (
            await conn.execute(
                select(CveChange.change_date, CveChange.diff)
                .where(CveChange.cve_id == cve_id)
                .order_by(CveChange.id.desc())
                .limit(CHANGE_HISTORY_LIMIT)
            )
        ).mappings().all()

        return CveDetail(
            id=record["id"],
            title=record["title"],
            description=record["description"],
            assigner=record["assigner"],
            vuln_status=record["vuln_status"],
            published=record["published"],
            last_modified=record["last_modified"],
            cvss_version=record["cvss_version"],
            cvss_score=record["cvss_score"],
            cvss_severity=record["cvss_severity"],
            cvss_vector=record["cvss_vector"],
            normalized_hash=record["normalized_hash"],
            metrics=[
                SeverityMetric(
                    version=m["cvss_version"],
                    score=m["score"],
                    severity=m["severity"],
                    vector=m["vector_string"],
                    source=m["source"],
                )
                for m in await _rows(Metric)
            ],
            references=[
                Reference(url=r["url"], tags=r["tags"] or []) for r in await _rows(CveReference)
            ],
            reference_urls=record["payload"].get("reference_urls", []),
            affected=[
                AffectedEntry(
                    vendor=a["vendor"],
                    product=a["product"],
                    default_status=a["default_status"],
                    modules=a["modules"] or [],
                    versions=a["versions"] or [],
                )
                for a in await _rows(AffectedProduct)
            ],
            remediations=[
                RemediationText(kind=r["kind"], text=r["text"], language=r["language"])
                for r in await _rows(Remediation)
            ],
            weaknesses=[
                WeaknessEntry(cwe_id=w["cwe_id"], description=w["description"])
                for w in await _rows(Weakness)
            ],
            change_history=[ChangeOut(**dict(c)) for c in changes],
        )

    return await db.run(_load)
