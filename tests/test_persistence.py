"""Tests for ingest/persistence.py and core/records.py — diff-upsert and lookup."""

from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from cvesync.core.records import get_record
from cvesync.ingest.normalizer import normalize_document
from cvesync.ingest.persistence import BatchPersister, read_sync_value, write_sync_value
from cvesync.models.change import CveChange
from cvesync.models.cve import Cve
from cvesync.models.satellites import AffectedProduct, CveReference, Metric, Weakness


async def _count(db, model, **where) -> int:
    stmt = select(func.count()).select_from(model)
    for column, value in where.items():
        stmt = stmt.where(getattr(model, column) == value)
    return await db.scalar(stmt)


def _products(n: int) -> list[dict]:
    return [{"vendor": "acme", "product": f"widget-{i}"} for i in range(n)]


@pytest.mark.asyncio
async def test_new_records_are_added(db, persister, make_document):
    records = [normalize_document(make_document(f"CVE-2024-000{i}")) for i in range(3)]
    result = await persister.process_batch(records)

    assert (result.added, result.updated, result.unchanged) == (3, 0, 0)
    assert result.changed == 3
    assert await _count(db, Cve) == 3
    assert await _count(db, Metric) == 3
    assert await _count(db, CveReference) == 3
    assert await _count(db, Weakness) == 3
    assert await _count(db, CveChange) == 0


@pytest.mark.asyncio
async def test_identical_batch_is_idempotent(db, persister, make_document):
    records = [normalize_document(make_document(f"CVE-2024-000{i}")) for i in range(3)]
    await persister.process_batch(records)
    before = await db.fetch_all(select(Cve.id, Cve.normalized_hash, Cve.payload).order_by(Cve.id))

    second = await persister.process_batch(records)

    assert second.changed == 0
    assert second.unchanged == 3
    after = await db.fetch_all(select(Cve.id, Cve.normalized_hash, Cve.payload).order_by(Cve.id))
    assert [dict(r) for r in after] == [dict(r) for r in before]
    assert await _count(db, AffectedProduct) == 3
    assert await _count(db, CveChange) == 0


@pytest.mark.asyncio
async def test_update_appends_change_record(db, persister, make_document):
    await persister.process_batch([normalize_document(make_document(description="old text"))])
    result = await persister.process_batch([normalize_document(make_document(description="new text"))])

    assert result.updated == 1
    changes = await db.fetch_all(select(CveChange.cve_id, CveChange.diff))
    assert len(changes) == 1
    assert changes[0]["cve_id"] == "CVE-2024-0001"
    assert changes[0]["diff"] == {"description": {"from": "old text", "to": "new text"}}
    stored = await db.scalar(select(Cve.description).where(Cve.id == "CVE-2024-0001"))
    assert stored == "new text"


@pytest.mark.asyncio
async def test_satellites_replaced_without_leftovers(db, persister, make_document):
    await persister.process_batch([normalize_document(make_document(affected=_products(5)))])
    assert await _count(db, AffectedProduct, cve_id="CVE-2024-0001") == 5

    await persister.process_batch([normalize_document(make_document(affected=_products(2)))])

    rows = await db.fetch_all(
        select(AffectedProduct.product).where(AffectedProduct.cve_id == "CVE-2024-0001")
    )
    assert sorted(r["product"] for r in rows) == ["widget-0", "widget-1"]


@pytest.mark.asyncio
async def test_repeated_id_in_one_batch(db, persister, make_document):
    first = normalize_document(make_document(description="v1"))
    second = normalize_document(make_document(description="v2"))
    result = await persister.process_batch([first, second])

    assert (result.added, result.updated) == (1, 1)
    assert await _count(db, Cve) == 1
    assert await _count(db, Metric) == 1
    assert await _count(db, CveChange) == 1


@pytest.mark.asyncio
async def test_failure_rolls_back_whole_batch(db, make_document):
    persister = BatchPersister(db)
    await persister.process_batch([normalize_document(make_document("CVE-2024-0001"))])

    records = [
        normalize_document(make_document("CVE-2024-0001", description="changed")),
        normalize_document(make_document("CVE-2024-0002")),
    ]
    original = BatchPersister._replace_satellites
    calls = 0

    async def fail_on_second(conn, record):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise RuntimeError("disk full")
        await original(conn, record)

    with patch.object(BatchPersister, "_replace_satellites", side_effect=fail_on_second):
        with pytest.raises(RuntimeError, match="disk full"):
            await persister.process_batch(records)

    assert await _count(db, Cve) == 1
    assert await db.scalar(select(Cve.description).where(Cve.id == "CVE-2024-0001")) != "changed"
    assert await _count(db, CveChange) == 0
    assert db.in_transaction is False


@pytest.mark.asyncio
async def test_empty_batch(persister):
    result = await persister.process_batch([])
    assert result.processed == 0


@pytest.mark.asyncio
async def test_sync_values_overwrite(db):
    assert await read_sync_value(db, "cvelist_revision") is None
    await write_sync_value(db, "cvelist_revision", "abc")
    await write_sync_value(db, "cvelist_revision", "def")
    assert await read_sync_value(db, "cvelist_revision") == "def"


@pytest.mark.asyncio
async def test_get_record_returns_satellites_and_history(db, persister, make_document):
    doc = make_document("CVE-2024-0007", affected=_products(2))
    doc["containers"]["cna"]["workarounds"] = [{"value": "Disable feature X"}]
    await persister.process_batch([normalize_document(doc)])
    doc["containers"]["cna"]["descriptions"][0]["value"] = "Updated description"
    await persister.process_batch([normalize_document(doc)])

    record = await get_record(db, "cve-2024-0007")

    assert record is not None
    assert record.id == "CVE-2024-0007"
    assert record.description == "Updated description"
    assert record.cvss_version == "3.1"
    assert record.cvss_vector == "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:N/I:N/A:H"
    assert record.metrics[0].vector.startswith("CVSS:3.1/")
    assert record.reference_urls == ["https://example.com/advisories/CVE-2024-0007"]
    assert [a.product for a in record.affected] == ["widget-0", "widget-1"]
    assert record.remediations[0].language == "en"
    assert record.weaknesses[0].cwe_id == "CWE-120"
    assert len(record.change_history) == 1
    assert "description" in record.change_history[0].diff


@pytest.mark.asyncio
async def test_get_record_unknown(db):
    assert await get_record(db, "CVE-1999-0001") is None
