"""pytest fixtures shared across all tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from cvesync.core.database import Database
from cvesync.ingest.corpus import CorpusSyncManager, SyncMode, SyncPlan
from cvesync.ingest.cvelist import CveListIngestor
from cvesync.ingest.persistence import BatchPersister
from cvesync.jobs.controller import JobController
from cvesync.jobs.events import LogHub

# Use SQLite in-memory for tests; no PostgreSQL required.
# Each test function gets its own fresh DB to avoid cross-test pollution.
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

REVISION_A = "a" * 40
REVISION_B = "b" * 40


def build_document(
    cve_id: str = "CVE-2024-0001",
    *,
    description: str = "Buffer overflow in widget parser.",
    metrics: list[dict[str, Any]] | None = None,
    affected: list[dict[str, Any]] | None = None,
    references: list[dict[str, Any]] | None = None,
    state: str = "PUBLISHED",
    date_updated: str | None = "2024-02-01T10:00:00.000Z",
) -> dict[str, Any]:
    """Minimal but realistic CVE JSON 5 advisory document."""
    if metrics is None:
        metrics = [
            {
                "cvssV3_1": {
                    "version": "3.1",
                    "baseScore": 7.5,
                    "baseSeverity": "HIGH",
                    "vectorString": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:N/I:N/A:H",
                }
            }
        ]
    if affected is None:
        affected = [
            {
                "vendor": "acme",
                "product": "widget",
                "defaultStatus": "unaffected",
                "versions": [
                    {"version": "1.0", "status": "affected", "lessThan": "1.4", "versionType": "semver"}
                ],
            }
        ]
    if references is None:
        references = [{"url": f"https://example.com/advisories/{cve_id}", "tags": ["vendor-advisory"]}]

    return {
        "dataType": "CVE_RECORD",
        "dataVersion": "5.1",
        "cveMetadata": {
            "cveId": cve_id,
            "assignerShortName": "acme",
            "state": state,
            "datePublished": "2024-01-15T08:30:00.000Z",
            "dateUpdated": date_updated,
        },
        "containers": {
            "cna": {
                "title": f"{cve_id} in widget",
                "descriptions": [{"lang": "en", "value": description}],
                "metrics": metrics,
                "affected": affected,
                "references": references,
                "problemTypes": [
                    {"descriptions": [{"cweId": "CWE-120", "description": "Classic buffer overflow", "lang": "en"}]}
                ],
            }
        },
    }


class StubCorpus(CorpusSyncManager):
    """Corpus whose git side is scripted; documents come from a real directory."""

    def __init__(self, repo_dir: Path) -> None:
        super().__init__(repo_dir, "https://example.invalid/cvelistV5.git")
        self.plan = SyncPlan(SyncMode.FULL, None, REVISION_A)
        self.changed: list[Path] | None = None
        self.prepare_calls: list[tuple[int, str | None]] = []

    async def prepare(self, record_count, stored_revision, log) -> SyncPlan:
        self.prepare_calls.append((record_count, stored_revision))
        return self.plan

    async def changed_files(self, old_revision, new_revision, log) -> list[Path] | None:
        return self.changed


class RecordingLog:
    """Stand-in for a JobLogger that keeps entries in memory."""

    def __init__(self) -> None:
        self.entries: list[tuple[str, str, dict[str, Any]]] = []

    async def info(self, message: str, **details: Any) -> None:
        self.entries.append(("INFO", message, details))

    async def warning(self, message: str, **details: Any) -> None:
        self.entries.append(("WARNING", message, details))

    async def error(self, message: str, **details: Any) -> None:
        self.entries.append(("ERROR", message, details))

    def messages(self, level: str | None = None) -> list[str]:
        return [m for lvl, m, _ in self.entries if level is None or lvl == level]


@pytest.fixture
def make_document():
    return build_document


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory store with the schema created, per test function."""
    database = Database(TEST_DB_URL, recycle_after=1000)
    await database.connect()
    await database.create_schema()
    yield database
    await database.close()


@pytest.fixture
def persister(db) -> BatchPersister:
    return BatchPersister(db)


@pytest.fixture
def recording_log() -> RecordingLog:
    return RecordingLog()


@pytest.fixture
def corpus_root(tmp_path) -> Path:
    return tmp_path / "cvelistV5"


@pytest.fixture
def write_document(corpus_root):
    """Write an advisory (dict) or raw text under ``cves/`` and return its path."""

    def _write(document: dict[str, Any] | str, name: str | None = None) -> Path:
        if name is None:
            name = document["cveMetadata"]["cveId"]
        path = corpus_root / "cves" / "2024" / "0xxx" / f"{name}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        text = document if isinstance(document, str) else json.dumps(document)
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def corpus(corpus_root) -> StubCorpus:
    return StubCorpus(corpus_root)


@pytest.fixture
def ingestor(db, corpus) -> CveListIngestor:
    return CveListIngestor(db, corpus, batch_size=2)


@pytest_asyncio.fixture
async def controller(db, ingestor):
    ctrl = JobController(
        db,
        LogHub(db),
        [ingestor],
        stuck_threshold_minutes=10,
        sweep_interval=3600,
        heartbeat_interval=0.0,
    )
    yield ctrl
    await ctrl.shutdown()


@pytest_asyncio.fixture
async def client(db, controller, corpus):
    """HTTPX async test client wired to the FastAPI app with the test services."""
    from cvesync.api.app import create_app
    from cvesync.api.dependencies import get_controller, get_corpus, get_db

    app = create_app()
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_controller] = lambda: controller
    app.dependency_overrides[get_corpus] = lambda: corpus

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
