"""Tests for the Jobs and CVE APIs — start, inspect, cancel, logs, lookup."""

import asyncio
import json
import uuid
from unittest.mock import patch

import pytest

_MISSING = "00000000-0000-0000-0000-000000000000"


async def _start_and_wait(client, controller) -> dict:
    r = await client.post("/api/v1/jobs", json={"kind": "cvelist"})
    assert r.status_code == 202
    await controller.wait(uuid.UUID(r.json()["id"]))
    r = await client.get(f"/api/v1/jobs/{r.json()['id']}")
    return r.json()


@pytest.mark.asyncio
async def test_health_on_empty_store(client):
    r = await client.get("/api/v1/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["sync"] == {
        "record_count": 0,
        "corpus_file_count": None,
        "completeness_percent": None,
        "missing_records": None,
        "revision": None,
        "state": "empty",
        "last_job": None,
        "running_job": None,
    }


@pytest.mark.asyncio
async def test_health_reports_sync_status(client, controller, make_document, write_document):
    write_document(make_document("CVE-2024-0001"))
    write_document(make_document("CVE-2024-0002"))
    job = await _start_and_wait(client, controller)

    sync = (await client.get("/api/v1/health")).json()["sync"]
    assert sync["record_count"] == 2
    assert sync["corpus_file_count"] == 2
    assert sync["completeness_percent"] == 100
    assert sync["missing_records"] == 0
    assert sync["state"] == "healthy"
    assert sync["revision"] == "a" * 40
    assert sync["last_job"]["id"] == job["id"]
    assert sync["last_job"]["status"] == "COMPLETED"
    assert sync["running_job"] is None


@pytest.mark.asyncio
async def test_health_counts_unstored_documents(client, controller, make_document, write_document):
    write_document(make_document("CVE-2024-0001"))
    write_document("{not valid json", name="CVE-2024-0002")
    await _start_and_wait(client, controller)

    sync = (await client.get("/api/v1/health")).json()["sync"]
    assert (sync["record_count"], sync["corpus_file_count"]) == (1, 2)
    assert sync["completeness_percent"] == 50
    assert sync["missing_records"] == 1
    assert sync["state"] == "incomplete"


@pytest.mark.asyncio
async def test_health_shows_running_job(client, controller, corpus, make_document, write_document):
    write_document(make_document())
    gate = asyncio.Event()
    plan = corpus.plan

    async def blocked_prepare(*args):
        await gate.wait()
        return plan

    with patch.object(corpus, "prepare", side_effect=blocked_prepare):
        job_id = (await client.post("/api/v1/jobs", json={"kind": "cvelist"})).json()["id"]
        running = (await client.get("/api/v1/health")).json()["sync"]["running_job"]
        gate.set()
        await controller.wait(uuid.UUID(job_id))

    assert running["id"] == job_id
    assert running["status"] == "RUNNING"
    assert running["current_phase"] is not None
    assert running["progress_percent"] == 0


@pytest.mark.asyncio
async def test_start_job_accepted(client, controller):
    """Starting a job returns 202 with a RUNNING row; the run continues in background."""
    r = await client.post("/api/v1/jobs", json={"kind": "cvelist"})
    assert r.status_code == 202
    data = r.json()
    assert data["kind"] == "cvelist"
    assert data["status"] == "RUNNING"
    await controller.wait(uuid.UUID(data["id"]))


@pytest.mark.asyncio
async def test_start_job_default_kind(client, controller):
    r = await client.post("/api/v1/jobs", json={})
    assert r.status_code == 202
    assert r.json()["kind"] == "cvelist"
    await controller.wait(uuid.UUID(r.json()["id"]))


@pytest.mark.asyncio
async def test_start_job_unknown_kind(client):
    r = await client.post("/api/v1/jobs", json={"kind": "does_not_exist"})
    assert r.status_code == 422
    assert "cvelist" in r.json()["detail"]


@pytest.mark.asyncio
async def test_jobs_list(client, controller, make_document, write_document):
    r = await client.get("/api/v1/jobs")
    assert r.status_code == 200
    assert r.json() == {"total": 0, "items": []}

    write_document(make_document())
    job = await _start_and_wait(client, controller)

    data = (await client.get("/api/v1/jobs")).json()
    assert data["total"] == 1
    assert data["items"][0]["id"] == job["id"]
    assert data["items"][0]["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_jobs_list_limit_validated(client):
    r = await client.get("/api/v1/jobs", params={"limit": 0})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_job_not_found(client):
    assert (await client.get(f"/api/v1/jobs/{_MISSING}")).status_code == 404
    assert (await client.get(f"/api/v1/jobs/{_MISSING}/logs")).status_code == 404
    assert (await client.get(f"/api/v1/jobs/{_MISSING}/logs/stream")).status_code == 404
    assert (await client.post(f"/api/v1/jobs/{_MISSING}/cancel")).status_code == 404


@pytest.mark.asyncio
async def test_cancel_finished_job_conflicts(client, controller, make_document, write_document):
    write_document(make_document())
    job = await _start_and_wait(client, controller)
    r = await client.post(f"/api/v1/jobs/{job['id']}/cancel")
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_cancel_running_job(client, controller, corpus, make_document, write_document):
    write_document(make_document())
    gate = asyncio.Event()
    plan = corpus.plan

    async def blocked_prepare(*args):
        await gate.wait()
        return plan

    with patch.object(corpus, "prepare", side_effect=blocked_prepare):
        r = await client.post("/api/v1/jobs", json={"kind": "cvelist"})
        job_id = r.json()["id"]

        r = await client.post(f"/api/v1/jobs/{job_id}/cancel")
        assert r.status_code == 200
        assert r.json() == {"id": job_id, "cancelled": True}

        gate.set()
        job = await controller.wait(uuid.UUID(job_id))

    assert job.status == "FAILED"
    assert job.error_msg == "Cancelled by user"


@pytest.mark.asyncio
async def test_job_logs(client, controller, make_document, write_document):
    write_document(make_document())
    job = await _start_and_wait(client, controller)

    r = await client.get(f"/api/v1/jobs/{job['id']}/logs")
    assert r.status_code == 200
    messages = [e["message"] for e in r.json()]
    assert messages[0] == "Job started"
    assert messages[-1] == "Job completed"
    ids = [e["id"] for e in r.json()]
    assert ids == sorted(ids)


@pytest.mark.asyncio
async def test_log_stream_of_finished_job(client, controller, make_document, write_document):
    write_document(make_document())
    job = await _start_and_wait(client, controller)
    stored = (await client.get(f"/api/v1/jobs/{job['id']}/logs")).json()

    r = await client.get(f"/api/v1/jobs/{job['id']}/logs/stream")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = [block for block in r.text.split("\n\n") if block]
    assert events[-1] == "event: end\ndata: {}"
    streamed = [
        json.loads(block.split("data: ", 1)[1])
        for block in events[:-1]
    ]
    assert [e["id"] for e in streamed] == [e["id"] for e in stored]


@pytest.mark.asyncio
async def test_cve_lookup(client, controller, make_document, write_document):
    assert (await client.get("/api/v1/cves/CVE-2024-0001")).status_code == 404

    write_document(make_document("CVE-2024-0001"))
    await _start_and_wait(client, controller)

    r = await client.get("/api/v1/cves/cve-2024-0001")
    assert r.status_code == 200
    data = r.json()
    assert data["id"] == "CVE-2024-0001"
    assert data["cvss_severity"] == "HIGH"
    assert data["cvss_vector"].startswith("CVSS:3.1/")
    assert data["reference_urls"] == ["https://example.com/advisories/CVE-2024-0001"]
    assert data["affected"][0]["product"] == "widget"
    assert data["change_history"] == []
