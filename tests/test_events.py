"""Tests for jobs/events.py — persisted job logs with replay-then-live streaming."""

import asyncio
import uuid

import pytest

from cvesync.jobs.events import JobLogger, LogHub


@pytest.fixture
def hub(db) -> LogHub:
    return LogHub(db)


@pytest.mark.asyncio
async def test_append_persists_in_order(hub):
    job_id = uuid.uuid4()
    other = uuid.uuid4()
    await hub.append(job_id, "info", "first")
    await hub.append(other, "INFO", "elsewhere")
    await hub.append(job_id, "WARNING", "second", {"file": "CVE-2024-0001.json"})

    entries = await hub.get_logs(job_id)
    assert [e.message for e in entries] == ["first", "second"]
    assert entries[0].level == "INFO"
    assert entries[0].details is None
    assert entries[1].details == {"file": "CVE-2024-0001.json"}
    assert entries[0].id < entries[1].id


@pytest.mark.asyncio
async def test_subscriber_sees_replay_then_live(hub):
    job_id = uuid.uuid4()
    await hub.append(job_id, "INFO", "before")

    replay, sub = await hub.subscribe(job_id)
    assert [e.message for e in replay] == ["before"]

    await hub.append(job_id, "INFO", "after")
    entry = await sub.get(timeout=1)
    assert entry is not None and entry.message == "after"
    sub.close()
    assert hub.subscriber_count(job_id) == 0


@pytest.mark.asyncio
async def test_concurrent_appends_reach_subscriber_exactly_once(hub):
    job_id = uuid.uuid4()

    async def producer():
        for i in range(30):
            await hub.append(job_id, "INFO", f"entry {i}")
            await asyncio.sleep(0)

    task = asyncio.create_task(producer())
    await asyncio.sleep(0)
    replay, sub = await hub.subscribe(job_id)
    await task
    hub.finish(job_id)

    live = [entry async for entry in sub]
    seen = [e.message for e in replay] + [e.message for e in live]
    assert seen == [f"entry {i}" for i in range(30)]


@pytest.mark.asyncio
async def test_finish_ends_every_subscription(hub):
    job_id = uuid.uuid4()
    _, first = await hub.subscribe(job_id)
    _, second = await hub.subscribe(job_id)
    assert hub.subscriber_count(job_id) == 2

    await hub.append(job_id, "INFO", "last words")
    hub.finish(job_id)

    assert [e.message async for e in first] == ["last words"]
    assert [e.message async for e in second] == ["last words"]
    assert first.closed and second.closed
    assert hub.subscriber_count(job_id) == 0


@pytest.mark.asyncio
async def test_get_times_out_with_none(hub):
    _, sub = await hub.subscribe(uuid.uuid4())
    async with sub:
        assert await sub.get(timeout=0.01) is None
    with pytest.raises(StopAsyncIteration):
        await sub.get(timeout=0.01)


@pytest.mark.asyncio
async def test_closed_subscription_gets_no_new_entries(hub):
    job_id = uuid.uuid4()
    _, sub = await hub.subscribe(job_id)
    sub.close()
    await hub.append(job_id, "INFO", "ignored")
    assert [e async for e in sub] == []


@pytest.mark.asyncio
async def test_job_logger_levels_and_details(hub):
    job_id = uuid.uuid4()
    log = JobLogger(hub, job_id)
    await log.info("Processing documents", count=3)
    await log.warning("Skipping malformed document", file="x.json")
    await log.error("Job failed")

    entries = await hub.get_logs(job_id)
    assert [(e.level, e.details) for e in entries] == [
        ("INFO", {"count": 3}),
        ("WARNING", {"file": "x.json"}),
        ("ERROR", None),
    ]
