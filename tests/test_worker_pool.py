"""Tests for the per-tenant worker pool and job queue."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from syncward.engine.rate_limiter import TenantRateLimiter
from syncward.engine.worker_pool import JobQueue, PoolRegistry, TenantWorkerPool
from syncward.models.sync_models import SyncJob


def jobs(n):
    return [
        SyncJob(
            run_id="run-1",
            seq=i,
            tenant_id="brand-1",
            connection_id="conn-1",
            entity_type="ad",
            start_date="2024-03-01",
            end_date="2024-03-01",
        )
        for i in range(n)
    ]


def pool(concurrency=3, interval=0.0):
    return TenantWorkerPool("brand-1", concurrency, TenantRateLimiter("brand-1", interval))


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_limit():
    state = {"active": 0, "peak": 0}

    async def handler(job):
        state["active"] += 1
        state["peak"] = max(state["peak"], state["active"])
        await asyncio.sleep(0.01)
        state["active"] -= 1

    report = await pool(concurrency=3).run(jobs(10), handler)

    assert state["peak"] == 3
    assert len(report.dispatched) == 10
    assert report.undispatched == []


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_siblings():
    batch = jobs(4)
    handled = []

    async def handler(job):
        if job.seq == 1:
            raise RuntimeError("boom")
        handled.append(job.seq)

    report = await pool(concurrency=2).run(batch, handler)

    assert sorted(handled) == [0, 2, 3]
    assert report.handler_errors == {batch[1].job_id: "boom"}


@pytest.mark.asyncio
async def test_expired_deadline_dispatches_nothing():
    handled = []

    async def handler(job):
        handled.append(job)

    deadline = datetime.now(timezone.utc) - timedelta(seconds=1)
    report = await pool().run(jobs(5), handler, deadline=deadline)

    assert handled == []
    assert len(report.undispatched) == 5
    assert report.stopped_by == "deadline"


@pytest.mark.asyncio
async def test_cancel_stops_dispatch_but_lets_in_flight_finish():
    cancel = asyncio.Event()
    finished = []

    async def handler(job):
        cancel.set()
        await asyncio.sleep(0.01)
        finished.append(job.seq)

    report = await pool(concurrency=1).run(jobs(5), handler, cancel_event=cancel)

    assert finished == [0]
    assert len(report.undispatched) == 4
    assert report.stopped_by == "cancelled"


@pytest.mark.asyncio
async def test_min_interval_spaces_job_starts():
    starts = []
    loop = asyncio.get_running_loop()

    async def handler(job):
        starts.append(loop.time())

    await pool(concurrency=3, interval=0.03).run(jobs(3), handler)
    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert all(g >= 0.025 for g in gaps)


@pytest.mark.asyncio
async def test_job_queue_drain():
    queue = JobQueue()
    await queue.put_all(jobs(3))
    assert queue.get_nowait().seq == 0
    queue.task_done()
    assert [j.seq for j in queue.drain()] == [1, 2]
    assert queue.get_nowait() is None


def test_registry_keeps_one_pool_per_tenant():
    registry = PoolRegistry(concurrency=2, min_interval=0.1)
    a = registry.get("brand-a")
    assert registry.get("brand-a") is a
    assert registry.get("brand-b") is not a
    assert a.limiter is not registry.get("brand-b").limiter
    registry.release("brand-a")
    assert registry.get("brand-a") is not a
    assert {s["tenant_id"] for s in registry.snapshot()} == {"brand-a", "brand-b"}


@pytest.mark.asyncio
async def test_long_throttle_penalty_yields_to_deadline():
    handled = []

    async def handler(job):
        handled.append(job)

    throttled = pool()
    throttled.limiter.penalize(86400)
    deadline = datetime.now(timezone.utc) + timedelta(seconds=0.2)

    report = await asyncio.wait_for(throttled.run(jobs(3), handler, deadline=deadline), timeout=3)

    assert handled == []
    assert len(report.undispatched) == 3
    assert report.stopped_by == "deadline"


def test_registry_caps_throttle_penalty():
    registry = PoolRegistry(concurrency=1, min_interval=0.0, max_penalty=300.0)
    limiter = registry.get("brand-a").limiter
    limiter.penalize(86400)
    assert limiter.snapshot()["next_slot_in"] <= 300.0
