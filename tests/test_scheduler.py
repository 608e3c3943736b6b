"""Tests for the scheduled gap sweep."""

import pytest
from sqlalchemy.exc import OperationalError

from syncward.scheduler.jobs import daily_backfill_job

from conftest import FakeSource, add_connection, build_backfill_engine


@pytest.mark.asyncio
async def test_sweep_starts_active_connections_and_skips_busy_ones(db_engine):
    add_connection(db_engine, "conn-busy", "brand-1")
    add_connection(db_engine, "conn-idle", "brand-2")
    add_connection(db_engine, "conn-off", "brand-3", status="inactive")
    engine = build_backfill_engine(db_engine, FakeSource())
    busy, _ = engine.ledger.create_run("brand-1", "conn-busy", 10, False, [])

    summary = await daily_backfill_job(engine)

    assert summary == {"started": 1, "skipped": 1, "failed": 0}
    runs = engine.ledger.list_runs()
    started = [r for r in runs if r.run_id != busy.run_id]
    assert [r.connection_id for r in started] == ["conn-idle"]
    finished = await engine.wait_for_run(started[0].run_id)
    assert finished.status == "completed"
    assert engine.ledger.list_runs("brand-3") == []


@pytest.mark.asyncio
async def test_database_error_on_one_connection_does_not_stop_sweep(db_engine):
    add_connection(db_engine, "conn-a", "brand-1")
    add_connection(db_engine, "conn-b", "brand-2")
    engine = build_backfill_engine(db_engine, FakeSource())
    attempted = []

    async def locked_database(tenant_id, connection_id, **kwargs):
        attempted.append(connection_id)
        raise OperationalError("INSERT INTO sync_runs", {}, Exception("database is locked"))

    engine.start_backfill = locked_database
    summary = await daily_backfill_job(engine)

    assert summary == {"started": 0, "skipped": 0, "failed": 2}
    assert sorted(attempted) == ["conn-a", "conn-b"]
