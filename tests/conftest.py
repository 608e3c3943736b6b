"""Shared fixtures: in-memory databases, a scripted upstream source and engines."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

from syncward.connectors.base import FetchOutcome, InsightsSource
from syncward.database import build_engine, init_db
from syncward.engine.orchestrator import BackfillConfig, BackfillEngine
from syncward.engine.retry import RetryPolicy
from syncward.engine.store import FactStore
from syncward.models.fact_models import Connection
from syncward.models.schemas import DateChunk, FactRow, TenantEntityKey

# Noon UTC: with a 24h grace the window ends yesterday (2024-03-19)
FIXED_NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)
TENANT = "brand-1"
CONNECTION = "conn-1"


def day(n: int) -> date:
    """Day n of the ten-day window ending yesterday: day(1)=03-10 … day(10)=03-19."""
    return date(2024, 3, 9) + timedelta(days=n)


def make_row(
    on: date,
    entity_id: str = "ad-1",
    spend: float = 5.0,
    impressions: float = 1000.0,
    clicks: float = 10.0,
    campaign_id: str = "cmp-1",
) -> FactRow:
    return FactRow(
        entity_id=entity_id,
        entity_name=f"Ad {entity_id}",
        date=on.isoformat(),
        account_id="act_1",
        campaign_id=campaign_id,
        adset_id="set-1",
        metrics={"spend": spend, "impressions": impressions, "clicks": clicks},
        raw={"ad_id": entity_id, "date_start": on.isoformat()},
    )


class FakeSource(InsightsSource):
    """Scripted upstream. `script` maps a chunk's start date to outcomes
    returned on successive calls; once exhausted, every day of the chunk
    comes back with one row per entity."""

    def __init__(
        self,
        script: Optional[Dict[str, List[FetchOutcome]]] = None,
        entities: tuple = ("ad-1",),
        delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
        spend: float = 5.0,
    ):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.entities = entities
        self.delay = delay
        self.gate = gate
        self.spend = spend
        self.calls: List[DateChunk] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def fetch_insights(self, key: TenantEntityKey, entity_ref: str, chunk: DateChunk):
        self.calls.append(chunk)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            queued = self.script.get(chunk.start_date.isoformat())
            if queued:
                return queued.pop(0)
            return FetchOutcome.success(
                [
                    make_row(d, entity_id=entity, spend=self.spend)
                    for d in chunk.dates()
                    for entity in self.entities
                ]
            )
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True


class FlakyStore(FactStore):
    """Rejects every write that touches one of `bad_entities`."""

    def __init__(self, engine, bad_entities=("ad-bad",), batch_size=None):
        super().__init__(engine, batch_size)
        self.bad_entities = set(bad_entities)

    def _write_batch(self, values):
        if any(v["entity_id"] in self.bad_entities for v in values):
            raise IntegrityError("INSERT INTO daily_facts", {}, Exception("constraint failed"))
        super()._write_batch(values)


@pytest.fixture
def db_engine():
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_db_engine(tmp_path):
    """File-backed SQLite for tests that touch the database from two threads."""
    engine = build_engine(f"sqlite:///{tmp_path / 'syncward.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def key() -> TenantEntityKey:
    return TenantEntityKey(tenant_id=TENANT, connection_id=CONNECTION, entity_type="ad")


@pytest.fixture
def store(db_engine) -> FactStore:
    return FactStore(db_engine, batch_size=50)


def add_connection(engine, connection_id=CONNECTION, tenant_id=TENANT, **fields) -> None:
    with Session(engine) as session:
        session.add(
            Connection(
                connection_id=connection_id,
                tenant_id=tenant_id,
                ad_account_id=fields.pop("ad_account_id", "act_1"),
                access_token=fields.pop("access_token", "tok"),
                **fields,
            )
        )
        session.commit()


@pytest.fixture
def connection(db_engine):
    add_connection(db_engine)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float, cancel_event: Optional[asyncio.Event] = None) -> bool:
        sleeps.append(seconds)
        await asyncio.sleep(0)
        return not (cancel_event is not None and cancel_event.is_set())

    return _sleep


def engine_config(**overrides) -> BackfillConfig:
    values = dict(
        default_lookback_days=10,
        max_lookback_days=365,
        same_day_grace_hours=24,
        max_chunk_days=2,
        max_rows_per_call=5000,
        default_rows_per_day=1,
        retry=RetryPolicy(
            max_attempts=3, base_delay=2.0, min_wait=0.0, max_wait=300.0, throttle_default=60.0
        ),
        tenant_concurrency=2,
        min_job_interval_seconds=0.0,
        run_timeout_seconds=60.0,
        estimated_seconds_per_job=1.0,
        upsert_batch_size=50,
    )
    values.update(overrides)
    return BackfillConfig(**values)


def build_backfill_engine(db_engine, source, sleep=None, **config) -> BackfillEngine:
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return BackfillEngine(
        db_engine,
        source_factory=lambda _connection, _limiter: source,
        config=engine_config(**config),
        **kwargs,
    )
