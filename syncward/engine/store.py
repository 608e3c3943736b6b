"""SYNCWARD — Time-Series Store Adapter.

Reads recorded days for a series and performs idempotent upserts keyed by
(tenant_id, connection_id, entity_type, entity_id, date). Last write wins;
concurrency control is left to the database.
"""

import json
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from syncward.config import settings
from syncward.core.errors import PartialWriteError
from syncward.core.logging import get_logger
from syncward.core.metric_registry import ADDITIVE_METRICS, compute_rates
from syncward.models.fact_models import DailyFact
from syncward.models.schemas import FactRow, RowFailure, TenantEntityKey, UpsertResult

logger = get_logger("engine.store")

UPSERT_KEY = ("tenant_id", "connection_id", "entity_type", "entity_id", "date")
STORED_RATES = ("ctr", "cpc", "cpm")
METRIC_COLUMNS = ADDITIVE_METRICS + STORED_RATES
UPDATE_COLUMNS = (
    "entity_name",
    "account_id",
    "campaign_id",
    "adset_id",
    *METRIC_COLUMNS,
    "source_fetched_at",
    "raw_payload",
    "updated_at",
)

_DIALECT_INSERTS: Dict[str, Callable] = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _batches(items: List, size: int) -> Iterable[List]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class FactStore:
    """DailyFact reads and idempotent writes for one database."""

    def __init__(self, engine: Engine, batch_size: Optional[int] = None):
        self.engine = engine
        self.batch_size = max(batch_size or settings.upsert_batch_size, 1)

    # ── Reads ──

    def _series_filter(self, key: TenantEntityKey) -> tuple:
        return (
            DailyFact.tenant_id == key.tenant_id,
            DailyFact.connection_id == key.connection_id,
            DailyFact.entity_type == key.entity_type,
        )

    def existing_dates(self, key: TenantEntityKey, start: date, end: date) -> Set[str]:
        """Dates in [start, end] with at least one fact. Raises on read failure."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(DailyFact.date)
                .where(
                    *self._series_filter(key),
                    DailyFact.date >= start.isoformat(),
                    DailyFact.date <= end.isoformat(),
                )
                .distinct()
            ).all()
        return set(rows)

    def data_bounds(self, key: TenantEntityKey) -> Tuple[Optional[str], Optional[str]]:
        """Earliest and latest recorded dates for the series."""
        with Session(self.engine) as session:
            earliest, latest = session.exec(
                select(func.min(DailyFact.date), func.max(DailyFact.date)).where(
                    *self._series_filter(key)
                )
            ).one()
        return earliest, latest

    def estimate_rows_per_day(self, key: TenantEntityKey, default: int) -> int:
        """Largest number of facts recorded on any one day, or `default`."""
        with Session(self.engine) as session:
            counts = session.exec(
                select(func.count())
                .select_from(DailyFact)
                .where(*self._series_filter(key))
                .group_by(DailyFact.date)
            ).all()
        return max(counts) if counts else default

    def get_fact(self, key: TenantEntityKey, entity_id: str, day: str) -> Optional[DailyFact]:
        with Session(self.engine) as session:
            return session.exec(
                select(DailyFact).where(
                    *self._series_filter(key),
                    DailyFact.entity_id == entity_id,
                    DailyFact.date == day,
                )
            ).first()

    # ── Writes ──

    def _values(self, key: TenantEntityKey, row: FactRow, fetched_at: datetime) -> dict:
        metrics = dict(row.metrics)
        for name in STORED_RATES:
            if name not in metrics:
                metrics.update(compute_rates(metrics, (name,)))
        values = {
            "tenant_id": key.tenant_id,
            "connection_id": key.connection_id,
            "entity_type": key.entity_type,
            "entity_id": row.entity_id,
            "entity_name": row.entity_name,
            "date": row.date,
            "account_id": row.account_id,
            "campaign_id": row.campaign_id,
            "adset_id": row.adset_id,
            "source_fetched_at": fetched_at,
            "raw_payload": json.dumps(row.raw, default=str),
            "updated_at": fetched_at,
        }
        for name in METRIC_COLUMNS:
            values[name] = float(metrics.get(name, 0.0) or 0.0)
        return values

    def _write_batch(self, values: List[dict]) -> None:
        insert_fn = _DIALECT_INSERTS.get(self.engine.dialect.name)
        if insert_fn is None:
            self._merge_rows(values)
            return
        stmt = insert_fn(DailyFact.__table__).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(UPSERT_KEY),
            set_={col: stmt.excluded[col] for col in UPDATE_COLUMNS},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def _merge_rows(self, values: List[dict]) -> None:
        """Select-then-update fallback for backends without ON CONFLICT."""
        with Session(self.engine) as session:
            for v in values:
                existing = session.exec(
                    select(DailyFact).where(*(getattr(DailyFact, k) == v[k] for k in UPSERT_KEY))
                ).first()
                if existing:
                    for col in UPDATE_COLUMNS:
                        setattr(existing, col, v[col])
                    session.add(existing)
                else:
                    session.add(DailyFact(**v))
            session.commit()

    def upsert_facts(self, key: TenantEntityKey, rows: List[FactRow]) -> UpsertResult:
        """Insert-or-overwrite every row. Raises PartialWriteError if any row failed.

        Rows are written in batches; a failing batch is retried row by row so
        the result names exactly the rows that did not land.
        """
        fetched_at = datetime.now(timezone.utc)
        # Last occurrence wins within one call; ON CONFLICT cannot touch a row twice
        unique: Dict[tuple, FactRow] = {}
        for row in rows:
            unique[(row.entity_id, row.date)] = row
        pending = list(unique.values())

        result = UpsertResult()
        for batch in _batches(pending, self.batch_size):
            values = [self._values(key, row, fetched_at) for row in batch]
            try:
                self._write_batch(values)
                result.written += len(batch)
                continue
            except SQLAlchemyError as e:
                logger.warning(
                    f"Batch upsert of {len(batch)} rows failed, isolating rows: {e}",
                    extra={"tenant_id": key.tenant_id},
                )
            for row, value in zip(batch, values):
                try:
                    self._write_batch([value])
                    result.written += 1
                except SQLAlchemyError as e:
                    result.failed.append(
                        RowFailure(entity_id=row.entity_id, date=row.date, error=str(e))
                    )

        if result.failed:
            raise PartialWriteError(result)
        return result

    def upsert(self, key: TenantEntityKey, row: FactRow) -> None:
        """Insert if absent, overwrite if present. Safe to repeat."""
        self.upsert_facts(key, [row])
