"""SYNCWARD — Aggregator.

Recomputes AggregateFact rows (campaign / account × day / month) for every
grouping key touched by a run. Each aggregate is rebuilt from the full set of
underlying DailyFacts; upstream may revise past days, so prior aggregates are
never adjusted incrementally.
"""

import calendar
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, NamedTuple, Set, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from syncward.core.logging import get_logger
from syncward.core.metric_registry import ADDITIVE_METRICS, compute_rates
from syncward.models.fact_models import AggregateFact, DailyFact
from syncward.models.schemas import FactRow, TenantEntityKey

logger = get_logger("engine.aggregator")

PERIODS = ("day", "month")


class GroupKey(NamedTuple):
    rollup_level: str  # campaign | account
    group_id: str
    period: str  # day | month
    period_start: str  # YYYY-MM-DD


def _period_bounds(period: str, period_start: str) -> Tuple[str, str]:
    start = date.fromisoformat(period_start)
    if period == "day":
        return period_start, period_start
    last = calendar.monthrange(start.year, start.month)[1]
    return period_start, start.replace(day=last).isoformat()


def _group_ids(row: FactRow) -> Dict[str, str]:
    return {"campaign": row.campaign_id, "account": row.account_id}


def touched_groups(rows: Iterable[FactRow]) -> Set[GroupKey]:
    """Every (level, group, period) a set of written rows contributes to."""
    groups: Set[GroupKey] = set()
    for row in rows:
        day = date.fromisoformat(row.date)
        starts = {"day": row.date, "month": day.replace(day=1).isoformat()}
        for level, group_id in _group_ids(row).items():
            if not group_id:
                continue
            for period in PERIODS:
                groups.add(GroupKey(level, group_id, period, starts[period]))
    return groups


class Aggregator:
    """Rebuilds rollups from raw facts."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _facts(self, session: Session, key: TenantEntityKey, group: GroupKey) -> List[DailyFact]:
        start, end = _period_bounds(group.period, group.period_start)
        group_column = DailyFact.campaign_id if group.rollup_level == "campaign" else DailyFact.account_id
        return session.exec(
            select(DailyFact).where(
                DailyFact.tenant_id == key.tenant_id,
                DailyFact.connection_id == key.connection_id,
                DailyFact.entity_type == key.entity_type,
                group_column == group.group_id,
                DailyFact.date >= start,
                DailyFact.date <= end,
            )
        ).all()

    def _existing(self, session: Session, key: TenantEntityKey, group: GroupKey):
        return session.exec(
            select(AggregateFact).where(
                AggregateFact.tenant_id == key.tenant_id,
                AggregateFact.connection_id == key.connection_id,
                AggregateFact.entity_type == key.entity_type,
                AggregateFact.rollup_level == group.rollup_level,
                AggregateFact.group_id == group.group_id,
                AggregateFact.period == group.period,
                AggregateFact.period_start == group.period_start,
            )
        ).first()

    def recompute(self, key: TenantEntityKey, groups: Iterable[GroupKey]) -> int:
        """Rebuild the aggregate for every group. Returns rows written."""
        written = 0
        now = datetime.now(timezone.utc)
        with Session(self.engine) as session:
            for group in sorted(groups):
                facts = self._facts(session, key, group)
                existing = self._existing(session, key, group)

                if not facts:
                    if existing is not None:
                        session.delete(existing)
                    continue

                sums: Dict[str, float] = defaultdict(float)
                for fact in facts:
                    for name in ADDITIVE_METRICS:
                        sums[name] += getattr(fact, name) or 0.0
                values = {name: round(sums[name], 6) for name in ADDITIVE_METRICS}
                values.update(compute_rates(sums))

                aggregate = existing or AggregateFact(
                    tenant_id=key.tenant_id,
                    connection_id=key.connection_id,
                    entity_type=key.entity_type,
                    rollup_level=group.rollup_level,
                    group_id=group.group_id,
                    period=group.period,
                    period_start=group.period_start,
                )
                for name, value in values.items():
                    setattr(aggregate, name, value)
                aggregate.fact_count = len(facts)
                aggregate.computed_at = now
                session.add(aggregate)
                written += 1
            session.commit()

        logger.info(
            f"Recomputed {written} aggregates for {key}",
            extra={"tenant_id": key.tenant_id, "connection_id": key.connection_id},
        )
        return written
