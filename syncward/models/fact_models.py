"""SYNCWARD — Connection, Daily Fact & Aggregate Models.

DailyFact is unique on (tenant_id, connection_id, entity_type, entity_id, date)
so every write is an upsert; re-running a backfill never duplicates rows.
AggregateFact is fully derived and recomputed from DailyFact, never patched.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field, UniqueConstraint


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Connection(SQLModel, table=True):
    """One tenant's link to an upstream ad account."""

    __tablename__ = "platform_connections"

    connection_id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    platform: str = Field(default="meta", description="meta")
    ad_account_id: str = Field(description="Upstream account id, e.g. act_123")
    access_token: str = Field(default="")
    timezone_name: str = Field(default="UTC", description="IANA zone of the account")
    entity_types: str = Field(
        default="ad", description="Comma list of insight levels to maintain"
    )
    status: str = Field(default="active", index=True, description="active | inactive")
    created_at: datetime = Field(default_factory=_utcnow)

    def entity_type_list(self) -> list[str]:
        return [e.strip() for e in self.entity_types.split(",") if e.strip()]


class DailyFact(SQLModel, table=True):
    """One day of upstream metrics for one entity."""

    __tablename__ = "daily_facts"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "connection_id",
            "entity_type",
            "entity_id",
            "date",
            name="uq_daily_fact",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    connection_id: str = Field(index=True)
    entity_type: str = Field(index=True, description="ad | adset | campaign | account")
    entity_id: str = Field(index=True, description="Upstream entity ID")
    entity_name: str = Field(default="")
    date: str = Field(index=True, description="YYYY-MM-DD")

    # ── Dimensions ──
    account_id: str = Field(default="")
    campaign_id: str = Field(default="", index=True)
    adset_id: str = Field(default="")

    # ── Metrics ──
    spend: float = 0.0
    impressions: float = 0.0
    clicks: float = 0.0
    reach: float = 0.0
    link_clicks: float = 0.0
    conversions: float = 0.0
    purchase_value: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0

    source_fetched_at: datetime = Field(default_factory=_utcnow)
    raw_payload: str = Field(default="{}", description="Upstream row as JSON")
    updated_at: datetime = Field(default_factory=_utcnow)


class AggregateFact(SQLModel, table=True):
    """Rollup of DailyFact at campaign / account grain, per day or month."""

    __tablename__ = "aggregate_facts"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "connection_id",
            "entity_type",
            "rollup_level",
            "group_id",
            "period",
            "period_start",
            name="uq_aggregate_fact",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    connection_id: str = Field(index=True)
    entity_type: str = Field(description="Grain of the source facts")
    rollup_level: str = Field(index=True, description="campaign | account")
    group_id: str = Field(index=True)
    period: str = Field(description="day | month")
    period_start: str = Field(index=True, description="YYYY-MM-DD")

    spend: float = 0.0
    impressions: float = 0.0
    clicks: float = 0.0
    reach: float = 0.0
    link_clicks: float = 0.0
    conversions: float = 0.0
    purchase_value: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    roas: float = 0.0

    fact_count: int = 0
    computed_at: datetime = Field(default_factory=_utcnow)
