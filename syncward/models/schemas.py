"""SYNCWARD — Engine Value Types & API Schemas."""

from datetime import date, datetime, timedelta
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────
# ENGINE VALUE TYPES
# ─────────────────────────────────────────────


class TenantEntityKey(BaseModel):
    """Identifies one logical time series (e.g. one account's ad-level insights)."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    connection_id: str
    entity_type: str = "ad"

    def __str__(self) -> str:
        return f"{self.tenant_id}/{self.connection_id}/{self.entity_type}"


class Gap(BaseModel):
    """Maximal contiguous run of dates with no recorded fact. Never persisted."""

    model_config = ConfigDict(frozen=True)

    start_date: date
    end_date: date

    @property
    def day_count(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def dates(self) -> List[date]:
        return [self.start_date + timedelta(days=i) for i in range(self.day_count)]


class DateChunk(BaseModel):
    """Closed interval [start_date, end_date] sized for one upstream request."""

    model_config = ConfigDict(frozen=True)

    start_date: date
    end_date: date

    @property
    def day_count(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def dates(self) -> List[date]:
        return [self.start_date + timedelta(days=i) for i in range(self.day_count)]


class FactRow(BaseModel):
    """One normalized upstream row, ready to upsert as a DailyFact."""

    entity_id: str
    entity_name: str = ""
    date: str
    account_id: str = ""
    campaign_id: str = ""
    adset_id: str = ""
    metrics: Dict[str, float] = {}
    raw: dict = {}


class RowFailure(BaseModel):
    entity_id: str
    date: str
    error: str


class UpsertResult(BaseModel):
    """Outcome of a batched upsert; `failed` names every row that did not land."""

    written: int = 0
    failed: List[RowFailure] = []

    @property
    def total(self) -> int:
        return self.written + len(self.failed)


class GapReport(BaseModel):
    """Result of one detection pass for one series."""

    tenant_id: str
    connection_id: str
    entity_type: str
    window_start: date
    window_end: date
    gaps: List[Gap] = []
    total_missing_days: int = 0
    earliest_data_date: Optional[date] = None
    last_data_date: Optional[date] = None

    @property
    def has_gaps(self) -> bool:
        return bool(self.gaps)


# ─────────────────────────────────────────────
# API SCHEMAS
# ─────────────────────────────────────────────


class BackfillRequest(BaseModel):
    """Request body for POST /backfill."""

    tenant_id: str
    connection_id: str
    lookback_days: Optional[int] = Field(default=None, ge=1)
    """Days of history to keep complete. Defaults to the configured lookback."""
    force: bool = False
    """Re-fetch every day in the window, even days already present."""
    entity_types: Optional[List[str]] = None
    """Restrict the run to these insight levels. Defaults to the connection's."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"tenant_id": "brand-1", "connection_id": "conn-1", "lookback_days": 90},
                {
                    "tenant_id": "brand-1",
                    "connection_id": "conn-1",
                    "lookback_days": 30,
                    "force": True,
                },
            ]
        }
    }


class BackfillResponse(BaseModel):
    """Response for POST /backfill."""

    run_id: str
    jobs_scheduled: int
    estimated_completion: datetime
    gaps: Dict[str, List[Gap]] = {}


class JobDetail(BaseModel):
    job_id: str
    entity_type: str
    start_date: str
    end_date: str
    status: str
    attempts: int = 0
    rows_written: int = 0
    rows_failed: int = 0
    last_error: Optional[str] = None


class SyncStatus(BaseModel):
    """Tenant-level progress summary exposed for polling."""

    run_id: str
    tenant_id: str
    connection_id: str
    overall_status: str  # "syncing" | "completed" | "partial" | "error"
    jobs_total: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_pending: int = 0
    jobs_running: int = 0
    progress_pct: float = 0.0
    rows_written: int = 0
    cancelled: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    jobs: List[JobDetail] = []


class ConnectionIn(BaseModel):
    """Request body for POST /connections."""

    connection_id: str
    tenant_id: str
    ad_account_id: str
    access_token: str = ""
    platform: str = "meta"
    timezone_name: str = "UTC"
    entity_types: List[str] = ["ad"]
    status: str = "active"
