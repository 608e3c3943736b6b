"""SYNCWARD — Sync Ledger Models.

A SyncRun owns its SyncJobs (1:N, cascade). Jobs move
pending → running → (completed | failed); completed / failed are terminal.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4
from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    ERROR = "error"


class SyncRun(SQLModel, table=True):
    """One invocation of the backfill pipeline for a tenant connection."""

    __tablename__ = "sync_runs"

    run_id: str = Field(default_factory=_new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    connection_id: str = Field(index=True)
    lookback_days: int = 0
    force: bool = False
    status: str = Field(default=RunStatus.PENDING.value, index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    jobs_total: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    rows_written: int = 0
    cancel_requested: bool = False
    error: Optional[str] = None


class SyncJob(SQLModel, table=True):
    """One chunk of one entity series to fetch and upsert."""

    __tablename__ = "sync_jobs"

    job_id: str = Field(default_factory=_new_id, primary_key=True)
    run_id: str = Field(foreign_key="sync_runs.run_id", index=True, ondelete="CASCADE")
    seq: int = Field(default=0, description="Dispatch order within the run")
    tenant_id: str = Field(index=True)
    connection_id: str
    entity_type: str
    start_date: str = Field(description="YYYY-MM-DD, inclusive")
    end_date: str = Field(description="YYYY-MM-DD, inclusive")
    status: str = Field(default=JobStatus.PENDING.value, index=True)
    attempts: int = 0
    last_error: Optional[str] = None
    rows_written: int = 0
    rows_failed: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
