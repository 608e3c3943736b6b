"""SYNCWARD — Sync Status Tracker.

Pure read-side view over a SyncRun and its SyncJobs.
"""

from typing import Iterable, List

from syncward.models.schemas import JobDetail, SyncStatus
from syncward.models.sync_models import TERMINAL_JOB_STATUSES, JobStatus, SyncJob, SyncRun

SYNCING = "syncing"
COMPLETED = "completed"
PARTIAL = "partial"
ERROR = "error"


def overall_status(statuses: Iterable[str]) -> str:
    """completed iff all completed; partial iff some completed and some failed;
    error iff all failed; syncing while any job is non-terminal."""
    statuses = [JobStatus(s) for s in statuses]
    if any(s in (JobStatus.PENDING, JobStatus.RUNNING) for s in statuses):
        return SYNCING
    completed = sum(1 for s in statuses if s == JobStatus.COMPLETED)
    failed = sum(1 for s in statuses if s == JobStatus.FAILED)
    if failed == 0:
        return COMPLETED
    if completed == 0:
        return ERROR
    return PARTIAL


def _detail(job: SyncJob) -> JobDetail:
    return JobDetail(
        job_id=job.job_id,
        entity_type=job.entity_type,
        start_date=job.start_date,
        end_date=job.end_date,
        status=job.status,
        attempts=job.attempts,
        rows_written=job.rows_written,
        rows_failed=job.rows_failed,
        last_error=job.last_error,
    )


def build_status(run: SyncRun, jobs: List[SyncJob]) -> SyncStatus:
    """Summarize a run for polling clients."""
    counts = {status: 0 for status in JobStatus}
    for job in jobs:
        counts[JobStatus(job.status)] += 1

    total = len(jobs)
    terminal = sum(counts[s] for s in TERMINAL_JOB_STATUSES)
    progress = round(terminal / total * 100, 1) if total else 100.0

    return SyncStatus(
        run_id=run.run_id,
        tenant_id=run.tenant_id,
        connection_id=run.connection_id,
        overall_status=overall_status(job.status for job in jobs),
        jobs_total=total,
        jobs_completed=counts[JobStatus.COMPLETED],
        jobs_failed=counts[JobStatus.FAILED],
        jobs_pending=counts[JobStatus.PENDING],
        jobs_running=counts[JobStatus.RUNNING],
        progress_pct=progress,
        rows_written=sum(job.rows_written for job in jobs),
        cancelled=run.cancel_requested,
        started_at=run.started_at,
        finished_at=run.finished_at,
        jobs=[_detail(job) for job in jobs],
    )
