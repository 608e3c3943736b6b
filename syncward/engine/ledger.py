"""SYNCWARD — SyncRun / SyncJob Ledger.

Persists run and job state independently of the facts table so status can be
served at any time, including long after a run finished.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from syncward.core.logging import get_logger
from syncward.engine.status import SYNCING, overall_status
from syncward.models.schemas import DateChunk, TenantEntityKey
from syncward.models.sync_models import JobStatus, RunStatus, SyncJob, SyncRun

logger = get_logger("engine.ledger")

OPEN_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)
OPEN_RUN_STATUSES = (RunStatus.PENDING.value, RunStatus.RUNNING.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncLedger:
    """Run/job bookkeeping on top of a SQLModel engine."""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ── Runs ──

    def create_run(
        self,
        tenant_id: str,
        connection_id: str,
        lookback_days: int,
        force: bool,
        planned: Sequence[Tuple[TenantEntityKey, DateChunk]],
    ) -> Tuple[SyncRun, List[SyncJob]]:
        """Create a pending run with one pending job per planned chunk."""
        with Session(self.engine) as session:
            run = SyncRun(
                tenant_id=tenant_id,
                connection_id=connection_id,
                lookback_days=lookback_days,
                force=force,
                jobs_total=len(planned),
            )
            session.add(run)
            # Parent row first; jobs reference it by foreign key
            session.flush()
            jobs = [
                SyncJob(
                    run_id=run.run_id,
                    seq=seq,
                    tenant_id=key.tenant_id,
                    connection_id=key.connection_id,
                    entity_type=key.entity_type,
                    start_date=chunk.start_date.isoformat(),
                    end_date=chunk.end_date.isoformat(),
                )
                for seq, (key, chunk) in enumerate(planned)
            ]
            session.add_all(jobs)
            session.commit()
            session.refresh(run)
            for job in jobs:
                session.refresh(job)
            session.expunge_all()
        logger.info(
            f"Created run with {len(jobs)} jobs",
            extra={"run_id": run.run_id, "tenant_id": tenant_id},
        )
        return run, jobs

    def start_run(self, run_id: str, deadline_at: datetime) -> None:
        with Session(self.engine) as session:
            run = session.get(SyncRun, run_id)
            run.status = RunStatus.RUNNING.value
            run.started_at = _utcnow()
            run.deadline_at = deadline_at
            session.add(run)
            session.commit()

    def request_cancel(self, run_id: str) -> bool:
        with Session(self.engine) as session:
            run = session.get(SyncRun, run_id)
            if run is None:
                return False
            run.cancel_requested = True
            session.add(run)
            session.commit()
            return True

    def finalize_run(self, run_id: str, error: Optional[str] = None) -> SyncRun:
        """Close the run: roll job outcomes up into its counters and status."""
        with Session(self.engine) as session:
            run = session.get(SyncRun, run_id)
            jobs = session.exec(select(SyncJob).where(SyncJob.run_id == run_id)).all()
            run.jobs_total = len(jobs)
            run.jobs_succeeded = sum(1 for j in jobs if j.status == JobStatus.COMPLETED.value)
            run.jobs_failed = sum(1 for j in jobs if j.status == JobStatus.FAILED.value)
            run.rows_written = sum(j.rows_written for j in jobs)
            status = overall_status(j.status for j in jobs)
            # A run is only finalized once its jobs are closed; leftovers mean it broke
            run.status = RunStatus.ERROR.value if status == SYNCING else status
            run.finished_at = _utcnow()
            if error:
                run.error = error
            session.add(run)
            session.commit()
            session.refresh(run)
            session.expunge(run)
        logger.info(
            f"Run finished {run.status}: {run.jobs_succeeded}/{run.jobs_total} jobs, "
            f"{run.rows_written} rows",
            extra={"run_id": run_id, "tenant_id": run.tenant_id, "rows_written": run.rows_written},
        )
        return run

    # ── Jobs ──

    def _update_job(self, job_id: str, **fields) -> SyncJob:
        with Session(self.engine) as session:
            job = session.get(SyncJob, job_id)
            for name, value in fields.items():
                setattr(job, name, value)
            session.add(job)
            session.commit()
            session.refresh(job)
            session.expunge(job)
            return job

    def mark_running(self, job_id: str) -> SyncJob:
        return self._update_job(job_id, status=JobStatus.RUNNING.value, started_at=_utcnow())

    def mark_completed(
        self,
        job_id: str,
        attempts: int,
        rows_written: int,
        rows_failed: int = 0,
        note: Optional[str] = None,
    ) -> SyncJob:
        return self._update_job(
            job_id,
            status=JobStatus.COMPLETED.value,
            attempts=attempts,
            rows_written=rows_written,
            rows_failed=rows_failed,
            last_error=note,
            finished_at=_utcnow(),
        )

    def mark_failed(self, job_id: str, attempts: int, error: str) -> SyncJob:
        return self._update_job(
            job_id,
            status=JobStatus.FAILED.value,
            attempts=attempts,
            last_error=error,
            finished_at=_utcnow(),
        )

    def fail_open_jobs(self, run_id: str, reason: str) -> int:
        """Mark every non-terminal job of the run failed with `reason`."""
        with Session(self.engine) as session:
            jobs = session.exec(
                select(SyncJob).where(
                    SyncJob.run_id == run_id, SyncJob.status.in_(OPEN_JOB_STATUSES)
                )
            ).all()
            now = _utcnow()
            for job in jobs:
                job.status = JobStatus.FAILED.value
                job.last_error = reason
                job.finished_at = now
                session.add(job)
            session.commit()
        if jobs:
            logger.warning(f"Failed {len(jobs)} open jobs: {reason}", extra={"run_id": run_id})
        return len(jobs)

    # ── Queries ──

    def get_run(self, run_id: str) -> Optional[SyncRun]:
        with Session(self.engine) as session:
            run = session.get(SyncRun, run_id)
            if run is not None:
                session.expunge(run)
            return run

    def list_jobs(self, run_id: str) -> List[SyncJob]:
        with Session(self.engine) as session:
            jobs = session.exec(
                select(SyncJob).where(SyncJob.run_id == run_id).order_by(SyncJob.seq)
            ).all()
            session.expunge_all()
            return list(jobs)

    def list_runs(self, tenant_id: Optional[str] = None, limit: int = 20) -> List[SyncRun]:
        with Session(self.engine) as session:
            query = select(SyncRun).order_by(SyncRun.created_at.desc()).limit(limit)  # type: ignore
            if tenant_id:
                query = query.where(SyncRun.tenant_id == tenant_id)
            runs = session.exec(query).all()
            session.expunge_all()
            return list(runs)

    def latest_run_for_tenant(self, tenant_id: str) -> Optional[SyncRun]:
        runs = self.list_runs(tenant_id, limit=1)
        return runs[0] if runs else None

    def active_run(self, tenant_id: str, connection_id: str) -> Optional[SyncRun]:
        with Session(self.engine) as session:
            run = session.exec(
                select(SyncRun).where(
                    SyncRun.tenant_id == tenant_id,
                    SyncRun.connection_id == connection_id,
                    SyncRun.status.in_(OPEN_RUN_STATUSES),
                )
            ).first()
            if run is not None:
                session.expunge(run)
            return run

    def recover_interrupted_runs(self) -> int:
        """Close runs a previous process left open; their jobs cannot resume."""
        with Session(self.engine) as session:
            run_ids = session.exec(
                select(SyncRun.run_id).where(SyncRun.status.in_(OPEN_RUN_STATUSES))
            ).all()
        for run_id in run_ids:
            self.fail_open_jobs(run_id, "interrupted: process restarted")
            self.finalize_run(run_id, error="interrupted")
        if run_ids:
            logger.warning(f"Recovered {len(run_ids)} interrupted runs")
        return len(run_ids)
