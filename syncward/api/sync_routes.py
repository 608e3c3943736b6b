"""SYNCWARD — Backfill & Status API Routes."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from syncward.core.errors import (
    ConnectionNotFoundError,
    GapDetectionError,
    RunConflictError,
)
from syncward.core.logging import get_logger
from syncward.engine.orchestrator import BackfillEngine
from syncward.models.schemas import (
    BackfillRequest,
    BackfillResponse,
    GapReport,
    SyncStatus,
)

logger = get_logger("api.sync")

router = APIRouter(tags=["Backfill"])


def get_backfill_engine(request: Request) -> BackfillEngine:
    """Dependency — the engine built during app startup."""
    return request.app.state.backfill_engine


# ── Response Models ──


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


class RunSummary(BaseModel):
    run_id: str
    tenant_id: str
    connection_id: str
    status: str
    force: bool
    lookback_days: int
    jobs_total: int
    jobs_succeeded: int
    jobs_failed: int
    rows_written: int
    error: Optional[str] = None


# ── Endpoints ──


@router.post("/backfill", response_model=BackfillResponse, status_code=202)
async def start_backfill(
    request: BackfillRequest,
    engine: BackfillEngine = Depends(get_backfill_engine),
):
    """Detect gaps for a tenant connection and schedule fetch jobs.

    Returns immediately; poll `/runs/{run_id}/status` for progress.
    """
    try:
        return await engine.start_backfill(
            tenant_id=request.tenant_id,
            connection_id=request.connection_id,
            lookback_days=request.lookback_days,
            force=request.force,
            entity_types=request.entity_types,
        )
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RunConflictError as e:
        raise HTTPException(
            status_code=409, detail={"message": str(e), "run_id": e.run_id}
        )
    except GapDetectionError as e:
        logger.error(f"Gap detection failed: {e}", extra={"tenant_id": request.tenant_id})
        raise HTTPException(status_code=503, detail=f"Gap detection failed: {e}")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/runs/{run_id}/status", response_model=SyncStatus)
async def get_run_status(
    run_id: str, engine: BackfillEngine = Depends(get_backfill_engine)
):
    """Progress of one run, including per-job detail."""
    status = engine.get_status(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return status


@router.get("/tenants/{tenant_id}/status", response_model=SyncStatus)
async def get_tenant_status(
    tenant_id: str, engine: BackfillEngine = Depends(get_backfill_engine)
):
    """Status of the tenant's most recent run."""
    status = engine.get_tenant_status(tenant_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"No runs for tenant {tenant_id}")
    return status


@router.post("/runs/{run_id}/cancel", response_model=CancelResponse)
async def cancel_run(run_id: str, engine: BackfillEngine = Depends(get_backfill_engine)):
    """Stop dispatching the run's jobs; already-written facts are kept."""
    if engine.ledger.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return CancelResponse(run_id=run_id, cancelled=engine.cancel_run(run_id))


@router.get("/gaps", response_model=GapReport)
async def inspect_gaps(
    tenant_id: str,
    connection_id: str,
    entity_type: Optional[str] = None,
    lookback_days: Optional[int] = Query(default=None, ge=1),
    engine: BackfillEngine = Depends(get_backfill_engine),
):
    """Read-only: which days in the window have no recorded facts."""
    try:
        return engine.detect_gaps(tenant_id, connection_id, entity_type, lookback_days)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GapDetectionError as e:
        raise HTTPException(status_code=503, detail=f"Gap detection failed: {e}")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/runs", response_model=List[RunSummary])
async def list_runs(
    tenant_id: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=200),
    engine: BackfillEngine = Depends(get_backfill_engine),
):
    """Most recent runs, newest first."""
    return [
        RunSummary(**run.model_dump(include=set(RunSummary.model_fields)))
        for run in engine.ledger.list_runs(tenant_id, limit)
    ]
