"""
Jobs Router — Manual dispatch and worker ticks.
"""

from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from api.deps import get_database, get_worker, require_internal_token
from core.errors import UnknownJobTypeError
from db.session import Database
from integrations.youtube import ConnectionChannelRegistry
from workers.dispatcher import Dispatcher
from workers.tick import Worker

router = APIRouter(
    prefix="/api/v1/jobs",
    tags=["jobs"],
    dependencies=[Depends(require_internal_token)],
)


# ─── Schemas ────────────────────────────────────────────────────────────────


class DispatchResponse(BaseModel):
    job_type: str
    run_for_dt: date
    candidates: int
    enqueued: int

    model_config = {"from_attributes": True}


class TickResponse(BaseModel):
    reclaimed: int
    claimed: int
    succeeded: int
    retried: int
    dead: int

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch_jobs(
    job_type: str = Query(...),
    backfill_weeks: int | None = Query(None, description="Weekly history to enqueue (daily_channel, clamped to 0..52)"),
    force: bool = Query(False, description="Requeue existing non-running tasks as pending with attempt 0"),
    db: Database = Depends(get_database),
):
    """Enqueue today's task for every connected channel."""
    dispatcher = Dispatcher(db, ConnectionChannelRegistry(db))
    try:
        return await dispatcher.dispatch(job_type, datetime.utcnow(), backfill_weeks=backfill_weeks, force=force)
    except UnknownJobTypeError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/tick", response_model=TickResponse)
async def run_tick(
    limit: int | None = Query(None),
    tenant_id: str | None = None,
    worker: Worker = Depends(get_worker),
):
    """Run one bounded worker batch in-process."""
    return await worker.tick(limit=limit, tenant_id=tenant_id)
