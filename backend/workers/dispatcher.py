"""
Dispatcher — Enqueue one task per eligible channel for a job type and day.

Re-dispatching the same (tenant, job_type, channel, run_for_dt) only
touches ``updated_at``: status and attempt are left alone so a finished
task is never reopened. ``force=True`` is the manual requeue: every
non-running row goes back to ``pending`` with attempt 0.

Daily dispatch also backfills weekly history:
  - ``backfill_weeks`` > 1 enqueues run_for_dt, -7d, -14d, ... (clamped to 52 weeks)
  - otherwise a channel with no stored metrics gets 4 weeks (first sync)
Dates are enqueued newest first so the worker, which claims by id,
processes current data first.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import case, func, select

from core.errors import UnknownJobTypeError
from db.models import JobTask, VideoDailyMetric
from db.upsert import upsert
from db.session import Database
from integrations.base import ChannelRegistry, ChannelTarget
from workers.jobs import JobType
from workers.queue import as_naive_utc

logger = structlog.get_logger()

DEFAULT_MAX_ATTEMPT = 3
FIRST_SYNC_BACKFILL_WEEKS = 4
MAX_BACKFILL_WEEKS = 52


@dataclass
class DispatchResult:
    job_type: str
    run_for_dt: date
    candidates: int
    enqueued: int = 0

    def as_dict(self) -> dict:
        return {
            "job_type": self.job_type,
            "run_for_dt": self.run_for_dt.isoformat(),
            "candidates": self.candidates,
            "enqueued": self.enqueued,
        }


def dedupe_key(tenant_id: str, job_type: str, channel_id: str, run_for_dt: date) -> str:
    return f"{tenant_id}:{job_type}:{channel_id}:{run_for_dt.isoformat()}"


def clamp_backfill_weeks(backfill_weeks: int | None) -> int:
    if backfill_weeks is None:
        return 0
    return max(0, min(MAX_BACKFILL_WEEKS, int(backfill_weeks)))


def weekly_run_dates(run_for_dt: date, weeks: int) -> list[date]:
    """``run_for_dt`` and the same weekday in each earlier week, newest first."""
    return [run_for_dt - timedelta(days=7 * i) for i in range(max(1, weeks))]


def _touch(now: datetime) -> dict:
    return {"updated_at": now}


def _force_reset(now: datetime) -> dict:
    """Requeue a finished or waiting row; a running row keeps its claim."""
    running = JobTask.status == "running"
    return {
        "updated_at": now,
        "status": case((running, JobTask.status), else_="pending"),
        "attempt": case((running, JobTask.attempt), else_=0),
        "run_after": case((running, JobTask.run_after), else_=now),
        "last_error": case((running, JobTask.last_error), else_=None),
        "locked_by": case((running, JobTask.locked_by), else_=None),
        "locked_at": case((running, JobTask.locked_at), else_=None),
    }


class Dispatcher:
    def __init__(self, db: Database, registry: ChannelRegistry):
        self.db = db
        self.registry = registry

    async def _has_metrics(self, session, target: ChannelTarget) -> bool:
        max_dt = await session.scalar(
            select(func.max(VideoDailyMetric.dt)).where(
                VideoDailyMetric.tenant_id == target.tenant_id,
                VideoDailyMetric.channel_id == target.channel_id,
            )
        )
        return max_dt is not None

    async def _run_dates(self, session, job_type: JobType, target: ChannelTarget, run_for_dt: date, weeks: int):
        if job_type is not JobType.DAILY_CHANNEL:
            return [run_for_dt]
        if weeks > 1:
            return weekly_run_dates(run_for_dt, weeks)
        if not await self._has_metrics(session, target):
            return weekly_run_dates(run_for_dt, FIRST_SYNC_BACKFILL_WEEKS)
        return [run_for_dt]

    async def dispatch(
        self,
        job_type: JobType | str,
        now: datetime,
        backfill_weeks: int | None = None,
        force: bool = False,
    ) -> DispatchResult:
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise UnknownJobTypeError(str(job_type)) from None
        now = as_naive_utc(now)
        run_for_dt = now.date()
        weeks = clamp_backfill_weeks(backfill_weeks)
        targets = await self.registry.list_channels(job_type.value)
        on_conflict = _force_reset(now) if force else _touch(now)

        enqueued = 0
        async with self.db.session() as session:
            for target in targets:
                for dt in await self._run_dates(session, job_type, target, run_for_dt, weeks):
                    await upsert(
                        session,
                        JobTask,
                        {
                            "tenant_id": target.tenant_id,
                            "job_type": job_type.value,
                            "channel_id": target.channel_id,
                            "run_for_dt": dt,
                            "dedupe_key": dedupe_key(target.tenant_id, job_type.value, target.channel_id, dt),
                            "status": "pending",
                            "attempt": 0,
                            "max_attempt": DEFAULT_MAX_ATTEMPT,
                            "run_after": now,
                            "created_at": now,
                            "updated_at": now,
                        },
                        index_elements=["dedupe_key"],
                        set_=on_conflict,
                    )
                    enqueued += 1
            await session.commit()

        result = DispatchResult(
            job_type=job_type.value,
            run_for_dt=run_for_dt,
            candidates=len(targets),
            enqueued=enqueued,
        )
        logger.info("dispatch.completed", force=force, backfill_weeks=weeks, **result.as_dict())
        return result
