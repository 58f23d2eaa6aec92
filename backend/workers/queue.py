"""
Task Store — Durable SQL job queue operations.

State machine:
  pending ──claim──▶ running ──ok──▶ succeeded
  retrying ─claim─▶ running ──err─▶ retrying (run_after = now + attempt*60s)
                             └─err, attempt >= max_attempt─▶ dead
  running (locked_at older than TTL) ──reclaim──▶ retrying

The claim transaction is the only mutual-exclusion point: rows are read
with ``SELECT ... FOR UPDATE`` and flipped to ``running`` before commit,
and each flip re-checks the claimable status so a row can only be won once.
Finalize only applies while the row is still held by the same claim
(lock owner and attempt), so a reclaimed run cannot overwrite its successor.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

import structlog
from sqlalchemy import select, update

from db.models import JobTask
from db.session import Database

logger = structlog.get_logger()

CLAIMABLE_STATUSES = ("pending", "retrying")
BACKOFF_STEP_SECS = 60
LAST_ERROR_MAX_CHARS = 2000


@dataclass(frozen=True)
class ClaimedTask:
    """Snapshot of a task at claim time. ``attempt`` is the attempt now running."""

    id: int
    tenant_id: str
    job_type: str
    channel_id: str | None
    run_for_dt: date | None
    attempt: int
    max_attempt: int
    locked_by: str


def truncate_error(message: str, max_chars: int = LAST_ERROR_MAX_CHARS) -> str:
    return message[:max_chars]


def backoff_delay(attempt: int) -> timedelta:
    """Linear backoff: one minute per attempt already made."""
    return timedelta(seconds=attempt * BACKOFF_STEP_SECS)


def as_naive_utc(now: datetime) -> datetime:
    """Storage timestamps are naive UTC; aware inputs are converted first."""
    if now.tzinfo is not None:
        return now.astimezone(timezone.utc).replace(tzinfo=None)
    return now


class TaskStore:
    def __init__(self, db: Database):
        self.db = db

    async def reclaim_stale(self, now: datetime, lock_ttl_secs: int, tenant_id: str | None = None) -> int:
        """Reset orphaned ``running`` rows to ``retrying``; returns the count."""
        stale_before = now - timedelta(seconds=lock_ttl_secs)
        stmt = (
            update(JobTask)
            .where(
                JobTask.status == "running",
                JobTask.locked_at.is_not(None),
                JobTask.locked_at < stale_before,
            )
            .values(status="retrying", run_after=now, locked_by=None, locked_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if tenant_id:
            stmt = stmt.where(JobTask.tenant_id == tenant_id)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        reclaimed = result.rowcount or 0
        if reclaimed:
            logger.warning("queue.reclaimed_stale", count=reclaimed, stale_before=stale_before.isoformat())
        return reclaimed

    async def claim_batch(
        self,
        now: datetime,
        limit: int,
        worker_id: str,
        tenant_id: str | None = None,
    ) -> list[ClaimedTask]:
        """Claim up to ``limit`` runnable tasks, oldest id first."""
        query = (
            select(
                JobTask.id,
                JobTask.tenant_id,
                JobTask.job_type,
                JobTask.channel_id,
                JobTask.run_for_dt,
                JobTask.attempt,
                JobTask.max_attempt,
            )
            .where(JobTask.status.in_(CLAIMABLE_STATUSES), JobTask.run_after <= now)
            .order_by(JobTask.id)
            .limit(limit)
            .with_for_update()
        )
        if tenant_id:
            query = query.where(JobTask.tenant_id == tenant_id)

        claimed: list[ClaimedTask] = []
        async with self.db.session() as session:
            async with session.begin():
                candidates = (await session.execute(query)).all()
                for row in candidates:
                    result = await session.execute(
                        update(JobTask)
                        .where(JobTask.id == row.id, JobTask.status.in_(CLAIMABLE_STATUSES))
                        .values(
                            status="running",
                            attempt=JobTask.attempt + 1,
                            locked_by=worker_id,
                            locked_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        continue
                    claimed.append(
                        ClaimedTask(
                            id=row.id,
                            tenant_id=row.tenant_id,
                            job_type=row.job_type,
                            channel_id=row.channel_id,
                            run_for_dt=row.run_for_dt,
                            attempt=row.attempt + 1,
                            max_attempt=row.max_attempt,
                            locked_by=worker_id,
                        )
                    )

        if claimed:
            logger.info("queue.claimed", worker_id=worker_id, task_ids=[t.id for t in claimed])
        return claimed

    def _owned(self, task: ClaimedTask):
        """Row still held by this claim: same lock owner and same attempt."""
        return (
            JobTask.id == task.id,
            JobTask.status == "running",
            JobTask.locked_by == task.locked_by,
            JobTask.attempt == task.attempt,
        )

    async def mark_succeeded(self, task: ClaimedTask, now: datetime) -> bool:
        """Returns False when the claim was lost (reclaimed and re-claimed elsewhere)."""
        async with self.db.session() as session:
            result = await session.execute(
                update(JobTask)
                .where(*self._owned(task))
                .values(status="succeeded", locked_by=None, locked_at=None, last_error=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning("queue.finalize_lost_claim", task_id=task.id, worker_id=task.locked_by, outcome="succeeded")
            return False
        return True

    async def mark_failed(self, task: ClaimedTask, error: str, now: datetime) -> str | None:
        """Record a failure; returns the new status (``retrying`` or ``dead``), or None if the claim was lost."""
        message = truncate_error(error)
        values: dict = {"locked_by": None, "locked_at": None, "last_error": message, "updated_at": now}
        if task.attempt >= task.max_attempt:
            values["status"] = "dead"
        else:
            values["status"] = "retrying"
            values["run_after"] = now + backoff_delay(task.attempt)

        async with self.db.session() as session:
            result = await session.execute(
                update(JobTask)
                .where(*self._owned(task))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning("queue.finalize_lost_claim", task_id=task.id, worker_id=task.locked_by, outcome="failed")
            return None
        return values["status"]

    async def get(self, task_id: int) -> JobTask | None:
        async with self.db.session() as session:
            return await session.get(JobTask, task_id)
