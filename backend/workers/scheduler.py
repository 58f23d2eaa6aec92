"""Celery entry points for dispatch, the worker tick and guardrail fan-out.

Each task owns its engine for the duration of one ``asyncio.run`` and
disposes it before returning.
"""

import asyncio
from datetime import datetime

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.scheduler.dispatch_jobs",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_jobs(self, job_type: str, backfill_weeks: int | None = None, force: bool = False):
    """Enqueue today's tasks for every connected channel."""
    from core.config import get_settings
    from core.errors import UnknownJobTypeError
    from db.session import Database
    from integrations.youtube import ConnectionChannelRegistry
    from workers.dispatcher import Dispatcher

    run_id = self.request.id or "manual"

    async def _dispatch():
        db = Database.from_settings(get_settings())
        try:
            result = await Dispatcher(db, ConnectionChannelRegistry(db)).dispatch(
                job_type, datetime.utcnow(), backfill_weeks=backfill_weeks, force=force
            )
            return {**result.as_dict(), "run_id": run_id}
        finally:
            await db.dispose()

    try:
        return asyncio.run(_dispatch())
    except UnknownJobTypeError:
        logger.error("scheduler.dispatch_rejected", job_type=job_type)
        raise
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", job_type=job_type, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.scheduler.run_tick",
    bind=True,
    acks_late=True,
)
def run_tick(self, limit: int = 10, tenant_id: str | None = None):
    """Drain one bounded batch of the SQL task queue."""
    from core.config import get_settings
    from db.session import Database
    from workers.tick import build_worker

    async def _tick():
        settings = get_settings()
        db = Database.from_settings(settings)
        try:
            stats = await build_worker(db, settings).tick(limit=limit, tenant_id=tenant_id)
            return stats.as_dict()
        finally:
            await db.dispose()

    try:
        return asyncio.run(_tick())
    except Exception as exc:
        logger.error("scheduler.tick_failed", error=str(exc), exc_info=True)
        raise


@celery_app.task(
    name="workers.scheduler.evaluate_guardrails",
    bind=True,
    acks_late=True,
)
def evaluate_guardrails(self, job_type: str = "daily_channel"):
    """Re-evaluate alerts for every connected channel."""
    from alerts.evaluator import GuardrailEvaluator
    from core.config import get_settings
    from db.session import Database
    from integrations.youtube import ConnectionChannelRegistry

    async def _evaluate():
        db = Database.from_settings(get_settings())
        try:
            evaluator = GuardrailEvaluator(db)
            targets = await ConnectionChannelRegistry(db).list_channels(job_type)
            evaluated = failed = 0
            for target in targets:
                try:
                    await evaluator.evaluate(target.tenant_id, target.channel_id)
                    evaluated += 1
                except Exception as exc:  # noqa: BLE001
                    failed += 1
                    logger.error(
                        "scheduler.guardrails_channel_failed",
                        tenant_id=target.tenant_id,
                        channel_id=target.channel_id,
                        error=str(exc),
                        exc_info=True,
                    )
            summary = {"channels": len(targets), "evaluated": evaluated, "failed": failed}
            logger.info("scheduler.guardrails_complete", **summary)
            return summary
        finally:
            await db.dispose()

    return asyncio.run(_evaluate())
