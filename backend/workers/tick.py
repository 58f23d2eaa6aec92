"""
Worker Loop — One bounded batch per invocation ("tick").

Order of work:
  1. reclaim stale locks (ignores the claim limit)
  2. claim up to ``limit`` runnable tasks in one transaction
  3. execute each claimed task by job type, sequentially
  4. finalize each task: succeeded, retrying with backoff, or dead

A task failure is recorded on its row and never aborts the batch.
"""

from dataclasses import dataclass
from datetime import datetime

import structlog

from alerts.evaluator import GuardrailEvaluator
from core.errors import ConfigError
from core.logging import bind_context, clear_context
from db.session import Database
from integrations.base import MetricsProvider, TokenProvider
from workers.jobs import JobContext, handler_for
from workers.queue import ClaimedTask, TaskStore, as_naive_utc

logger = structlog.get_logger()

DEFAULT_TICK_LIMIT = 10
MAX_TICK_LIMIT = 50


@dataclass
class TickStats:
    reclaimed: int = 0
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "reclaimed": self.reclaimed,
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "dead": self.dead,
        }


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_TICK_LIMIT
    return max(1, min(MAX_TICK_LIMIT, int(limit)))


class Worker:
    def __init__(
        self,
        db: Database,
        tokens: TokenProvider | None,
        metrics: MetricsProvider | None,
        worker_id: str,
        lock_ttl_secs: int = 600,
        guardrails: GuardrailEvaluator | None = None,
    ):
        self.db = db
        self.store = TaskStore(db)
        self.tokens = tokens
        self.metrics = metrics
        self.worker_id = worker_id
        self.lock_ttl_secs = lock_ttl_secs
        self.guardrails = guardrails

    def preflight(self) -> None:
        """Fail before claiming anything when the worker cannot run jobs at all."""
        if not self.worker_id:
            raise ConfigError("worker_id is not configured")
        if self.tokens is None or self.metrics is None:
            raise ConfigError("YouTube OAuth client is not configured (YOUTUBE_CLIENT_ID / YOUTUBE_CLIENT_SECRET)")

    async def _execute(self, task: ClaimedTask, ctx: JobContext, stats: TickStats) -> None:
        bind_context(task_id=task.id, tenant_id=task.tenant_id, job_type=task.job_type)
        try:
            result = await handler_for(task.job_type).run(task, ctx)
        except Exception as exc:  # noqa: BLE001
            status = await self.store.mark_failed(task, str(exc) or type(exc).__name__, ctx.now)
            if status == "dead":
                stats.dead += 1
            elif status == "retrying":
                stats.retried += 1
            logger.error(
                "tick.task_failed",
                attempt=task.attempt,
                max_attempt=task.max_attempt,
                status=status,
                error=str(exc),
            )
        else:
            if await self.store.mark_succeeded(task, ctx.now):
                stats.succeeded += 1
                logger.info("tick.task_succeeded", attempt=task.attempt, **result)
        finally:
            clear_context()

    async def tick(
        self,
        now: datetime | None = None,
        limit: int | None = None,
        tenant_id: str | None = None,
    ) -> TickStats:
        self.preflight()
        now = as_naive_utc(now or datetime.utcnow())
        tenant_id = (tenant_id or "").strip() or None
        stats = TickStats()

        stats.reclaimed = await self.store.reclaim_stale(now, self.lock_ttl_secs, tenant_id)
        claimed = await self.store.claim_batch(now, clamp_limit(limit), self.worker_id, tenant_id)
        stats.claimed = len(claimed)

        ctx = JobContext(
            db=self.db,
            tokens=self.tokens,
            metrics=self.metrics,
            guardrails=self.guardrails,
            now=now,
        )
        for task in claimed:
            await self._execute(task, ctx, stats)

        logger.info("tick.completed", worker_id=self.worker_id, **stats.as_dict())
        return stats


def build_worker(db: Database, settings) -> Worker:
    """Wire a worker from settings. Providers stay unset when OAuth is not configured."""
    from integrations.youtube import ConnectionTokenProvider, YouTubeAnalyticsClient, YouTubeOAuthClient

    tokens = metrics = None
    if settings.youtube_oauth_configured:
        oauth = YouTubeOAuthClient(
            token_url=settings.youtube_token_url,
            client_id=settings.youtube_client_id,
            client_secret=settings.youtube_client_secret,
        )
        tokens = ConnectionTokenProvider(db, oauth)
        metrics = YouTubeAnalyticsClient(base_url=settings.youtube_analytics_base_url)

    return Worker(
        db,
        tokens=tokens,
        metrics=metrics,
        worker_id=settings.resolved_worker_id,
        lock_ttl_secs=settings.lock_ttl_secs,
        guardrails=GuardrailEvaluator(db),
    )
