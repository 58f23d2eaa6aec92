"""
Job handlers executed by the worker loop.

Jobs:
  1. daily_channel:  sync the 7-day metrics window, decide, label the decision from 7 days ago
  2. weekly_channel: snapshot a candidate policy and write its replay evaluation report

Every side effect is an upsert, so a retried task converges on the same rows.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Protocol

import structlog

from alerts.evaluator import GuardrailEvaluator
from core.errors import AuthError, TaskError, UnknownJobTypeError
from db.metrics import load_metric_rows, new_video_counts_by_dt, upsert_metric_rows, upsert_observed_action
from db.session import Database
from decisions.engine import compute_decision
from decisions.outcome import OUTCOME_LAG_DAYS, compute_outcome_label, outcome_windows, summarize_window
from decisions.policy import (
    ACTIVE_VERSION,
    PolicyEvalReportV1,
    candidate_version_for,
    ensure_active,
    upsert_eval_report,
    upsert_params,
)
from decisions.queries import decision_exists, load_replay_history, upsert_decision, upsert_outcome
from decisions.replay_gate import compute_metrics
from integrations.base import ChannelCredentials, MetricsProvider, TokenProvider

logger = structlog.get_logger()

WINDOW_DAYS = 7
REPLAY_LOOKBACK_DAYS = 28
OUTCOME_TOP_N_MAX = 10


class JobType(str, Enum):
    DAILY_CHANNEL = "daily_channel"
    WEEKLY_CHANNEL = "weekly_channel"


@dataclass
class JobContext:
    db: Database
    tokens: TokenProvider
    metrics: MetricsProvider
    guardrails: GuardrailEvaluator | None
    now: datetime


class JobHandler(Protocol):
    async def run(self, task, ctx: JobContext) -> dict: ...


def _require(task, field: str):
    value = getattr(task, field)
    if not value:
        raise TaskError(f"{task.job_type} task missing {field}")
    return value


# ─── Daily ──────────────────────────────────────────────────────────────────


class DailyChannelJob:
    async def _credentials(self, task, ctx: JobContext) -> ChannelCredentials:
        creds = await ctx.tokens.get_active_credentials(task.tenant_id, task.channel_id)
        if creds.is_expired(ctx.now) and creds.refresh_token:
            creds = await ctx.tokens.refresh(task.tenant_id, task.channel_id, creds.refresh_token)
        return creds

    async def _fetch(self, task, ctx: JobContext, start_dt: date, end_dt: date):
        creds = await self._credentials(task, ctx)
        try:
            return await ctx.metrics.fetch_daily_metrics(creds.access_token, task.channel_id, start_dt, end_dt)
        except AuthError:
            if not creds.refresh_token:
                raise
            logger.info("jobs.daily.refresh_on_401", tenant_id=task.tenant_id, channel_id=task.channel_id)
            creds = await ctx.tokens.refresh(task.tenant_id, task.channel_id, creds.refresh_token)
            return await ctx.metrics.fetch_daily_metrics(creds.access_token, task.channel_id, start_dt, end_dt)

    async def run(self, task, ctx: JobContext) -> dict:
        run_for_dt: date = _require(task, "run_for_dt")
        channel_id: str = _require(task, "channel_id")
        tenant_id = task.tenant_id
        start_dt = run_for_dt - timedelta(days=WINDOW_DAYS)
        end_dt = run_for_dt - timedelta(days=1)

        rows = await self._fetch(task, ctx, start_dt, end_dt)

        summary: dict = {"metrics_rows": len(rows), "outcome": False}
        async with ctx.db.session() as session:
            await upsert_metric_rows(session, tenant_id, channel_id, rows)

            for dt, count in await new_video_counts_by_dt(session, tenant_id, channel_id, start_dt, end_dt):
                await upsert_observed_action(session, tenant_id, channel_id, dt, "publish", {"new_videos": count})

            params = await ensure_active(session, tenant_id, channel_id)
            decision = compute_decision(rows, run_for_dt, start_dt, end_dt, params.to_engine_config())
            await upsert_decision(session, tenant_id, channel_id, decision)
            summary["direction"] = decision.direction.value

            decision_dt = run_for_dt - timedelta(days=OUTCOME_LAG_DAYS)
            if await decision_exists(session, tenant_id, channel_id, decision_dt):
                (pre_start, pre_end), (post_start, post_end) = outcome_windows(decision_dt)
                top_n = max(1, min(OUTCOME_TOP_N_MAX, params.top_n_for_new_asset))
                history = await load_metric_rows(session, tenant_id, channel_id, pre_start, post_end)
                pre = summarize_window(history, pre_start, pre_end, top_n)
                post = summarize_window(history, post_start, post_end, top_n)
                label = compute_outcome_label(
                    pre.revenue_sum_usd, post.revenue_sum_usd, pre.top_video_ids, post.top_video_ids
                )
                notes = {
                    "pre_window": {"start_dt": pre_start.isoformat(), "end_dt": pre_end.isoformat()},
                    "post_window": {"start_dt": post_start.isoformat(), "end_dt": post_end.isoformat()},
                    "pre_revenue_sum_usd_7d": pre.revenue_sum_usd,
                    "post_revenue_sum_usd_7d": post.revenue_sum_usd,
                    "top_n": top_n,
                }
                await upsert_outcome(session, tenant_id, channel_id, decision_dt, run_for_dt, label, notes)
                summary["outcome"] = True

            await session.commit()

        if ctx.guardrails is not None and run_for_dt == ctx.now.date():
            try:
                await ctx.guardrails.evaluate(tenant_id, channel_id, now=ctx.now)
            except Exception as exc:  # noqa: BLE001
                # Alert evaluation never fails the sync.
                logger.warning(
                    "jobs.daily.guardrails_failed",
                    tenant_id=tenant_id,
                    channel_id=channel_id,
                    error=str(exc),
                    exc_info=True,
                )

        return summary


# ─── Weekly ─────────────────────────────────────────────────────────────────


class WeeklyChannelJob:
    async def run(self, task, ctx: JobContext) -> dict:
        run_for_dt: date = _require(task, "run_for_dt")
        channel_id: str = _require(task, "channel_id")
        tenant_id = task.tenant_id
        candidate_version = candidate_version_for(run_for_dt)

        async with ctx.db.session() as session:
            active = await ensure_active(session, tenant_id, channel_id)
            await upsert_params(session, tenant_id, channel_id, candidate_version, active, created_by="weekly_job")

            history, outcomes = await load_replay_history(
                session,
                tenant_id,
                channel_id,
                run_for_dt - timedelta(days=REPLAY_LOOKBACK_DAYS),
                run_for_dt,
            )
            report = PolicyEvalReportV1(
                candidate_version=candidate_version,
                run_for_dt=run_for_dt,
                replay={
                    "source_version": ACTIVE_VERSION,
                    "lookback_days": REPLAY_LOOKBACK_DAYS,
                    "observed": compute_metrics(history, outcomes).as_dict(),
                },
            )
            await upsert_eval_report(session, tenant_id, channel_id, report, approved=False)
            await session.commit()

        return {"candidate_version": candidate_version, "approved": False}


HANDLERS: dict[JobType, JobHandler] = {
    JobType.DAILY_CHANNEL: DailyChannelJob(),
    JobType.WEEKLY_CHANNEL: WeeklyChannelJob(),
}

_missing = set(JobType) - set(HANDLERS)
if _missing:
    raise RuntimeError(f"job types without a handler: {sorted(t.value for t in _missing)}")


def handler_for(job_type: str) -> JobHandler:
    try:
        return HANDLERS[JobType(job_type)]
    except ValueError:
        raise UnknownJobTypeError(job_type) from None
