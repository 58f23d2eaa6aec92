"""
Guardrail Evaluator — Open and auto-resolve key-addressed channel alerts.

Each run builds the desired alert set for one (tenant, channel), upserts
every desired alert (reopening it if it was resolved), and resolves the
keys that cleared. A key is only resolved when this run had enough data to
judge it, so missing data never flaps an alert closed.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from alerts import guardrails as g
from alerts.schemas import (
    AlertDetails,
    ConcentrationDetails,
    DailyRevenue,
    JobErrorDetails,
    LatestJob,
    MetricsStaleDetails,
    RevenueMissingDetails,
    RevenueMissingThreshold,
    RpmDropDetails,
    TopVideo,
    VolatilityDetails,
    WindowBounds,
    WindowMetrics,
)
from db.models import JobTask, VideoDailyMetric, YtAlert
from db.session import Database
from db.upsert import upsert

logger = structlog.get_logger()

LAST_ERROR_DETAIL_CHARS = 600


def _round2(value: float) -> float:
    return round(value * 100) / 100


@dataclass
class WindowSum:
    start_dt: date
    end_dt: date
    revenue_usd: float
    views: int
    source: str

    @property
    def agg(self) -> g.WindowAgg:
        return g.WindowAgg(revenue_usd=self.revenue_usd, views=self.views)

    def details(self) -> WindowMetrics:
        return WindowMetrics(
            start_dt=self.start_dt,
            end_dt=self.end_dt,
            revenue_usd=_round2(self.revenue_usd),
            views=self.views,
            rpm=_round2(self.agg.rpm),
            source=self.source,
        )


@dataclass
class EvaluationResult:
    tenant_id: str
    channel_id: str
    open_keys: list[str] = field(default_factory=list)
    resolved_keys: list[str] = field(default_factory=list)


class GuardrailEvaluator:
    """Evaluates guardrails for one channel at a time against the shared store."""

    def __init__(self, db: Database):
        self.db = db

    # ─── Queries ────────────────────────────────────────────────────────────

    async def _window_sum(
        self, session: AsyncSession, tenant_id: str, channel_id: str, start_dt: date, end_dt: date
    ) -> WindowSum:
        """Channel-total rows when present, else the sum over per-video rows."""
        base = (
            VideoDailyMetric.tenant_id == tenant_id,
            VideoDailyMetric.channel_id == channel_id,
            VideoDailyMetric.dt >= start_dt,
            VideoDailyMetric.dt <= end_dt,
        )
        totals = await session.execute(
            select(
                func.count(),
                func.coalesce(func.sum(VideoDailyMetric.revenue_usd), 0.0),
                func.coalesce(func.sum(VideoDailyMetric.views), 0),
            ).where(*base, VideoDailyMetric.is_channel_total.is_(True))
        )
        rows_n, revenue, views = totals.one()
        if rows_n:
            return WindowSum(start_dt, end_dt, float(revenue), int(views), "channel_total")

        videos = await session.execute(
            select(
                func.coalesce(func.sum(VideoDailyMetric.revenue_usd), 0.0),
                func.coalesce(func.sum(VideoDailyMetric.views), 0),
            ).where(*base, VideoDailyMetric.is_channel_total.is_(False))
        )
        revenue, views = videos.one()
        return WindowSum(start_dt, end_dt, float(revenue), int(views), "video_sum")

    async def _top_video(
        self, session: AsyncSession, tenant_id: str, channel_id: str, start_dt: date, end_dt: date
    ) -> tuple[str, float] | None:
        revenue = func.sum(VideoDailyMetric.revenue_usd).label("revenue")
        result = await session.execute(
            select(VideoDailyMetric.video_id, revenue)
            .where(
                VideoDailyMetric.tenant_id == tenant_id,
                VideoDailyMetric.channel_id == channel_id,
                VideoDailyMetric.dt >= start_dt,
                VideoDailyMetric.dt <= end_dt,
                VideoDailyMetric.is_channel_total.is_(False),
            )
            .group_by(VideoDailyMetric.video_id)
            .order_by(revenue.desc(), VideoDailyMetric.video_id)
            .limit(1)
        )
        row = result.first()
        return (row.video_id, float(row.revenue or 0.0)) if row else None

    async def _daily_totals(
        self, session: AsyncSession, tenant_id: str, channel_id: str, start_dt: date, end_dt: date
    ) -> list[tuple[date, float]]:
        for channel_total in (True, False):
            result = await session.execute(
                select(VideoDailyMetric.dt, func.sum(VideoDailyMetric.revenue_usd))
                .where(
                    VideoDailyMetric.tenant_id == tenant_id,
                    VideoDailyMetric.channel_id == channel_id,
                    VideoDailyMetric.dt >= start_dt,
                    VideoDailyMetric.dt <= end_dt,
                    VideoDailyMetric.is_channel_total.is_(channel_total),
                )
                .group_by(VideoDailyMetric.dt)
                .order_by(VideoDailyMetric.dt)
            )
            rows = [(dt, float(rev or 0.0)) for dt, rev in result.all()]
            if rows:
                return rows
        return []

    async def _max_metric_dt(self, session: AsyncSession, tenant_id: str, channel_id: str) -> date | None:
        result = await session.execute(
            select(func.max(VideoDailyMetric.dt)).where(
                VideoDailyMetric.tenant_id == tenant_id,
                VideoDailyMetric.channel_id == channel_id,
            )
        )
        return result.scalar_one_or_none()

    async def _latest_daily_job(self, session: AsyncSession, tenant_id: str, channel_id: str) -> JobTask | None:
        result = await session.execute(
            select(JobTask)
            .where(
                JobTask.tenant_id == tenant_id,
                JobTask.channel_id == channel_id,
                JobTask.job_type == "daily_channel",
                JobTask.run_for_dt.is_not(None),
            )
            .order_by(JobTask.run_for_dt.desc(), JobTask.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ─── Writes ─────────────────────────────────────────────────────────────

    async def _open(
        self,
        session: AsyncSession,
        tenant_id: str,
        channel_id: str,
        alert: g.GuardrailAlert,
        details: AlertDetails | None,
        now: datetime,
    ) -> None:
        await upsert(
            session,
            YtAlert,
            {
                "tenant_id": tenant_id,
                "channel_id": channel_id,
                "alert_key": alert.key,
                "kind": alert.kind,
                "severity": alert.severity,
                "message": alert.message,
                "details_json": details.model_dump(mode="json") if details is not None else None,
                "detected_at": now,
                "resolved_at": None,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id", "channel_id", "alert_key"],
            update_columns=["kind", "severity", "message", "details_json", "detected_at", "resolved_at", "updated_at"],
        )

    async def _resolve(self, session: AsyncSession, tenant_id: str, channel_id: str, key: str, now: datetime) -> bool:
        result = await session.execute(
            update(YtAlert)
            .where(
                YtAlert.tenant_id == tenant_id,
                YtAlert.channel_id == channel_id,
                YtAlert.alert_key == key,
                YtAlert.resolved_at.is_(None),
            )
            .values(resolved_at=now, updated_at=now)
        )
        return bool(result.rowcount)

    # ─── Evaluation ─────────────────────────────────────────────────────────

    async def evaluate(self, tenant_id: str, channel_id: str, now: datetime | None = None) -> EvaluationResult:
        now = now or datetime.utcnow()
        today = now.date()
        current_start, current_end = today - timedelta(days=7), today - timedelta(days=1)
        baseline_start, baseline_end = today - timedelta(days=14), today - timedelta(days=8)
        window = WindowBounds(start_dt=current_start, end_dt=current_end)

        async with self.db.session() as session:
            current = await self._window_sum(session, tenant_id, channel_id, current_start, current_end)
            baseline = await self._window_sum(session, tenant_id, channel_id, baseline_start, baseline_end)

            total_rev = current.revenue_usd if math.isfinite(current.revenue_usd) else None
            top_video = None
            if (total_rev or 0.0) >= g.CONCENTRATION_MIN_REVENUE_USD:
                top_video = await self._top_video(session, tenant_id, channel_id, current_start, current_end)
            concentration = None
            if top_video is not None and total_rev and total_rev > 0:
                concentration = min(1.0, max(0.0, top_video[1] / total_rev))

            daily_totals = await self._daily_totals(session, tenant_id, channel_id, current_start, current_end)
            daily_revs = [rev for _, rev in daily_totals if math.isfinite(rev)]
            rev_mean = rev_stddev = None
            if len(daily_revs) >= g.VOLATILITY_MIN_DAYS:
                rev_mean = sum(daily_revs) / len(daily_revs)
                rev_stddev = math.sqrt(sum((v - rev_mean) ** 2 for v in daily_revs) / len(daily_revs))

            max_dt = await self._max_metric_dt(session, tenant_id, channel_id)

            data = g.GuardrailInput(
                today=today,
                current=current.agg,
                baseline=baseline.agg,
                max_metric_dt=max_dt,
                top1_concentration_7d=concentration,
                total_revenue_usd_7d=total_rev,
                revenue_mean_usd_7d=rev_mean,
                revenue_stddev_usd_7d=rev_stddev,
            )
            desired = g.evaluate_guardrails(data)

            job = await self._latest_daily_job(session, tenant_id, channel_id)
            forbidden = unsupported = False
            job_details = None
            if job is not None:
                job_details = LatestJob(
                    status=job.status,
                    run_for_dt=job.run_for_dt,
                    attempt=job.attempt,
                    max_attempt=job.max_attempt,
                    last_error=job.last_error[:LAST_ERROR_DETAIL_CHARS] if job.last_error else None,
                )
                if job.status != "succeeded":
                    forbidden, unsupported = g.classify_job_error(job.last_error)
            desired.extend(g.platform_error_alerts(forbidden, unsupported))

            revenue_missing = g.is_revenue_missing(current.agg, forbidden, unsupported)
            if revenue_missing:
                desired.append(g.revenue_missing_alert())

            # ── Details per key ──
            details: dict[str, AlertDetails] = {
                g.RPM_DROP: RpmDropDetails(
                    current=current.details(),
                    baseline=baseline.details(),
                    rpm_drop_pct=round(g.rpm_drop_pct(current.agg, baseline.agg), 4),
                ),
                g.METRICS_STALE: MetricsStaleDetails(
                    today=today,
                    max_metric_dt=max_dt,
                    age_days=(today - max_dt).days if max_dt else None,
                ),
            }
            if concentration is not None and total_rev is not None:
                details[g.REV_CONCENTRATION] = ConcentrationDetails(
                    window=window,
                    total_revenue_usd_7d=_round2(total_rev),
                    top_video=TopVideo(video_id=top_video[0], revenue_usd=_round2(top_video[1])),
                    top1_concentration_7d=concentration,
                )
            if rev_mean is not None and rev_stddev is not None:
                details[g.REV_VOLATILITY] = VolatilityDetails(
                    window=window,
                    revenue_mean_usd_7d=_round2(rev_mean),
                    revenue_stddev_usd_7d=_round2(rev_stddev),
                    daily_revenue_usd=[DailyRevenue(dt=dt, revenue_usd=_round2(rev)) for dt, rev in daily_totals],
                )
            if job_details is not None:
                if forbidden:
                    details[g.ANALYTICS_FORBIDDEN] = JobErrorDetails(job=job_details)
                if unsupported:
                    details[g.ANALYTICS_UNSUPPORTED] = JobErrorDetails(job=job_details)
            if revenue_missing:
                details[g.REVENUE_MISSING] = RevenueMissingDetails(
                    window=current.details(),
                    threshold=RevenueMissingThreshold(
                        views=g.REVENUE_MISSING_MIN_VIEWS,
                        revenue_usd=g.REVENUE_MISSING_MAX_USD,
                    ),
                )

            result = EvaluationResult(tenant_id=tenant_id, channel_id=channel_id)
            desired_keys = {alert.key for alert in desired}
            for alert in desired:
                await self._open(session, tenant_id, channel_id, alert, details.get(alert.key), now)
                result.open_keys.append(alert.key)

            # Keys this run was able to judge.
            judged = [g.METRICS_STALE, g.ANALYTICS_FORBIDDEN, g.ANALYTICS_UNSUPPORTED, g.REVENUE_MISSING]
            if g.can_compare_rpm(current.agg, baseline.agg):
                judged.append(g.RPM_DROP)
            if concentration is not None and total_rev is not None:
                judged.append(g.REV_CONCENTRATION)
            if rev_mean is not None and rev_stddev is not None:
                judged.append(g.REV_VOLATILITY)

            for key in judged:
                if key not in desired_keys and await self._resolve(session, tenant_id, channel_id, key, now):
                    result.resolved_keys.append(key)

            await session.commit()

        logger.info(
            "guardrails.evaluated",
            tenant_id=tenant_id,
            channel_id=channel_id,
            open_keys=result.open_keys,
            resolved_keys=result.resolved_keys,
        )
        return result
