"""
Tests for the Guardrail Evaluator — open, update and auto-resolve alerts.
"""

from datetime import timedelta

from sqlalchemy import select, update

from alerts.evaluator import GuardrailEvaluator
from alerts.guardrails import ANALYTICS_FORBIDDEN, METRICS_STALE, REV_CONCENTRATION, REVENUE_MISSING, RPM_DROP
from conftest import CHANNEL_ID, NOW, TENANT_ID, TODAY, seed_metrics, video_rows
from db.models import CHANNEL_TOTAL_VIDEO_ID, JobTask, VideoDailyMetric, YtAlert
from integrations.base import VideoDailyMetricRow

CURRENT_START = TODAY - timedelta(days=7)
BASELINE_START = TODAY - timedelta(days=14)


def _totals(start, days, revenue, views):
    return [
        VideoDailyMetricRow(
            dt=start + timedelta(days=i),
            video_id=CHANNEL_TOTAL_VIDEO_ID,
            revenue_usd=revenue,
            views=views,
            is_channel_total=True,
        )
        for i in range(days)
    ]


async def _alerts(db) -> dict[str, YtAlert]:
    async with db.session() as session:
        result = await session.execute(select(YtAlert).where(YtAlert.tenant_id == TENANT_ID))
        return {a.alert_key: a for a in result.scalars().all()}


class TestGuardrailEvaluator:
    async def test_no_metrics_opens_missing_data(self, db):
        result = await GuardrailEvaluator(db).evaluate(TENANT_ID, CHANNEL_ID, now=NOW)

        assert result.open_keys == [METRICS_STALE]
        alerts = await _alerts(db)
        assert alerts[METRICS_STALE].severity == "info"
        assert alerts[METRICS_STALE].details_json["max_metric_dt"] is None
        assert alerts[METRICS_STALE].details_json["schema_version"] == 1

    async def test_same_day_rerun_updates_detected_at(self, db):
        evaluator = GuardrailEvaluator(db)
        await evaluator.evaluate(TENANT_ID, CHANNEL_ID, now=NOW)
        later = NOW + timedelta(hours=2)
        await evaluator.evaluate(TENANT_ID, CHANNEL_ID, now=later)

        alerts = await _alerts(db)
        assert list(alerts) == [METRICS_STALE]
        assert alerts[METRICS_STALE].detected_at == later
        assert alerts[METRICS_STALE].resolved_at is None

    async def test_rpm_drop_opens_resolves_and_reopens(self, db):
        await seed_metrics(db, _totals(BASELINE_START, 7, revenue=5.0, views=1000))
        await seed_metrics(db, _totals(CURRENT_START, 7, revenue=3.0, views=1000))
        evaluator = GuardrailEvaluator(db)

        result = await evaluator.evaluate(TENANT_ID, CHANNEL_ID, now=NOW)
        assert result.open_keys == [RPM_DROP]
        alert = (await _alerts(db))[RPM_DROP]
        assert alert.severity == "critical"
        assert alert.details_json["current"]["source"] == "channel_total"
        assert alert.details_json["rpm_drop_pct"] == 0.4
        assert alert.details_json["baseline"]["rpm"] == 5.0

        async with db.session() as session:
            await session.execute(
                update(VideoDailyMetric).where(VideoDailyMetric.dt >= CURRENT_START).values(revenue_usd=5.0)
            )
            await session.commit()
        recovered_at = NOW + timedelta(hours=1)
        result = await evaluator.evaluate(TENANT_ID, CHANNEL_ID, now=recovered_at)
        assert result.open_keys == []
        assert result.resolved_keys == [RPM_DROP]
        assert (await _alerts(db))[RPM_DROP].resolved_at == recovered_at

        async with db.session() as session:
            await session.execute(
                update(VideoDailyMetric).where(VideoDailyMetric.dt >= CURRENT_START).values(revenue_usd=2.0)
            )
            await session.commit()
        result = await evaluator.evaluate(TENANT_ID, CHANNEL_ID, now=NOW + timedelta(hours=2))
        assert result.open_keys == [RPM_DROP]
        assert (await _alerts(db))[RPM_DROP].resolved_at is None

    async def test_rpm_alert_kept_when_not_comparable(self, db):
        await seed_metrics(db, _totals(BASELINE_START, 7, revenue=5.0, views=1000))
        await seed_metrics(db, _totals(CURRENT_START, 7, revenue=3.0, views=1000))
        evaluator = GuardrailEvaluator(db)
        await evaluator.evaluate(TENANT_ID, CHANNEL_ID, now=NOW)

        # Current views fall below the comparison floor: no judgement, no resolve.
        async with db.session() as session:
            await session.execute(
                update(VideoDailyMetric).where(VideoDailyMetric.dt >= CURRENT_START).values(views=10)
            )
            await session.commit()
        result = await evaluator.evaluate(TENANT_ID, CHANNEL_ID, now=NOW + timedelta(hours=1))

        assert RPM_DROP not in result.resolved_keys
        assert (await _alerts(db))[RPM_DROP].resolved_at is None

    async def test_concentration_uses_video_rows(self, db):
        await seed_metrics(db, video_rows(CURRENT_START, 7, {"a": 8.0, "b": 1.0}))

        result = await GuardrailEvaluator(db).evaluate(TENANT_ID, CHANNEL_ID, now=NOW)

        assert result.open_keys == [REV_CONCENTRATION]
        details = (await _alerts(db))[REV_CONCENTRATION].details_json
        assert details["top_video"] == {"video_id": "a", "revenue_usd": 56.0}
        assert details["total_revenue_usd_7d"] == 63.0

    async def test_revenue_missing(self, db):
        await seed_metrics(db, _totals(CURRENT_START, 7, revenue=0.0, views=2000))

        result = await GuardrailEvaluator(db).evaluate(TENANT_ID, CHANNEL_ID, now=NOW)

        assert result.open_keys == [REVENUE_MISSING]
        details = (await _alerts(db))[REVENUE_MISSING].details_json
        assert details["window"]["views"] == 14000
        assert details["threshold"] == {"views": 10000, "revenue_usd": 0.01}

    async def test_forbidden_job_error_opens_and_resolves(self, db):
        await seed_metrics(db, _totals(CURRENT_START, 7, revenue=1.0, views=100))
        async with db.session() as session:
            session.add(
                JobTask(
                    tenant_id=TENANT_ID,
                    job_type="daily_channel",
                    channel_id=CHANNEL_ID,
                    run_for_dt=TODAY,
                    dedupe_key=f"{TENANT_ID}:daily_channel:{CHANNEL_ID}:{TODAY.isoformat()}",
                    status="retrying",
                    attempt=1,
                    last_error="YouTube Analytics error (status 403): Forbidden",
                )
            )
            await session.commit()
        evaluator = GuardrailEvaluator(db)

        result = await evaluator.evaluate(TENANT_ID, CHANNEL_ID, now=NOW)
        assert result.open_keys == [ANALYTICS_FORBIDDEN]
        details = (await _alerts(db))[ANALYTICS_FORBIDDEN].details_json
        assert details["job"]["status"] == "retrying"
        assert details["job"]["attempt"] == 1

        async with db.session() as session:
            await session.execute(update(JobTask).values(status="succeeded"))
            await session.commit()
        result = await evaluator.evaluate(TENANT_ID, CHANNEL_ID, now=NOW + timedelta(hours=1))
        assert result.resolved_keys == [ANALYTICS_FORBIDDEN]

    async def test_channels_are_isolated(self, db):
        await seed_metrics(db, video_rows(CURRENT_START, 7, {"a": 1.0}))

        result = await GuardrailEvaluator(db).evaluate(TENANT_ID, "UC_other", now=NOW)

        assert result.open_keys == [METRICS_STALE]
        assert {(a.channel_id, key) for key, a in (await _alerts(db)).items()} == {("UC_other", METRICS_STALE)}
