"""
Guardrail Rules — Pure checks over rolling 7-day channel windows.

Alert keys:
  - rpm_drop_7d:                  revenue per mille fell vs the previous 7 days
  - metrics_stale:                newest metric day is missing or 3+ days old
  - rev_concentration_top1_7d:    one video earns half the revenue or more
  - rev_volatility_7d:            daily revenue stddev is 40%+ of the mean
  - youtube_analytics_forbidden:  the latest sync failed with a 403
  - youtube_analytics_query_unsupported: the latest sync hit an unsupported report
  - revenue_missing_7d:           views without revenue, no platform error to explain it
"""

from dataclasses import dataclass
from datetime import date

RPM_DROP_ALERT_PCT = 0.10
RPM_MIN_VIEWS = 1000
STALE_AFTER_DAYS = 3
CONCENTRATION_MIN_REVENUE_USD = 20.0
CONCENTRATION_ALERT_SHARE = 0.50
VOLATILITY_MIN_MEAN_USD = 10.0
VOLATILITY_STDDEV_RATIO = 0.4
VOLATILITY_MIN_DAYS = 5
REVENUE_MISSING_MIN_VIEWS = 10_000
REVENUE_MISSING_MAX_USD = 0.01

SEVERITY_THRESHOLDS = {
    "rpm_drop_pct": {
        "critical": 0.30,
        "error": 0.20,
    },
}

RPM_DROP = "rpm_drop_7d"
METRICS_STALE = "metrics_stale"
REV_CONCENTRATION = "rev_concentration_top1_7d"
REV_VOLATILITY = "rev_volatility_7d"
ANALYTICS_FORBIDDEN = "youtube_analytics_forbidden"
ANALYTICS_UNSUPPORTED = "youtube_analytics_query_unsupported"
REVENUE_MISSING = "revenue_missing_7d"


@dataclass(frozen=True)
class WindowAgg:
    revenue_usd: float = 0.0
    views: int = 0

    @property
    def rpm(self) -> float:
        return rpm(self.revenue_usd, self.views)


@dataclass
class GuardrailInput:
    today: date
    current: WindowAgg
    baseline: WindowAgg
    max_metric_dt: date | None = None
    top1_concentration_7d: float | None = None
    total_revenue_usd_7d: float | None = None
    revenue_mean_usd_7d: float | None = None
    revenue_stddev_usd_7d: float | None = None


@dataclass
class GuardrailAlert:
    key: str
    kind: str
    severity: str
    message: str


def rpm(revenue_usd: float, views: int) -> float:
    """Revenue per thousand views; 0 without views."""
    if views <= 0:
        return 0.0
    return revenue_usd / views * 1000.0


def can_compare_rpm(current: WindowAgg, baseline: WindowAgg) -> bool:
    return current.views >= RPM_MIN_VIEWS and baseline.views >= RPM_MIN_VIEWS and baseline.rpm > 0


def rpm_drop_pct(current: WindowAgg, baseline: WindowAgg) -> float:
    base = baseline.rpm
    if base <= 0:
        return 0.0
    return max((base - current.rpm) / base, -1.0)


def classify_drop_severity(drop_pct: float) -> str:
    thresholds = SEVERITY_THRESHOLDS["rpm_drop_pct"]
    if drop_pct >= thresholds["critical"]:
        return "critical"
    elif drop_pct >= thresholds["error"]:
        return "error"
    return "warning"


def classify_job_error(last_error: str | None) -> tuple[bool, bool]:
    """(forbidden, query_unsupported) from a stored task error message."""
    if not last_error:
        return False, False
    msg = last_error.lower()
    forbidden = "status 403" in msg or 'reason": "forbidden"' in msg
    unsupported = "status 400" in msg and "not supported" in msg
    return forbidden, unsupported


def evaluate_guardrails(data: GuardrailInput) -> list[GuardrailAlert]:
    """Metric-driven alerts that hold for this input."""
    alerts: list[GuardrailAlert] = []

    if can_compare_rpm(data.current, data.baseline):
        drop = rpm_drop_pct(data.current, data.baseline)
        if drop >= RPM_DROP_ALERT_PCT:
            alerts.append(
                GuardrailAlert(
                    key=RPM_DROP,
                    kind="RPM drop",
                    severity=classify_drop_severity(drop),
                    message=(
                        f"Revenue per mille dropped {drop * 100:.0f}% vs previous 7d "
                        f"(current ${data.current.rpm:.2f}, prev ${data.baseline.rpm:.2f})."
                    ),
                )
            )

    if data.max_metric_dt is None:
        alerts.append(
            GuardrailAlert(
                key=METRICS_STALE,
                kind="Data missing",
                severity="info",
                message="No metrics found yet. Upload CSV or wait for the first sync.",
            )
        )
    elif (data.today - data.max_metric_dt).days >= STALE_AFTER_DAYS:
        alerts.append(
            GuardrailAlert(
                key=METRICS_STALE,
                kind="Data stale",
                severity="warning",
                message=f"Metrics look stale (latest day {data.max_metric_dt.isoformat()}). Upload CSV or run a sync.",
            )
        )

    concentration, total = data.top1_concentration_7d, data.total_revenue_usd_7d
    if concentration is not None and total is not None:
        if total >= CONCENTRATION_MIN_REVENUE_USD and concentration >= CONCENTRATION_ALERT_SHARE:
            alerts.append(
                GuardrailAlert(
                    key=REV_CONCENTRATION,
                    kind="Revenue concentration",
                    severity="warning",
                    message=(
                        f"Revenue is concentrated: top video is {concentration * 100:.0f}% "
                        f"of total revenue (7d total ${total:.2f})."
                    ),
                )
            )

    mean, stddev = data.revenue_mean_usd_7d, data.revenue_stddev_usd_7d
    if mean is not None and stddev is not None:
        if mean >= VOLATILITY_MIN_MEAN_USD and stddev >= VOLATILITY_STDDEV_RATIO * mean:
            alerts.append(
                GuardrailAlert(
                    key=REV_VOLATILITY,
                    kind="Revenue volatility",
                    severity="warning",
                    message=f"Revenue is volatile (7d stddev ${stddev:.2f} vs mean ${mean:.2f}).",
                )
            )

    return alerts


def platform_error_alerts(forbidden: bool, unsupported: bool) -> list[GuardrailAlert]:
    alerts: list[GuardrailAlert] = []
    if forbidden:
        alerts.append(
            GuardrailAlert(
                key=ANALYTICS_FORBIDDEN,
                kind="YouTube Analytics",
                severity="warning",
                message=(
                    "YouTube Analytics blocked revenue metrics (403 Forbidden). "
                    "Reconnect YouTube or upload CSV for revenue/RPM guardrails."
                ),
            )
        )
    if unsupported:
        alerts.append(
            GuardrailAlert(
                key=ANALYTICS_UNSUPPORTED,
                kind="YouTube Analytics",
                severity="info",
                message=(
                    "YouTube Analytics does not support this report for your channel (400). "
                    "We'll sync views-only; upload CSV for revenue/RPM."
                ),
            )
        )
    return alerts


def is_revenue_missing(current: WindowAgg, forbidden: bool, unsupported: bool) -> bool:
    return (
        not forbidden
        and not unsupported
        and current.views >= REVENUE_MISSING_MIN_VIEWS
        and current.revenue_usd <= REVENUE_MISSING_MAX_USD
    )


def revenue_missing_alert() -> GuardrailAlert:
    return GuardrailAlert(
        key=REVENUE_MISSING,
        kind="Revenue missing",
        severity="info",
        message=(
            "Views are present but revenue is zero (last 7d). Channel may not be monetized or "
            "monetary Analytics access is unavailable; upload CSV if you need revenue/RPM."
        ),
    )
