"""Typed ``details_json`` payloads for guardrail alerts."""

from datetime import date
from typing import Literal

from pydantic import BaseModel


class DetailsBase(BaseModel):
    schema_version: Literal[1] = 1


class WindowBounds(BaseModel):
    start_dt: date
    end_dt: date


class WindowMetrics(WindowBounds):
    revenue_usd: float
    views: int
    rpm: float
    source: Literal["channel_total", "video_sum"]


class RpmDropDetails(DetailsBase):
    current: WindowMetrics
    baseline: WindowMetrics
    rpm_drop_pct: float


class MetricsStaleDetails(DetailsBase):
    today: date
    max_metric_dt: date | None
    age_days: int | None


class TopVideo(BaseModel):
    video_id: str
    revenue_usd: float


class ConcentrationDetails(DetailsBase):
    window: WindowBounds
    total_revenue_usd_7d: float
    top_video: TopVideo | None
    top1_concentration_7d: float


class DailyRevenue(BaseModel):
    dt: date
    revenue_usd: float


class VolatilityDetails(DetailsBase):
    window: WindowBounds
    revenue_mean_usd_7d: float
    revenue_stddev_usd_7d: float
    daily_revenue_usd: list[DailyRevenue]


class LatestJob(BaseModel):
    job_type: str = "daily_channel"
    status: str
    run_for_dt: date | None
    attempt: int
    max_attempt: int
    last_error: str | None


class JobErrorDetails(DetailsBase):
    job: LatestJob


class RevenueMissingThreshold(BaseModel):
    views: int
    revenue_usd: float


class RevenueMissingDetails(DetailsBase):
    window: WindowMetrics
    threshold: RevenueMissingThreshold


AlertDetails = (
    RpmDropDetails
    | MetricsStaleDetails
    | ConcentrationDetails
    | VolatilityDetails
    | JobErrorDetails
    | RevenueMissingDetails
)
