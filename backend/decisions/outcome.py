"""
Outcome Engine — Lagged label for a past decision.

Compares the 7-day revenue window before a decision with the 7 days that
followed it. Pure; the worker loads the windows and persists the label.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable

from decisions.engine import top_ids
from integrations.base import VideoDailyMetricRow

CATASTROPHIC_DROP_PCT = -0.30
OUTCOME_LAG_DAYS = 7


@dataclass
class OutcomeLabel:
    revenue_change_pct_7d: float | None
    catastrophic_flag: bool
    new_top_asset_flag: bool


@dataclass
class WindowSummary:
    start_dt: date
    end_dt: date
    revenue_sum_usd: float
    top_video_ids: list[str]


def compute_outcome_label(
    pre_revenue_sum_usd_7d: float,
    post_revenue_sum_usd_7d: float,
    pre_top_video_ids: Iterable[str],
    post_top_video_ids: Iterable[str],
) -> OutcomeLabel:
    if pre_revenue_sum_usd_7d > 0:
        pct = (post_revenue_sum_usd_7d - pre_revenue_sum_usd_7d) / pre_revenue_sum_usd_7d
    else:
        pct = None

    pre_set = set(pre_top_video_ids)
    return OutcomeLabel(
        revenue_change_pct_7d=pct,
        catastrophic_flag=pct is not None and pct < CATASTROPHIC_DROP_PCT,
        new_top_asset_flag=any(video_id not in pre_set for video_id in post_top_video_ids),
    )


def outcome_windows(decision_dt: date) -> tuple[tuple[date, date], tuple[date, date]]:
    """(pre, post) inclusive windows straddling ``decision_dt``."""
    pre = (decision_dt - timedelta(days=7), decision_dt - timedelta(days=1))
    post = (decision_dt, decision_dt + timedelta(days=6))
    return pre, post


def summarize_window(
    rows: Iterable[VideoDailyMetricRow],
    start_dt: date,
    end_dt: date,
    top_n: int,
) -> WindowSummary:
    """Revenue sum and Top-N video ids of per-video rows inside the window."""
    revenue_by_video: dict[str, float] = defaultdict(float)
    for row in rows:
        if row.is_channel_total or row.dt < start_dt or row.dt > end_dt:
            continue
        revenue_by_video[row.video_id] += row.revenue_usd
    return WindowSummary(
        start_dt=start_dt,
        end_dt=end_dt,
        revenue_sum_usd=sum(revenue_by_video.values()),
        top_video_ids=top_ids(revenue_by_video, top_n),
    )
