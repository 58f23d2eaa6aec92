"""
Decision Engine — Daily PROTECT / EXPLOIT / EXPLORE recommendation.

Pure function over a window of per-video daily revenue rows. No I/O.

Signals:
  - concentration:        top video's share of window revenue
  - top_trend_usd:        top video's revenue on the last day minus the first day
  - volatility_ratio:     population stddev / mean of daily totals
  - new_asset_emergence:  a last-day Top-N video that was not in the first-day Top-N

Direction (first match wins):
  EXPLOIT  concentration >= threshold and the top video is growing
  EXPLORE  the top video is decaying, or a new video broke into the Top-N
  PROTECT  otherwise
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Iterable

from integrations.base import VideoDailyMetricRow

MAX_WINDOW_DAYS = 40

CONFIDENCE_FLOOR = 0.45
CONFIDENCE_CEILING = 0.90
INSUFFICIENT_DATA_CONFIDENCE = 0.6


class Direction(str, Enum):
    PROTECT = "PROTECT"
    EXPLOIT = "EXPLOIT"
    EXPLORE = "EXPLORE"


@dataclass(frozen=True)
class DecisionEngineConfig:
    min_days_with_data: int = 5
    high_concentration_threshold: float = 0.6
    trend_down_threshold_usd: float = -0.01
    top_n_for_new_asset: int = 3


@dataclass
class Decision:
    as_of_dt: date
    direction: Direction
    confidence: float
    evidence: list[str] = field(default_factory=list)
    forbidden: list[str] = field(default_factory=list)
    reevaluate: list[str] = field(default_factory=list)


# ─── Fixed guidance text ────────────────────────────────────────────────────

INSUFFICIENT_EVIDENCE = ["Data insufficient for reliable signals (sync incomplete or zero revenue)"]
INSUFFICIENT_FORBIDDEN = ["High-risk strategy changes without evidence"]
INSUFFICIENT_REEVALUATE = ["After OAuth connect + first metrics sync"]

GUIDANCE: dict[Direction, tuple[list[str], list[str]]] = {
    Direction.EXPLOIT: (
        [
            "Avoid changing multiple variables at once (topic + format + cadence)",
            "Avoid major pivots while the top asset is accelerating",
        ],
        [
            "If top asset share drops materially, reconsider EXPLOIT",
            "If 2–3 uploads fail to sustain, revisit direction",
        ],
    ),
    Direction.EXPLORE: (
        [
            "Do not bet the whole channel on one unproven experiment",
            "Limit experiments to 3–5 samples before judging",
        ],
        [
            "If a new video enters Top-3 again, continue exploration",
            "If top asset declines sharply, switch to PROTECT",
        ],
    ),
    Direction.PROTECT: (
        [
            "Avoid high-risk strategy changes without evidence",
            "Prefer small optimizations (titles/thumbnails) over big pivots",
        ],
        [
            "Re-evaluate after the next successful sync window",
            "If revenue stabilizes and concentration rises, consider EXPLOIT",
        ],
    ),
}


def guidance_for(direction: Direction) -> tuple[list[str], list[str]]:
    forbidden, reevaluate = GUIDANCE[direction]
    return list(forbidden), list(reevaluate)


def insufficient_data_decision(as_of_dt: date) -> Decision:
    return Decision(
        as_of_dt=as_of_dt,
        direction=Direction.PROTECT,
        confidence=INSUFFICIENT_DATA_CONFIDENCE,
        evidence=list(INSUFFICIENT_EVIDENCE),
        forbidden=list(INSUFFICIENT_FORBIDDEN),
        reevaluate=list(INSUFFICIENT_REEVALUATE),
    )


# ─── Helpers ────────────────────────────────────────────────────────────────


def day_range(start_dt: date, end_dt: date) -> list[date]:
    """Inclusive list of days, capped at ``MAX_WINDOW_DAYS``."""
    days: list[date] = []
    cur = start_dt
    while cur <= end_dt and len(days) < MAX_WINDOW_DAYS:
        days.append(cur)
        cur += timedelta(days=1)
    return days


def format_usd(value: float) -> str:
    return f"${value:.2f}"


def top_ids(revenue_by_video: dict[str, float], n: int) -> list[str]:
    """Video ids ordered by revenue descending (ties by id), first ``n``."""
    ranked = sorted(revenue_by_video.items(), key=lambda kv: (-kv[1], kv[0]))
    return [video_id for video_id, _ in ranked[:n]]


def volatility_ratio(day_totals: list[float]) -> float:
    """Population stddev / mean; 0 when the mean is not positive."""
    if not day_totals:
        return 0.0
    mean = sum(day_totals) / len(day_totals)
    if mean <= 0:
        return 0.0
    variance = sum((v - mean) ** 2 for v in day_totals) / len(day_totals)
    return math.sqrt(variance) / mean


# ─── Engine ─────────────────────────────────────────────────────────────────


def compute_decision(
    rows: Iterable[VideoDailyMetricRow],
    as_of_dt: date,
    start_dt: date,
    end_dt: date,
    config: DecisionEngineConfig | None = None,
) -> Decision:
    """Map a revenue window onto a direction, confidence and narrative evidence.

    Channel-total rows are ignored; only per-video rows carry the
    concentration and new-asset signals.
    """
    cfg = config or DecisionEngineConfig()
    days = day_range(start_dt, end_dt)
    if not days:
        return insufficient_data_decision(as_of_dt)
    first_day, last_day = days[0], days[-1]

    days_with_data: set[date] = set()
    revenue_by_day: dict[date, float] = defaultdict(float)
    revenue_by_video: dict[str, float] = defaultdict(float)
    revenue_by_day_video: dict[tuple[date, str], float] = defaultdict(float)

    for row in rows:
        if row.is_channel_total or row.dt < first_day or row.dt > last_day:
            continue
        days_with_data.add(row.dt)
        revenue_by_day[row.dt] += row.revenue_usd
        revenue_by_video[row.video_id] += row.revenue_usd
        revenue_by_day_video[(row.dt, row.video_id)] += row.revenue_usd

    total_revenue = sum(revenue_by_day.get(d, 0.0) for d in days)
    leaders = top_ids(revenue_by_video, 1)
    if len(days_with_data) < cfg.min_days_with_data or total_revenue <= 0 or not leaders:
        return insufficient_data_decision(as_of_dt)

    top_video_id = leaders[0]
    concentration = revenue_by_video[top_video_id] / total_revenue
    top_trend_usd = revenue_by_day_video.get((last_day, top_video_id), 0.0) - revenue_by_day_video.get(
        (first_day, top_video_id), 0.0
    )
    volatility = volatility_ratio([revenue_by_day.get(d, 0.0) for d in days])

    top_n = max(cfg.top_n_for_new_asset, 1)
    first_day_revenue: dict[str, float] = {}
    last_day_revenue: dict[str, float] = {}
    for (dt, video_id), revenue in revenue_by_day_video.items():
        if dt == first_day:
            first_day_revenue[video_id] = revenue
        elif dt == last_day:
            last_day_revenue[video_id] = revenue
    first_top = set(top_ids(first_day_revenue, top_n))
    new_asset_emergence = any(video_id not in first_top for video_id in top_ids(last_day_revenue, top_n))

    if concentration >= cfg.high_concentration_threshold and top_trend_usd > 0:
        direction = Direction.EXPLOIT
    elif top_trend_usd < cfg.trend_down_threshold_usd or new_asset_emergence:
        direction = Direction.EXPLORE
    else:
        direction = Direction.PROTECT

    coverage_ratio = len(days_with_data) / len(days)
    confidence = 0.55 + 0.25 * coverage_ratio
    if direction is Direction.EXPLOIT and concentration >= 0.7:
        confidence += 0.10
    if direction is Direction.EXPLORE and new_asset_emergence:
        confidence += 0.05
    if volatility > 0.6:
        confidence -= 0.10
    confidence = min(CONFIDENCE_CEILING, max(CONFIDENCE_FLOOR, confidence))

    evidence = [
        f"7d estimated revenue: {format_usd(total_revenue)}",
        f"Top asset (7d) share: {concentration * 100:.0f}%",
        f"Top asset ({first_day.isoformat()} → {last_day.isoformat()}) change: {format_usd(top_trend_usd)}",
        f"New asset emergence (Top-{top_n}): {'yes' if new_asset_emergence else 'no'}",
    ]
    if volatility > 0:
        evidence.append(f"Revenue volatility (std/mean): {volatility:.2f}")

    forbidden, reevaluate = guidance_for(direction)
    return Decision(
        as_of_dt=as_of_dt,
        direction=direction,
        confidence=confidence,
        evidence=evidence,
        forbidden=forbidden,
        reevaluate=reevaluate,
    )
