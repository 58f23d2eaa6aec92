"""
Replay Gate — Stability and safety metrics over a decision history.

Used to judge a candidate policy before it replaces ``active``. The
promotion thresholds are not defined yet, so callers only record the
metrics.
"""

from dataclasses import asdict, dataclass
from datetime import date
from typing import Mapping, Sequence


@dataclass(frozen=True)
class ReplayDecision:
    as_of_dt: date
    direction: str


@dataclass(frozen=True)
class ReplayOutcome:
    decision_dt: date
    catastrophic_flag: bool


@dataclass
class ReplayGateMetrics:
    days: int = 0
    protect_days: int = 0
    protect_rate: float = 0.0
    switch_count: int = 0
    switch_rate: float = 0.0
    outcome_days: int = 0
    catastrophic_days: int = 0
    catastrophic_rate: float = 0.0

    def as_dict(self) -> dict:
        return asdict(self)


def compute_metrics(
    decisions: Sequence[ReplayDecision],
    outcomes_by_decision_dt: Mapping[date, ReplayOutcome],
) -> ReplayGateMetrics:
    """Aggregate a date-ordered decision history.

    ``catastrophic_rate`` only counts non-PROTECT days; staying put is never
    blamed for a revenue drop.
    """
    days = len(decisions)
    if days == 0:
        return ReplayGateMetrics()

    protect_days = sum(1 for d in decisions if d.direction == "PROTECT")
    switch_count = sum(1 for prev, cur in zip(decisions, decisions[1:]) if prev.direction != cur.direction)

    outcome_days = 0
    catastrophic_days = 0
    for decision in decisions:
        outcome = outcomes_by_decision_dt.get(decision.as_of_dt)
        if outcome is None:
            continue
        outcome_days += 1
        if outcome.catastrophic_flag and decision.direction != "PROTECT":
            catastrophic_days += 1

    return ReplayGateMetrics(
        days=days,
        protect_days=protect_days,
        protect_rate=protect_days / days,
        switch_count=switch_count,
        switch_rate=switch_count / (days - 1) if days >= 2 else 0.0,
        outcome_days=outcome_days,
        catastrophic_days=catastrophic_days,
        catastrophic_rate=catastrophic_days / outcome_days if outcome_days else 0.0,
    )
