"""
Tests for the Replay Gate metrics.
"""

from datetime import date, timedelta

import pytest

from decisions.replay_gate import ReplayDecision, ReplayGateMetrics, ReplayOutcome, compute_metrics

D0 = date(2026, 3, 1)


def _decisions(*directions: str) -> list[ReplayDecision]:
    return [ReplayDecision(as_of_dt=D0 + timedelta(days=i), direction=d) for i, d in enumerate(directions)]


class TestReplayGate:
    def test_empty_history(self):
        assert compute_metrics([], {}) == ReplayGateMetrics()

    def test_single_day_has_no_switch_rate(self):
        metrics = compute_metrics(_decisions("EXPLOIT"), {})
        assert metrics.days == 1
        assert metrics.switch_count == 0
        assert metrics.switch_rate == 0.0
        assert metrics.protect_rate == 0.0

    def test_rates(self):
        decisions = _decisions("PROTECT", "PROTECT", "EXPLORE", "EXPLORE", "EXPLOIT")
        outcomes = {
            D0: ReplayOutcome(decision_dt=D0, catastrophic_flag=True),
            D0 + timedelta(days=2): ReplayOutcome(decision_dt=D0 + timedelta(days=2), catastrophic_flag=True),
            D0 + timedelta(days=3): ReplayOutcome(decision_dt=D0 + timedelta(days=3), catastrophic_flag=False),
        }
        metrics = compute_metrics(decisions, outcomes)

        assert metrics.days == 5
        assert metrics.protect_days == 2
        assert metrics.protect_rate == pytest.approx(0.4)
        assert metrics.switch_count == 2
        assert metrics.switch_rate == pytest.approx(0.5)
        assert metrics.outcome_days == 3
        # A catastrophic week after PROTECT is not counted against the policy.
        assert metrics.catastrophic_days == 1
        assert metrics.catastrophic_rate == pytest.approx(1 / 3)

    def test_as_dict(self):
        data = compute_metrics(_decisions("PROTECT", "EXPLORE"), {}).as_dict()
        assert data["days"] == 2
        assert data["switch_rate"] == 1.0
        assert data["catastrophic_rate"] == 0.0

    def test_stable_and_alternating_histories(self):
        assert compute_metrics(_decisions(*["EXPLOIT"] * 6), {}).switch_rate == 0.0
        assert compute_metrics(_decisions(*["PROTECT", "EXPLORE"] * 3), {}).switch_rate == 1.0
