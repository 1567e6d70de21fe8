"""Tests for session metrics."""

from __future__ import annotations

import pytest

from src.quota_tracker.metrics import MetricsCalculator, aggregate
from src.quota_tracker.models import PLANS, Plan, WindowCandidate, get_plan
from src.quota_tracker.sessions import SessionBuilder

FIVE_HOURS = 5 * 3600


@pytest.fixture
def session(at, event):
    """Window 10:00-15:00 with 3000 tokens between 10:00 and 11:00."""
    builder = SessionBuilder(FIVE_HOURS, cost_fn=lambda model, usage: usage.total * 0.001)
    window = WindowCandidate(at(10), at(15), "first_message", 3)
    (s,) = builder.build_sessions([window], [event(at(10)), event(at(10, 30)), event(at(11))])
    return s


class TestRates:
    def test_rates_and_projection(self, session, at):
        m = MetricsCalculator(FIVE_HOURS).calculate(session, now=at(11))
        assert m.tokens_per_minute == pytest.approx(50.0)
        assert m.cost_per_minute == pytest.approx(0.05)
        assert m.cost_per_hour == pytest.approx(3.0)
        assert m.projected_tokens == 3000 + 50 * 240
        assert m.projected_cost == pytest.approx(3.0 + 0.05 * 240)
        assert m.reset_time == at(15)
        assert m.time_remaining == 4 * 3600
        assert session.metrics is m

    def test_burn_rate_uses_last_hour(self, session, at):
        assert MetricsCalculator.burn_rate(session, now=at(11, 15)) == pytest.approx(2000 / 60)

    def test_expired_window_has_no_projection_tail(self, session, at):
        m = MetricsCalculator(FIVE_HOURS).calculate(session, now=at(16))
        assert m.time_remaining == 0
        assert m.projected_tokens == 3000

    def test_empty_session(self, at):
        builder = SessionBuilder(FIVE_HOURS)
        s = builder.build_session(WindowCandidate(at(10), at(15), "active_window", 6))
        m = MetricsCalculator(FIVE_HOURS, PLANS["pro"]).calculate(s, now=at(11))
        assert m.tokens_per_minute == 0
        assert m.time_remaining == 4 * 3600
        assert m.predicted_end_time is None


class TestPlanLimits:
    def test_utilization(self, session, at):
        m = MetricsCalculator(FIVE_HOURS, PLANS["pro"]).calculate(session, now=at(11))
        # pro: 4M tokens over 300 minutes
        assert m.utilization == pytest.approx(50 / (4_000_000 / 300) * 100)
        assert m.predicted_end_time is None

    def test_time_to_limit_before_reset(self, session, at):
        plan = Plan("tiny", token_limit=10_000, cost_limit=0, message_limit=0)
        m = MetricsCalculator(FIVE_HOURS, plan).calculate(session, now=at(11))
        # 7000 tokens left at 50/min
        assert m.predicted_end_time == at(11) + 140 * 60
        assert m.time_remaining == 140 * 60
        assert m.projected_tokens == 10_000

    def test_cost_limit_can_come_first(self, session, at):
        plan = Plan("cheap", token_limit=1_000_000, cost_limit=6.0, message_limit=0)
        m = MetricsCalculator(FIVE_HOURS, plan).calculate(session, now=at(11))
        # $3 left at $0.05/min
        assert abs(m.predicted_end_time - (at(11) + 60 * 60)) <= 1
        assert m.projected_cost == pytest.approx(6.0)

    def test_already_over_limit(self, session, at):
        plan = Plan("tiny", token_limit=2_000, cost_limit=0, message_limit=0)
        m = MetricsCalculator(FIVE_HOURS, plan).calculate(session, now=at(11))
        assert m.predicted_end_time == at(11)
        assert m.time_remaining == 0
        assert m.projected_tokens == 2_000


    def test_plan_applied_explicitly(self, session, at):
        calc = MetricsCalculator(FIVE_HOURS)
        m = calc.calculate(session, now=at(11))
        assert m.predicted_end_time is None

        plan = Plan("tiny", token_limit=10_000, cost_limit=0, message_limit=0)
        calc._apply_plan(plan, session, m, at(11))
        assert m.predicted_end_time == at(11) + 140 * 60
        assert m.projected_tokens == 10_000


class TestPlans:
    def test_known_plans(self):
        assert get_plan("max5").token_limit == 20_000_000
        assert get_plan("MAX20").cost_limit == 140.0

    def test_unknown_falls_back_to_custom(self):
        assert get_plan("enterprise") == PLANS["custom"]


def test_aggregate(session, at):
    MetricsCalculator(FIVE_HOURS).calculate(session, now=at(11))
    session.is_active = True
    summary = aggregate([session])
    assert summary["session_count"] == 1
    assert summary["active_sessions"] == 1
    assert summary["total_tokens"] == 3000
    assert summary["message_count"] == 3
    assert summary["peak_burn_rate"] == pytest.approx(50.0)
