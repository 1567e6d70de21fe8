"""Burn rate, utilization and projections for materialized sessions.

Rates are measured from the first event in the window (or the window
start, whichever is later) up to "now" or the window end. Projections
extend the current rate to the reset time and, when a plan is known, are
capped at the plan limits.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from .models import SECONDS_PER_HOUR, Plan, Session, SessionMetrics

logger = logging.getLogger(__name__)

BURN_RATE_WINDOW = SECONDS_PER_HOUR


class MetricsCalculator:
    def __init__(self, duration: int, plan: Plan | None = None) -> None:
        self.duration = duration
        self.plan = plan

    def calculate(self, session: Session, now: int) -> SessionMetrics:
        """Compute and attach metrics for one session."""
        m = SessionMetrics(
            reset_time=session.end_time,
            time_remaining=max(0, session.end_time - now),
        )
        if session.is_gap or not session.message_count:
            session.metrics = m
            return m

        start_ref = max(session.first_entry_time, session.start_time)
        end_ref = min(now, session.end_time)
        elapsed_min = max((end_ref - start_ref) / 60, 1.0)

        m.tokens_per_minute = session.total_tokens / elapsed_min
        m.cost_per_minute = session.total_cost / elapsed_min
        m.cost_per_hour = m.cost_per_minute * 60
        m.burn_rate = self.burn_rate(session, now)

        remaining_min = m.time_remaining / 60
        m.projected_tokens = int(session.total_tokens + m.tokens_per_minute * remaining_min)
        m.projected_cost = session.total_cost + m.cost_per_minute * remaining_min

        if self.plan is not None:
            self._apply_plan(self.plan, session, m, now)

        session.metrics = m
        return m

    @staticmethod
    def burn_rate(session: Session, now: int) -> float:
        """Tokens per minute over the last hour."""
        cutoff = now - BURN_RATE_WINDOW
        recent = sum(tokens for ts, tokens in session.token_samples if cutoff <= ts <= now)
        return recent / 60

    def _apply_plan(self, plan: Plan, session: Session, m: SessionMetrics, now: int) -> None:
        sustainable_tpm = plan.token_limit / (self.duration / 60)
        if sustainable_tpm > 0:
            m.utilization = m.tokens_per_minute / sustainable_tpm * 100

        predicted: list[int] = []
        if session.total_tokens >= plan.token_limit or (
            plan.cost_limit > 0 and session.total_cost >= plan.cost_limit
        ):
            predicted.append(now)
        else:
            if m.tokens_per_minute > 0:
                minutes = (plan.token_limit - session.total_tokens) / m.tokens_per_minute
                predicted.append(now + int(minutes * 60))
            if m.cost_per_minute > 0 and plan.cost_limit > 0:
                minutes = (plan.cost_limit - session.total_cost) / m.cost_per_minute
                predicted.append(now + int(minutes * 60))

        if predicted:
            first_hit = min(predicted)
            if first_hit < m.reset_time:
                m.predicted_end_time = first_hit
                m.time_remaining = max(0, first_hit - now)

        m.projected_tokens = min(m.projected_tokens, plan.token_limit)
        if plan.cost_limit > 0:
            m.projected_cost = min(m.projected_cost, plan.cost_limit)

    def calculate_all(self, sessions: Iterable[Session], now: int) -> None:
        for s in sessions:
            self.calculate(s, now)


def aggregate(sessions: Iterable[Session]) -> dict[str, Any]:
    """Roll-up across sessions for summaries."""
    real = [s for s in sessions if not s.is_gap]
    total_tokens = sum(s.total_tokens for s in real)
    return {
        "session_count": len(real),
        "active_sessions": sum(1 for s in real if s.is_active),
        "total_tokens": total_tokens,
        "total_cost": round(sum(s.total_cost for s in real), 4),
        "message_count": sum(s.message_count for s in real),
        "avg_tokens_per_session": total_tokens // len(real) if real else 0,
        "peak_burn_rate": max((s.metrics.burn_rate for s in real), default=0.0),
    }
