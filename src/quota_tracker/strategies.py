"""Window candidate strategies.

Each strategy is a pure function from a ``DetectionContext`` snapshot to a
list of ``WindowCandidate``. Strategies are tagged with a fixed source name
and priority; the registry runs the enabled ones and concatenates their
output. Conflict resolution happens later, in the selector.

| priority | source              | trigger                                       |
|----------|---------------------|-----------------------------------------------|
| 10       | history_limit       | confirmed limit window in the history store   |
| 9-10     | limit_message       | limit notice with a reset time                |
| 8        | continuous_activity | activity that runs past a single window       |
| 7        | history_account     | recent account-level windows from history     |
| 6        | active_window       | "now" not covered by any other candidate      |
| 5        | gap                 | idle gap of at least one session duration     |
| 3        | first_message       | hour of the first event                       |
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from .models import (
    SECONDS_PER_DAY,
    SOURCE_ACTIVE_WINDOW,
    SOURCE_CONTINUOUS,
    SOURCE_FIRST_MESSAGE,
    SOURCE_GAP,
    SOURCE_HISTORY_ACCOUNT,
    SOURCE_HISTORY_LIMIT,
    SOURCE_LIMIT_MESSAGE,
    LimitSignal,
    TimestampedEvent,
    WindowCandidate,
    truncate_to_hour,
)

if TYPE_CHECKING:
    from .history import WindowHistoryStore

logger = logging.getLogger(__name__)

HISTORY_ACCOUNT_LOOKBACK = SECONDS_PER_DAY


@dataclass(frozen=True)
class DetectionContext:
    """Immutable input shared by every strategy in one detection run."""

    events: tuple[TimestampedEvent, ...]
    signals: tuple[LimitSignal, ...]
    duration: int
    now: int
    history: WindowHistoryStore | None = None
    prior: tuple[WindowCandidate, ...] = ()  # output of strategies that ran first


# -- Strategy functions --------------------------------------------------------


def history_limit_candidates(ctx: DetectionContext) -> list[WindowCandidate]:
    if ctx.history is None:
        return []
    out = []
    for r in ctx.history.limit_reached_windows():
        if not r.is_account_level or r.source != SOURCE_LIMIT_MESSAGE:
            continue
        out.append(WindowCandidate(
            start=r.start_time,
            end=r.start_time + ctx.duration,
            source=SOURCE_HISTORY_LIMIT,
            priority=10,
            is_limit=True,
            metadata={"session_id": r.session_id, "limit_message": r.limit_message},
        ))
    return out


def limit_message_candidates(ctx: DetectionContext) -> list[WindowCandidate]:
    out = []
    seen: set[int] = set()
    # Newest notice first so a repeated reset keeps the latest message
    for s in sorted(ctx.signals, key=lambda s: s.timestamp, reverse=True):
        if s.reset_time is None or s.reset_time in seen:
            continue
        seen.add(s.reset_time)
        start = s.reset_time - ctx.duration
        out.append(WindowCandidate(
            start=start,
            end=s.reset_time,
            source=SOURCE_LIMIT_MESSAGE,
            priority=10 if s.reset_time > ctx.now else 9,
            is_limit=True,
            metadata={
                "message_time": s.timestamp,
                "reset_time": s.reset_time,
                "content": s.content,
                "kind": s.kind,
            },
        ))
    return out


def _activity_runs(
    events: Iterable[TimestampedEvent], duration: int,
) -> list[list[TimestampedEvent]]:
    """Split events into runs separated by idle gaps of at least ``duration``."""
    runs: list[list[TimestampedEvent]] = []
    for e in events:
        if runs and e.timestamp - runs[-1][-1].timestamp < duration:
            runs[-1].append(e)
        else:
            runs.append([e])
    return runs


def continuous_activity_candidates(ctx: DetectionContext) -> list[WindowCandidate]:
    """Back-to-back windows for activity that outlasts one window.

    Each run of activity is partitioned into consecutive windows starting
    at the run's first hour. Runs that fit inside a single window are left
    to the first_message and gap strategies.
    """
    out = []
    for run in _activity_runs(ctx.events, ctx.duration):
        base = truncate_to_hour(run[0].timestamp)
        counts: dict[int, int] = {}
        for e in run:
            idx = (e.timestamp - base) // ctx.duration
            counts[idx] = counts.get(idx, 0) + 1
        if len(counts) < 2:
            continue
        for idx in sorted(counts):
            start = base + idx * ctx.duration
            out.append(WindowCandidate(
                start=start,
                end=start + ctx.duration,
                source=SOURCE_CONTINUOUS,
                priority=8,
                metadata={"activity_count": counts[idx], "window_index": idx},
            ))
    return out


def history_account_candidates(ctx: DetectionContext) -> list[WindowCandidate]:
    if ctx.history is None:
        return []
    out = []
    for r in ctx.history.recent_windows(HISTORY_ACCOUNT_LOOKBACK):
        if not r.is_account_level or r.is_limit_reached:
            continue
        out.append(WindowCandidate(
            start=r.start_time,
            end=r.start_time + ctx.duration,
            source=SOURCE_HISTORY_ACCOUNT,
            priority=7,
            metadata={"session_id": r.session_id, "original_source": r.source},
        ))
    return out


def active_window_candidates(ctx: DetectionContext) -> list[WindowCandidate]:
    """Propose the current window when nothing else covers "now"."""
    if not ctx.events:
        return []
    windows = [c.normalized(ctx.duration) for c in ctx.prior]
    if any(w.contains(ctx.now) for w in windows):
        return []

    earlier = [w.end for w in windows if w.end <= ctx.now]
    nearest = max(earlier, default=None)
    if nearest is not None and nearest + ctx.duration > ctx.now:
        start, aligned_to = nearest, "previous_window"
    else:
        start, aligned_to = truncate_to_hour(ctx.now), "hour"

    return [WindowCandidate(
        start=start,
        end=start + ctx.duration,
        source=SOURCE_ACTIVE_WINDOW,
        priority=6,
        metadata={"aligned_to": aligned_to},
    )]


def gap_candidates(ctx: DetectionContext) -> list[WindowCandidate]:
    out = []
    events = ctx.events
    for prev, cur in zip(events, events[1:]):
        gap = cur.timestamp - prev.timestamp
        if gap < ctx.duration:
            continue
        start = truncate_to_hour(cur.timestamp)
        out.append(WindowCandidate(
            start=start,
            end=start + ctx.duration,
            source=SOURCE_GAP,
            priority=5,
            metadata={"gap_seconds": gap},
        ))
    return out


def first_message_candidates(ctx: DetectionContext) -> list[WindowCandidate]:
    if not ctx.events:
        return []
    start = truncate_to_hour(ctx.events[0].timestamp)
    return [WindowCandidate(
        start=start,
        end=start + ctx.duration,
        source=SOURCE_FIRST_MESSAGE,
        priority=3,
    )]


# -- Registry ------------------------------------------------------------------


@dataclass(frozen=True)
class Strategy:
    name: str
    priority: int
    description: str
    detect: Callable[[DetectionContext], list[WindowCandidate]] = field(compare=False)
    needs_prior: bool = False  # runs after the others and sees their output


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    Strategy(
        SOURCE_HISTORY_LIMIT, 10,
        "Confirmed limit windows recorded in window history",
        history_limit_candidates,
    ),
    Strategy(
        SOURCE_LIMIT_MESSAGE, 9,
        "Windows ending at the reset time of a rate-limit notice",
        limit_message_candidates,
    ),
    Strategy(
        SOURCE_CONTINUOUS, 8,
        "Consecutive windows for activity longer than one window",
        continuous_activity_candidates,
    ),
    Strategy(
        SOURCE_HISTORY_ACCOUNT, 7,
        "Account-level windows recorded in the last 24 hours",
        history_account_candidates,
    ),
    Strategy(
        SOURCE_ACTIVE_WINDOW, 6,
        "Current window when no other candidate covers now",
        active_window_candidates,
        needs_prior=True,
    ),
    Strategy(
        SOURCE_GAP, 5,
        "New window after an idle gap of at least one window",
        gap_candidates,
    ),
    Strategy(
        SOURCE_FIRST_MESSAGE, 3,
        "Window at the hour of the first event",
        first_message_candidates,
    ),
)


class StrategyRegistry:
    """Ordered set of strategies, highest priority first."""

    def __init__(self, strategies: Iterable[Strategy] = DEFAULT_STRATEGIES) -> None:
        self._strategies = sorted(strategies, key=lambda s: s.priority, reverse=True)
        self._disabled: set[str] = set()

    def register(self, strategy: Strategy) -> None:
        self._strategies = [s for s in self._strategies if s.name != strategy.name]
        self._strategies.append(strategy)
        self._strategies.sort(key=lambda s: s.priority, reverse=True)

    def enable(self, name: str) -> None:
        self._disabled.discard(name)

    def disable(self, name: str) -> None:
        self._disabled.add(name)

    def strategies(self) -> list[Strategy]:
        return [s for s in self._strategies if s.name not in self._disabled]

    def detect_all(self, ctx: DetectionContext) -> list[WindowCandidate]:
        """Run every enabled strategy and concatenate their candidates."""
        enabled = self.strategies()
        candidates: list[WindowCandidate] = []
        for s in enabled:
            if not s.needs_prior:
                candidates.extend(self._run(s, ctx))
        prior_ctx = replace(ctx, prior=tuple(candidates))
        for s in enabled:
            if s.needs_prior:
                candidates.extend(self._run(s, prior_ctx))
        return candidates

    @staticmethod
    def _run(strategy: Strategy, ctx: DetectionContext) -> list[WindowCandidate]:
        found = strategy.detect(ctx)
        if found:
            logger.debug("Strategy %s proposed %d windows", strategy.name, len(found))
        return found

    def summary(self) -> list[dict[str, Any]]:
        return [
            {
                "name": s.name,
                "priority": s.priority,
                "description": s.description,
                "enabled": s.name not in self._disabled,
            }
            for s in self._strategies
        ]
