"""Materialize sessions from selected windows.

Every selected window becomes a ``Session``; each timeline event is
assigned to the window with ``start <= t < end``, so an event that lands
exactly on a boundary belongs to the later window. Events outside every
window contribute nothing; ``check_token_drift`` reports how much was lost.
"""

from __future__ import annotations

import copy
import logging
from bisect import bisect_right
from collections.abc import Iterable

from .models import (
    MULTIPLE_PROJECTS,
    SOURCE_ACTIVE_WINDOW,
    SOURCE_GAP,
    SOURCE_LIMIT_MESSAGE,
    CostFunction,
    ModelStats,
    ProjectStats,
    Session,
    TimestampedEvent,
    WindowCandidate,
    zero_cost,
)

logger = logging.getLogger(__name__)


def _authority(s: Session) -> tuple[bool, bool, int]:
    """Sort key: limit-message windows beat detected windows beat the rest."""
    return (s.window_source == SOURCE_LIMIT_MESSAGE, s.is_window_detected, s.window_priority)


class SessionBuilder:
    def __init__(
        self,
        duration: int,
        cost_fn: CostFunction = zero_cost,
        drift_threshold_percent: float = 1.0,
    ) -> None:
        self.duration = duration
        self.cost_fn = cost_fn
        self.drift_threshold_percent = drift_threshold_percent

    # -- Single session --------------------------------------------------------

    def build_session(self, window: WindowCandidate) -> Session:
        limit_messages = []
        content = window.metadata.get("content") or window.metadata.get("limit_message")
        if content:
            limit_messages.append(str(content))
        return Session(
            id=str(window.start),
            start_time=window.start,
            end_time=window.end,
            reset_time=window.end,
            window_source=window.source,
            window_priority=window.priority,
            is_window_detected=window.source != SOURCE_ACTIVE_WINDOW,
            is_account_level=window.is_limit,
            limit_messages=limit_messages,
        )

    def assign_event(self, session: Session, event: TimestampedEvent) -> bool:
        """Add one event's usage to a session. Returns False if it is outside."""
        if not session.start_time <= event.timestamp < session.end_time:
            return False

        tokens = event.usage.total
        cost = self.cost_fn(event.model, event.usage)

        session.total_tokens += tokens
        session.input_tokens += event.usage.input_tokens
        session.output_tokens += event.usage.output_tokens
        session.total_cost += cost
        session.message_count += 1

        project = session.projects.setdefault(event.project_name, ProjectStats())
        project.tokens += tokens
        project.cost += cost
        project.message_count += 1

        model = session.model_distribution.setdefault(event.model or "unknown", ModelStats())
        model.tokens += tokens
        model.cost += cost
        model.count += 1

        if not session.first_entry_time or event.timestamp < session.first_entry_time:
            session.first_entry_time = event.timestamp
        if event.timestamp > session.actual_end_time:
            session.actual_end_time = event.timestamp
        session.token_samples.append((event.timestamp, tokens))
        return True

    def finalize_session(self, session: Session) -> Session:
        """Resolve the project name; multi-project windows are account-level."""
        names = sorted(session.projects)
        if len(names) == 1:
            session.project_name = names[0]
        elif len(names) > 1:
            session.project_name = MULTIPLE_PROJECTS
            session.is_account_level = True
        return session

    # -- Whole run -------------------------------------------------------------

    def build_sessions(
        self, windows: Iterable[WindowCandidate], events: Iterable[TimestampedEvent],
    ) -> list[Session]:
        """One session per window that received events, plus the active window.

        ``windows`` must be sorted and non-overlapping (selector output).
        """
        sessions = [self.build_session(w) for w in sorted(windows, key=lambda w: w.start)]
        starts = [s.start_time for s in sessions]

        unassigned = 0
        for event in events:
            idx = bisect_right(starts, event.timestamp) - 1
            if idx < 0 or not self.assign_event(sessions[idx], event):
                unassigned += 1
        if unassigned:
            logger.debug("%d events fell outside every selected window", unassigned)

        return [
            self.finalize_session(s) for s in sessions
            if s.message_count or s.window_source == SOURCE_ACTIVE_WINDOW
        ]

    def insert_gap_sessions(self, sessions: list[Session]) -> list[Session]:
        """Insert zero-usage gap sessions between sessions idle for a full window."""
        ordered = sorted((s for s in sessions if not s.is_gap), key=lambda s: s.start_time)
        result: list[Session] = []
        for i, s in enumerate(ordered):
            if i > 0:
                prev = ordered[i - 1]
                prev_end = prev.actual_end_time or prev.start_time
                if s.start_time - prev_end >= self.duration:
                    result.append(Session(
                        id=f"gap-{prev_end}",
                        start_time=prev_end,
                        end_time=s.start_time,
                        reset_time=s.start_time,
                        window_source=SOURCE_GAP,
                        is_gap=True,
                    ))
            result.append(s)
        return result

    def deduplicate_sessions(self, sessions: list[Session]) -> list[Session]:
        """Merge sessions that cover the identical window."""
        groups: dict[tuple[int, int], list[Session]] = {}
        for s in sessions:
            groups.setdefault((s.start_time, s.end_time), []).append(s)

        result: list[Session] = []
        for (start, end), group in groups.items():
            if len(group) == 1:
                result.append(group[0])
                continue
            ranked = sorted(group, key=_authority, reverse=True)
            merged = copy.deepcopy(ranked[0])
            for other in ranked[1:]:
                self._merge_into(merged, other)
            logger.debug(
                "Merged %d sessions for window %d-%d (source %s)",
                len(group), start, end, merged.window_source,
            )
            result.append(self.finalize_session(merged))

        result.sort(key=lambda s: s.start_time)
        return result

    @staticmethod
    def _merge_into(target: Session, other: Session) -> None:
        target.total_tokens += other.total_tokens
        target.input_tokens += other.input_tokens
        target.output_tokens += other.output_tokens
        target.total_cost += other.total_cost
        target.message_count += other.message_count

        for name, stats in other.projects.items():
            p = target.projects.setdefault(name, ProjectStats())
            p.tokens += stats.tokens
            p.cost += stats.cost
            p.message_count += stats.message_count
        for name, stats in other.model_distribution.items():
            m = target.model_distribution.setdefault(name, ModelStats())
            m.tokens += stats.tokens
            m.cost += stats.cost
            m.count += stats.count

        if other.first_entry_time and (
            not target.first_entry_time or other.first_entry_time < target.first_entry_time
        ):
            target.first_entry_time = other.first_entry_time
        target.actual_end_time = max(target.actual_end_time, other.actual_end_time)
        target.is_account_level = target.is_account_level or other.is_account_level
        target.limit_messages.extend(m for m in other.limit_messages if m not in target.limit_messages)
        target.token_samples = sorted(target.token_samples + other.token_samples)

    def mark_active(self, sessions: Iterable[Session], now: int) -> None:
        for s in sessions:
            s.is_active = not s.is_gap and s.end_time > now

    def check_token_drift(
        self, sessions: Iterable[Session], events: Iterable[TimestampedEvent],
    ) -> float:
        """Percent difference between session totals and the raw event sum."""
        raw = sum(e.usage.total for e in events)
        if raw == 0:
            return 0.0
        assigned = sum(s.total_tokens for s in sessions if not s.is_gap)
        drift = abs(raw - assigned) / raw * 100
        if drift > self.drift_threshold_percent:
            logger.warning(
                "Token drift %.1f%%: sessions hold %d tokens, events hold %d",
                drift, assigned, raw,
            )
        return drift


def sort_for_display(sessions: Iterable[Session]) -> list[Session]:
    """Most recent session first."""
    return sorted(sessions, key=lambda s: s.start_time, reverse=True)
