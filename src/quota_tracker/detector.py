"""Window detection pipeline.

    events -> limit notices -> strategies -> selector -> sessions -> metrics

One ``detect()`` call is synchronous and works on a snapshot of the
events it is given. The only state carried between calls is the injected
``WindowHistoryStore``: limit notices and the chosen windows are recorded
there so later runs reach the same answer even after the raw logs have
aged out. Time-bound checks inside the store use the store's own clock.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from . import limit_parser
from .event_cache import EventCache
from .history import WindowHistoryStore, WindowRecord
from .metrics import MetricsCalculator
from .models import (
    SOURCE_ACTIVE_WINDOW,
    SOURCE_HISTORY_LIMIT,
    SOURCE_LIMIT_MESSAGE,
    CostFunction,
    DetectorConfig,
    LimitSignal,
    Plan,
    Session,
    TimestampedEvent,
    WindowCandidate,
    WindowDetectionInfo,
    zero_cost,
)
from .selector import WindowSelector
from .sessions import SessionBuilder
from .strategies import DetectionContext, StrategyRegistry
from .timeline import TimelineBuilder

logger = logging.getLogger(__name__)

_LIMIT_SOURCES = (SOURCE_LIMIT_MESSAGE, SOURCE_HISTORY_LIMIT)


@dataclass
class DetectionResult:
    sessions: list[Session] = field(default_factory=list)  # chronological, gaps included
    windows: list[WindowCandidate] = field(default_factory=list)
    signals: list[LimitSignal] = field(default_factory=list)
    window_info: dict[str, WindowDetectionInfo] = field(default_factory=dict)
    drift_percent: float = 0.0

    @property
    def active_session(self) -> Session | None:
        return next((s for s in reversed(self.sessions) if s.is_active), None)


class WindowDetector:
    def __init__(
        self,
        config: DetectorConfig | None = None,
        history: WindowHistoryStore | None = None,
        cost_fn: CostFunction = zero_cost,
        plan: Plan | None = None,
        registry: StrategyRegistry | None = None,
        cache: EventCache | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or DetectorConfig()
        self.history = history
        self.registry = registry or StrategyRegistry()
        self.cache = cache
        if clock is None:
            clock = history.now if history is not None else time.time
        self._clock = clock

        duration = self.config.session_duration
        self.timeline = TimelineBuilder()
        self.selector = WindowSelector(duration, history)
        self.builder = SessionBuilder(duration, cost_fn, self.config.drift_threshold_percent)
        self.metrics = MetricsCalculator(duration, plan)

    def detect_from_raw(
        self,
        messages: Iterable[Mapping],
        hourly: Iterable[Mapping] = (),
        now: int | None = None,
    ) -> DetectionResult:
        """Build the timeline from raw mappings, then detect."""
        return self.detect(self.timeline.build(messages, hourly), now=now)

    def detect(self, events: Iterable[TimestampedEvent], now: int | None = None) -> DetectionResult:
        now = int(self._clock()) if now is None else now
        duration = self.config.session_duration

        timeline = sorted(events, key=lambda e: e.timestamp)
        timeline = self.timeline.filter_by_age(timeline, self.config.data_max_age, now)

        signals = limit_parser.parse(timeline)

        ctx = DetectionContext(
            events=tuple(timeline),
            signals=tuple(signals),
            duration=duration,
            now=now,
            history=self.history,
        )
        candidates = self.registry.detect_all(ctx)
        windows = self.selector.select(candidates, now)

        sessions = self.builder.build_sessions(windows, timeline)
        sessions = self.builder.deduplicate_sessions(sessions)
        sessions = self.builder.insert_gap_sessions(sessions)
        self.builder.mark_active(sessions, now)
        drift = self.builder.check_token_drift(sessions, timeline)
        self.metrics.calculate_all(sessions, now)

        self._record_limit_signals(signals)
        self._record_windows(sessions)
        info = self._detection_info(sessions, now)
        if self.cache is not None:
            for session_id, i in info.items():
                self.cache.update_window_info(session_id, i)

        logger.info(
            "Detected %d windows from %d candidates over %d events",
            len(windows), len(candidates), len(timeline),
        )
        return DetectionResult(
            sessions=sessions,
            windows=windows,
            signals=signals,
            window_info=info,
            drift_percent=drift,
        )

    # -- History writeback -----------------------------------------------------

    def _record_limit_signals(self, signals: list[LimitSignal]) -> None:
        if self.history is None:
            return
        for s in signals:
            if s.reset_time is not None:
                self.history.update_from_limit_message(s.reset_time, s.timestamp, s.content)

    def _record_windows(self, sessions: list[Session]) -> None:
        if self.history is None:
            return
        for s in sessions:
            if s.is_gap or not s.message_count or s.window_source == SOURCE_ACTIVE_WINDOW:
                continue
            is_limit = s.window_source in _LIMIT_SOURCES
            self.history.add_or_update(WindowRecord(
                session_id=s.id,
                source=SOURCE_LIMIT_MESSAGE if is_limit else s.window_source,
                start_time=s.start_time,
                end_time=s.end_time,
                is_limit_reached=is_limit,
                limit_message=s.limit_messages[0][:500] if s.limit_messages else "",
                first_entry_time=s.first_entry_time,
                is_account_level=s.is_account_level,
            ))

    def _detection_info(self, sessions: list[Session], now: int) -> dict[str, WindowDetectionInfo]:
        horizon = now + self.config.max_future_window
        return {
            s.id: WindowDetectionInfo(
                window_start=s.start_time,
                is_detected=s.is_window_detected,
                source=s.window_source,
                detected_at=now,
                first_entry_time=s.first_entry_time,
            )
            for s in sessions
            if not s.is_gap and s.end_time <= horizon
        }

    def seed_history(self, infos: Mapping[str, WindowDetectionInfo]) -> int:
        """Recreate history records from cached detection info."""
        if self.history is None:
            return 0
        added = 0
        for session_id, info in infos.items():
            if not info.is_detected:
                continue
            is_limit = info.source in _LIMIT_SOURCES
            record = WindowRecord(
                session_id=session_id,
                source=SOURCE_LIMIT_MESSAGE if is_limit else info.source,
                start_time=info.window_start,
                end_time=info.window_start + self.config.session_duration,
                is_limit_reached=is_limit,
                first_entry_time=info.first_entry_time,
                is_account_level=is_limit,
            )
            if self.history.add_or_update(record):
                added += 1
        logger.debug("Seeded %d history windows from cached detection info", added)
        return added
