"""Core data types for quota window detection.

All timestamps are integer Unix seconds in UTC. Windows are half-open
``[start, end)`` intervals whose length is the configured session
duration (5 hours by default).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable

SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400
MAX_TIMESTAMP = 4_102_444_800  # 2100-01-01 UTC

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Event types
MESSAGE = "message"  # raw per-message log entry (primary)
HOURLY = "hourly"  # hourly aggregate (supplementary)

# Window sources
SOURCE_HISTORY_LIMIT = "history_limit"
SOURCE_LIMIT_MESSAGE = "limit_message"
SOURCE_CONTINUOUS = "continuous_activity"
SOURCE_HISTORY_ACCOUNT = "history_account"
SOURCE_ACTIVE_WINDOW = "active_window"
SOURCE_GAP = "gap"
SOURCE_FIRST_MESSAGE = "first_message"

MULTIPLE_PROJECTS = "Multiple"


def truncate_to_hour(ts: int) -> int:
    """Align a timestamp down to its UTC hour boundary."""
    return ts // SECONDS_PER_HOUR * SECONDS_PER_HOUR


def format_ts(ts: int) -> str:
    """Format a Unix timestamp for persisted records; 0 formats as ''."""
    if not ts:
        return ""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(TIME_FORMAT)


# -- Usage events --------------------------------------------------------------


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )


@dataclass(frozen=True)
class TimestampedEvent:
    """One usage event on the global timeline."""

    timestamp: int
    project_name: str
    usage: Usage = field(default_factory=Usage)
    model: str = ""
    type: str = MESSAGE  # MESSAGE or HOURLY
    role: str = "assistant"  # user | assistant | system | tool_result
    content: str = ""  # text scanned for rate-limit notices

    @property
    def is_primary(self) -> bool:
        return self.type != HOURLY


# Pure cost function supplied by the caller: (model, usage) -> USD
CostFunction = Callable[[str, Usage], float]


def zero_cost(model: str, usage: Usage) -> float:
    """Cost function for subscription plans with no per-token price."""
    return 0.0


@dataclass(frozen=True)
class LimitSignal:
    """Parsed evidence that a quota was exhausted."""

    timestamp: int  # when the notice was logged
    reset_time: int | None  # exact window end, when the notice carries one
    content: str
    confidence: float
    kind: str = "general_limit"
    model: str = ""


# -- Windows -------------------------------------------------------------------


@dataclass(frozen=True)
class WindowCandidate:
    start: int
    end: int
    source: str
    priority: int
    is_limit: bool = False
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def normalized(self, duration: int) -> WindowCandidate:
        if self.end - self.start == duration:
            return self
        return replace(self, end=self.start + duration)

    def moved_to(self, start: int, duration: int) -> WindowCandidate:
        return replace(self, start=start, end=start + duration, metadata=dict(self.metadata))

    def overlaps(self, other: WindowCandidate) -> bool:
        return self.start < other.end and self.end > other.start

    def contains(self, ts: int) -> bool:
        return self.start <= ts < self.end


@dataclass
class WindowDetectionInfo:
    """Detection metadata written back per session id for later runs."""

    window_start: int
    is_detected: bool
    source: str
    detected_at: int
    first_entry_time: int = 0


# -- Sessions ------------------------------------------------------------------


@dataclass
class ModelStats:
    tokens: int = 0
    cost: float = 0.0
    count: int = 0


@dataclass
class ProjectStats:
    tokens: int = 0
    cost: float = 0.0
    message_count: int = 0


@dataclass
class SessionMetrics:
    tokens_per_minute: float = 0.0
    cost_per_hour: float = 0.0
    cost_per_minute: float = 0.0
    burn_rate: float = 0.0  # tokens/min over the last hour
    projected_tokens: int = 0
    projected_cost: float = 0.0
    utilization: float = 0.0  # % of the plan's sustainable rate
    predicted_end_time: int | None = None  # when the plan limit is hit
    time_remaining: int = 0  # seconds until reset or limit
    reset_time: int = 0


@dataclass
class Session:
    """Materialized usage for one selected window."""

    id: str
    start_time: int
    end_time: int
    reset_time: int
    window_source: str = ""
    window_priority: int = 0
    is_window_detected: bool = False
    is_active: bool = False
    is_gap: bool = False
    is_account_level: bool = False
    project_name: str = ""
    projects: dict[str, ProjectStats] = field(default_factory=dict)
    model_distribution: dict[str, ModelStats] = field(default_factory=dict)
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    message_count: int = 0
    first_entry_time: int = 0
    actual_end_time: int = 0  # timestamp of the last event seen
    limit_messages: list[str] = field(default_factory=list)
    token_samples: list[tuple[int, int]] = field(default_factory=list)  # (ts, tokens)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)

    @property
    def duration(self) -> int:
        return self.end_time - self.start_time


# -- Plans ---------------------------------------------------------------------


@dataclass(frozen=True)
class Plan:
    name: str
    token_limit: int
    cost_limit: float
    message_limit: int


PLANS: dict[str, Plan] = {
    "pro": Plan("pro", 4_000_000, 18.0, 40),
    "max5": Plan("max5", 20_000_000, 35.0, 200),
    "max20": Plan("max20", 80_000_000, 140.0, 800),
    "custom": Plan("custom", 20_000_000, 35.0, 200),
}


def get_plan(name: str) -> Plan:
    """Look up a plan by name, falling back to ``custom`` limits."""
    return PLANS.get(name.lower(), PLANS["custom"])


# -- Configuration -------------------------------------------------------------


@dataclass(frozen=True)
class DetectorConfig:
    """Tunables injected into the engine (never read from globals)."""

    session_duration: int = 5 * SECONDS_PER_HOUR
    limit_window_retention: int = SECONDS_PER_DAY
    max_future_window: int = 5 * SECONDS_PER_HOUR
    history_cleanup_days: int = 30
    limit_history_retention_days: int = 90
    data_max_age: int = 192 * SECONDS_PER_HOUR
    drift_threshold_percent: float = 1.0

    @classmethod
    def from_settings(cls, s: Any) -> DetectorConfig:
        return cls(
            session_duration=s.session_duration_hours * SECONDS_PER_HOUR,
            limit_window_retention=s.limit_window_retention_days * SECONDS_PER_DAY,
            max_future_window=s.max_future_window_hours * SECONDS_PER_HOUR,
            history_cleanup_days=s.history_cleanup_days,
            limit_history_retention_days=s.limit_history_retention_days,
            data_max_age=s.data_max_age_hours * SECONDS_PER_HOUR,
        )
