"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.quota_tracker.history import WindowHistoryStore
from src.quota_tracker.models import (
    MESSAGE,
    DetectorConfig,
    TimestampedEvent,
    Usage,
)

# Monday 2026-03-02 00:00 UTC
DAY0 = int(datetime(2026, 3, 2, tzinfo=timezone.utc).timestamp())


class FakeClock:
    """Settable clock for the history store."""

    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> float:
        return float(self.now)


@pytest.fixture
def at():
    """at(hour, minute=0, second=0, day=0) -> Unix seconds on the test day."""
    def _at(hour: int, minute: int = 0, second: int = 0, day: int = 0) -> int:
        return DAY0 + day * 86400 + hour * 3600 + minute * 60 + second
    return _at


@pytest.fixture
def event():
    """Factory for timeline events with sensible defaults."""
    def _event(
        ts: int,
        project: str = "alpha",
        tokens: int = 1000,
        model: str = "claude-sonnet-4",
        content: str = "",
        role: str = "assistant",
        type: str = MESSAGE,
    ) -> TimestampedEvent:
        return TimestampedEvent(
            timestamp=ts,
            project_name=project,
            usage=Usage(input_tokens=tokens // 2, output_tokens=tokens - tokens // 2),
            model=model,
            type=type,
            role=role,
            content=content,
        )
    return _event


@pytest.fixture
def config() -> DetectorConfig:
    return DetectorConfig()


@pytest.fixture
def clock(at) -> FakeClock:
    return FakeClock(at(20))


@pytest.fixture
def history_path(tmp_path: Path) -> Path:
    return tmp_path / "history" / "window_history.json"


@pytest.fixture
def store(history_path: Path, config: DetectorConfig, clock: FakeClock) -> WindowHistoryStore:
    """Empty history store on a temp path, driven by the fake clock."""
    return WindowHistoryStore(history_path, config, clock=clock)
