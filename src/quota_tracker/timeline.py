"""Global timeline construction.

Raw per-message log entries (primary) and per-project hourly aggregates
(supplementary) are normalized into one time-ordered sequence of
``TimestampedEvent``. When both kinds of data cover the same period the
aggregate rows are dropped so their tokens are not counted twice.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from .models import HOURLY, MAX_TIMESTAMP, MESSAGE, SECONDS_PER_HOUR, TimestampedEvent, Usage

logger = logging.getLogger(__name__)

DEDUP_WINDOW = 300  # coarse bucket for message-level data
HOURLY_DEDUP_WINDOW = SECONDS_PER_HOUR


def parse_timestamp(value: Any) -> int | None:
    """Parse an ISO-8601 string or epoch number into Unix seconds.

    Epoch values above 1e12 are treated as milliseconds. Returns None for
    anything unparseable, non-finite, or later than ``MAX_TIMESTAMP``.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        if value <= 0 or value > MAX_TIMESTAMP * 1000:
            return None
        ts = int(value / 1000) if value > 1e12 else int(value)
        return ts if ts <= MAX_TIMESTAMP else None
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    ts = int(dt.timestamp())
    return ts if 0 < ts <= MAX_TIMESTAMP else None


def _usage_from(raw: Any) -> Usage:
    if not isinstance(raw, Mapping):
        return Usage()
    return Usage(
        input_tokens=int(raw.get("input_tokens", 0) or 0),
        output_tokens=int(raw.get("output_tokens", 0) or 0),
        cache_creation_tokens=int(raw.get("cache_creation_input_tokens", 0) or 0),
        cache_read_tokens=int(raw.get("cache_read_input_tokens", 0) or 0),
    )


def _message_event(entry: Mapping[str, Any]) -> TimestampedEvent | None:
    ts = parse_timestamp(entry.get("timestamp"))
    if ts is None:
        return None
    return TimestampedEvent(
        timestamp=ts,
        project_name=str(entry.get("project") or "unknown"),
        usage=_usage_from(entry.get("usage")),
        model=str(entry.get("model") or ""),
        type=MESSAGE,
        role=str(entry.get("role") or "assistant"),
        content=str(entry.get("content") or ""),
    )


def _hourly_event(entry: Mapping[str, Any]) -> TimestampedEvent | None:
    ts = parse_timestamp(entry.get("hour", entry.get("timestamp")))
    if ts is None:
        return None
    return TimestampedEvent(
        timestamp=ts,
        project_name=str(entry.get("project") or "unknown"),
        usage=_usage_from(entry.get("usage")),
        model=str(entry.get("model") or ""),
        type=HOURLY,
    )


class TimelineBuilder:
    """Builds, deduplicates and ages out the global event timeline."""

    def build(
        self,
        messages: Iterable[Mapping[str, Any]] = (),
        hourly: Iterable[Mapping[str, Any]] = (),
    ) -> list[TimestampedEvent]:
        events: list[TimestampedEvent] = []
        skipped = 0

        for entry in messages:
            try:
                event = _message_event(entry)
            except (TypeError, ValueError, AttributeError, OverflowError):
                event = None
            if event is None:
                skipped += 1
                continue
            events.append(event)

        for entry in hourly:
            try:
                event = _hourly_event(entry)
            except (TypeError, ValueError, AttributeError, OverflowError):
                event = None
            if event is None:
                skipped += 1
                continue
            events.append(event)

        if skipped:
            logger.debug("Skipped %d timeline entries with bad timestamps", skipped)

        # Stable sort keeps source order for equal timestamps
        events.sort(key=lambda e: e.timestamp)
        return self.deduplicate(events)

    def merge(self, *sequences: Iterable[TimestampedEvent]) -> list[TimestampedEvent]:
        """Merge already-built sequences into one ordered, deduplicated list."""
        merged = [e for seq in sequences for e in seq]
        merged.sort(key=lambda e: e.timestamp)
        return self.deduplicate(merged)

    def deduplicate(self, events: list[TimestampedEvent]) -> list[TimestampedEvent]:
        """Drop supplementary events already covered by primary data."""
        primary_exact: set[tuple[int, str, str]] = set()
        primary_buckets: set[tuple[int, int, str]] = set()
        for e in events:
            if not e.is_primary:
                continue
            primary_exact.add(self.exact_key(e))
            for width in (DEDUP_WINDOW, HOURLY_DEDUP_WINDOW):
                primary_buckets.add((width, e.timestamp // width, e.project_name))

        result: list[TimestampedEvent] = []
        dropped = 0
        for e in events:
            if not e.is_primary:
                width = self.window_width(e)
                if (
                    self.exact_key(e) in primary_exact
                    or (width, e.timestamp // width, e.project_name) in primary_buckets
                ):
                    dropped += 1
                    continue
            result.append(e)

        if dropped:
            logger.debug("Dropped %d supplementary events overlapping primary data", dropped)
        return result

    def filter_by_age(
        self, events: list[TimestampedEvent], max_age: int, now: int,
    ) -> list[TimestampedEvent]:
        cutoff = now - max_age
        return [e for e in events if e.timestamp > cutoff]

    @staticmethod
    def exact_key(event: TimestampedEvent) -> tuple[int, str, str]:
        ts = event.timestamp
        if event.type == HOURLY:
            ts = ts // 60 * 60
        return (ts, event.project_name, event.type)

    @staticmethod
    def window_width(event: TimestampedEvent) -> int:
        return HOURLY_DEDUP_WINDOW if event.type == HOURLY else DEDUP_WINDOW
