"""Tests for rate-limit notice parsing."""

from __future__ import annotations

from src.quota_tracker.limit_parser import (
    CONFIDENCE_EXPLICIT,
    CONFIDENCE_KEYWORD,
    CONFIDENCE_WAIT,
    detect_window_from_limits,
    parse,
    parse_event,
)
from src.quota_tracker.models import LimitSignal

FIVE_HOURS = 5 * 3600


class TestExplicitReset:
    def test_epoch_seconds(self, at, event):
        sig = parse_event(event(at(13), content=f"Claude AI usage limit reached|{at(15)}"))
        assert sig is not None
        assert sig.reset_time == at(15)
        assert sig.kind == "explicit_reset"
        assert sig.confidence == CONFIDENCE_EXPLICIT

    def test_epoch_milliseconds_normalized(self, at, event):
        sig = parse_event(event(at(13), content=f"limit reached|{at(15) * 1000}"))
        assert sig.reset_time == at(15)

    def test_explicit_beats_wait_time(self, at, event):
        content = f"Rate limit reached|{at(16)}. Please wait 10 minutes."
        sig = parse_event(event(at(13), content=content))
        assert sig.reset_time == at(16)


class TestWaitTime:
    def test_wait_minutes(self, at, event):
        sig = parse_event(event(at(13, 15), content="Rate limit reached. Please wait 10 minutes."))
        assert sig.reset_time == at(13, 25)
        assert sig.confidence == CONFIDENCE_WAIT

    def test_singular_minute(self, at, event):
        sig = parse_event(event(at(13), content="Rate limit exceeded, wait 1 minute"))
        assert sig.reset_time == at(13, 1)

    def test_wait_without_limit_notice_ignored(self, at, event):
        assert parse_event(event(at(13), content="please wait 5 minutes for the build")) is None

    def test_opus_system_message(self, at, event):
        sig = parse_event(event(
            at(13), role="system",
            content="Opus rate limit hit. Wait 30 minutes or switch models.",
        ))
        assert sig.kind == "opus_limit"
        assert sig.reset_time == at(13, 30)


class TestKeywordOnly:
    def test_generic_keyword(self, at, event):
        sig = parse_event(event(at(13), content="You've reached your usage quota"))
        assert sig.reset_time is None
        assert sig.confidence == CONFIDENCE_KEYWORD

    def test_kinds_by_role(self, at, event):
        assert parse_event(event(at(13), role="system", content="rate limit")).kind == "system_limit"
        assert parse_event(event(at(13), role="user", content="rate limit")).kind == "api_error_limit"
        assert parse_event(event(at(13), role="tool_result", content="limit reached")).kind == "general_limit"

    def test_plain_text_is_not_a_signal(self, at, event):
        assert parse_event(event(at(13), content="Refactor the parser")) is None
        assert parse_event(event(at(13))) is None


class TestParse:
    def test_collects_in_order(self, at, event):
        events = [
            event(at(10)),
            event(at(11), content="rate limit reached, wait 5 minutes"),
            event(at(12)),
            event(at(13), content="quota exceeded"),
        ]
        signals = parse(events)
        assert [s.timestamp for s in signals] == [at(11), at(13)]


class TestDetectWindowFromLimits:
    def test_latest_message_with_reset_wins(self, at):
        signals = [
            LimitSignal(at(10), at(10, 30), "a", 0.9),
            LimitSignal(at(13, 15), at(13, 25), "b", 0.9),
            LimitSignal(at(14), None, "c", 0.5),
        ]
        start, source = detect_window_from_limits(signals, FIVE_HOURS)
        assert start == at(8, 25)
        assert source == "limit_message"

    def test_none_without_reset(self, at):
        assert detect_window_from_limits([LimitSignal(at(10), None, "x", 0.5)], FIVE_HOURS) is None
        assert detect_window_from_limits([], FIVE_HOURS) is None
