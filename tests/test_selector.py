"""Tests for window selection."""

from __future__ import annotations

from itertools import combinations

from src.quota_tracker.history import WindowRecord
from src.quota_tracker.models import WindowCandidate
from src.quota_tracker.selector import WindowSelector, windows_overlap

FIVE_HOURS = 5 * 3600


def _cand(start, source="first_message", priority=3, end=None, is_limit=False):
    return WindowCandidate(
        start=start,
        end=end if end is not None else start + FIVE_HOURS,
        source=source,
        priority=priority,
        is_limit=is_limit,
    )


def _limit(start, priority=10):
    return _cand(start, source="limit_message", priority=priority, is_limit=True)


class TestWindowsOverlap:
    def test_overlap(self, at):
        assert windows_overlap(_cand(at(10)), _cand(at(12)))

    def test_disjoint(self, at):
        assert not windows_overlap(_cand(at(1)), _cand(at(12)))

    def test_boundary_touch(self, at):
        assert not windows_overlap(_cand(at(9), "continuous_activity", 8), _cand(at(14)))
        assert not windows_overlap(_cand(at(9)), _cand(at(14), "gap", 5))


class TestSelect:
    def test_higher_priority_wins(self, at):
        selected = WindowSelector(FIVE_HOURS).select(
            [_cand(at(10)), _cand(at(12), "gap", 5)], now=at(20),
        )
        assert [(c.start, c.source) for c in selected] == [(at(12), "gap")]

    def test_tie_goes_to_earlier_start(self, at):
        selected = WindowSelector(FIVE_HOURS).select(
            [_cand(at(12), "gap", 5), _cand(at(10), "gap", 5)], now=at(20),
        )
        assert [c.start for c in selected] == [at(10)]

    def test_output_sorted_by_start(self, at):
        selected = WindowSelector(FIVE_HOURS).select(
            [_cand(at(14), "continuous_activity", 8), _cand(at(9), "continuous_activity", 8),
             _cand(at(2), "gap", 5)],
            now=at(20),
        )
        assert [c.start for c in selected] == [at(2), at(9), at(14)]

    def test_duration_normalized(self, at):
        (c,) = WindowSelector(FIVE_HOURS).select([_cand(at(10), end=at(11))], now=at(20))
        assert c.end - c.start == FIVE_HOURS

    def test_unexpired_limit_overrides_everything(self, at):
        candidates = [
            _cand(at(9), "continuous_activity", 8),
            _cand(at(14), "continuous_activity", 8),
            _cand(at(6), "history_limit", 10, is_limit=True),
            _limit(at(12, 25)),
        ]
        selected = WindowSelector(FIVE_HOURS).select(candidates, now=at(17))
        assert (at(12, 25), "limit_message") in [(c.start, c.source) for c in selected]
        for a, b in combinations(selected, 2):
            assert not windows_overlap(a, b)

    def test_later_limit_evicts_earlier_overlapping_limit(self, at):
        selected = WindowSelector(FIVE_HOURS).select(
            [_limit(at(10)), _limit(at(11))], now=at(12),
        )
        assert [c.start for c in selected] == [at(11)]

    def test_expired_limit_competes_normally(self, at):
        selected = WindowSelector(FIVE_HOURS).select(
            [_limit(at(8, 25), priority=9), _cand(at(13))], now=at(14),
        )
        assert [c.source for c in selected] == ["limit_message"]

    def test_invariants_on_mixed_input(self, at):
        candidates = [
            _cand(at(h), src, p)
            for h, src, p in [
                (0, "first_message", 3), (3, "gap", 5), (5, "continuous_activity", 8),
                (10, "continuous_activity", 8), (11, "history_account", 7), (16, "active_window", 6),
            ]
        ]
        selected = WindowSelector(FIVE_HOURS).select(candidates, now=at(18))
        assert all(c.end - c.start == FIVE_HOURS for c in selected)
        for a, b in combinations(selected, 2):
            assert not windows_overlap(a, b)


class TestSelectWithHistory:
    def test_candidate_shifted_by_history(self, store, at):
        store.add_or_update(WindowRecord(
            session_id="old", source="first_message", start_time=at(10), end_time=at(15),
        ))
        (c,) = WindowSelector(FIVE_HOURS, store).select([_cand(at(12), "gap", 5)], now=at(20))
        assert (c.start, c.end) == (at(15), at(20))
        assert c.metadata["adjusted_from"] == at(12)

    def test_shifted_candidate_dropped_on_conflict(self, store, at):
        store.add_or_update(WindowRecord(
            session_id="old", source="first_message", start_time=at(10), end_time=at(15),
        ))
        selected = WindowSelector(FIVE_HOURS, store).select(
            [_cand(at(16), "continuous_activity", 8), _cand(at(11), "gap", 5)], now=at(20),
        )
        assert [(c.start, c.source) for c in selected] == [(at(16), "continuous_activity")]

    def test_limit_candidates_skip_validation(self, store, at):
        store.add_or_update(WindowRecord(
            session_id="old", source="first_message", start_time=at(10), end_time=at(15),
        ))
        (c,) = WindowSelector(FIVE_HOURS, store).select(
            [_cand(at(12), "history_limit", 10, is_limit=True)], now=at(20),
        )
        assert c.start == at(12)
