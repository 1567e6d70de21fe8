"""Resolve overlapping window candidates into one non-overlapping set."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .models import SOURCE_CONTINUOUS, SOURCE_LIMIT_MESSAGE, WindowCandidate

if TYPE_CHECKING:
    from .history import WindowHistoryStore

logger = logging.getLogger(__name__)


def windows_overlap(a: WindowCandidate, b: WindowCandidate) -> bool:
    """Half-open overlap test; shared boundaries never overlap."""
    if (a.end == b.start or b.end == a.start) and SOURCE_CONTINUOUS in (a.source, b.source):
        return False
    return a.start < b.end and a.end > b.start


class WindowSelector:
    """Priority-based selection of the final window set.

    Unexpired limit_message windows are ground truth: they are always
    accepted and evict anything they overlap. Every other candidate is
    taken in priority order (earliest start first on ties) when it fits,
    after passing history validation.
    """

    def __init__(self, duration: int, history: WindowHistoryStore | None = None) -> None:
        self.duration = duration
        self.history = history

    def select(self, candidates: Iterable[WindowCandidate], now: int) -> list[WindowCandidate]:
        normalized = [c.normalized(self.duration) for c in candidates]

        limits = [c for c in normalized if c.source == SOURCE_LIMIT_MESSAGE and c.end > now]
        others = [c for c in normalized if not (c.source == SOURCE_LIMIT_MESSAGE and c.end > now)]
        limits.sort(key=lambda c: (-c.priority, c.start))
        others.sort(key=lambda c: (-c.priority, c.start))

        accepted: list[WindowCandidate] = []

        for c in limits:
            evicted = [a for a in accepted if windows_overlap(a, c)]
            for a in evicted:
                logger.info(
                    "Limit window %d-%d evicts %s window %d-%d",
                    c.start, c.end, a.source, a.start, a.end,
                )
                accepted.remove(a)
            accepted.append(c)

        for c in others:
            if self._conflicts(c, accepted):
                continue
            if not c.is_limit and self.history is not None:
                result = self.history.validate(c.start, c.end)
                if result.was_adjusted:
                    adjusted = c.moved_to(result.start, self.duration)
                    adjusted.metadata["adjusted_from"] = c.start
                    if self._conflicts(adjusted, accepted):
                        logger.info(
                            "Dropping %s window %d-%d: adjusted to %d-%d, which overlaps a selected window",
                            c.source, c.start, c.end, adjusted.start, adjusted.end,
                        )
                        continue
                    c = adjusted
            accepted.append(c)

        accepted.sort(key=lambda c: c.start)
        return accepted

    @staticmethod
    def _conflicts(candidate: WindowCandidate, accepted: list[WindowCandidate]) -> bool:
        return any(windows_overlap(candidate, a) for a in accepted)
