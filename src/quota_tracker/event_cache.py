"""Double-buffered in-memory cache of parsed usage events.

Entries are keyed by source (usually a log file path) and remember the
source's mtime so unchanged files are not parsed again. A refresh never
clears the live buffer in place: ``clear()`` stages an empty buffer that
receives new writes, and ``commit_clear()`` swaps it in under the lock.
Until then readers keep seeing the previous data.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from .models import TimestampedEvent, WindowDetectionInfo

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    events: list[TimestampedEvent]
    mtime: float = 0.0
    cached_at: float = field(default_factory=time.time)


class EventCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, CacheEntry] = {}
        self._staged: dict[str, CacheEntry] | None = None
        self._window_info: dict[str, WindowDetectionInfo] = {}

    # -- Event buffers ---------------------------------------------------------

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._active.get(key)

    def is_fresh(self, key: str, mtime: float) -> bool:
        """True when the live buffer holds ``key`` parsed at this mtime."""
        with self._lock:
            if self._staged is not None:
                entry = self._staged.get(key)
            else:
                entry = self._active.get(key)
        return entry is not None and entry.mtime == mtime

    def set(self, key: str, events: list[TimestampedEvent], mtime: float = 0.0) -> None:
        entry = CacheEntry(events=list(events), mtime=mtime)
        with self._lock:
            target = self._staged if self._staged is not None else self._active
            target[key] = entry

    def all_events(self) -> list[TimestampedEvent]:
        """Every cached event from the live buffer, time-ordered."""
        with self._lock:
            entries = list(self._active.values())
        events = [e for entry in entries for e in entry.events]
        events.sort(key=lambda e: e.timestamp)
        return events

    @property
    def clear_pending(self) -> bool:
        with self._lock:
            return self._staged is not None

    def clear(self) -> None:
        """Stage an empty buffer; the live one stays readable until commit."""
        with self._lock:
            self._staged = {}
        logger.debug("Event cache clear staged")

    def commit_clear(self) -> bool:
        """Swap the staged buffer in. Returns False if no clear was pending."""
        with self._lock:
            if self._staged is None:
                return False
            self._active, self._staged = self._staged, None
            count = len(self._active)
        logger.debug("Event cache swapped in %d fresh entries", count)
        return True

    def cancel_clear(self) -> bool:
        """Discard the staged buffer and keep serving the old data."""
        with self._lock:
            if self._staged is None:
                return False
            self._staged = None
        logger.debug("Event cache clear cancelled")
        return True

    # -- Window detection info -------------------------------------------------

    def update_window_info(self, session_id: str, info: WindowDetectionInfo) -> None:
        with self._lock:
            self._window_info[session_id] = info

    def window_info(self, session_id: str) -> WindowDetectionInfo | None:
        with self._lock:
            return self._window_info.get(session_id)

    def all_window_info(self) -> dict[str, WindowDetectionInfo]:
        with self._lock:
            return dict(self._window_info)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._active),
                "events": sum(len(e.events) for e in self._active.values()),
                "staged_entries": len(self._staged) if self._staged is not None else None,
                "window_info": len(self._window_info),
            }
