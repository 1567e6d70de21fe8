"""Persistent window history.

Windows chosen by earlier runs are stored in a small JSON file so that
detection stays stable across restarts. The store also acts as a
validator: a freshly proposed window that collides with a stored one is
shifted forward so the two do not overlap.

Writers are serialized with a single lock. Readers never take the lock;
they read an immutable tuple snapshot that each write replaces.

File layout::

    {"windows": [WindowRecord, ...], "last_updated": <unix seconds>}
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field

from .models import MAX_TIMESTAMP, SOURCE_LIMIT_MESSAGE, DetectorConfig, format_ts

logger = logging.getLogger(__name__)


class WindowRecord(BaseModel):
    """One persisted window."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    session_id: str
    source: str
    start_time: int = Field(ge=0, le=MAX_TIMESTAMP)
    end_time: int = Field(ge=0, le=MAX_TIMESTAMP)
    created_at: int = 0
    is_limit_reached: bool = False
    limit_message: str = ""
    first_entry_time: int = 0
    is_account_level: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def start_time_str(self) -> str:
        return format_ts(self.start_time)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def end_time_str(self) -> str:
        return format_ts(self.end_time)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def created_at_str(self) -> str:
        return format_ts(self.created_at)

    def overlaps(self, start: int, end: int) -> bool:
        return self.start_time < end and self.end_time > start


class HistoryFile(BaseModel):
    windows: list[WindowRecord] = []
    last_updated: int = 0


class ValidationResult(NamedTuple):
    start: int
    end: int
    was_adjusted: bool
    fell_back: bool = False  # adjustment discarded for ending too far ahead


def _utc_date(ts: int):
    return datetime.fromtimestamp(ts, tz=timezone.utc).date()


class WindowHistoryStore:
    """Durable store of previously established windows."""

    def __init__(
        self,
        path: Path | str,
        config: DetectorConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.config = config or DetectorConfig()
        self._clock = clock
        self._records: tuple[WindowRecord, ...] = ()
        self._write_lock = threading.Lock()
        self._dirty = False

    def now(self) -> int:
        return int(self._clock())

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    # -- Persistence -----------------------------------------------------------

    def load(self) -> int:
        """Load records from disk. A missing file means an empty history."""
        if not self.path.exists():
            logger.debug("No window history at %s", self.path)
            with self._write_lock:
                self._records = ()
            return 0

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as e:
            logger.warning("Could not read window history %s: %s", self.path, e)
            return 0
        except json.JSONDecodeError as e:
            corrupt = self.path.with_suffix(self.path.suffix + ".corrupt")
            logger.warning("Corrupt window history %s (%s), moving to %s", self.path, e, corrupt)
            try:
                os.replace(self.path, corrupt)
            except OSError:
                logger.exception("Could not move corrupt history aside")
            with self._write_lock:
                self._records = ()
            return 0

        windows = raw.get("windows", []) if isinstance(raw, dict) else []
        records: list[WindowRecord] = []
        for item in windows or []:
            try:
                records.append(WindowRecord.model_validate(item))
            except ValidationError:
                logger.debug("Skipping malformed history record: %r", item)
                continue

        records.sort(key=lambda r: r.start_time)
        with self._write_lock:
            self._records = tuple(records)
            self._dirty = False
        logger.info("Loaded %d windows from %s", len(records), self.path)
        return len(records)

    def save(self) -> bool:
        """Atomically persist the history. Failures are logged, never raised.

        Returns False on failure; the store stays dirty so the next save
        cycle retries.
        """
        with self._write_lock:
            payload = HistoryFile(windows=list(self._records), last_updated=self.now())
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    f.write(payload.model_dump_json(indent=2))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except OSError as e:
                logger.error("Failed to save window history to %s: %s", self.path, e)
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                return False
            self._dirty = False
        logger.debug("Saved %d windows to %s", len(payload.windows), self.path)
        return True

    # -- Mutation --------------------------------------------------------------

    def add_or_update(self, record: WindowRecord) -> bool:
        """Insert or replace a record after checking its time bounds.

        A replacement never downgrades a limit-confirmed record for the same
        session id. Returns False when the record is rejected.
        """
        now = self.now()
        if record.is_limit_reached:
            if record.end_time > now:
                logger.debug("Rejecting limit window %s: ends in the future", record.session_id)
                return False
            if record.end_time < now - self.config.limit_window_retention:
                logger.debug("Rejecting limit window %s: older than retention", record.session_id)
                return False
        elif record.end_time > now + self.config.max_future_window:
            logger.debug("Rejecting window %s: ends too far in the future", record.session_id)
            return False

        update: dict[str, object] = {"created_at": now}
        with self._write_lock:
            kept: list[WindowRecord] = []
            for existing in self._records:
                if existing.session_id != record.session_id:
                    kept.append(existing)
                    continue
                if existing.is_limit_reached and not record.is_limit_reached:
                    update.update(
                        is_limit_reached=True,
                        source=existing.source,
                        limit_message=existing.limit_message,
                        is_account_level=existing.is_account_level or record.is_account_level,
                    )
            kept.append(record.model_copy(update=update))
            kept.sort(key=lambda r: r.start_time)
            self._records = tuple(kept)
            self._dirty = True
        return True

    def update_from_limit_message(self, reset_time: int, message_time: int, content: str) -> bool:
        """Record the account-level window implied by a limit notice."""
        start = reset_time - self.config.session_duration
        record = WindowRecord(
            session_id=str(start),
            source=SOURCE_LIMIT_MESSAGE,
            start_time=start,
            end_time=reset_time,
            is_limit_reached=True,
            limit_message=content[:500],
            first_entry_time=message_time,
            is_account_level=True,
        )
        return self.add_or_update(record)

    def cleanup(self, retention_days: int | None = None) -> int:
        """Prune old records. Limit-confirmed records are kept longer."""
        days = retention_days if retention_days is not None else self.config.history_cleanup_days
        limit_days = max(days, self.config.limit_history_retention_days)
        now = self.now()
        cutoff = now - days * 86400
        limit_cutoff = now - limit_days * 86400

        with self._write_lock:
            kept = tuple(
                r for r in self._records
                if r.end_time > (limit_cutoff if r.is_limit_reached else cutoff)
            )
            removed = len(self._records) - len(kept)
            if removed:
                self._records = kept
                self._dirty = True
        if removed:
            logger.info("Cleaned %d old windows from history", removed)
        return removed

    def clear(self, preserve_limits: bool = True) -> int:
        """Drop stored windows, keeping limit-confirmed ones unless told not to."""
        with self._write_lock:
            kept = tuple(r for r in self._records if preserve_limits and r.is_limit_reached)
            removed = len(self._records) - len(kept)
            self._records = kept
            self._dirty = True
        logger.info("Cleared %d windows from history (%d limit windows kept)", removed, len(kept))
        return removed

    # -- Queries (lock-free snapshot reads) -------------------------------------

    def records(self) -> list[WindowRecord]:
        return list(self._records)

    def account_level_windows(self) -> list[WindowRecord]:
        return [r for r in self._records if r.is_account_level]

    def limit_reached_windows(self) -> list[WindowRecord]:
        return [r for r in self._records if r.is_limit_reached]

    def recent_windows(self, duration: int) -> list[WindowRecord]:
        cutoff = self.now() - duration
        return [r for r in self._records if r.end_time > cutoff]

    # -- Validation ------------------------------------------------------------

    def validate(self, start: int, end: int) -> ValidationResult:
        """Shift a proposed window forward past stored windows it collides with.

        Pass 1 only looks at same-day limit-message records; pass 2 at every
        other non-stale record. The result always spans exactly one session
        duration. When the shifted window would end after ``now +
        max_future_window`` the shift is discarded and the original
        proposal is returned with ``fell_back=True``.
        """
        duration = self.config.session_duration
        now = self.now()
        stale_before = now - self.config.limit_window_retention
        records = self._records
        day = _utc_date(start)

        adj_start, adj_end = start, end

        def is_same_window(r: WindowRecord) -> bool:
            return (r.start_time, r.end_time) in ((start, end), (adj_start, adj_end))

        limit_records = [
            r for r in records
            if r.is_limit_reached
            and r.source == SOURCE_LIMIT_MESSAGE
            and r.end_time >= stale_before
            and _utc_date(r.start_time) == day
        ]
        for r in limit_records:
            if is_same_window(r):
                continue
            if r.overlaps(adj_start, adj_end):
                logger.debug(
                    "Window %d overlaps limit window %s, moving to %d",
                    adj_start, r.session_id, r.end_time,
                )
                adj_start, adj_end = r.end_time, r.end_time + duration

        limit_ids = {id(r) for r in limit_records}
        for r in records:
            if id(r) in limit_ids or r.end_time < stale_before or is_same_window(r):
                continue
            if r.overlaps(adj_start, adj_end):
                logger.debug(
                    "Window %d overlaps stored window %s, moving to %d",
                    adj_start, r.session_id, r.end_time,
                )
                adj_start, adj_end = r.end_time, r.end_time + duration

        adj_end = adj_start + duration
        if adj_end > now + self.config.max_future_window:
            logger.info(
                "Adjusted window %d-%d would end too far ahead, keeping proposal %d-%d",
                adj_start, adj_end, start, end,
            )
            return ValidationResult(start, end, False, fell_back=True)

        return ValidationResult(adj_start, adj_end, (adj_start, adj_end) != (start, end))
