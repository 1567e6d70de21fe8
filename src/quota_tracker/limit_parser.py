"""Rate-limit notice detection.

Scans timeline events for provider rate-limit notifications. Three
interpretations are tried in order of trust:

1. an explicit ``limit reached|<epoch>`` token, which pins the reset time
   exactly (epochs above 1e12 are milliseconds);
2. a natural-language notice such as "rate limit ... wait 10 minutes",
   where reset = message time + N minutes;
3. a generic keyword match, which carries no reset time.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from .models import MAX_TIMESTAMP, SOURCE_LIMIT_MESSAGE, LimitSignal, TimestampedEvent

logger = logging.getLogger(__name__)

_RESET_RE = re.compile(r"limit\s+reached\|(\d+)", re.IGNORECASE)
_WAIT_RE = re.compile(r"wait\s+(\d+)\s+minutes?", re.IGNORECASE)
_OPUS_RE = re.compile(
    r"(opus).*(rate\s*limit|limit\s*exceeded|limit\s*reached|limit\s*hit)",
    re.IGNORECASE,
)
_GENERAL_RE = re.compile(
    r"(rate\s*limit|limit\s*exceeded|limit\s*reached|you've\s*reached|quota\s*exceeded)",
    re.IGNORECASE,
)

CONFIDENCE_EXPLICIT = 1.0
CONFIDENCE_WAIT = 0.9
CONFIDENCE_KEYWORD = 0.5


def _parse_reset_epoch(raw: str) -> int | None:
    try:
        value = int(raw)
    except ValueError:
        return None
    if value <= 0:
        return None
    if value > 1_000_000_000_000:
        value //= 1000
    return value if value <= MAX_TIMESTAMP else None


def _kind_for(event: TimestampedEvent, content: str) -> str:
    if event.role == "system":
        return "opus_limit" if _OPUS_RE.search(content) else "system_limit"
    if event.role == "tool_result":
        return "general_limit"
    return "api_error_limit"


def parse_event(event: TimestampedEvent) -> LimitSignal | None:
    """Return the limit signal carried by one event, if any."""
    content = event.content
    if not content:
        return None

    m = _RESET_RE.search(content)
    if m:
        reset = _parse_reset_epoch(m.group(1))
        if reset is not None:
            return LimitSignal(
                timestamp=event.timestamp,
                reset_time=reset,
                content=content,
                confidence=CONFIDENCE_EXPLICIT,
                kind="explicit_reset",
                model=event.model,
            )

    if not (_GENERAL_RE.search(content) or _OPUS_RE.search(content)):
        return None

    kind = _kind_for(event, content)
    m = _WAIT_RE.search(content)
    if m:
        return LimitSignal(
            timestamp=event.timestamp,
            reset_time=event.timestamp + int(m.group(1)) * 60,
            content=content,
            confidence=CONFIDENCE_WAIT,
            kind=kind,
            model=event.model,
        )

    return LimitSignal(
        timestamp=event.timestamp,
        reset_time=None,
        content=content,
        confidence=CONFIDENCE_KEYWORD,
        kind=kind,
        model=event.model,
    )


def parse(events: Iterable[TimestampedEvent]) -> list[LimitSignal]:
    """Scan events for rate-limit notices, in timeline order."""
    signals: list[LimitSignal] = []
    for event in events:
        signal = parse_event(event)
        if signal is not None:
            signals.append(signal)
    if signals:
        logger.debug(
            "Found %d limit signals (%d with reset time)",
            len(signals), sum(1 for s in signals if s.reset_time is not None),
        )
    return signals


def detect_window_from_limits(
    signals: Iterable[LimitSignal], duration: int,
) -> tuple[int, str] | None:
    """Derive the window start from the most recent limit notice with a reset.

    Returns ``(window_start, "limit_message")`` or None when no signal
    carries a reset time.
    """
    latest: LimitSignal | None = None
    for s in signals:
        if s.reset_time is None:
            continue
        if latest is None or s.timestamp > latest.timestamp:
            latest = s
    if latest is None:
        return None
    return latest.reset_time - duration, SOURCE_LIMIT_MESSAGE
