"""Read usage events from Claude Code's local JSONL session logs.

Layout: ``<claude_dir>/projects/<project-dir>/<session-id>.jsonl``. Each
assistant entry carrying ``message.usage`` becomes one usage event; text
entries that look like limit notices are kept (with zero usage) so the
limit parser can see them. Parsed files are cached by path and mtime.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .event_cache import EventCache
from .models import TimestampedEvent
from .timeline import TimelineBuilder

logger = logging.getLogger(__name__)


def _parse_jsonl_file(file_path: Path) -> list[dict[str, Any]]:
    """Parse a JSONL file, skipping malformed lines."""
    entries: list[dict[str, Any]] = []
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict):
                    entries.append(entry)
    except OSError as e:
        logger.debug("Could not read %s: %s", file_path, e)
    return entries


def _text_of(content: Any) -> str:
    """Flatten message content (string or list of blocks) into plain text."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if isinstance(block.get("text"), str):
            parts.append(block["text"])
        elif block.get("type") == "tool_result":
            parts.append(_text_of(block.get("content")))
    return "\n".join(p for p in parts if p)


def _role_of(entry: dict[str, Any], message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, list) and any(
        isinstance(b, dict) and b.get("type") == "tool_result" for b in content
    ):
        return "tool_result"
    return str(entry.get("type") or message.get("role") or "assistant")


def project_name(project_dir: Path) -> str:
    """Turn '-home-me-work-myapp' into 'myapp'."""
    name = project_dir.name.strip("-")
    return name.rsplit("-", 1)[-1] if name else project_dir.name


def extract_messages(entries: list[dict[str, Any]], project: str) -> list[dict[str, Any]]:
    """Convert raw JSONL entries into timeline message mappings."""
    messages: list[dict[str, Any]] = []
    for entry in entries:
        message = entry.get("message")
        if not isinstance(message, dict):
            message = {}
        usage = message.get("usage")
        model = message.get("model", "")
        if model == "<synthetic>":
            usage = None

        text = _text_of(message.get("content")) or _text_of(entry.get("content"))
        if not usage and "limit" not in text.lower():
            continue

        messages.append({
            "timestamp": entry.get("timestamp"),
            "project": project,
            "model": model if usage else "",
            "role": _role_of(entry, message),
            "content": text if "limit" in text.lower() else "",
            "usage": usage or {},
        })
    return messages


class UsageLogLoader:
    """Loads timeline events from a Claude data directory."""

    def __init__(self, claude_dir: Path, cache: EventCache | None = None) -> None:
        self.claude_dir = claude_dir
        self.cache = cache or EventCache()
        self.timeline = TimelineBuilder()

    def _files(self) -> list[tuple[Path, Path]]:
        projects_dir = self.claude_dir / "projects"
        if not projects_dir.exists():
            return []
        try:
            return [
                (proj_dir, f)
                for proj_dir in sorted(projects_dir.iterdir()) if proj_dir.is_dir()
                for f in sorted(proj_dir.glob("*.jsonl"))
            ]
        except OSError as e:
            logger.warning("Could not list %s: %s", projects_dir, e)
            return []

    def _load_file(self, proj_dir: Path, path: Path) -> None:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            return
        key = str(path)
        if self.cache.is_fresh(key, mtime):
            return
        entries = _parse_jsonl_file(path)
        events = self.timeline.build(extract_messages(entries, project_name(proj_dir)))
        self.cache.set(key, events, mtime)

    def load(self) -> list[TimestampedEvent]:
        """Parse new or changed files and return every cached event."""
        for proj_dir, path in self._files():
            self._load_file(proj_dir, path)
        return self.cache.all_events()

    def reload(self) -> list[TimestampedEvent]:
        """Re-parse everything into a staged buffer and swap it in at the end."""
        self.cache.clear()
        try:
            for proj_dir, path in self._files():
                self._load_file(proj_dir, path)
        except Exception:
            self.cache.cancel_clear()
            raise
        self.cache.commit_clear()
        return self.cache.all_events()
