"""Entry point for the quota window tracker."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.config import settings
from src.quota_tracker.detector import WindowDetector
from src.quota_tracker.history import WindowHistoryStore
from src.quota_tracker.loader import UsageLogLoader
from src.quota_tracker.metrics import aggregate
from src.quota_tracker.models import DetectorConfig, get_plan, zero_cost
from src.quota_tracker.sessions import sort_for_display
from src.quota_tracker.strategies import StrategyRegistry

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def _fmt(n: int) -> str:
    """Format a token count for display."""
    if n >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    if n >= 10_000:
        return f"{n // 1_000}K"
    if n >= 1_000:
        return f"{n / 1_000:.1f}K"
    return f"{n:,}"


def _format_duration(seconds: int) -> str:
    """Format seconds into a human-readable duration like '2h 13m'."""
    if seconds <= 0:
        return "now"
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    return f"{minutes}m"


def _clock(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%m-%d %H:%M")


def _history_store(config: DetectorConfig) -> WindowHistoryStore:
    store = WindowHistoryStore(settings.resolved_history_path(), config)
    store.load()
    return store


def show_sessions(show_all: bool) -> None:
    """Detect quota windows from local logs and print them."""
    config = DetectorConfig.from_settings(settings)
    history = _history_store(config)
    history.cleanup()

    loader = UsageLogLoader(settings.resolved_claude_dir())
    detector = WindowDetector(
        config=config,
        history=history,
        cost_fn=zero_cost,  # subscription plans: no per-token price
        plan=get_plan(settings.plan),
        cache=loader.cache,
    )

    with console.status("[bold green]Reading usage logs..."):
        events = loader.load()
        result = detector.detect(events)
    history.save()

    sessions = sort_for_display(result.sessions)
    if not show_all:
        sessions = sessions[:10]

    table = Table(title=f"Quota windows ({settings.plan})")
    table.add_column("Window")
    table.add_column("Source")
    table.add_column("Project")
    table.add_column("Tokens", justify="right")
    table.add_column("Msgs", justify="right")
    table.add_column("Burn/min", justify="right")
    table.add_column("Resets")

    now = history.now()
    for s in sessions:
        if s.is_gap:
            table.add_row(
                f"{_clock(s.start_time)} - {_clock(s.end_time)}", "[dim]gap[/dim]",
                "", "", "", "", "",
            )
            continue
        resets = _format_duration(s.end_time - now) if s.is_active else "expired"
        style = "bold green" if s.is_active else None
        table.add_row(
            f"{_clock(s.start_time)} - {_clock(s.end_time)}",
            s.window_source,
            s.project_name,
            _fmt(s.total_tokens),
            str(s.message_count),
            f"{s.metrics.burn_rate:,.0f}",
            resets,
            style=style,
        )
    console.print(table)

    summary = aggregate(result.sessions)
    active = result.active_session
    if active is not None and active.metrics.predicted_end_time:
        console.print(
            f"[yellow]At the current rate the plan limit is reached in "
            f"{_format_duration(active.metrics.time_remaining)}[/yellow]"
        )
    console.print(
        f"\n[dim]{summary['session_count']} windows | {_fmt(summary['total_tokens'])} tokens | "
        f"{summary['message_count']} messages | drift {result.drift_percent:.1f}%[/dim]"
    )


def show_history() -> None:
    store = _history_store(DetectorConfig.from_settings(settings))
    table = Table(title=str(store.path))
    table.add_column("Session")
    table.add_column("Source")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Limit")
    table.add_column("Account")
    for r in store.records():
        table.add_row(
            r.session_id, r.source, r.start_time_str, r.end_time_str,
            "yes" if r.is_limit_reached else "", "yes" if r.is_account_level else "",
        )
    console.print(table)


def clear_history(clear_all: bool) -> None:
    store = _history_store(DetectorConfig.from_settings(settings))
    removed = store.clear(preserve_limits=not clear_all)
    if store.save():
        console.print(f"[green]Removed {removed} windows from history[/green]")
    else:
        console.print("[red]Could not write window history[/red]")
        sys.exit(1)


def show_strategies() -> None:
    table = Table(title="Window detection strategies")
    table.add_column("Priority", justify="right")
    table.add_column("Name")
    table.add_column("Description")
    for s in StrategyRegistry().summary():
        table.add_row(str(s["priority"]), s["name"], s["description"])
    console.print(table)


def main() -> None:
    parser = argparse.ArgumentParser(description="Quota window tracker")
    sub = parser.add_subparsers(dest="command")

    sessions_parser = sub.add_parser("sessions", help="Detect and show quota windows")
    sessions_parser.add_argument("--all", action="store_true", help="Show every window")

    sub.add_parser("history", help="Show stored window history")

    clear_parser = sub.add_parser("clear-history", help="Clear stored window history")
    clear_parser.add_argument("--all", action="store_true", help="Also drop limit windows")

    sub.add_parser("strategies", help="List detection strategies")

    args = parser.parse_args()

    if args.command == "sessions":
        console.print(Panel("Quota window tracker", style="bold blue"))
        show_sessions(args.all)
    elif args.command == "history":
        show_history()
    elif args.command == "clear-history":
        clear_history(args.all)
    elif args.command == "strategies":
        show_strategies()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
