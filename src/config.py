from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Quota window shape
    session_duration_hours: int = 5
    max_future_window_hours: int = 5  # how far past "now" a window may end

    # Window history
    history_path: str = ""  # empty = ~/.quota-tracker/history/window_history.json
    limit_window_retention_days: int = 1  # trust horizon for limit-backed records
    history_cleanup_days: int = 30
    limit_history_retention_days: int = 90  # confirmed limits are kept longer

    # Usage data
    claude_dir: str = ""  # empty = ~/.claude
    data_max_age_hours: int = 192  # events older than this are ignored

    # Plan limits used for utilization / time-to-limit
    plan: str = "pro"  # "pro" | "max5" | "max20" | "custom"

    # Logging
    log_level: str = "INFO"

    def resolved_history_path(self) -> Path:
        if self.history_path:
            return Path(self.history_path).expanduser()
        return Path.home() / ".quota-tracker" / "history" / "window_history.json"

    def resolved_claude_dir(self) -> Path:
        if self.claude_dir:
            return Path(self.claude_dir).expanduser()
        return Path.home() / ".claude"


settings = Settings()
