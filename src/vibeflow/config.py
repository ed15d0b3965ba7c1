"""Configuration, thresholds and directory management for VibeFlow."""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from vibeflow.errors import ConfigError


def _default_data_dir() -> Path:
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA") or Path.home()) / "vibeflow-cli"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "vibeflow-cli"
    xdg = os.environ.get("XDG_CONFIG_HOME")
    return (Path(xdg) if xdg else Path.home() / ".config") / "vibeflow-cli"


VIBEFLOW_DIR = _default_data_dir()
SESSIONS_FILENAME = "sessions.json"
STATE_FILENAME = "state.json"

# Per-repo trace artifact, relative to the repository root
TRACE_DIRNAME = ".vibeflow"
TRACE_FILENAME = "trace.json"

# Session supervision
IDLE_THRESHOLD = timedelta(minutes=5)
CLI_AUTO_END_AFTER = timedelta(hours=4)
APP_AUTO_END_AFTER = timedelta(minutes=10)
TICK_INTERVAL = timedelta(seconds=10)
ACTIVITY_SAMPLE_INTERVAL = timedelta(seconds=1)
SAVE_DEBOUNCE_SECONDS = 2.0

IDLE_TIMEOUT_OFF = {"off", "none", "never", "disabled", "0"}
_IDLE_TIMEOUT_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(m|min|h)?$")


def ensure_dirs(data_dir: Path | None = None) -> Path:
    """Ensure the VibeFlow data directory exists and return it."""
    target = data_dir or VIBEFLOW_DIR
    target.mkdir(parents=True, exist_ok=True)
    return target


def parse_idle_timeout(value: str | int | float | None) -> timedelta | None:
    """Parse an auto-end threshold.

    Accepts plain minutes (``30``), suffixed minutes (``"90m"``), suffixed
    hours (``"4h"``) or an off sentinel (``"off"``, ``0``). Returns ``None``
    when auto-end is disabled.
    """
    if value is None:
        return None
    raw = str(value).strip().lower()
    if raw in IDLE_TIMEOUT_OFF:
        return None

    match = _IDLE_TIMEOUT_RE.match(raw)
    if not match:
        raise ConfigError(f"Invalid idle timeout: {value!r} (use minutes, '4h' or 'off')")

    amount = float(match.group(1))
    if amount == 0:
        return None
    if match.group(2) == "h":
        return timedelta(hours=amount)
    return timedelta(minutes=amount)


class VibeFlowSettings(BaseSettings):
    """Settings read from ``VF_*`` environment variables.

    ``VF_DATA_DIR`` relocates sessions.json/state.json, ``VF_IDLE_TIMEOUT``
    overrides the auto-end threshold, ``VF_LOG_LEVEL`` sets the loguru level.
    """

    model_config = SettingsConfigDict(
        env_prefix="VF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path | None = None
    idle_timeout: str | None = None
    """Unset means the surface default (4h for the CLI, 10m for the MCP server)."""

    log_level: str = "WARNING"

    def resolve_data_dir(self) -> Path:
        return self.data_dir.expanduser() if self.data_dir else VIBEFLOW_DIR


@dataclass(frozen=True)
class EngineConfig:
    """Thresholds and behaviour switches for one SessionEngine.

    The CLI and the long-lived MCP server share the same engine and
    classifier; they differ only in these defaults.
    """

    idle_threshold: timedelta = IDLE_THRESHOLD
    auto_end_after: timedelta | None = APP_AUTO_END_AFTER
    tick_interval: timedelta = TICK_INTERVAL
    activity_sample_interval: timedelta = ACTIVITY_SAMPLE_INTERVAL
    auto_start: bool = False
    resume_active: bool = False

    @classmethod
    def for_cli(cls, idle_timeout: str | None = None) -> EngineConfig:
        """One process per command: the registry is restored from disk."""
        auto_end = CLI_AUTO_END_AFTER if idle_timeout is None else parse_idle_timeout(idle_timeout)
        return cls(auto_end_after=auto_end, resume_active=True)

    @classmethod
    def for_app(cls, idle_timeout: str | None = None) -> EngineConfig:
        """Long-lived process: activity on an unknown handle starts a session."""
        auto_end = APP_AUTO_END_AFTER if idle_timeout is None else parse_idle_timeout(idle_timeout)
        return cls(auto_end_after=auto_end, auto_start=True)
