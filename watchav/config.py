"""
Load and validate config.yaml with defaults.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_POLL_INTERVAL_MS = 500
DEFAULT_DEVICE_REFRESH_SECONDS = 5.0
DEFAULT_HISTORY_PATH = "~/.watchav/events.log"
DEFAULT_MAX_EVENTS = 10


@dataclass
class Config:
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    device_refresh_seconds: float = DEFAULT_DEVICE_REFRESH_SECONDS
    show_process: bool = False
    json_output: bool = False
    notify: bool = False
    history_enabled: bool = True
    history_path: Path = Path(DEFAULT_HISTORY_PATH).expanduser()
    history_max_events: int = DEFAULT_MAX_EVENTS

    @classmethod
    def load(cls, path: str | Path | None = None) -> Config:
        """
        Load from an explicit path (must exist), or from the first config.yaml
        found in the default locations, or fall back to built-in defaults.
        """
        if path is None:
            path = _default_config_path()
            if path is None:
                return cls()
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        monitor = data.get("monitor") or {}
        output = data.get("output") or {}
        notifications = data.get("notifications") or {}
        history = data.get("history") or {}

        return cls(
            poll_interval_ms=_positive_int(monitor, "poll_interval_ms", DEFAULT_POLL_INTERVAL_MS),
            device_refresh_seconds=_positive_number(
                monitor, "device_refresh_seconds", DEFAULT_DEVICE_REFRESH_SECONDS
            ),
            show_process=_flag(monitor, "show_process", False),
            json_output=_flag(output, "json", False),
            notify=_flag(notifications, "enabled", False),
            history_enabled=_flag(history, "enabled", True),
            history_path=Path(history.get("path") or DEFAULT_HISTORY_PATH).expanduser(),
            history_max_events=_positive_int(history, "max_events", DEFAULT_MAX_EVENTS),
        )

    def override(self, **values: Any) -> Config:
        """Return a copy with CLI overrides applied; None values are ignored."""
        changes = {k: v for k, v in values.items() if v is not None}
        if "poll_interval_ms" in changes:
            _positive_int(changes, "poll_interval_ms", DEFAULT_POLL_INTERVAL_MS)
        return dataclasses.replace(self, **changes)


def _positive_int(section: dict[str, Any], key: str, default: int) -> int:
    if key not in section or section[key] is None:
        return default
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{key} must be a positive integer, got {value!r}")
    return value


def _positive_number(section: dict[str, Any], key: str, default: float) -> float:
    if key not in section or section[key] is None:
        return default
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{key} must be a positive number, got {value!r}")
    return float(value)


def _flag(section: dict[str, Any], key: str, default: bool) -> bool:
    if key not in section or section[key] is None:
        return default
    value = section[key]
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be true or false, got {value!r}")
    return value


def _default_config_path() -> Path | None:
    for candidate in (Path.cwd(), Path(__file__).resolve().parent.parent):
        p = candidate / "config.yaml"
        if p.is_file():
            return p
    return None
