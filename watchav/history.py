"""
Recent activity transitions, kept in memory and appended to a log file.
"""
from __future__ import annotations

import logging
from collections import deque
from pathlib import Path

from watchav.state_machine import utcnow
from watchav.types import DeviceClass, HistoryEvent

DEFAULT_LOG_PATH = Path.home() / ".watchav" / "events.log"
MAX_HISTORY_SIZE = 10

logger = logging.getLogger(__name__)


def format_log_line(event: HistoryEvent) -> str:
    state = "ACTIVE" if event.active else "STOPPED"
    return f"[{event.timestamp.isoformat()}] {event.device.upper()} {state}\n"


class History:
    def __init__(self, path: str | Path | None = DEFAULT_LOG_PATH, max_events: int = MAX_HISTORY_SIZE) -> None:
        self.path = Path(path).expanduser() if path is not None else None
        self._events: deque[HistoryEvent] = deque(maxlen=max_events)

    def add(self, device: DeviceClass, active: bool) -> HistoryEvent:
        event = HistoryEvent(timestamp=utcnow(), device=device, active=active)
        self._events.appendleft(event)
        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a") as f:
                    f.write(format_log_line(event))
            except OSError as e:
                logger.debug("Could not write history to %s: %s", self.path, e)
        return event

    def events(self) -> list[HistoryEvent]:
        """Newest first."""
        return list(self._events)
