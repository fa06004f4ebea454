"""
Per-detector activity reducer and lifecycle. Observations from the log stream
and from polling both go through update(); the last observation wins and a new
DeviceStatus is returned only when the value flips.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from watchav.types import DeviceStatus


class Lifecycle(Enum):
    UNSTARTED = "unstarted"
    RUNNING = "running"
    STOPPED = "stopped"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityState:
    """
    Holds the current active flag of one device class. Call update(observed, now)
    with every observation; returns the new DeviceStatus when it changed, else None.
    Timestamps never go backwards, even if the wall clock does.
    """

    def __init__(self, now: datetime | None = None) -> None:
        self._status = DeviceStatus(active=False, timestamp=now or utcnow())

    @property
    def status(self) -> DeviceStatus:
        return self._status

    @property
    def active(self) -> bool:
        return self._status.active

    def _stamp(self, now: datetime | None) -> datetime:
        if now is None:
            now = utcnow()
        return max(now, self._status.timestamp)

    def reset(self, active: bool, now: datetime | None = None) -> DeviceStatus:
        """Seed the value from an initial probe. Never counts as a change."""
        self._status = DeviceStatus(active=active, timestamp=self._stamp(now))
        return self._status

    def update(self, observed: bool, now: datetime | None = None) -> DeviceStatus | None:
        if observed == self._status.active:
            return None
        self._status = DeviceStatus(active=observed, timestamp=self._stamp(now))
        return self._status
