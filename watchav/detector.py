"""
Detector core shared by the camera and microphone detectors.

Each detector owns one ActivityState fed by two producers: an optional
`log stream` subscription (fast, unreliable) and a periodic probe of ioreg
state (slow, authoritative). Both run as tasks on the event loop, so the
reducer is only ever touched from the loop thread. Observations that arrive
after stop() (for example a poll that was in flight) are discarded.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from watchav.state_machine import ActivityState, Lifecycle
from watchav.types import DeviceStatus
from watchav.utils import (
    FILTERING_PREFIX,
    CommandError,
    open_log_stream,
    read_lines,
    run_command,
    terminate,
)

DEFAULT_POLL_INTERVAL_MS = 500
IOREG = "/usr/sbin/ioreg"
IOREG_TIMEOUT = 5.0

ChangeCallback = Callable[[DeviceStatus], None]
ErrorCallback = Callable[[Exception], None]
LineParser = Callable[[str], "bool | None"]

logger = logging.getLogger(__name__)


class ProbeError(Exception):
    """A probe could not produce an answer (tool missing, spawn failure, timeout)."""


class LogStreamError(Exception):
    """The log stream could not be started or exited abnormally."""


class Probe(Protocol):
    async def probe(self) -> bool:
        """Return True when the device class is in use. Raises ProbeError."""
        ...


@dataclass(frozen=True)
class DetectionVariant:
    """
    The architecture-specific pieces of a detector: how to poll, and (when the
    platform logs something useful) what to stream and how to read it.
    """
    probe: Probe
    predicate: str | None = None
    parse_line: LineParser | None = None


async def ioreg(*args: str) -> str:
    """Run ioreg with the given arguments. Empty output means nothing matched."""
    try:
        result = await run_command([IOREG, *args], timeout=IOREG_TIMEOUT)
    except CommandError as e:
        raise ProbeError(str(e)) from e
    return result.stdout


class Detector:
    """
    Base detector. Subclasses select a DetectionVariant for their architecture
    at construction; it never changes afterwards.
    """

    name = "device"

    def __init__(
        self,
        variant: DetectionVariant,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        if poll_interval_ms <= 0:
            raise ValueError(f"poll_interval_ms must be positive, got {poll_interval_ms!r}")
        self.variant = variant
        self._probe = variant.probe
        self.poll_interval = poll_interval_ms / 1000.0
        self.predicate = variant.predicate
        self._parse_line = variant.parse_line
        self._state = ActivityState()
        self._lifecycle = Lifecycle.UNSTARTED
        self._subscribers: list[tuple[ChangeCallback, ErrorCallback | None]] = []
        self._proc: asyncio.subprocess.Process | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._poll_failing = False
        self.degraded = False

    @property
    def probe(self) -> Probe:
        return self._probe

    @property
    def lifecycle(self) -> Lifecycle:
        return self._lifecycle

    def status(self) -> DeviceStatus:
        return self._state.status

    def subscribe(
        self,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Register callbacks; returns a function that removes them again."""
        entry = (on_change, on_error)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            for i, existing in enumerate(self._subscribers):
                if existing is entry:
                    del self._subscribers[i]
                    return

        return unsubscribe

    async def start(self) -> None:
        """
        Probe once for the initial value, then start the log stream (if this
        variant has one) and the poll loop. May only be called once.
        """
        if self._lifecycle is not Lifecycle.UNSTARTED:
            raise RuntimeError(f"{self.name} detector already started")
        self._lifecycle = Lifecycle.RUNNING
        try:
            initial = await self._probe.probe()
        except ProbeError as e:
            logger.warning("Initial %s probe failed: %s", self.name, e)
            self._emit_error(e)
            self._poll_failing = True
            initial = False
        if self._lifecycle is not Lifecycle.RUNNING:
            # stop() ran while the initial probe was in flight
            return
        self._state.reset(initial)
        logger.debug("%s initial state: %s", self.name, "active" if initial else "inactive")
        if self.predicate is not None:
            self._stream_task = asyncio.create_task(self._stream_loop())
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if self._lifecycle is Lifecycle.STOPPED:
            return
        self._lifecycle = Lifecycle.STOPPED
        tasks = [t for t in (self._poll_task, self._stream_task) if t is not None]
        self._poll_task = None
        self._stream_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._proc is not None:
            proc, self._proc = self._proc, None
            await terminate(proc)
        logger.debug("%s detector stopped", self.name)

    def observe(self, active: bool, source: str = "external") -> DeviceStatus | None:
        """Feed one observation into the reducer. Publishes only on a flip."""
        if self._lifecycle is not Lifecycle.RUNNING:
            logger.debug("Dropping %s observation from %s: detector not running", self.name, source)
            return None
        status = self._state.update(active)
        if status is not None:
            logger.info("%s %s (via %s)", self.name, "active" if active else "inactive", source)
            self._emit_change(status)
        return status

    def handle_line(self, line: str) -> DeviceStatus | None:
        if self._parse_line is None or FILTERING_PREFIX in line:
            return None
        observed = self._parse_line(line)
        if observed is None:
            return None
        return self.observe(observed, "log stream")

    async def poll_once(self) -> DeviceStatus | None:
        """
        Run the probe once. A failed probe leaves the state untouched and is
        reported once per run of consecutive failures.
        """
        try:
            observed = await self._probe.probe()
        except ProbeError as e:
            if not self._poll_failing:
                self._poll_failing = True
                logger.warning("%s poll failed: %s", self.name, e)
                self._emit_error(e)
            else:
                logger.debug("%s poll still failing: %s", self.name, e)
            return None
        if self._poll_failing:
            self._poll_failing = False
            logger.info("%s poll recovered", self.name)
        return self.observe(observed, "poll")

    async def _poll_loop(self) -> None:
        # One task per detector: a poll never starts before the previous one returned.
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("%s poll error: %s", self.name, e)
                self._emit_error(e)

    async def _stream_loop(self) -> None:
        assert self.predicate is not None
        try:
            proc = await open_log_stream(self.predicate)
        except OSError as e:
            self._stream_unavailable(LogStreamError(f"Could not start log stream: {e}"))
            return
        self._proc = proc
        if proc.stdout is None:
            self._stream_unavailable(LogStreamError("Failed to capture stdout from log stream"))
            return
        async for line in read_lines(proc.stdout):
            self.handle_line(line)
        code = await proc.wait()
        if code != 0 and self._lifecycle is Lifecycle.RUNNING:
            self.degraded = True
            self._emit_error(LogStreamError(f"Log stream exited with code {code}"))

    def _stream_unavailable(self, error: LogStreamError) -> None:
        """Called when the subscription cannot be set up. Polling keeps running."""
        self.degraded = True
        logger.warning("%s: %s", self.name, error)
        self._emit_error(error)

    def _emit_change(self, status: DeviceStatus) -> None:
        if self._lifecycle is Lifecycle.STOPPED:
            return
        for on_change, _ in list(self._subscribers):
            try:
                on_change(status)
            except Exception:
                logger.exception("%s change subscriber failed", self.name)

    def _emit_error(self, error: Exception) -> None:
        if self._lifecycle is Lifecycle.STOPPED:
            return
        for _, on_error in list(self._subscribers):
            if on_error is None:
                continue
            try:
                on_error(error)
            except Exception:
                logger.exception("%s error subscriber failed", self.name)
