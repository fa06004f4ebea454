"""
Monitor aggregator: owns the camera and microphone detectors and the device
inventory, and publishes a fresh MonitorStatus on every change.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable

from watchav.camera import CameraDetector
from watchav.detector import DEFAULT_POLL_INTERVAL_MS, Detector
from watchav.devices import discover_devices
from watchav.microphone import MicrophoneDetector
from watchav.processes import ProcessAttributor
from watchav.state_machine import Lifecycle, utcnow
from watchav.types import (
    Architecture,
    DeviceClass,
    DeviceInfo,
    DeviceInventory,
    DeviceStatus,
    MonitorStatus,
    ProcessAttribution,
    ProcessInfo,
)

DEFAULT_DEVICE_REFRESH_SECONDS = 5.0
INITIAL_PUBLISH_DELAY = 0.1

StatusCallback = Callable[[MonitorStatus], None]
ErrorCallback = Callable[[Exception], None]
InventoryFetcher = Callable[[], Awaitable[DeviceInventory]]

logger = logging.getLogger(__name__)


class DeviceMonitor:
    """
    Publishes one snapshot per detector change (no coalescing), one shortly
    after start, and one per inventory refresh that actually changed something.
    Snapshots are built when the change happens and delivered in order by a
    single publisher task, which also fills in process attribution.
    """

    def __init__(
        self,
        architecture: Architecture,
        *,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        show_process: bool = False,
        device_refresh_seconds: float = DEFAULT_DEVICE_REFRESH_SECONDS,
        initial_publish_delay: float = INITIAL_PUBLISH_DELAY,
        camera: Detector | None = None,
        microphone: Detector | None = None,
        inventory: InventoryFetcher = discover_devices,
        attributor: ProcessAttributor | None = None,
    ) -> None:
        self.camera = camera or CameraDetector(architecture)
        self.microphone = microphone or MicrophoneDetector(architecture, poll_interval_ms)
        self.show_process = show_process
        self.device_refresh_seconds = device_refresh_seconds
        self.initial_publish_delay = initial_publish_delay
        self._fetch_inventory = inventory
        self._attributor = attributor or ProcessAttributor()

        now = utcnow()
        self._camera_status = DeviceStatus(active=False, timestamp=now)
        self._microphone_status = DeviceStatus(active=False, timestamp=now)
        self._inventory = DeviceInventory()

        self._lifecycle = Lifecycle.UNSTARTED
        self._subscribers: list[tuple[StatusCallback, ErrorCallback | None]] = []
        self._detector_unsubscribes: list[Callable[[], None]] = []
        self._queue: asyncio.Queue[MonitorStatus] = asyncio.Queue()
        self._publisher_task: asyncio.Task[None] | None = None
        self._initial_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def inventory(self) -> DeviceInventory:
        return self._inventory

    def subscribe(
        self,
        on_status: StatusCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        entry = (on_status, on_error)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            for i, existing in enumerate(self._subscribers):
                if existing is entry:
                    del self._subscribers[i]
                    return

        return unsubscribe

    async def start(self) -> None:
        if self._lifecycle is not Lifecycle.UNSTARTED:
            raise RuntimeError("Monitor already started")
        self._lifecycle = Lifecycle.RUNNING
        self._inventory = await self._fetch_inventory()
        self._detector_unsubscribes = [
            self.camera.subscribe(self._on_camera_change, self._on_detector_error),
            self.microphone.subscribe(self._on_microphone_change, self._on_detector_error),
        ]
        self._publisher_task = asyncio.create_task(self._publisher())
        await asyncio.gather(self.camera.start(), self.microphone.start())
        if self._lifecycle is not Lifecycle.RUNNING:
            return
        self._camera_status = self.camera.status()
        self._microphone_status = self.microphone.status()
        self._initial_task = asyncio.create_task(self._initial_publish())
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.debug("Monitor started")

    async def stop(self) -> None:
        if self._lifecycle is Lifecycle.STOPPED:
            return
        self._lifecycle = Lifecycle.STOPPED
        for unsubscribe in self._detector_unsubscribes:
            unsubscribe()
        self._detector_unsubscribes = []
        tasks = [
            t for t in (self._refresh_task, self._initial_task, self._publisher_task)
            if t is not None
        ]
        self._refresh_task = self._initial_task = self._publisher_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.gather(self.camera.stop(), self.microphone.stop())
        logger.debug("Monitor stopped")

    def current_status(self) -> MonitorStatus:
        return MonitorStatus(
            camera=self._camera_status,
            microphone=self._microphone_status,
            devices=self._build_device_list(),
        )

    async def refresh_devices(self) -> bool:
        """Re-read the inventory; publish only if it differs from the last one."""
        inventory = await self._fetch_inventory()
        if inventory == self._inventory:
            return False
        self._inventory = inventory
        logger.info(
            "Device inventory changed: %d audio input(s), %d camera(s)",
            len(inventory.audio_inputs),
            len(inventory.video_devices),
        )
        self._request_publish()
        return True

    def _build_device_list(self) -> tuple[DeviceInfo, ...]:
        devices = [
            DeviceInfo(
                id=video.id,
                name=video.name,
                type="video",
                active=self._camera_status.active,
                timestamp=self._camera_status.timestamp,
            )
            for video in self._inventory.video_devices
        ]
        devices.extend(
            DeviceInfo(
                id=audio.id,
                name=audio.name,
                type="audio",
                active=self._microphone_status.active,
                timestamp=self._microphone_status.timestamp,
            )
            for audio in self._inventory.audio_inputs
        )
        return tuple(devices)

    def _on_camera_change(self, status: DeviceStatus) -> None:
        self._camera_status = status
        self._request_publish()

    def _on_microphone_change(self, status: DeviceStatus) -> None:
        self._microphone_status = status
        self._request_publish()

    def _on_detector_error(self, error: Exception) -> None:
        if self._lifecycle is not Lifecycle.RUNNING:
            return
        for _, on_error in list(self._subscribers):
            if on_error is None:
                continue
            try:
                on_error(error)
            except Exception:
                logger.exception("Error subscriber failed")

    def _request_publish(self) -> None:
        if self._lifecycle is Lifecycle.RUNNING:
            self._queue.put_nowait(self.current_status())

    async def _initial_publish(self) -> None:
        await asyncio.sleep(self.initial_publish_delay)
        self._request_publish()

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.device_refresh_seconds)
            try:
                await self.refresh_devices()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Device refresh failed: %s", e)

    async def _publisher(self) -> None:
        while True:
            status = await self._queue.get()
            try:
                if self.show_process:
                    status = dataclasses.replace(status, processes=await self._attribute(status))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Process attribution failed: %s", e)
            self._deliver(status)

    async def _attribute(self, status: MonitorStatus) -> ProcessAttribution:
        camera, microphone = await asyncio.gather(
            self._processes_if_active("camera", status.camera.active),
            self._processes_if_active("microphone", status.microphone.active),
        )
        return ProcessAttribution(camera=tuple(camera), microphone=tuple(microphone))

    async def _processes_if_active(self, device: DeviceClass, active: bool) -> list[ProcessInfo]:
        if not active:
            return []
        return await self._attributor.processes_for(device)

    def _deliver(self, status: MonitorStatus) -> None:
        if self._lifecycle is not Lifecycle.RUNNING:
            return
        for on_status, _ in list(self._subscribers):
            try:
                on_status(status)
            except Exception:
                logger.exception("Status subscriber failed")
