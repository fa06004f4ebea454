"""
Shared status types for camera/microphone monitoring.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

DeviceClass = Literal["camera", "microphone"]
DeviceType = Literal["audio", "video"]


class Architecture(Enum):
    ARM64 = "arm64"
    X86_64 = "x86_64"


@dataclass(frozen=True)
class DeviceStatus:
    """Last known activity of one device class."""
    active: bool
    timestamp: datetime


@dataclass(frozen=True)
class DeviceInfo:
    id: str
    name: str
    type: DeviceType
    active: bool
    timestamp: datetime


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str


@dataclass(frozen=True)
class InventoryEntry:
    id: str
    name: str


@dataclass(frozen=True)
class DeviceInventory:
    """Physical devices per class. Tuples so that == is structural."""
    audio_inputs: tuple[InventoryEntry, ...] = ()
    video_devices: tuple[InventoryEntry, ...] = ()


@dataclass(frozen=True)
class ProcessAttribution:
    camera: tuple[ProcessInfo, ...] = ()
    microphone: tuple[ProcessInfo, ...] = ()


@dataclass(frozen=True)
class MonitorStatus:
    camera: DeviceStatus
    microphone: DeviceStatus
    devices: tuple[DeviceInfo, ...] = field(default_factory=tuple)
    processes: ProcessAttribution | None = None


@dataclass(frozen=True)
class HistoryEvent:
    timestamp: datetime
    device: DeviceClass
    active: bool
