"""
Device inventory from system_profiler. Never returns an empty class: when the
profiler fails or finds nothing, a single built-in entry stands in.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from watchav.types import DeviceInventory, InventoryEntry
from watchav.utils import CommandError, run_command

SYSTEM_PROFILER = "/usr/sbin/system_profiler"
PROFILER_TIMEOUT = 10.0

FALLBACK_MICROPHONE = InventoryEntry(id="built-in-microphone", name="Built-in Microphone")
FALLBACK_CAMERA = InventoryEntry(id="built-in-camera", name="Built-in Camera")

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    return re.sub(r"\s+", "-", name.lower())


async def _profile(data_type: str) -> Any:
    try:
        result = await run_command([SYSTEM_PROFILER, data_type, "-json"], timeout=PROFILER_TIMEOUT)
    except CommandError as e:
        logger.debug("system_profiler %s failed: %s", data_type, e)
        return None
    if result.returncode != 0 or not result.stdout.strip():
        return None
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        logger.debug("system_profiler %s returned invalid JSON: %s", data_type, e)
        return None


def _items(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def parse_audio_inputs(data: Any) -> list[InventoryEntry]:
    if not isinstance(data, dict):
        return []
    sections = _items(data.get("SPAudioDataType"))
    items = _items(sections[0].get("_items")) if sections and isinstance(sections[0], dict) else []
    devices: list[InventoryEntry] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("_name")
        has_input = item.get("coreaudio_input_source") or item.get("coreaudio_default_audio_input_device")
        if isinstance(name, str) and name and has_input:
            devices.append(InventoryEntry(id=slugify(name), name=name))
    return devices


def parse_video_devices(data: Any) -> list[InventoryEntry]:
    if not isinstance(data, dict):
        return []
    devices: list[InventoryEntry] = []
    for item in _items(data.get("SPCameraDataType")):
        if not isinstance(item, dict):
            continue
        name = item.get("_name")
        if isinstance(name, str) and name:
            model_id = item.get("spcamera_model-id")
            if not isinstance(model_id, str) or not model_id:
                model_id = name
            devices.append(InventoryEntry(id=slugify(model_id), name=name))
    return devices


async def discover_devices() -> DeviceInventory:
    audio_data, camera_data = await asyncio.gather(
        _profile("SPAudioDataType"),
        _profile("SPCameraDataType"),
    )
    audio = parse_audio_inputs(audio_data) or [FALLBACK_MICROPHONE]
    video = parse_video_devices(camera_data) or [FALLBACK_CAMERA]
    return DeviceInventory(audio_inputs=tuple(audio), video_devices=tuple(video))
