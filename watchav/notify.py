"""
macOS desktop notifications via osascript.
"""
from __future__ import annotations

import logging

from watchav.output import AUDIO_SYMBOL, VIDEO_SYMBOL
from watchav.types import DeviceClass
from watchav.utils import CommandError, run_command

OSASCRIPT = "/usr/bin/osascript"

DEVICE_LABELS: dict[str, tuple[str, str]] = {
    "camera": (VIDEO_SYMBOL, "Camera"),
    "microphone": (AUDIO_SYMBOL, "Microphone"),
}

logger = logging.getLogger(__name__)


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def notification_script(title: str, message: str) -> str:
    return (
        f'display notification "{_escape(message)}" '
        f'with title "{_escape(title)}" sound name "default"'
    )


async def send_notification(title: str, message: str) -> None:
    try:
        result = await run_command([OSASCRIPT, "-e", notification_script(title, message)], timeout=5.0)
    except CommandError as e:
        logger.debug("Notification failed: %s", e)
        return
    if result.returncode != 0:
        logger.debug("osascript exited with %s", result.returncode)


def device_change_message(device: DeviceClass, active: bool) -> str:
    icon, name = DEVICE_LABELS[device]
    return f"{icon} {name} is now active" if active else f"{icon} {name} stopped"


async def notify_device_change(device: DeviceClass, active: bool) -> None:
    await send_notification("watchav", device_change_message(device, active))
