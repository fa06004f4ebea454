"""
Terminal and JSON rendering of MonitorStatus snapshots.
"""
from __future__ import annotations

import json
from typing import Any

from watchav.types import DeviceStatus, MonitorStatus, ProcessInfo

RESET = "\x1b[0m"
RED = "\x1b[31m"
BOLD = "\x1b[1m"
DIM = "\x1b[2m"
BG_RED = "\x1b[41m"
BG_GRAY = "\x1b[100m"
WHITE = "\x1b[97m"
CLEAR_SCREEN = "\x1b[2J\x1b[H"
CURSOR_UP_CLEAR = "\x1b[1A\x1b[2K"

VIDEO_SYMBOL = "\U0001F4F9"
AUDIO_SYMBOL = "\U0001F399\uFE0F"


def _device_status_dict(status: DeviceStatus) -> dict[str, Any]:
    return {"active": status.active, "timestamp": status.timestamp.isoformat()}


def _processes_list(processes: tuple[ProcessInfo, ...]) -> list[dict[str, Any]]:
    return [{"pid": p.pid, "name": p.name} for p in processes]


def format_json(status: MonitorStatus) -> str:
    data: dict[str, Any] = {
        "camera": _device_status_dict(status.camera),
        "microphone": _device_status_dict(status.microphone),
        "devices": [
            {
                "id": d.id,
                "name": d.name,
                "type": d.type,
                "active": d.active,
                "timestamp": d.timestamp.isoformat(),
            }
            for d in status.devices
        ],
    }
    if status.processes is not None:
        data["processes"] = {
            "camera": _processes_list(status.processes.camera),
            "microphone": _processes_list(status.processes.microphone),
        }
    return json.dumps(data)


def format_status_card(label: str, symbol: str, active: bool) -> str:
    if active:
        return f"{BG_RED}{WHITE}{BOLD} {symbol}  {label}: ACTIVE {RESET}"
    return f"{BG_GRAY}{WHITE} {symbol}  {label}: idle   {RESET}"


def format_human(status: MonitorStatus) -> str:
    lines = [
        format_status_card("Video", VIDEO_SYMBOL, status.camera.active)
        + "    "
        + format_status_card("Audio", AUDIO_SYMBOL, status.microphone.active),
        "",
        f"{DIM}─── Devices ───{RESET}",
        "",
    ]
    for device in status.devices:
        symbol = VIDEO_SYMBOL if device.type == "video" else AUDIO_SYMBOL
        lines.append(f"{DIM}  {symbol}  {device.name}{RESET}")
    if status.processes is not None:
        lines += ["", f"{DIM}─── Processes ───{RESET}", ""]
        for label, procs in (("Camera", status.processes.camera), ("Microphone", status.processes.microphone)):
            names = ", ".join(f"{p.name} ({p.pid})" for p in procs) or "-"
            lines.append(f"  {label}: {names}")
    return "\n".join(lines)


def format_status(status: MonitorStatus, json_output: bool) -> str:
    return format_json(status) if json_output else format_human(status)


def format_error(message: str, json_output: bool = False) -> str:
    if json_output:
        return json.dumps({"error": message})
    return f"{RED}Error:{RESET} {message}"


def header() -> str:
    return (
        f"{BOLD}watchav{RESET} - macOS Camera/Microphone Monitor\n"
        f"{DIM}Press Ctrl+C to exit{RESET}\n"
    )


def info(message: str) -> str:
    return f"{DIM}{message}{RESET}"


def redraw(previous: str, current: str) -> str:
    """Escape sequence that erases `previous` from the terminal, followed by `current`."""
    erase = CURSOR_UP_CLEAR * len(previous.split("\n")) if previous else ""
    return erase + current
