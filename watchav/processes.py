"""
Best-effort attribution of camera/microphone use to processes via lsof.
Nothing here is cached; every call lists open files again.
"""
from __future__ import annotations

import logging

from watchav.types import DeviceClass, ProcessInfo
from watchav.utils import CommandError, run_command

LSOF = "/usr/sbin/lsof"
LSOF_TIMEOUT = 10.0

CAMERA_PATTERNS = ("VDC", "AppleCamera", "iSight", "FaceTime")
MICROPHONE_PATTERNS = ("coreaudio",)
# Always hold CoreAudio open
SYSTEM_AUDIO_DAEMONS = frozenset({"coreaudiod", "audiod", "systemsoundserverd"})

logger = logging.getLogger(__name__)


def parse_lsof(output: str, patterns: tuple[str, ...]) -> list[ProcessInfo]:
    """
    Keep lsof lines mentioning any pattern (case-insensitive); first two
    columns are COMMAND and PID. One entry per PID, first seen wins.
    """
    needles = [p.lower() for p in patterns]
    seen: dict[int, ProcessInfo] = {}
    for line in output.splitlines():
        lower = line.lower()
        if not any(n in lower for n in needles):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[1])
        except ValueError:
            continue
        if pid not in seen:
            seen[pid] = ProcessInfo(pid=pid, name=parts[0])
    return list(seen.values())


class ProcessAttributor:
    async def _lsof(self) -> str:
        try:
            result = await run_command([LSOF], timeout=LSOF_TIMEOUT)
        except CommandError as e:
            logger.debug("lsof failed: %s", e)
            return ""
        return result.stdout

    async def camera_processes(self) -> list[ProcessInfo]:
        return parse_lsof(await self._lsof(), CAMERA_PATTERNS)

    async def microphone_processes(self) -> list[ProcessInfo]:
        found = parse_lsof(await self._lsof(), MICROPHONE_PATTERNS)
        return [p for p in found if p.name.lower() not in SYSTEM_AUDIO_DAEMONS]

    async def processes_for(self, device: DeviceClass) -> list[ProcessInfo]:
        if device == "camera":
            return await self.camera_processes()
        return await self.microphone_processes()
