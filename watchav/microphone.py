"""
Microphone detection. Apple silicon: the Digital Mic entry under
AppleExternalSecondaryAudio plus kernel "Digital Mic" log lines. Intel: the
HDA input engine state counter, polling only.
"""
from __future__ import annotations

import dataclasses
import logging
import re

from watchav.detector import (
    DEFAULT_POLL_INTERVAL_MS,
    DetectionVariant,
    Detector,
    LogStreamError,
    Probe,
    ioreg,
)
from watchav.types import Architecture

DIGITAL_MIC_PREDICATE = 'process == "kernel" AND eventMessage CONTAINS "Digital Mic"'
DIGITAL_MIC_WINDOW = 30
ENGINE_STATE_RE = re.compile(r'IOAudioEngineState"?\s*=\s*(\d+)')

logger = logging.getLogger(__name__)


def digital_mic_running(output: str) -> bool:
    """Look for 'is running = Yes' within the lines following 'Digital Mic'."""
    lines = output.splitlines()
    for i, line in enumerate(lines):
        if "Digital Mic" not in line:
            continue
        for nested in lines[i + 1 : i + 1 + DIGITAL_MIC_WINDOW]:
            if "is running" in nested and "= Yes" in nested:
                return True
    return False


def audio_engine_running(output: str) -> bool:
    match = ENGINE_STATE_RE.search(output)
    return match is not None and int(match.group(1)) == 1


def parse_digital_mic(line: str) -> bool | None:
    if "Digital Mic: streaming audio" in line:
        return True
    if "Digital Mic: off" in line:
        return False
    return None


class DigitalMicProbe:
    async def probe(self) -> bool:
        return digital_mic_running(
            await ioreg("-r", "-d1", "-c", "AppleExternalSecondaryAudio")
        )


class AudioEngineProbe:
    async def probe(self) -> bool:
        return audio_engine_running(
            await ioreg("-c", "AppleHDAEngineInput", "-k", "IOAudioEngineState")
        )


def microphone_variant(architecture: Architecture) -> DetectionVariant:
    # One strategy per run, unlike the camera's OR of built-in and USB.
    if architecture is Architecture.ARM64:
        return DetectionVariant(
            probe=DigitalMicProbe(),
            predicate=DIGITAL_MIC_PREDICATE,
            parse_line=parse_digital_mic,
        )
    return DetectionVariant(probe=AudioEngineProbe())


class MicrophoneDetector(Detector):
    """
    The log stream only speeds things up here. If it cannot be started the
    detector keeps polling without reporting an error.
    """

    name = "microphone"

    def __init__(
        self,
        architecture: Architecture,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        *,
        probe: Probe | None = None,
    ) -> None:
        self.architecture = architecture
        variant = microphone_variant(architecture)
        if probe is not None:
            variant = dataclasses.replace(variant, probe=probe)
        super().__init__(variant, poll_interval_ms)

    def _stream_unavailable(self, error: LogStreamError) -> None:
        self.degraded = True
        logger.warning("Microphone log stream unavailable (%s); polling only", error)
