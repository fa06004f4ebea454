"""
Camera detection. Built-in cameras on Apple silicon expose a streaming flag in
the IORegistry and log Streaming state changes from the kernel; USB (UVC)
cameras are found by their video-streaming interfaces holding buffers.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
import subprocess

from watchav.detector import (
    DEFAULT_POLL_INTERVAL_MS,
    IOREG,
    DetectionVariant,
    Detector,
    Probe,
    ProbeError,
    ioreg,
)
from watchav.types import Architecture

# USB Video Class: interface class 14, subclass 2 is Video Streaming
USB_CLASS_VIDEO = 14
USB_SUBCLASS_VIDEO_STREAMING = 2

DEFAULT_CAMERA_DRIVER = "AppleH13CamIn"
DRIVER_RE = re.compile(r"AppleH\d*CamIn")
STREAMING_STATE_RE = re.compile(r"name:\s*Streaming,\s*state:\s*(\d+)")
NUMBER_RE = re.compile(r"=\s*(\d+)")
BUFFER_BYTES_RE = re.compile(r'"Bytes"\s*=\s*(\d+)')
ON_RE = re.compile(r"\b(on|start)\b")
OFF_RE = re.compile(r"\b(off|stop)\b")

UVC_PREDICATE = (
    'subsystem CONTAINS "com.apple.UVCExtension" AND '
    'composedMessage CONTAINS "Post PowerLog"'
)

logger = logging.getLogger(__name__)


def detect_camera_driver() -> str:
    """Find the AppleH<N>CamIn driver class name; falls back to AppleH13CamIn."""
    try:
        out = subprocess.run(
            [IOREG, "-l"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Camera driver lookup failed: %s", e)
        return DEFAULT_CAMERA_DRIVER
    match = DRIVER_RE.search(out.stdout or "")
    return match.group(0) if match else DEFAULT_CAMERA_DRIVER


def kernel_predicate(driver: str) -> str:
    return (
        f'process == "kernel" AND eventMessage CONTAINS "{driver}" '
        'AND eventMessage CONTAINS "Streaming"'
    )


def parse_streaming_state(line: str) -> bool | None:
    """Kernel camera log line, e.g. '... name: Streaming, state: 1'."""
    match = STREAMING_STATE_RE.search(line)
    if not match:
        return None
    return int(match.group(1)) != 0


def parse_powerlog(line: str) -> bool | None:
    """UVC extension 'Post PowerLog' line with an on/start or off/stop token."""
    lower = line.lower()
    if "post powerlog" not in lower:
        return None
    if ON_RE.search(lower):
        return True
    if OFF_RE.search(lower):
        return False
    return None


def front_camera_streaming(output: str) -> bool:
    # The driver class can list several entries; any one streaming counts.
    return any("FrontCameraStreaming" in line and "= Yes" in line for line in output.splitlines())


def usb_camera_streaming(output: str) -> bool:
    """
    Walk `ioreg -r -c IOUSBHostInterface -l` output. Class and subclass
    precede the buffer allocation entry within each interface.
    """
    interface_class = 0
    interface_subclass = 0
    for line in output.splitlines():
        if "bInterfaceClass" in line:
            match = NUMBER_RE.search(line)
            if match:
                interface_class = int(match.group(1))
        elif "bInterfaceSubClass" in line:
            match = NUMBER_RE.search(line)
            if match:
                interface_subclass = int(match.group(1))
        elif "UsbUserClientBufferAllocations" in line:
            match = BUFFER_BYTES_RE.search(line)
            if (
                match
                and interface_class == USB_CLASS_VIDEO
                and interface_subclass == USB_SUBCLASS_VIDEO_STREAMING
                and int(match.group(1)) > 0
            ):
                return True
            interface_class = 0
            interface_subclass = 0
    return False


class BuiltInCameraProbe:
    def __init__(self, driver: str) -> None:
        self.driver = driver

    async def probe(self) -> bool:
        return front_camera_streaming(await ioreg("-r", "-c", self.driver))


class UsbCameraProbe:
    async def probe(self) -> bool:
        return usb_camera_streaming(await ioreg("-r", "-c", "IOUSBHostInterface", "-l"))


class AnyActiveProbe:
    """
    Active when any of the probes reports active. Only raises when nothing
    reported active and at least one probe failed.
    """

    def __init__(self, *probes: Probe) -> None:
        self.probes = probes

    async def probe(self) -> bool:
        results = await asyncio.gather(
            *(p.probe() for p in self.probes),
            return_exceptions=True,
        )
        failure: ProbeError | None = None
        for result in results:
            if isinstance(result, ProbeError):
                failure = failure or result
            elif isinstance(result, BaseException):
                raise result
            elif result:
                return True
        if failure is not None:
            raise failure
        return False


def camera_variant(architecture: Architecture, driver: str | None = None) -> DetectionVariant:
    """
    Apple silicon: built-in OR USB camera, kernel Streaming log lines.
    Intel: USB camera only, UVC extension PowerLog lines.
    """
    if architecture is Architecture.ARM64:
        driver = driver or detect_camera_driver()
        return DetectionVariant(
            probe=AnyActiveProbe(BuiltInCameraProbe(driver), UsbCameraProbe()),
            predicate=kernel_predicate(driver),
            parse_line=parse_streaming_state,
        )
    return DetectionVariant(
        probe=UsbCameraProbe(),
        predicate=UVC_PREDICATE,
        parse_line=parse_powerlog,
    )


class CameraDetector(Detector):
    name = "camera"

    def __init__(
        self,
        architecture: Architecture,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        *,
        driver: str | None = None,
        probe: Probe | None = None,
    ) -> None:
        self.architecture = architecture
        variant = camera_variant(architecture, driver)
        if probe is not None:
            variant = dataclasses.replace(variant, probe=probe)
        super().__init__(variant, poll_interval_ms)
