"""Camera detector — log line parsing, ioreg parsing, and detector behaviour."""
import asyncio
import subprocess
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import FakeLogProcess, FakeProbe, settle
from watchav.camera import (
    DEFAULT_CAMERA_DRIVER,
    UVC_PREDICATE,
    AnyActiveProbe,
    BuiltInCameraProbe,
    CameraDetector,
    UsbCameraProbe,
    camera_variant,
    detect_camera_driver,
    front_camera_streaming,
    parse_powerlog,
    parse_streaming_state,
    usb_camera_streaming,
)
from watchav.detector import LogStreamError, ProbeError
from watchav.state_machine import Lifecycle
from watchav.types import Architecture
from watchav.utils import CommandError, CommandResult

STREAM_ON = "2026-01-01 12:00:00.000 Df kernel[0:1a2b] AppleH13CamIn::power_on_hardware name: Streaming, state: 1"
STREAM_OFF = "2026-01-01 12:00:05.000 Df kernel[0:1a2b] AppleH13CamIn::power_off_hardware name: Streaming, state: 0"
FILTERING = 'Filtering the log data using "process == \\"kernel\\""'

USB_ACTIVE = """\
+-o IOUSBHostInterface@0  <class IOUSBHostInterface>
    {
      "bInterfaceClass" = 14
      "bInterfaceSubClass" = 1
      "UsbUserClientBufferAllocations" = {"Bytes"=0,"Count"=0}
    }
+-o IOUSBHostInterface@1  <class IOUSBHostInterface>
    {
      "bInterfaceClass" = 14
      "bInterfaceSubClass" = 2
      "UsbUserClientBufferAllocations" = {"Bytes"=614400,"Count"=4}
    }
"""

USB_IDLE = USB_ACTIVE.replace('"Bytes"=614400', '"Bytes"=0')


def make_detector(probe: FakeProbe, architecture: Architecture = Architecture.ARM64) -> CameraDetector:
    # Long poll interval so only explicit poll_once() calls poll
    return CameraDetector(architecture, poll_interval_ms=60_000, driver="AppleH13CamIn", probe=probe)


# --- line parsing ---

def test_parse_streaming_state_on_off() -> None:
    assert parse_streaming_state(STREAM_ON) is True
    assert parse_streaming_state(STREAM_OFF) is False


def test_parse_streaming_state_nonzero_counter_is_active() -> None:
    assert parse_streaming_state("name: Streaming, state: 2") is True


def test_parse_streaming_state_unrelated_line() -> None:
    assert parse_streaming_state("AppleH13CamIn::setPowerState 1") is None
    assert parse_streaming_state("") is None


def test_parse_powerlog_tokens() -> None:
    assert parse_powerlog('Post PowerLog { "VDCAssistant_Power_State" = On; }') is True
    assert parse_powerlog('Post PowerLog { "VDCAssistant_Power_State" = Off; }') is False
    assert parse_powerlog("post powerlog: stream start") is True
    assert parse_powerlog("post powerlog: stream stop") is False


def test_parse_powerlog_ignores_other_lines() -> None:
    assert parse_powerlog("UVCExtension: device on") is None
    assert parse_powerlog("Post PowerLog { }") is None


# --- ioreg parsing ---

def test_front_camera_streaming() -> None:
    assert front_camera_streaming('  |   "FrontCameraStreaming" = Yes') is True
    assert front_camera_streaming('  |   "FrontCameraStreaming" = No') is False
    assert front_camera_streaming("") is False


def test_front_camera_streaming_any_entry() -> None:
    output = '  |   "FrontCameraStreaming" = No\n  |   "FrontCameraStreaming" = Yes\n'
    assert front_camera_streaming(output) is True


def test_usb_camera_streaming_active() -> None:
    assert usb_camera_streaming(USB_ACTIVE) is True


def test_usb_camera_streaming_no_buffers() -> None:
    assert usb_camera_streaming(USB_IDLE) is False


def test_usb_camera_streaming_requires_streaming_subclass() -> None:
    output = USB_ACTIVE.replace('"bInterfaceSubClass" = 2', '"bInterfaceSubClass" = 1')
    assert usb_camera_streaming(output) is False


def test_usb_camera_streaming_resets_between_interfaces() -> None:
    # Video class on the first interface must not leak into an audio interface
    output = """\
      "bInterfaceClass" = 14
      "bInterfaceSubClass" = 2
      "UsbUserClientBufferAllocations" = {"Bytes"=0,"Count"=0}
      "bInterfaceClass" = 1
      "UsbUserClientBufferAllocations" = {"Bytes"=4096,"Count"=1}
"""
    assert usb_camera_streaming(output) is False


# --- probes ---

@pytest.mark.asyncio
async def test_builtin_probe_queries_driver() -> None:
    result = CommandResult(returncode=0, stdout='"FrontCameraStreaming" = Yes\n')
    with patch("watchav.detector.run_command", new=AsyncMock(return_value=result)) as mock_run:
        assert await BuiltInCameraProbe("AppleH16CamIn").probe() is True
    args, _ = mock_run.call_args
    assert args[0] == ["/usr/sbin/ioreg", "-r", "-c", "AppleH16CamIn"]


@pytest.mark.asyncio
async def test_usb_probe_empty_output_is_inactive() -> None:
    result = CommandResult(returncode=1, stdout="")
    with patch("watchav.detector.run_command", new=AsyncMock(return_value=result)):
        assert await UsbCameraProbe().probe() is False


@pytest.mark.asyncio
async def test_probe_command_failure_raises_probe_error() -> None:
    with patch("watchav.detector.run_command", new=AsyncMock(side_effect=CommandError("timed out"))):
        with pytest.raises(ProbeError):
            await UsbCameraProbe().probe()


@pytest.mark.asyncio
async def test_any_active_probe_or_logic() -> None:
    assert await AnyActiveProbe(FakeProbe(False), FakeProbe(True)).probe() is True
    assert await AnyActiveProbe(FakeProbe(False), FakeProbe(False)).probe() is False


@pytest.mark.asyncio
async def test_any_active_probe_failure_only_matters_when_nothing_active() -> None:
    failing = FakeProbe()
    failing.error = ProbeError("ioreg missing")
    assert await AnyActiveProbe(failing, FakeProbe(True)).probe() is True
    with pytest.raises(ProbeError):
        await AnyActiveProbe(failing, FakeProbe(False)).probe()


# --- variant selection ---

def test_arm64_variant_combines_builtin_and_usb() -> None:
    variant = camera_variant(Architecture.ARM64, driver="AppleH13CamIn")
    assert isinstance(variant.probe, AnyActiveProbe)
    kinds = [type(p) for p in variant.probe.probes]
    assert kinds == [BuiltInCameraProbe, UsbCameraProbe]
    assert variant.predicate is not None
    assert "AppleH13CamIn" in variant.predicate
    assert variant.parse_line is parse_streaming_state


def test_x86_variant_is_usb_only() -> None:
    variant = camera_variant(Architecture.X86_64)
    assert isinstance(variant.probe, UsbCameraProbe)
    assert variant.predicate == UVC_PREDICATE
    assert variant.parse_line is parse_powerlog


def test_detect_camera_driver() -> None:
    out = MagicMock()
    out.stdout = '| "IOClass" = "AppleH16CamIn"\n'
    with patch("subprocess.run", return_value=out):
        assert detect_camera_driver() == "AppleH16CamIn"


def test_detect_camera_driver_fallback() -> None:
    with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="ioreg", timeout=5)):
        assert detect_camera_driver() == DEFAULT_CAMERA_DRIVER
    out = MagicMock()
    out.stdout = ""
    with patch("subprocess.run", return_value=out):
        assert detect_camera_driver() == DEFAULT_CAMERA_DRIVER


# --- detector behaviour ---

@pytest.mark.asyncio
async def test_repeated_streaming_line_changes_once(probe: FakeProbe) -> None:
    proc = FakeLogProcess()
    detector = make_detector(probe)
    changes = []
    detector.subscribe(lambda s: changes.append(s.active))

    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=proc)) as mock_open:
        await detector.start()
        proc.feed(FILTERING, STREAM_ON, STREAM_ON, STREAM_ON)
        await settle()
        await detector.stop()

    assert changes == [True]
    assert detector.status().active is True
    assert "AppleH13CamIn" in mock_open.call_args.args[0]
    assert proc.terminated


@pytest.mark.asyncio
async def test_stream_and_poll_last_observation_wins(probe: FakeProbe) -> None:
    detector = make_detector(probe)
    changes = []
    detector.subscribe(lambda s: changes.append(s.active))

    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        detector.handle_line(STREAM_ON)
        probe.value = False
        await detector.poll_once()
        detector.handle_line(STREAM_OFF)
        probe.value = True
        await detector.poll_once()
        await detector.poll_once()
        await detector.stop()

    assert changes == [True, False, True]


@pytest.mark.asyncio
async def test_unrecognised_lines_are_ignored(probe: FakeProbe) -> None:
    detector = make_detector(probe)
    changes = []
    detector.subscribe(lambda s: changes.append(s.active))
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        detector.handle_line(FILTERING)
        detector.handle_line("kernel: AppleH13CamIn something else")
        detector.handle_line("garbage ][ name: Streaming")
        await detector.stop()
    assert changes == []


@pytest.mark.asyncio
async def test_no_events_after_stop(probe: FakeProbe) -> None:
    detector = make_detector(probe)
    changes = []
    errors = []
    detector.subscribe(lambda s: changes.append(s.active), errors.append)

    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        detector.handle_line(STREAM_ON)
        detector.handle_line(STREAM_OFF)
        await detector.stop()

    assert changes == [True, False]
    detector.handle_line(STREAM_ON)
    probe.value = True
    assert await detector.poll_once() is None
    probe.error = ProbeError("late failure")
    await detector.poll_once()
    assert changes == [True, False]
    assert errors == []
    assert detector.lifecycle is Lifecycle.STOPPED


@pytest.mark.asyncio
async def test_stop_is_idempotent(probe: FakeProbe) -> None:
    proc = FakeLogProcess()
    detector = make_detector(probe)
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=proc)):
        await detector.start()
        await settle()
        await detector.stop()
        await detector.stop()
    assert detector.lifecycle is Lifecycle.STOPPED


@pytest.mark.asyncio
async def test_start_twice_raises(probe: FakeProbe) -> None:
    detector = make_detector(probe)
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        with pytest.raises(RuntimeError):
            await detector.start()
        await detector.stop()


@pytest.mark.asyncio
async def test_initial_probe_sets_state_without_change(probe: FakeProbe) -> None:
    probe.value = True
    detector = make_detector(probe)
    changes = []
    detector.subscribe(lambda s: changes.append(s.active))
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        await detector.poll_once()
        await detector.stop()
    assert detector.status().active is True
    assert changes == []


@pytest.mark.asyncio
async def test_spawn_failure_surfaces_error_and_polling_continues(probe: FakeProbe) -> None:
    detector = make_detector(probe)
    changes = []
    errors = []
    detector.subscribe(lambda s: changes.append(s.active), errors.append)

    with patch("watchav.detector.open_log_stream", new=AsyncMock(side_effect=FileNotFoundError("log"))):
        await detector.start()
        await settle()
        probe.value = True
        await detector.poll_once()
        await detector.stop()

    assert len(errors) == 1
    assert isinstance(errors[0], LogStreamError)
    assert detector.degraded is True
    assert changes == [True]


@pytest.mark.asyncio
async def test_missing_stdout_is_an_error(probe: FakeProbe) -> None:
    proc = FakeLogProcess()
    proc.stdout = None
    detector = make_detector(probe)
    errors = []
    detector.subscribe(lambda s: None, errors.append)
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=proc)):
        await detector.start()
        await settle()
        await detector.stop()
    assert len(errors) == 1
    assert "stdout" in str(errors[0])


@pytest.mark.asyncio
async def test_abnormal_stream_exit_is_reported(probe: FakeProbe) -> None:
    proc = FakeLogProcess()
    detector = make_detector(probe)
    errors = []
    detector.subscribe(lambda s: None, errors.append)
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=proc)):
        await detector.start()
        proc.exit(1)
        await settle()
        await detector.stop()
    assert len(errors) == 1
    assert "exited with code 1" in str(errors[0])


@pytest.mark.asyncio
async def test_poll_failure_reported_once_per_streak(probe: FakeProbe) -> None:
    detector = make_detector(probe, Architecture.X86_64)
    errors = []
    detector.subscribe(lambda s: None, errors.append)
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        probe.error = ProbeError("ioreg timed out")
        await detector.poll_once()
        await detector.poll_once()
        probe.error = None
        await detector.poll_once()
        probe.error = ProbeError("ioreg timed out again")
        await detector.poll_once()
        await detector.stop()
    assert [str(e) for e in errors] == ["ioreg timed out", "ioreg timed out again"]
    assert detector.status().active is False


@pytest.mark.asyncio
async def test_failed_initial_probe_starts_failure_streak(probe: FakeProbe) -> None:
    detector = make_detector(probe, Architecture.X86_64)
    errors = []
    detector.subscribe(lambda s: None, errors.append)
    probe.error = ProbeError("ioreg missing")
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        await detector.poll_once()
        await detector.poll_once()
        await detector.stop()
    assert [str(e) for e in errors] == ["ioreg missing"]


@pytest.mark.asyncio
async def test_poll_result_after_stop_is_discarded(probe: FakeProbe) -> None:
    detector = make_detector(probe)
    changes = []
    detector.subscribe(lambda s: changes.append(s.active))
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        probe.gate = asyncio.Event()
        probe.value = True
        in_flight = asyncio.create_task(detector.poll_once())
        await settle()
        await detector.stop()
        probe.gate.set()
        assert await in_flight is None
    assert changes == []
    assert detector.status().active is False


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_detector(probe: FakeProbe) -> None:
    detector = make_detector(probe)
    changes = []

    def broken(_status):
        raise RuntimeError("subscriber bug")

    detector.subscribe(broken)
    detector.subscribe(lambda s: changes.append(s.active))
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        detector.handle_line(STREAM_ON)
        await detector.stop()
    assert changes == [True]


@pytest.mark.asyncio
async def test_unsubscribe(probe: FakeProbe) -> None:
    detector = make_detector(probe)
    changes = []
    unsubscribe = detector.subscribe(lambda s: changes.append(s.active))
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        unsubscribe()
        detector.handle_line(STREAM_ON)
        await detector.stop()
    assert changes == []


@pytest.mark.asyncio
async def test_poll_loop_runs_on_interval(probe: FakeProbe) -> None:
    detector = CameraDetector(Architecture.X86_64, poll_interval_ms=10, probe=probe)
    changes = []
    detector.subscribe(lambda s: changes.append(s.active))
    with patch("watchav.detector.open_log_stream", new=AsyncMock(return_value=FakeLogProcess())):
        await detector.start()
        probe.value = True
        await settle(0.1)
        await detector.stop()
    assert changes == [True]
    assert probe.calls > 2
