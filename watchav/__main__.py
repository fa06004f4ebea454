"""
watchav: monitor camera and microphone usage on macOS. Run with: python -m watchav
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from watchav.config import Config
from watchav.history import History
from watchav.monitor import DeviceMonitor
from watchav.notify import notify_device_change
from watchav.output import CLEAR_SCREEN, format_error, format_status, header, info, redraw
from watchav.platform import get_architecture, is_macos
from watchav.types import DeviceClass, MonitorStatus

logger = logging.getLogger("watchav")


async def run(config_path: Path | None = None, overrides: dict[str, Any] | None = None) -> None:
    config = Config.load(config_path).override(**(overrides or {}))

    if not is_macos():
        print(format_error("watchav only supports macOS"), file=sys.stderr)
        sys.exit(1)

    architecture = get_architecture()

    if not config.json_output:
        sys.stdout.write(CLEAR_SCREEN)
        print(header())
        print(info(f"Architecture: {architecture.value}"))
        print(info(f"Microphone poll interval: {config.poll_interval_ms}ms"))
        print()

    monitor = DeviceMonitor(
        architecture,
        poll_interval_ms=config.poll_interval_ms,
        show_process=config.show_process,
        device_refresh_seconds=config.device_refresh_seconds,
    )
    history = History(config.history_path, config.history_max_events) if config.history_enabled else None
    last_active: dict[DeviceClass, bool | None] = {"camera": None, "microphone": None}
    last_output = ""
    background: set[asyncio.Task[None]] = set()

    def record_transitions(status: MonitorStatus) -> None:
        current: dict[DeviceClass, bool] = {
            "camera": status.camera.active,
            "microphone": status.microphone.active,
        }
        for device, active in current.items():
            previous = last_active[device]
            last_active[device] = active
            if previous is None or previous == active:
                continue
            if history is not None:
                history.add(device, active)
            if config.notify:
                task = asyncio.create_task(notify_device_change(device, active))
                background.add(task)
                task.add_done_callback(background.discard)

    def on_status(status: MonitorStatus) -> None:
        nonlocal last_output
        record_transitions(status)
        text = format_status(status, config.json_output)
        if config.json_output:
            print(text, flush=True)
        elif text != last_output:
            # Only redraw when the rendering changed
            sys.stdout.write(redraw(last_output, text) + "\n")
            sys.stdout.flush()
            last_output = text

    def on_error(error: Exception) -> None:
        print(format_error(str(error), config.json_output), file=sys.stderr, flush=True)

    monitor.subscribe(on_status, on_error)

    main_task = asyncio.current_task()
    if main_task is not None:
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, main_task.cancel)
        except NotImplementedError:
            pass

    try:
        await monitor.start()
        await asyncio.Future()
    except asyncio.CancelledError:
        pass
    finally:
        if not config.json_output:
            print("\n" + info("Stopping monitor..."))
        await monitor.stop()
        for task in list(background):
            task.cancel()
        logger.info("Shutdown complete.")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="watchav",
        description="Monitor camera and microphone usage on macOS",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("-p", "--process", action="store_true", help="Show which process is using each device")
    parser.add_argument("-i", "--interval", type=int, default=None, help="Microphone poll interval in ms (default: 500)")
    parser.add_argument("-j", "--json", action="store_true", help="Output in JSON format")
    parser.add_argument("-n", "--notify", action="store_true", help="Send a desktop notification on each change")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    return parser.parse_args(argv)


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    overrides = {
        "show_process": True if args.process else None,
        "poll_interval_ms": args.interval,
        "json_output": True if args.json else None,
        "notify": True if args.notify else None,
    }
    try:
        asyncio.run(run(config_path=args.config, overrides=overrides))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        sys.exit(0)
    except (ValueError, FileNotFoundError) as e:
        print(format_error(f"Invalid configuration: {e}"), file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
