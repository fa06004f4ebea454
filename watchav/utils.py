from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator

logger = logging.getLogger("watchav.utils")

LOG_BINARY = "/usr/bin/log"
FILTERING_PREFIX = "Filtering the log data"


class CommandError(Exception):
    """An external command could not be started or did not finish in time."""


@dataclass
class CommandResult:
    returncode: int
    stdout: str


async def run_command(args: list[str], timeout: float) -> CommandResult:
    """
    Run a one-shot external command and collect its stdout.

    A non-zero exit code is returned, not raised: grep-like tools use it for
    "nothing found". Spawn failures and timeouts raise CommandError; on timeout
    the child is killed before returning.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise CommandError(f"Could not run {args[0]}: {e}") from e
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise CommandError(f"{args[0]} timed out after {timeout}s") from None
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else 0,
        stdout=out.decode("utf-8", errors="replace") if out else "",
    )


async def open_log_stream(predicate: str) -> asyncio.subprocess.Process:
    """Spawn `log stream` for the given predicate. Raises OSError if it cannot start."""
    cmd = [LOG_BINARY, "stream", "--predicate", predicate]
    logger.debug("Starting %s", " ".join(cmd))
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )


async def read_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """
    Yield decoded, stripped, non-empty lines until EOF.

    Lines longer than the reader's limit are dropped whole, including any tail
    that arrives after the overrun was detected.
    """
    skipping = False
    while True:
        eof = False
        try:
            raw = await stream.readuntil(b"\n")
        except asyncio.LimitOverrunError as e:
            if not skipping:
                logger.debug("Skipping oversized log line: %s", e)
            await stream.readexactly(e.consumed)
            skipping = True
            continue
        except asyncio.IncompleteReadError as e:
            raw = e.partial
            eof = True
        if skipping:
            skipping = False
        else:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                yield line
        if eof:
            break


async def terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=2.0)
    except ProcessLookupError:
        pass
    except asyncio.TimeoutError:
        proc.kill()
