"""Shared fakes: a settable probe and a `log stream` process backed by a real StreamReader."""
from __future__ import annotations

import asyncio

import pytest

from watchav.detector import ProbeError


class FakeProbe:
    def __init__(self, value: bool = False) -> None:
        self.value = value
        self.error: ProbeError | None = None
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def probe(self) -> bool:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.value


class FakeLogProcess:
    def __init__(self) -> None:
        self.stdout: asyncio.StreamReader | None = asyncio.StreamReader()
        self.returncode: int | None = None
        self.terminated = False
        self._exited = asyncio.Event()

    def feed(self, *lines: str) -> None:
        assert self.stdout is not None
        for line in lines:
            self.stdout.feed_data((line + "\n").encode())

    def exit(self, code: int) -> None:
        self.returncode = code
        if self.stdout is not None:
            self.stdout.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if self.returncode is None:
            self.exit(-15)

    def kill(self) -> None:
        self.terminate()


async def settle(delay: float = 0.02) -> None:
    """Let background tasks run."""
    await asyncio.sleep(delay)


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()
