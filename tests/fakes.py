"""Scripted frame sources and helpers shared by the tests."""

from __future__ import annotations

import asyncio
import socket
import threading
import time
from collections.abc import Callable, Sequence

from aiostreamrelay.errors import FrameSourceError
from aiostreamrelay.server.source import FrameSource


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def open_stalled_listener(port: int) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Request the audio stream over a raw connection that is never read."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"GET /audio HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n")
    await writer.drain()
    return reader, writer


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll predicate until it holds, fail the test on timeout."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class ScriptedSource(FrameSource):
    """
    Frame source returning one scripted frame per step.

    Once the script is exhausted the source either ends ("eof"), keeps stepping
    without output ("idle"), or keeps producing filler frames ("live").
    """

    def __init__(
        self,
        frames: Sequence[bytes] = (),
        *,
        after: str = "eof",
        interval: float = 0.005,
        live_size: int = 100,
        fail_open: bool = False,
        gate: threading.Event | None = None,
    ) -> None:
        self._frames = list(frames)
        self._after = after
        self._interval = interval
        self._live_size = live_size
        self._fail_open = fail_open
        self._gate = gate
        self.opened = False
        self.closed = False
        self.close_calls = 0
        self.steps = 0
        self.entered_step = threading.Event()

    def open(self) -> None:
        if self._fail_open:
            raise FrameSourceError("scripted open failure")
        self.opened = True

    def step(self) -> list[bytes]:
        self.entered_step.set()
        if self._gate is not None:
            self._gate.wait()
        self.steps += 1
        if self._frames:
            return [self._frames.pop(0)]
        if self._after == "eof":
            raise EOFError
        time.sleep(self._interval)
        if self._after == "live":
            return [bytes([self.steps % 256]) * self._live_size]
        return []

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class SourceRecorder:
    """Source factory that remembers every source it created."""

    def __init__(self, create: Callable[[], ScriptedSource]) -> None:
        self._create = create
        self.sources: list[ScriptedSource] = []

    def __call__(self) -> ScriptedSource:
        source = self._create()
        self.sources.append(source)
        return source
