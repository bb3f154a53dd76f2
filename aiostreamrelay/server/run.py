"""One lifetime of the encode engine, from open to teardown."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable

from aiostreamrelay.errors import FrameSourceError

from .frame_stream import FrameStream
from .source import FrameSource

logger = logging.getLogger(__name__)

PACING_LEAD_S = 1.0
"""How far encoding may run ahead of real time when pacing is enabled."""


class EncodeRun:
    """
    Drives a frame source in a worker thread and reports to the supervisor.

    Each encoded frame is written to the frame stream on the event loop. Stopping
    is cooperative: the stop signal is checked before every engine step. However
    the run ends, the source is closed and on_terminated is called exactly once.
    """

    _task: asyncio.Task[None] | None = None
    """Task awaiting the worker thread, None until started."""

    def __init__(
        self,
        *,
        run_id: int,
        source: FrameSource,
        frame_stream: FrameStream,
        on_terminated: Callable[[EncodeRun], None],
        start_delay: float = 0.0,
        pacing: bool = False,
    ) -> None:
        """
        Create a run, the source is not touched until start() is called.

        Args:
            run_id: Sequence number of this run, used for logging.
            source: The engine driven by this run, used once.
            frame_stream: Stream receiving the encoded frames.
            on_terminated: Called on the event loop once the run has ended.
            start_delay: Seconds to wait before opening the source.
            pacing: Keep encoding close to real time.
        """
        self.run_id = run_id
        self._source = source
        self._frame_stream = frame_stream
        self._on_terminated = on_terminated
        self._start_delay = start_delay
        self._pacing = pacing
        self._stop_event = threading.Event()
        self._task = None
        self._frames_produced = 0
        self._logger = logger.getChild(f"run-{run_id}")

    @property
    def frames_produced(self) -> int:
        """Number of frames written to the frame stream."""
        return self._frames_produced

    @property
    def stop_requested(self) -> bool:
        """Whether stop() was called."""
        return self._stop_event.is_set()

    @property
    def start_delay(self) -> float:
        """Seconds waited before opening the source."""
        return self._start_delay

    @property
    def done(self) -> bool:
        """Whether the run has terminated."""
        return self._task is not None and self._task.done()

    def start(self) -> None:
        """Start the run on the running event loop."""
        if self._task is not None:
            raise RuntimeError("Encode run was already started")
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(loop), name=f"encode-run-{self.run_id}")

    def stop(self) -> None:
        """Ask the run to stop, without waiting for it."""
        if self._stop_event.is_set():
            return
        self._logger.debug("Stop requested")
        self._stop_event.set()

    async def wait(self) -> None:
        """Wait until the run has terminated."""
        if self._task is None:
            return
        await asyncio.shield(self._task)

    async def _run(self, loop: asyncio.AbstractEventLoop) -> None:
        try:
            await loop.run_in_executor(None, self._execute, loop)
        except Exception:
            self._logger.exception("Encode run failed")
        finally:
            self._logger.debug("Run terminated after %d frame(s)", self._frames_produced)
            self._on_terminated(self)

    def _execute(self, loop: asyncio.AbstractEventLoop) -> None:
        """Run the engine until stopped, end of input or failure. Worker thread only."""
        if self._start_delay > 0:
            self._logger.debug("Waiting %.2fs before starting", self._start_delay)
            if self._stop_event.wait(self._start_delay):
                return

        try:
            self._source.open()
        except FrameSourceError as err:
            self._logger.error("Unable to start encoder: %s", err)
            return

        started = time.monotonic()
        try:
            while True:
                if self._stop_event.is_set():
                    self._logger.info("Stopping encoder")
                    return
                try:
                    frames = self._source.step()
                except EOFError:
                    # Typical for file inputs, live inputs never end
                    self._logger.info("Encoder reached end of input")
                    return
                for data in frames:
                    loop.call_soon_threadsafe(self._frame_stream.write_frame, data)
                    self._frames_produced += 1
                if self._pacing:
                    self._pace(started)
        except FrameSourceError as err:
            self._logger.error("Failure decoding/encoding: %s", err)
        finally:
            self._source.close()

    def _pace(self, started: float) -> None:
        """Sleep while the encoded audio is too far ahead of real time."""
        ahead = self._source.produced_seconds - (time.monotonic() - started) - PACING_LEAD_S
        if ahead > 0:
            self._stop_event.wait(ahead)
