"""Starts and stops the encode run according to listener demand."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass

from .frame_stream import FrameStream
from .run import EncodeRun
from .source import FrameSource

logger = logging.getLogger(__name__)

SourceFactory = Callable[[], FrameSource]
"""Creates a fresh frame source for each run."""


@dataclass
class SubscriberDelta:
    """The number of subscribers changed."""

    delta: int
    """+1 when a subscriber joined, -1 when one left."""


@dataclass
class RunTerminated:
    """An encode run ended, for whatever reason."""

    run: EncodeRun


SupervisorEvent = SubscriberDelta | RunTerminated


class EncodeSupervisor:
    """
    Keeps at most one encode run active, and only while someone is listening.

    All decisions are taken by a single control task reading one inbox, so the
    subscriber count and the run handles are never touched concurrently:

    - the first subscriber starts a run;
    - losing the last subscriber stops it;
    - a run ending while subscribers remain is replaced.

    A new run is never started while a stopped run has not terminated yet, as
    both would write into the same frame stream. Runs that end without producing
    audio are restarted with an exponential backoff.
    """

    _inbox: asyncio.Queue[SupervisorEvent]
    """Subscriber changes and run terminations, first come first served."""
    _task: asyncio.Task[None] | None = None
    """The control task, None when not started."""
    _active_run: EncodeRun | None = None
    """Run that should be producing audio."""
    _stopping_run: EncodeRun | None = None
    """Run that was told to stop but has not terminated yet."""

    def __init__(
        self,
        *,
        source_factory: SourceFactory,
        frame_stream: FrameStream,
        pacing: bool = False,
        restart_backoff_min: float = 0.5,
        restart_backoff_max: float = 30.0,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            source_factory: Creates the frame source of each new run.
            frame_stream: Stream the runs write their frames to.
            pacing: Keep encoding close to real time.
            restart_backoff_min: First delay before restarting a run that produced
                no frames.
            restart_backoff_max: Upper bound of the restart delay.
        """
        self._source_factory = source_factory
        self._frame_stream = frame_stream
        self._pacing = pacing
        self._backoff_min = restart_backoff_min
        self._backoff_max = restart_backoff_max
        self._inbox = asyncio.Queue()
        self._task = None
        self._subscriber_count = 0
        self._active_run = None
        self._stopping_run = None
        self._restart_delay = 0.0
        self._runs_started = 0
        self._stops_requested = 0

    @property
    def subscriber_count(self) -> int:
        """Number of subscribers as seen by the control task."""
        return self._subscriber_count

    @property
    def active_run(self) -> EncodeRun | None:
        """The run currently producing audio, if any."""
        return self._active_run

    @property
    def runs_started(self) -> int:
        """Number of runs started so far."""
        return self._runs_started

    @property
    def stops_requested(self) -> int:
        """Number of times a run was told to stop because nobody was listening."""
        return self._stops_requested

    @property
    def restart_delay(self) -> float:
        """Delay applied to the next run start."""
        return self._restart_delay

    def start(self) -> None:
        """Start the control task."""
        if self._task is not None:
            logger.warning("Encode supervisor is already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="encode-supervisor")

    async def close(self, timeout: float = 5.0) -> None:
        """Stop the control task, then stop any run and wait for it up to timeout seconds."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task

        runs = [run for run in (self._active_run, self._stopping_run) if run is not None]
        self._active_run = None
        self._stopping_run = None
        for run in runs:
            run.stop()
        if not runs:
            return
        try:
            async with asyncio.timeout(timeout):
                await asyncio.gather(*(run.wait() for run in runs))
        except TimeoutError:
            logger.warning("Encoder did not stop within %.1fs", timeout)

    def subscriber_joined(self) -> None:
        """Report a new subscriber."""
        self._inbox.put_nowait(SubscriberDelta(1))

    def subscriber_left(self) -> None:
        """Report a subscriber that went away."""
        self._inbox.put_nowait(SubscriberDelta(-1))

    def _on_run_terminated(self, run: EncodeRun) -> None:
        self._inbox.put_nowait(RunTerminated(run))

    async def _run(self) -> None:
        """Process events until cancelled."""
        while True:
            event = await self._inbox.get()
            try:
                match event:
                    case SubscriberDelta(delta):
                        self._handle_subscriber_change(delta)
                    case RunTerminated(run):
                        self._handle_run_terminated(run)
            except Exception:
                logger.exception("Error handling supervisor event %s", event)

    def _handle_subscriber_change(self, delta: int) -> None:
        previous = self._subscriber_count
        count = previous + delta
        if count < 0:
            logger.warning("Ignoring subscriber leave without a matching join")
            count = 0
        self._subscriber_count = count
        logger.debug("Subscriber change %+d, %d subscriber(s)", delta, count)

        if count == 0:
            # Only stop what is actually running
            if self._active_run is not None:
                self._stop_active_run()
            return

        if previous == 0:
            self._ensure_run()

    def _handle_run_terminated(self, run: EncodeRun) -> None:
        if run is self._stopping_run:
            self._stopping_run = None
        elif run is self._active_run:
            self._active_run = None
            self._update_backoff(run)
        else:
            logger.warning("Ignoring termination of unknown run %d", run.run_id)
            return
        logger.debug("Encoder run %d stopped", run.run_id)

        if self._subscriber_count == 0:
            return
        self._ensure_run()

    def _ensure_run(self) -> None:
        """Start a run unless one is active or still stopping."""
        if self._active_run is not None:
            return
        if self._stopping_run is not None:
            logger.debug(
                "Waiting for run %d to stop before starting the encoder",
                self._stopping_run.run_id,
            )
            return
        self._start_run()

    def _start_run(self) -> None:
        self._runs_started += 1
        logger.info("Starting encoder (run %d)", self._runs_started)
        run = EncodeRun(
            run_id=self._runs_started,
            source=self._source_factory(),
            frame_stream=self._frame_stream,
            on_terminated=self._on_run_terminated,
            start_delay=self._restart_delay,
            pacing=self._pacing,
        )
        self._active_run = run
        run.start()

    def _stop_active_run(self) -> None:
        assert self._active_run is not None
        run = self._active_run
        logger.info("No subscribers left, stopping encoder (run %d)", run.run_id)
        self._active_run = None
        self._stopping_run = run
        self._stops_requested += 1
        # Backoff only applies to runs that end on their own
        self._restart_delay = 0.0
        run.stop()

    def _update_backoff(self, run: EncodeRun) -> None:
        """Grow the restart delay after a run that produced nothing, reset it otherwise."""
        if run.frames_produced > 0:
            self._restart_delay = 0.0
            return
        self._restart_delay = min(
            max(self._restart_delay * 2, self._backoff_min), self._backoff_max
        )
        if self._restart_delay > 0:
            logger.warning(
                "Encoder run %d produced no audio, next start in %.1fs",
                run.run_id,
                self._restart_delay,
            )
