"""Turns the encoded byte stream into frames and broadcasts them to subscribers."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass

from aiostreamrelay.errors import FrameStreamError

from .frame_stream import Frame, FrameStream
from .session import ClientSession

logger = logging.getLogger(__name__)


@dataclass
class _Registration:
    """Request to add a subscriber to the registry."""

    session: ClientSession
    accepted: asyncio.Future[None]
    """Resolved once the relay task has added the session."""


@dataclass
class _Unregistration:
    """Request to remove a subscriber that has gone away."""

    session: ClientSession


@dataclass
class _FrameAnnouncement:
    """A frame of the given size is available in the frame stream."""

    size: int


class FrameRelay:
    """
    Broadcasts every frame of the frame stream to all registered subscribers.

    The subscriber registry is owned by the relay task. Other tasks only send it
    requests through the inbox, so registrations and frames are handled strictly
    in arrival order. Delivery never blocks: a subscriber whose queue is full is
    evicted instead of slowing down the others.
    """

    _stream: FrameStream
    """Source of frame bytes."""
    _inbox: asyncio.Queue[_Registration | _Unregistration | _FrameAnnouncement]
    """Registry changes and frame announcements, in arrival order."""
    _sessions: list[ClientSession]
    """Subscriber registry, only touched by the relay task."""
    _task: asyncio.Task[None] | None = None
    """The relay loop, None when not started."""

    def __init__(self, frame_stream: FrameStream) -> None:
        """Attach the relay as the reader of frame_stream."""
        self._stream = frame_stream
        self._inbox = asyncio.Queue()
        self._sessions = []
        self._task = None
        self._frames_relayed = 0
        self._evictions = 0
        self._remove_listener = frame_stream.set_listener(self._announce_frame)

    @property
    def running(self) -> bool:
        """Whether the relay loop is active."""
        return self._task is not None and not self._task.done()

    @property
    def subscriber_count(self) -> int:
        """Number of registered subscribers."""
        return len(self._sessions)

    @property
    def frames_relayed(self) -> int:
        """Number of frames broadcast so far."""
        return self._frames_relayed

    @property
    def evictions(self) -> int:
        """Number of subscribers dropped for falling behind."""
        return self._evictions

    def start(self) -> None:
        """Start the relay loop."""
        if self._task is not None:
            logger.warning("Frame relay is already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="frame-relay")

    async def close(self) -> None:
        """Stop the relay loop and close all subscriber sessions."""
        self._remove_listener()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._shutdown()

    async def register(self, session: ClientSession) -> None:
        """
        Add a subscriber and wait until the relay loop has accepted it.

        The subscriber receives every frame announced after its registration was
        processed, and none before.

        Raises:
            RuntimeError: If the relay is not running.
        """
        if not self.running:
            raise RuntimeError("Frame relay is not running")
        accepted: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_Registration(session, accepted))
        await accepted

    def unregister(self, session: ClientSession) -> None:
        """Remove a subscriber without waiting, the relay task closes its session."""
        if not self.running:
            return
        self._inbox.put_nowait(_Unregistration(session))

    def _announce_frame(self, size: int) -> None:
        """Receive a frame size announcement from the frame stream."""
        self._inbox.put_nowait(_FrameAnnouncement(size))

    async def _run(self) -> None:
        """Relay frames until the frame stream fails or the task is cancelled."""
        logger.debug("Frame relay started")
        try:
            while True:
                message = await self._inbox.get()
                if isinstance(message, _Registration):
                    self._accept(message)
                    continue
                if isinstance(message, _Unregistration):
                    self._remove(message.session)
                    continue

                data = await self._stream.read_exactly(message.size)
                frame = Frame(data=data, sequence=self._frames_relayed)
                self._frames_relayed += 1
                self._broadcast(frame)
        except FrameStreamError:
            logger.exception("Frame stream failed, no more audio will be relayed")
        except Exception:
            logger.exception("Unexpected error in frame relay")
        finally:
            self._shutdown()
            logger.debug("Frame relay stopped after %d frame(s)", self._frames_relayed)

    def _accept(self, registration: _Registration) -> None:
        """Add a session to the registry."""
        if registration.accepted.done():
            # The registering task went away before we got to it
            registration.session.close()
            return
        self._sessions.append(registration.session)
        registration.accepted.set_result(None)
        logger.debug(
            "Accepted subscriber %s (%d total)", registration.session.name, len(self._sessions)
        )

    def _remove(self, session: ClientSession) -> None:
        """Drop a session from the registry."""
        if session in self._sessions:
            self._sessions.remove(session)
            logger.debug("Removed subscriber %s (%d left)", session.name, len(self._sessions))
        session.close()

    def _broadcast(self, frame: Frame) -> None:
        """Offer frame to every subscriber, evicting those that cannot take it."""
        kept: list[ClientSession] = []
        for session in self._sessions:
            if session.disconnected:
                logger.debug("Subscriber %s disconnected, removing it", session.name)
                session.close()
                continue
            if session.offer(frame):
                kept.append(session)
                continue
            logger.warning(
                "Subscriber %s cannot keep up (%d frames buffered), evicting it",
                session.name,
                session.capacity,
            )
            self._evictions += 1
            session.close(evict=True)
        self._sessions = kept

    def _shutdown(self) -> None:
        """Close all sessions and reject registrations still in the inbox."""
        for session in self._sessions:
            session.close()
        self._sessions = []
        while True:
            try:
                message = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(message, _Registration) and not message.accepted.done():
                message.accepted.set_exception(RuntimeError("Frame relay is not running"))
