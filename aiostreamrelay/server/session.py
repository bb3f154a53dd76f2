"""A single listener of the broadcast stream."""

from __future__ import annotations

import asyncio

from aiostreamrelay.models import DEFAULT_QUEUE_SIZE

from .frame_stream import Frame


class ClientSession:
    """
    Inbound frame queue and disconnect signal of one subscriber.

    The relay is the only producer: it offers frames without blocking and closes
    the session when it evicts it. The HTTP handler is the only consumer: it
    iterates frames, and asserts the disconnect signal when it is done.
    """

    _queue: asyncio.Queue[Frame | None]
    """Buffered frames, None marks the end of the stream."""

    def __init__(self, *, capacity: int = DEFAULT_QUEUE_SIZE, name: str = "subscriber") -> None:
        """
        Create a session.

        Args:
            capacity: Maximum number of frames buffered before the subscriber is
                considered too slow.
            name: Label used in log messages, usually the remote address.
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.name = name
        self._capacity = capacity
        # One extra slot so the end marker always fits
        self._queue = asyncio.Queue(maxsize=capacity + 1)
        self._disconnected = asyncio.Event()
        self._evicted_event = asyncio.Event()
        self._closed = False
        self._evicted = False
        self._finished = False
        self._frames_offered = 0

    @property
    def capacity(self) -> int:
        """Maximum number of buffered frames."""
        return self._capacity

    @property
    def buffered(self) -> int:
        """Number of frames waiting to be written."""
        return self._queue.qsize() - (1 if self._closed and not self._finished else 0)

    @property
    def closed(self) -> bool:
        """Whether the relay has closed this session."""
        return self._closed

    @property
    def evicted(self) -> bool:
        """Whether the relay dropped this session for falling behind."""
        return self._evicted

    @property
    def disconnected(self) -> bool:
        """Whether the consumer has signaled that it is done."""
        return self._disconnected.is_set()

    @property
    def frames_offered(self) -> int:
        """Number of frames accepted into the queue."""
        return self._frames_offered

    def offer(self, frame: Frame) -> bool:
        """
        Queue a frame without blocking.

        Returns False when the session is closed or its queue is full.
        """
        if self._closed or self._queue.qsize() >= self._capacity:
            return False
        self._queue.put_nowait(frame)
        self._frames_offered += 1
        return True

    def close(self, *, evict: bool = False) -> None:
        """
        End the stream for the consumer.

        Buffered frames are still delivered, unless evict is set, in which case
        they are discarded and the consumer stops right away.
        """
        if self._closed:
            return
        self._closed = True
        if evict:
            self._evicted = True
            self._discard_buffered()
        self._queue.put_nowait(None)
        if evict:
            self._evicted_event.set()

    async def wait_evicted(self) -> None:
        """Wait until the relay evicts this session."""
        await self._evicted_event.wait()

    def disconnect(self) -> None:
        """Signal that the consumer is gone. Calling it again has no effect."""
        self._disconnected.set()

    def drain(self) -> None:
        """Discard all buffered frames without waiting."""
        self._discard_buffered()

    def _discard_buffered(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if item is None:
                self._finished = True

    async def next_frame(self) -> Frame | None:
        """Wait for the next frame, None once the session was closed."""
        if self._finished:
            return None
        frame = await self._queue.get()
        if frame is None:
            self._finished = True
        return frame

    def __aiter__(self) -> ClientSession:
        """Iterate over frames until the session is closed."""
        return self

    async def __anext__(self) -> Frame:
        """Return the next frame."""
        frame = await self.next_frame()
        if frame is None:
            raise StopAsyncIteration
        return frame

    def __repr__(self) -> str:
        """Return a debug representation."""
        return f"<ClientSession {self.name} buffered={self.buffered}/{self._capacity}>"
