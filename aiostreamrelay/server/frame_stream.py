"""Shared encoded byte stream with frame boundary announcements."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from aiostreamrelay.errors import FrameStreamError

logger = logging.getLogger(__name__)

FrameListener = Callable[[int], None]
"""Called with the size of each frame written to the stream."""


@dataclass(frozen=True)
class Frame:
    """One encoder output unit, delivered to subscribers as a whole."""

    data: bytes
    """Encoded audio payload."""
    sequence: int
    """Position of this frame in production order."""

    def __len__(self) -> int:
        """Return the payload size in bytes."""
        return len(self.data)


class FrameStream:
    """
    Byte stream carrying encoded frames from the active run to the relay.

    The stream has one writer (the active encode run) and one reader (the relay).
    Bytes and the frame size are published in the same call on the event loop, so
    a reader never sees a size announcement before the bytes are available.
    """

    _reader: asyncio.StreamReader
    """Underlying byte buffer."""
    _listener: FrameListener | None
    """Receives frame size announcements, None when no reader is attached."""

    def __init__(self) -> None:
        """Create the stream, must be called with a running event loop."""
        self._reader = asyncio.StreamReader()
        self._listener = None
        self._closed = False
        self._bytes_written = 0

    @property
    def closed(self) -> bool:
        """Whether the writer side has been closed."""
        return self._closed

    @property
    def bytes_written(self) -> int:
        """Total payload bytes written to the stream."""
        return self._bytes_written

    def set_listener(self, listener: FrameListener) -> Callable[[], None]:
        """
        Attach the reader that is told about each frame.

        Returns a function to detach the listener again.
        """
        if self._listener is not None:
            raise RuntimeError("Frame stream already has a reader")
        self._listener = listener

        def _remove() -> None:
            if self._listener is listener:
                self._listener = None

        return _remove

    def write_frame(self, data: bytes) -> None:
        """
        Write one encoded frame and announce its size.

        Must be called from the event loop thread. Frames written after close
        are dropped, a run may still be draining when the stream is closed.
        """
        if self._closed:
            logger.debug("Frame stream is closed, dropping frame (%d bytes)", len(data))
            return
        if not data:
            return
        if self._listener is None:
            # Without a reader the size would never be consumed
            logger.debug("No reader attached, dropping frame (%d bytes)", len(data))
            return
        self._reader.feed_data(data)
        self._bytes_written += len(data)
        self._listener(len(data))

    async def read_exactly(self, size: int) -> bytes:
        """
        Read exactly size bytes, retrying partial reads.

        Raises:
            FrameStreamError: If the stream ends or fails before size bytes are read.
        """
        buf = bytearray()
        needed = size
        while needed > 0:
            try:
                chunk = await self._reader.read(needed)
            except FrameStreamError:
                raise
            except Exception as err:
                raise FrameStreamError(f"read: {err}") from err
            if not chunk:
                raise FrameStreamError(
                    f"read: stream ended with {needed} of {size} frame bytes missing"
                )
            buf += chunk
            needed -= len(chunk)
        return bytes(buf)

    def close(self, exc: BaseException | None = None) -> None:
        """End the stream, failing pending reads with exc if given."""
        if self._closed:
            return
        self._closed = True
        if exc is not None:
            self._reader.set_exception(exc)
        else:
            self._reader.feed_eof()
