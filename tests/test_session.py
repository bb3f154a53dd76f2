from __future__ import annotations

import asyncio

import pytest

from aiostreamrelay.server.frame_stream import Frame
from aiostreamrelay.server.session import ClientSession


def _frame(sequence: int, size: int = 10) -> Frame:
    return Frame(data=bytes([sequence]) * size, sequence=sequence)


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ClientSession(capacity=0)


@pytest.mark.asyncio
async def test_offer_until_full() -> None:
    session = ClientSession(capacity=2)

    assert session.offer(_frame(0))
    assert session.offer(_frame(1))
    assert not session.offer(_frame(2))
    assert session.buffered == 2
    assert session.frames_offered == 2


@pytest.mark.asyncio
async def test_close_delivers_buffered_frames_first() -> None:
    session = ClientSession(capacity=4)
    session.offer(_frame(0))
    session.offer(_frame(1))
    session.close()
    session.close()

    assert session.closed
    assert not session.evicted
    assert not session.offer(_frame(2))
    assert [frame.sequence async for frame in session] == [0, 1]
    assert await session.next_frame() is None


@pytest.mark.asyncio
async def test_close_on_full_queue() -> None:
    session = ClientSession(capacity=1)
    session.offer(_frame(0))
    session.close()

    assert [frame.sequence async for frame in session] == [0]


@pytest.mark.asyncio
async def test_evict_discards_buffered_frames() -> None:
    session = ClientSession(capacity=2)
    session.offer(_frame(0))
    session.offer(_frame(1))

    session.close(evict=True)

    assert session.evicted
    assert await session.next_frame() is None
    assert session.buffered == 0


@pytest.mark.asyncio
async def test_disconnect_is_idempotent() -> None:
    session = ClientSession()
    assert not session.disconnected

    session.disconnect()
    session.disconnect()

    assert session.disconnected


@pytest.mark.asyncio
async def test_drain() -> None:
    session = ClientSession(capacity=4)
    session.drain()

    session.offer(_frame(0))
    session.offer(_frame(1))
    session.drain()
    assert session.buffered == 0

    session.close()
    session.drain()
    assert await session.next_frame() is None


@pytest.mark.asyncio
async def test_eviction_is_signaled() -> None:
    session = ClientSession(capacity=2)
    waiter = asyncio.ensure_future(session.wait_evicted())
    await asyncio.sleep(0)
    assert not waiter.done()

    session.close(evict=True)

    await asyncio.wait_for(waiter, timeout=5)


@pytest.mark.asyncio
async def test_normal_close_is_not_an_eviction() -> None:
    session = ClientSession(capacity=2)
    session.close()

    with pytest.raises(TimeoutError):
        await asyncio.wait_for(session.wait_evicted(), timeout=0.05)
