from __future__ import annotations

import asyncio
import threading

import pytest
from fakes import ScriptedSource

from aiostreamrelay.server.frame_stream import FrameStream
from aiostreamrelay.server.run import EncodeRun


def _make_run(source: ScriptedSource, stream: FrameStream, **kwargs) -> tuple[EncodeRun, list]:
    terminated: list[EncodeRun] = []
    run = EncodeRun(
        run_id=1,
        source=source,
        frame_stream=stream,
        on_terminated=terminated.append,
        **kwargs,
    )
    return run, terminated


@pytest.mark.asyncio
async def test_run_writes_frames_until_end_of_input() -> None:
    stream = FrameStream()
    sizes: list[int] = []
    stream.set_listener(sizes.append)
    source = ScriptedSource([b"a" * 188, b"b" * 188, b"c" * 417])
    run, terminated = _make_run(source, stream)

    run.start()
    await asyncio.wait_for(run.wait(), timeout=5)

    assert run.done
    assert run.frames_produced == 3
    assert terminated == [run]
    assert source.opened
    assert source.close_calls == 1
    # Frames are scheduled on the loop, let them run
    await asyncio.sleep(0)
    assert sizes == [188, 188, 417]
    assert await stream.read_exactly(793) == b"a" * 188 + b"b" * 188 + b"c" * 417


@pytest.mark.asyncio
async def test_open_failure_terminates_run() -> None:
    source = ScriptedSource(fail_open=True)
    run, terminated = _make_run(source, FrameStream())

    run.start()
    await asyncio.wait_for(run.wait(), timeout=5)

    assert terminated == [run]
    assert run.frames_produced == 0
    assert source.steps == 0


@pytest.mark.asyncio
async def test_stop_ends_a_live_run() -> None:
    source = ScriptedSource(after="live")
    run, terminated = _make_run(source, FrameStream())

    run.start()
    await asyncio.wait_for(asyncio.to_thread(source.entered_step.wait, 5), timeout=6)
    run.stop()
    run.stop()
    await asyncio.wait_for(run.wait(), timeout=5)

    assert run.stop_requested
    assert terminated == [run]
    assert source.closed


@pytest.mark.asyncio
async def test_stop_interrupts_start_delay() -> None:
    source = ScriptedSource(after="live")
    run, terminated = _make_run(source, FrameStream(), start_delay=30.0)

    run.start()
    run.stop()
    await asyncio.wait_for(run.wait(), timeout=5)

    assert terminated == [run]
    assert not source.opened


@pytest.mark.asyncio
async def test_stop_is_checked_after_a_blocked_step() -> None:
    gate = threading.Event()
    source = ScriptedSource([b"x"], after="live", gate=gate)
    run, terminated = _make_run(source, FrameStream())

    run.start()
    await asyncio.wait_for(asyncio.to_thread(source.entered_step.wait, 5), timeout=6)
    run.stop()
    await asyncio.sleep(0.05)
    assert terminated == []

    gate.set()
    await asyncio.wait_for(run.wait(), timeout=5)
    assert terminated == [run]
    assert source.steps == 1


@pytest.mark.asyncio
async def test_start_twice_fails() -> None:
    run, _ = _make_run(ScriptedSource(), FrameStream())
    run.start()

    with pytest.raises(RuntimeError):
        run.start()
    await asyncio.wait_for(run.wait(), timeout=5)
