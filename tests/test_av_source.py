from __future__ import annotations

import math
import struct
import wave
from pathlib import Path

import av
import pytest

from aiostreamrelay.errors import FrameSourceError
from aiostreamrelay.server.source import AVFrameSource

pytestmark = pytest.mark.skipif(
    "libmp3lame" not in av.codecs_available, reason="libmp3lame encoder not available"
)

SAMPLE_RATE = 44100


def _write_tone(path: Path, seconds: float = 1.0) -> None:
    samples = int(SAMPLE_RATE * seconds)
    with wave.open(str(path), "wb") as wav:
        wav.setnchannels(2)
        wav.setsampwidth(2)
        wav.setframerate(SAMPLE_RATE)
        frames = bytearray()
        for index in range(samples):
            value = int(12000 * math.sin(2 * math.pi * 440 * index / SAMPLE_RATE))
            frames += struct.pack("<hh", value, value)
        wav.writeframes(bytes(frames))


def _encode_all(source: AVFrameSource) -> list[bytes]:
    frames: list[bytes] = []
    source.open()
    try:
        while True:
            try:
                frames.extend(source.step())
            except EOFError:
                return frames
    finally:
        source.close()


def test_wav_file_is_encoded_to_mp3_frames(tmp_path: Path) -> None:
    path = tmp_path / "tone.wav"
    _write_tone(path)
    source = AVFrameSource("wav", str(path), verbose=True)

    frames = _encode_all(source)

    assert frames
    assert all(frames)
    # MPEG audio frame sync
    assert frames[0][0] == 0xFF
    assert frames[0][1] & 0xE0 == 0xE0
    assert 0.9 < source.produced_seconds <= 1.0


def test_step_after_end_of_input(tmp_path: Path) -> None:
    path = tmp_path / "short.wav"
    _write_tone(path, seconds=0.1)
    source = AVFrameSource("wav", str(path))
    source.open()
    try:
        with pytest.raises(EOFError):
            for _ in range(1000):
                source.step()
        with pytest.raises(EOFError):
            source.step()
    finally:
        source.close()


def test_missing_input_fails_to_open(tmp_path: Path) -> None:
    source = AVFrameSource("wav", str(tmp_path / "missing.wav"))

    with pytest.raises(FrameSourceError):
        source.open()
    source.close()
    source.close()


def test_step_requires_open_source() -> None:
    source = AVFrameSource("wav", "unused.wav")

    with pytest.raises(FrameSourceError):
        source.step()
