"""Frame sources: the engine that captures, decodes and re-encodes the input."""

from __future__ import annotations

import logging
import types
from collections.abc import Iterator
from fractions import Fraction
from typing import TYPE_CHECKING

from aiostreamrelay.errors import FrameSourceError
from aiostreamrelay.models import DEFAULT_BIT_RATE, DEFAULT_ENCODER

if TYPE_CHECKING:
    import av

logger = logging.getLogger(__name__)

OUTPUT_LAYOUT = "stereo"
DEFAULT_FRAME_SIZE = 1152
"""Samples per frame for MP3, used when the encoder does not report one."""


def _get_av() -> types.ModuleType:
    """Lazy import of av module to avoid slow startup."""
    import av as _av  # noqa: PLC0415

    return _av


class FrameSource:
    """
    Interface of an encode engine driven by an encode run.

    All methods are blocking and are called from a worker thread, one call at a
    time. A source is used for a single run and is not reopened.
    """

    def open(self) -> None:
        """
        Open the input, the encoder and the transcode context.

        On failure, everything acquired so far is released again.

        Raises:
            FrameSourceError: If any stage cannot be initialized.
        """
        raise NotImplementedError

    def step(self) -> list[bytes]:
        """
        Decode one unit of input and encode whatever output it yields.

        Returns:
            The encoded frames produced by this step, possibly none.

        Raises:
            EOFError: At the end of the input.
            FrameSourceError: On a fatal decode or encode failure.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release the engine. Safe to call on partially opened sources and more than once."""
        raise NotImplementedError

    @property
    def produced_seconds(self) -> float:
        """Duration of audio encoded so far, used for real-time pacing."""
        return 0.0


class AVFrameSource(FrameSource):
    """Frame source decoding any FFmpeg input and encoding it with PyAV."""

    _container: av.container.InputContainer | None = None
    _stream: av.audio.stream.AudioStream | None = None
    _packets: Iterator[av.Packet] | None = None
    _encoder: av.AudioCodecContext | None = None
    _resampler: av.AudioResampler | None = None
    _fifo: av.AudioFifo | None = None

    def __init__(
        self,
        input_format: str,
        input_url: str,
        *,
        encoder: str = DEFAULT_ENCODER,
        bit_rate: int = DEFAULT_BIT_RATE,
        verbose: bool = False,
    ) -> None:
        """
        Describe the input and output of the engine, nothing is opened yet.

        Args:
            input_format: FFmpeg input format or device, e.g. 'pulse' or 'mp3'.
            input_url: Input URL valid for the format, e.g. a PulseAudio source name
                or a file path.
            encoder: FFmpeg encoder name for the output stream.
            bit_rate: Output bit rate in bits per second.
            verbose: Log details about the opened input and output.
        """
        self._input_format = input_format
        self._input_url = input_url
        self._encoder_name = encoder
        self._bit_rate = bit_rate
        self._verbose = verbose
        self._container = None
        self._stream = None
        self._packets = None
        self._encoder = None
        self._resampler = None
        self._fifo = None
        self._sample_format = "fltp"
        self._frame_size = DEFAULT_FRAME_SIZE
        self._sample_rate = 0
        self._pts = 0
        self._samples_encoded = 0
        self._finished = False

    @property
    def produced_seconds(self) -> float:
        """Duration of audio encoded so far."""
        if not self._sample_rate:
            return 0.0
        return self._samples_encoded / self._sample_rate

    def open(self) -> None:
        """Open input, output and transcode context, in that order."""
        try:
            self._open_input()
            self._open_output()
            self._init_transcode()
        except Exception:
            self.close()
            raise

    def _open_input(self) -> None:
        """Open the input container and select its first audio stream."""
        av = _get_av()
        try:
            self._container = av.open(self._input_url, mode="r", format=self._input_format)
        except (av.error.FFmpegError, OSError) as err:
            raise FrameSourceError(
                f"Unable to open input {self._input_url!r} ({self._input_format}): {err}"
            ) from err

        if not self._container.streams.audio:
            raise FrameSourceError(f"Input {self._input_url!r} has no audio stream")
        self._stream = self._container.streams.audio[0]
        if self._verbose:
            codec_context = self._stream.codec_context
            logger.info(
                "Opened input %s: codec=%s rate=%s layout=%s",
                self._input_url,
                codec_context.name,
                codec_context.sample_rate,
                codec_context.layout.name,
            )

    def _open_output(self) -> None:
        """Create and open the encoder for the broadcast stream."""
        assert self._stream is not None
        av = _get_av()
        try:
            encoder: av.AudioCodecContext = av.AudioCodecContext.create(  # type: ignore[name-defined]
                self._encoder_name, "w"
            )
        except (av.error.FFmpegError, ValueError) as err:
            raise FrameSourceError(f"Unknown encoder {self._encoder_name!r}: {err}") from err

        supported_formats = encoder.codec.audio_formats
        if supported_formats:
            self._sample_format = supported_formats[0].name
        encoder.sample_rate = self._stream.codec_context.sample_rate or 44100
        encoder.layout = OUTPUT_LAYOUT
        encoder.format = self._sample_format
        encoder.bit_rate = self._bit_rate

        try:
            with av.logging.Capture() as logs:
                encoder.open()
        except av.error.FFmpegError as err:
            raise FrameSourceError(f"Unable to open encoder {self._encoder_name}: {err}") from err
        for log in logs:
            logger.debug("Opening AudioCodecContext log from av: %s", log)

        if encoder.frame_size and encoder.frame_size > 0:
            self._frame_size = int(encoder.frame_size)
        self._encoder = encoder
        self._sample_rate = encoder.sample_rate
        if self._verbose:
            logger.info(
                "Opened output: encoder=%s rate=%d bit_rate=%d frame_size=%d",
                self._encoder_name,
                encoder.sample_rate,
                self._bit_rate,
                self._frame_size,
            )

    def _init_transcode(self) -> None:
        """Set up resampling into the encoder format and the sample FIFO."""
        assert self._container is not None
        assert self._stream is not None
        assert self._encoder is not None
        av = _get_av()
        self._resampler = av.AudioResampler(
            format=self._sample_format,
            layout=OUTPUT_LAYOUT,
            rate=self._encoder.sample_rate,
        )
        # Decoder and encoder work on differing numbers of samples
        self._fifo = av.AudioFifo()
        self._packets = self._container.demux(self._stream)

    def step(self) -> list[bytes]:
        """Demux one packet and return the frames encoded from it."""
        if self._finished:
            raise EOFError("End of input")
        if self._packets is None or self._stream is None:
            raise FrameSourceError("Frame source is not open")
        av = _get_av()
        try:
            packet = next(self._packets, None)
            if packet is None:
                self._finished = True
                return self._flush()
            output: list[bytes] = []
            for frame in self._stream.codec_context.decode(packet):
                self._store(frame)
            while self._fifo is not None and self._fifo.samples >= self._frame_size:
                output.extend(self._encode(self._fifo.read(self._frame_size)))
            return output
        except av.error.EOFError as err:
            self._finished = True
            raise EOFError("End of input") from err
        except av.error.FFmpegError as err:
            raise FrameSourceError(f"Failure decoding/encoding: {err}") from err

    def _store(self, frame: av.AudioFrame) -> None:
        """Resample a decoded frame into the FIFO."""
        assert self._resampler is not None
        assert self._fifo is not None
        frame.pts = None
        for resampled in self._resampler.resample(frame):
            resampled.pts = None
            self._fifo.write(resampled)

    def _encode(self, frame: av.AudioFrame | None) -> list[bytes]:
        """Encode a frame (None to drain the encoder) into packets."""
        assert self._encoder is not None
        if frame is not None:
            frame.pts = self._pts
            frame.sample_rate = self._encoder.sample_rate
            frame.time_base = Fraction(1, self._encoder.sample_rate)
            self._pts += frame.samples
            self._samples_encoded += frame.samples
        return [data for packet in self._encoder.encode(frame) if (data := bytes(packet))]

    def _flush(self) -> list[bytes]:
        """Drain the resampler and the encoder at the end of the input."""
        assert self._fifo is not None
        assert self._resampler is not None
        for resampled in self._resampler.resample(None):
            resampled.pts = None
            self._fifo.write(resampled)
        output: list[bytes] = []
        while self._fifo.samples >= self._frame_size:
            output.extend(self._encode(self._fifo.read(self._frame_size)))
        # A partial last frame is dropped, the encoder expects full frames
        output.extend(self._encode(None))
        return output

    def close(self) -> None:
        """Release whatever was acquired."""
        self._packets = None
        self._fifo = None
        self._resampler = None
        self._encoder = None
        self._stream = None
        if self._container is not None:
            container = self._container
            self._container = None
            try:
                container.close()
            except Exception:
                logger.exception("Failed to close input %s", self._input_url)
