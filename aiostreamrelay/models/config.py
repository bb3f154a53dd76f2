"""
Configuration model for the relay.

The configuration can be built in code, loaded from a JSON file, or assembled from
command line flags by `aiostreamrelay.__main__`. Field names are the JSON keys.
"""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080
DEFAULT_INPUT_FORMAT = "pulse"
DEFAULT_QUEUE_SIZE = 512
"""Frames buffered per subscriber, roughly 13 seconds of 44.1 kHz MP3."""
DEFAULT_ENCODER = "libmp3lame"
DEFAULT_BIT_RATE = 96_000
DEFAULT_CONTENT_TYPE = "audio/mpeg"


@dataclass
class RelayConfig(DataClassORJSONMixin):
    """Settings for a relay instance."""

    input_url: str
    """Input URL valid for the input format (device name or file path)."""
    input_format: str = DEFAULT_INPUT_FORMAT
    """Input format, e.g. 'pulse' for a PulseAudio device or 'mp3' for a file."""
    host: str = DEFAULT_HOST
    """Host to listen on."""
    port: int = DEFAULT_PORT
    """Port to listen on."""
    verbose: bool = False
    """Enable verbose logging output."""
    queue_size: int = DEFAULT_QUEUE_SIZE
    """Capacity of each subscriber queue, in frames."""
    encoder: str = DEFAULT_ENCODER
    """Encoder used for the broadcast stream."""
    bit_rate: int = DEFAULT_BIT_RATE
    """Encoder bit rate in bits per second."""
    content_type: str = DEFAULT_CONTENT_TYPE
    """MIME type announced to listeners."""
    pacing: bool = True
    """Throttle encoding to real time, so file inputs are not drained at once."""
    restart_backoff_min: float = 0.5
    """Delay in seconds before restarting a run that produced no audio."""
    restart_backoff_max: float = 30.0
    """Upper bound for the restart delay, which doubles on each failed run."""
    write_timeout: float = 10.0
    """Seconds a single write to a listener may take before it is dropped."""
    shutdown_timeout: float = 5.0
    """Seconds to wait for the encoder to stop when the relay is closed."""
    advertise: bool = False
    """Advertise the stream via mDNS."""
    advertise_name: str | None = None
    """Service name used for mDNS, defaults to the host name."""

    class Config(BaseConfig):
        """Config for parsing json configuration."""

        omit_none = True

    def __post_init__(self) -> None:
        """Validate field values."""
        if not self.input_url:
            raise ValueError("input_url must not be empty")
        if not self.input_format:
            raise ValueError("input_format must not be empty")
        if not self.host:
            raise ValueError("host must not be empty")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be between 0 and 65535, got {self.port}")
        if self.queue_size <= 0:
            raise ValueError(f"queue_size must be positive, got {self.queue_size}")
        if self.bit_rate <= 0:
            raise ValueError(f"bit_rate must be positive, got {self.bit_rate}")
        if self.restart_backoff_min < 0:
            raise ValueError(
                f"restart_backoff_min must not be negative, got {self.restart_backoff_min}"
            )
        if self.restart_backoff_max < self.restart_backoff_min:
            raise ValueError("restart_backoff_max must not be smaller than restart_backoff_min")
        if self.write_timeout <= 0:
            raise ValueError(f"write_timeout must be positive, got {self.write_timeout}")
        if self.shutdown_timeout < 0:
            raise ValueError(
                f"shutdown_timeout must not be negative, got {self.shutdown_timeout}"
            )
