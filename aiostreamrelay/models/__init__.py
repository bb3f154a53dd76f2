"""Models for the audio relay."""

from __future__ import annotations

__all__ = [
    "DEFAULT_BIT_RATE",
    "DEFAULT_CONTENT_TYPE",
    "DEFAULT_ENCODER",
    "DEFAULT_HOST",
    "DEFAULT_INPUT_FORMAT",
    "DEFAULT_PORT",
    "DEFAULT_QUEUE_SIZE",
    "RelayConfig",
    "config",
]

from . import config
from .config import (
    DEFAULT_BIT_RATE,
    DEFAULT_CONTENT_TYPE,
    DEFAULT_ENCODER,
    DEFAULT_HOST,
    DEFAULT_INPUT_FORMAT,
    DEFAULT_PORT,
    DEFAULT_QUEUE_SIZE,
    RelayConfig,
)
