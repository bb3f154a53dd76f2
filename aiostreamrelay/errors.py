"""Exceptions raised by aiostreamrelay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class FrameSourceError(RelayError):
    """The encode engine failed to open or to process the input."""


class FrameStreamError(RelayError):
    """The shared frame stream ended or failed before a frame was complete."""
