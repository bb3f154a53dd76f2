"""Public interface for the relay server package."""

from .frame_stream import Frame, FrameListener, FrameStream
from .relay import FrameRelay
from .run import EncodeRun
from .server import RelayServer
from .session import ClientSession
from .source import AVFrameSource, FrameSource
from .supervisor import EncodeSupervisor, RunTerminated, SourceFactory, SubscriberDelta

__all__ = [
    "AVFrameSource",
    "ClientSession",
    "EncodeRun",
    "EncodeSupervisor",
    "Frame",
    "FrameListener",
    "FrameRelay",
    "FrameSource",
    "FrameStream",
    "RelayServer",
    "RunTerminated",
    "SourceFactory",
    "SubscriberDelta",
]
