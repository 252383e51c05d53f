"""Ayame signaling client built on aiortc."""

__version__ = "0.1.0"

from .connection import Connection, ConnectionCallbacks
from .errors import (
    AlreadyConnectedError,
    AyameError,
    ChannelError,
    ChannelOpenError,
    UnsupportedCodecError,
)
from .negotiation import ConnectivityPhase, NegotiationPhase
from .options import AudioOption, ConnectionOptions, VideoOption
from .net.protocol import IceServer

__all__ = [
    "AlreadyConnectedError",
    "AudioOption",
    "AyameError",
    "ChannelError",
    "ChannelOpenError",
    "Connection",
    "ConnectionCallbacks",
    "ConnectionOptions",
    "ConnectivityPhase",
    "IceServer",
    "NegotiationPhase",
    "UnsupportedCodecError",
    "VideoOption",
]
