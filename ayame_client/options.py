"""Connection options."""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from typing import List

from .net.protocol import IceServer


DEFAULT_ICE_SERVERS = (IceServer(urls=["stun:stun.l.google.com:19302"]),)

SUPPORTED_VIDEO_CODECS = ("VP8",)


def _env_truthy(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().casefold() in {"1", "true", "yes", "on"}


def _random_client_id() -> str:
    return uuid.uuid4().hex


@dataclass
class AudioOption:
    direction: str = "recvonly"
    enabled: bool = True


@dataclass
class VideoOption:
    # Only VP8 is negotiated.
    codec: str = "VP8"
    direction: str = "recvonly"
    enabled: bool = True


@dataclass
class ConnectionOptions:
    audio: AudioOption = field(default_factory=AudioOption)
    video: VideoOption = field(default_factory=VideoOption)
    client_id: str = field(default_factory=_random_client_id)
    # Used when the relay's accept message carries no iceServers of its own.
    ice_servers: List[IceServer] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    signaling_key: str = ""

    @classmethod
    def from_env(cls) -> "ConnectionOptions":
        """Build options from AYAME_* environment variables.

        Unset variables keep the dataclass defaults.
        """

        opts = cls()
        opts.client_id = os.environ.get("AYAME_CLIENT_ID") or opts.client_id
        opts.signaling_key = os.environ.get("AYAME_SIGNALING_KEY", opts.signaling_key)
        opts.video.codec = os.environ.get("AYAME_VIDEO_CODEC", opts.video.codec).upper()
        opts.video.direction = os.environ.get("AYAME_VIDEO_DIRECTION", opts.video.direction)
        opts.video.enabled = _env_truthy("AYAME_VIDEO_ENABLED", opts.video.enabled)
        opts.audio.direction = os.environ.get("AYAME_AUDIO_DIRECTION", opts.audio.direction)
        opts.audio.enabled = _env_truthy("AYAME_AUDIO_ENABLED", opts.audio.enabled)
        return opts
