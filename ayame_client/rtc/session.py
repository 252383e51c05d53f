"""One aiortc peer connection for one Ayame room."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp

from ..errors import UnsupportedCodecError
from ..net.protocol import IceCandidateInit, IceServer
from ..options import SUPPORTED_VIDEO_CODECS, ConnectionOptions


logger = logging.getLogger(__name__)


KEYFRAME_INTERVAL = 3.0
CLOSE_POLL_INTERVAL = 0.4
CLOSE_TIMEOUT = 5.0

AsyncSessionCallback = Callable[..., Awaitable[None]]


def _rtc_ice_servers(servers: List[IceServer]) -> List[RTCIceServer]:
    return [RTCIceServer(urls=list(s.urls), username=s.username, credential=s.credential) for s in servers]


def _codecs(kind: str, mime_type: str) -> list:
    capabilities = RTCRtpSender.getCapabilities(kind)
    return [c for c in capabilities.codecs if c.mimeType.lower() == mime_type.lower()]


def _candidate_from_init(init: IceCandidateInit):
    sdp = init.candidate
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    if not sdp:
        raise ValueError("empty candidate")
    cand = candidate_from_sdp(sdp)
    cand.sdpMid = init.sdp_mid
    cand.sdpMLineIndex = init.sdp_mline_index
    return cand


@dataclass
class SessionCallbacks:
    on_track_data: Optional[AsyncSessionCallback] = None  # (session, track, frame)
    on_track_error: Optional[AsyncSessionCallback] = None  # (session, track, error)
    on_connection_state: Optional[AsyncSessionCallback] = None  # (session, state: str)
    on_local_description: Optional[AsyncSessionCallback] = None  # (session, type: str, sdp: str)


class EngineSession:
    def __init__(
        self,
        options: ConnectionOptions,
        ice_servers: List[IceServer],
        callbacks: Optional[SessionCallbacks] = None,
        debug: bool = False,
    ):
        if options.video.codec not in SUPPORTED_VIDEO_CODECS:
            raise UnsupportedCodecError(f"unsupported video codec: {options.video.codec}")

        self._callbacks = callbacks or SessionCallbacks()
        self._debug = debug
        self._tasks: Set[asyncio.Task] = set()
        self._close_task: Optional[asyncio.Future] = None

        config = RTCConfiguration(iceServers=_rtc_ice_servers(ice_servers))
        if debug:
            logger.debug("rtc configuration ice_servers=%s", ice_servers)
        self._pc = RTCPeerConnection(configuration=config)

        if options.audio.enabled:
            t = self._pc.addTransceiver("audio", direction=options.audio.direction)
            t.setCodecPreferences(_codecs("audio", "audio/opus"))
        if options.video.enabled:
            t = self._pc.addTransceiver("video", direction=options.video.direction)
            t.setCodecPreferences(_codecs("video", "video/" + options.video.codec))

        @self._pc.on("track")
        def on_track(track) -> None:
            logger.info("rtc remote track kind=%s id=%s", track.kind, track.id)
            self._spawn(self._consume(track), name=f"rtc-track-{track.kind}")
            if track.kind == "video":
                receiver = next((r for r in self._pc.getReceivers() if r.track is track), None)
                if receiver is not None:
                    self._spawn(self._request_keyframes(receiver), name="rtc-pli")

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            logger.info("rtc connectionState=%s", state)
            await self._emit(self._callbacks.on_connection_state, state)

        @self._pc.on("signalingstatechange")
        def on_signalingstatechange() -> None:
            logger.debug("rtc signalingState=%s", self._pc.signalingState)

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def closed(self) -> bool:
        return self._close_task is not None

    async def create_local_offer(self) -> str:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return await self._local_description_ready()

    async def create_local_answer(self) -> str:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return await self._local_description_ready()

    async def apply_remote_description(self, sdp_type: str, sdp: str) -> None:
        if self._debug:
            logger.debug("rtc set remote %s sdp=%s", sdp_type, sdp)
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))

    async def apply_remote_candidate(self, candidate: IceCandidateInit) -> None:
        await self._pc.addIceCandidate(_candidate_from_init(candidate))

    async def close(self) -> None:
        """Close the peer connection.

        Safe to call repeatedly and from several tasks at once; every caller
        waits for the same close to finish.
        """

        if self._close_task is None:
            # Our own shutdown is not reported back to the owner.
            self._callbacks = SessionCallbacks()
            self._close_task = asyncio.ensure_future(self._close(asyncio.current_task()))
        await asyncio.shield(self._close_task)

    async def _close(self, caller: Optional[asyncio.Task]) -> None:
        # The caller may be one of our own track tasks tearing the session down.
        tasks = [t for t in self._tasks if t is not caller]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._pc.close()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + CLOSE_TIMEOUT
        while self._pc.signalingState != "closed":
            if loop.time() >= deadline:
                logger.warning("rtc peer connection did not report closed within %ss", CLOSE_TIMEOUT)
                return
            await asyncio.sleep(CLOSE_POLL_INTERVAL)
        logger.debug("rtc peer connection closed")

    async def _local_description_ready(self) -> str:
        desc = self._pc.localDescription
        assert desc is not None
        if self._debug:
            logger.debug("rtc local %s sdp=%s", desc.type, desc.sdp)
        await self._emit(self._callbacks.on_local_description, desc.type, desc.sdp)
        return desc.sdp

    async def _consume(self, track) -> None:
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.debug("rtc remote track ended kind=%s", track.kind)
                return
            except Exception as e:
                logger.warning("rtc remote track read failed kind=%s error=%s", track.kind, e)
                await self._emit(self._callbacks.on_track_error, track, e)
                return
            await self._emit(self._callbacks.on_track_data, track, frame)

    async def _request_keyframes(self, receiver) -> None:
        # PLI for every remote SSRC seen recently, once per KEYFRAME_INTERVAL.
        while True:
            await asyncio.sleep(KEYFRAME_INTERVAL)
            if self._pc.signalingState == "closed":
                return
            for source in receiver.getSynchronizationSources():
                try:
                    # Private RTCRtpReceiver helper (aiortc 1.x).
                    await receiver._send_rtcp_pli(source.source)
                except Exception as e:
                    logger.debug("rtc failed to send PLI ssrc=%s error=%s", source.source, e)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _emit(self, callback: Optional[AsyncSessionCallback], *args: Any) -> None:
        if callback:
            await callback(self, *args)
