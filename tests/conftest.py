"""In-memory stand-ins for the signaling channel and the engine session."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, List, Optional

import pytest

from ayame_client.connection import Connection
from ayame_client.errors import ChannelOpenError, UnsupportedCodecError
from ayame_client.net import protocol
from ayame_client.options import SUPPORTED_VIDEO_CODECS, ConnectionOptions
from ayame_client.rtc.session import SessionCallbacks


class FakeTransport:
    def __init__(self, url: str):
        self.url = url
        self.sent: List[protocol.Message] = []
        self.closed = False
        self.close_calls = 0
        self._inbound: asyncio.Queue = asyncio.Queue()

    def feed(self, payload: Any) -> None:
        self._inbound.put_nowait(payload if isinstance(payload, (str, bytes)) else json.dumps(payload))

    def hang_up(self) -> None:
        self._inbound.put_nowait(None)

    def sent_types(self) -> List[str]:
        return [m.type for m in self.sent]

    async def send(self, message: protocol.Message, timeout: float = 10.0) -> None:
        if self.closed:
            return
        self.sent.append(message)

    async def receive_loop(self, on_frame) -> None:
        while True:
            raw = await self._inbound.get()
            if raw is None:
                return
            if await on_frame(raw) is False:
                return

    async def close(self) -> None:
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        self._inbound.put_nowait(None)


class FakeTransportFactory:
    def __init__(self):
        self.transports: List[FakeTransport] = []
        self.fail = False

    async def __call__(self, url: str) -> FakeTransport:
        if self.fail:
            raise ChannelOpenError(f"failed to open {url}")
        transport = FakeTransport(url)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


class FakeSession:
    def __init__(self, options: ConnectionOptions, ice_servers, callbacks: Optional[SessionCallbacks] = None, debug: bool = False):
        if options.video.codec not in SUPPORTED_VIDEO_CODECS:
            raise UnsupportedCodecError(options.video.codec)
        self.options = options
        self.ice_servers = ice_servers
        self.callbacks = callbacks or SessionCallbacks()
        self.signaling_state = "stable"
        self.remote: List[tuple] = []
        self.candidates: List[protocol.IceCandidateInit] = []
        self.close_calls = 0

        self.fail_remote_offer = False
        self.fail_remote_answer = False
        self.fail_answer = False
        self.fail_offer = False
        self.fail_candidate = False
        # When set, answer creation waits on it, like aiortc waiting for ICE gathering.
        self.answer_gate: Optional[asyncio.Event] = None

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    async def create_local_offer(self) -> str:
        if self.fail_offer:
            raise RuntimeError("cannot create offer")
        self.signaling_state = "have-local-offer"
        sdp = f"v=0 offer from {id(self)}"
        await self.callbacks.on_local_description(self, "offer", sdp)
        return sdp

    async def create_local_answer(self) -> str:
        if self.answer_gate is not None:
            await self.answer_gate.wait()
        if self.fail_answer:
            raise RuntimeError("cannot create answer")
        self.signaling_state = "stable"
        sdp = f"v=0 answer from {id(self)}"
        await self.callbacks.on_local_description(self, "answer", sdp)
        return sdp

    async def apply_remote_description(self, sdp_type: str, sdp: str) -> None:
        if sdp_type == "offer" and self.fail_remote_offer:
            raise ValueError("bad offer")
        if sdp_type == "answer" and self.fail_remote_answer:
            raise ValueError("bad answer")
        self.remote.append((sdp_type, sdp))
        self.signaling_state = "have-remote-offer" if sdp_type == "offer" else "stable"

    async def apply_remote_candidate(self, candidate: protocol.IceCandidateInit) -> None:
        if self.fail_candidate:
            raise ValueError("bad candidate")
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.close_calls += 1
        self.signaling_state = "closed"

    async def report_state(self, state: str) -> None:
        if self.callbacks.on_connection_state:
            await self.callbacks.on_connection_state(self, state)

    async def deliver(self, track: Any, frame: Any) -> None:
        if self.callbacks.on_track_data:
            await self.callbacks.on_track_data(self, track, frame)

    async def fail_track(self, track: Any, error: BaseException) -> None:
        if self.callbacks.on_track_error:
            await self.callbacks.on_track_error(self, track, error)


class FakeSessionFactory:
    def __init__(self):
        self.sessions: List[FakeSession] = []
        self.fail_create = False
        # Attributes copied onto every session as it is created.
        self.flags: dict = {}

    def __call__(self, options, ice_servers, callbacks=None, debug=False) -> FakeSession:
        if self.fail_create:
            raise RuntimeError("engine unavailable")
        session = FakeSession(options, ice_servers, callbacks=callbacks, debug=debug)
        for name, value in self.flags.items():
            setattr(session, name, value)
        self.sessions.append(session)
        return session

    @property
    def current(self) -> FakeSession:
        return self.sessions[-1]


@pytest.fixture
def transports() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def sessions() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def options() -> ConnectionOptions:
    return ConnectionOptions(client_id="client-1", ice_servers=[])


@pytest.fixture
async def conn(transports, sessions, options):
    connection = Connection(
        "wss://relay.example/signaling",
        "room-1",
        options,
        transport_factory=transports,
        session_factory=sessions,
    )
    yield connection
    await connection.disconnect()


@pytest.fixture
def eventually() -> Callable:
    async def wait(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() >= deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return wait


@pytest.fixture
def settle() -> Callable:
    async def wait(rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return wait
