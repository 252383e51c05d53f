"""Ayame connection lifecycle.

``Connection`` owns the signaling channel and the engine session. It runs two
tasks per connect: a read task that pushes raw frames into a bounded queue,
and a dispatch task that decodes them in order and feeds the negotiator.
Teardown, from whichever side it starts, closes the session before the
channel and resets every derived field and handler.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import platform
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set

from . import __version__, errors
from .errors import AlreadyConnectedError, ChannelError, UnsupportedCodecError
from .negotiation import (
    ConnectivityPhase,
    NegotiationCallbacks,
    NegotiationPhase,
    Negotiator,
    SessionFactory,
)
from .net import protocol
from .net.channel import ChannelTransport
from .options import SUPPORTED_VIDEO_CODECS, ConnectionOptions
from .rtc.session import EngineSession, SessionCallbacks


logger = logging.getLogger(__name__)


QUEUE_SIZE = 100

AYAME_CLIENT = f"ayame-client-python {__version__}"
ENVIRONMENT = f"Python {platform.python_version()} ({platform.system()} {platform.machine()})"

Handler = Callable[..., Any]
TransportFactory = Callable[[str], Awaitable[ChannelTransport]]

_EOF = object()


def _noop(*args: Any) -> None:
    return None


@dataclass
class ConnectionCallbacks:
    on_open: Handler = _noop  # (authz_metadata)
    on_connect: Handler = _noop  # ()
    on_disconnect: Handler = _noop  # (reason: str, error: Optional[BaseException])
    on_track_data: Handler = _noop  # (track, frame)
    on_bye: Handler = _noop  # ()


class Connection:
    def __init__(
        self,
        signaling_url: str,
        room_id: str,
        options: Optional[ConnectionOptions] = None,
        *,
        authn_metadata: Any = None,
        debug: bool = False,
        transport_factory: Optional[TransportFactory] = None,
        session_factory: SessionFactory = EngineSession,
    ):
        self.signaling_url = signaling_url
        self.room_id = room_id
        self.options = options or ConnectionOptions()
        self.authn_metadata = authn_metadata
        self.debug = debug

        self._transport_factory = transport_factory or ChannelTransport.open
        self._transport: Optional[ChannelTransport] = None
        self._tasks: Set[asyncio.Task] = set()

        # _lock serialises connect, teardown and negotiation state changes.
        # _callback_lock guards the handler set and is never held across an await.
        self._lock = asyncio.Lock()
        self._callback_lock = threading.Lock()
        self._handlers = ConnectionCallbacks()

        self._negotiator = Negotiator(
            self.options,
            self._lock,
            callbacks=NegotiationCallbacks(
                send=self._send,
                teardown=self._teardown,
                close=self._close_quietly,
                on_open=self._emit_open,
                on_bye=self._emit_bye,
            ),
            session_callbacks=SessionCallbacks(
                on_track_data=self._on_track_data,
                on_track_error=self._on_track_error,
                on_connection_state=self._on_connection_state,
            ),
            session_factory=session_factory,
            debug=debug,
        )

    @property
    def connection_id(self) -> str:
        return self._negotiator.state.connection_id

    @property
    def authz_metadata(self) -> Any:
        return self._negotiator.state.authz_metadata

    @property
    def phase(self) -> NegotiationPhase:
        return self._negotiator.state.phase

    @property
    def connectivity(self) -> ConnectivityPhase:
        return self._negotiator.state.connectivity

    @property
    def is_offer(self) -> bool:
        return self._negotiator.state.is_offer

    @property
    def is_exist_user(self) -> bool:
        return self._negotiator.state.is_exist_user

    @property
    def ice_servers(self) -> list:
        return list(self._negotiator.state.ice_servers)

    # ----------------------
    # Handler registration
    # ----------------------
    def on_open(self, handler: Handler) -> Handler:
        return self._set_handler("on_open", handler)

    def on_connect(self, handler: Handler) -> Handler:
        return self._set_handler("on_connect", handler)

    def on_disconnect(self, handler: Handler) -> Handler:
        return self._set_handler("on_disconnect", handler)

    def on_track_data(self, handler: Handler) -> Handler:
        return self._set_handler("on_track_data", handler)

    def on_bye(self, handler: Handler) -> Handler:
        return self._set_handler("on_bye", handler)

    def _set_handler(self, name: str, handler: Handler) -> Handler:
        with self._callback_lock:
            setattr(self._handlers, name, handler)
        return handler

    def _handler(self, name: str) -> Handler:
        with self._callback_lock:
            return getattr(self._handlers, name)

    # ----------------------
    # Lifecycle
    # ----------------------
    async def connect(self) -> None:
        """Open the channel and register with the relay.

        Raises UnsupportedCodecError before touching the network,
        AlreadyConnectedError when a channel or session is still open,
        ChannelOpenError when the relay cannot be reached and ChannelError
        when the register message cannot be written.
        """

        if self.options.video.codec not in SUPPORTED_VIDEO_CODECS:
            raise UnsupportedCodecError(f"unsupported video codec: {self.options.video.codec}")

        async with self._lock:
            if self._transport is not None or self._negotiator.session is not None:
                logger.debug("connection already exists")
                raise AlreadyConnectedError("connection already exists")

            transport = await self._transport_factory(self.signaling_url)
            self._transport = transport
            self._negotiator.begin_registration()

            queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)
            dispatch = self._spawn(self._dispatch_loop(transport, queue), "ayame-dispatch")
            self._spawn(self._read_loop(transport, queue, dispatch), "ayame-recv")

        logger.info("connection registering room_id=%s client_id=%s", self.room_id, self.options.client_id)
        await self._send(self._register_message(), strict=True)

    async def disconnect(self) -> None:
        async with self._lock:
            await self._release()

    async def _close_quietly(self, generation: int) -> None:
        # bye: release without reporting on_disconnect.
        async with self._lock:
            if generation != self._negotiator.generation:
                return
            await self._release()

    async def _release(self) -> None:
        # Caller holds self._lock.
        session = self._negotiator.detach_session()
        transport, self._transport = self._transport, None
        with self._callback_lock:
            self._handlers = ConnectionCallbacks()

        if session is not None:
            await session.close()
        if transport is not None:
            await transport.close()
        self._negotiator.reset()
        if session is not None or transport is not None:
            logger.info("connection closed room_id=%s", self.room_id)

    async def _teardown(
        self,
        reason: str,
        error: Optional[BaseException] = None,
        *,
        transport: Optional[ChannelTransport] = None,
        session: Optional[EngineSession] = None,
        generation: Optional[int] = None,
    ) -> None:
        """Release everything and report ``reason`` to on_disconnect.

        With ``transport``, ``session`` or ``generation`` given, nothing
        happens unless each still matches the current connection.
        """

        async with self._lock:
            if generation is not None and generation != self._negotiator.generation:
                logger.debug("connection ignoring stale failure reason=%s", reason)
                return
            if transport is not None and transport is not self._transport:
                return
            if session is not None and session is not self._negotiator.session:
                return
            handler = self._handler("on_disconnect")
            await self._release()

        logger.info("connection disconnected reason=%s error=%s", reason, error)
        await self._invoke("on_disconnect", handler, reason, error)

    def _register_message(self) -> protocol.RegisterMessage:
        return protocol.RegisterMessage(
            room_id=self.room_id,
            client_id=self.options.client_id or None,
            authn_metadata=self.authn_metadata,
            signaling_key=self.options.signaling_key or None,
            ayame_client=AYAME_CLIENT,
            environment=ENVIRONMENT,
        )

    async def _send(self, message: protocol.Message, strict: bool = False) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.send(message)
        except ChannelError as e:
            if strict:
                raise
            logger.warning("connection failed to send type=%s: %s", message.type, e)

    # ----------------------
    # Tasks
    # ----------------------
    async def _read_loop(self, transport: ChannelTransport, queue: asyncio.Queue, dispatch: asyncio.Task) -> None:
        async def on_frame(raw: Any) -> bool:
            return await self._enqueue(queue, raw, dispatch)

        await transport.receive_loop(on_frame)
        await self._enqueue(queue, _EOF, dispatch)
        await asyncio.wait({dispatch})
        logger.debug("connection recv loop exited")
        await self._teardown(errors.EXIT_RECV, None, transport=transport)

    @staticmethod
    async def _enqueue(queue: asyncio.Queue, item: Any, dispatch: asyncio.Task) -> bool:
        # A put must never outlive the dispatcher that would drain it.
        if dispatch.done():
            return False
        if not queue.full():
            queue.put_nowait(item)
            return True
        put = asyncio.ensure_future(queue.put(item))
        await asyncio.wait({put, dispatch}, return_when=asyncio.FIRST_COMPLETED)
        if put.done():
            return True
        put.cancel()
        return False

    async def _dispatch_loop(self, transport: ChannelTransport, queue: asyncio.Queue) -> None:
        while True:
            raw = await queue.get()
            if raw is _EOF:
                logger.debug("connection message queue closed")
                return
            if self._transport is not transport:
                return

            try:
                message = protocol.decode(raw)
            except protocol.ProtocolError as e:
                logger.warning("connection received bad frame: %s", e)
                if self.debug:
                    logger.debug("connection bad frame raw=%r", raw)
                await self._teardown(errors.PROTOCOL_ERROR, e, transport=transport)
                return

            if self.debug:
                logger.debug("connection recv type=%s raw=%s", message.type, raw)
            else:
                logger.debug("connection recv type=%s", message.type)

            try:
                await self._negotiator.handle(message)
            except Exception as e:
                logger.exception("connection failed to handle type=%s", message.type)
                await self._teardown(errors.DISPATCH_ERROR, e, transport=transport)
                return

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ----------------------
    # Negotiator and engine callbacks
    # ----------------------
    async def _emit_open(self, authz_metadata: Any) -> None:
        await self._invoke("on_open", self._handler("on_open"), authz_metadata)

    async def _emit_bye(self) -> None:
        await self._invoke("on_bye", self._handler("on_bye"))

    async def _on_connection_state(self, session: EngineSession, state: str) -> None:
        phase = await self._negotiator.apply_connectivity(session, state)
        if phase is ConnectivityPhase.CONNECTED:
            await self._invoke("on_connect", self._handler("on_connect"))
        elif phase in (ConnectivityPhase.FAILED, ConnectivityPhase.DISCONNECTED):
            await self._teardown(errors.ICE_CONNECTION_STATE_FAILED, None, session=session)

    async def _on_track_data(self, session: EngineSession, track: Any, frame: Any) -> None:
        if session is not self._negotiator.session:
            return
        await self._invoke("on_track_data", self._handler("on_track_data"), track, frame)

    async def _on_track_error(self, session: EngineSession, track: Any, error: BaseException) -> None:
        await self._teardown(errors.READ_RTP_ERROR, error, session=session)

    async def _invoke(self, name: str, handler: Handler, *args: Any) -> None:
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("connection %s handler failed", name)
