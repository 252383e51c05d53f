"""Negotiation state machine.

Interprets inbound relay messages against the current negotiation state and
drives the engine session: creating it on accept, offering when a peer was
already in the room, answering remote offers and applying candidates.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from . import errors
from .net import protocol
from .net.protocol import IceServer
from .options import ConnectionOptions
from .rtc.session import EngineSession, SessionCallbacks


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
SessionFactory = Callable[..., EngineSession]


class NegotiationPhase(str, Enum):
    IDLE = "idle"
    REGISTERING = "registering"
    NEGOTIATING = "negotiating"
    ESTABLISHED = "established"
    CLOSED = "closed"


class ConnectivityPhase(str, Enum):
    NEW = "new"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"

    @classmethod
    def from_engine(cls, state: str) -> "ConnectivityPhase":
        if state == "connected":
            return cls.CONNECTED
        if state == "failed":
            return cls.FAILED
        if state in ("closed", "disconnected"):
            return cls.DISCONNECTED
        return cls.NEW


@dataclass
class NegotiationState:
    phase: NegotiationPhase = NegotiationPhase.IDLE
    connection_id: str = ""
    authz_metadata: Any = None
    is_offer: bool = False
    is_exist_user: bool = False
    connectivity: ConnectivityPhase = ConnectivityPhase.NEW
    ice_servers: List[IceServer] = field(default_factory=list)


@dataclass
class NegotiationCallbacks:
    send: Optional[AsyncCallback] = None  # (message)
    teardown: Optional[AsyncCallback] = None  # (reason: str, error, *, generation: int, session)
    close: Optional[AsyncCallback] = None  # (generation: int)
    on_open: Optional[AsyncCallback] = None  # (authz_metadata)
    on_bye: Optional[AsyncCallback] = None  # ()


class Negotiator:
    def __init__(
        self,
        options: ConnectionOptions,
        lock: asyncio.Lock,
        callbacks: Optional[NegotiationCallbacks] = None,
        session_callbacks: Optional[SessionCallbacks] = None,
        session_factory: SessionFactory = EngineSession,
        debug: bool = False,
    ):
        self.options = options
        self._lock = lock
        self._callbacks = callbacks or NegotiationCallbacks()
        self._session_callbacks = session_callbacks or SessionCallbacks()
        self._session_factory = session_factory
        self._debug = debug

        self.session: Optional[EngineSession] = None
        self.state = self._initial_state()
        # Bumped on every reset; failures carry the generation they started in.
        self.generation = 0

    def _initial_state(self) -> NegotiationState:
        return NegotiationState(ice_servers=list(self.options.ice_servers))

    def reset(self) -> None:
        self.state = self._initial_state()
        self.generation += 1

    def begin_registration(self) -> None:
        self.state.phase = NegotiationPhase.REGISTERING

    def detach_session(self) -> Optional[EngineSession]:
        """Mark the negotiation closed and hand the session to the caller."""

        self.state.phase = NegotiationPhase.CLOSED
        session, self.session = self.session, None
        return session

    async def handle(self, message: protocol.Message) -> None:
        mtype = message.type
        generation = self.generation

        if mtype == protocol.PING:
            await self._send(protocol.PongMessage())
            return

        if mtype == protocol.BYE:
            logger.info("negotiation bye received")
            await self._call(self._callbacks.on_bye)
            await self._call(self._callbacks.close, generation)
            return

        if mtype == protocol.REJECT:
            reason = message.reason or errors.REJECTED
            logger.info("negotiation rejected reason=%s", reason)
            await self._fail(generation, reason, None)
            return

        if mtype == protocol.ACCEPT:
            await self._handle_accept(message, generation)
            return

        if mtype == protocol.OFFER:
            await self._handle_offer(message, generation)
            return

        if mtype == protocol.ANSWER:
            await self._handle_answer(message)
            return

        if mtype == protocol.CANDIDATE:
            await self._handle_candidate(message)
            return

        # register / pong are never sent by the relay.
        logger.debug("negotiation ignoring type=%s", mtype)

    async def apply_connectivity(self, session: EngineSession, engine_state: str) -> Optional[ConnectivityPhase]:
        """Record a connectivity change reported by ``session``.

        Returns the new phase, or None when nothing changed or the session is
        no longer the current one.
        """

        async with self._lock:
            if session is not self.session:
                return None
            phase = ConnectivityPhase.from_engine(engine_state)
            if phase == self.state.connectivity:
                return None
            self.state.connectivity = phase
            if phase is ConnectivityPhase.CONNECTED:
                self.state.is_offer = False
                self.state.phase = NegotiationPhase.ESTABLISHED
        logger.info("negotiation connectivity=%s", phase.value)
        return phase

    async def _handle_accept(self, message: protocol.AcceptMessage, generation: int) -> None:
        failure: Optional[Exception] = None
        async with self._lock:
            if generation != self.generation or self.state.phase is not NegotiationPhase.REGISTERING:
                logger.warning("negotiation accept ignored in phase=%s", self.state.phase.value)
                return

            self.state.connection_id = message.connection_id
            self.state.authz_metadata = message.authz_metadata
            if message.ice_servers:
                self.state.ice_servers = list(message.ice_servers)
                logger.debug("negotiation ice servers from relay count=%s", len(message.ice_servers))
            self.state.is_exist_user = message.is_exist_user
            logger.info(
                "negotiation accepted connection_id=%s is_exist_user=%s",
                message.connection_id,
                message.is_exist_user,
            )

            try:
                self.session = self._create_session()
            except Exception as e:
                failure = e
            else:
                self.state.phase = NegotiationPhase.NEGOTIATING
            metadata = self.state.authz_metadata

        if failure is not None:
            logger.warning("negotiation failed to create session: %s", failure)
            await self._fail(generation, errors.CREATE_PEER_CONNECTION_ERROR, failure)
            return

        await self._call(self._callbacks.on_open, metadata)
        if message.is_exist_user:
            await self._send_offer(generation)

    async def _handle_offer(self, message: protocol.OfferMessage, generation: int) -> None:
        stale: Optional[EngineSession] = None
        failure: Optional[Exception] = None
        async with self._lock:
            session = self.session
            if generation != self.generation or session is None:
                logger.warning("negotiation offer ignored, no session in phase=%s", self.state.phase.value)
                return

            if session.signaling_state == "have-local-offer":
                # Glare: the remote offer wins and our pending offer is dropped.
                logger.info("negotiation glare, discarding local offer")
                stale = session
                try:
                    self.session = session = self._create_session()
                except Exception as e:
                    self.session = session = None
                    failure = e
                self.state.is_offer = False
            self.state.phase = NegotiationPhase.NEGOTIATING

        if stale is not None:
            await stale.close()
        if failure is not None:
            await self._fail(generation, errors.CREATE_PEER_CONNECTION_ERROR, failure)
            return

        try:
            await session.apply_remote_description("offer", message.sdp)
        except Exception as e:
            logger.warning("negotiation remote offer rejected: %s", e)
            await self._fail(generation, errors.CREATE_OFFER_ERROR, e, session)
            return

        try:
            await session.create_local_answer()
        except Exception as e:
            logger.warning("negotiation failed to create answer: %s", e)
            await self._fail(generation, errors.CREATE_ANSWER_ERROR, e, session)

    async def _handle_answer(self, message: protocol.AnswerMessage) -> None:
        session = self.session
        if session is None:
            logger.debug("negotiation answer ignored, no session")
            return
        try:
            await session.apply_remote_description("answer", message.sdp)
        except Exception as e:
            # Answers for a superseded offer are expected after glare.
            logger.debug("negotiation remote answer ignored: %s", e)

    async def _handle_candidate(self, message: protocol.CandidateMessage) -> None:
        if message.ice is None:
            return
        session = self.session
        if session is None:
            logger.debug("negotiation candidate ignored, no session")
            return
        if self._debug:
            logger.debug("negotiation remote candidate %s", message.ice)
        try:
            await session.apply_remote_candidate(message.ice)
        except Exception as e:
            logger.debug("negotiation invalid ice candidate %s: %s", message.ice, e)

    async def _send_offer(self, generation: int) -> None:
        session = self.session
        if session is None:
            return
        try:
            await session.create_local_offer()
        except Exception as e:
            logger.warning("negotiation failed to create offer: %s", e)
            await self._fail(generation, errors.SEND_OFFER_ERROR, e, session)
            return
        async with self._lock:
            if session is self.session:
                self.state.is_offer = True

    async def _on_local_description(self, session: EngineSession, sdp_type: str, sdp: str) -> None:
        if session is not self.session:
            return
        if sdp_type == "offer":
            await self._send(protocol.OfferMessage(sdp=sdp))
        elif sdp_type == "answer":
            await self._send(protocol.AnswerMessage(sdp=sdp))

    def _create_session(self) -> EngineSession:
        callbacks = dataclasses.replace(self._session_callbacks, on_local_description=self._on_local_description)
        return self._session_factory(
            self.options,
            list(self.state.ice_servers),
            callbacks=callbacks,
            debug=self._debug,
        )

    async def _fail(
        self,
        generation: int,
        reason: str,
        error: Optional[BaseException],
        session: Optional[EngineSession] = None,
    ) -> None:
        teardown = self._callbacks.teardown
        if teardown:
            await teardown(reason, error, generation=generation, session=session)

    async def _send(self, message: protocol.Message) -> None:
        await self._call(self._callbacks.send, message)

    async def _call(self, callback: Optional[AsyncCallback], *args: Any) -> None:
        if callback:
            await callback(*args)
