"""WebSocket channel to the Ayame relay.

Knows nothing about negotiation: it opens the socket, writes encoded
messages, hands raw inbound frames to a callback and closes exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import ChannelError, ChannelOpenError
from . import protocol


logger = logging.getLogger(__name__)


READ_TIMEOUT = 90.0
WRITE_TIMEOUT = 10.0
READ_LIMIT = 1024 * 1024

Frame = Union[str, bytes]
FrameCallback = Callable[[Frame], Awaitable[Optional[bool]]]


class ChannelTransport:
	def __init__(self, url: str, ws: Any, read_timeout: float = READ_TIMEOUT):
		self.url = url
		self.read_timeout = read_timeout
		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = ws
		self._send_lock = asyncio.Lock()

	@classmethod
	async def open(cls, url: str, read_timeout: float = READ_TIMEOUT) -> "ChannelTransport":
		logger.info("channel connect url=%s", url)
		try:
			ws = await websockets.connect(url, max_size=READ_LIMIT)
		except (OSError, asyncio.TimeoutError, WebSocketException) as e:
			logger.warning("channel connect failed url=%s error=%s", url, e)
			raise ChannelOpenError(f"failed to open {url}: {e}") from e
		logger.info("channel connected url=%s", url)
		return cls(url, ws, read_timeout=read_timeout)

	@property
	def closed(self) -> bool:
		return self._ws is None

	async def send(self, message: protocol.Message, timeout: float = WRITE_TIMEOUT) -> None:
		ws = self._ws
		if ws is None:
			logger.debug("channel send skipped type=%s (closed)", message.type)
			return

		if message.type in (protocol.OFFER, protocol.ANSWER):
			logger.info("channel send type=%s sdp_len=%s", message.type, len(getattr(message, "sdp", "")))
		else:
			logger.debug("channel send type=%s", message.type)

		raw = protocol.encode(message)
		try:
			async with self._send_lock:
				await asyncio.wait_for(ws.send(raw), timeout)
		except ConnectionClosed as e:
			if self._ws is not ws:
				# Closed locally while the write was in flight.
				return
			raise ChannelError(f"channel closed while sending {message.type}") from e
		except asyncio.TimeoutError as e:
			raise ChannelError(f"timed out sending {message.type} after {timeout}s") from e

	async def receive_loop(self, on_frame: FrameCallback) -> None:
		"""Feed inbound frames to ``on_frame`` until the channel ends.

		Returns on remote close, read error or read timeout. ``on_frame`` may
		return ``False`` to stop early.
		"""

		ws = self._ws
		if ws is None:
			return
		logger.debug("channel recv loop started")

		try:
			while self._ws is ws:
				try:
					raw = await asyncio.wait_for(ws.recv(), self.read_timeout)
				except asyncio.TimeoutError:
					logger.info("channel read timed out after %ss", self.read_timeout)
					return
				except ConnectionClosed as e:
					logger.info("channel closed: %s", e)
					return
				except OSError as e:
					logger.warning("channel read failed: %s", e)
					return

				if await on_frame(raw) is False:
					return
		finally:
			logger.debug("channel recv loop stopped")

	async def close(self) -> None:
		ws = self._ws
		if ws is None:
			return
		self._ws = None
		try:
			await ws.close(code=1000)
			logger.debug("channel sent close frame")
		except (OSError, WebSocketException) as e:
			logger.debug("channel failed to send close frame: %s", e)
