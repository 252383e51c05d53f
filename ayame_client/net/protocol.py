"""Ayame signaling protocol.

The relay expects one JSON object per WebSocket text frame. Every object
carries a ``type`` discriminator; the remaining keys depend on the type.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TypedDict, Union


# Message type constants
REGISTER = "register"
ACCEPT = "accept"
REJECT = "reject"

PING = "ping"
PONG = "pong"

OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"

BYE = "bye"


class IceServerDict(TypedDict, total=False):
	urls: Union[str, List[str]]
	username: str
	credential: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


class ProtocolError(Exception):
	"""An inbound frame could not be turned into a known message."""


class InvalidJSON(ProtocolError):
	pass


class InvalidMessageType(ProtocolError):
	pass


class InvalidMessage(ProtocolError):
	"""Known type, but a field has the wrong shape."""


@dataclass(frozen=True)
class IceServer:
	urls: List[str]
	username: Optional[str] = None
	credential: Optional[str] = None

	@classmethod
	def from_dict(cls, obj: Any) -> "IceServer":
		if not isinstance(obj, dict):
			raise InvalidMessage(f"ice server must be an object, got {type(obj).__name__}")
		urls = obj.get("urls")
		if isinstance(urls, str):
			urls = [urls]
		if not isinstance(urls, list) or not all(isinstance(u, str) for u in urls):
			raise InvalidMessage("ice server urls must be a string or a list of strings")
		return cls(
			urls=list(urls),
			username=_optional_str(obj, "username"),
			credential=_optional_str(obj, "credential"),
		)

	def to_dict(self) -> IceServerDict:
		out: IceServerDict = {"urls": list(self.urls)}
		if self.username is not None:
			out["username"] = self.username
		if self.credential is not None:
			out["credential"] = self.credential
		return out


@dataclass(frozen=True)
class IceCandidateInit:
	candidate: str
	sdp_mid: Optional[str] = None
	sdp_mline_index: Optional[int] = None

	@classmethod
	def from_dict(cls, obj: Any) -> "IceCandidateInit":
		if not isinstance(obj, dict):
			raise InvalidMessage("ice must be an object")
		candidate = obj.get("candidate", "")
		if not isinstance(candidate, str):
			raise InvalidMessage("ice.candidate must be a string")
		index = obj.get("sdpMLineIndex")
		if index is not None and (not isinstance(index, int) or isinstance(index, bool)):
			raise InvalidMessage("ice.sdpMLineIndex must be an integer")
		return cls(candidate=candidate, sdp_mid=_optional_str(obj, "sdpMid"), sdp_mline_index=index)

	def to_dict(self) -> IceCandidateDict:
		return {"candidate": self.candidate, "sdpMid": self.sdp_mid, "sdpMLineIndex": self.sdp_mline_index}


@dataclass(frozen=True)
class RegisterMessage:
	room_id: str
	ayame_client: str
	environment: str
	client_id: Optional[str] = None
	authn_metadata: Any = None
	signaling_key: Optional[str] = None
	type: str = field(default=REGISTER, init=False)

	def to_dict(self) -> Dict[str, Any]:
		msg: Dict[str, Any] = {"type": REGISTER, "roomId": self.room_id}
		if self.client_id is not None:
			msg["clientId"] = self.client_id
		if self.authn_metadata is not None:
			msg["authnMetadata"] = self.authn_metadata
		if self.signaling_key is not None:
			msg["signalingKey"] = self.signaling_key
		msg["ayameClient"] = self.ayame_client
		msg["environment"] = self.environment
		return msg


@dataclass(frozen=True)
class AcceptMessage:
	connection_id: str
	is_exist_user: bool = False
	authz_metadata: Any = None
	ice_servers: Optional[List[IceServer]] = None
	type: str = field(default=ACCEPT, init=False)

	def to_dict(self) -> Dict[str, Any]:
		msg: Dict[str, Any] = {"type": ACCEPT, "connectionId": self.connection_id, "isExistUser": self.is_exist_user}
		if self.authz_metadata is not None:
			msg["authzMetadata"] = self.authz_metadata
		if self.ice_servers is not None:
			msg["iceServers"] = [s.to_dict() for s in self.ice_servers]
		return msg


@dataclass(frozen=True)
class RejectMessage:
	reason: Optional[str] = None
	type: str = field(default=REJECT, init=False)

	def to_dict(self) -> Dict[str, Any]:
		msg: Dict[str, Any] = {"type": REJECT}
		if self.reason is not None:
			msg["reason"] = self.reason
		return msg


@dataclass(frozen=True)
class PingMessage:
	type: str = field(default=PING, init=False)

	def to_dict(self) -> Dict[str, Any]:
		return {"type": PING}


@dataclass(frozen=True)
class PongMessage:
	type: str = field(default=PONG, init=False)

	def to_dict(self) -> Dict[str, Any]:
		return {"type": PONG}


@dataclass(frozen=True)
class OfferMessage:
	sdp: str
	type: str = field(default=OFFER, init=False)

	def to_dict(self) -> Dict[str, Any]:
		return {"type": OFFER, "sdp": self.sdp}


@dataclass(frozen=True)
class AnswerMessage:
	sdp: str
	type: str = field(default=ANSWER, init=False)

	def to_dict(self) -> Dict[str, Any]:
		return {"type": ANSWER, "sdp": self.sdp}


@dataclass(frozen=True)
class CandidateMessage:
	ice: Optional[IceCandidateInit] = None
	type: str = field(default=CANDIDATE, init=False)

	def to_dict(self) -> Dict[str, Any]:
		msg: Dict[str, Any] = {"type": CANDIDATE}
		if self.ice is not None:
			msg["ice"] = self.ice.to_dict()
		return msg


@dataclass(frozen=True)
class ByeMessage:
	type: str = field(default=BYE, init=False)

	def to_dict(self) -> Dict[str, Any]:
		return {"type": BYE}


Message = Union[
	RegisterMessage,
	AcceptMessage,
	RejectMessage,
	PingMessage,
	PongMessage,
	OfferMessage,
	AnswerMessage,
	CandidateMessage,
	ByeMessage,
]


def encode(message: Message) -> str:
	return json.dumps(message.to_dict(), separators=(",", ":"), ensure_ascii=False)


def decode(raw: Union[str, bytes]) -> Message:
	try:
		obj = json.loads(raw)
	except (json.JSONDecodeError, UnicodeDecodeError) as e:
		raise InvalidJSON(f"invalid JSON: {e}") from e

	if not isinstance(obj, dict):
		raise InvalidJSON(f"expected a JSON object, got {type(obj).__name__}")

	mtype = obj.get("type")
	decoder = _DECODERS.get(mtype) if isinstance(mtype, str) else None
	if decoder is None:
		raise InvalidMessageType(f"invalid message type {mtype!r}")
	return decoder(obj)


def _optional_str(obj: Dict[str, Any], key: str) -> Optional[str]:
	value = obj.get(key)
	if value is None:
		return None
	if not isinstance(value, str):
		raise InvalidMessage(f"{key} must be a string")
	return value


def _required_str(obj: Dict[str, Any], key: str) -> str:
	value = _optional_str(obj, key)
	return value if value is not None else ""


def _decode_register(obj: Dict[str, Any]) -> RegisterMessage:
	return RegisterMessage(
		room_id=_required_str(obj, "roomId"),
		ayame_client=_required_str(obj, "ayameClient"),
		environment=_required_str(obj, "environment"),
		client_id=_optional_str(obj, "clientId"),
		authn_metadata=obj.get("authnMetadata"),
		signaling_key=_optional_str(obj, "signalingKey"),
	)


def _decode_accept(obj: Dict[str, Any]) -> AcceptMessage:
	servers = obj.get("iceServers")
	ice_servers: Optional[List[IceServer]] = None
	if servers is not None:
		if not isinstance(servers, list):
			raise InvalidMessage("iceServers must be a list")
		ice_servers = [IceServer.from_dict(s) for s in servers]

	# Older relays send isExistClient instead of isExistUser.
	exist = obj.get("isExistUser", obj.get("isExistClient", False))
	if exist is None:
		exist = False
	if not isinstance(exist, bool):
		raise InvalidMessage("isExistUser must be a boolean")

	return AcceptMessage(
		connection_id=_required_str(obj, "connectionId"),
		is_exist_user=exist,
		authz_metadata=obj.get("authzMetadata"),
		ice_servers=ice_servers,
	)


def _decode_reject(obj: Dict[str, Any]) -> RejectMessage:
	return RejectMessage(reason=_optional_str(obj, "reason"))


def _decode_candidate(obj: Dict[str, Any]) -> CandidateMessage:
	ice = obj.get("ice")
	return CandidateMessage(ice=IceCandidateInit.from_dict(ice) if ice is not None else None)


_DECODERS = {
	REGISTER: _decode_register,
	ACCEPT: _decode_accept,
	REJECT: _decode_reject,
	PING: lambda obj: PingMessage(),
	PONG: lambda obj: PongMessage(),
	OFFER: lambda obj: OfferMessage(sdp=_required_str(obj, "sdp")),
	ANSWER: lambda obj: AnswerMessage(sdp=_required_str(obj, "sdp")),
	CANDIDATE: _decode_candidate,
	BYE: lambda obj: ByeMessage(),
}
