"""Exceptions and disconnect reasons."""

from __future__ import annotations


class AyameError(Exception):
    pass


class AlreadyConnectedError(AyameError):
    """connect() was called while a channel or session is still open."""


class ChannelOpenError(AyameError):
    pass


class ChannelError(AyameError):
    """Writing to the signaling channel failed or timed out."""


class UnsupportedCodecError(AyameError):
    pass


# Reason tokens passed to on_disconnect. A reject from the relay uses the
# relay's own reason string, or REJECTED when it sends none.
REJECTED = "REJECTED"
EXIT_RECV = "EXIT-RECV"
PROTOCOL_ERROR = "PROTOCOL-ERROR"
DISPATCH_ERROR = "DISPATCH-ERROR"
CREATE_PEER_CONNECTION_ERROR = "CREATE-PEER-CONNECTION-ERROR"
CREATE_OFFER_ERROR = "CREATE-OFFER-ERROR"
CREATE_ANSWER_ERROR = "CREATE-ANSWER-ERROR"
SEND_OFFER_ERROR = "SEND-OFFER-ERROR"
ICE_CONNECTION_STATE_FAILED = "ICE-CONNECTION-STATE-FAILED"
READ_RTP_ERROR = "READ-RTP-ERROR"
