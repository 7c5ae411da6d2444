"""All string enums for peercall."""

from __future__ import annotations

from enum import StrEnum, unique


@unique
class CallRole(StrEnum):
    UNASSIGNED = "unassigned"
    CALLER = "caller"
    CALLEE = "callee"


@unique
class CallKind(StrEnum):
    AUDIO = "audio"
    VIDEO = "video"


@unique
class NegotiationState(StrEnum):
    NONE = "none"
    AWAITING_OFFER = "awaiting_offer"
    OFFER_SENT = "offer_sent"
    ANSWER_SENT = "answer_sent"
    STABLE = "stable"


@unique
class ConnectionState(StrEnum):
    """Session-level connection state."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@unique
class MediaConnectionState(StrEnum):
    """Connection state reported by a peer connection."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


@unique
class SignalKind(StrEnum):
    REQUEST = "request"
    RING = "ring"
    ACCEPT = "accept"
    DECLINE = "decline"
    END = "end"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice_candidate"


@unique
class RingerRole(StrEnum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


@unique
class CallStatus(StrEnum):
    """Connection status text shown on the call view."""

    IDLE = ""
    REACHING_OUT = "Reaching out"
    RINGING = "Ringing..."
    CONNECTING = "Connecting..."
    CONNECTED = "Connected"
    RECONNECTING = "Reconnecting"


@unique
class EndReason(StrEnum):
    LOCAL_HANGUP = "local_hangup"
    REMOTE_HANGUP = "remote_hangup"
    DECLINED = "declined"
    REMOTE_DECLINED = "remote_declined"
    NO_ANSWER = "no_answer"
    CONNECTION_LOST = "connection_lost"
    ANSWERED_ELSEWHERE = "answered_elsewhere"
    CLOSED = "closed"
