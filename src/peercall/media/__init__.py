"""Media capability abstractions and test doubles."""

from peercall.media.base import (
    IceCandidate,
    MediaAcquisitionError,
    MediaCapability,
    MediaError,
    MediaStream,
    MediaTrack,
    NegotiationError,
    PeerConnection,
    PeerConnectionConfig,
    PeerConnectionEvents,
    SessionDescription,
)
from peercall.media.mock import MockMediaCapability, MockPeerConnection
from peercall.media.ringtone import MockRingtonePlayer, NullRingtonePlayer, RingtonePlayer

__all__ = [
    "IceCandidate",
    "MediaAcquisitionError",
    "MediaCapability",
    "MediaError",
    "MediaStream",
    "MediaTrack",
    "MockMediaCapability",
    "MockPeerConnection",
    "MockRingtonePlayer",
    "NegotiationError",
    "NullRingtonePlayer",
    "PeerConnection",
    "PeerConnectionConfig",
    "PeerConnectionEvents",
    "RingtonePlayer",
    "SessionDescription",
]
