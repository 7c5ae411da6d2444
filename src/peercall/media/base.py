"""MediaCapability and PeerConnection abstract base classes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from peercall.models.config import IceServer
from peercall.models.enums import CallKind, MediaConnectionState


class MediaError(Exception):
    """Base exception for media capability failures."""


class MediaAcquisitionError(MediaError):
    """Local camera/microphone could not be acquired."""


class NegotiationError(MediaError):
    """A session description or ICE candidate was rejected."""


@dataclass
class MediaTrack:
    """A single audio or video track."""

    kind: str
    id: str = field(default_factory=lambda: uuid4().hex)
    enabled: bool = True
    stopped: bool = False

    def stop(self) -> None:
        self.stopped = True


@dataclass
class MediaStream:
    """A set of tracks captured locally or received from the peer."""

    id: str = field(default_factory=lambda: uuid4().hex)
    tracks: list[MediaTrack] = field(default_factory=list)

    def get_tracks(self) -> list[MediaTrack]:
        return list(self.tracks)

    def audio_tracks(self) -> list[MediaTrack]:
        return [t for t in self.tracks if t.kind == "audio"]

    def video_tracks(self) -> list[MediaTrack]:
        return [t for t in self.tracks if t.kind == "video"]

    def stop(self) -> None:
        """Stop every track (releases camera and microphone)."""
        for track in self.tracks:
            track.stop()


@dataclass
class SessionDescription:
    """An SDP offer or answer."""

    type: str
    sdp: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionDescription:
        return cls(type=data["type"], sdp=data["sdp"])


@dataclass
class IceCandidate:
    """A candidate network path for the media transport."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IceCandidate:
        return cls(
            candidate=data["candidate"],
            sdp_mid=data.get("sdpMid"),
            sdp_mline_index=data.get("sdpMLineIndex"),
        )


@dataclass
class PeerConnectionConfig:
    """Configuration handed to :meth:`MediaCapability.create_peer_connection`."""

    ice_servers: list[IceServer] = field(default_factory=list)


# Callbacks may be plain functions or coroutine functions.
IceCandidateCallback = Callable[[IceCandidate], Any]
NegotiationNeededCallback = Callable[[], Any]
RemoteStreamCallback = Callable[[MediaStream], Any]
ConnectionStateCallback = Callable[[MediaConnectionState], Any]


@dataclass
class PeerConnectionEvents:
    """Callbacks a peer connection reports through."""

    on_ice_candidate: IceCandidateCallback
    on_negotiation_needed: NegotiationNeededCallback
    on_remote_stream_added: RemoteStreamCallback
    on_remote_stream_removed: RemoteStreamCallback
    on_connection_state_changed: ConnectionStateCallback


class PeerConnection(ABC):
    """A negotiated peer-to-peer media session.

    Implementations must deliver :class:`PeerConnectionEvents` callbacks
    asynchronously (scheduled on the running loop), never from inside one
    of the methods below. The call controller holds its session lock while
    calling into the connection.
    """

    @property
    @abstractmethod
    def signaling_state(self) -> str:
        """``stable``, ``have-local-offer`` or ``have-remote-offer``."""
        ...

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None: ...

    @property
    @abstractmethod
    def remote_description(self) -> SessionDescription | None: ...

    @abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply the peer's description.

        Raises:
            NegotiationError: If the description is rejected.
        """
        ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Apply a remote candidate.

        Raises:
            NegotiationError: If the candidate is rejected.
        """
        ...

    @abstractmethod
    def add_track(self, track: MediaTrack, stream: MediaStream) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class MediaCapability(ABC):
    """Abstract base class for the platform's media stack.

    The capability captures local audio/video and creates peer
    connections. Concrete realizations wrap a browser or OS API; this
    library only drives them.

    Example usage:
        media = MyMediaCapability()

        stream = await media.acquire_local_stream(CallKind.VIDEO)
        pc = media.create_peer_connection(PeerConnectionConfig(), events)
        for track in stream.get_tracks():
            pc.add_track(track, stream)
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Capability name (e.g., 'browser', 'aiortc', 'mock')."""
        ...

    @abstractmethod
    async def acquire_local_stream(self, kind: CallKind) -> MediaStream:
        """Capture microphone (and camera for video calls).

        Raises:
            MediaAcquisitionError: If the devices are unavailable or
                permission was denied.
        """
        ...

    @abstractmethod
    def create_peer_connection(
        self,
        config: PeerConnectionConfig,
        events: PeerConnectionEvents,
    ) -> PeerConnection: ...

    async def close(self) -> None:
        """Release capability resources.

        Override in subclasses that need cleanup.
        """
