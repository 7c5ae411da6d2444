"""Call session state."""

from __future__ import annotations

import asyncio
from dataclasses import MISSING, dataclass, field, fields
from datetime import UTC, datetime

from peercall.media.base import IceCandidate, MediaStream, PeerConnection
from peercall.models.enums import (
    CallKind,
    CallRole,
    ConnectionState,
    NegotiationState,
)
from peercall.models.identity import PeerProfile


@dataclass
class CallSession:
    """State of the one call a controller can hold at a time.

    The session is Idle while ``role`` is UNASSIGNED. It is populated when
    a call request is sent or accepted and reset in place when the call
    reaches CLOSED, so the same object is reused for the next call.
    """

    call_id: str | None = None
    role: CallRole = CallRole.UNASSIGNED
    peer: PeerProfile | None = None
    kind: CallKind = CallKind.AUDIO
    target_device: str | None = None
    negotiation: NegotiationState = NegotiationState.NONE
    connection: ConnectionState = ConnectionState.CLOSED
    elapsed_seconds: int = 0
    initiation_seen: bool = False
    audio_muted: bool = False
    video_muted: bool = False
    local_stream: MediaStream | None = None
    remote_stream: MediaStream | None = None
    peer_connection: PeerConnection | None = None
    # Bumped for every peer connection this leg opens; offers carry it so
    # the other leg can tell a fresh connection from a renegotiation.
    connection_generation: int = 0
    remote_generation: int | None = None
    pending_candidates: list[IceCandidate] = field(default_factory=list)
    tracks_attached: bool = False
    media_task: asyncio.Task[None] | None = None
    started_at: datetime | None = None
    span_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.role != CallRole.UNASSIGNED

    @property
    def channel_id(self) -> str | None:
        return self.peer.room_id if self.peer is not None else None

    def begin(
        self,
        role: CallRole,
        peer: PeerProfile,
        kind: CallKind,
        call_id: str,
        *,
        target_device: str | None = None,
    ) -> None:
        """Populate the session for a new call."""
        self.reset()
        self.call_id = call_id
        self.role = role
        self.peer = peer
        self.kind = kind
        self.target_device = target_device
        self.connection = ConnectionState.NEW
        self.started_at = datetime.now(UTC)

    def reset(self) -> None:
        """Return every field to its Idle default."""
        for f in fields(self):
            if f.default_factory is not MISSING:
                setattr(self, f.name, f.default_factory())
            else:
                setattr(self, f.name, f.default)
