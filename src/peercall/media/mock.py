"""Mock media capability for testing."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from peercall.media.base import (
    IceCandidate,
    MediaAcquisitionError,
    MediaCapability,
    MediaStream,
    MediaTrack,
    NegotiationError,
    PeerConnection,
    PeerConnectionConfig,
    PeerConnectionEvents,
    SessionDescription,
)
from peercall.models.enums import CallKind, MediaConnectionState


@dataclass
class MockMediaCall:
    """Record of a call made to a mock media object."""

    method: str
    args: dict[str, Any] = field(default_factory=dict)


class MockPeerConnection(PeerConnection):
    """In-memory peer connection following the WebRTC signaling states.

    Adding a track fires ``on_negotiation_needed`` on the next loop
    iteration when the connection is stable. While a local offer is
    outstanding the notification is held back until the exchange
    completes; tracks added while answering a remote offer are carried
    by the answer. Setting a ``rollback`` local description withdraws a
    local offer.
    """

    def __init__(
        self,
        config: PeerConnectionConfig,
        events: PeerConnectionEvents,
        *,
        reject_descriptions: bool = False,
        reject_candidates: bool = False,
    ) -> None:
        self.config = config
        self.events = events
        self.reject_descriptions = reject_descriptions
        self.reject_candidates = reject_candidates
        self.calls: list[MockMediaCall] = []
        self.tracks: list[MediaTrack] = []
        self.candidates: list[IceCandidate] = []
        self.closed = False
        self._signaling_state = "stable"
        self._local: SessionDescription | None = None
        self._remote: SessionDescription | None = None
        self._negotiation_pending = False
        self._negotiation_scheduled = False
        self._offer_count = 0
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def signaling_state(self) -> str:
        return self._signaling_state

    @property
    def local_description(self) -> SessionDescription | None:
        return self._local

    @property
    def remote_description(self) -> SessionDescription | None:
        return self._remote

    async def create_offer(self) -> SessionDescription:
        self._offer_count += 1
        self.calls.append(MockMediaCall(method="create_offer"))
        return SessionDescription(type="offer", sdp=f"mock-offer-{self._offer_count}")

    async def create_answer(self) -> SessionDescription:
        self.calls.append(MockMediaCall(method="create_answer"))
        if self._signaling_state != "have-remote-offer":
            raise NegotiationError("No remote offer to answer")
        return SessionDescription(type="answer", sdp=f"mock-answer-{self._offer_count}")

    async def set_local_description(self, description: SessionDescription) -> None:
        self.calls.append(
            MockMediaCall(method="set_local_description", args={"type": description.type})
        )
        if description.type == "rollback":
            # The withdrawn offer's tracks still need negotiating.
            self._local = None
            self._signaling_state = "stable"
            self._negotiation_pending = True
            return
        self._local = description
        if description.type == "offer":
            self._signaling_state = "have-local-offer"
        else:
            self._return_to_stable()

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.calls.append(
            MockMediaCall(method="set_remote_description", args={"type": description.type})
        )
        if self.reject_descriptions:
            raise NegotiationError("Description rejected")
        if description.type == "offer":
            if self._signaling_state == "have-local-offer":
                raise NegotiationError("Offer collision")
            self._remote = description
            self._signaling_state = "have-remote-offer"
        else:
            if self._signaling_state != "have-local-offer":
                raise NegotiationError("Answer without a local offer")
            self._remote = description
            self._return_to_stable()

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        self.calls.append(
            MockMediaCall(method="add_ice_candidate", args={"candidate": candidate.candidate})
        )
        if self.reject_candidates:
            raise NegotiationError("Candidate rejected")
        self.candidates.append(candidate)

    def add_track(self, track: MediaTrack, stream: MediaStream) -> None:
        self.calls.append(MockMediaCall(method="add_track", args={"kind": track.kind}))
        self.tracks.append(track)
        if self._signaling_state == "stable":
            self._schedule_negotiation_needed()
        elif self._signaling_state == "have-local-offer":
            self._negotiation_pending = True
        # In have-remote-offer the track rides in the answer.

    async def close(self) -> None:
        self.closed = True
        self.calls.append(MockMediaCall(method="close"))

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def methods(self) -> list[str]:
        """Names of the methods called so far, in order."""
        return [c.method for c in self.calls]

    async def simulate_connection_state(self, state: MediaConnectionState) -> None:
        await _fire(self.events.on_connection_state_changed, state)

    async def simulate_ice_candidate(self, candidate: IceCandidate) -> None:
        await _fire(self.events.on_ice_candidate, candidate)

    async def simulate_remote_stream(self, stream: MediaStream) -> None:
        await _fire(self.events.on_remote_stream_added, stream)

    async def simulate_remote_stream_removed(self, stream: MediaStream) -> None:
        await _fire(self.events.on_remote_stream_removed, stream)

    async def simulate_negotiation_needed(self) -> None:
        await _fire(self.events.on_negotiation_needed)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _return_to_stable(self) -> None:
        self._signaling_state = "stable"
        if self._negotiation_pending:
            self._negotiation_pending = False
            self._schedule_negotiation_needed()

    def _schedule_negotiation_needed(self) -> None:
        if self._negotiation_scheduled or self.closed:
            return
        self._negotiation_scheduled = True
        task = asyncio.get_running_loop().create_task(self._fire_negotiation_needed())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fire_negotiation_needed(self) -> None:
        self._negotiation_scheduled = False
        if self.closed:
            return
        await _fire(self.events.on_negotiation_needed)


class MockMediaCapability(MediaCapability):
    """Mock media capability for testing.

    Tracks all method calls and the peer connections it created.

    Example:
        media = MockMediaCapability()
        stream = await media.acquire_local_stream(CallKind.AUDIO)
        assert media.calls[-1].method == "acquire_local_stream"

        # Hold acquisition until the test releases it
        media = MockMediaCapability(acquire_gate=asyncio.Event())
    """

    def __init__(
        self,
        *,
        fail_acquisition: bool = False,
        acquire_gate: asyncio.Event | None = None,
        reject_descriptions: bool = False,
        reject_candidates: bool = False,
    ) -> None:
        self.fail_acquisition = fail_acquisition
        self.acquire_gate = acquire_gate
        self.reject_descriptions = reject_descriptions
        self.reject_candidates = reject_candidates
        self.calls: list[MockMediaCall] = []
        self.streams: list[MediaStream] = []
        self.peer_connections: list[MockPeerConnection] = []

    @property
    def name(self) -> str:
        return "MockMediaCapability"

    @property
    def last_peer_connection(self) -> MockPeerConnection | None:
        return self.peer_connections[-1] if self.peer_connections else None

    async def acquire_local_stream(self, kind: CallKind) -> MediaStream:
        self.calls.append(MockMediaCall(method="acquire_local_stream", args={"kind": kind}))
        if self.acquire_gate is not None:
            await self.acquire_gate.wait()
        if self.fail_acquisition:
            raise MediaAcquisitionError("Permission denied")
        tracks = [MediaTrack(kind="audio")]
        if kind == CallKind.VIDEO:
            tracks.append(MediaTrack(kind="video"))
        stream = MediaStream(tracks=tracks)
        self.streams.append(stream)
        return stream

    def create_peer_connection(
        self,
        config: PeerConnectionConfig,
        events: PeerConnectionEvents,
    ) -> MockPeerConnection:
        pc = MockPeerConnection(
            config,
            events,
            reject_descriptions=self.reject_descriptions,
            reject_candidates=self.reject_candidates,
        )
        self.peer_connections.append(pc)
        self.calls.append(MockMediaCall(method="create_peer_connection"))
        return pc

    async def close(self) -> None:
        self.calls.append(MockMediaCall(method="close"))


async def _fire(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if hasattr(result, "__await__"):
        await result
