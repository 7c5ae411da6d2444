"""CallController: the call signaling and session state machine."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from peercall.core._helpers import maybe_await
from peercall.core.callbacks import CallCallbacks
from peercall.core.dedup import DedupLedger
from peercall.core.errors import (
    CallAlreadyActiveError,
    IncompleteCallbacksError,
    LocalMediaNotReadyError,
    NoActiveCallError,
    PeerCallError,
)
from peercall.core.locks import SessionLock
from peercall.core.outbound import SignalComposer
from peercall.core.retry import backoff_delay, retry_with_backoff
from peercall.core.timers import CallTimer, NoAnswerTimer, RingerScheduler
from peercall.media.base import (
    IceCandidate,
    MediaCapability,
    MediaError,
    MediaStream,
    PeerConnection,
    PeerConnectionConfig,
    PeerConnectionEvents,
    SessionDescription,
)
from peercall.media.ringtone import NullRingtonePlayer, RingtonePlayer
from peercall.models.config import CallConfig
from peercall.models.enums import (
    CallKind,
    CallRole,
    CallStatus,
    ConnectionState,
    EndReason,
    MediaConnectionState,
    NegotiationState,
    RingerRole,
    SignalKind,
)
from peercall.models.identity import LocalIdentity, PeerProfile
from peercall.models.session import CallSession
from peercall.models.signal import SignalingMessage
from peercall.realtime.base import MessageTransport, WireMessage
from peercall.telemetry.base import Attr, Metric, SpanKind, TelemetryProvider
from peercall.telemetry.config import TelemetryConfig
from peercall.telemetry.noop import NoopTelemetryProvider

logger = logging.getLogger("peercall.controller")

__all__ = [
    "CallAlreadyActiveError",
    "CallController",
    "IncompleteCallbacksError",
    "LocalMediaNotReadyError",
    "NoActiveCallError",
    "PeerCallError",
    "ReconnectHook",
]

# Called (under the session lock) when the caller's media connection drops.
ReconnectHook = Callable[["CallController"], Any]

_LOST_STATES = frozenset(
    {
        MediaConnectionState.DISCONNECTED,
        MediaConnectionState.FAILED,
        MediaConnectionState.CLOSED,
    }
)

# Remote kinds a sibling device of the local identity can send that mean
# the incoming call was handled on that device.
_SIBLING_OUTCOMES = frozenset({SignalKind.ACCEPT, SignalKind.DECLINE, SignalKind.END})


@dataclass
class _Outgoing:
    """A composed signaling message waiting to be published."""

    kind: SignalKind
    wire: WireMessage
    channel_id: str
    call_id: str | None
    retried: bool = False


class _ConnectionEvents:
    """Routes one peer connection's events to the controller, tagged with it."""

    def __init__(self, controller: CallController) -> None:
        self._controller = controller
        self.connection: PeerConnection | None = None

    def bind(self) -> PeerConnectionEvents:
        return PeerConnectionEvents(
            on_ice_candidate=self._ice_candidate,
            on_negotiation_needed=self._negotiation_needed,
            on_remote_stream_added=self._remote_stream_added,
            on_remote_stream_removed=self._remote_stream_removed,
            on_connection_state_changed=self._connection_state_changed,
        )

    async def _ice_candidate(self, candidate: IceCandidate) -> None:
        if self.connection is not None:
            await self._controller._on_local_candidate(self.connection, candidate)

    async def _negotiation_needed(self) -> None:
        if self.connection is not None:
            await self._controller._on_negotiation_needed(self.connection)

    async def _remote_stream_added(self, stream: MediaStream) -> None:
        if self.connection is not None:
            await self._controller._on_remote_stream(self.connection, stream, added=True)

    async def _remote_stream_removed(self, stream: MediaStream) -> None:
        if self.connection is not None:
            await self._controller._on_remote_stream(self.connection, stream, added=False)

    async def _connection_state_changed(self, state: MediaConnectionState) -> None:
        if self.connection is not None:
            await self._controller._on_connection_state(self.connection, state)


class CallController:
    """Drives one peer-to-peer call at a time for the local device.

    Both parties run the same controller; the role of each leg (caller or
    callee) is decided by who sends the first ``request``. The controller
    consumes signaling messages from a :class:`MessageTransport`, drives a
    :class:`MediaCapability`, plays ring tones and reports every visible
    change through :class:`CallCallbacks`.

    Every public operation, inbound message, timer tick and media event is
    serialized by one session lock.

    Example::

        controller = CallController(identity, transport, media)
        await controller.initialize(callbacks)
        await controller.connect()
        await controller.start_call(peer, CallKind.VIDEO)
    """

    def __init__(
        self,
        identity: LocalIdentity,
        transport: MessageTransport,
        media: MediaCapability,
        *,
        ringtone: RingtonePlayer | None = None,
        config: CallConfig | None = None,
        telemetry: TelemetryConfig | TelemetryProvider | None = None,
        reconnect_hook: ReconnectHook | None = None,
    ) -> None:
        self._identity = identity
        self._transport = transport
        self._media = media
        self._config = config or CallConfig()
        self._reconnect_hook = reconnect_hook

        if isinstance(telemetry, TelemetryProvider):
            self._telemetry: TelemetryProvider = telemetry
            self._telemetry_config = TelemetryConfig(provider=telemetry)
        elif isinstance(telemetry, TelemetryConfig):
            self._telemetry = telemetry.provider or NoopTelemetryProvider()
            self._telemetry_config = telemetry
        else:
            self._telemetry = NoopTelemetryProvider()
            self._telemetry_config = TelemetryConfig()

        cfg = self._config
        self._ringer = RingerScheduler(
            ringtone or NullRingtonePlayer(),
            tick_seconds=cfg.tick_seconds,
            outgoing_period=cfg.outgoing_ring_period,
            incoming_period=cfg.incoming_ring_period,
            max_rings=cfg.max_rings,
        )
        self._no_answer = NoAnswerTimer(
            self._on_wait_expired,
            ticks=cfg.no_answer_ticks,
            tick_seconds=cfg.tick_seconds,
        )
        self._call_timer = CallTimer(tick_seconds=cfg.tick_seconds)
        self._ledger = DedupLedger(cfg.dedup_capacity, cfg.closed_call_capacity)
        self._composer = SignalComposer(identity)
        self._lock = SessionLock()
        self._session = CallSession()
        self._callbacks = CallCallbacks.silent()
        self._status = CallStatus.IDLE
        self._wait_reason = EndReason.NO_ANSWER
        self._subscription_id: str | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._outbox: deque[_Outgoing] = deque()
        self._outbox_task: asyncio.Task[Any] | None = None

    # -- Properties --

    @property
    def identity(self) -> LocalIdentity:
        return self._identity

    @property
    def session(self) -> CallSession:
        return self._session

    @property
    def is_idle(self) -> bool:
        return not self._session.is_active

    @property
    def status(self) -> CallStatus:
        return self._status

    @property
    def config(self) -> CallConfig:
        return self._config

    @property
    def telemetry(self) -> TelemetryProvider:
        return self._telemetry

    @property
    def ledger(self) -> DedupLedger:
        return self._ledger

    @property
    def ringer(self) -> RingerScheduler:
        return self._ringer

    # -- Lifecycle --

    async def connect(self) -> None:
        """Subscribe to the signaling topic."""
        if self._subscription_id is not None:
            return
        self._subscription_id = await self._transport.subscribe(
            self._config.topic, self._on_wire_message
        )
        logger.info(
            "Listening for calls on topic %r as %s/%s",
            self._config.topic,
            self._identity.user_id,
            self._identity.device_id,
        )

    async def close(self) -> None:
        """End any active call, stop all timers and unsubscribe."""
        async with self._lock.locked():
            await self._terminate(self_initiated=True, reason=EndReason.CLOSED)
        if self._subscription_id is not None:
            await self._transport.unsubscribe(self._config.topic, self._subscription_id)
            self._subscription_id = None
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
        self._tasks.clear()
        self._outbox.clear()
        self._outbox_task = None

    async def initialize(
        self, callbacks: CallCallbacks | Mapping[str, Callable[..., Any]]
    ) -> None:
        """Register the UI callbacks.

        Raises:
            IncompleteCallbacksError: If a required callback is missing or
                not callable.
        """
        if not isinstance(callbacks, CallCallbacks):
            callbacks = CallCallbacks.from_mapping(callbacks)
        async with self._lock.locked():
            self._callbacks = callbacks

    # -- Public operations --

    async def start_call(self, peer: PeerProfile, kind: CallKind = CallKind.AUDIO) -> str:
        """Ring *peer* and return the new call id.

        Raises:
            CallAlreadyActiveError: If a call is already in progress.
            ValueError: If *peer* has no room to signal through.
        """
        if peer.room_id is None:
            raise ValueError("peer.room_id is required to place a call")

        async with self._lock.locked():
            session = self._session
            if session.is_active:
                raise CallAlreadyActiveError(f"Call {session.call_id} is already in progress")

            call_id = uuid4().hex
            session.begin(CallRole.CALLER, peer, kind, call_id)
            self._open_session_span()
            logger.info(
                "Calling %s (%s call %s)",
                peer.id,
                kind,
                call_id,
                extra={"call_id": call_id, "peer_id": peer.id},
            )

            await self._emit("on_caller_details_set", peer)
            await self._emit("on_call_view_changed", True, kind)
            await self._set_status(CallStatus.REACHING_OUT)
            self._start_local_media()
            await self._send(SignalKind.REQUEST, self._request_payload())

            name = peer.display_name
            actions: list[Callable[[], Any]] = []
            if self._config.reannounce_every_ticks is not None:
                actions.append(self._reannounce_action(call_id))
            self._start_wait(
                EndReason.NO_ANSWER,
                on_expire=self._notice_action(f"{name} is not available for a call right now"),
                per_tick_actions=actions,
            )
            return call_id

    async def handle_signaling_message(self, message: SignalingMessage | WireMessage) -> None:
        """Process one inbound signaling message.

        Malformed, duplicate, stale and misrouted messages are dropped
        without raising.
        """
        if not isinstance(message, SignalingMessage):
            try:
                message = SignalingMessage.from_wire(message)
            except ValidationError as exc:
                logger.debug("Dropping malformed signaling message: %s", exc)
                self._record_discard("malformed")
                return

        async with self._lock.locked():
            await self._dispatch(message)

    async def accept_call(self) -> None:
        """Pick up the ringing incoming call.

        Raises:
            NoActiveCallError: If no incoming call is ringing.
        """
        async with self._lock.locked():
            session = self._require_ringing_incoming()
            self._ringer.stop(RingerRole.INCOMING)
            await self._emit("on_call_view_changed", True, session.kind)
            await self._emit("on_incoming_call_changed", False, session.kind)
            await self._send(SignalKind.ACCEPT, {"answering_device": self._identity.device_id})
            session.negotiation = NegotiationState.AWAITING_OFFER
            await self._set_status(CallStatus.CONNECTING)
            self._start_local_media()
            logger.info("Accepted call %s", session.call_id, extra={"call_id": session.call_id})

    async def decline_call(self) -> None:
        """Reject the ringing incoming call and tell the caller.

        Raises:
            NoActiveCallError: If no incoming call is ringing.
        """
        async with self._lock.locked():
            session = self._require_ringing_incoming()
            self._ringer.stop(RingerRole.INCOMING)
            await self._send(SignalKind.DECLINE)
            logger.info("Declined call %s", session.call_id, extra={"call_id": session.call_id})
            await self._terminate(self_initiated=False, reason=EndReason.DECLINED)

    async def end_call(self, self_initiated: bool = False) -> None:
        """Tear the call down.

        With ``self_initiated`` the other leg is told with an ``end``
        message. Safe to call when no call is active.
        """
        async with self._lock.locked():
            reason = EndReason.LOCAL_HANGUP if self_initiated else EndReason.CLOSED
            await self._terminate(self_initiated=self_initiated, reason=reason)

    async def toggle_audio(self) -> bool:
        """Mute or unmute the microphone and return the new muted state.

        Raises:
            LocalMediaNotReadyError: If local media is not attached.
        """
        async with self._lock.locked():
            stream = self._require_local_stream()
            muted = not self._session.audio_muted
            self._session.audio_muted = muted
            for track in stream.audio_tracks():
                track.enabled = not muted
            await self._emit("on_audio_mute_changed", muted)
            return muted

    async def toggle_video(self) -> bool:
        """Turn the camera off or on and return the new muted state.

        Raises:
            LocalMediaNotReadyError: If local media is not attached.
        """
        async with self._lock.locked():
            stream = self._require_local_stream()
            muted = not self._session.video_muted
            self._session.video_muted = muted
            for track in stream.video_tracks():
                track.enabled = not muted
            await self._emit("on_video_mute_changed", muted)
            return muted

    # -- Inbound dispatch --

    async def _on_wire_message(self, data: WireMessage) -> None:
        await self.handle_signaling_message(data)

    async def _dispatch(self, msg: SignalingMessage) -> None:
        if self._ledger.is_closed(msg.call_id):
            self._discard(msg, "closed_call")
            return
        if not self._ledger.record(msg.id, msg.call_id):
            self._discard(msg, "duplicate")
            return

        local = self._identity
        session = self._session

        if msg.sender.id == local.user_id:
            if msg.sender_device != local.device_id and self._is_handled_elsewhere(msg):
                await self._dismiss_answered_elsewhere()
                return
            if (
                msg.kind in _SIBLING_OUTCOMES
                and msg.call_id is not None
                and msg.call_id != session.call_id
            ):
                # A sibling finished a call whose request we have not seen.
                self._ledger.close_call(msg.call_id)
            self._discard(msg, "self")
            return

        if msg.target_device is not None and msg.target_device != local.device_id:
            # The peer is talking to another device of ours about our call.
            if self._is_own_incoming_call(msg):
                await self._dismiss_answered_elsewhere()
                return
            if (
                msg.kind in (SignalKind.END, SignalKind.DECLINE)
                and msg.call_id is not None
                and msg.call_id != session.call_id
            ):
                self._ledger.close_call(msg.call_id)
            self._discard(msg, "other_device")
            return

        if (
            session.target_device is not None
            and msg.sender_device is not None
            and msg.sender_device != session.target_device
        ):
            self._discard(msg, "other_device")
            return

        if msg.kind == SignalKind.REQUEST:
            await self._handle_request(msg)
            return

        if not session.is_active or (msg.call_id is not None and msg.call_id != session.call_id):
            if msg.kind in (SignalKind.END, SignalKind.DECLINE) and msg.call_id is not None:
                # Keeps a late request of that call from ringing.
                self._ledger.close_call(msg.call_id)
            self._discard(msg, "idle" if not session.is_active else "other_call")
            return

        handler = {
            SignalKind.RING: self._handle_ring,
            SignalKind.ACCEPT: self._handle_accept,
            SignalKind.DECLINE: self._handle_decline,
            SignalKind.END: self._handle_end,
            SignalKind.OFFER: self._handle_description,
            SignalKind.ANSWER: self._handle_description,
            SignalKind.ICE_CANDIDATE: self._handle_candidate,
        }[msg.kind]
        await handler(msg)

    def _is_handled_elsewhere(self, msg: SignalingMessage) -> bool:
        session = self._session
        return (
            msg.kind in _SIBLING_OUTCOMES
            and session.role == CallRole.CALLEE
            and session.negotiation == NegotiationState.NONE
            and msg.call_id == session.call_id
        )

    def _is_own_incoming_call(self, msg: SignalingMessage) -> bool:
        session = self._session
        return (
            session.role == CallRole.CALLEE
            and session.peer is not None
            and msg.sender.id == session.peer.id
            and msg.call_id == session.call_id
        )

    async def _handle_request(self, msg: SignalingMessage) -> None:
        session = self._session
        if session.initiation_seen or session.is_active:
            self._discard(msg, "busy")
            return
        try:
            kind = CallKind(msg.payload.get("call_kind", CallKind.AUDIO))
        except ValueError:
            self._discard(msg, "malformed")
            return

        peer = msg.sender
        if peer.room_id is None:
            peer = peer.model_copy(update={"room_id": msg.channel_id})
        call_id = msg.call_id or msg.id
        session.begin(
            CallRole.CALLEE,
            peer,
            kind,
            call_id,
            target_device=msg.sender_device,
        )
        session.initiation_seen = True
        self._open_session_span()
        logger.info(
            "Incoming %s call %s from %s",
            kind,
            call_id,
            peer.id,
            extra={"call_id": call_id, "peer_id": peer.id},
        )

        self._ringer.start(RingerRole.INCOMING)
        await self._emit("on_caller_details_set", peer)
        await self._emit("on_incoming_call_changed", True, kind)
        await self._send(SignalKind.RING)

    async def _handle_ring(self, msg: SignalingMessage) -> None:
        session = self._session
        if session.role != CallRole.CALLER or session.peer_connection is not None:
            self._discard(msg, "unexpected")
            return
        self._ringer.start(RingerRole.OUTGOING)
        await self._set_status(CallStatus.RINGING)
        assert session.peer is not None
        self._start_wait(
            EndReason.NO_ANSWER,
            on_expire=self._notice_action(f"{session.peer.display_name} did not answer"),
        )

    async def _handle_accept(self, msg: SignalingMessage) -> None:
        session = self._session
        if session.role != CallRole.CALLER or session.peer_connection is not None:
            self._discard(msg, "unexpected")
            return
        session.target_device = msg.payload.get("answering_device") or msg.sender_device
        self._ringer.stop(RingerRole.OUTGOING)
        assert session.peer is not None
        self._start_wait(
            EndReason.NO_ANSWER,
            on_expire=self._notice_action(f"Could not connect to {session.peer.display_name}"),
        )
        logger.info(
            "Call %s accepted on device %s",
            session.call_id,
            session.target_device,
            extra={"call_id": session.call_id},
        )
        self._open_peer_connection()
        await self._set_status(CallStatus.CONNECTING)

    async def _handle_decline(self, msg: SignalingMessage) -> None:
        session = self._session
        if session.role != CallRole.CALLER:
            self._discard(msg, "unexpected")
            return
        assert session.peer is not None
        notice = f"{session.peer.display_name} declined the call"
        self._ringer.stop(RingerRole.OUTGOING)
        await self._terminate(self_initiated=False, reason=EndReason.REMOTE_DECLINED)
        await self._notify(notice)

    async def _handle_end(self, msg: SignalingMessage) -> None:
        await self._terminate(self_initiated=False, reason=EndReason.REMOTE_HANGUP)

    async def _handle_description(self, msg: SignalingMessage) -> None:
        session = self._session
        try:
            description = SessionDescription.from_dict(msg.payload["description"])
        except (KeyError, TypeError):
            self._discard(msg, "malformed")
            return

        pc = session.peer_connection
        if description.type == "offer":
            generation = msg.payload.get("generation")
            if (
                pc is not None
                and session.role == CallRole.CALLEE
                and generation is not None
                and session.remote_generation is not None
                and generation != session.remote_generation
            ):
                logger.info("Caller opened a new connection, replacing ours")
                self._call_timer.stop()
                session.connection = ConnectionState.CONNECTING
                await self._discard_peer_connection()
                pc = None
            if pc is None:
                if session.role != CallRole.CALLEE:
                    self._discard(msg, "no_connection")
                    return
                pc = self._open_peer_connection(attach_tracks=False)
            session.remote_generation = generation
        elif pc is None:
            self._discard(msg, "no_connection")
            return

        with self._span(SpanKind.CALL_NEGOTIATION, f"apply_{description.type}"):
            try:
                if description.type == "offer" and pc.signaling_state == "have-local-offer":
                    if session.role == CallRole.CALLER:
                        logger.info("Ignoring colliding offer for call %s", session.call_id)
                        return
                    await pc.set_local_description(SessionDescription(type="rollback", sdp=""))

                await pc.set_remote_description(description)
                await self._flush_candidates(pc)

                if description.type == "offer":
                    self._attach_local_tracks(pc)
                    answer = await pc.create_answer()
                    await pc.set_local_description(answer)
                    await self._send(SignalKind.ANSWER, {"description": answer.to_dict()})
                    session.negotiation = NegotiationState.ANSWER_SENT
                else:
                    session.negotiation = NegotiationState.STABLE
            except MediaError as exc:
                logger.warning(
                    "Could not apply remote %s for call %s: %s",
                    description.type,
                    session.call_id,
                    exc,
                    extra={"call_id": session.call_id},
                )

    async def _handle_candidate(self, msg: SignalingMessage) -> None:
        session = self._session
        try:
            candidate = IceCandidate.from_dict(msg.payload["candidate"])
        except (KeyError, TypeError):
            self._discard(msg, "malformed")
            return

        pc = session.peer_connection
        if pc is None:
            if session.role != CallRole.CALLEE:
                self._discard(msg, "no_connection")
                return
            pc = self._open_peer_connection(attach_tracks=False)

        if pc.remote_description is None:
            session.pending_candidates.append(candidate)
            return
        await self._apply_candidate(pc, candidate)

    async def _flush_candidates(self, pc: PeerConnection) -> None:
        pending, self._session.pending_candidates = self._session.pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(pc, candidate)

    async def _apply_candidate(self, pc: PeerConnection, candidate: IceCandidate) -> None:
        try:
            await pc.add_ice_candidate(candidate)
        except MediaError as exc:
            logger.warning("Dropping rejected ICE candidate: %s", exc)

    # -- Peer connection events --

    async def _on_local_candidate(self, pc: PeerConnection, candidate: IceCandidate) -> None:
        async with self._lock.locked():
            if not self._is_current(pc):
                return
            await self._send(SignalKind.ICE_CANDIDATE, {"candidate": candidate.to_dict()})

    async def _on_negotiation_needed(self, pc: PeerConnection) -> None:
        async with self._lock.locked():
            if not self._is_current(pc):
                return
            if pc.signaling_state != "stable":
                logger.debug("Negotiation deferred while %s", pc.signaling_state)
                return
            session = self._session
            with self._span(SpanKind.CALL_NEGOTIATION, "create_offer"):
                try:
                    offer = await pc.create_offer()
                    await pc.set_local_description(offer)
                except MediaError as exc:
                    logger.warning("Could not create offer for call %s: %s", session.call_id, exc)
                    return
            await self._send(
                SignalKind.OFFER,
                {
                    "description": offer.to_dict(),
                    "generation": session.connection_generation,
                },
            )
            session.negotiation = NegotiationState.OFFER_SENT

    async def _on_remote_stream(
        self, pc: PeerConnection, stream: MediaStream, *, added: bool
    ) -> None:
        async with self._lock.locked():
            if not self._is_current(pc):
                return
            session = self._session
            if added:
                session.remote_stream = stream
                await self._emit("on_remote_stream_added", stream)
            elif session.remote_stream is not None and session.remote_stream.id == stream.id:
                session.remote_stream = None

    async def _on_connection_state(self, pc: PeerConnection, state: MediaConnectionState) -> None:
        async with self._lock.locked():
            if not self._is_current(pc):
                return
            session = self._session
            logger.debug(
                "Call %s connection %s", session.call_id, state, extra={"call_id": session.call_id}
            )

            if state == MediaConnectionState.NEW:
                session.connection = ConnectionState.NEW
                await self._set_status(CallStatus.CONNECTING)
                self._start_wait(EndReason.NO_ANSWER)
            elif state == MediaConnectionState.CONNECTING:
                session.connection = ConnectionState.CONNECTING
            elif state == MediaConnectionState.CONNECTED:
                session.connection = ConnectionState.CONNECTED
                session.negotiation = NegotiationState.STABLE
                self._no_answer.stop()
                await self._set_status(CallStatus.CONNECTED)
                self._call_timer.start(self._on_call_tick)
            elif state in _LOST_STATES:
                await self._on_connection_lost()

    async def _on_connection_lost(self) -> None:
        session = self._session
        logger.warning(
            "Call %s lost its media connection",
            session.call_id,
            extra={"call_id": session.call_id},
        )
        session.connection = ConnectionState.RECONNECTING
        self._call_timer.stop()
        await self._discard_peer_connection()
        await self._set_status(CallStatus.RECONNECTING)

        if session.role == CallRole.CALLER:
            try:
                if self._reconnect_hook is not None:
                    await maybe_await(self._reconnect_hook(self))
                else:
                    self.reconnect()
            except Exception:
                logger.exception("Reconnect hook failed for call %s", session.call_id)
        else:
            self._start_wait(EndReason.CONNECTION_LOST)

    def reconnect(self) -> None:
        """Open a fresh peer connection for the current call.

        The default caller reaction to a dropped connection. Adding the
        local tracks to the new connection triggers a new offer. Must be
        called while the controller is handling an event, e.g. from a
        reconnect hook.
        """
        if self._session.is_active and self._session.peer_connection is None:
            self._open_peer_connection()

    # -- Timer callbacks --

    async def _on_call_tick(self, _tick: int) -> None:
        async with self._lock.locked():
            session = self._session
            if session.connection != ConnectionState.CONNECTED:
                return
            session.elapsed_seconds += 1
            await self._emit("on_call_time_updated", session.elapsed_seconds)

    async def _on_wait_expired(self) -> None:
        async with self._lock.locked():
            await self._terminate(self_initiated=True, reason=self._wait_reason)

    def _start_wait(
        self,
        reason: EndReason,
        *,
        on_expire: Callable[[], Any] | None = None,
        per_tick_actions: list[Callable[[], Any]] | None = None,
    ) -> None:
        self._wait_reason = reason
        self._no_answer.start(on_expire=on_expire, per_tick_actions=per_tick_actions or ())

    def _reannounce_action(self, call_id: str) -> Callable[[], Any]:
        every = self._config.reannounce_every_ticks or 1
        counter = itertools.count(1)

        async def reannounce() -> None:
            if next(counter) % every:
                return
            async with self._lock.locked():
                session = self._session
                if session.call_id != call_id or session.target_device is not None:
                    return
                logger.debug("Re-announcing call %s", call_id)
                await self._send(SignalKind.REQUEST, self._request_payload())

        return reannounce

    def _notice_action(self, text: str) -> Callable[[], Any]:
        async def notice() -> None:
            await self._notify(text)

        return notice

    # -- Local media --

    def _start_local_media(self) -> None:
        session = self._session
        if session.local_stream is not None or session.media_task is not None:
            return
        assert session.call_id is not None
        session.media_task = self._track_task(
            self._acquire_local_media(session.call_id, session.kind),
            name=f"peercall_media:{session.call_id}",
        )

    async def _acquire_local_media(self, call_id: str, kind: CallKind) -> None:
        try:
            with self._span(SpanKind.MEDIA_ACQUIRE, "acquire_local_stream", call_id=call_id):
                stream = await self._media.acquire_local_stream(kind)
        except MediaError as exc:
            logger.warning(
                "Local media unavailable for call %s: %s",
                call_id,
                exc,
                extra={"call_id": call_id},
            )
            async with self._lock.locked():
                if self._session.call_id == call_id:
                    self._session.media_task = None
                    await self._notify("Could not access your camera or microphone")
            return

        async with self._lock.locked():
            session = self._session
            if session.call_id != call_id:
                logger.debug("Discarding local media of finished call %s", call_id)
                stream.stop()
                return
            session.media_task = None
            session.local_stream = stream
            await self._emit("on_local_stream_added", stream)
            pc = session.peer_connection
            if pc is not None and (
                session.role == CallRole.CALLER or pc.remote_description is not None
            ):
                self._attach_local_tracks(pc)

    def _attach_local_tracks(self, pc: PeerConnection) -> None:
        session = self._session
        stream = session.local_stream
        if stream is None or session.tracks_attached:
            return
        session.tracks_attached = True
        for track in stream.get_tracks():
            pc.add_track(track, stream)

    # -- Peer connection management --

    def _open_peer_connection(self, *, attach_tracks: bool = True) -> PeerConnection:
        """Create and adopt a peer connection.

        The callee passes ``attach_tracks=False`` and attaches once the
        caller's offer is applied, so its tracks ride in the answer.
        """
        session = self._session
        router = _ConnectionEvents(self)
        config = PeerConnectionConfig(ice_servers=list(self._config.ice_servers))
        pc = self._media.create_peer_connection(config, router.bind())
        router.connection = pc
        session.peer_connection = pc
        session.connection_generation += 1
        session.pending_candidates = []
        session.tracks_attached = False
        logger.debug(
            "Opened peer connection #%d for call %s",
            session.connection_generation,
            session.call_id,
        )
        if attach_tracks:
            self._attach_local_tracks(pc)
        return pc

    async def _discard_peer_connection(self) -> None:
        session = self._session
        pc, session.peer_connection = session.peer_connection, None
        session.pending_candidates = []
        if session.remote_stream is not None:
            session.remote_stream.stop()
            session.remote_stream = None
        if pc is not None:
            try:
                await pc.close()
            except Exception:
                logger.exception("Error closing peer connection for call %s", session.call_id)

    def _is_current(self, pc: PeerConnection) -> bool:
        if self._session.peer_connection is not pc:
            logger.debug("Ignoring event from a discarded peer connection")
            return False
        return True

    # -- Teardown --

    async def _terminate(self, *, self_initiated: bool, reason: EndReason) -> None:
        session = self._session
        was_active = session.is_active
        kind = session.kind
        call_id = session.call_id

        # Composed while the session still names the room, published after
        # the local teardown.
        farewell = self._compose(SignalKind.END) if self_initiated and was_active else None

        self._no_answer.stop()
        task, session.media_task = session.media_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if session.local_stream is not None:
            session.local_stream.stop()
            session.local_stream = None
        await self._discard_peer_connection()
        self._ringer.stop_all()
        self._call_timer.stop()
        if farewell is not None:
            await self._publish(farewell)

        if not was_active:
            return

        await self._emit("on_call_view_changed", False, kind)
        await self._emit("on_incoming_call_changed", False, kind)
        await self._emit("on_call_time_updated", 0)
        await self._set_status(CallStatus.IDLE)

        if call_id is not None:
            self._ledger.close_call(call_id)
        self._close_session_span(reason)
        logger.info(
            "Call %s ended (%s) after %ds",
            call_id,
            reason,
            session.elapsed_seconds,
            extra={"call_id": call_id, "reason": str(reason)},
        )
        session.reset()

    async def _dismiss_answered_elsewhere(self) -> None:
        logger.info("Call %s was handled on another device", self._session.call_id)
        await self._terminate(self_initiated=False, reason=EndReason.ANSWERED_ELSEWHERE)

    # -- Helpers --

    def _require_ringing_incoming(self) -> CallSession:
        session = self._session
        if session.role != CallRole.CALLEE or session.negotiation != NegotiationState.NONE:
            raise NoActiveCallError("No incoming call is ringing")
        return session

    def _require_local_stream(self) -> MediaStream:
        stream = self._session.local_stream
        if stream is None:
            raise LocalMediaNotReadyError("Local media is not attached yet")
        return stream

    def _request_payload(self) -> dict[str, Any]:
        return {"call_kind": str(self._session.kind), "device_id": self._identity.device_id}

    async def _send(self, kind: SignalKind, payload: dict[str, Any] | None = None) -> None:
        entry = self._compose(kind, payload)
        if entry is not None:
            await self._publish(entry)

    def _compose(
        self, kind: SignalKind, payload: dict[str, Any] | None = None
    ) -> _Outgoing | None:
        session = self._session
        if session.channel_id is None:
            logger.warning("Cannot send %s without a room", kind)
            return None
        message = self._composer.compose(kind, session, payload)
        return _Outgoing(
            kind=kind,
            wire=message.to_wire(self._config.topic),
            channel_id=session.channel_id,
            call_id=session.call_id,
        )

    async def _publish(self, entry: _Outgoing) -> None:
        """Publish *entry* once, handing it to the outbox when that fails.

        Retries run in a background task so the session lock is never held
        across a backoff sleep.  While earlier messages are still queued,
        new ones join the queue so the peer receives them in order.
        """
        if self._outbox:
            self._outbox.append(entry)
            return
        try:
            await self._transport.publish(self._config.topic, entry.wire, entry.channel_id)
            return
        except Exception as exc:
            if self._config.publish_retry.max_retries == 0:
                self._log_send_failure(entry)
                return
            logger.warning(
                "Send of %s failed (%s), retrying in background",
                entry.kind,
                exc,
                extra={"call_id": entry.call_id},
            )
        entry.retried = True
        self._outbox.append(entry)
        if self._outbox_task is None:
            self._outbox_task = self._track_task(self._drain_outbox(), name="peercall_outbox")

    async def _drain_outbox(self) -> None:
        policy = self._config.publish_retry
        try:
            while self._outbox:
                entry = self._outbox[0]
                entry_policy = policy
                if entry.retried:
                    # The inline attempt already spent one try.
                    await asyncio.sleep(backoff_delay(policy, 0))
                    entry_policy = policy.model_copy(
                        update={"max_retries": max(policy.max_retries - 1, 0)}
                    )
                try:
                    await retry_with_backoff(
                        self._transport.publish,
                        entry_policy,
                        self._config.topic,
                        entry.wire,
                        entry.channel_id,
                    )
                except Exception:
                    self._log_send_failure(entry)
                self._outbox.popleft()
        finally:
            self._outbox_task = None

    def _log_send_failure(self, entry: _Outgoing) -> None:
        logger.exception(
            "Failed to send %s for call %s",
            entry.kind,
            entry.call_id,
            extra={"call_id": entry.call_id},
        )

    async def _emit(self, name: str, *args: Any) -> None:
        await self._callbacks.emit(name, *args)

    async def _notify(self, text: str) -> None:
        await self._callbacks.emit("on_notice", text)

    async def _set_status(self, status: CallStatus) -> None:
        if status == self._status:
            return
        self._status = status
        await self._emit("on_call_status_changed", status)

    def _discard(self, msg: SignalingMessage, reason: str) -> None:
        logger.debug(
            "Discarding %s %s from %s/%s: %s",
            msg.kind,
            msg.id,
            msg.sender.id,
            msg.sender_device,
            reason,
            extra={"call_id": msg.call_id, "reason": reason},
        )
        self._record_discard(reason)

    def _record_discard(self, reason: str) -> None:
        self._telemetry.record_metric(
            Metric.SIGNAL_DISCARDED, 1, attributes={Attr.DISCARD_REASON: reason}
        )

    def _open_session_span(self) -> None:
        session = self._session
        if not self._telemetry_config.records(SpanKind.CALL_SESSION):
            return
        assert session.peer is not None
        attributes: dict[str, Any] = dict(self._telemetry_config.attributes)
        attributes.update(
            {
                Attr.CALL_ID: session.call_id,
                Attr.CALL_ROLE: str(session.role),
                Attr.CALL_KIND: str(session.kind),
                Attr.PEER_ID: session.peer.id,
            }
        )
        session.span_id = self._telemetry.start_span(
            SpanKind.CALL_SESSION,
            "call_session",
            attributes=attributes,
            call_id=session.call_id,
            channel_id=session.channel_id,
        )

    def _close_session_span(self, reason: EndReason) -> None:
        session = self._session
        attributes = {
            Attr.CALL_ROLE: str(session.role),
            Attr.CALL_KIND: str(session.kind),
            Attr.CALL_END_REASON: str(reason),
        }
        self._telemetry.record_metric(
            Metric.CALL_DURATION, session.elapsed_seconds, unit="s", attributes=attributes
        )
        if session.span_id is not None:
            self._telemetry.end_span(
                session.span_id,
                attributes={
                    Attr.CALL_END_REASON: str(reason),
                    Attr.CALL_CONNECTED_SECONDS: session.elapsed_seconds,
                },
            )

    @contextlib.contextmanager
    def _span(self, kind: SpanKind, name: str, *, call_id: str | None = None) -> Iterator[None]:
        if not self._telemetry_config.records(kind):
            yield
            return
        session = self._session
        with self._telemetry.span(
            kind,
            name,
            parent_id=session.span_id,
            call_id=call_id or session.call_id,
            channel_id=session.channel_id,
        ):
            yield

    def _track_task(self, coro: Any, *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Unhandled exception in task %s: %s", task.get_name(), exc, exc_info=exc)
