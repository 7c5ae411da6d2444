"""Tests for offer/answer negotiation, local media and reconnection."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from peercall.core.controller import CallController, LocalMediaNotReadyError
from peercall.media.base import IceCandidate, MediaStream, MediaTrack
from peercall.media.mock import MockMediaCapability
from peercall.models.config import CallConfig
from peercall.models.enums import (
    CallKind,
    CallStatus,
    ConnectionState,
    EndReason,
    MediaConnectionState,
    NegotiationState,
    SignalKind,
)
from peercall.telemetry import Attr, Metric, SpanKind
from tests.conftest import Leg, make_config, make_identity, make_leg, make_message, make_peer

ALICE = make_identity("alice")
BOB = make_identity("bob")


def _offer(sdp: str = "remote-offer", generation: int | None = 1) -> dict[str, Any]:
    payload: dict[str, Any] = {"description": {"type": "offer", "sdp": sdp}}
    if generation is not None:
        payload["generation"] = generation
    return payload


def _answer(sdp: str = "remote-answer") -> dict[str, Any]:
    return {"description": {"type": "answer", "sdp": sdp}}


async def _accepted_incoming(bob: Leg, advance, call_id: str = "call-1") -> None:
    """Ring bob with a hand-made request from alice and pick it up."""
    await bob.controller.handle_signaling_message(
        make_message(
            SignalKind.REQUEST,
            ALICE,
            call_id=call_id,
            payload={"call_kind": "audio", "device_id": "alice-phone"},
        )
    )
    await bob.controller.accept_call()
    await advance()


async def _from_alice(bob: Leg, kind: SignalKind, payload: dict[str, Any]) -> None:
    await bob.controller.handle_signaling_message(
        make_message(kind, ALICE, target_device="bob-phone", payload=payload)
    )


async def _accepted_outgoing(alice: Leg, advance) -> str:
    """Call bob and feed back a hand-made accept from bob's phone."""
    call_id = await alice.controller.start_call(make_peer(BOB))
    await advance()
    await _from_bob(
        alice, SignalKind.ACCEPT, call_id, {"answering_device": "bob-phone"}
    )
    await advance()
    return call_id


async def _from_bob(alice: Leg, kind: SignalKind, call_id: str, payload: dict[str, Any]) -> None:
    await alice.controller.handle_signaling_message(
        make_message(kind, BOB, call_id=call_id, target_device="alice-phone", payload=payload)
    )


async def _connected_pair(
    transport, advance, caller_config: CallConfig | None = None, **config: Any
) -> tuple[Leg, Leg]:
    cfg = make_config(**config)
    alice = await make_leg(transport, make_identity("alice"), config=caller_config or cfg)
    bob = await make_leg(transport, make_identity("bob"), config=cfg)
    await alice.controller.start_call(make_peer(bob.identity))
    await advance()
    await bob.controller.accept_call()
    await advance(30)
    return alice, bob


class TestOfferAnswer:
    async def test_audio_call_end_to_end(self, alice: Leg, bob: Leg, transport, advance) -> None:
        await alice.controller.start_call(make_peer(bob.identity))
        await advance()
        await bob.controller.accept_call()
        await advance(30)

        assert alice.controller.session.negotiation == NegotiationState.STABLE
        assert bob.controller.session.negotiation == NegotiationState.ANSWER_SENT
        (offer,) = alice.sent(transport, SignalKind.OFFER)
        assert offer["target_device"] == "bob-phone"
        assert offer["payload"]["generation"] == 1
        assert offer["payload"]["description"]["type"] == "offer"
        (answer,) = bob.sent(transport, SignalKind.ANSWER)
        assert answer["payload"]["description"]["type"] == "answer"
        # The callee's tracks ride in the answer, no renegotiation needed.
        assert bob.sent(transport, SignalKind.OFFER) == []
        assert [t.kind for t in bob.peer_connection.tracks] == ["audio"]
        assert [t.kind for t in alice.peer_connection.tracks] == ["audio"]

        await alice.peer_connection.simulate_connection_state(MediaConnectionState.CONNECTED)
        await bob.peer_connection.simulate_connection_state(MediaConnectionState.CONNECTED)
        assert alice.controller.status == CallStatus.CONNECTED
        assert alice.ui.statuses[-1] == "Connected"
        assert bob.controller.session.connection == ConnectionState.CONNECTED
        assert bob.controller.session.negotiation == NegotiationState.STABLE

        await alice.controller.end_call(self_initiated=True)
        await advance()
        assert alice.controller.is_idle
        assert bob.controller.is_idle

    async def test_video_call_attaches_both_tracks(self, alice: Leg, bob: Leg, transport, advance) -> None:
        await alice.controller.start_call(make_peer(bob.identity), CallKind.VIDEO)
        await advance()
        await bob.controller.accept_call()
        await advance(30)

        assert sorted(t.kind for t in alice.peer_connection.tracks) == ["audio", "video"]
        assert sorted(t.kind for t in bob.peer_connection.tracks) == ["audio", "video"]
        assert len(alice.sent(transport, SignalKind.OFFER)) == 1

    async def test_ice_candidates_cross_over(self, alice: Leg, bob: Leg, advance) -> None:
        await alice.controller.start_call(make_peer(bob.identity))
        await advance()
        await bob.controller.accept_call()
        await advance(30)

        await alice.peer_connection.simulate_ice_candidate(IceCandidate("candidate:a", "0", 0))
        await bob.peer_connection.simulate_ice_candidate(IceCandidate("candidate:b", "0", 0))
        await advance()

        assert [c.candidate for c in bob.peer_connection.candidates] == ["candidate:a"]
        assert [c.candidate for c in alice.peer_connection.candidates] == ["candidate:b"]
        assert bob.peer_connection.candidates[0].sdp_mline_index == 0

    async def test_remote_stream_reaches_ui(self, alice: Leg, bob: Leg, advance) -> None:
        await alice.controller.start_call(make_peer(bob.identity))
        await advance()
        await bob.controller.accept_call()
        await advance(30)

        stream = MediaStream(tracks=[MediaTrack(kind="audio")])
        await bob.peer_connection.simulate_remote_stream(stream)
        assert bob.ui.of("on_remote_stream_added") == [(stream,)]
        assert bob.controller.session.remote_stream is stream

        await bob.peer_connection.simulate_remote_stream_removed(stream)
        assert bob.controller.session.remote_stream is None


class TestCalleeNegotiation:
    async def test_candidates_buffered_until_offer(self, bob: Leg, advance) -> None:
        await _accepted_incoming(bob, advance)
        await _from_alice(bob, SignalKind.ICE_CANDIDATE, {"candidate": {"candidate": "c1"}})

        pc = bob.peer_connection
        assert pc.candidates == []
        assert [c.candidate for c in bob.controller.session.pending_candidates] == ["c1"]

        await _from_alice(bob, SignalKind.OFFER, _offer())

        assert [c.candidate for c in pc.candidates] == ["c1"]
        assert bob.controller.session.pending_candidates == []
        assert pc.methods() == [
            "set_remote_description",
            "add_ice_candidate",
            "add_track",
            "create_answer",
            "set_local_description",
        ]
        assert bob.controller.session.negotiation == NegotiationState.ANSWER_SENT

    async def test_candidate_after_offer_applies_immediately(self, bob: Leg, advance) -> None:
        await _accepted_incoming(bob, advance)
        await _from_alice(bob, SignalKind.OFFER, _offer())
        await _from_alice(bob, SignalKind.ICE_CANDIDATE, {"candidate": {"candidate": "c2"}})

        assert [c.candidate for c in bob.peer_connection.candidates] == ["c2"]

    async def test_answer_is_addressed_to_caller_device(self, bob: Leg, transport, advance) -> None:
        await _accepted_incoming(bob, advance)
        await _from_alice(bob, SignalKind.OFFER, _offer())

        (answer,) = bob.sent(transport, SignalKind.ANSWER)
        assert answer["target_device"] == "alice-phone"
        assert answer["payload"] == {"description": {"type": "answer", "sdp": "mock-answer-0"}}

    async def test_colliding_offer_is_rolled_back(self, bob: Leg, transport, advance) -> None:
        await _accepted_incoming(bob, advance)
        await _from_alice(bob, SignalKind.OFFER, _offer("first"))
        pc = bob.peer_connection

        # Bob starts a renegotiation of his own just as alice re-offers.
        await pc.simulate_negotiation_needed()
        assert pc.signaling_state == "have-local-offer"
        assert bob.controller.session.negotiation == NegotiationState.OFFER_SENT

        await _from_alice(bob, SignalKind.OFFER, _offer("second"))

        assert {"type": "rollback"} in [c.args for c in pc.calls]
        assert pc.remote_description is not None
        assert pc.remote_description.sdp == "second"
        assert len(bob.sent(transport, SignalKind.ANSWER)) == 2

        # The withdrawn offer is made again once stable.
        await advance()
        assert len(bob.sent(transport, SignalKind.OFFER)) == 2

    async def test_new_generation_replaces_connection(self, bob: Leg, advance) -> None:
        await _accepted_incoming(bob, advance)
        await _from_alice(bob, SignalKind.OFFER, _offer(generation=1))
        first = bob.peer_connection

        await _from_alice(bob, SignalKind.OFFER, _offer(generation=2))

        assert first.closed
        assert bob.peer_connection is not first
        assert bob.controller.session.remote_generation == 2
        assert [t.kind for t in bob.peer_connection.tracks] == ["audio"]

    async def test_same_generation_renegotiates_in_place(self, bob: Leg, advance) -> None:
        await _accepted_incoming(bob, advance)
        await _from_alice(bob, SignalKind.OFFER, _offer(generation=1))
        first = bob.peer_connection

        await _from_alice(bob, SignalKind.OFFER, _offer("again", generation=1))

        assert bob.peer_connection is first
        assert not first.closed
        assert len(first.tracks) == 1

    async def test_rejected_offer_keeps_call(self, transport, advance, caplog) -> None:
        bob = await make_leg(transport, BOB, media=MockMediaCapability(reject_descriptions=True))
        await _accepted_incoming(bob, advance)
        await _from_alice(bob, SignalKind.OFFER, _offer())

        assert bob.sent(transport, SignalKind.ANSWER) == []
        assert not bob.controller.is_idle
        assert "Could not apply remote offer" in caplog.text
        (span,) = bob.telemetry.get_spans(SpanKind.CALL_NEGOTIATION)
        assert span.status == "ok"
        await bob.controller.close()

    async def test_rejected_candidate_is_dropped(self, transport, advance, caplog) -> None:
        bob = await make_leg(transport, BOB, media=MockMediaCapability(reject_candidates=True))
        await _accepted_incoming(bob, advance)
        await _from_alice(bob, SignalKind.OFFER, _offer())
        await _from_alice(bob, SignalKind.ICE_CANDIDATE, {"candidate": {"candidate": "bad"}})

        assert bob.peer_connection.candidates == []
        assert "Dropping rejected ICE candidate" in caplog.text
        await bob.controller.close()

    async def test_malformed_description_is_discarded(self, bob: Leg, advance) -> None:
        await _accepted_incoming(bob, advance)
        await _from_alice(bob, SignalKind.OFFER, {"sdp": "missing description"})
        await _from_alice(bob, SignalKind.ICE_CANDIDATE, {"candidate": None})

        reasons = [
            m["attributes"][Attr.DISCARD_REASON]
            for m in bob.telemetry.get_metrics(Metric.SIGNAL_DISCARDED)
        ]
        assert reasons.count("malformed") == 2
        assert bob.controller.session.peer_connection is None


class TestCallerNegotiation:
    async def test_accept_opens_connection_and_offers(self, alice: Leg, transport, advance) -> None:
        call_id = await _accepted_outgoing(alice, advance)

        pc = alice.peer_connection
        assert pc.signaling_state == "have-local-offer"
        assert alice.controller.session.negotiation == NegotiationState.OFFER_SENT
        (offer,) = alice.sent(transport, SignalKind.OFFER)
        assert offer["call_id"] == call_id

        await _from_bob(alice, SignalKind.ANSWER, call_id, _answer())
        assert pc.signaling_state == "stable"
        assert alice.controller.session.negotiation == NegotiationState.STABLE

    async def test_colliding_offer_is_ignored(self, alice: Leg, advance) -> None:
        call_id = await _accepted_outgoing(alice, advance)
        pc = alice.peer_connection

        await _from_bob(alice, SignalKind.OFFER, call_id, _offer("bob-offer"))

        assert "set_remote_description" not in pc.methods()
        assert pc.signaling_state == "have-local-offer"

    async def test_candidates_before_answer_are_buffered(self, alice: Leg, advance) -> None:
        call_id = await _accepted_outgoing(alice, advance)
        await _from_bob(alice, SignalKind.ICE_CANDIDATE, call_id, {"candidate": {"candidate": "c"}})
        assert alice.peer_connection.candidates == []

        await _from_bob(alice, SignalKind.ANSWER, call_id, _answer())
        assert [c.candidate for c in alice.peer_connection.candidates] == ["c"]

    async def test_offer_before_accept_is_discarded(self, alice: Leg, advance) -> None:
        call_id = await alice.controller.start_call(make_peer(BOB))
        await advance()
        await _from_bob(alice, SignalKind.OFFER, call_id, _offer())

        assert alice.controller.session.peer_connection is None
        assert alice.media.peer_connections == []

    async def test_late_ring_after_accept_is_ignored(self, alice: Leg, advance) -> None:
        call_id = await _accepted_outgoing(alice, advance)
        await _from_bob(alice, SignalKind.RING, call_id, {})

        assert alice.controller.status == CallStatus.CONNECTING

    async def test_connection_new_state_restarts_wait(self, alice: Leg, advance) -> None:
        call_id = await _accepted_outgoing(alice, advance)
        await _from_bob(alice, SignalKind.ANSWER, call_id, _answer())

        await alice.peer_connection.simulate_connection_state(MediaConnectionState.NEW)
        assert alice.controller.session.connection == ConnectionState.NEW
        assert alice.controller.status == CallStatus.CONNECTING


class TestReconnect:
    async def test_caller_reopens_and_callee_replaces(self, transport, advance) -> None:
        alice, bob = await _connected_pair(
            transport, advance, tick_seconds=0, no_answer_ticks=10000
        )
        assert alice.controller.session.negotiation == NegotiationState.STABLE
        alice_pc = alice.peer_connection
        bob_pc = bob.peer_connection

        await alice_pc.simulate_connection_state(MediaConnectionState.CONNECTED)
        await bob_pc.simulate_connection_state(MediaConnectionState.CONNECTED)
        await advance(10)
        assert alice.controller.session.elapsed_seconds > 0

        await alice_pc.simulate_connection_state(MediaConnectionState.FAILED)
        paused = alice.controller.session.elapsed_seconds
        assert alice.controller.status == CallStatus.RECONNECTING
        assert alice.controller.session.connection == ConnectionState.RECONNECTING
        assert alice_pc.closed

        await advance(30)
        # The call clock holds while the media is down.
        assert alice.controller.session.elapsed_seconds == paused
        offers = alice.sent(transport, SignalKind.OFFER)
        assert [o["payload"]["generation"] for o in offers] == [1, 2]
        assert bob_pc.closed
        assert bob.peer_connection is not bob_pc
        assert alice.controller.session.negotiation == NegotiationState.STABLE

        # Late events of discarded connections change nothing.
        await bob_pc.simulate_connection_state(MediaConnectionState.FAILED)
        await alice_pc.simulate_connection_state(MediaConnectionState.CONNECTED)
        assert bob.controller.status == CallStatus.CONNECTED
        assert alice.controller.status == CallStatus.RECONNECTING

        await alice.peer_connection.simulate_connection_state(MediaConnectionState.CONNECTED)
        await advance(10)
        resumed = alice.controller.session.elapsed_seconds
        assert alice.controller.status == CallStatus.CONNECTED
        # One ticker resumes counting from where the clock paused.
        assert paused < resumed <= paused + 10

        await alice.controller.close()
        await bob.controller.close()

    async def test_callee_ends_call_after_grace_window(self, transport, advance) -> None:
        alice, bob = await _connected_pair(
            transport,
            advance,
            caller_config=make_config(tick_seconds=0, no_answer_ticks=10000),
            tick_seconds=0,
            no_answer_ticks=30,
        )
        await bob.peer_connection.simulate_connection_state(MediaConnectionState.CONNECTED)
        await bob.peer_connection.simulate_connection_state(MediaConnectionState.DISCONNECTED)
        assert bob.controller.status == CallStatus.RECONNECTING

        await advance(200)

        assert bob.controller.is_idle
        assert alice.controller.is_idle
        assert len(bob.sent(transport, SignalKind.END)) == 1
        (bob_span,) = bob.telemetry.get_spans(SpanKind.CALL_SESSION)
        assert bob_span.attributes[Attr.CALL_END_REASON] == EndReason.CONNECTION_LOST
        (alice_span,) = alice.telemetry.get_spans(SpanKind.CALL_SESSION)
        assert alice_span.attributes[Attr.CALL_END_REASON] == EndReason.REMOTE_HANGUP
        await alice.controller.close()
        await bob.controller.close()

    async def test_callee_recovers_within_grace_window(self, transport, advance) -> None:
        alice, bob = await _connected_pair(transport, advance)
        await alice.peer_connection.simulate_connection_state(MediaConnectionState.CONNECTED)
        await bob.peer_connection.simulate_connection_state(MediaConnectionState.CONNECTED)

        await bob.peer_connection.simulate_connection_state(MediaConnectionState.FAILED)
        assert bob.controller.session.peer_connection is None
        await alice.peer_connection.simulate_connection_state(MediaConnectionState.FAILED)
        await advance(30)

        await bob.peer_connection.simulate_connection_state(MediaConnectionState.CONNECTED)
        assert bob.controller.status == CallStatus.CONNECTED
        assert bob.controller.session.remote_generation == 2
        await alice.controller.close()
        await bob.controller.close()

    async def test_reconnect_hook_replaces_default(self, transport, advance) -> None:
        hooked: list[CallController] = []
        alice = await make_leg(transport, ALICE, reconnect_hook=hooked.append)
        call_id = await _accepted_outgoing(alice, advance)
        await _from_bob(alice, SignalKind.ANSWER, call_id, _answer())
        pc = alice.peer_connection

        await pc.simulate_connection_state(MediaConnectionState.FAILED)

        assert hooked == [alice.controller]
        assert alice.controller.session.peer_connection is None
        assert len(alice.media.peer_connections) == 1
        await alice.controller.close()

    async def test_hook_may_reconnect(self, transport, advance) -> None:
        async def hook(controller: CallController) -> None:
            controller.reconnect()

        alice = await make_leg(transport, ALICE, reconnect_hook=hook)
        call_id = await _accepted_outgoing(alice, advance)
        await _from_bob(alice, SignalKind.ANSWER, call_id, _answer())

        await alice.peer_connection.simulate_connection_state(MediaConnectionState.CLOSED)
        await advance()

        assert len(alice.media.peer_connections) == 2
        offers = alice.sent(transport, SignalKind.OFFER)
        assert offers[-1]["payload"]["generation"] == 2
        await alice.controller.close()

    async def test_failing_hook_is_logged(self, transport, advance, caplog) -> None:
        def hook(controller: CallController) -> None:
            raise RuntimeError("no network")

        alice = await make_leg(transport, ALICE, reconnect_hook=hook)
        call_id = await _accepted_outgoing(alice, advance)
        await _from_bob(alice, SignalKind.ANSWER, call_id, _answer())

        await alice.peer_connection.simulate_connection_state(MediaConnectionState.FAILED)

        assert "Reconnect hook failed" in caplog.text
        assert alice.controller.status == CallStatus.RECONNECTING
        await alice.controller.close()


class TestLocalMedia:
    async def test_mute_requires_local_media(self, transport, advance) -> None:
        gate = asyncio.Event()
        alice = await make_leg(transport, ALICE, media=MockMediaCapability(acquire_gate=gate))
        await alice.controller.start_call(make_peer(BOB), CallKind.VIDEO)
        await advance()

        with pytest.raises(LocalMediaNotReadyError):
            await alice.controller.toggle_audio()
        with pytest.raises(LocalMediaNotReadyError):
            await alice.controller.toggle_video()

        gate.set()
        await advance()
        stream = alice.controller.session.local_stream
        assert stream is not None

        assert await alice.controller.toggle_audio() is True
        assert [t.enabled for t in stream.audio_tracks()] == [False]
        assert [t.enabled for t in stream.video_tracks()] == [True]
        assert await alice.controller.toggle_video() is True
        assert [t.enabled for t in stream.video_tracks()] == [False]
        assert await alice.controller.toggle_audio() is False
        assert [t.enabled for t in stream.audio_tracks()] == [True]

        assert alice.ui.of("on_audio_mute_changed") == [(True,), (False,)]
        assert alice.ui.of("on_video_mute_changed") == [(True,)]
        await alice.controller.close()

    async def test_mute_state_resets_with_call(self, alice: Leg, advance) -> None:
        await alice.controller.start_call(make_peer(BOB))
        await advance()
        await alice.controller.toggle_audio()
        await alice.controller.end_call(self_initiated=True)

        assert not alice.controller.session.audio_muted
        with pytest.raises(LocalMediaNotReadyError):
            await alice.controller.toggle_audio()

    async def test_acquisition_abandoned_when_call_ends(self, transport, advance) -> None:
        gate = asyncio.Event()
        alice = await make_leg(transport, ALICE, media=MockMediaCapability(acquire_gate=gate))
        await alice.controller.start_call(make_peer(BOB))
        await advance()
        await alice.controller.end_call(self_initiated=True)

        gate.set()
        await advance()

        assert alice.media.streams == []
        assert alice.ui.of("on_local_stream_added") == []
        assert alice.controller.is_idle
        await alice.controller.close()

    async def test_late_stream_is_attached_to_open_connection(self, transport, advance) -> None:
        gate = asyncio.Event()
        alice = await make_leg(transport, ALICE, media=MockMediaCapability(acquire_gate=gate))
        call_id = await alice.controller.start_call(make_peer(BOB))
        await advance()
        await _from_bob(alice, SignalKind.ACCEPT, call_id, {"answering_device": "bob-phone"})
        pc = alice.peer_connection
        assert pc.tracks == []

        gate.set()
        await advance()

        assert [t.kind for t in pc.tracks] == ["audio"]
        assert len(alice.sent(transport, SignalKind.OFFER)) == 1
        await alice.controller.close()

    async def test_acquisition_failure_keeps_call(self, transport, advance, caplog) -> None:
        alice = await make_leg(transport, ALICE, media=MockMediaCapability(fail_acquisition=True))
        await alice.controller.start_call(make_peer(BOB))
        await advance()

        assert alice.ui.notices == ["Could not access your camera or microphone"]
        assert not alice.controller.is_idle
        assert "Local media unavailable" in caplog.text
        (span,) = alice.telemetry.get_spans(SpanKind.MEDIA_ACQUIRE)
        assert span.status == "error"
        with pytest.raises(LocalMediaNotReadyError):
            await alice.controller.toggle_audio()
        await alice.controller.close()
