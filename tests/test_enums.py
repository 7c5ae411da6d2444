"""Tests for all string enums."""

from __future__ import annotations

import pytest

from peercall.models.enums import (
    CallKind,
    CallRole,
    CallStatus,
    EndReason,
    MediaConnectionState,
    NegotiationState,
    SignalKind,
)


class TestSignalKind:
    def test_wire_values(self) -> None:
        assert [k.value for k in SignalKind] == [
            "request",
            "ring",
            "accept",
            "decline",
            "end",
            "offer",
            "answer",
            "ice_candidate",
        ]

    def test_invalid_raises(self) -> None:
        with pytest.raises(ValueError):
            SignalKind("hangup")


class TestCallKind:
    def test_values(self) -> None:
        assert CallKind("audio") is CallKind.AUDIO
        assert CallKind("video") is CallKind.VIDEO
        assert len(CallKind) == 2


class TestCallStatus:
    def test_display_text(self) -> None:
        assert CallStatus.IDLE == ""
        assert CallStatus.REACHING_OUT == "Reaching out"
        assert CallStatus.RINGING == "Ringing..."
        assert CallStatus.CONNECTING == "Connecting..."
        assert CallStatus.CONNECTED == "Connected"
        assert CallStatus.RECONNECTING == "Reconnecting"


class TestRolesAndStates:
    def test_role_values(self) -> None:
        assert {r.value for r in CallRole} == {"unassigned", "caller", "callee"}

    def test_negotiation_starts_at_none(self) -> None:
        assert list(NegotiationState)[0] == NegotiationState.NONE

    def test_lost_media_states(self) -> None:
        assert MediaConnectionState("failed") is MediaConnectionState.FAILED
        assert MediaConnectionState("disconnected") is MediaConnectionState.DISCONNECTED

    def test_end_reasons_are_unique_strings(self) -> None:
        values = [r.value for r in EndReason]
        assert len(values) == len(set(values))
        assert str(EndReason.ANSWERED_ELSEWHERE) == "answered_elsewhere"
