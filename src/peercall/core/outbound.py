"""Outbound signaling message assembly."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from peercall.models.enums import SignalKind
from peercall.models.identity import LocalIdentity
from peercall.models.signal import SignalingMessage

if TYPE_CHECKING:
    from peercall.models.session import CallSession


class SignalComposer:
    """Stamps outbound messages with everything the other leg filters on.

    Every message gets a fresh id, the local sender profile (carrying the
    room id), the local device id, the pinned peer device (if any), the
    call id and the room id as channel.
    """

    def __init__(self, identity: LocalIdentity) -> None:
        self._identity = identity

    def compose(
        self,
        kind: SignalKind,
        session: CallSession,
        payload: dict[str, Any] | None = None,
    ) -> SignalingMessage:
        room_id = session.channel_id
        return SignalingMessage(
            kind=kind,
            sender=self._identity.as_profile(room_id),
            sender_device=self._identity.device_id,
            target_device=session.target_device,
            channel_id=room_id,
            call_id=session.call_id,
            payload=payload or {},
        )
