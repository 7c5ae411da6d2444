"""Signaling message model and wire conversion."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from peercall.models.enums import SignalKind
from peercall.models.identity import PeerProfile

# Key the transport uses to route a wire message to topic subscribers.
TOPIC_KEY = "brokertype"


class SignalingMessage(BaseModel):
    """A single signaling message exchanged between the two legs of a call.

    Delivery is at-least-once and broadcast to every device subscribed to
    the room, so ``id`` is what makes processing idempotent and
    ``target_device`` is what keeps sibling devices of one identity out of
    a call they did not pick up.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    kind: SignalKind
    sender: PeerProfile
    sender_device: str | None = None
    target_device: str | None = None
    channel_id: str | None = None
    call_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    sent_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_wire(self, topic: str) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary routed to *topic*."""
        data = self.model_dump(mode="json")
        data[TOPIC_KEY] = topic
        return data

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> SignalingMessage:
        """Parse a wire dictionary, ignoring the routing key.

        Raises:
            pydantic.ValidationError: If the message is malformed or its
                kind is not a known signal kind.
        """
        fields = {k: v for k, v in data.items() if k != TOPIC_KEY}
        return cls.model_validate(fields)
