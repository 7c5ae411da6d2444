"""Local identity and peer profile models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class PeerProfile(BaseModel):
    """Profile of a call party as carried in signaling messages.

    ``room_id`` is the chat room both parties share; it addresses every
    signaling message of a call.
    """

    id: str
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    room_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        if self.first_name:
            return self.first_name
        return self.username or self.id


class LocalIdentity(BaseModel):
    """The logged-in user on this device."""

    user_id: str
    device_id: str
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def as_profile(self, room_id: str | None) -> PeerProfile:
        """Render this identity as the sender profile of an outbound message."""
        return PeerProfile(
            id=self.user_id,
            username=self.username,
            first_name=self.first_name,
            last_name=self.last_name,
            room_id=room_id,
            metadata=dict(self.metadata),
        )
