"""Configuration models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RetryPolicy(BaseModel):
    """Configures retry behaviour for outbound signaling."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=0.5, gt=0.0)
    max_delay_seconds: float = Field(default=10.0, gt=0.0)
    exponential_base: float = Field(default=2.0, gt=0.0)


class IceServer(BaseModel):
    """A STUN/TURN server handed to every new peer connection."""

    urls: list[str]
    username: str | None = None
    credential: str | None = None


class CallConfig(BaseModel):
    """Timing and wiring configuration for a :class:`CallController`.

    Ringer periods and countdowns are expressed in ticks; one tick lasts
    ``tick_seconds``. Tests run with ``tick_seconds=0`` so that every tick
    is a single event-loop yield.
    """

    topic: str = "call"
    tick_seconds: float = Field(default=1.0, ge=0.0)
    outgoing_ring_period: int = Field(default=5, gt=0)
    incoming_ring_period: int = Field(default=12, gt=0)
    max_rings: int = Field(default=20, gt=0)
    no_answer_ticks: int = Field(default=30, gt=0)
    reannounce_every_ticks: int | None = Field(default=5, gt=0)
    dedup_capacity: int = Field(default=1024, gt=0)
    closed_call_capacity: int = Field(default=256, gt=0)
    ice_servers: list[IceServer] = Field(default_factory=list)
    publish_retry: RetryPolicy = Field(default_factory=RetryPolicy)
