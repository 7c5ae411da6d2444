"""Shared test fixtures and helpers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

import pytest

from peercall.core.callbacks import CallCallbacks
from peercall.core.controller import CallController
from peercall.media.mock import MockMediaCapability, MockPeerConnection
from peercall.media.ringtone import MockRingtonePlayer
from peercall.models.config import CallConfig, RetryPolicy
from peercall.models.enums import SignalKind
from peercall.models.identity import LocalIdentity, PeerProfile
from peercall.models.signal import SignalingMessage
from peercall.realtime.memory import InMemoryTransport
from peercall.telemetry.mock import MockTelemetryProvider

ROOM = "room-1"

CALLBACK_NAMES = (
    "on_caller_details_set",
    "on_incoming_call_changed",
    "on_call_view_changed",
    "on_remote_stream_added",
    "on_local_stream_added",
    "on_call_time_updated",
    "on_audio_mute_changed",
    "on_video_mute_changed",
    "on_call_status_changed",
    "on_notice",
)


@pytest.fixture
def advance() -> Callable[..., Coroutine[Any, Any, None]]:
    """Yield control to let pending tasks run without real delay.

    Usage::

        await advance()       # 5 yields (default)
        await advance(50)     # 50 yields for timer countdowns
    """

    async def _advance(n: int = 5) -> None:
        for _ in range(n):
            await asyncio.sleep(0)

    return _advance


def make_identity(
    user_id: str = "alice",
    device_id: str | None = None,
    first_name: str | None = None,
) -> LocalIdentity:
    return LocalIdentity(
        user_id=user_id,
        device_id=device_id or f"{user_id}-phone",
        username=user_id,
        first_name=first_name or user_id.capitalize(),
    )


def make_peer(identity: LocalIdentity, room_id: str = ROOM) -> PeerProfile:
    return identity.as_profile(room_id)


def make_message(
    kind: SignalKind,
    sender: LocalIdentity,
    *,
    call_id: str | None = "call-1",
    target_device: str | None = None,
    payload: dict[str, Any] | None = None,
    **kwargs: Any,
) -> SignalingMessage:
    return SignalingMessage(
        kind=kind,
        sender=sender.as_profile(ROOM),
        sender_device=sender.device_id,
        target_device=target_device,
        channel_id=ROOM,
        call_id=call_id,
        payload=payload or {},
        **kwargs,
    )


def make_config(**overrides: Any) -> CallConfig:
    """Timers frozen by default; ticks only run when ``tick_seconds=0``."""
    values: dict[str, Any] = {
        "tick_seconds": 3600,
        "publish_retry": RetryPolicy(max_retries=0),
    }
    values.update(overrides)
    return CallConfig(**values)


class UIRecorder:
    """Records every UI callback as ``(name, args)``."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def callbacks(self) -> CallCallbacks:
        def recorder(name: str) -> Callable[..., None]:
            def handle(*args: Any) -> None:
                self.calls.append((name, args))

            return handle

        return CallCallbacks.from_mapping({name: recorder(name) for name in CALLBACK_NAMES})

    def of(self, name: str) -> list[tuple[Any, ...]]:
        return [args for n, args in self.calls if n == name]

    def last(self, name: str) -> tuple[Any, ...] | None:
        found = self.of(name)
        return found[-1] if found else None

    @property
    def notices(self) -> list[str]:
        return [args[0] for args in self.of("on_notice")]

    @property
    def statuses(self) -> list[str]:
        return [args[0] for args in self.of("on_call_status_changed")]


@dataclass
class Leg:
    """One device running a controller on the shared transport."""

    identity: LocalIdentity
    controller: CallController
    media: MockMediaCapability
    ringtone: MockRingtonePlayer
    ui: UIRecorder
    telemetry: MockTelemetryProvider
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def peer_connection(self) -> MockPeerConnection:
        pc = self.controller.session.peer_connection
        assert isinstance(pc, MockPeerConnection)
        return pc

    def sent(self, transport: InMemoryTransport, kind: SignalKind) -> list[dict[str, Any]]:
        """Wire messages of *kind* this device published."""
        return [
            msg
            for _topic, _channel, msg in transport.published
            if msg["kind"] == kind and msg["sender_device"] == self.identity.device_id
        ]


async def make_leg(
    transport: InMemoryTransport,
    identity: LocalIdentity,
    *,
    config: CallConfig | None = None,
    media: MockMediaCapability | None = None,
    **kwargs: Any,
) -> Leg:
    media = media or MockMediaCapability()
    ringtone = MockRingtonePlayer()
    telemetry = MockTelemetryProvider()
    ui = UIRecorder()
    controller = CallController(
        identity,
        transport,
        media,
        ringtone=ringtone,
        config=config or make_config(),
        telemetry=telemetry,
        **kwargs,
    )
    await controller.initialize(ui.callbacks())
    await controller.connect()
    return Leg(identity, controller, media, ringtone, ui, telemetry)


@pytest.fixture
async def transport() -> AsyncIterator[InMemoryTransport]:
    t = InMemoryTransport()
    yield t
    await t.close()


@pytest.fixture
async def alice(transport: InMemoryTransport) -> AsyncIterator[Leg]:
    leg = await make_leg(transport, make_identity("alice"))
    yield leg
    await leg.controller.close()


@pytest.fixture
async def bob(transport: InMemoryTransport) -> AsyncIterator[Leg]:
    leg = await make_leg(transport, make_identity("bob"))
    yield leg
    await leg.controller.close()
