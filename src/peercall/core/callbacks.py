"""UI callback surface of the call controller."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from typing import Any

from peercall.core._helpers import maybe_await
from peercall.core.errors import IncompleteCallbacksError

logger = logging.getLogger("peercall.callbacks")


def _noop(*_args: Any) -> None:
    return None


@dataclass
class CallCallbacks:
    """The callbacks a UI registers to observe the call lifecycle.

    Each handle may be a plain function or a coroutine function. All nine
    lifecycle handles are required; ``on_notice`` is optional and receives
    user-facing notices such as "Ada is not available for a call right now".

    Attributes:
        on_caller_details_set: ``(peer)``, the other party's profile.
        on_incoming_call_changed: ``(visible, kind)``, incoming call popup.
        on_call_view_changed: ``(visible, kind)``, the in-call view.
        on_remote_stream_added: ``(stream)``, the peer's media arrived.
        on_local_stream_added: ``(stream)``, camera/microphone attached.
        on_call_time_updated: ``(seconds)``, elapsed connected time.
        on_audio_mute_changed: ``(muted)``.
        on_video_mute_changed: ``(muted)``.
        on_call_status_changed: ``(status)``, see :class:`CallStatus`.
        on_notice: ``(text)``, optional user-visible notice.
    """

    on_caller_details_set: Callable[..., Any]
    on_incoming_call_changed: Callable[..., Any]
    on_call_view_changed: Callable[..., Any]
    on_remote_stream_added: Callable[..., Any]
    on_local_stream_added: Callable[..., Any]
    on_call_time_updated: Callable[..., Any]
    on_audio_mute_changed: Callable[..., Any]
    on_video_mute_changed: Callable[..., Any]
    on_call_status_changed: Callable[..., Any]
    on_notice: Callable[..., Any] | None = None

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "on_notice" and value is None:
                continue
            if not callable(value):
                raise IncompleteCallbacksError(f"Callback {f.name!r} must be callable")

    @classmethod
    def from_mapping(cls, callbacks: Mapping[str, Callable[..., Any]]) -> CallCallbacks:
        """Build from a name→handle mapping, rejecting unknown or missing names."""
        known = {f.name for f in fields(cls)}
        unknown = set(callbacks) - known
        if unknown:
            raise IncompleteCallbacksError(f"Unknown callbacks: {sorted(unknown)}")
        missing = sorted(known - set(callbacks) - {"on_notice"})
        if missing:
            raise IncompleteCallbacksError(f"Missing callbacks: {missing}")
        return cls(**callbacks)

    @classmethod
    def silent(cls) -> CallCallbacks:
        """Callbacks that ignore every notification (headless use)."""
        return cls(**{f.name: _noop for f in fields(cls)})

    async def emit(self, name: str, *args: Any) -> None:
        """Invoke a callback, logging instead of propagating its errors."""
        handle = getattr(self, name)
        if handle is None:
            return
        try:
            await maybe_await(handle(*args))
        except Exception:
            logger.exception("UI callback %s failed", name)
