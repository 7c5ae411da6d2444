"""Telemetry provider ABC, span record, span kinds and attribute keys."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class SpanKind(StrEnum):
    """What a span measures."""

    CALL_SESSION = "call.session"
    CALL_NEGOTIATION = "call.negotiation"
    MEDIA_ACQUIRE = "media.acquire"
    CUSTOM = "custom"


class Attr:
    """Attribute keys used on call spans and metrics."""

    CALL_ID = "call.id"
    CALL_ROLE = "call.role"
    CALL_KIND = "call.kind"
    CALL_END_REASON = "call.end_reason"
    CALL_CONNECTED_SECONDS = "call.connected_seconds"
    CHANNEL_ID = "channel_id"
    PEER_ID = "peer.id"

    NEGOTIATION_STEP = "negotiation.step"

    SIGNAL_KIND = "signal.kind"
    DISCARD_REASON = "reason"


class Metric:
    """Metric names recorded by the controller."""

    CALL_DURATION = "peercall.call.duration"
    SIGNAL_DISCARDED = "peercall.signal.discarded"


@dataclass
class Span:
    """A started or completed span."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    kind: SpanKind = SpanKind.CUSTOM
    name: str = ""
    parent_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    status: str = "ok"
    error_message: str | None = None
    call_id: str | None = None
    channel_id: str | None = None

    @property
    def duration_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000


class TelemetryProvider(ABC):
    """Collects spans and metrics emitted by a call controller.

    The default :class:`NoopTelemetryProvider` discards everything.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def start_span(
        self,
        kind: SpanKind,
        name: str,
        *,
        parent_id: str | None = None,
        attributes: dict[str, Any] | None = None,
        call_id: str | None = None,
        channel_id: str | None = None,
    ) -> str:
        """Start a span and return its id."""
        ...

    @abstractmethod
    def end_span(
        self,
        span_id: str,
        *,
        status: str = "ok",
        error_message: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None: ...

    @abstractmethod
    def set_attribute(self, span_id: str, key: str, value: Any) -> None: ...

    @abstractmethod
    def record_metric(
        self,
        name: str,
        value: float,
        *,
        unit: str = "",
        attributes: dict[str, Any] | None = None,
    ) -> None: ...

    def close(self) -> None:  # noqa: B027
        """Flush and release the provider."""

    def reset(self) -> None:  # noqa: B027
        """Drop recorded state (tests)."""

    @contextmanager
    def span(self, kind: SpanKind, name: str, **kwargs: Any) -> Generator[str, None, None]:
        """Run a block inside a span, marking it as error if the block raises."""
        span_id = self.start_span(kind, name, **kwargs)
        try:
            yield span_id
        except Exception as exc:
            self.end_span(span_id, status="error", error_message=str(exc))
            raise
        self.end_span(span_id)
