"""Recording telemetry provider for test assertions."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from peercall.telemetry.base import Span, SpanKind, TelemetryProvider


class MockTelemetryProvider(TelemetryProvider):
    """Keeps every span and metric in memory.

    Example::

        telemetry = MockTelemetryProvider()
        controller = CallController(identity, transport, media, telemetry=telemetry)
        ...
        (session,) = telemetry.get_spans(SpanKind.CALL_SESSION)
        assert session.attributes[Attr.CALL_END_REASON] == "local_hangup"
    """

    def __init__(self) -> None:
        self._active: dict[str, Span] = {}
        self.spans: list[Span] = []
        self.metrics: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return "mock"

    def get_spans(self, kind: SpanKind) -> list[Span]:
        return [s for s in self.spans if s.kind == kind]

    def get_active_spans(self) -> list[Span]:
        return list(self._active.values())

    def get_metrics(self, name: str) -> list[dict[str, Any]]:
        return [m for m in self.metrics if m["name"] == name]

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
        span = Span(
            kind=kind,
            name=name,
            parent_id=parent_id,
            attributes=dict(attributes or {}),
            call_id=call_id,
            channel_id=channel_id,
        )
        self._active[span.id] = span
        return span.id

    def end_span(
        self,
        span_id: str,
        *,
        status: str = "ok",
        error_message: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        span = self._active.pop(span_id, None)
        if span is None:
            return
        span.end_time = datetime.now(UTC)
        span.status = status
        span.error_message = error_message
        if attributes:
            span.attributes.update(attributes)
        self.spans.append(span)

    def set_attribute(self, span_id: str, key: str, value: Any) -> None:
        span = self._active.get(span_id)
        if span is not None:
            span.attributes[key] = value

    def record_metric(
        self,
        name: str,
        value: float,
        *,
        unit: str = "",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self.metrics.append(
            {"name": name, "value": value, "unit": unit, "attributes": dict(attributes or {})}
        )

    def reset(self) -> None:
        self._active.clear()
        self.spans.clear()
        self.metrics.clear()
