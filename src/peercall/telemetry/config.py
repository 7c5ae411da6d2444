"""Telemetry configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from peercall.telemetry.base import SpanKind, TelemetryProvider


@dataclass
class TelemetryConfig:
    """Telemetry settings for a call controller.

    Attributes:
        provider: Where spans and metrics go. ``None`` means
            ``NoopTelemetryProvider``.
        enabled_spans: Span kinds to record; ``None`` records all kinds.
        attributes: Extra attributes stamped on every call session span.
    """

    provider: TelemetryProvider | None = None
    enabled_spans: set[SpanKind] | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    def records(self, kind: SpanKind) -> bool:
        return self.enabled_spans is None or kind in self.enabled_spans
