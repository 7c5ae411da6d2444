"""Span and metric collection for call controllers."""

from peercall.telemetry.base import Attr, Metric, Span, SpanKind, TelemetryProvider
from peercall.telemetry.config import TelemetryConfig
from peercall.telemetry.mock import MockTelemetryProvider
from peercall.telemetry.noop import NoopTelemetryProvider

__all__ = [
    "Attr",
    "Metric",
    "MockTelemetryProvider",
    "NoopTelemetryProvider",
    "Span",
    "SpanKind",
    "TelemetryConfig",
    "TelemetryProvider",
]
