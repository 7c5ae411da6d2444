"""Signaling message transports."""

from peercall.realtime.base import (
    MessageHandler,
    MessageTransport,
    TransportError,
    TransportNotConnectedError,
    WireMessage,
)
from peercall.realtime.memory import InMemoryTransport

__all__ = [
    "InMemoryTransport",
    "MessageHandler",
    "MessageTransport",
    "TransportError",
    "TransportNotConnectedError",
    "WireMessage",
]
