"""Abstract base class for signaling message transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from typing import Any

# Wire messages are JSON-like dictionaries.
WireMessage = dict[str, Any]

MessageHandler = Callable[[WireMessage], Coroutine[Any, Any, None]]


class TransportError(Exception):
    """Base exception for transport failures."""


class TransportNotConnectedError(TransportError):
    """The room connection needed to publish is not open."""


class MessageTransport(ABC):
    """Abstract base for pub/sub message transports.

    Messages are fanned out by topic to every subscriber. Delivery is
    at-least-once: a subscriber may see the same message more than once,
    and it sees its own publications too. Implement this to plug in any
    backend; the library ships ``InMemoryTransport`` for single-process
    deployments and ``WebSocketTransport`` for a chat server that relays
    messages per room.
    """

    @abstractmethod
    async def publish(self, topic: str, message: WireMessage, channel_id: str) -> None:
        """Publish *message* on *topic* to the room identified by *channel_id*.

        Raises:
            TransportError: If the message could not be handed to the
                underlying connection.
        """
        ...

    @abstractmethod
    async def subscribe(self, topic: str, handler: MessageHandler) -> str:
        """Subscribe to a topic.

        Returns:
            A subscription ID that can be used to unsubscribe.
        """
        ...

    @abstractmethod
    async def unsubscribe(self, topic: str, subscription_id: str) -> bool:
        """Cancel a subscription.

        Returns:
            True if the subscription existed and was removed.
        """
        ...

    async def close(self) -> None:
        """Clean up resources.

        Override this method in subclasses that need cleanup.
        The default implementation does nothing.
        """
        return None
