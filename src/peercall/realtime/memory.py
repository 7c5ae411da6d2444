"""In-memory message transport using asyncio tasks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from uuid import uuid4

from peercall.realtime.base import MessageHandler, MessageTransport, WireMessage

logger = logging.getLogger("peercall.realtime")


class InMemoryTransport(MessageTransport):
    """In-process transport that broadcasts to every topic subscriber.

    Several controllers sharing one instance behave like devices connected
    to the same chat server: each publication reaches every subscriber,
    the publisher included. Suitable for tests and single-process demos.
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        """Initialize the in-memory transport.

        Args:
            max_queue_size: Maximum number of messages to queue per
                subscription. The oldest message is dropped when full.
        """
        self._max_queue_size = max_queue_size
        self._subscriptions: dict[str, _Subscription] = {}
        self._topics: dict[str, set[str]] = {}  # topic -> subscription_ids
        self._closed = False
        self.published: list[tuple[str, str, WireMessage]] = []  # (topic, channel, msg)

    async def publish(self, topic: str, message: WireMessage, channel_id: str) -> None:
        """Deliver *message* to all subscribers of *topic*."""
        if self._closed:
            return

        self.published.append((topic, channel_id, message))
        for sub_id in list(self._topics.get(topic, set())):
            sub = self._subscriptions.get(sub_id)
            if sub is not None:
                sub.enqueue(dict(message))

    async def subscribe(self, topic: str, handler: MessageHandler) -> str:
        sub_id = uuid4().hex
        sub = _Subscription(
            sub_id=sub_id,
            topic=topic,
            handler=handler,
            max_queue_size=self._max_queue_size,
        )
        self._subscriptions[sub_id] = sub
        self._topics.setdefault(topic, set()).add(sub_id)
        sub.start()
        return sub_id

    async def unsubscribe(self, topic: str, subscription_id: str) -> bool:
        sub = self._subscriptions.get(subscription_id)
        if sub is None or sub.topic != topic:
            return False
        del self._subscriptions[subscription_id]

        topic_subs = self._topics.get(topic)
        if topic_subs:
            topic_subs.discard(subscription_id)
            if not topic_subs:
                del self._topics[topic]

        await sub.stop()
        return True

    async def close(self) -> None:
        """Stop all subscriptions and clean up."""
        self._closed = True
        for sub in list(self._subscriptions.values()):
            await sub.stop()
        self._subscriptions.clear()
        self._topics.clear()

    @property
    def subscription_count(self) -> int:
        """Return the number of active subscriptions."""
        return len(self._subscriptions)


class _Subscription:
    """Internal subscription handler with queue and background task."""

    def __init__(
        self,
        sub_id: str,
        topic: str,
        handler: MessageHandler,
        max_queue_size: int,
    ) -> None:
        self.sub_id = sub_id
        self.topic = topic
        self.handler = handler
        self._queue: deque[WireMessage] = deque(maxlen=max_queue_size)
        self._event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    def enqueue(self, message: WireMessage) -> None:
        """Add a message to the queue, dropping the oldest if full."""
        if self._stopped:
            return
        self._queue.append(message)
        self._event.set()

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stopped = True
        self._event.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        """Background task that drains the queue and invokes the handler."""
        while not self._stopped:
            await self._event.wait()
            self._event.clear()

            while self._queue and not self._stopped:
                message = self._queue.popleft()
                try:
                    await self.handler(message)
                except Exception:
                    logger.exception("Error in transport handler for subscription %s", self.sub_id)
