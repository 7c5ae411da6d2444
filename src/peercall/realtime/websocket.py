"""WebSocket message transport: one socket per chat room."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode
from uuid import uuid4

import websockets
from websockets import ClientConnection

from peercall.models.signal import TOPIC_KEY
from peercall.realtime.base import (
    MessageHandler,
    MessageTransport,
    TransportNotConnectedError,
    WireMessage,
)

logger = logging.getLogger("peercall.realtime.websocket")


@dataclass
class _RoomConnection:
    room_id: str
    opened: asyncio.Event = field(default_factory=asyncio.Event)
    ws: ClientConnection | None = None
    task: asyncio.Task[None] | None = None
    stopped: bool = False


class WebSocketTransport(MessageTransport):
    """Transport for a chat server that relays JSON messages per room.

    Every room the user belongs to gets its own socket at
    ``{base_url}{room_id}/``. Inbound messages are routed to subscribers
    by their ``brokertype`` key; messages without one are plain chat
    traffic and go to the ``default_topic`` subscribers. A socket that
    drops is reopened with exponential backoff.

    Example:
        transport = WebSocketTransport("wss://chat.example.com/ws/", token=token)
        await transport.add_connection(["room-1", "room-2"])
        sub_id = await transport.subscribe("call", handle_call_message)
        await transport.publish("call", {"kind": "ring"}, "room-1")
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        default_topic: str = "text",
        ping_interval: float | None = 20.0,
        ping_timeout: float | None = 20.0,
        close_timeout: float = 10.0,
        max_size: int = 2**20,  # 1 MB
        reconnect: bool = True,
        reconnect_backoff: float = 1.0,
        max_reconnect_backoff: float = 30.0,
        send_timeout: float = 10.0,
    ) -> None:
        """Initialize the WebSocket transport.

        Args:
            base_url: URL prefix the room id is appended to (ws:// or wss://).
            token: Optional auth token sent as the ``token`` query parameter.
            default_topic: Topic for inbound messages without a routing key.
            ping_interval: Interval between ping frames in seconds.
                Set to None to disable pings.
            ping_timeout: Timeout for pong response in seconds.
            close_timeout: Timeout for close handshake in seconds.
            max_size: Maximum message size in bytes.
            reconnect: Reopen a room socket when it drops.
            reconnect_backoff: Initial delay before reopening a dropped socket.
            max_reconnect_backoff: Maximum backoff between reconnect attempts.
            send_timeout: How long ``publish`` waits for the room socket
                to open before giving up.
        """
        self._base_url = base_url
        self._token = token
        self._default_topic = default_topic
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._close_timeout = close_timeout
        self._max_size = max_size
        self._reconnect = reconnect
        self._reconnect_backoff = reconnect_backoff
        self._max_reconnect_backoff = max_reconnect_backoff
        self._send_timeout = send_timeout
        self._rooms: dict[str, _RoomConnection] = {}
        self._handlers: dict[str, dict[str, MessageHandler]] = {}
        self._closed = False

    @property
    def name(self) -> str:
        return f"websocket:{self._base_url}"

    def room_url(self, room_id: str) -> str:
        url = f"{self._base_url}{room_id}/"
        if self._token:
            url += "?" + urlencode({"token": self._token})
        return url

    def is_open(self, room_id: str) -> bool:
        conn = self._rooms.get(room_id)
        return conn is not None and conn.opened.is_set()

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def add_connection(self, rooms: str | Iterable[str], *, force: bool = False) -> None:
        """Open a socket for each room that does not have one yet.

        Args:
            rooms: A room id or an iterable of room ids.
            force: Replace existing sockets for these rooms.
        """
        room_ids = [rooms] if isinstance(rooms, str) else list(rooms)
        for room_id in room_ids:
            existing = self._rooms.get(room_id)
            if existing is not None:
                if not force:
                    continue
                await self._stop_room(existing)

            conn = _RoomConnection(room_id=room_id)
            self._rooms[room_id] = conn
            conn.task = asyncio.get_running_loop().create_task(
                self._run_room(conn), name=f"peercall_ws_{room_id}"
            )

    async def remove_connection(self, room_id: str) -> bool:
        conn = self._rooms.pop(room_id, None)
        if conn is None:
            return False
        await self._stop_room(conn)
        return True

    async def _stop_room(self, conn: _RoomConnection) -> None:
        conn.stopped = True
        if conn.ws is not None:
            with contextlib.suppress(Exception):
                await conn.ws.close()
        if conn.task is not None:
            conn.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await conn.task
            conn.task = None

    async def _run_room(self, conn: _RoomConnection) -> None:
        """Keep the room socket open, reconnecting with backoff."""
        connect_kwargs: dict[str, Any] = {
            "uri": self.room_url(conn.room_id),
            "ping_interval": self._ping_interval,
            "ping_timeout": self._ping_timeout,
            "close_timeout": self._close_timeout,
            "max_size": self._max_size,
        }
        backoff = self._reconnect_backoff
        while not conn.stopped:
            try:
                async with websockets.connect(**connect_kwargs) as ws:
                    conn.ws = ws
                    conn.opened.set()
                    logger.info("Connected to room %s", conn.room_id)
                    backoff = self._reconnect_backoff
                    while not conn.stopped:
                        raw = await ws.recv()
                        await self._dispatch(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if conn.stopped:
                    return
                logger.warning(
                    "Room %s connection lost (%s), reconnecting in %.1fs",
                    conn.room_id,
                    e,
                    backoff,
                )
            finally:
                conn.ws = None
                conn.opened.clear()

            if conn.stopped or not self._reconnect:
                return
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._max_reconnect_backoff)

    # -------------------------------------------------------------------------
    # Pub/sub
    # -------------------------------------------------------------------------

    async def publish(self, topic: str, message: WireMessage, channel_id: str) -> None:
        """Send *message* through the room socket, opening it if needed.

        Raises:
            TransportNotConnectedError: If the room socket does not open
                within ``send_timeout`` seconds.
        """
        if self._closed:
            raise TransportNotConnectedError("Transport is closed")

        if channel_id not in self._rooms:
            await self.add_connection(channel_id)
        conn = self._rooms[channel_id]

        try:
            await asyncio.wait_for(conn.opened.wait(), timeout=self._send_timeout)
        except TimeoutError as e:
            raise TransportNotConnectedError(f"Room {channel_id} is not connected") from e

        ws = conn.ws
        if ws is None:
            raise TransportNotConnectedError(f"Room {channel_id} is not connected")
        await ws.send(json.dumps({**message, TOPIC_KEY: topic}))

    async def subscribe(self, topic: str, handler: MessageHandler) -> str:
        sub_id = uuid4().hex
        self._handlers.setdefault(topic, {})[sub_id] = handler
        return sub_id

    async def unsubscribe(self, topic: str, subscription_id: str) -> bool:
        handlers = self._handlers.get(topic)
        if not handlers or subscription_id not in handlers:
            return False
        del handlers[subscription_id]
        if not handlers:
            del self._handlers[topic]
        return True

    async def _dispatch(self, raw: str | bytes) -> None:
        """Route one inbound frame to the subscribers of its topic."""
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.debug("Failed to parse message: %s", e)
            return
        if not isinstance(data, dict):
            return

        topic = data.get(TOPIC_KEY) or self._default_topic
        for sub_id, handler in list(self._handlers.get(topic, {}).items()):
            try:
                await handler(data)
            except Exception:
                logger.exception("Error in transport handler for subscription %s", sub_id)

    async def close(self) -> None:
        """Close every room socket and drop all subscriptions."""
        self._closed = True
        for conn in list(self._rooms.values()):
            await self._stop_room(conn)
        self._rooms.clear()
        self._handlers.clear()
