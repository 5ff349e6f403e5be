"""Broadcast fan-out — delivers every state change to every push connection.

Each connection owns a bounded FIFO queue drained by its own sender task,
so delivery order per connection matches emission order and a slow or
dead viewer never holds up the writer. A connection whose send fails or
whose queue overflows is dropped; the others are unaffected.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import orjson

from puppystation.events.bus import ChangeBus, StateChange

_logger = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[None]]

_CLOSE = object()


def encode_message(message: dict[str, Any]) -> str:
    return orjson.dumps(message).decode()


class PushConnection:
    """One live viewer and its outbound queue."""

    _next_id = 0

    def __init__(self, send: SendFn, queue_size: int = 256) -> None:
        PushConnection._next_id += 1
        self.id = PushConnection._next_id
        self._send = send
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._open = True
        self.delivered = 0

    @property
    def is_open(self) -> bool:
        return self._open

    def offer(self, payload: str) -> bool:
        """Queue a serialized message without waiting. False if it can't be taken."""
        if not self._open:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        # Wake the sender; if the queue is full it is discarded anyway.
        while True:
            try:
                self._queue.put_nowait(_CLOSE)
                break
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def send_now(self, payload: str) -> None:
        """Send ahead of the queue; used for the connect-time snapshot."""
        await self._send(payload)

    async def pump(self) -> None:
        """Send queued messages in order until closed or a send fails."""
        while True:
            payload = await self._queue.get()
            if payload is _CLOSE:
                return
            await self._send(payload)
            self.delivered += 1

    def __repr__(self) -> str:
        return f"PushConnection(id={self.id}, open={self._open}, queued={self._queue.qsize()})"


class ConnectionRegistry:
    """Owned set of live push connections with explicit add/remove."""

    def __init__(self, queue_size: int = 256) -> None:
        self._connections: dict[int, PushConnection] = {}
        self._queue_size = queue_size
        self._bus: ChangeBus | None = None

    def attach(self, bus: ChangeBus) -> None:
        """Forward every change emitted on the bus to all connections."""
        self._bus = bus
        bus.subscribe("*", self._on_change)

    def detach(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe("*", self._on_change)
            self._bus = None

    async def _on_change(self, change: StateChange) -> None:
        self.publish(change.to_message())

    def add(self, send: SendFn) -> PushConnection:
        conn = PushConnection(send, queue_size=self._queue_size)
        self._connections[conn.id] = conn
        _logger.info("Push client connected, total: %d", len(self._connections))
        return conn

    def remove(self, conn: PushConnection) -> None:
        conn.close()
        if self._connections.pop(conn.id, None) is not None:
            _logger.info("Push client disconnected, total: %d", len(self._connections))

    def publish(self, message: dict[str, Any]) -> int:
        """Serialize once and queue for every connection. Returns the number reached."""
        payload = encode_message(message)
        reached = 0
        for conn in list(self._connections.values()):
            if conn.offer(payload):
                reached += 1
            else:
                _logger.warning("Dropping push client %d: queue full", conn.id)
                self.remove(conn)
        return reached

    async def serve(self, conn: PushConnection, initial: dict[str, Any] | None = None) -> None:
        """Deliver to one connection until it closes. Failures drop only this connection."""
        try:
            if initial is not None:
                await conn.send_now(encode_message(initial))
            await conn.pump()
        except Exception as e:
            _logger.info("Push client %d send failed: %s", conn.id, e)
        finally:
            self.remove(conn)

    def close_all(self) -> None:
        for conn in list(self._connections.values()):
            self.remove(conn)

    @property
    def connection_count(self) -> int:
        return len(self._connections)
