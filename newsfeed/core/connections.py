"""Live client connections and the registry that tracks them."""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from typing import TYPE_CHECKING, Callable, Mapping

from fastapi import WebSocketDisconnect

if TYPE_CHECKING:
    from fastapi import WebSocket

    from newsfeed.core.events import FeedEvent

logger = logging.getLogger(__name__)

RecordKey = tuple[str, int]


class DeliveryError(Exception):
    """A message could not be handed to one connection."""


class Connection:
    """A client socket with its own bounded outbound queue.

    Sends never happen on the caller's stack: messages are queued and a
    per-connection writer task pushes them to the socket. Until the
    connection is opened with its snapshot, broadcast deliveries are held
    back so the snapshot always goes out first.
    """

    def __init__(self, websocket: WebSocket, max_queue: int = 256) -> None:
        self.id = uuid.uuid4().hex[:8]
        self._ws = websocket
        self._max_queue = max_queue
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue)
        self._held: list[tuple[RecordKey | None, str]] | None = []
        self._high_water: dict[str, int] = {}
        self._closed = False
        self._writer: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"Connection({self.id})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def opened(self) -> bool:
        return self._held is None

    @property
    def websocket(self) -> WebSocket:
        return self._ws

    def _enqueue(self, text: str) -> None:
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            raise DeliveryError(f"outbound queue full for {self.id}") from None

    def _in_snapshot(self, record_key: RecordKey | None) -> bool:
        if record_key is None:
            return False
        kind, record_id = record_key
        return record_id <= self._high_water.get(kind, 0)

    def deliver(self, text: str, record_key: RecordKey | None = None) -> None:
        """Queue an already serialized broadcast message.

        Records already contained in this client's snapshot are skipped,
        whether the broadcast arrives before or after the connection opens.
        """
        if self._closed:
            raise DeliveryError(f"connection {self.id} is closed")
        if self._held is not None:
            if len(self._held) >= self._max_queue:
                raise DeliveryError(f"too many held messages for {self.id}")
            self._held.append((record_key, text))
            return
        if self._in_snapshot(record_key):
            logger.debug(f"Skipping {record_key} for {self.id}: already in snapshot")
            return
        self._enqueue(text)

    def send(self, event: FeedEvent) -> None:
        """Queue a targeted message for this client only. Never held back."""
        if self._closed:
            raise DeliveryError(f"connection {self.id} is closed")
        self._enqueue(event.to_json())

    def open(self, first: FeedEvent, high_water: Mapping[str, int] | None = None) -> int:
        """Send `first`, then release held broadcasts newer than `high_water`.

        `high_water` maps a record kind to the highest id the snapshot holds.
        Returns the number of held messages dropped as duplicates.
        """
        if self._held is None:
            raise RuntimeError(f"connection {self.id} already opened")
        held, self._held = self._held, None
        self._high_water = dict(high_water or {})
        self.send(first)
        dropped = 0
        for key, text in held:
            if self._in_snapshot(key):
                dropped += 1
                continue
            self._enqueue(text)
        return dropped

    def start_writer(self) -> asyncio.Task[None]:
        self._writer = asyncio.create_task(self._write_loop(), name=f"writer-{self.id}")
        return self._writer

    async def _write_loop(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await self._ws.send_text(text)
            except Exception as e:
                raise DeliveryError(f"send to {self.id} failed: {e}") from e

    def abort(self) -> None:
        """Mark closed and stop the writer. The session closes the socket."""
        self._closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()

    async def close(self, code: int = 1000) -> None:
        self.abort()
        try:
            await self._ws.close(code=code)
        except (RuntimeError, WebSocketDisconnect):
            # Socket already closed by the peer
            logger.debug(f"Socket for {self.id} already closed")


class ConnectionRegistry:
    """The set of connections that receive broadcasts. Thread-safe."""

    def __init__(self) -> None:
        self._connections: set[Connection] = set()
        self._lock = threading.Lock()

    def register(self, connection: Connection) -> None:
        with self._lock:
            self._connections.add(connection)

    def unregister(self, connection: Connection) -> bool:
        """Remove a connection. Returns True if it was registered."""
        with self._lock:
            if connection in self._connections:
                self._connections.remove(connection)
                return True
            return False

    def members(self) -> list[Connection]:
        with self._lock:
            return list(self._connections)

    def for_each(self, fn: Callable[[Connection], None]) -> None:
        """Call fn for every member. Safe if fn unregisters connections."""
        for connection in self.members():
            fn(connection)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection: object) -> bool:
        with self._lock:
            return connection in self._connections
