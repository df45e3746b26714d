"""Per-connection lifecycle: admission, read loop, write loop, teardown."""

from __future__ import annotations

import asyncio
import logging

from fastapi import WebSocket, WebSocketDisconnect

from newsfeed.core.connections import Connection, ConnectionRegistry, DeliveryError
from newsfeed.core.events import FeedEvent
from newsfeed.core.protocol import MSG_LOAD_FAILED, MutationHandler
from newsfeed.core.snapshot import SnapshotAssembler
from newsfeed.core.storage import StoreError

logger = logging.getLogger(__name__)


async def admit(
    connection: Connection,
    registry: ConnectionRegistry,
    assembler: SnapshotAssembler,
) -> None:
    """Register the connection and queue its initial snapshot.

    Registration happens before the snapshot is read, so any record
    persisted afterwards is either inside the snapshot or arrives as a held
    broadcast. Held broadcasts already reflected in the snapshot are dropped.
    """
    registry.register(connection)
    try:
        snapshot, event = await assembler.assemble_event()
    except StoreError:
        logger.exception(f"Error sending initial articles to {connection!r}")
        connection.open(FeedEvent.error(MSG_LOAD_FAILED))
        return
    dropped = connection.open(event, snapshot.high_water())
    if dropped:
        logger.debug(f"Skipped {dropped} broadcast(s) already in snapshot for {connection!r}")


async def _read_loop(connection: Connection, handler: MutationHandler) -> None:
    websocket = connection.websocket
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000))
        raw = message.get("text")
        if raw is None:
            raw = message.get("bytes") or b""
        await handler.handle(connection, raw)


async def serve_connection(
    websocket: WebSocket,
    registry: ConnectionRegistry,
    assembler: SnapshotAssembler,
    handler: MutationHandler,
    max_queue: int = 256,
) -> None:
    """Run one client from accept to disconnect.

    Inbound messages are handled one at a time for this client while the
    writer task drains its outbound queue. When either side stops the other
    is cancelled and the connection leaves the registry.
    """
    await websocket.accept()
    connection = Connection(websocket, max_queue=max_queue)
    logger.info(f"Client connected: {connection!r} ({len(registry) + 1} total)")

    writer = connection.start_writer()
    reader: asyncio.Task[None] | None = None
    try:
        await admit(connection, registry, assembler)
        reader = asyncio.create_task(_read_loop(connection, handler), name=f"reader-{connection.id}")
        done, _ = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if isinstance(exc, WebSocketDisconnect):
                logger.info(f"Client disconnected: {connection!r} (code {exc.code})")
            elif isinstance(exc, DeliveryError):
                logger.warning(f"Delivery to {connection!r} failed: {exc}")
            elif exc is not None:
                logger.error(f"Session error for {connection!r}", exc_info=exc)
    except DeliveryError as e:
        logger.warning(f"Could not admit {connection!r}: {e}")
    finally:
        registry.unregister(connection)
        for task in (reader, writer):
            if task is None:
                continue
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await connection.close()
