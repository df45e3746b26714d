"""Fan-out of canonical records to every registered connection."""

from __future__ import annotations

import logging

from newsfeed.core.connections import Connection, ConnectionRegistry, DeliveryError
from newsfeed.core.events import FeedEvent

logger = logging.getLogger(__name__)


class Broadcaster:
    """Pushes one event to all connections, best effort."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    def broadcast(self, event: FeedEvent) -> int:
        """Serialize once and queue the text for every connection.

        A connection that cannot take the message is dropped from the
        registry and aborted; the rest still get it. Returns the number of
        connections the message was handed to.
        """
        text = event.to_json()
        delivered = 0

        def _deliver(connection: Connection) -> None:
            nonlocal delivered
            try:
                connection.deliver(text, event.record_key)
                delivered += 1
            except DeliveryError as e:
                logger.warning(f"Dropping {connection!r} after failed delivery: {e}")
                self._registry.unregister(connection)
                connection.abort()

        self._registry.for_each(_deliver)
        logger.debug(f"Broadcast {event.type.value} to {delivered} connection(s)")
        return delivered
