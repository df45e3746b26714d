"""Wiring of the feed components and the app-wide instance."""

from __future__ import annotations

from dataclasses import dataclass

from newsfeed.core.broadcast import Broadcaster
from newsfeed.core.connections import ConnectionRegistry
from newsfeed.core.protocol import MutationHandler
from newsfeed.core.settings import Settings
from newsfeed.core.snapshot import SnapshotAssembler
from newsfeed.core.storage import DB, StoreGateway


@dataclass
class Feed:
    registry: ConnectionRegistry
    gateway: StoreGateway
    broadcaster: Broadcaster
    assembler: SnapshotAssembler
    handler: MutationHandler
    send_queue_size: int = 256


def build_feed(db: DB, send_queue_size: int = 256) -> Feed:
    registry = ConnectionRegistry()
    gateway = StoreGateway(db)
    broadcaster = Broadcaster(registry)
    assembler = SnapshotAssembler(gateway)
    return Feed(
        registry=registry,
        gateway=gateway,
        broadcaster=broadcaster,
        assembler=assembler,
        handler=MutationHandler(gateway, broadcaster, assembler),
        send_queue_size=send_queue_size,
    )


# Global feed instance
_feed: Feed | None = None


def init_feed(db: DB, settings: Settings | None = None) -> Feed:
    """Initialize the global Feed on top of an initialized DB."""
    global _feed
    s = settings or Settings.from_env()
    _feed = build_feed(db, send_queue_size=s.send_queue_size)
    return _feed


def get_feed() -> Feed:
    """Get the global Feed. Must call init_feed first."""
    if _feed is None:
        raise RuntimeError("Feed not initialized. Call init_feed first.")
    return _feed
