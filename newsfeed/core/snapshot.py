"""Full feed state for newly connected or refreshing clients."""

from __future__ import annotations

from newsfeed.core.content_types import Snapshot
from newsfeed.core.events import FeedEvent
from newsfeed.core.storage import StoreGateway


class SnapshotAssembler:
    def __init__(self, gateway: StoreGateway) -> None:
        self._gateway = gateway

    async def assemble(self) -> Snapshot:
        return await self._gateway.fetch_snapshot()

    async def assemble_event(self) -> tuple[Snapshot, FeedEvent]:
        snapshot = await self.assemble()
        return snapshot, FeedEvent.all_articles(snapshot)
