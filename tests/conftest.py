"""Shared fixtures: in-memory store and fake WebSocket clients."""

import asyncio
import json

import pytest

from newsfeed.core.storage import DB, connect


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket."""

    def __init__(self, fail_send: bool = False):
        self.sent: list[str] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.accepted = False
        self.closed = False
        self.fail_send = fail_send

    async def accept(self):
        self.accepted = True

    async def send_text(self, text: str):
        if self.fail_send:
            raise RuntimeError("socket gone")
        self.sent.append(text)

    async def receive(self):
        return await self.inbox.get()

    async def close(self, code: int = 1000):
        self.closed = True

    def push(self, payload):
        text = payload if isinstance(payload, str) else json.dumps(payload)
        self.inbox.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self, code: int = 1000):
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    @property
    def messages(self) -> list[dict]:
        return [json.loads(t) for t in self.sent]


@pytest.fixture
def db():
    """Initialized in-memory DB."""
    conn = connect(":memory:")
    database = DB(conn=conn)
    database.init()
    yield database
    conn.close()


@pytest.fixture
def make_ws():
    return FakeWebSocket


@pytest.fixture
def queued():
    """Drain a Connection's outbound queue without a writer task."""

    def _drain(connection) -> list[dict]:
        out = []
        while not connection._queue.empty():
            out.append(json.loads(connection._queue.get_nowait()))
        return out

    return _drain


@pytest.fixture
def until():
    """Wait until predicate() is true, yielding to the event loop."""

    async def _until(predicate, timeout: float = 1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _until
