from __future__ import annotations

from fastapi import FastAPI, WebSocket

from newsfeed.core.feed import get_feed, init_feed
from newsfeed.core.session import serve_connection
from newsfeed.core.settings import Settings
from newsfeed.core.storage import init_db

app = FastAPI(title="newsfeed")


@app.on_event("startup")
def _startup() -> None:
    init_feed(init_db())


@app.websocket("/")
@app.websocket("/ws")
async def feed_socket(websocket: WebSocket):
    """Live feed: snapshot on connect, then pushed updates."""
    feed = get_feed()
    await serve_connection(
        websocket,
        feed.registry,
        feed.assembler,
        feed.handler,
        max_queue=feed.send_queue_size,
    )


@app.get("/api/health")
async def api_health():
    """Connection count and row counts per table."""
    feed = get_feed()
    stats = await feed.gateway.get_stats()
    return {"status": "ok", "connections": len(feed.registry), **stats}


def run() -> None:
    import uvicorn

    s = Settings.from_env()
    uvicorn.run("newsfeed.main:app", host=s.host, port=s.port, log_level=s.log_level)
