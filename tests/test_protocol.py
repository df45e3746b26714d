"""Tests for protocol.py"""

import json
from unittest.mock import AsyncMock

import pytest

from newsfeed.core.connections import Connection
from newsfeed.core.content_types import Snapshot
from newsfeed.core.events import FeedEvent
from newsfeed.core.feed import build_feed
from newsfeed.core.protocol import (
    MSG_LOAD_FAILED,
    MSG_MISSING_ARTICLE,
    MSG_SERVER_ERROR,
    MessageState,
    ProtocolError,
    ValidationError,
    parse_message,
    validate_article,
    validate_comment,
    validate_reaction,
)
from newsfeed.core.storage import StoreError, StoreUnavailable


def _publish(title="Title", content="Body", timestamp=1000, **extra):
    article = {"title": title, "content": content, "timestamp": timestamp, **extra}
    return {"type": "PUBLISH_ARTICLE", "article": article}


def _comment(article_id, user="ana", text="Nice", timestamp=2000):
    return {
        "type": "POST_COMMENT",
        "articleId": article_id,
        "comment": {"userName": user, "commentText": text, "timestamp": timestamp},
    }


def _reaction(article_id, client_id="client-1", kind="like", timestamp=3000):
    return {
        "type": "POST_REACTION",
        "articleId": article_id,
        "reaction": {"clientId": client_id, "type": kind, "timestamp": timestamp},
    }


@pytest.fixture
def feed(db):
    return build_feed(db)


@pytest.fixture
def clients(feed, make_ws, queued):
    """Three opened, registered connections with empty queues."""
    conns = []
    for _ in range(3):
        conn = Connection(make_ws())
        conn.open(FeedEvent.all_articles(Snapshot()))
        queued(conn)
        feed.registry.register(conn)
        conns.append(conn)
    return conns


def _raw(payload):
    return json.dumps(payload)


class TestParseAndValidate:
    def test_parse_rejects_garbage(self):
        with pytest.raises(ProtocolError):
            parse_message("{not json")

    def test_parse_rejects_non_object(self):
        with pytest.raises(ProtocolError):
            parse_message("[1, 2]")

    def test_parse_rejects_bad_bytes(self):
        with pytest.raises(ProtocolError):
            parse_message(b"\xff\xfe\x00")

    @pytest.mark.parametrize(
        "article",
        [
            {"content": "c", "timestamp": 1},
            {"title": "", "content": "c", "timestamp": 1},
            {"title": "   ", "content": "c", "timestamp": 1},
            {"title": "t", "content": "c"},
            {"title": "t", "content": "c", "timestamp": 0},
            {"title": "t", "content": "c", "timestamp": "soon"},
            {"title": "t", "content": "c", "timestamp": 1, "imageUrl": 5},
        ],
    )
    def test_invalid_article(self, article):
        with pytest.raises(ValidationError):
            validate_article({"article": article})

    def test_article_missing_entirely(self):
        with pytest.raises(ValidationError):
            validate_article({})

    def test_article_image_optional(self):
        fields = validate_article({"article": {"title": "t", "content": "c", "timestamp": 1}})
        assert fields["imageUrl"] is None

    def test_comment_requires_user_name(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_comment(_comment(1, user=""))
        assert exc_info.value.article_id == 1

    def test_comment_requires_article_id(self):
        payload = _comment(None)
        with pytest.raises(ValidationError):
            validate_comment(payload)

    def test_reaction_requires_client_id(self):
        with pytest.raises(ValidationError):
            validate_reaction(_reaction(1, client_id=""))

    def test_reaction_rejects_bool_article_id(self):
        with pytest.raises(ValidationError):
            validate_reaction(_reaction(True))


class TestPublishArticle:
    @pytest.mark.asyncio
    async def test_broadcast_to_all_including_sender(self, feed, clients, queued):
        sender = clients[0]
        state = await feed.handler.handle(sender, _raw(_publish(imageUrl="https://img")))

        assert state == MessageState.BROADCAST
        ids = set()
        for conn in clients:
            [message] = queued(conn)
            assert message["type"] == "NEW_ARTICLE"
            assert message["article"]["title"] == "Title"
            assert message["article"]["imageUrl"] == "https://img"
            ids.add(message["article"]["id"])
        assert len(ids) == 1 and None not in ids

    @pytest.mark.asyncio
    async def test_visible_in_next_snapshot(self, feed, clients, queued):
        await feed.handler.handle(clients[0], _raw(_publish(title="Fresh")))
        [event] = queued(clients[1])

        state = await feed.handler.handle(clients[1], _raw({"type": "GET_ALL_ARTICLES"}))
        assert state == MessageState.SNAPSHOT
        [snapshot] = queued(clients[1])
        assert snapshot["type"] == "ALL_ARTICLES"
        assert [a["id"] for a in snapshot["articles"]] == [event["article"]["id"]]

    @pytest.mark.asyncio
    async def test_empty_title_rejected(self, feed, clients, queued, db):
        state = await feed.handler.handle(clients[0], _raw(_publish(title="")))

        assert state == MessageState.REJECTED
        assert queued(clients[0]) == [{"type": "ERROR", "message": MSG_MISSING_ARTICLE}]
        assert queued(clients[1]) == []
        assert queued(clients[2]) == []
        assert db.get_stats()["articles"] == 0

    @pytest.mark.asyncio
    async def test_store_failure_is_generic(self, feed, clients, queued):
        feed.handler._gateway = AsyncMock()
        feed.handler._gateway.insert_article.side_effect = StoreUnavailable("database is locked")

        state = await feed.handler.handle(clients[0], _raw(_publish()))

        assert state == MessageState.PERSIST_FAILED
        assert queued(clients[0]) == [{"type": "ERROR", "message": MSG_SERVER_ERROR}]
        assert queued(clients[1]) == []


class TestPostComment:
    @pytest.mark.asyncio
    async def test_broadcast(self, feed, clients, queued, db):
        article = db.insert_article({"title": "t", "content": "c", "timestamp": 1})

        state = await feed.handler.handle(clients[1], _raw(_comment(article.id)))

        assert state == MessageState.BROADCAST
        for conn in clients:
            [message] = queued(conn)
            assert message["type"] == "NEW_COMMENT"
            assert message["articleId"] == article.id
            assert message["comment"]["userName"] == "ana"
            assert message["comment"]["id"] is not None

    @pytest.mark.asyncio
    async def test_unknown_article(self, feed, clients, queued, db):
        state = await feed.handler.handle(clients[0], _raw(_comment(404)))

        assert state == MessageState.PERSIST_FAILED
        [error] = queued(clients[0])
        assert error["type"] == "ERROR"
        assert error["articleId"] == 404
        assert "does not exist" in error["message"]
        assert queued(clients[1]) == []
        assert db.get_stats()["comments"] == 0

    @pytest.mark.asyncio
    async def test_missing_user_name(self, feed, clients, queued, db):
        article = db.insert_article({"title": "t", "content": "c", "timestamp": 1})
        state = await feed.handler.handle(clients[0], _raw(_comment(article.id, user=" ")))

        assert state == MessageState.REJECTED
        assert [m["type"] for m in queued(clients[0])] == ["ERROR"]
        assert queued(clients[1]) == []

    @pytest.mark.asyncio
    async def test_generic_store_error(self, feed, clients, queued):
        feed.handler._gateway = AsyncMock()
        feed.handler._gateway.insert_comment.side_effect = StoreError("disk I/O error")

        state = await feed.handler.handle(clients[0], _raw(_comment(1)))

        assert state == MessageState.PERSIST_FAILED
        assert queued(clients[0]) == [{"type": "ERROR", "message": MSG_SERVER_ERROR}]
        assert queued(clients[1]) == []


class TestPostReaction:
    @pytest.mark.asyncio
    async def test_broadcast(self, feed, clients, queued, db):
        article = db.insert_article({"title": "t", "content": "c", "timestamp": 1})

        state = await feed.handler.handle(clients[2], _raw(_reaction(article.id)))

        assert state == MessageState.BROADCAST
        for conn in clients:
            [message] = queued(conn)
            assert message["type"] == "NEW_REACTION"
            assert message["reaction"]["clientId"] == "client-1"

    @pytest.mark.asyncio
    async def test_unknown_article(self, feed, clients, queued, db):
        state = await feed.handler.handle(clients[0], _raw(_reaction(77)))

        assert state == MessageState.PERSIST_FAILED
        assert queued(clients[0]) == [
            {
                "type": "ERROR",
                "message": "Cannot add reaction: The article ID provided does not exist.",
                "articleId": 77,
            }
        ]
        assert queued(clients[1]) == []
        assert db.get_stats()["reactions"] == 0

    @pytest.mark.asyncio
    async def test_generic_store_error(self, feed, clients, queued):
        feed.handler._gateway = AsyncMock()
        feed.handler._gateway.insert_reaction.side_effect = StoreError("boom")

        state = await feed.handler.handle(clients[0], _raw(_reaction(1)))

        assert state == MessageState.PERSIST_FAILED
        assert queued(clients[0]) == [{"type": "ERROR", "message": MSG_SERVER_ERROR}]


class TestOtherMessages:
    @pytest.mark.asyncio
    async def test_malformed_payload(self, feed, clients, queued):
        state = await feed.handler.handle(clients[0], "this is not json")

        assert state == MessageState.REJECTED
        assert queued(clients[0]) == [{"type": "ERROR", "message": MSG_SERVER_ERROR}]
        assert queued(clients[1]) == []
        assert not clients[0].closed

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, feed, clients, queued):
        state = await feed.handler.handle(clients[0], _raw({"type": "DELETE_ARTICLE", "articleId": 1}))

        assert state == MessageState.IGNORED
        assert all(queued(c) == [] for c in clients)

    @pytest.mark.asyncio
    async def test_missing_type_ignored(self, feed, clients, queued):
        state = await feed.handler.handle(clients[0], _raw({"article": {}}))
        assert state == MessageState.IGNORED
        assert queued(clients[0]) == []

    @pytest.mark.asyncio
    async def test_get_all_articles_is_targeted(self, feed, clients, queued, db):
        db.insert_article({"title": "t", "content": "c", "timestamp": 1})

        state = await feed.handler.handle(clients[0], _raw({"type": "GET_ALL_ARTICLES"}))

        assert state == MessageState.SNAPSHOT
        [message] = queued(clients[0])
        assert message["type"] == "ALL_ARTICLES"
        assert len(message["articles"]) == 1
        assert queued(clients[1]) == []

    @pytest.mark.asyncio
    async def test_consecutive_snapshots_identical(self, feed, clients, queued, db):
        article = db.insert_article({"title": "t", "content": "c", "timestamp": 1})
        db.insert_comment(article.id, {"userName": "u", "commentText": "x", "timestamp": 2})

        await feed.handler.handle(clients[0], _raw({"type": "GET_ALL_ARTICLES"}))
        await feed.handler.handle(clients[0], _raw({"type": "GET_ALL_ARTICLES"}))

        first, second = queued(clients[0])
        assert first == second

    @pytest.mark.asyncio
    async def test_snapshot_failure(self, feed, clients, queued):
        feed.handler._assembler = AsyncMock()
        feed.handler._assembler.assemble_event.side_effect = StoreUnavailable("gone")

        state = await feed.handler.handle(clients[0], _raw({"type": "GET_ALL_ARTICLES"}))

        assert state == MessageState.PERSIST_FAILED
        assert queued(clients[0]) == [{"type": "ERROR", "message": MSG_LOAD_FAILED}]
