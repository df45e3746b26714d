"""Inbound message handling: validate, persist, then broadcast.

Every inbound message ends in exactly one outcome: a broadcast to all
connections, a targeted ERROR, a targeted ALL_ARTICLES snapshot, or nothing
at all for unrecognized types.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any

from newsfeed.core.broadcast import Broadcaster
from newsfeed.core.connections import Connection, DeliveryError
from newsfeed.core.events import FeedEvent, InboundType
from newsfeed.core.snapshot import SnapshotAssembler
from newsfeed.core.storage import ReferentialIntegrityViolation, StoreError, StoreGateway

logger = logging.getLogger(__name__)

MSG_SERVER_ERROR = "Server error processing your request."
MSG_LOAD_FAILED = "Failed to load articles."
MSG_MISSING_ARTICLE = "Missing required article data."
MSG_MISSING_COMMENT = "Missing required comment data."
MSG_MISSING_REACTION = "Missing required reaction data."


def unknown_article_message(noun: str) -> str:
    return f"Cannot add {noun}: The article ID provided does not exist."


class MessageState(str, Enum):
    """Final state of one inbound message."""

    BROADCAST = "broadcast"
    SNAPSHOT = "snapshot"
    REJECTED = "rejected"
    PERSIST_FAILED = "persist_failed"
    IGNORED = "ignored"


class ValidationError(Exception):
    """A required field is missing or empty."""

    def __init__(self, message: str, article_id: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.article_id = article_id


class ProtocolError(Exception):
    """The payload is not a JSON object."""


def parse_message(raw: str | bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Unparseable message: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value != 0


def _is_article_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_article(data: dict[str, Any]) -> dict[str, Any]:
    article = data.get("article")
    if not isinstance(article, dict):
        raise ValidationError(MSG_MISSING_ARTICLE)
    if not (
        _is_text(article.get("title"))
        and _is_text(article.get("content"))
        and _is_timestamp(article.get("timestamp"))
    ):
        raise ValidationError(MSG_MISSING_ARTICLE)
    image_url = article.get("imageUrl")
    if image_url is not None and not isinstance(image_url, str):
        raise ValidationError(MSG_MISSING_ARTICLE)
    return {
        "title": article["title"],
        "content": article["content"],
        "imageUrl": image_url or None,
        "timestamp": article["timestamp"],
    }


def validate_comment(data: dict[str, Any]) -> tuple[int, dict[str, Any]]:
    article_id = data.get("articleId")
    comment = data.get("comment")
    if not _is_article_id(article_id) or not isinstance(comment, dict):
        raise ValidationError(MSG_MISSING_COMMENT)
    if not (
        _is_text(comment.get("userName"))
        and _is_text(comment.get("commentText"))
        and _is_timestamp(comment.get("timestamp"))
    ):
        raise ValidationError(MSG_MISSING_COMMENT, article_id)
    return article_id, {
        "userName": comment["userName"],
        "commentText": comment["commentText"],
        "timestamp": comment["timestamp"],
    }


def validate_reaction(data: dict[str, Any]) -> tuple[int, dict[str, Any]]:
    article_id = data.get("articleId")
    reaction = data.get("reaction")
    if not _is_article_id(article_id) or not isinstance(reaction, dict):
        raise ValidationError(MSG_MISSING_REACTION)
    if not (
        _is_text(reaction.get("type"))
        and _is_text(reaction.get("clientId"))
        and _is_timestamp(reaction.get("timestamp"))
    ):
        raise ValidationError(MSG_MISSING_REACTION, article_id)
    return article_id, {
        "clientId": reaction["clientId"],
        "type": reaction["type"],
        "timestamp": reaction["timestamp"],
    }


class MutationHandler:
    """Processes one inbound message for one connection."""

    def __init__(
        self,
        gateway: StoreGateway,
        broadcaster: Broadcaster,
        assembler: SnapshotAssembler,
    ) -> None:
        self._gateway = gateway
        self._broadcaster = broadcaster
        self._assembler = assembler

    async def handle(self, connection: Connection, raw: str | bytes) -> MessageState:
        try:
            data = parse_message(raw)
        except ProtocolError as e:
            logger.warning(f"Rejected message from {connection!r}: {e}")
            connection.send(FeedEvent.error(MSG_SERVER_ERROR))
            return MessageState.REJECTED

        kind = data.get("type")
        if not isinstance(kind, str) or kind not in InboundType.__members__:
            logger.warning(f"Unknown message type: {kind!r}")
            return MessageState.IGNORED

        logger.info(f"Received {kind} from {connection!r}")
        try:
            return await self._dispatch(connection, InboundType(kind), data)
        except DeliveryError:
            raise
        except ValidationError as e:
            connection.send(FeedEvent.error(e.message, e.article_id))
            return MessageState.REJECTED
        except Exception:
            logger.exception(f"Error processing {kind} from {connection!r}")
            connection.send(FeedEvent.error(MSG_SERVER_ERROR))
            return MessageState.PERSIST_FAILED

    async def _dispatch(
        self, connection: Connection, kind: InboundType, data: dict[str, Any]
    ) -> MessageState:
        if kind is InboundType.PUBLISH_ARTICLE:
            return await self._publish_article(connection, data)
        if kind is InboundType.POST_COMMENT:
            return await self._post_comment(connection, data)
        if kind is InboundType.POST_REACTION:
            return await self._post_reaction(connection, data)
        return await self._send_snapshot(connection)

    async def _publish_article(self, connection: Connection, data: dict[str, Any]) -> MessageState:
        fields = validate_article(data)
        try:
            article = await self._gateway.insert_article(fields)
        except StoreError:
            logger.exception("Error adding article")
            connection.send(FeedEvent.error(MSG_SERVER_ERROR))
            return MessageState.PERSIST_FAILED
        self._broadcaster.broadcast(FeedEvent.new_article(article))
        return MessageState.BROADCAST

    async def _post_comment(self, connection: Connection, data: dict[str, Any]) -> MessageState:
        article_id, fields = validate_comment(data)
        try:
            comment = await self._gateway.insert_comment(article_id, fields)
        except ReferentialIntegrityViolation as e:
            logger.warning(f"Comment for unknown article {article_id}: {e}")
            connection.send(FeedEvent.error(unknown_article_message("comment"), article_id))
            return MessageState.PERSIST_FAILED
        except StoreError:
            logger.exception(f"Error adding comment to article {article_id}")
            connection.send(FeedEvent.error(MSG_SERVER_ERROR))
            return MessageState.PERSIST_FAILED
        self._broadcaster.broadcast(FeedEvent.new_comment(comment))
        return MessageState.BROADCAST

    async def _post_reaction(self, connection: Connection, data: dict[str, Any]) -> MessageState:
        article_id, fields = validate_reaction(data)
        try:
            reaction = await self._gateway.insert_reaction(article_id, fields)
        except ReferentialIntegrityViolation as e:
            logger.warning(f"Reaction for unknown article {article_id}: {e}")
            connection.send(FeedEvent.error(unknown_article_message("reaction"), article_id))
            return MessageState.PERSIST_FAILED
        except StoreError:
            logger.exception(f"Error adding reaction to article {article_id}")
            connection.send(FeedEvent.error(MSG_SERVER_ERROR))
            return MessageState.PERSIST_FAILED
        self._broadcaster.broadcast(FeedEvent.new_reaction(reaction))
        return MessageState.BROADCAST

    async def _send_snapshot(self, connection: Connection) -> MessageState:
        try:
            _, event = await self._assembler.assemble_event()
        except StoreError:
            logger.exception("Error fetching articles")
            connection.send(FeedEvent.error(MSG_LOAD_FAILED))
            return MessageState.PERSIST_FAILED
        connection.send(event)
        return MessageState.SNAPSHOT
