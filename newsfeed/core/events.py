"""Wire message types and the outbound event envelope."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from newsfeed.core.content_types import Article, Comment, Reaction, Snapshot


class InboundType(str, Enum):
    """Messages a client may send."""

    PUBLISH_ARTICLE = "PUBLISH_ARTICLE"
    POST_COMMENT = "POST_COMMENT"
    POST_REACTION = "POST_REACTION"
    GET_ALL_ARTICLES = "GET_ALL_ARTICLES"


class OutboundType(str, Enum):
    """Messages the server sends."""

    ALL_ARTICLES = "ALL_ARTICLES"
    NEW_ARTICLE = "NEW_ARTICLE"
    NEW_COMMENT = "NEW_COMMENT"
    NEW_REACTION = "NEW_REACTION"
    ERROR = "ERROR"


@dataclass
class FeedEvent:
    """An outbound message, either broadcast or targeted at one client."""

    type: OutboundType
    data: dict[str, Any] = field(default_factory=dict)
    # (kind, id) of the persisted record this event announces
    record_key: tuple[str, int] | None = None

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_message())

    @classmethod
    def all_articles(cls, snapshot: Snapshot) -> FeedEvent:
        return cls(OutboundType.ALL_ARTICLES, {"articles": snapshot.to_list()})

    @classmethod
    def new_article(cls, article: Article) -> FeedEvent:
        return cls(
            OutboundType.NEW_ARTICLE,
            {"article": article.to_dict()},
            record_key=("article", article.id),
        )

    @classmethod
    def new_comment(cls, comment: Comment) -> FeedEvent:
        return cls(
            OutboundType.NEW_COMMENT,
            {"articleId": comment.article_id, "comment": comment.to_dict()},
            record_key=("comment", comment.id),
        )

    @classmethod
    def new_reaction(cls, reaction: Reaction) -> FeedEvent:
        return cls(
            OutboundType.NEW_REACTION,
            {"articleId": reaction.article_id, "reaction": reaction.to_dict()},
            record_key=("reaction", reaction.id),
        )

    @classmethod
    def error(cls, message: str, article_id: Any = None) -> FeedEvent:
        data: dict[str, Any] = {"message": message}
        if article_id is not None:
            data["articleId"] = article_id
        return cls(OutboundType.ERROR, data)
