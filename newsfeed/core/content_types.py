"""Feed records as stored and as sent over the wire."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Comment:
    """A comment on an article."""

    id: int
    article_id: int
    user_name: str
    comment_text: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userName": self.user_name,
            "commentText": self.comment_text,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Comment:
        return cls(
            id=row["id"],
            article_id=row["article_id"],
            user_name=row["userName"],
            comment_text=row["commentText"],
            timestamp=row["timestamp"],
        )


@dataclass(frozen=True)
class Reaction:
    """A reaction left on an article by a client."""

    id: int
    article_id: int
    client_id: str
    type: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "clientId": self.client_id,
            "type": self.type,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Reaction:
        return cls(
            id=row["id"],
            article_id=row["article_id"],
            client_id=row["clientId"],
            type=row["type"],
            timestamp=row["timestamp"],
        )


@dataclass(frozen=True)
class Article:
    """A published article with its comments and reactions."""

    id: int
    title: str
    content: str
    timestamp: int
    image_url: str | None = None
    comments: tuple[Comment, ...] = ()
    reactions: tuple[Reaction, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "imageUrl": self.image_url,
            "timestamp": self.timestamp,
            "comments": [c.to_dict() for c in self.comments],
            "reactions": [r.to_dict() for r in self.reactions],
        }

    @classmethod
    def from_row(
        cls,
        row: sqlite3.Row,
        comments: tuple[Comment, ...] = (),
        reactions: tuple[Reaction, ...] = (),
    ) -> Article:
        return cls(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            image_url=row["imageUrl"],
            timestamp=row["timestamp"],
            comments=comments,
            reactions=reactions,
        )


@dataclass(frozen=True)
class Snapshot:
    """All articles, newest first, each with comments oldest first."""

    articles: tuple[Article, ...] = ()

    def to_list(self) -> list[dict[str, Any]]:
        return [a.to_dict() for a in self.articles]

    def high_water(self) -> dict[str, int]:
        """Highest id per record kind contained in this snapshot.

        Ids are assigned and committed in increasing order, so every record
        at or below these ids is inside the snapshot.
        """
        marks = {"article": 0, "comment": 0, "reaction": 0}
        for article in self.articles:
            marks["article"] = max(marks["article"], article.id)
            for c in article.comments:
                marks["comment"] = max(marks["comment"], c.id)
            for r in article.reactions:
                marks["reaction"] = max(marks["reaction"], r.id)
        return marks
