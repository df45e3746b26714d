from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import threading
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

from newsfeed.core.content_types import Article, Comment, Reaction, Snapshot
from newsfeed.core.settings import Settings

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS articles (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  title TEXT NOT NULL,
  content TEXT NOT NULL,
  imageUrl TEXT,
  timestamp INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS comments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  article_id INTEGER NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
  userName TEXT NOT NULL,
  commentText TEXT NOT NULL,
  timestamp INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS reactions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  article_id INTEGER NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
  clientId TEXT NOT NULL,
  type TEXT NOT NULL,
  timestamp INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_articles_timestamp ON articles(timestamp);
CREATE INDEX IF NOT EXISTS idx_comments_article_id ON comments(article_id);
CREATE INDEX IF NOT EXISTS idx_reactions_article_id ON reactions(article_id);
"""


class StoreError(Exception):
    """Base exception for store failures."""


class StoreUnavailable(StoreError):
    """The store could not be reached or is locked."""


class ReferentialIntegrityViolation(StoreError):
    """A write referenced an article that does not exist."""


def _is_foreign_key_failure(exc: sqlite3.IntegrityError) -> bool:
    # sqlite_errorname is only populated on Python 3.11+
    name = getattr(exc, "sqlite_errorname", None)
    if name:
        return name == "SQLITE_CONSTRAINT_FOREIGNKEY"
    return "FOREIGN KEY" in str(exc).upper()


def classify_error(exc: sqlite3.Error) -> StoreError:
    """Map a driver error onto the store error taxonomy."""
    if isinstance(exc, sqlite3.IntegrityError) and _is_foreign_key_failure(exc):
        return ReferentialIntegrityViolation(str(exc))
    if isinstance(exc, sqlite3.OperationalError):
        return StoreUnavailable(str(exc))
    return StoreError(str(exc))


@dataclass
class DB:
    """SQLite store.

    A file database gives every thread its own connection, so reads run
    concurrently under WAL and only inserts take the write lock. An
    in-memory database exists only on `conn`, so there every call is
    serialized on that one connection.
    """

    conn: sqlite3.Connection
    path: str | None = None
    _write_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _shared_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _local: threading.local = field(default_factory=threading.local, repr=False)

    def init(self) -> None:
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    @property
    def shared(self) -> bool:
        return self.path is None or self.path == ":memory:"

    def _connection(self) -> sqlite3.Connection:
        if self.shared:
            return self.conn
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = connect(self.path)
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
        return conn

    @contextmanager
    def _guard(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield this thread's connection and classify driver errors.

        Inserts hold the write lock through commit, so ids become visible
        in increasing order.
        """
        with ExitStack() as stack:
            if write:
                stack.enter_context(self._write_lock)
            if self.shared:
                stack.enter_context(self._shared_lock)
            conn = self._connection()
            try:
                yield conn
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.rollback()
                raise classify_error(e) from e

    def get_stats(self) -> dict[str, int]:
        with self._guard() as conn:
            articles = conn.execute("select count(*) from articles").fetchone()[0]
            comments = conn.execute("select count(*) from comments").fetchone()[0]
            reactions = conn.execute("select count(*) from reactions").fetchone()[0]
        return {"articles": articles, "comments": comments, "reactions": reactions}

    def fetch_snapshot(self) -> Snapshot:
        """Load every article with its comments and reactions.

        Runs one query per table and groups children by article_id in memory,
        so the cost does not grow with the number of round trips per article.
        The three reads share one transaction and see the same committed state.
        """
        with self._guard() as conn:
            conn.execute("BEGIN")
            article_rows = conn.execute(
                """
                SELECT id, title, content, imageUrl, timestamp
                FROM articles
                ORDER BY timestamp DESC, id DESC
                """
            ).fetchall()
            comment_rows = conn.execute(
                """
                SELECT id, article_id, userName, commentText, timestamp
                FROM comments
                ORDER BY article_id, timestamp ASC, id ASC
                """
            ).fetchall()
            reaction_rows = conn.execute(
                """
                SELECT id, article_id, clientId, type, timestamp
                FROM reactions
                ORDER BY article_id, id
                """
            ).fetchall()
            conn.commit()

        comments: dict[int, list[Comment]] = defaultdict(list)
        for row in comment_rows:
            comments[row["article_id"]].append(Comment.from_row(row))

        reactions: dict[int, list[Reaction]] = defaultdict(list)
        for row in reaction_rows:
            reactions[row["article_id"]].append(Reaction.from_row(row))

        return Snapshot(
            articles=tuple(
                Article.from_row(
                    row,
                    comments=tuple(comments.get(row["id"], ())),
                    reactions=tuple(reactions.get(row["id"], ())),
                )
                for row in article_rows
            )
        )

    def insert_article(self, fields: Mapping[str, Any]) -> Article:
        with self._guard(write=True) as conn:
            cur = conn.execute(
                "INSERT INTO articles (title, content, imageUrl, timestamp) VALUES (?, ?, ?, ?)",
                (fields["title"], fields["content"], fields.get("imageUrl"), fields["timestamp"]),
            )
            conn.commit()
        return Article(
            id=cur.lastrowid,
            title=fields["title"],
            content=fields["content"],
            image_url=fields.get("imageUrl"),
            timestamp=fields["timestamp"],
        )

    def insert_comment(self, article_id: int, fields: Mapping[str, Any]) -> Comment:
        with self._guard(write=True) as conn:
            cur = conn.execute(
                "INSERT INTO comments (article_id, userName, commentText, timestamp) VALUES (?, ?, ?, ?)",
                (article_id, fields["userName"], fields["commentText"], fields["timestamp"]),
            )
            conn.commit()
        return Comment(
            id=cur.lastrowid,
            article_id=article_id,
            user_name=fields["userName"],
            comment_text=fields["commentText"],
            timestamp=fields["timestamp"],
        )

    def insert_reaction(self, article_id: int, fields: Mapping[str, Any]) -> Reaction:
        with self._guard(write=True) as conn:
            cur = conn.execute(
                "INSERT INTO reactions (article_id, clientId, type, timestamp) VALUES (?, ?, ?, ?)",
                (article_id, fields["clientId"], fields["type"], fields["timestamp"]),
            )
            conn.commit()
        return Reaction(
            id=cur.lastrowid,
            article_id=article_id,
            client_id=fields["clientId"],
            type=fields["type"],
            timestamp=fields["timestamp"],
        )


class StoreGateway:
    """Async access to the DB. Each call runs in a worker thread."""

    def __init__(self, db: DB) -> None:
        self._db = db

    async def fetch_snapshot(self) -> Snapshot:
        return await asyncio.to_thread(self._db.fetch_snapshot)

    async def insert_article(self, fields: Mapping[str, Any]) -> Article:
        return await asyncio.to_thread(self._db.insert_article, fields)

    async def insert_comment(self, article_id: int, fields: Mapping[str, Any]) -> Comment:
        return await asyncio.to_thread(self._db.insert_comment, article_id, fields)

    async def insert_reaction(self, article_id: int, fields: Mapping[str, Any]) -> Reaction:
        return await asyncio.to_thread(self._db.insert_reaction, article_id, fields)

    async def get_stats(self) -> dict[str, int]:
        return await asyncio.to_thread(self._db.get_stats)


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


_db: DB | None = None


def init_db() -> DB:
    global _db

    s = Settings.from_env()
    db_dir = os.path.dirname(s.db_path)
    if s.db_path != ":memory:" and db_dir:
        os.makedirs(db_dir, exist_ok=True)

    _db = DB(conn=connect(s.db_path), path=s.db_path)
    _db.init()
    logger.info(f"Store ready at {s.db_path}")
    return _db


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
