"""SQLite database connection manager with schema migration."""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import aiosqlite

from shop_agent.errors import StorageError
from shop_agent.log import get_logger

logger = get_logger(__name__)

# Fixed-width UTC timestamps so that TEXT comparison in SQL matches time order.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chat_sessions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id        TEXT    NOT NULL,
    title           TEXT,
    created_at      TEXT    NOT NULL,
    updated_at      TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_owner
    ON chat_sessions(owner_id, updated_at DESC);

CREATE TABLE IF NOT EXISTS chat_messages (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id            INTEGER NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
    role                  TEXT    NOT NULL
        CHECK(role IN ('user','assistant','tool_invocation','tool_result')),
    content_json          TEXT    NOT NULL,
    api_interaction_json  TEXT,
    created_at            TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session
    ON chat_messages(session_id, id);

CREATE TABLE IF NOT EXISTS chat_session_metrics (
    session_id            INTEGER PRIMARY KEY REFERENCES chat_sessions(id) ON DELETE CASCADE,
    total_input_tokens    INTEGER NOT NULL DEFAULT 0,
    total_output_tokens   INTEGER NOT NULL DEFAULT 0,
    total_api_calls       INTEGER NOT NULL DEFAULT 0,
    total_tool_calls      INTEGER NOT NULL DEFAULT 0,
    total_duration_ms     INTEGER NOT NULL DEFAULT 0,
    updated_at            TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_actions (
    id              TEXT    PRIMARY KEY,
    session_id      INTEGER NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
    message_id      INTEGER REFERENCES chat_messages(id) ON DELETE SET NULL,
    requester_id    TEXT    NOT NULL,
    tool_name       TEXT    NOT NULL,
    tool_input_json TEXT    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending','approved','rejected','executed','failed','expired')),
    external_ref    TEXT    UNIQUE,
    result_json     TEXT,
    error_message   TEXT,
    approved_by     TEXT,
    rejected_by     TEXT,
    created_at      TEXT    NOT NULL,
    resolved_at     TEXT,
    expires_at      TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_actions_status_expires
    ON pending_actions(status, expires_at);

CREATE INDEX IF NOT EXISTS idx_actions_session
    ON pending_actions(session_id);

CREATE INDEX IF NOT EXISTS idx_actions_requester
    ON pending_actions(requester_id, status);

CREATE TABLE IF NOT EXISTS tool_examples (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    tool_name       TEXT    NOT NULL,
    domain          TEXT    NOT NULL,
    example_query   TEXT    NOT NULL,
    embedding       BLOB    NOT NULL,
    dimensions      INTEGER NOT NULL,
    is_learned      INTEGER NOT NULL DEFAULT 0,
    usage_count     INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_examples_tool_query
    ON tool_examples(tool_name, example_query);

CREATE INDEX IF NOT EXISTS idx_examples_domain
    ON tool_examples(domain);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


class Database:
    """Async SQLite database manager.

    All writes go through :meth:`transaction`, which serialises writers on one
    connection and commits or rolls back as a unit. Driver errors surface as
    :class:`StorageError`.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode: transactions are opened explicitly by transaction().
            self._conn = await aiosqlite.connect(self._db_path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
            await self._conn.executescript(SCHEMA_SQL)
            await self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"failed to open database at {self._db_path}: {e}") from e
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError("Database not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a unit of work atomically; nothing is committed if it raises."""
        conn = self.conn
        async with self._write_lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                yield conn
                await conn.commit()
            except sqlite3.Error as e:
                await self._rollback(conn)
                raise StorageError(str(e)) from e
            except BaseException:
                await self._rollback(conn)
                raise

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        try:
            cursor = await self.conn.execute(sql, tuple(params))
            return await cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        try:
            cursor = await self.conn.execute(sql, tuple(params))
            return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    @staticmethod
    async def _rollback(conn: aiosqlite.Connection) -> None:
        try:
            await conn.rollback()
        except sqlite3.Error as e:
            logger.error("rollback_failed", error=str(e))
