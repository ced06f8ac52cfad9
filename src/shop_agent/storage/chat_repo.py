"""Chat session, message and metrics persistence."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Optional

from shop_agent.errors import SessionNotFound
from shop_agent.log import get_logger
from shop_agent.storage.database import Database, format_ts, parse_ts, utcnow
from shop_agent.storage.models import (
    ChatMessage,
    ChatRole,
    ChatSession,
    ChatSessionMetrics,
    MetricsDelta,
)

logger = get_logger(__name__)


class ChatRepository:
    """CRUD over chat sessions, their ordered messages and per-session metrics."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self._db = db
        self._clock = clock

    async def create_session(self, owner_id: str, title: Optional[str] = None) -> ChatSession:
        now = format_ts(self._clock())
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """INSERT INTO chat_sessions (owner_id, title, created_at, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (owner_id, title, now, now),
            )
            session_id = cursor.lastrowid
        logger.info("chat_session_created", session_id=session_id, owner_id=owner_id)
        return ChatSession(
            id=session_id,  # type: ignore[arg-type]
            owner_id=owner_id,
            title=title,
            created_at=parse_ts(now),  # type: ignore[arg-type]
            updated_at=parse_ts(now),  # type: ignore[arg-type]
        )

    async def get_session(self, session_id: int) -> ChatSession | None:
        row = await self._db.fetchone("SELECT * FROM chat_sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    async def list_sessions(self, owner_id: str, limit: int = 50) -> list[ChatSession]:
        """List an owner's sessions, most recently active first."""
        rows = await self._db.fetchall(
            """SELECT * FROM chat_sessions WHERE owner_id = ?
               ORDER BY updated_at DESC, id DESC LIMIT ?""",
            (owner_id, limit),
        )
        return [self._row_to_session(row) for row in rows]

    async def update_session_title(self, session_id: int, title: str) -> None:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE chat_sessions SET title = ?, updated_at = ? WHERE id = ?",
                (title, format_ts(self._clock()), session_id),
            )
            if cursor.rowcount == 0:
                raise SessionNotFound(session_id)

    async def delete_session(self, session_id: int) -> bool:
        """Delete a session; messages, metrics and pending actions cascade."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute("DELETE FROM chat_sessions WHERE id = ?", (session_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("chat_session_deleted", session_id=session_id)
        return deleted

    async def add_message(
        self,
        session_id: int,
        role: ChatRole,
        content: dict[str, Any],
        api_interaction: dict[str, Any] | None = None,
    ) -> ChatMessage:
        """Append a message and bump the session's ``updated_at``."""
        now = format_ts(self._clock())
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE chat_sessions SET updated_at = ? WHERE id = ?",
                (now, session_id),
            )
            if cursor.rowcount == 0:
                raise SessionNotFound(session_id)
            cursor = await conn.execute(
                """INSERT INTO chat_messages
                   (session_id, role, content_json, api_interaction_json, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    session_id,
                    str(role),
                    json.dumps(content),
                    json.dumps(api_interaction) if api_interaction is not None else None,
                    now,
                ),
            )
            message_id = cursor.lastrowid
        return ChatMessage(
            id=message_id,  # type: ignore[arg-type]
            session_id=session_id,
            role=ChatRole(role),
            content=content,
            api_interaction=api_interaction,
            created_at=parse_ts(now),  # type: ignore[arg-type]
        )

    async def get_messages(self, session_id: int) -> list[ChatMessage]:
        rows = await self._db.fetchall(
            "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY id ASC",
            (session_id,),
        )
        return [self._row_to_message(row) for row in rows]

    async def get_message(self, message_id: int) -> ChatMessage | None:
        row = await self._db.fetchone("SELECT * FROM chat_messages WHERE id = ?", (message_id,))
        return self._row_to_message(row) if row else None

    async def record_metrics(self, session_id: int, delta: MetricsDelta) -> None:
        """Add *delta* to the session's counters, creating the row on first use."""
        now = format_ts(self._clock())
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO chat_session_metrics
                   (session_id, total_input_tokens, total_output_tokens, total_api_calls,
                    total_tool_calls, total_duration_ms, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(session_id) DO UPDATE SET
                       total_input_tokens = total_input_tokens + excluded.total_input_tokens,
                       total_output_tokens = total_output_tokens + excluded.total_output_tokens,
                       total_api_calls = total_api_calls + excluded.total_api_calls,
                       total_tool_calls = total_tool_calls + excluded.total_tool_calls,
                       total_duration_ms = total_duration_ms + excluded.total_duration_ms,
                       updated_at = excluded.updated_at""",
                (
                    session_id,
                    delta.input_tokens,
                    delta.output_tokens,
                    delta.api_calls,
                    delta.tool_calls,
                    delta.duration_ms,
                    now,
                ),
            )

    async def get_metrics(self, session_id: int) -> ChatSessionMetrics:
        row = await self._db.fetchone(
            "SELECT * FROM chat_session_metrics WHERE session_id = ?", (session_id,)
        )
        if row is None:
            return ChatSessionMetrics(session_id=session_id)
        return ChatSessionMetrics(
            session_id=row["session_id"],
            total_input_tokens=row["total_input_tokens"],
            total_output_tokens=row["total_output_tokens"],
            total_api_calls=row["total_api_calls"],
            total_tool_calls=row["total_tool_calls"],
            total_duration_ms=row["total_duration_ms"],
            updated_at=parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_session(row) -> ChatSession:
        return ChatSession(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            created_at=parse_ts(row["created_at"]),  # type: ignore[arg-type]
            updated_at=parse_ts(row["updated_at"]),  # type: ignore[arg-type]
        )

    @staticmethod
    def _row_to_message(row) -> ChatMessage:
        interaction = row["api_interaction_json"]
        return ChatMessage(
            id=row["id"],
            session_id=row["session_id"],
            role=ChatRole(row["role"]),
            content=json.loads(row["content_json"]),
            api_interaction=json.loads(interaction) if interaction else None,
            created_at=parse_ts(row["created_at"]),  # type: ignore[arg-type]
        )
