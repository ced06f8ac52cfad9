"""Durable state machine for mutating tool calls awaiting human approval.

    pending -> approved -> executed
                        -> failed
    pending -> rejected
    pending -> expired

Every transition is a single conditional UPDATE on the current status, so two
racing transitions on the same action cannot both succeed. When the update
matches no row the action is re-read to report why.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import aiosqlite

from shop_agent.errors import ActionNotFound, Expired, InvalidTransition
from shop_agent.log import get_logger
from shop_agent.storage.database import Database, format_ts, parse_ts, utcnow
from shop_agent.storage.models import ActionStatus, PendingAction

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600


class ActionQueue:
    def __init__(
        self,
        db: Database,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def enqueue(
        self,
        session_id: int,
        message_id: Optional[int],
        requester_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> PendingAction:
        now = self._clock()
        action_id = str(uuid.uuid4())
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO pending_actions
                   (id, session_id, message_id, requester_id, tool_name, tool_input_json,
                    status, created_at, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    action_id,
                    session_id,
                    message_id,
                    requester_id,
                    tool_name,
                    json.dumps(tool_input),
                    str(ActionStatus.PENDING),
                    format_ts(now),
                    format_ts(now + self._ttl),
                ),
            )
            action = await self._require(conn, action_id)
        logger.info(
            "action_enqueued",
            action_id=action_id,
            session_id=session_id,
            tool=tool_name,
            requester_id=requester_id,
        )
        return action

    async def attach_external_ref(self, action_id: str, external_ref: str) -> PendingAction:
        """Record where the approval card was posted. Repeating the same ref is a no-op."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """UPDATE pending_actions SET external_ref = ?
                   WHERE id = ? AND status = ? AND (external_ref IS NULL OR external_ref = ?)""",
                (external_ref, action_id, str(ActionStatus.PENDING), external_ref),
            )
            if cursor.rowcount == 0:
                current = await self._require(conn, action_id)
                raise InvalidTransition(action_id, str(current.status), "attach_external_ref")
            return await self._require(conn, action_id)

    async def approve(self, action_id: str, approver: str) -> PendingAction:
        action = await self._resolve_pending(action_id, ActionStatus.APPROVED, "approved_by", approver)
        logger.info("action_approved", action_id=action_id, approver=approver)
        return action

    async def reject(self, action_id: str, rejector: str) -> PendingAction:
        action = await self._resolve_pending(action_id, ActionStatus.REJECTED, "rejected_by", rejector)
        logger.info("action_rejected", action_id=action_id, rejector=rejector)
        return action

    async def mark_executed(self, action_id: str, result: dict[str, Any]) -> PendingAction:
        action = await self._finish_approved(
            action_id, ActionStatus.EXECUTED, "result_json", json.dumps(result)
        )
        logger.info("action_executed", action_id=action_id, tool=action.tool_name)
        return action

    async def mark_failed(self, action_id: str, error_message: str) -> PendingAction:
        action = await self._finish_approved(
            action_id, ActionStatus.FAILED, "error_message", error_message
        )
        logger.warning("action_failed", action_id=action_id, tool=action.tool_name, error=error_message)
        return action

    async def expire_stale(self, now: Optional[datetime] = None) -> list[PendingAction]:
        """Move every pending action with ``expires_at < now`` to expired.

        Returns the actions this call expired; rows already resolved or
        expired by an earlier sweep are left alone.
        """
        stamp = format_ts(now or self._clock())
        pending = str(ActionStatus.PENDING)
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT id FROM pending_actions WHERE status = ? AND expires_at < ? ORDER BY expires_at",
                (pending, stamp),
            )
            ids = [row["id"] for row in await cursor.fetchall()]
            expired: list[PendingAction] = []
            for action_id in ids:
                cursor = await conn.execute(
                    """UPDATE pending_actions SET status = ?, resolved_at = ?
                       WHERE id = ? AND status = ? AND expires_at < ?""",
                    (str(ActionStatus.EXPIRED), stamp, action_id, pending, stamp),
                )
                if cursor.rowcount:
                    expired.append(await self._require(conn, action_id))
        if expired:
            logger.info("actions_expired", count=len(expired))
        return expired

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        return len(await self.expire_stale(now))

    async def get(self, action_id: str) -> PendingAction | None:
        row = await self._db.fetchone("SELECT * FROM pending_actions WHERE id = ?", (action_id,))
        return _row_to_action(row) if row else None

    async def get_by_external_ref(self, external_ref: str) -> PendingAction | None:
        row = await self._db.fetchone(
            "SELECT * FROM pending_actions WHERE external_ref = ?", (external_ref,)
        )
        return _row_to_action(row) if row else None

    async def list_for_session(self, session_id: int) -> list[PendingAction]:
        rows = await self._db.fetchall(
            "SELECT * FROM pending_actions WHERE session_id = ? ORDER BY created_at, id",
            (session_id,),
        )
        return [_row_to_action(row) for row in rows]

    async def list_pending_for_requester(self, requester_id: str) -> list[PendingAction]:
        rows = await self._db.fetchall(
            """SELECT * FROM pending_actions WHERE requester_id = ? AND status = ?
               ORDER BY created_at, id""",
            (requester_id, str(ActionStatus.PENDING)),
        )
        return [_row_to_action(row) for row in rows]

    async def _resolve_pending(
        self, action_id: str, target: ActionStatus, actor_column: str, actor: str
    ) -> PendingAction:
        now = self._clock()
        stamp = format_ts(now)
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"""UPDATE pending_actions SET status = ?, {actor_column} = ?, resolved_at = ?
                    WHERE id = ? AND status = ? AND expires_at > ?""",
                (str(target), actor, stamp, action_id, str(ActionStatus.PENDING), stamp),
            )
            if cursor.rowcount == 0:
                current = await self._require(conn, action_id)
                if current.status == ActionStatus.PENDING and current.is_expired_at(now):
                    raise Expired(action_id)
                raise InvalidTransition(action_id, str(current.status), str(target))
            return await self._require(conn, action_id)

    async def _finish_approved(
        self, action_id: str, target: ActionStatus, column: str, value: str
    ) -> PendingAction:
        stamp = format_ts(self._clock())
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"""UPDATE pending_actions SET status = ?, {column} = ?, resolved_at = ?
                    WHERE id = ? AND status = ?""",
                (str(target), value, stamp, action_id, str(ActionStatus.APPROVED)),
            )
            if cursor.rowcount == 0:
                current = await self._require(conn, action_id)
                raise InvalidTransition(action_id, str(current.status), str(target))
            return await self._require(conn, action_id)

    @staticmethod
    async def _require(conn: aiosqlite.Connection, action_id: str) -> PendingAction:
        cursor = await conn.execute("SELECT * FROM pending_actions WHERE id = ?", (action_id,))
        row = await cursor.fetchone()
        if row is None:
            raise ActionNotFound(action_id)
        return _row_to_action(row)


def _row_to_action(row) -> PendingAction:
    result = row["result_json"]
    return PendingAction(
        id=row["id"],
        session_id=row["session_id"],
        message_id=row["message_id"],
        requester_id=row["requester_id"],
        tool_name=row["tool_name"],
        tool_input=json.loads(row["tool_input_json"]),
        status=ActionStatus(row["status"]),
        external_ref=row["external_ref"],
        result=json.loads(result) if result else None,
        error_message=row["error_message"],
        approved_by=row["approved_by"],
        rejected_by=row["rejected_by"],
        created_at=parse_ts(row["created_at"]),  # type: ignore[arg-type]
        resolved_at=parse_ts(row["resolved_at"]),
        expires_at=parse_ts(row["expires_at"]),  # type: ignore[arg-type]
    )
