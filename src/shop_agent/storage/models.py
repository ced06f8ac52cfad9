"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional


class ChatRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_INVOCATION = "tool_invocation"
    TOOL_RESULT = "tool_result"


class ActionStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {ActionStatus.REJECTED, ActionStatus.EXECUTED, ActionStatus.FAILED, ActionStatus.EXPIRED}
)


@dataclass
class ToolExample:
    id: int
    tool_name: str
    domain: str
    example_query: str
    embedding: list[float]
    is_learned: bool = False
    usage_count: int = 0
    created_at: Optional[datetime] = None


@dataclass
class ChatSession:
    id: int
    owner_id: str
    title: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass
class ChatMessage:
    id: int
    session_id: int
    role: ChatRole
    content: dict[str, Any]
    created_at: datetime
    api_interaction: Optional[dict[str, Any]] = None


@dataclass
class ChatSessionMetrics:
    session_id: int
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_api_calls: int = 0
    total_tool_calls: int = 0
    total_duration_ms: int = 0
    updated_at: Optional[datetime] = None


@dataclass
class PendingAction:
    """A proposed mutating tool call awaiting a human decision."""

    id: str
    session_id: int
    requester_id: str
    tool_name: str
    tool_input: dict[str, Any]
    status: ActionStatus
    created_at: datetime
    expires_at: datetime
    message_id: Optional[int] = None
    external_ref: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    def is_expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class DomainCount:
    domain: str
    count: int


@dataclass
class MetricsDelta:
    """Increments applied to a session's metrics row after one API call."""

    input_tokens: int = 0
    output_tokens: int = 0
    api_calls: int = 0
    tool_calls: int = 0
    duration_ms: int = 0
