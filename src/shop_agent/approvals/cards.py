"""Channel-neutral approval and outcome cards."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from shop_agent.storage.models import ActionStatus, PendingAction

MAX_PARAMS_CHARS = 2000
MAX_RESULT_CHARS = 1000

_DOMAIN_EMOJI = {
    "orders": "📦",
    "customers": "👤",
    "products": "🏷️",
    "inventory": "📊",
    "collections": "📁",
    "discounts": "🎟️",
    "gift_cards": "🎁",
    "fulfillment": "🚚",
    "finance": "💰",
    "order_editing": "✏️",
}


@dataclass(frozen=True)
class Card:
    """What a channel shows for one action; ``actions`` adds Approve/Reject buttons."""

    title: str
    tool_name: str
    block_label: Optional[str] = None
    block: Optional[str] = None
    context: Optional[str] = None
    actions: bool = False

    def to_text(self) -> str:
        lines = [self.title, f"Tool: {self.tool_name}"]
        if self.block is not None:
            lines.append(f"{self.block_label}:\n{self.block}")
        if self.context:
            lines.append(self.context)
        return "\n\n".join(lines)


def domain_emoji(domain: Optional[str]) -> str:
    return _DOMAIN_EMOJI.get(domain or "", "🔧")


def format_tool_input(tool_input: dict[str, Any]) -> str:
    formatted = json.dumps(tool_input, indent=2, ensure_ascii=False, default=str)
    if len(formatted) > MAX_PARAMS_CHARS:
        return f"{formatted[:MAX_PARAMS_CHARS]}...\n(truncated)"
    return formatted


def summarize_result(result: Optional[dict[str, Any]]) -> str:
    if not result:
        return "(no result)"
    text = json.dumps(result, ensure_ascii=False, default=str)
    if len(text) > MAX_RESULT_CHARS:
        return text[:MAX_RESULT_CHARS] + "..."
    return text


def approval_card(action: PendingAction, requester_name: str, domain: Optional[str]) -> Card:
    return Card(
        title=f"{domain_emoji(domain)} AI Action Request",
        tool_name=action.tool_name,
        block_label="Parameters",
        block=format_tool_input(action.tool_input),
        context=f"Requested by {requester_name} at {action.created_at:%Y-%m-%d %H:%M} UTC",
        actions=True,
    )


def executed_card(action: PendingAction) -> Card:
    return Card(
        title="✅ Action Approved",
        tool_name=action.tool_name,
        block_label="Result",
        block=summarize_result(action.result),
        context=f"Approved by {action.approved_by}",
    )


def approved_card(action: PendingAction) -> Card:
    return Card(
        title="✅ Action Approved",
        tool_name=action.tool_name,
        context=f"Approved by {action.approved_by}; running now",
    )


def rejected_card(action: PendingAction) -> Card:
    return Card(
        title="❌ Action Rejected",
        tool_name=action.tool_name,
        context=f"Rejected by {action.rejected_by}",
    )


def expired_card(action: PendingAction) -> Card:
    return Card(
        title="⏰ Action Expired",
        tool_name=action.tool_name,
        context="This action request has expired and was not executed.",
    )


def failed_card(action: PendingAction) -> Card:
    return Card(
        title="⚠️ Action Failed",
        tool_name=action.tool_name,
        block_label="Error",
        block=action.error_message or "unknown error",
    )


def outcome_card(action: PendingAction) -> Card | None:
    """Card replacing the approval request once *action* left ``pending``."""
    renderers = {
        ActionStatus.APPROVED: approved_card,
        ActionStatus.EXECUTED: executed_card,
        ActionStatus.REJECTED: rejected_card,
        ActionStatus.EXPIRED: expired_card,
        ActionStatus.FAILED: failed_card,
    }
    render = renderers.get(action.status)
    return render(action) if render else None
