"""Convert stored chat messages to Anthropic API message format.

Stored content shapes by role::

    user             {"text": ...}
    assistant        {"text": ...}
    tool_invocation  {"id": ..., "name": ..., "input": {...}, ...}
    tool_result      {"tool_use_id": ..., "content": ..., "is_error": bool, ...}
"""

from __future__ import annotations

from typing import Any

from shop_agent.storage.models import ChatMessage, ChatRole

AWAITING_APPROVAL_TEXT = (
    "This action is waiting for human approval and has not been executed yet."
)


def generate_title(text: str, max_length: int = 50) -> str:
    """Session title from the first user message, cut at a word boundary."""
    trimmed = text.strip()
    if len(trimmed) <= max_length:
        return trimmed
    truncated = trimmed[:max_length]
    space = truncated.rfind(" ")
    if space > 0:
        truncated = truncated[:space]
    return f"{truncated}..."


def unresolved_tool_uses(history: list[ChatMessage]) -> list[ChatMessage]:
    """Tool invocations with no stored tool_result yet."""
    resolved = {m.content.get("tool_use_id") for m in history if m.role == ChatRole.TOOL_RESULT}
    return [
        m
        for m in history
        if m.role == ChatRole.TOOL_INVOCATION and m.content.get("id") not in resolved
    ]


def build_messages(history: list[ChatMessage]) -> list[dict[str, Any]]:
    """Build the alternating user/assistant message list for the completion API.

    Each tool result is placed directly after the assistant message holding
    its tool_use block, wherever it sits in the stored history. Tool uses
    still awaiting approval get a placeholder result so the request stays
    well-formed.
    """
    results: dict[str, dict[str, Any]] = {}
    for message in history:
        if message.role == ChatRole.TOOL_RESULT:
            content = message.content
            results[content["tool_use_id"]] = {
                "type": "tool_result",
                "tool_use_id": content["tool_use_id"],
                "content": str(content.get("content", "")),
                "is_error": bool(content.get("is_error", False)),
            }

    api_messages: list[dict[str, Any]] = []
    open_tool_uses: list[str] = []

    def append(role: str, blocks: list[dict[str, Any]]) -> None:
        if api_messages and api_messages[-1]["role"] == role:
            api_messages[-1]["content"].extend(blocks)
        else:
            api_messages.append({"role": role, "content": list(blocks)})

    def flush_tool_results() -> None:
        if not open_tool_uses:
            return
        append(
            "user",
            [
                results.get(tool_use_id)
                or {"type": "tool_result", "tool_use_id": tool_use_id, "content": AWAITING_APPROVAL_TEXT}
                for tool_use_id in open_tool_uses
            ],
        )
        open_tool_uses.clear()

    for message in history:
        if message.role == ChatRole.USER:
            flush_tool_results()
            append("user", [{"type": "text", "text": message.content.get("text", "")}])
        elif message.role == ChatRole.ASSISTANT:
            flush_tool_results()
            text = message.content.get("text", "")
            if text:
                append("assistant", [{"type": "text", "text": text}])
        elif message.role == ChatRole.TOOL_INVOCATION:
            content = message.content
            append(
                "assistant",
                [
                    {
                        "type": "tool_use",
                        "id": content["id"],
                        "name": content["name"],
                        "input": content.get("input", {}),
                    }
                ],
            )
            open_tool_uses.append(content["id"])
    flush_tool_results()
    return api_messages
