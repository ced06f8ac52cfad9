"""Completion client abstraction with an Anthropic API backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import anthropic
import httpx

from shop_agent.config import AnthropicConfig
from shop_agent.errors import CompletionError, TransientCompletionError
from shop_agent.log import get_logger

logger = get_logger(__name__)


@dataclass
class ToolUse:
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class Completion:
    """One model reply: text, requested tool calls, or both."""

    text: str = ""
    tool_uses: list[ToolUse] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str | None = None
    model: str = ""


class CompletionClient(ABC):
    @abstractmethod
    async def send(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        """Send the conversation and return the model's reply.

        Raises :class:`TransientCompletionError` for failures worth retrying
        and :class:`CompletionError` for the rest.
        """
        ...

    async def close(self) -> None:
        return None


class AnthropicCompletionClient(CompletionClient):
    """Anthropic Messages API backend using the official SDK."""

    def __init__(self, config: AnthropicConfig, http_client: httpx.AsyncClient | None = None):
        self._config = config
        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            # Retries are the orchestrator's call.
            max_retries=0,
            timeout=config.timeout,
            http_client=http_client,
        )

    async def send(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "system": system,
            "messages": messages,
            "temperature": self._config.temperature,
        }
        if tools:
            kwargs["tools"] = tools

        logger.debug("api_request", model=self._config.model, message_count=len(messages))
        try:
            response = await self._client.messages.create(**kwargs)
        except (
            anthropic.RateLimitError,
            anthropic.APITimeoutError,
            anthropic.APIConnectionError,
            anthropic.InternalServerError,
        ) as e:
            raise TransientCompletionError(f"{type(e).__name__}: {e}") from e
        except anthropic.APIError as e:
            raise CompletionError(f"{type(e).__name__}: {e}") from e

        logger.debug(
            "api_response",
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=response.stop_reason,
        )
        texts = [b.text for b in response.content if b.type == "text"]
        tool_uses = [
            ToolUse(id=b.id, name=b.name, input=dict(b.input))
            for b in response.content
            if b.type == "tool_use"
        ]
        return Completion(
            text="\n".join(texts),
            tool_uses=tool_uses,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=response.stop_reason,
            model=response.model,
        )

    async def close(self) -> None:
        await self._client.close()
