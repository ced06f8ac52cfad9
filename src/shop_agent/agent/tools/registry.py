"""Tool registry with the read/mutating classification."""

from __future__ import annotations

from typing import Iterable, Optional

from shop_agent.agent.tools.base import Tool
from shop_agent.log import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of all available tools.

    When *mutating* is given it replaces every tool's own classification:
    exactly the named tools require approval.
    """

    def __init__(self, mutating: Optional[Iterable[str]] = None):
        self._tools: dict[str, Tool] = {}
        self._mutating_override = set(mutating) if mutating else None

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool_name=tool.name, mutating=self.is_mutating(tool.name))

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_tools_by_names(self, names: Iterable[str]) -> list[Tool]:
        return [self._tools[n] for n in names if n in self._tools]

    def all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def is_mutating(self, name: str) -> bool:
        if self._mutating_override is not None:
            return name in self._mutating_override
        tool = self._tools.get(name)
        # Unknown tools never run without approval.
        return tool.mutating if tool else True

    def domain_of(self, name: str) -> str | None:
        tool = self._tools.get(name)
        return tool.domain if tool else None

    def api_definitions(self, names: Optional[Iterable[str]] = None) -> list[dict]:
        tools = self.all_tools() if names is None else self.get_tools_by_names(names)
        return [t.to_api_dict() for t in tools]
