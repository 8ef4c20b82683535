"""Tool registry for looking up the active tool set."""

from __future__ import annotations

from typing import Iterable

from parley.ai.tools.base import Tool
from parley.log import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of tools available to one provider session."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("tool_replaced", tool_name=tool.name)
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool_name=tool.name)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_tools_by_names(self, names: list[str]) -> list[Tool]:
        """Get a subset of tools by name list."""
        return [self._tools[n] for n in names if n in self._tools]

    def all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
