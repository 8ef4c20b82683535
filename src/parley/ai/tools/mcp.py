"""Expose tools of externally managed MCP servers as session tools."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from parley.ai.tools.base import FunctionTool, Tool
from parley.log import get_logger

logger = get_logger(__name__)

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9_]")


@dataclass(frozen=True)
class McpToolInfo:
    server_id: str
    server_name: str
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


class McpToolSource(Protocol):
    """What the core needs from an MCP manager. Transport lives elsewhere."""

    def get_all_tools(self) -> list[McpToolInfo]: ...

    async def call_tool(self, server_id: str, tool_name: str, args: dict[str, Any]) -> Any: ...


def mcp_tool_name(server_name: str, tool_name: str) -> str:
    """Build a collision-free name: ``mcp_<server>_<tool>``."""
    return f"mcp_{_UNSAFE_NAME.sub('_', server_name)}_{tool_name}"


def mcp_tools(source: McpToolSource) -> list[Tool]:
    """Wrap every tool the MCP source currently advertises."""
    tools: list[Tool] = []
    for info in source.get_all_tools():
        tools.append(_wrap(source, info))
    if tools:
        logger.info("mcp_tools_loaded", tools=[t.name for t in tools])
    return tools


def _wrap(source: McpToolSource, info: McpToolInfo) -> Tool:
    async def handler(args: dict[str, Any]) -> Any:
        try:
            return await source.call_tool(info.server_id, info.name, args)
        except Exception as e:
            logger.error("mcp_tool_error", server=info.server_name, tool=info.name, error=str(e))
            return {"success": False, "error": str(e)}

    return FunctionTool(
        name=mcp_tool_name(info.server_name, info.name),
        description=f"[MCP: {info.server_name}] {info.description or info.name}",
        handler=handler,
        input_schema=info.input_schema,
    )
