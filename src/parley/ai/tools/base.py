"""Tool interface for model function calling."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class Tool(ABC):
    """Base class for all model-callable tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name within a session's active tool set."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description for the model."""
        ...

    @property
    @abstractmethod
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema dict describing accepted parameters."""
        ...

    @abstractmethod
    async def execute(self, args: dict[str, Any]) -> Any:
        """Run the tool. The return value must be JSON-serializable."""
        ...

    def to_openai_dict(self) -> dict[str, Any]:
        """Serialize to the chat-completions ``tools`` entry format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class FunctionTool(Tool):
    """A tool backed by a plain async handler."""

    def __init__(
        self,
        name: str,
        description: str,
        handler: ToolHandler,
        input_schema: dict[str, Any] | None = None,
    ):
        self._name = name
        self._description = description
        self._handler = handler
        self._input_schema = input_schema or {"type": "object", "properties": {}}

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._input_schema

    async def execute(self, args: dict[str, Any]) -> Any:
        return await self._handler(args)

    def __repr__(self) -> str:
        return f"FunctionTool(name={self._name!r})"
