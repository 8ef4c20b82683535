"""Iterative tool execution loop shared by every provider."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

from parley.ai.tools.registry import ToolRegistry
from parley.ai.types import ModelTurn, ToolCall
from parley.config import DEFAULT_MAX_TOOL_ROUNDS
from parley.errors import ToolExecutionError
from parley.log import get_logger

logger = get_logger(__name__)

TOOL_LIMIT_MESSAGE = "[Tool execution limit reached]"

ModelInvoker = Callable[[list[dict[str, Any]]], Awaitable[ModelTurn]]
ToolCallObserver = Callable[[ToolCall, Any], None]


def serialize_tool_result(result: Any) -> str:
    """Serialize a handler's return value for the tool-result message."""
    if isinstance(result, str):
        return json.dumps(result)
    return json.dumps(result, default=str, ensure_ascii=False)


def assistant_tool_message(turn: ModelTurn) -> dict[str, Any]:
    """Assistant message carrying the turn's tool calls, in chat-completions shape."""
    return {
        "role": "assistant",
        "content": turn.content or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": call.raw_arguments or json.dumps(call.arguments),
                },
            }
            for call in turn.tool_calls
        ],
    }


def tool_result_message(call: ToolCall, result: Any) -> dict[str, Any]:
    return {
        "role": "tool",
        "tool_call_id": call.id,
        "name": call.name,
        "content": serialize_tool_result(result),
    }


async def execute_tool_call(call: ToolCall, registry: ToolRegistry) -> Any:
    """Run one tool call. Never raises: failures become ``{"error": ...}``."""
    tool = registry.get(call.name)
    if tool is None:
        logger.warning("tool_unknown", tool=call.name, call_id=call.id)
        return {"error": f"Unknown tool: {call.name}"}

    logger.info("tool_execute", tool=call.name, call_id=call.id)
    try:
        return await tool.execute(call.arguments)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error("tool_execution_error", tool=call.name, error=str(e))
        return ToolExecutionError(call.name, str(e)).to_result()


async def execute_tool_calls(
    tool_calls: list[ToolCall],
    registry: ToolRegistry,
    on_tool_call: Optional[ToolCallObserver] = None,
) -> list[tuple[ToolCall, Any]]:
    """Execute calls one after another, in the order the model requested them."""
    results: list[tuple[ToolCall, Any]] = []
    for call in tool_calls:
        result = await execute_tool_call(call, registry)
        if on_tool_call is not None:
            on_tool_call(call, result)
        results.append((call, result))
    return results


async def run_tool_loop(
    invoke: ModelInvoker,
    registry: ToolRegistry,
    messages: list[dict[str, Any]],
    first_turn: Optional[ModelTurn] = None,
    max_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
    cancel_event: Optional[asyncio.Event] = None,
    on_tool_call: Optional[ToolCallObserver] = None,
) -> ModelTurn:
    """Drive model turns until one arrives without tool calls.

    *messages* is extended in place with the assistant tool-call message and
    one tool-result message per call for every round. The loop stops after
    *max_rounds* tool rounds even if the model keeps asking for tools; the
    returned turn is then flagged ``truncated``.
    """
    turn = first_turn if first_turn is not None else await invoke(messages)
    rounds = 0

    while turn.has_tool_calls:
        if rounds >= max_rounds:
            logger.warning("tool_loop_limit_reached", rounds=rounds)
            return ModelTurn(content=turn.content or TOOL_LIMIT_MESSAGE, truncated=True)

        if cancel_event and cancel_event.is_set():
            logger.info("tool_loop_cancelled_before_exec", round=rounds)
            return ModelTurn(content=turn.content)

        results = await execute_tool_calls(turn.tool_calls, registry, on_tool_call)

        messages.append(assistant_tool_message(turn))
        for call, result in results:
            messages.append(tool_result_message(call, result))
        rounds += 1

        if cancel_event and cancel_event.is_set():
            logger.info("tool_loop_cancelled", round=rounds)
            return ModelTurn(content=turn.content)

        turn = await invoke(messages)

    return turn
