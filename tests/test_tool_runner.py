import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from parley.ai.tool_runner import TOOL_LIMIT_MESSAGE, execute_tool_calls, run_tool_loop
from parley.ai.tools.base import FunctionTool
from parley.ai.tools.registry import ToolRegistry
from parley.ai.types import ModelTurn, ToolCall


def _registry(handler) -> ToolRegistry:
    return ToolRegistry([FunctionTool("echo", "Echo the input", handler)])


def _tool_turn(call_id: str = "call_1", name: str = "echo", args=None) -> ModelTurn:
    args = args if args is not None else {"text": "hi"}
    return ModelTurn(tool_calls=[ToolCall(id=call_id, name=name, arguments=args, raw_arguments=json.dumps(args))])


@pytest.mark.asyncio
async def test_tool_round_then_final_answer():
    handler = AsyncMock(return_value={"echoed": "hi"})
    invoke = AsyncMock(side_effect=[_tool_turn(), ModelTurn(content="done")])
    messages = [{"role": "user", "content": "go"}]

    turn = await run_tool_loop(invoke, _registry(handler), messages)

    assert turn.content == "done"
    assert invoke.await_count == 2
    handler.assert_awaited_once_with({"text": "hi"})
    assert messages[1]["role"] == "assistant"
    assert messages[1]["tool_calls"][0]["function"]["name"] == "echo"
    assert messages[2] == {
        "role": "tool",
        "tool_call_id": "call_1",
        "name": "echo",
        "content": json.dumps({"echoed": "hi"}),
    }


@pytest.mark.asyncio
async def test_loop_stops_at_round_limit():
    handler = AsyncMock(return_value="ok")
    invoke = AsyncMock(return_value=_tool_turn())

    turn = await run_tool_loop(invoke, _registry(handler), [], max_rounds=3)

    assert turn.truncated
    assert turn.content == TOOL_LIMIT_MESSAGE
    assert handler.await_count == 3
    assert invoke.await_count == 4


@pytest.mark.asyncio
async def test_truncated_turn_keeps_model_text():
    invoke = AsyncMock(return_value=ModelTurn(content="still thinking", tool_calls=_tool_turn().tool_calls))
    turn = await run_tool_loop(invoke, _registry(AsyncMock(return_value=1)), [], max_rounds=1)
    assert turn.truncated
    assert turn.content == "still thinking"


@pytest.mark.asyncio
async def test_failures_become_results_and_loop_continues():
    async def boom(args):
        raise ValueError("disk full")

    invoke = AsyncMock(
        side_effect=[
            ModelTurn(
                tool_calls=[
                    ToolCall(id="a", name="echo", arguments={}),
                    ToolCall(id="b", name="missing", arguments={}),
                ]
            ),
            ModelTurn(content="recovered"),
        ]
    )
    messages: list = []
    turn = await run_tool_loop(invoke, _registry(boom), messages)

    assert turn.content == "recovered"
    results = [json.loads(m["content"]) for m in messages if m["role"] == "tool"]
    assert results == [{"error": "disk full"}, {"error": "Unknown tool: missing"}]


@pytest.mark.asyncio
async def test_tools_run_in_call_order():
    order = []

    async def record(args):
        order.append(args["n"])
        await asyncio.sleep(0)
        return args["n"]

    calls = [ToolCall(id=str(n), name="echo", arguments={"n": n}) for n in (3, 1, 2)]
    results = await execute_tool_calls(calls, _registry(record))
    assert order == [3, 1, 2]
    assert [r for _, r in results] == [3, 1, 2]


@pytest.mark.asyncio
async def test_cancel_event_stops_before_next_invoke():
    cancel = asyncio.Event()

    async def handler(args):
        cancel.set()
        return "ok"

    invoke = AsyncMock(side_effect=[ModelTurn(content="partial", tool_calls=_tool_turn().tool_calls)])
    turn = await run_tool_loop(invoke, _registry(handler), [], cancel_event=cancel)

    assert turn.content == "partial"
    assert invoke.await_count == 1


@pytest.mark.asyncio
async def test_first_turn_skips_initial_invoke():
    invoke = AsyncMock()
    turn = await run_tool_loop(invoke, ToolRegistry(), [], first_turn=ModelTurn(content="ready"))
    assert turn.content == "ready"
    invoke.assert_not_awaited()
