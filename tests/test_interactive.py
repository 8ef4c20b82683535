import asyncio
import io
from unittest.mock import AsyncMock, MagicMock

import pytest

from parley.ai.providers.base import SessionState
from parley.ai.types import ChatMessage
from parley.channels.interactive import InteractiveChannel, terminal_question_callback
from parley.core.types import ChannelSource


def _provider(chunks=("Hel", "lo")):
    provider = MagicMock()
    provider.state = SessionState.READY

    async def stream(prompt, on_delta, **kwargs):
        for chunk in chunks:
            on_delta(chunk)
        return "".join(chunks)

    provider.send_message_streaming = AsyncMock(side_effect=stream)
    return provider


def _lines(*lines):
    queue = list(lines)

    async def read_line():
        return queue.pop(0) if queue else None

    return read_line


@pytest.mark.asyncio
async def test_ask_streams_and_saves(session_manager):
    provider = _provider()
    output = io.StringIO()
    channel = InteractiveChannel(provider, session_manager, output=output)

    assert await channel.ask("hi") == "Hello"

    assert "ai> Hello\n" in output.getvalue()
    record = await session_manager.get_active()
    assert [(m.role, m.content) for m in record.messages] == [("user", "hi"), ("assistant", "Hello")]
    assert all(m.source == ChannelSource.INTERACTIVE for m in record.messages)
    # Stateless replay excludes the prompt being sent.
    provider.load_history.assert_called_once_with([])


@pytest.mark.asyncio
async def test_ask_without_streaming_writes_whole_reply(session_manager):
    provider = _provider()
    provider.config.streaming = False
    provider.send_message = AsyncMock(return_value="All at once")
    output = io.StringIO()
    channel = InteractiveChannel(provider, session_manager, output=output)

    assert await channel.ask("hi") == "All at once"

    assert "ai> All at once\n" in output.getvalue()
    provider.send_message.assert_awaited_once_with("hi")
    provider.send_message_streaming.assert_not_awaited()


@pytest.mark.asyncio
async def test_ask_uses_reconciler_for_stateful_provider(session_manager):
    reconciler = MagicMock()
    reconciler.reconcile = AsyncMock(return_value="conv-1")
    reconciler.sync = AsyncMock()
    provider = _provider()
    channel = InteractiveChannel(provider, session_manager, reconciler, output=io.StringIO())

    await channel.ask("hi")

    reconciler.reconcile.assert_awaited_once()
    reconciler.sync.assert_awaited_once()
    provider.load_history.assert_not_called()


@pytest.mark.asyncio
async def test_bot_activity_is_announced(session_manager):
    output = io.StringIO()
    channel = InteractiveChannel(_provider(), session_manager, output=output)
    record = await session_manager.get_or_create_active()

    record.messages.append(ChatMessage(role="assistant", content="x", source=ChannelSource.BOT))
    await session_manager.repo.save(record)
    assert "new message from the bot channel" in output.getvalue()

    channel.close()
    output.truncate(0)
    await session_manager.repo.save(record)
    assert "bot channel" not in output.getvalue()


@pytest.mark.asyncio
async def test_run_handles_commands_until_quit(session_manager):
    provider = _provider()
    output = io.StringIO()
    channel = InteractiveChannel(provider, session_manager, output=output)

    await channel.run(_lines("", "hello", "/new Side", "/quit", "never sent"), asyncio.Event())

    assert provider.send_message_streaming.await_count == 1
    assert "New session: Side" in output.getvalue()
    assert (await session_manager.get_active()).name == "Side"
    provider.clear_history.assert_called_once()


@pytest.mark.asyncio
async def test_run_reports_errors_and_continues(session_manager):
    provider = _provider()
    provider.send_message_streaming.side_effect = [RuntimeError("offline"), "ok"]
    output = io.StringIO()
    channel = InteractiveChannel(provider, session_manager, output=output)

    await channel.run(_lines("one", "two"), asyncio.Event())

    assert "Error: offline" in output.getvalue()
    assert provider.send_message_streaming.await_count == 2


@pytest.mark.asyncio
async def test_run_stops_on_event(session_manager):
    channel = InteractiveChannel(_provider(), session_manager, output=io.StringIO())
    stop = asyncio.Event()

    async def never():
        await asyncio.Event().wait()

    asyncio.get_running_loop().call_later(0.01, stop.set)
    await asyncio.wait_for(channel.run(never, stop), 1.0)


@pytest.mark.asyncio
async def test_question_callback_maps_answers():
    written = []
    ask = terminal_question_callback(_lines("2, and coffee"), written.append)

    response = await ask({"type": "mixed", "question": "Pick", "options": ["tea", "water"]})
    assert response == {"type": "mixed", "selected": ["water"], "text": "and coffee"}
    assert "  2. water\n" in written

    ask = terminal_question_callback(_lines("free text"), written.append)
    assert await ask({"type": "text", "question": "Name?"}) == {"type": "text", "text": "free text"}

    ask = terminal_question_callback(_lines(""), written.append)
    assert await ask({"type": "text", "question": "Skip?"}) is None
