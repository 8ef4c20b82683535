import json
import os
import sys
import uuid

import pytest

from parley.ai.providers.claude_code import ClaudeCodeBackend, parse_stream_line, read_transcript
from parley.ai.types import ActivityEvent, ContentDelta, ErrorEvent, MessageEvent, TurnComplete
from parley.config import CliProviderConfig
from parley.errors import ConversationNotFoundError, InitializationError

FAKE_CLI = """
import json, sys
prompt = sys.stdin.read()
for record in (
    {"type": "system", "subtype": "init", "session_id": "abc"},
    {"type": "stream_event", "event": {"type": "content_block_delta",
                                       "delta": {"type": "text_delta", "text": prompt.upper()}}},
    {"type": "assistant", "message": {"content": [{"type": "text", "text": prompt.upper()}]}},
    {"type": "result", "subtype": "success", "session_id": "abc"},
):
    print(json.dumps(record), flush=True)
"""

FAILING_CLI = "import sys; sys.stderr.write('bad flag'); sys.exit(2)"


def _write_transcript(directory, conversation_id, lines):
    path = directory / f"{conversation_id}.jsonl"
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def projects(tmp_path):
    project = tmp_path / "projects" / "-home-me-code"
    project.mkdir(parents=True)
    return project


@pytest.fixture
def backend(tmp_path):
    return ClaudeCodeBackend(CliProviderConfig(cli_path=sys.executable, projects_dir=str(tmp_path / "projects")))


# -- stream-json parsing -------------------------------------------------------


def test_parse_stream_line():
    assert parse_stream_line({"type": "system", "subtype": "init", "session_id": "s1"}) == [
        ActivityEvent("init", "s1")
    ]
    delta = {"type": "stream_event", "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "hi"}}}
    assert parse_stream_line(delta) == [ContentDelta("hi")]
    assert parse_stream_line({"type": "stream_event", "event": {"type": "message_start"}}) == [
        ActivityEvent("stream", "message_start")
    ]
    assistant = {
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "name": "Read"}, {"type": "text", "text": "done"}]},
    }
    assert parse_stream_line(assistant) == [ActivityEvent("tool_use", "Read"), MessageEvent("done")]
    assert parse_stream_line({"type": "user"}) == [ActivityEvent("tool_result")]
    assert parse_stream_line({"type": "result", "subtype": "success", "session_id": "s1"}) == [TurnComplete("s1")]
    assert parse_stream_line({"type": "result", "is_error": True, "result": "quota"}) == [ErrorEvent("quota")]
    assert parse_stream_line({"type": "result", "subtype": "error_max_turns"}) == [ErrorEvent("error_max_turns")]


def test_read_transcript_folds_blocks_and_skips_tool_results(projects):
    path = _write_transcript(
        projects,
        "t",
        [
            {"type": "summary", "summary": "x"},
            {"type": "user", "message": {"content": "hello"}, "timestamp": "2026-01-01T10:00:00+00:00"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi "}]}},
            {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Read"}]}},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "there"}]}},
            {"type": "user", "message": {"content": "[Tool Result: echo]\n1"}},
        ],
    )
    messages = read_transcript(path)
    assert [(m.role, m.content) for m in messages] == [("user", "hello"), ("assistant", "Hi there")]


# -- backend -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_fails_for_missing_binary(tmp_path):
    backend = ClaudeCodeBackend(CliProviderConfig(cli_path=str(tmp_path / "no-such-claude")))
    with pytest.raises(InitializationError, match="not found"):
        await backend.start()


@pytest.mark.asyncio
async def test_build_command(backend):
    backend.config = CliProviderConfig(
        cli_path=sys.executable, permission_mode="acceptEdits", allowed_tools=["Read", "Grep"]
    )
    await backend.start()

    fresh = backend.build_command("id-1", resume=False, system_prompt="sys", model="opus")
    assert fresh[1:6] == ["-p", "--output-format", "stream-json", "--verbose", "--include-partial-messages"]
    assert fresh[6:8] == ["--session-id", "id-1"]
    assert ["--model", "opus"] == fresh[8:10]
    assert ["--append-system-prompt", "sys"] == fresh[10:12]
    assert fresh[12:] == ["--permission-mode", "acceptEdits", "--allowedTools", "Read", "--allowedTools", "Grep"]

    resumed = backend.build_command("id-1", resume=True, system_prompt="", model="")
    assert resumed[6:] == ["--resume", "id-1"]


@pytest.mark.asyncio
async def test_conversation_turn_through_subprocess(backend, monkeypatch):
    await backend.start()
    spawned = []
    real_spawn = backend.spawn

    async def fake_spawn(args):
        spawned.append(args)
        return await real_spawn([sys.executable, "-c", FAKE_CLI])

    monkeypatch.setattr(backend, "spawn", fake_spawn)
    conversation = await backend.create_conversation()

    events = [e async for e in conversation.send("hello")]
    assert events == [
        ActivityEvent("init", "abc"),
        ContentDelta("HELLO"),
        MessageEvent("HELLO"),
        TurnComplete("abc"),
    ]
    assert "--session-id" in spawned[0]

    [e async for e in conversation.send("again")]
    assert "--resume" in spawned[1]
    assert not conversation.is_busy


@pytest.mark.asyncio
async def test_nonzero_exit_becomes_error_event(backend, monkeypatch):
    await backend.start()
    real_spawn = backend.spawn

    async def fake_spawn(args):
        return await real_spawn([sys.executable, "-c", FAILING_CLI])

    monkeypatch.setattr(backend, "spawn", fake_spawn)
    conversation = await backend.create_conversation()

    events = [e async for e in conversation.send("hello")]
    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert "exit 2" in events[0].message
    assert "bad flag" in events[0].message


@pytest.mark.asyncio
async def test_spawn_strips_anthropic_key(backend, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-secret")
    await backend.start()
    process = await backend.spawn(
        [sys.executable, "-c", "import os; print(os.environ.get('ANTHROPIC_API_KEY', 'absent'))"]
    )
    stdout, _ = await process.communicate()
    assert stdout.decode().strip() == "absent"


@pytest.mark.asyncio
async def test_conversations_on_disk(backend, projects):
    older, newer = str(uuid.uuid4()), str(uuid.uuid4())
    old_path = _write_transcript(projects, older, [{"type": "user", "message": {"content": "first question"}}])
    _write_transcript(projects, newer, [{"type": "user", "message": {"content": "second question"}}])
    _write_transcript(projects, "not-a-uuid", [])
    os.utime(old_path, (1_000_000, 1_000_000))

    infos = await backend.list_conversations()
    assert [i.conversation_id for i in infos] == [newer, older]
    assert infos[1].summary == "first question"

    resumed = await backend.resume_conversation(older)
    assert resumed.conversation_id == older
    with pytest.raises(ConversationNotFoundError):
        await backend.resume_conversation(str(uuid.uuid4()))

    # An id that already has a transcript cannot be reused for a fresh conversation.
    fresh = await backend.create_conversation(older)
    assert fresh.conversation_id != older
    wanted = str(uuid.uuid4())
    assert (await backend.create_conversation(wanted)).conversation_id == wanted

    await backend.delete_conversation(older)
    assert [i.conversation_id for i in await backend.list_conversations()] == [newer]


@pytest.mark.asyncio
async def test_list_models_are_aliases(backend):
    assert await backend.list_models() == ["haiku", "opus", "sonnet"]
