import pytest

from parley.ai.types import ChatMessage
from parley.storage.models import SessionRecord


def _messages(*contents):
    return [ChatMessage(role="user" if i % 2 == 0 else "assistant", content=c) for i, c in enumerate(contents)]


@pytest.mark.asyncio
async def test_get_or_create_active_reuses_session(session_manager):
    assert await session_manager.get_active() is None
    first = await session_manager.get_or_create_active()
    second = await session_manager.get_or_create_active()
    assert first.id == second.id
    assert (await session_manager.repo.get_active_id()) == first.id


@pytest.mark.asyncio
async def test_new_session_archives_current(session_manager):
    first = await session_manager.get_or_create_active()
    second = await session_manager.new_session("Second")

    assert second.name == "Second"
    assert (await session_manager.get_active()).id == second.id
    archived = await session_manager.repo.get(first.id)
    assert archived.archived
    assert archived.completed_at is not None


@pytest.mark.asyncio
async def test_switch_prefers_exact_name(session_manager):
    notes, work = SessionRecord.new("work notes"), SessionRecord.new("work")
    await session_manager.repo.save(notes)
    await session_manager.repo.save(work)

    switched = await session_manager.switch("WORK")
    assert switched.id == work.id
    assert (await session_manager.get_active()).id == work.id
    assert await session_manager.switch("nothing like it") is None


@pytest.mark.asyncio
async def test_switch_by_substring(session_manager):
    record = await session_manager.new_session("Trip planning")
    await session_manager.repo.set_active_id(None)

    switched = await session_manager.switch("trip")
    assert switched.id == record.id
    assert (await session_manager.get_active()).id == record.id


@pytest.mark.asyncio
async def test_trim_keeps_recent_messages(session_manager):
    record = SessionRecord.new()
    record.messages = _messages("1", "2", "3", "4", "5", "6")
    session_manager.trim(record)
    assert [m.content for m in record.messages] == ["3", "4", "5", "6"]


@pytest.mark.asyncio
async def test_build_transcript_excludes_current_prompt(session_manager):
    record = SessionRecord.new()
    record.messages = _messages("q1", "a1", "q2")
    assert session_manager.build_transcript(record) == "Previous conversation:\nUser: q1\nAssistant: a1"

    record.messages = _messages("only")
    assert session_manager.build_transcript(record) == ""


@pytest.mark.asyncio
async def test_append_refreshes_the_callers_copy(session_manager):
    record = await session_manager.get_or_create_active()
    other_copy = await session_manager.repo.get(record.id)

    await session_manager.append(other_copy, ChatMessage(role="user", content="one"))
    stored = await session_manager.append(record, ChatMessage(role="assistant", content="two"))

    assert [m.content for m in record.messages] == ["one", "two"]
    assert stored.messages == record.messages
    for n in range(3, 6):
        await session_manager.append(record, ChatMessage(role="user", content=str(n)))
    assert [m.content for m in record.messages] == ["two", "3", "4", "5"]
