import asyncio
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from parley.ai.providers.claude_code import ConversationInfo
from parley.ai.types import ChatMessage
from parley.core.reconciler import ConversationReconciler
from parley.storage.models import SessionRecord


class FakeCliProvider:
    def __init__(self):
        self.conversation_id: Optional[str] = None
        self.created = 0
        self.create_conversation = AsyncMock(side_effect=self._create)
        self.load_conversation = AsyncMock(side_effect=self._load)
        self.list_conversations = AsyncMock(return_value=[])
        self.lost: set[str] = set()

    async def _create(self, conversation_id=None):
        await asyncio.sleep(0)
        self.created += 1
        self.conversation_id = f"conv-{self.created}"
        return self.conversation_id

    async def _load(self, conversation_id, messages=None):
        if conversation_id in self.lost:
            return await self._create()
        self.conversation_id = conversation_id
        return conversation_id


@pytest.fixture
def provider():
    return FakeCliProvider()


@pytest.fixture
def reconciler(provider, repo):
    return ConversationReconciler(provider, repo)


@pytest.mark.asyncio
async def test_back_to_back_sends_create_one_conversation(provider, reconciler, repo):
    record = SessionRecord.new()
    await repo.save(record)
    # Two channels holding their own copies of the same record.
    copy_a, copy_b = await repo.get(record.id), await repo.get(record.id)

    ids = await asyncio.gather(reconciler.reconcile(copy_a), reconciler.reconcile(copy_b))

    assert ids == ["conv-1", "conv-1"]
    provider.create_conversation.assert_awaited_once()
    assert (await repo.get(record.id)).conversation_id == "conv-1"


@pytest.mark.asyncio
async def test_binding_saves_are_silent(provider, reconciler, repo):
    listener = MagicMock()
    repo.add_listener(listener)
    record = SessionRecord.new()
    await repo.save(record, silent=True)

    await reconciler.reconcile(record)
    listener.assert_not_called()


@pytest.mark.asyncio
async def test_matching_conversation_is_left_alone(provider, reconciler, repo):
    record = SessionRecord.new()
    record.conversation_id = "conv-7"
    provider.conversation_id = "conv-7"

    assert await reconciler.reconcile(record) == "conv-7"
    provider.load_conversation.assert_not_awaited()
    provider.create_conversation.assert_not_awaited()


@pytest.mark.asyncio
async def test_mismatch_loads_bound_conversation(provider, reconciler, repo):
    record = SessionRecord.new()
    record.conversation_id = "conv-other"
    record.messages = [ChatMessage(role="user", content="hi")]
    provider.conversation_id = "conv-active"

    assert await reconciler.reconcile(record) == "conv-other"
    provider.load_conversation.assert_awaited_once_with("conv-other", record.messages)
    assert provider.conversation_id == "conv-other"


@pytest.mark.asyncio
async def test_lost_conversation_is_rebound(provider, reconciler, repo):
    record = SessionRecord.new()
    record.conversation_id = "conv-gone"
    provider.lost.add("conv-gone")
    await repo.save(record)

    new_id = await reconciler.reconcile(record)

    assert new_id == "conv-1"
    assert record.conversation_id == "conv-1"
    assert (await repo.get(record.id)).conversation_id == "conv-1"


@pytest.mark.asyncio
async def test_sync_picks_up_recreated_conversation(provider, reconciler, repo):
    record = SessionRecord.new()
    record.conversation_id = "conv-1"
    await repo.save(record)
    provider.conversation_id = "conv-2"

    await reconciler.sync(record)
    assert (await repo.get(record.id)).conversation_id == "conv-2"


@pytest.mark.asyncio
async def test_join_by_prefix_or_session_name(provider, reconciler, repo):
    now = datetime.now(timezone.utc)
    provider.list_conversations.return_value = [
        ConversationInfo("abc123-0000", now, "first"),
        ConversationInfo("def456-0000", now, "second"),
    ]
    linked = SessionRecord.new("Budget review")
    linked.conversation_id = "def456-0000"
    await repo.save(linked)
    record = SessionRecord.new()
    await repo.save(record)

    match = await reconciler.join(record, "ABC")
    assert match.conversation_id == "abc123-0000"
    assert record.conversation_id == "abc123-0000"

    match = await reconciler.join(record, "budget")
    assert match.conversation_id == "def456-0000"
    assert (await repo.get(record.id)).conversation_id == "def456-0000"

    assert await reconciler.join(record, "zzz") is None


@pytest.mark.asyncio
async def test_leave_detaches(provider, reconciler, repo):
    record = SessionRecord.new()
    record.conversation_id = "conv-1"
    await repo.save(record)

    assert await reconciler.leave(record) == "conv-1"
    assert (await repo.get(record.id)).conversation_id is None
    assert await reconciler.leave(record) is None
