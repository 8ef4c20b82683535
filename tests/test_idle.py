from typing import Optional
from unittest.mock import MagicMock

import pytest

from parley.ai.idle import IdleTimeoutMonitor
from parley.ai.types import ChatMessage
from parley.errors import ConfigError, SessionStaleError

MINUTE = 60.0


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeTarget:
    def __init__(self):
        self.conversation_id: Optional[str] = "conv-1"
        self.history = [ChatMessage(role="user", content="hi"), ChatMessage(role="assistant", content="hello")]
        self.created: list[Optional[str]] = []
        self.fail = False

    def get_message_history(self):
        return list(self.history)

    def load_history(self, messages):
        self.history = list(messages)

    async def create_conversation(self, conversation_id=None):
        if self.fail:
            raise RuntimeError("backend gone")
        self.created.append(conversation_id)
        self.conversation_id = f"conv-{len(self.created) + 1}"
        self.history = []
        return self.conversation_id


@pytest.mark.asyncio
async def test_recreates_after_threshold_and_keeps_history():
    clock = FakeClock()
    on_reconnect = MagicMock()
    monitor = IdleTimeoutMonitor(25 * MINUTE, 30 * MINUTE, clock=clock, on_reconnect=on_reconnect)
    target = FakeTarget()

    clock.now = 26 * MINUTE
    assert await monitor.ensure_alive(target)

    assert target.created == ["conv-1"]
    assert target.conversation_id == "conv-2"
    assert len(target.history) == 2
    assert monitor.recreations == 1
    on_reconnect.assert_called_once_with()

    # Activity was recorded, so an immediate second check does nothing.
    assert not await monitor.ensure_alive(target)
    assert monitor.recreations == 1


@pytest.mark.asyncio
async def test_no_recreation_before_threshold():
    clock = FakeClock()
    monitor = IdleTimeoutMonitor(25 * MINUTE, 30 * MINUTE, clock=clock)
    target = FakeTarget()

    clock.now = 24 * MINUTE
    assert not await monitor.ensure_alive(target)
    assert target.created == []


@pytest.mark.asyncio
async def test_touch_resets_idle_time():
    clock = FakeClock()
    monitor = IdleTimeoutMonitor(25 * MINUTE, 30 * MINUTE, clock=clock)
    clock.now = 20 * MINUTE
    monitor.touch()
    clock.now = 40 * MINUTE
    assert monitor.elapsed == 20 * MINUTE
    assert not monitor.is_stale()


@pytest.mark.asyncio
async def test_no_conversation_means_nothing_to_recreate():
    clock = FakeClock()
    monitor = IdleTimeoutMonitor(25 * MINUTE, 30 * MINUTE, clock=clock)
    target = FakeTarget()
    target.conversation_id = None

    clock.now = 60 * MINUTE
    assert not await monitor.ensure_alive(target)


@pytest.mark.asyncio
async def test_failed_recreation_raises_stale_error():
    clock = FakeClock()
    monitor = IdleTimeoutMonitor(25 * MINUTE, 30 * MINUTE, clock=clock)
    target = FakeTarget()
    target.fail = True

    clock.now = 26 * MINUTE
    with pytest.raises(SessionStaleError):
        await monitor.ensure_alive(target)
    assert monitor.recreations == 0


def test_threshold_must_be_below_backend_timeout():
    with pytest.raises(ConfigError):
        IdleTimeoutMonitor(30 * MINUTE, 30 * MINUTE)
