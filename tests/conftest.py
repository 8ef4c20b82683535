from __future__ import annotations

import pytest_asyncio

from parley.core.session import SessionManager
from parley.config import SessionConfig
from parley.storage.database import Database
from parley.storage.session_repo import SessionRepository


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def repo(db):
    return SessionRepository(db)


@pytest_asyncio.fixture
async def session_manager(repo):
    return SessionManager(repo, SessionConfig(max_messages=4, context_messages=2))
