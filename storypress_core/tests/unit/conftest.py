"""Shared fixtures for storypress_core unit tests.

Databases are real SQLite files under ``tmp_path`` so that concurrent
sessions get their own connections, exactly as in local mode.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from storypress_core.state.database import make_session_factory
from storypress_core.state.sqlite_adapter import create_local_tables, get_local_engine


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)
