"""
Pytest fixtures for test infrastructure.

This module is automatically loaded by pytest and provides shared fixtures.
For task setup helpers and collaborator fakes, see helpers.py.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

from leadscout.archivist import models  # noqa: F401  (registers the table)
from leadscout.archivist.database import create_session_factory
from leadscout.archivist.progress import ProgressBroadcaster
from leadscout.archivist.task_store import TaskStore
from leadscout.config.settings import Settings


# =============================================================================
# Database
# =============================================================================
@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine):
    return TaskStore(create_session_factory(engine))


@pytest.fixture
def broadcaster():
    return ProgressBroadcaster()


@pytest.fixture
def test_settings():
    """Pipeline settings with short timeouts."""
    return Settings(
        search_buffer=30,
        search_group_timeout=2.0,
        default_max_concurrent_units=5,
        default_per_unit_timeout=2.0,
        max_concurrent_enrichments=3,
        apify_contact_timeout=2,
    )
