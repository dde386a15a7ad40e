"""Pytest configuration and fixtures for integration tests.

These run the real aiosqlite-backed ``DatabaseClient`` against a temporary
database file per test.
"""

import pytest

from taskscope.core.db_client import DatabaseClient
from taskscope.core.store_client import ResilientStoreClient, RetryConfig
from taskscope.services.task_filter_service import TaskFilterEngine
from taskscope.services.timezone_service import TimezoneResolver
from tests.unit.mocks import FIXED_NOW, FakeClock


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "taskscope-test.db"


@pytest.fixture
async def db(db_path):
    """Provides a connected DatabaseClient on a fresh SQLite file."""
    client = DatabaseClient(db_path)
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
def store_client(db):
    config = RetryConfig(max_retries=3, base_delay=0.001, operation_timeout=5.0, queue_concurrency=2, batch_delay=0)
    return ResilientStoreClient(db, config)


@pytest.fixture
def clock():
    return FakeClock(FIXED_NOW)


@pytest.fixture
def timezone_resolver(store_client, db, clock):
    return TimezoneResolver(store_client, db, now=clock, default_timezone="UTC")


@pytest.fixture
def filter_engine(store_client, db, timezone_resolver):
    return TaskFilterEngine(store_client, db, timezone_resolver)
