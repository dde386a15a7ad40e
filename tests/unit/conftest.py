"""Pytest configuration and fixtures for unit tests."""

import pytest

from taskscope.core.cache_client import InMemoryCache
from taskscope.core.store_client import ResilientStoreClient, RetryConfig
from taskscope.services.task_filter_service import TaskFilterEngine
from taskscope.services.timezone_service import TimezoneResolver
from tests.unit.mocks import FIXED_NOW, FakeClock, InMemoryTaskStore


@pytest.fixture
def task_store():
    """Provides a fresh InMemoryTaskStore for each test."""
    return InMemoryTaskStore()


@pytest.fixture
def retry_config():
    """Retry configuration with tiny delays for tests."""
    return RetryConfig(
        max_retries=3,
        base_delay=0.001,
        operation_timeout=1.0,
        health_check_interval=30.0,
        queue_concurrency=3,
        batch_delay=0,
    )


@pytest.fixture
def store_client(task_store, retry_config):
    return ResilientStoreClient(task_store, retry_config)


@pytest.fixture
def clock():
    return FakeClock(FIXED_NOW)


@pytest.fixture
def timezone_resolver(store_client, task_store, clock):
    return TimezoneResolver(store_client, task_store, now=clock, default_timezone="UTC")


@pytest.fixture
def counts_cache():
    return InMemoryCache()


@pytest.fixture
def filter_engine(store_client, task_store, timezone_resolver, counts_cache):
    return TaskFilterEngine(store_client, task_store, timezone_resolver, cache=counts_cache)
