"""Pytest configuration and shared fixtures."""

import pytest

from taskscope.core.config import Settings


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from any local .env file, backed by a temporary database."""
    return Settings(
        _env_file=None,
        sqlite_db_path=str(tmp_path / "taskscope.db"),
        default_timezone="Europe/Paris",
        logfire_token=None,
    )
