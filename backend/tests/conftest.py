"""Stable shared fixtures for tests.

Design goal: avoid async fixture loop injection and keep test boundaries explicit.
"""
import os
from unittest.mock import AsyncMock, patch

import pytest

# Must be set before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["APP_AUTH_BEARER_TOKENS"] = "test_token"
os.environ["VAULT_ENCRYPTION_KEY"] = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
os.environ["MICROSOFT_CLIENT_ID"] = "test_client"
os.environ["MICROSOFT_CLIENT_SECRET"] = "test_client_secret"
os.environ.pop("CRON_SECRET", None)

from api.main import app, get_db


@pytest.fixture
def mock_redis():
    r = AsyncMock()
    r.rpush = AsyncMock(return_value=1)
    r.blpop = AsyncMock(return_value=None)
    r.delete = AsyncMock(return_value=1)
    r.ping = AsyncMock(return_value=True)
    return r


@pytest.fixture(autouse=True)
def patched_wake_queue(mock_redis):
    with patch("common.sync_queue.redis_client", mock_redis):
        yield mock_redis


@pytest.fixture
def mock_db():
    db = AsyncMock()
    result = AsyncMock()
    result.rowcount = 1
    db.execute = AsyncMock(return_value=result)
    db.commit = AsyncMock(return_value=None)
    return db


@pytest.fixture
def app_no_db(mock_db):
    async def _stub_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = _stub_get_db
    yield app
    app.dependency_overrides.clear()
