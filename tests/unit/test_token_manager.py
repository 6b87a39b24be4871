"""
Unit tests for TokenManager and TokenStore.
"""

import asyncio
from datetime import timedelta

import pytest

from ledgerbridge.connectors.errors import AuthRequired
from ledgerbridge.storage.duckdb_storage import StorageError
from tests.conftest import make_tokens


def test_not_connected_raises_auth_required(stack):
    with pytest.raises(AuthRequired):
        asyncio.run(stack.token_manager.get_access_token())


def test_valid_token_is_returned_without_refresh(connected, platforms):
    tokens = asyncio.run(connected.token_manager.get_access_token())

    assert tokens.access_token == "access-0"
    assert platforms.token_grants == []


def test_expiring_token_is_refreshed_and_persisted(stack, platforms):
    stack.token_store.save(make_tokens(expires_in=timedelta(minutes=1)))

    tokens = asyncio.run(stack.token_manager.get_access_token())

    assert tokens.access_token == "access-1"
    assert platforms.token_grants[0]["refresh_token"] == "refresh-0"
    assert stack.token_store.load().access_token == "access-1"


def test_concurrent_callers_refresh_once(stack, platforms):
    stack.token_store.save(make_tokens(expires_in=-timedelta(minutes=1)))

    async def run():
        return await asyncio.gather(*(stack.token_manager.get_access_token() for _ in range(5)))

    results = asyncio.run(run())

    assert len(platforms.token_grants) == 1
    assert {t.access_token for t in results} == {"access-1"}


def test_refresh_failure_clears_tokens(stack, platforms):
    stack.token_store.save(make_tokens(expires_in=timedelta(seconds=10)))
    platforms.token_error_status = 400

    with pytest.raises(AuthRequired):
        asyncio.run(stack.token_manager.get_access_token())

    assert stack.token_store.load() is None


def test_expired_without_refresh_token(stack, platforms):
    stack.token_store.save(make_tokens(expires_in=-timedelta(minutes=5), refresh_token=None))

    with pytest.raises(AuthRequired):
        asyncio.run(stack.token_manager.get_access_token())

    assert platforms.token_grants == []
    assert stack.token_store.load() is None


def test_force_refresh_reuses_newer_token(connected, platforms):
    stale = make_tokens(access_token="access-old")

    tokens = asyncio.run(connected.token_manager.force_refresh(stale))

    assert tokens.access_token == "access-0"
    assert platforms.token_grants == []


def test_force_refresh_refreshes_stale_token(connected, platforms):
    current = connected.token_store.load()

    tokens = asyncio.run(connected.token_manager.force_refresh(current))

    assert tokens.access_token == "access-1"
    assert len(platforms.token_grants) == 1


def test_status_reports_no_secrets(connected):
    status = connected.token_manager.status()

    assert status["connected"] is True
    assert status["has_access_token"] is True
    assert status["has_refresh_token"] is True
    assert status["token_type"] == "Bearer"
    assert status["expires_at"] is not None
    assert "access-0" not in str(status)
    assert "refresh-0" not in str(status)


def test_status_when_disconnected(stack):
    assert stack.token_manager.status() == {
        "connected": False,
        "has_access_token": False,
        "has_refresh_token": False,
        "token_type": None,
        "expires_at": None,
    }


def test_store_exchanged_and_disconnect(stack):
    stack.token_manager.store_exchanged(make_tokens())
    assert stack.token_store.is_connected()

    assert stack.token_manager.disconnect() is True
    assert stack.token_manager.disconnect() is False
    assert not stack.token_store.is_connected()


def test_token_store_load_swallows_storage_errors(stack, monkeypatch):
    def broken(connection_id):
        raise StorageError("disk gone")

    monkeypatch.setattr(stack.storage, "load_tokens", broken)

    assert stack.token_store.load() is None
