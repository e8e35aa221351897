from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from trove.core.errors import AuthExpired, TransientAuthError
from trove.jobs.sync_scheduler import SyncScheduler
from trove.services.platform_client import PlatformClient
from trove.services.token_manager import AccountTokenManager

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _with_manager(repository, cipher, settings, handler, call):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = PlatformClient(client=http_client)
            manager = AccountTokenManager(repository, cipher, client=client, settings=settings, now_fn=lambda: NOW)
            return await call(manager, client)

    return asyncio.run(run())


def _unexpected(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


def test_fresh_token_is_returned_without_refresh(repository, cipher, settings, add_account) -> None:
    account = add_account(access_token="still-good", expires_at=NOW + timedelta(minutes=30))

    token = _with_manager(
        repository, cipher, settings, _unexpected, lambda manager, _: manager.get_valid_access_token(account.id)
    )
    assert token == "still-good"


def test_token_without_expiry_is_used_as_is(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="bluesky", access_token="app-password-session", expires_in=None)

    token = _with_manager(
        repository, cipher, settings, _unexpected, lambda manager, _: manager.get_valid_access_token(account.id)
    )
    assert token == "app-password-session"


def test_expiring_token_is_refreshed_and_stored_encrypted(repository, cipher, settings, add_account) -> None:
    account = add_account(access_token="old", refresh_token="refresh-1", expires_at=NOW + timedelta(minutes=2))
    new_expiry = int((NOW + timedelta(hours=6)).timestamp())

    async def handler(request: httpx.Request) -> httpx.Response:
        assert b"refresh_token=refresh-1" in request.content
        return httpx.Response(
            200,
            json={"access_token": "new-access", "refresh_token": "refresh-2", "expires_at": new_expiry},
            request=request,
        )

    token = _with_manager(
        repository, cipher, settings, handler, lambda manager, _: manager.get_valid_access_token(account.id)
    )

    stored = repository.accounts[account.id]
    assert token == "new-access"
    assert stored.access_token_enc != "new-access"
    assert cipher.decrypt(stored.access_token_enc) == "new-access"
    assert cipher.decrypt(stored.refresh_token_enc) == "refresh-2"
    assert stored.token_expires_at == datetime.fromtimestamp(new_expiry, tz=timezone.utc)
    assert stored.error_count == 0


def test_concurrent_callers_share_one_refresh(repository, cipher, settings, add_account) -> None:
    account = add_account(expires_at=NOW - timedelta(minutes=1))
    calls: list[bytes] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.content)
        await asyncio.sleep(0.01)
        return httpx.Response(
            200,
            json={"access_token": "shared", "refresh_token": "refresh-2", "expires_in": 21600},
            request=request,
        )

    async def call(manager, _):
        return await asyncio.gather(*(manager.get_valid_access_token(account.id) for _ in range(5)))

    tokens = _with_manager(repository, cipher, settings, handler, call)
    assert tokens == ["shared"] * 5
    assert len(calls) == 1


def test_invalid_grant_retries_once_with_rotated_token(repository, cipher, settings, add_account) -> None:
    account = add_account(refresh_token="refresh-1", expires_at=NOW - timedelta(minutes=1))
    seen: list[bytes] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.content)
        if len(seen) == 1:
            # another process rotated the refresh token meanwhile
            repository.accounts[account.id].refresh_token_enc = cipher.encrypt("refresh-2")
            return httpx.Response(400, json={"message": "Bad Request", "errors": [{"code": "invalid"}]}, request=request)
        assert b"refresh_token=refresh-2" in request.content
        return httpx.Response(200, json={"access_token": "after-retry", "expires_in": 3600}, request=request)

    token = _with_manager(
        repository, cipher, settings, handler, lambda manager, _: manager.get_valid_access_token(account.id)
    )
    assert token == "after-retry"
    assert len(seen) == 2
    assert repository.accounts[account.id].status == "active"
    # the grant carried no new refresh token; the rotated one is kept
    assert cipher.decrypt(repository.accounts[account.id].refresh_token_enc) == "refresh-2"


def test_invalid_grant_twice_disconnects_account(repository, cipher, settings, add_account) -> None:
    account = add_account(expires_at=NOW - timedelta(minutes=1), last_sync_at=None)
    seen: list[bytes] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.content)
        return httpx.Response(400, json={"message": "Bad Request", "errors": [{"code": "invalid"}]}, request=request)

    async def call(manager, client):
        with pytest.raises(AuthExpired):
            await manager.get_valid_access_token(account.id)
        scheduler = SyncScheduler(repository, manager, client, settings, now_fn=lambda: NOW)
        return await scheduler.due_for_sync(NOW)

    due = _with_manager(repository, cipher, settings, handler, call)
    assert len(seen) == 2
    assert repository.accounts[account.id].status == "disconnected"
    assert account.id not in due


def test_transient_refresh_failure_keeps_account_active(repository, cipher, settings, add_account) -> None:
    account = add_account(access_token="old", expires_at=NOW - timedelta(minutes=1))

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, request=request)

    async def call(manager, _):
        for _attempt in range(2):
            with pytest.raises(TransientAuthError):
                await manager.get_valid_access_token(account.id)

    _with_manager(repository, cipher, settings, handler, call)
    stored = repository.accounts[account.id]
    assert stored.status == "active"
    assert stored.error_count == 2
    assert cipher.decrypt(stored.access_token_enc) == "old"


def test_inactive_account_is_rejected(repository, cipher, settings, add_account) -> None:
    account = add_account(status="disconnected")

    async def call(manager, _):
        with pytest.raises(AuthExpired):
            await manager.get_valid_access_token(account.id)

    _with_manager(repository, cipher, settings, _unexpected, call)


def test_instagram_token_expires_without_refresh(repository, cipher, settings, add_account) -> None:
    valid = add_account(platform="instagram", platform_user_id="1784", refresh_token=None, expires_at=NOW + timedelta(days=12, hours=1))
    expiring = add_account(platform="instagram", platform_user_id="1785", refresh_token=None, expires_at=NOW + timedelta(minutes=2))
    expired = add_account(platform="instagram", platform_user_id="1786", refresh_token=None, expires_at=NOW - timedelta(days=1))

    async def call(manager, _):
        assert await manager.days_until_expiry(valid.id) == 12
        assert await manager.get_valid_access_token(valid.id) == "access-1"
        # inside the refresh margin but not yet expired: still usable
        assert await manager.get_valid_access_token(expiring.id) == "access-1"
        with pytest.raises(AuthExpired):
            await manager.get_valid_access_token(expired.id)

    _with_manager(repository, cipher, settings, _unexpected, call)
    assert repository.accounts[expired.id].status == "token_expired"
    assert repository.accounts[valid.id].status == "active"


def test_mark_auth_failure_sets_token_expired(repository, cipher, settings, add_account) -> None:
    account = add_account()

    async def call(manager, _):
        await manager.mark_auth_failure(account.id, "HTTP 401")

    _with_manager(repository, cipher, settings, _unexpected, call)
    assert repository.accounts[account.id].status == "token_expired"
    assert repository.accounts[account.id].error_message == "HTTP 401"


def test_missing_access_token_expires_account(repository, cipher, settings, add_account) -> None:
    account = add_account(expires_at=NOW + timedelta(hours=1))
    repository.accounts[account.id].access_token_enc = None

    async def call(manager, _):
        with pytest.raises(AuthExpired):
            await manager.get_valid_access_token(account.id)

    _with_manager(repository, cipher, settings, _unexpected, call)
    stored = repository.accounts[account.id]
    assert stored.status == "token_expired"
    assert stored.error_message == "account has no access token"


def test_undecryptable_refresh_token_marks_account_error(repository, cipher, settings, add_account) -> None:
    account = add_account(expires_at=NOW - timedelta(minutes=1))
    repository.accounts[account.id].refresh_token_enc = "rotated-key-ciphertext"

    async def call(manager, _):
        with pytest.raises(AuthExpired):
            await manager.get_valid_access_token(account.id)
        # a parked account is not retried
        with pytest.raises(AuthExpired):
            await manager.get_valid_access_token(account.id)

    _with_manager(repository, cipher, settings, _unexpected, call)
    assert repository.accounts[account.id].status == "error"
