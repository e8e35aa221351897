"""Access-token lifecycle for connected accounts.

Refreshes are serialized per account: an in-process lock keeps coroutines of
one worker from racing, and the repository's credential lock (a Postgres
advisory lock) does the same across processes. The credential is re-read once
the lock is held, so a refresh finished by someone else is reused rather than
repeated with a rotated refresh token.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, NoReturn

from trove.core.config import Settings
from trove.core.crypto import CredentialCipher, CredentialDecryptError
from trove.core.errors import AuthExpired, RefreshRejected, TransientAuthError, TransientError
from trove.domain.lifecycle import days_until, format_error, token_needs_refresh
from trove.domain.records import ConnectedAccount
from trove.platforms.base import PlatformHandler, TokenGrant
from trove.platforms.registry import get_handler
from trove.services.platform_client import PlatformClient

logger = logging.getLogger(__name__)


class AccountTokenManager:
    def __init__(
        self,
        repository: Any,
        cipher: CredentialCipher,
        *,
        client: PlatformClient,
        settings: Settings,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.cipher = cipher
        self.client = client
        self.settings = settings
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, asyncio.Lock] = {}

    async def get_valid_access_token(self, account_id: str) -> str:
        account = await self.repository.get_account(account_id)
        self._ensure_active(account)
        if not self._needs_refresh(account):
            return await self._access_token(account)

        handler = get_handler(account.platform)
        if not handler.supports_refresh:
            return await self._fixed_lifetime_token(account)

        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            async with self.repository.credential_lock(account_id):
                return await self._refresh_locked(account_id, handler)

    async def days_until_expiry(self, account_id: str) -> int | None:
        account = await self.repository.get_account(account_id)
        return days_until(account.token_expires_at, now=self._now_fn())

    async def mark_auth_failure(self, account_id: str, reason: str = "upstream rejected access token") -> None:
        logger.warning("marking account %s token_expired: %s", account_id, reason)
        await self.repository.set_account_status(account_id, "token_expired", error_message=reason)

    async def _refresh_locked(self, account_id: str, handler: PlatformHandler) -> str:
        account = await self.repository.get_account(account_id)
        self._ensure_active(account)
        if not self._needs_refresh(account):
            return await self._access_token(account)

        refresh_token = await self._decrypt(account, account.refresh_token_enc)
        if not refresh_token:
            return await self._fixed_lifetime_token(account)
        try:
            grant = await self._request_grant(account, handler, refresh_token)
        except RefreshRejected:
            # refresh tokens rotate; retry once with whatever is stored now
            account = await self.repository.get_account(account_id)
            try:
                refresh_token = await self._refresh_token(account)
                grant = await self._request_grant(account, handler, refresh_token)
            except RefreshRejected as exc:
                message = format_error(exc)
                logger.warning("refresh rejected twice for account %s; disconnecting", account_id)
                await self.repository.set_account_status(account_id, "disconnected", error_message=message)
                raise AuthExpired(message, account_id=account_id) from exc

        await self.repository.update_account_tokens(
            account_id,
            access_token_enc=self.cipher.encrypt(grant.access_token),
            refresh_token_enc=self.cipher.encrypt(grant.refresh_token or refresh_token),
            expires_at=grant.expires_at,
        )
        logger.info("refreshed access token for account %s", account_id)
        return grant.access_token

    async def _request_grant(
        self,
        account: ConnectedAccount,
        handler: PlatformHandler,
        refresh_token: str,
    ) -> TokenGrant:
        if handler.refresh is None:
            raise AuthExpired(f"{account.platform} tokens cannot be refreshed", account_id=account.id)
        try:
            return await handler.refresh(self.client, self.settings, refresh_token)
        except TransientError as exc:
            message = format_error(exc)
            # counted for operators; status and tokens stay as they are
            error_count = await self.repository.record_account_error(account.id, message)
            logger.warning("token refresh failed for account %s (errors=%s): %s", account.id, error_count, message)
            raise TransientAuthError(message, account_id=account.id) from exc

    async def _fixed_lifetime_token(self, account: ConnectedAccount) -> str:
        expires_at = account.token_expires_at
        if expires_at is not None and expires_at <= self._now_fn():
            message = "access token expired and cannot be refreshed"
            await self.repository.set_account_status(account.id, "token_expired", error_message=message)
            raise AuthExpired(message, account_id=account.id)
        return await self._access_token(account)

    def _needs_refresh(self, account: ConnectedAccount) -> bool:
        return token_needs_refresh(
            account.token_expires_at,
            now=self._now_fn(),
            margin_seconds=self.settings.token_refresh_margin_seconds,
        )

    async def _access_token(self, account: ConnectedAccount) -> str:
        token = await self._decrypt(account, account.access_token_enc)
        if not token:
            await self._expire(account, "account has no access token")
        return token

    async def _refresh_token(self, account: ConnectedAccount) -> str:
        token = await self._decrypt(account, account.refresh_token_enc)
        if not token:
            await self._expire(account, "account has no refresh token")
        return token

    async def _decrypt(self, account: ConnectedAccount, ciphertext: str | None) -> str | None:
        try:
            return self.cipher.decrypt(ciphertext)
        except CredentialDecryptError as exc:
            # unreadable credentials park the account until it is reconnected
            message = format_error(exc)
            logger.error("cannot decrypt credentials for account %s: %s", account.id, message)
            await self.repository.set_account_status(account.id, "error", error_message=message)
            raise AuthExpired(message, account_id=account.id) from exc

    async def _expire(self, account: ConnectedAccount, message: str) -> NoReturn:
        logger.warning("marking account %s token_expired: %s", account.id, message)
        await self.repository.set_account_status(account.id, "token_expired", error_message=message)
        raise AuthExpired(message, account_id=account.id)

    @staticmethod
    def _ensure_active(account: ConnectedAccount) -> None:
        if account.status != "active":
            raise AuthExpired(f"account is {account.status}", account_id=account.id)
