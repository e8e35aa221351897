from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from trove.core.config import Settings
from trove.core.crypto import CredentialCipher, generate_key
from trove.domain.records import ConnectedAccount
from trove.services.store import InMemoryRepository


@pytest.fixture
def settings() -> Settings:
    return Settings(
        otel_enabled=False,
        strava_client_id="strava-client",
        strava_client_secret="strava-secret",
        strava_webhook_secret="strava-hook-secret",
        strava_verify_token="verify-me",
        bluesky_webhook_secret="bluesky-hook-secret",
        instagram_webhook_secret="instagram-hook-secret",
    )


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(generate_key())


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository(max_attempts=3)


@pytest.fixture
def add_account(repository: InMemoryRepository, cipher: CredentialCipher) -> Callable[..., ConnectedAccount]:
    def factory(
        *,
        platform: str = "strava",
        platform_user_id: str = "9",
        access_token: str = "access-1",
        refresh_token: str | None = "refresh-1",
        expires_at: datetime | None = None,
        expires_in: timedelta | None = timedelta(hours=6),
        status: str = "active",
        last_sync_at: datetime | None = None,
    ) -> ConnectedAccount:
        if expires_at is None and expires_in is not None:
            expires_at = datetime.now(timezone.utc) + expires_in
        account = ConnectedAccount(
            id=str(uuid4()),
            user_id=str(uuid4()),
            platform=platform,
            platform_user_id=platform_user_id,
            access_token_enc=cipher.encrypt(access_token),
            refresh_token_enc=cipher.encrypt(refresh_token),
            token_expires_at=expires_at,
            status=status,
            last_sync_at=last_sync_at,
        )
        return repository.add_account(account)

    return factory

