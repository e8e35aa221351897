from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from trove.domain.lifecycle import (
    compute_aspect_ratio,
    compute_duration_ms,
    is_newer,
    media_ready,
    poll_due,
    resolve_failure_status,
    resolve_media_failure_status,
)
from trove.domain.records import (
    MEDIA_TYPES,
    CanonicalFields,
    CanonicalPost,
    ConnectedAccount,
    ExtractedPost,
    MediaDownload,
    RawItem,
    SyncLog,
    UpsertOutcome,
)
from trove.services.repository import RepositoryConflictError, RepositoryNotFoundError, cursor_column

DEAD_LETTER_FROM = {"pending", "processing", "failed"}


class InMemoryRepository:
    """Single-process store with the same contract as PostgresRepository.

    Used by tests and local runs. Each transition runs without yielding to the
    event loop, so it is atomic with respect to other coroutines.
    """

    def __init__(self, *, max_attempts: int = 3) -> None:
        self.max_attempts = max(1, max_attempts)
        self.raw_items: dict[str, RawItem] = {}
        self.extracted_posts: dict[str, ExtractedPost] = {}
        self.canonical_posts: dict[tuple[str, str], CanonicalPost] = {}
        self.media_downloads: dict[str, MediaDownload] = {}
        self.accounts: dict[str, ConnectedAccount] = {}
        self.sync_logs: dict[str, SyncLog] = {}
        self._credential_locks: dict[str, asyncio.Lock] = {}

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    def add_account(self, account: ConnectedAccount) -> ConnectedAccount:
        self.accounts[account.id] = account
        return account

    # raw items

    async def enqueue_raw_item(
        self,
        *,
        source: str,
        platform: str,
        event_type: str,
        payload: dict[str, Any],
        account_id: str | None = None,
        user_id: str | None = None,
        external_id: str | None = None,
        retry_of: str | None = None,
    ) -> str:
        if external_id is not None:
            for item in self.raw_items.values():
                if item.platform == platform and item.external_id == external_id:
                    return item.id
        if account_id is not None and user_id is None and account_id in self.accounts:
            user_id = self.accounts[account_id].user_id

        item = RawItem(
            id=str(uuid4()),
            source=source,
            platform=platform,
            event_type=event_type,
            payload=copy.deepcopy(payload),
            account_id=account_id,
            user_id=user_id,
            external_id=external_id,
            retry_of=retry_of,
            received_at=_now(),
        )
        self.raw_items[item.id] = item
        return item.id

    async def get_raw_item(self, raw_item_id: str) -> RawItem:
        item = self.raw_items.get(raw_item_id)
        if item is None:
            raise RepositoryNotFoundError("raw item not found")
        return copy.deepcopy(item)

    async def claim_pending_raw_items(self, batch_size: int) -> list[RawItem]:
        return self._claim(self.raw_items, batch_size)

    async def complete_raw_item(self, raw_item_id: str) -> bool:
        return self._complete(self.raw_items, raw_item_id)

    async def fail_raw_item(self, raw_item_id: str, error: str) -> str | None:
        return self._fail(self.raw_items, raw_item_id, error)

    async def release_raw_item(self, raw_item_id: str, error: str) -> bool:
        return self._release(self.raw_items, raw_item_id, error)

    async def dead_letter_raw_item(self, raw_item_id: str, reason: str) -> bool:
        return self._dead_letter(self.raw_items, raw_item_id, reason)

    async def reinject_raw_item(self, raw_item_id: str) -> str:
        original = await self.get_raw_item(raw_item_id)
        if original.status != "dead_letter":
            raise RepositoryConflictError("only dead-lettered raw items can be reinjected")
        return await self.enqueue_raw_item(
            source="retry",
            platform=original.platform,
            event_type=original.event_type,
            payload=original.payload,
            account_id=original.account_id,
            user_id=original.user_id,
            retry_of=original.id,
        )

    # extracted posts

    async def insert_extracted_post(
        self,
        *,
        raw_item_id: str | None,
        platform: str,
        platform_post_id: str,
        native_payload: dict[str, Any],
        account_id: str | None = None,
        user_id: str | None = None,
    ) -> tuple[str, bool]:
        if raw_item_id is not None:
            for post in self.extracted_posts.values():
                if post.raw_item_id == raw_item_id and post.platform_post_id == platform_post_id:
                    return post.id, False

        post = ExtractedPost(
            id=str(uuid4()),
            platform=platform,
            platform_post_id=platform_post_id,
            native_payload=copy.deepcopy(native_payload),
            raw_item_id=raw_item_id,
            account_id=account_id,
            user_id=user_id,
            received_at=_now(),
        )
        self.extracted_posts[post.id] = post
        return post.id, True

    async def get_extracted_post(self, post_id: str) -> ExtractedPost:
        post = self.extracted_posts.get(post_id)
        if post is None:
            raise RepositoryNotFoundError("extracted post not found")
        return copy.deepcopy(post)

    async def claim_pending_posts(self, batch_size: int) -> list[ExtractedPost]:
        return self._claim(self.extracted_posts, batch_size)

    async def complete_post(self, post_id: str) -> bool:
        return self._complete(self.extracted_posts, post_id)

    async def fail_post(self, post_id: str, error: str) -> str | None:
        return self._fail(self.extracted_posts, post_id, error)

    async def release_post(self, post_id: str, error: str) -> bool:
        return self._release(self.extracted_posts, post_id, error)

    async def dead_letter_post(self, post_id: str, reason: str) -> bool:
        return self._dead_letter(self.extracted_posts, post_id, reason)

    # canonical posts

    async def upsert_canonical_post(
        self,
        *,
        account_id: str,
        user_id: str,
        platform: str,
        fields: CanonicalFields,
        search_text: str,
    ) -> UpsertOutcome:
        key = (platform, fields.platform_post_id)
        existing = self.canonical_posts.get(key)
        if existing is None:
            post = CanonicalPost(
                id=str(uuid4()),
                account_id=account_id,
                user_id=user_id,
                platform=platform,
                platform_post_id=fields.platform_post_id,
                content_kind=fields.content_kind,
                text=fields.text,
                native_created_at=fields.native_created_at,
                native_updated_at=fields.native_updated_at,
                published=fields.published,
                deleted_upstream=fields.deleted_upstream,
                engagement_stats=copy.deepcopy(fields.engagement_stats),
                metadata=copy.deepcopy(fields.metadata),
                search_text=search_text,
            )
            self.canonical_posts[key] = post
            return UpsertOutcome(post_id=post.id, created=True, updated=False)

        if not is_newer(fields.native_updated_at, existing.native_updated_at):
            return UpsertOutcome(post_id=existing.id, created=False, updated=False)

        existing.content_kind = fields.content_kind
        existing.text = fields.text
        existing.native_created_at = fields.native_created_at
        existing.native_updated_at = fields.native_updated_at
        existing.published = fields.published
        existing.deleted_upstream = fields.deleted_upstream
        existing.engagement_stats = copy.deepcopy(fields.engagement_stats)
        existing.metadata = copy.deepcopy(fields.metadata)
        existing.search_text = search_text
        return UpsertOutcome(post_id=existing.id, created=False, updated=True)

    async def mark_deleted_upstream(self, *, platform: str, platform_post_id: str) -> bool:
        existing = self.canonical_posts.get((platform, platform_post_id))
        if existing is None or existing.deleted_upstream:
            return False
        existing.deleted_upstream = True
        return True

    async def get_canonical_post(self, *, platform: str, platform_post_id: str) -> CanonicalPost | None:
        existing = self.canonical_posts.get((platform, platform_post_id))
        return copy.deepcopy(existing) if existing is not None else None

    # media downloads

    async def enqueue_media_reference(
        self,
        *,
        user_id: str,
        platform: str,
        extracted_post_id: str | None,
        url: str,
        media_type: str = "image",
        position: int = 0,
        width: int | None = None,
        height: int | None = None,
        alt_text: str | None = None,
    ) -> str | None:
        if media_type not in MEDIA_TYPES:
            raise RepositoryConflictError(f"unsupported media type: {media_type}")
        for download in self.media_downloads.values():
            if download.user_id == user_id and download.original_url == url:
                return None
        download = MediaDownload(
            id=str(uuid4()),
            extracted_post_id=extracted_post_id,
            user_id=user_id,
            platform=platform,
            original_url=url,
            media_type=media_type,
            position=max(0, position),
            width=width,
            height=height,
            aspect_ratio=compute_aspect_ratio(width, height),
            alt_text=alt_text,
            created_at=_now(),
        )
        self.media_downloads[download.id] = download
        return download.id

    async def get_media_download(self, download_id: str) -> MediaDownload:
        download = self.media_downloads.get(download_id)
        if download is None:
            raise RepositoryNotFoundError("media download not found")
        return copy.deepcopy(download)

    async def claim_downloadable_media(self, batch_size: int, *, now: datetime) -> list[MediaDownload]:
        claimed: list[MediaDownload] = []
        for download in self.media_downloads.values():
            if len(claimed) >= max(1, batch_size):
                break
            if not media_ready(download, now=now, max_attempts=self.max_attempts):
                continue
            download.status = "downloading"
            download.last_attempt_at = now
            claimed.append(copy.deepcopy(download))
        return claimed

    async def complete_media_download(
        self,
        download_id: str,
        *,
        mime_type: str | None = None,
        file_size: int | None = None,
    ) -> bool:
        download = self.media_downloads.get(download_id)
        if download is None or download.status != "downloading":
            return False
        download.status = "downloaded"
        download.attempts += 1
        download.last_error = None
        download.mime_type = mime_type or download.mime_type
        if file_size is not None:
            download.file_size = file_size
        return True

    async def fail_media_download(self, download_id: str, error: str, *, permanent: bool) -> str | None:
        download = self.media_downloads.get(download_id)
        if download is None or download.status != "downloading":
            return None
        download.attempts += 1
        download.last_error = error
        download.status = resolve_media_failure_status(
            attempts=download.attempts,
            max_attempts=self.max_attempts,
            permanent=permanent,
        )
        return download.status

    async def dead_letter_media_download(self, download_id: str, reason: str) -> bool:
        download = self.media_downloads.get(download_id)
        if download is None or download.status not in {"pending", "downloading", "failed"}:
            return False
        download.status = "failed"
        download.attempts = max(download.attempts, self.max_attempts)
        download.last_error = reason
        return True

    # connected accounts

    async def get_account(self, account_id: str) -> ConnectedAccount:
        account = self.accounts.get(account_id)
        if account is None:
            raise RepositoryNotFoundError("connected account not found")
        return copy.deepcopy(account)

    async def find_account(self, *, platform: str, platform_user_id: str) -> ConnectedAccount | None:
        for account in self.accounts.values():
            if account.platform == platform and account.platform_user_id == platform_user_id:
                return copy.deepcopy(account)
        return None

    @asynccontextmanager
    async def credential_lock(self, account_id: str) -> AsyncIterator[None]:
        lock = self._credential_locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            yield

    async def update_account_tokens(
        self,
        account_id: str,
        *,
        access_token_enc: str,
        refresh_token_enc: str | None,
        expires_at: datetime | None,
    ) -> None:
        account = self._account(account_id)
        account.access_token_enc = access_token_enc
        account.refresh_token_enc = refresh_token_enc
        account.token_expires_at = expires_at
        account.status = "active"
        account.error_message = None
        account.error_count = 0

    async def set_account_status(self, account_id: str, status: str, *, error_message: str | None = None) -> None:
        account = self._account(account_id)
        account.status = status
        account.error_message = error_message

    async def record_account_error(self, account_id: str, error_message: str) -> int:
        account = self._account(account_id)
        account.error_count += 1
        account.error_message = error_message
        return account.error_count

    async def due_accounts(
        self,
        *,
        now: datetime,
        interval_minutes: dict[str, int],
        limit: int,
    ) -> list[ConnectedAccount]:
        due = [
            account
            for account in self.accounts.values()
            if account.sync_enabled
            and account.status == "active"
            and poll_due(account.last_sync_at, now=now, interval_minutes=interval_minutes.get(account.platform, 60))
        ]
        due.sort(key=lambda account: account.last_sync_at or datetime.min.replace(tzinfo=timezone.utc))
        return [copy.deepcopy(account) for account in due[: max(1, limit)]]

    async def mark_synced(self, account_id: str, *, at: datetime) -> None:
        self._account(account_id).last_sync_at = at

    async def set_sync_cursor(self, account_id: str, *, cursor: str, kind: str) -> None:
        setattr(self._account(account_id), cursor_column(kind), cursor)

    async def take_sync_cursor(self, account_id: str, cursor: str, *, kind: str) -> bool:
        account = self._account(account_id)
        column = cursor_column(kind)
        if getattr(account, column) != cursor:
            return False
        setattr(account, column, None)
        return True

    async def accounts_with_cursor(self, *, limit: int) -> list[ConnectedAccount]:
        accounts = [
            account
            for account in self.accounts.values()
            if (account.sync_cursor is not None or account.backfill_cursor is not None)
            and account.sync_enabled and account.status == "active"
        ]
        return [copy.deepcopy(account) for account in accounts[: max(1, limit)]]

    # sync logs

    async def start_sync_log(
        self,
        *,
        account_id: str | None,
        user_id: str | None,
        sync_type: str,
        started_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        log = SyncLog(
            id=str(uuid4()),
            account_id=account_id,
            user_id=user_id,
            sync_type=sync_type,
            started_at=started_at,
            metadata=dict(metadata or {}),
        )
        self.sync_logs[log.id] = log
        return log.id

    async def finish_sync_log(
        self,
        sync_log_id: str,
        *,
        status: str,
        completed_at: datetime,
        posts_fetched: int = 0,
        error_message: str | None = None,
    ) -> None:
        log = self.sync_logs[sync_log_id]
        log.status = status
        log.completed_at = completed_at
        log.posts_fetched = posts_fetched
        log.error_message = error_message
        log.duration_ms = compute_duration_ms(log.started_at, completed_at)

    # maintenance

    async def reap_stale_claims(self, *, now: datetime, older_than_seconds: int) -> int:
        cutoff = now - timedelta(seconds=older_than_seconds)
        reaped = 0
        for items in (self.raw_items, self.extracted_posts):
            for item in items.values():
                if item.status == "processing" and item.started_at is not None and item.started_at <= cutoff:
                    item.attempts += 1
                    item.status = resolve_failure_status(attempts=item.attempts, max_attempts=self.max_attempts)
                    item.last_error = "claim abandoned"
                    item.last_error_at = now
                    reaped += 1
        for download in self.media_downloads.values():
            if download.status == "downloading" and download.last_attempt_at is not None and download.last_attempt_at <= cutoff:
                download.attempts += 1
                download.status = resolve_media_failure_status(
                    attempts=download.attempts,
                    max_attempts=self.max_attempts,
                    permanent=False,
                )
                download.last_error = "claim abandoned"
                reaped += 1
        return reaped

    # queue primitives

    def _claim(self, items: dict[str, Any], batch_size: int) -> list[Any]:
        claimed: list[Any] = []
        for item in items.values():
            if len(claimed) >= max(1, batch_size):
                break
            if item.status != "pending" or not self._account_active(item.account_id):
                continue
            item.status = "processing"
            item.started_at = _now()
            claimed.append(copy.deepcopy(item))
        return claimed

    @staticmethod
    def _complete(items: dict[str, Any], item_id: str) -> bool:
        item = items.get(item_id)
        if item is None or item.status != "processing":
            return False
        item.status = "completed"
        item.completed_at = _now()
        item.last_error = None
        return True

    def _fail(self, items: dict[str, Any], item_id: str, error: str) -> str | None:
        item = items.get(item_id)
        if item is None or item.status != "processing":
            return None
        item.attempts += 1
        item.status = resolve_failure_status(attempts=item.attempts, max_attempts=self.max_attempts)
        item.last_error = error
        item.last_error_at = _now()
        return item.status

    @staticmethod
    def _release(items: dict[str, Any], item_id: str, error: str) -> bool:
        item = items.get(item_id)
        if item is None or item.status != "processing":
            return False
        item.status = "pending"
        item.started_at = None
        item.last_error = error
        item.last_error_at = _now()
        return True

    @staticmethod
    def _dead_letter(items: dict[str, Any], item_id: str, reason: str) -> bool:
        item = items.get(item_id)
        if item is None or item.status not in DEAD_LETTER_FROM:
            return False
        item.status = "dead_letter"
        item.last_error = reason
        item.last_error_at = _now()
        return True

    def _account_active(self, account_id: str | None) -> bool:
        if account_id is None:
            return True
        account = self.accounts.get(account_id)
        return account is not None and account.status == "active"

    def _account(self, account_id: str) -> ConnectedAccount:
        account = self.accounts.get(account_id)
        if account is None:
            raise RepositoryNotFoundError("connected account not found")
        return account


def _now() -> datetime:
    return datetime.now(timezone.utc)
