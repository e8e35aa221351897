"""Proactive polling: first pages on the poll interval, continuation pages from
cursors recorded by extraction, and on-demand backfills."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from trove.core.config import Settings
from trove.core.errors import AuthError, AuthExpired
from trove.domain.lifecycle import format_error
from trove.domain.records import PLATFORMS, ConnectedAccount
from trove.platforms.base import build_page_payload
from trove.platforms.registry import get_handler
from trove.services.platform_client import PlatformClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SYNC_TYPE_BY_SOURCE = {"fetch": "scheduled", "backfill": "backfill"}


class SyncScheduler:
    def __init__(
        self,
        repository: Any,
        token_manager: Any,
        client: PlatformClient,
        settings: Settings,
        *,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.token_manager = token_manager
        self.client = client
        self.settings = settings
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    async def due_for_sync(self, now: datetime) -> list[str]:
        accounts = await self._due_accounts(now)
        return [account.id for account in accounts]

    async def run_scheduled_sync(self, now: datetime | None = None) -> list[str]:
        """Enqueues the first page for every due account; returns the new raw item ids."""
        now = now or self._now_fn()
        enqueued: list[str] = []
        for account in await self._due_accounts(now):
            if account.sync_cursor is not None:
                # the previous poll is still walking its pages
                continue
            with tracer.start_as_current_span("scheduler.sync_account") as span:
                span.set_attribute("account.id", account.id)
                span.set_attribute("account.platform", account.platform)
                raw_item_id = await self._sync_page(account, source="fetch", cursor=None, since=account.last_sync_at)
                if raw_item_id is not None:
                    await self.repository.mark_synced(account.id, at=now)
                    enqueued.append(raw_item_id)
        return enqueued

    async def run_continuations(self) -> list[str]:
        enqueued: list[str] = []
        accounts = await self.repository.accounts_with_cursor(limit=self.settings.scheduler_batch_size)
        for account in accounts:
            for source, cursor in (("fetch", account.sync_cursor), ("backfill", account.backfill_cursor)):
                if cursor is None or not await self.repository.take_sync_cursor(account.id, cursor, kind=source):
                    # another scheduler consumed it first
                    continue
                with tracer.start_as_current_span("scheduler.continue_account") as span:
                    span.set_attribute("account.id", account.id)
                    span.set_attribute("sync.source", source)
                    raw_item_id = await self._sync_page(account, source=source, cursor=cursor)
                    if raw_item_id is None:
                        await self.repository.set_sync_cursor(account.id, cursor=cursor, kind=source)
                    else:
                        enqueued.append(raw_item_id)
        return enqueued

    async def start_backfill(self, account_id: str) -> str | None:
        account = await self.repository.get_account(account_id)
        if account.status != "active":
            raise AuthExpired(f"account is {account.status}", account_id=account_id)
        logger.info("starting backfill for account %s", account_id)
        return await self._sync_page(account, source="backfill", cursor=None)

    async def _due_accounts(self, now: datetime) -> list[ConnectedAccount]:
        return await self.repository.due_accounts(
            now=now,
            interval_minutes={platform: self.settings.poll_interval_minutes(platform) for platform in PLATFORMS},
            limit=self.settings.scheduler_batch_size,
        )

    async def _sync_page(
        self,
        account: ConnectedAccount,
        *,
        source: str,
        cursor: str | None,
        since: datetime | None = None,
    ) -> str | None:
        """Fetches one page and stores it as a raw item; None when the fetch failed.

        `since` bounds a fresh scheduled poll to content newer than the previous
        one; continuation cursors already carry their bound.
        """
        started_at = self._now_fn()
        sync_log_id = await self.repository.start_sync_log(
            account_id=account.id,
            user_id=account.user_id,
            sync_type=SYNC_TYPE_BY_SOURCE.get(source, "manual"),
            started_at=started_at,
            metadata={"source": source, "cursor": cursor, "since": since.isoformat() if since else None},
        )

        handler = get_handler(account.platform)
        try:
            access_token = await self.token_manager.get_valid_access_token(account.id)
            page = await handler.fetch_page(self.client, self.settings, account, access_token, cursor, since)
        except AuthError as exc:
            if isinstance(exc, AuthExpired) and exc.account_id is None:
                await self.token_manager.mark_auth_failure(account.id, format_error(exc))
            await self._finish(sync_log_id, status="failed", error=format_error(exc))
            logger.warning("sync halted for account %s: %s", account.id, exc)
            return None
        except Exception as exc:
            await self._finish(sync_log_id, status="failed", error=format_error(exc))
            logger.exception("sync fetch failed for account %s; will retry next tick", account.id)
            return None

        raw_item_id = await self.repository.enqueue_raw_item(
            source=source,
            platform=account.platform,
            event_type=handler.page_event_type,
            payload=build_page_payload(page, cursor=cursor),
            account_id=account.id,
            user_id=account.user_id,
        )
        await self._finish(sync_log_id, status="success", posts_fetched=len(page.items))
        logger.info(
            "enqueued %s page for account %s items=%s has_more=%s",
            source,
            account.id,
            len(page.items),
            page.next_cursor is not None,
        )
        return raw_item_id

    async def _finish(
        self,
        sync_log_id: str,
        *,
        status: str,
        posts_fetched: int = 0,
        error: str | None = None,
    ) -> None:
        await self.repository.finish_sync_log(
            sync_log_id,
            status=status,
            completed_at=self._now_fn(),
            posts_fetched=posts_fetched,
            error_message=error,
        )
