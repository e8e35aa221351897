from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx

from trove.jobs.extraction import run_extraction_batch
from trove.jobs.sync_scheduler import SyncScheduler
from trove.platforms import strava
from trove.services.platform_client import PlatformClient
from trove.services.token_manager import AccountTokenManager

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _with_scheduler(repository, cipher, settings, handler, call):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = PlatformClient(client=http_client)
            manager = AccountTokenManager(repository, cipher, client=client, settings=settings, now_fn=lambda: NOW)
            scheduler = SyncScheduler(repository, manager, client, settings, now_fn=lambda: NOW)
            return await call(scheduler)

    return asyncio.run(run())


def _full_page(request: httpx.Request) -> httpx.Response:
    page = int(request.url.params.get("page", "1"))
    size = strava.PAGE_SIZE if page == 1 else 3
    return httpx.Response(200, json=[{"id": page * 1000 + index} for index in range(size)], request=request)


def test_due_for_sync_uses_platform_intervals(repository, cipher, settings, add_account) -> None:
    never = add_account(platform="strava", platform_user_id="1")
    stale = add_account(platform="strava", platform_user_id="2", last_sync_at=NOW - timedelta(minutes=61))
    recent = add_account(platform="strava", platform_user_id="3", last_sync_at=NOW - timedelta(minutes=10))
    instagram_recent = add_account(platform="instagram", platform_user_id="4", last_sync_at=NOW - timedelta(hours=2))
    disabled = add_account(platform="bluesky", platform_user_id="5")
    repository.accounts[disabled.id].sync_enabled = False
    expired = add_account(platform="bluesky", platform_user_id="6", status="token_expired")

    due = _with_scheduler(repository, cipher, settings, _full_page, lambda scheduler: scheduler.due_for_sync(NOW))

    assert set(due) == {never.id, stale.id}
    assert recent.id not in due
    assert instagram_recent.id not in due
    assert expired.id not in due


def test_scheduled_sync_enqueues_first_page_and_logs(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="strava", access_token="strava-access")

    enqueued = _with_scheduler(repository, cipher, settings, _full_page, lambda scheduler: scheduler.run_scheduled_sync(NOW))

    assert len(enqueued) == 1
    item = repository.raw_items[enqueued[0]]
    assert item.source == "fetch"
    assert item.event_type == "activities.page"
    assert item.account_id == account.id
    assert item.payload["cursor"] is None
    assert item.payload["next_cursor"] == "2"
    assert len(item.payload["items"]) == strava.PAGE_SIZE
    assert repository.accounts[account.id].last_sync_at == NOW

    log = next(iter(repository.sync_logs.values()))
    assert log.sync_type == "scheduled"
    assert log.status == "success"
    assert log.posts_fetched == strava.PAGE_SIZE
    assert log.duration_ms == 0


def test_continuation_pages_follow_recorded_cursor(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="strava")

    async def call(scheduler):
        await scheduler.run_scheduled_sync(NOW)
        await run_extraction_batch(repository, batch_size=10)
        first_continuation = await scheduler.run_continuations()
        await run_extraction_batch(repository, batch_size=10)
        second_continuation = await scheduler.run_continuations()
        return first_continuation, second_continuation

    first, second = _with_scheduler(repository, cipher, settings, _full_page, call)

    assert len(first) == 1
    page_two = repository.raw_items[first[0]]
    assert page_two.source == "fetch"
    assert page_two.payload["cursor"] == "2"
    assert page_two.payload["next_cursor"] is None
    assert second == []
    assert repository.accounts[account.id].sync_cursor is None
    assert len(repository.extracted_posts) == strava.PAGE_SIZE + 3


def test_backfill_uses_backfill_source_for_every_page(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="strava")

    async def call(scheduler):
        first = await scheduler.start_backfill(account.id)
        await run_extraction_batch(repository, batch_size=10)
        continued = await scheduler.run_continuations()
        return first, continued

    first, continued = _with_scheduler(repository, cipher, settings, _full_page, call)

    assert repository.raw_items[first].source == "backfill"
    assert repository.raw_items[continued[0]].source == "backfill"
    assert {log.sync_type for log in repository.sync_logs.values()} == {"backfill"}
    assert repository.accounts[account.id].last_sync_at is None


def test_transient_fetch_failure_leaves_account_due(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="strava")

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, request=request)

    async def call(scheduler):
        enqueued = await scheduler.run_scheduled_sync(NOW)
        return enqueued, await scheduler.due_for_sync(NOW)

    enqueued, due = _with_scheduler(repository, cipher, settings, handler, call)

    assert enqueued == []
    assert due == [account.id]
    log = next(iter(repository.sync_logs.values()))
    assert log.status == "failed"
    assert log.error_message.startswith("TransientError")


def test_rejected_credentials_stop_sync(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="strava")

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, request=request)

    async def call(scheduler):
        await scheduler.run_scheduled_sync(NOW)
        return await scheduler.due_for_sync(NOW)

    due = _with_scheduler(repository, cipher, settings, handler, call)

    assert due == []
    assert repository.accounts[account.id].status == "token_expired"
    assert repository.raw_items == {}


def test_failed_continuation_restores_cursor(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="strava")
    repository.accounts[account.id].sync_cursor = "7"

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, request=request)

    enqueued = _with_scheduler(repository, cipher, settings, handler, lambda scheduler: scheduler.run_continuations())

    assert enqueued == []
    assert repository.accounts[account.id].sync_cursor == "7"
    assert repository.accounts[account.id].backfill_cursor is None


def test_scheduled_poll_keeps_backfill_cursor(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="strava")

    async def call(scheduler):
        await scheduler.start_backfill(account.id)
        await run_extraction_batch(repository, batch_size=10)
        await scheduler.run_scheduled_sync(NOW)
        await run_extraction_batch(repository, batch_size=10)
        stored = await repository.get_account(account.id)
        cursors = (stored.sync_cursor, stored.backfill_cursor)
        return cursors, await scheduler.run_continuations()

    cursors, continued = _with_scheduler(repository, cipher, settings, _full_page, call)

    assert cursors == ("2", "2")
    assert sorted(repository.raw_items[item_id].source for item_id in continued) == ["backfill", "fetch"]
    stored = repository.accounts[account.id]
    assert stored.sync_cursor is None
    assert stored.backfill_cursor is None


def test_scheduled_poll_is_bounded_by_previous_sync(repository, cipher, settings, add_account) -> None:
    last_sync = NOW - timedelta(hours=2)
    add_account(platform="strava", last_sync_at=last_sync)
    seen: list[httpx.QueryParams] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params)
        return _full_page(request)

    async def call(scheduler):
        first = await scheduler.run_scheduled_sync(NOW)
        await run_extraction_batch(repository, batch_size=10)
        return first, await scheduler.run_continuations()

    first, continued = _with_scheduler(repository, cipher, settings, handler, call)

    epoch = str(int(last_sync.timestamp()))
    assert [params.get("after") for params in seen] == [epoch, epoch]
    assert [params.get("page") for params in seen] == ["1", "2"]
    assert repository.raw_items[first[0]].payload["next_cursor"] == f"since:{epoch}|2"
    assert len(continued) == 1


def test_unfinished_poll_defers_the_next_one(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="strava", last_sync_at=NOW - timedelta(hours=2))
    repository.accounts[account.id].sync_cursor = "since:1772360000|4"

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected request to {request.url}")

    enqueued = _with_scheduler(repository, cipher, settings, handler, lambda scheduler: scheduler.run_scheduled_sync(NOW))

    assert enqueued == []
    assert repository.accounts[account.id].last_sync_at == NOW - timedelta(hours=2)
    assert repository.raw_items == {}
