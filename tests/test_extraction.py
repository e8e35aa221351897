from __future__ import annotations

import asyncio

from trove.jobs.extraction import run_extraction_batch
from trove.services.store import InMemoryRepository


def test_webhook_item_yields_one_extracted_post(repository: InMemoryRepository, add_account) -> None:
    account = add_account()

    async def run() -> str:
        raw_id = await repository.enqueue_raw_item(
            source="webhook",
            platform="strava",
            event_type="activity.create",
            payload={"object_id": 123, "owner_id": 9},
            account_id=account.id,
        )
        assert await run_extraction_batch(repository, batch_size=10) == 1
        return raw_id

    raw_id = asyncio.run(run())
    posts = list(repository.extracted_posts.values())
    assert len(posts) == 1
    assert posts[0].platform_post_id == "123"
    assert posts[0].raw_item_id == raw_id
    assert posts[0].account_id == account.id
    assert posts[0].user_id == account.user_id
    assert repository.raw_items[raw_id].status == "completed"


def test_page_item_records_continuation_cursor(repository: InMemoryRepository, add_account) -> None:
    account = add_account()

    async def run() -> None:
        await repository.enqueue_raw_item(
            source="backfill",
            platform="strava",
            event_type="activities.page",
            payload={"cursor": None, "next_cursor": "2", "items": [{"id": 1}, {"id": 2}]},
            account_id=account.id,
        )
        await run_extraction_batch(repository, batch_size=10)

    asyncio.run(run())
    assert len(repository.extracted_posts) == 2
    stored = repository.accounts[account.id]
    assert stored.backfill_cursor == "2"
    # scheduled polls keep their own slot
    assert stored.sync_cursor is None


def test_last_page_leaves_no_cursor(repository: InMemoryRepository, add_account) -> None:
    account = add_account()

    async def run() -> None:
        await repository.enqueue_raw_item(
            source="fetch",
            platform="strava",
            event_type="activities.page",
            payload={"cursor": "5", "next_cursor": None, "items": [{"id": 1}]},
            account_id=account.id,
        )
        await run_extraction_batch(repository, batch_size=10)

    asyncio.run(run())
    assert repository.accounts[account.id].sync_cursor is None


def test_malformed_payload_is_retried_then_dead_lettered(repository: InMemoryRepository) -> None:
    async def run() -> str:
        raw_id = await repository.enqueue_raw_item(
            source="webhook", platform="bluesky", event_type="commit.create", payload={"did": "did:plc:abc"}
        )
        for _ in range(4):
            await run_extraction_batch(repository, batch_size=10)
        return raw_id

    raw_id = asyncio.run(run())
    item = repository.raw_items[raw_id]
    assert item.status == "dead_letter"
    assert item.attempts == 3
    assert item.last_error.startswith("MalformedPayloadError")
    assert repository.extracted_posts == {}


def test_reprocessing_a_raw_item_does_not_duplicate_posts(repository: InMemoryRepository) -> None:
    async def run() -> None:
        raw_id = await repository.enqueue_raw_item(
            source="fetch",
            platform="strava",
            event_type="activities.page",
            payload={"cursor": None, "next_cursor": None, "items": [{"id": 1}]},
        )
        await run_extraction_batch(repository, batch_size=10)
        # simulate a crash after inserts but before completion was observed
        repository.raw_items[raw_id].status = "pending"
        await run_extraction_batch(repository, batch_size=10)

    asyncio.run(run())
    assert len(repository.extracted_posts) == 1
