from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx

from trove.domain.records import CanonicalFields
from trove.jobs.extraction import run_extraction_batch
from trove.jobs.normalization import build_search_text, run_normalization_batch
from trove.services.platform_client import PlatformClient
from trove.services.token_manager import AccountTokenManager

ACTIVITY = {
    "id": 123,
    "name": "Lunch Ride",
    "type": "Ride",
    "sport_type": "GravelRide",
    "start_date": "2026-02-28T12:00:00Z",
    "updated_at": "2026-02-28T14:00:00Z",
    "total_photo_count": 1,
    "photos": {"primary": {"urls": {"600": "https://cdn.example.com/ride-600.jpg"}, "sizes": {"600": [600, 400]}}},
}


def _pipeline(repository, cipher, settings, handler):
    async def run(steps):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = PlatformClient(client=http_client)
            tokens = AccountTokenManager(repository, cipher, client=client, settings=settings)
            for step in steps:
                if step == "extract":
                    await run_extraction_batch(repository, batch_size=10)
                else:
                    await run_normalization_batch(repository, tokens, client, settings, batch_size=10)

    return run


def test_build_search_text_joins_text_and_labels() -> None:
    fields = CanonicalFields(
        platform_post_id="1",
        content_kind="activity",
        text="Lunch   Ride\n\nwindy",
        native_created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        metadata={"sport_type": "GravelRide", "stats": {"distance": 1}},
    )
    assert build_search_text(fields) == "Lunch Ride windy GravelRide"


def test_strava_webhook_flows_to_canonical_post_and_media(repository, cipher, settings, add_account) -> None:
    account = add_account(platform="strava", platform_user_id="9", access_token="strava-access")
    requests: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        assert request.url.path == "/api/v3/activities/123"
        assert request.headers["Authorization"] == "Bearer strava-access"
        return httpx.Response(200, json=ACTIVITY, request=request)

    async def seed() -> None:
        await repository.enqueue_raw_item(
            source="webhook",
            platform="strava",
            event_type="activity.create",
            payload={"object_id": 123, "owner_id": 9},
            account_id=account.id,
        )

    asyncio.run(seed())
    asyncio.run(_pipeline(repository, cipher, settings, handler)(["extract", "normalize"]))

    assert [post.platform_post_id for post in repository.extracted_posts.values()] == ["123"]
    canonical = repository.canonical_posts[("strava", "123")]
    assert canonical.content_kind == "activity"
    assert canonical.user_id == account.user_id
    assert "GravelRide" in canonical.search_text
    downloads = list(repository.media_downloads.values())
    assert len(downloads) == 1
    assert downloads[0].status == "pending"
    assert downloads[0].original_url == "https://cdn.example.com/ride-600.jpg"
    assert (downloads[0].width, downloads[0].height, downloads[0].aspect_ratio) == (600, 400, 1.5)
    assert downloads[0].extracted_post_id == next(iter(repository.extracted_posts))
    assert len(requests) == 1
    assert all(post.status == "completed" for post in repository.extracted_posts.values())


def test_redelivered_post_is_idempotent(repository, cipher, settings, add_account) -> None:
    account = add_account()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=ACTIVITY, request=request)

    async def seed() -> None:
        for source in ("fetch", "backfill"):
            await repository.enqueue_raw_item(
                source=source,
                platform="strava",
                event_type="activities.page",
                payload={"cursor": None, "next_cursor": None, "items": [ACTIVITY]},
                account_id=account.id,
            )

    asyncio.run(seed())
    asyncio.run(_pipeline(repository, cipher, settings, handler)(["extract", "normalize"]))

    assert len(repository.extracted_posts) == 2
    assert len(repository.canonical_posts) == 1
    assert len(repository.media_downloads) == 1


def test_out_of_order_versions_keep_the_newest(repository, cipher, settings, add_account) -> None:
    account = add_account()
    newer = {**ACTIVITY, "name": "Renamed Ride", "updated_at": "2026-02-28T16:00:00Z"}

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, request=request)

    async def seed(version) -> None:
        await repository.enqueue_raw_item(
            source="fetch",
            platform="strava",
            event_type="activities.page",
            payload={"cursor": None, "next_cursor": None, "items": [version]},
            account_id=account.id,
        )

    pipeline = _pipeline(repository, cipher, settings, handler)
    asyncio.run(seed(newer))
    asyncio.run(pipeline(["extract", "normalize"]))
    asyncio.run(seed(ACTIVITY))
    asyncio.run(pipeline(["extract", "normalize"]))

    canonical = repository.canonical_posts[("strava", "123")]
    assert canonical.text == "Renamed Ride"
    assert canonical.native_updated_at == datetime(2026, 2, 28, 16, 0, tzinfo=timezone.utc)


def test_deletion_event_marks_post_deleted_upstream(repository, cipher, settings, add_account) -> None:
    account = add_account()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=ACTIVITY, request=request)

    async def seed(payload, event_type) -> None:
        await repository.enqueue_raw_item(
            source="webhook", platform="strava", event_type=event_type, payload=payload, account_id=account.id
        )

    pipeline = _pipeline(repository, cipher, settings, handler)
    asyncio.run(seed({"object_type": "activity", "object_id": 123, "aspect_type": "create"}, "activity.create"))
    asyncio.run(pipeline(["extract", "normalize"]))
    asyncio.run(seed({"object_type": "activity", "object_id": 123, "aspect_type": "delete"}, "activity.delete"))
    asyncio.run(pipeline(["extract", "normalize"]))

    assert repository.canonical_posts[("strava", "123")].deleted_upstream is True
    assert all(post.status == "completed" for post in repository.extracted_posts.values())


def test_upstream_410_completes_post_as_deleted(repository, cipher, settings, add_account) -> None:
    account = add_account()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(410, request=request)

    async def seed() -> None:
        await repository.upsert_canonical_post(
            account_id=account.id,
            user_id=account.user_id,
            platform="strava",
            fields=CanonicalFields(
                platform_post_id="123",
                content_kind="activity",
                text="Lunch Ride",
                native_created_at=datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc),
            ),
            search_text="Lunch Ride",
        )
        await repository.enqueue_raw_item(
            source="webhook",
            platform="strava",
            event_type="activity.update",
            payload={"object_id": 123, "aspect_type": "update"},
            account_id=account.id,
        )

    asyncio.run(seed())
    asyncio.run(_pipeline(repository, cipher, settings, handler)(["extract", "normalize"]))

    post = next(iter(repository.extracted_posts.values()))
    assert post.status == "completed"
    assert post.attempts == 0
    assert repository.canonical_posts[("strava", "123")].deleted_upstream is True


def test_upstream_401_releases_post_and_expires_account(repository, cipher, settings, add_account) -> None:
    account = add_account()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Authorization Error"}, request=request)

    async def seed() -> None:
        await repository.enqueue_raw_item(
            source="webhook",
            platform="strava",
            event_type="activity.create",
            payload={"object_id": 123},
            account_id=account.id,
        )

    asyncio.run(seed())
    asyncio.run(_pipeline(repository, cipher, settings, handler)(["extract", "normalize", "normalize"]))

    post = next(iter(repository.extracted_posts.values()))
    assert post.status == "pending"
    assert post.attempts == 0
    assert repository.accounts[account.id].status == "token_expired"
    assert repository.canonical_posts == {}


def test_transient_upstream_failure_consumes_attempts(repository, cipher, settings, add_account) -> None:
    account = add_account(expires_in=timedelta(days=1))

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, request=request)

    async def seed() -> None:
        await repository.enqueue_raw_item(
            source="webhook",
            platform="strava",
            event_type="activity.create",
            payload={"object_id": 123},
            account_id=account.id,
        )

    asyncio.run(seed())
    asyncio.run(_pipeline(repository, cipher, settings, handler)(["extract", "normalize", "normalize", "normalize"]))

    post = next(iter(repository.extracted_posts.values()))
    assert post.status == "dead_letter"
    assert post.attempts == 3
    assert post.last_error.startswith("TransientError")


def test_late_update_webhook_wins_over_earlier_observation(repository, cipher, settings, add_account) -> None:
    account = add_account()
    summary = {key: value for key, value in ACTIVITY.items() if key != "updated_at"}
    served = iter([{**summary, "name": "First Title"}, {**summary, "name": "Edited Title"}])

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=next(served), request=request)

    async def seed(aspect_type: str, event_time: int) -> None:
        await repository.enqueue_raw_item(
            source="webhook",
            platform="strava",
            event_type=f"activity.{aspect_type}",
            payload={"object_id": 123, "aspect_type": aspect_type, "event_time": event_time},
            account_id=account.id,
        )

    pipeline = _pipeline(repository, cipher, settings, handler)
    asyncio.run(seed("create", 1772370000))
    asyncio.run(pipeline(["extract", "normalize"]))
    # the update carries an older event time than the create it follows
    asyncio.run(seed("update", 1772360000))
    asyncio.run(pipeline(["extract", "normalize"]))

    canonical = repository.canonical_posts[("strava", "123")]
    assert canonical.text == "Edited Title"
    assert canonical.native_updated_at > datetime.fromtimestamp(1772370000, tz=timezone.utc)


def test_unreadable_credentials_park_the_account(repository, cipher, settings, add_account) -> None:
    account = add_account()
    repository.accounts[account.id].access_token_enc = "not-a-fernet-token"
    requests: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=ACTIVITY, request=request)

    async def seed() -> None:
        await repository.enqueue_raw_item(
            source="webhook",
            platform="strava",
            event_type="activity.create",
            payload={"object_id": 123},
            account_id=account.id,
        )

    asyncio.run(seed())
    asyncio.run(_pipeline(repository, cipher, settings, handler)(["extract", "normalize", "normalize", "normalize"]))

    stored = repository.accounts[account.id]
    assert stored.status == "error"
    assert stored.error_message.startswith("CredentialDecryptError")
    post = next(iter(repository.extracted_posts.values()))
    # parked with its account instead of burning attempts into the dead letter queue
    assert post.status == "pending"
    assert post.attempts == 0
    assert requests == []
