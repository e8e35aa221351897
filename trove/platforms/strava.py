"""Strava activities.

Webhook events only carry ids (`object_id`, `owner_id`, `aspect_type`); the
activity itself is fetched during normalization. Polled pages carry activity
summaries, which lack the description and photo URLs, so they are hydrated too.

The API exposes no modification time for an activity, so a version is dated by
when it was observed: `fetch_page` and `hydrate` stamp `fetched_at` on what they
return. Webhook `event_time` only identifies a delivery.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from trove.core.config import Settings
from trove.core.errors import MalformedPayloadError, RefreshRejected, TransientError
from trove.domain.lifecycle import parse_timestamp
from trove.domain.records import CanonicalFields, ConnectedAccount, MediaRef
from trove.platforms.base import (
    Extraction,
    FetchedPage,
    NativePost,
    PlatformHandler,
    TokenGrant,
    WebhookEnvelope,
    as_dict,
    as_dimension,
    as_int,
    bound_cursor,
    is_page_event,
    page_items,
    require_text,
    split_cursor,
    token_body,
)
from trove.services.platform_client import PlatformClient

API_BASE_URL = "https://www.strava.com/api/v3"
TOKEN_URL = "https://www.strava.com/oauth/token"
PAGE_SIZE = 50
SUMMARY_RESOURCE_STATE = 2
STATS_KEYS = ("distance", "moving_time", "elapsed_time", "total_elevation_gain", "average_speed", "max_speed")


def parse_webhook(payload: dict[str, Any]) -> WebhookEnvelope:
    object_type = require_text(payload.get("object_type"), field_name="object_type")
    aspect_type = require_text(payload.get("aspect_type"), field_name="aspect_type")
    object_id = require_text(payload.get("object_id"), field_name="object_id")
    owner_id = payload.get("owner_id")
    return WebhookEnvelope(
        event_type=f"{object_type}.{aspect_type}",
        owner_id=str(owner_id) if owner_id is not None else None,
        # strava redelivers the same event until it receives a 200
        external_id=f"{object_type}:{object_id}:{aspect_type}:{payload.get('event_time')}",
    )


def extract(event_type: str, payload: dict[str, Any]) -> Extraction:
    if is_page_event(event_type):
        items, next_cursor = page_items(payload)
        posts = [NativePost(platform_post_id=require_text(item.get("id"), field_name="activity id"), payload=item) for item in items]
        return Extraction(posts=posts, next_cursor=next_cursor)

    object_type = payload.get("object_type") or event_type.partition(".")[0]
    if object_type != "activity":
        # athlete updates (including deauthorization) carry no post
        return Extraction()

    object_id = require_text(payload.get("object_id"), field_name="object_id")
    aspect_type = payload.get("aspect_type") or event_type.partition(".")[2] or "create"
    stub = {
        "id": object_id,
        "owner_id": payload.get("owner_id"),
        "aspect_type": aspect_type,
        "event_time": payload.get("event_time"),
        "updates": as_dict(payload.get("updates")),
        "stub": True,
    }
    return Extraction(posts=[NativePost(platform_post_id=object_id, payload=stub)])


def needs_hydration(native: dict[str, Any]) -> bool:
    if is_deletion(native):
        return False
    # summaries (resource_state 2) carry no description
    if native.get("stub") or as_int(native.get("resource_state")) == SUMMARY_RESOURCE_STATE:
        return True
    photo_count = as_int(native.get("total_photo_count")) or 0
    return photo_count > 0 and not _primary_photo_urls(native)


async def hydrate(
    client: PlatformClient,
    settings: Settings,
    account: ConnectedAccount,
    access_token: str,
    native: dict[str, Any],
) -> dict[str, Any]:
    activity_id = require_text(native.get("id"), field_name="activity id")
    detail = await client.get_json(
        f"{API_BASE_URL}/activities/{activity_id}",
        headers={"Authorization": f"Bearer {access_token}"},
    )
    if not isinstance(detail, dict):
        raise MalformedPayloadError("activity detail is not an object")
    hydrated = dict(detail)
    hydrated["fetched_at"] = _observed_now()
    return hydrated


def is_deletion(native: dict[str, Any]) -> bool:
    return native.get("aspect_type") == "delete"


def map_post(native: dict[str, Any]) -> CanonicalFields:
    activity_id = require_text(native.get("id"), field_name="activity id")
    created_at = parse_timestamp(native.get("start_date"))
    if created_at is None:
        raise MalformedPayloadError(f"activity {activity_id} has no start_date")

    updated_at = parse_timestamp(native.get("updated_at")) or parse_timestamp(native.get("fetched_at"))
    name = (native.get("name") or "").strip()
    description = (native.get("description") or "").strip()
    text = "\n\n".join(part for part in (name, description) if part) or None
    private = bool(native.get("private")) or native.get("visibility") == "only_me"

    return CanonicalFields(
        platform_post_id=activity_id,
        content_kind="activity",
        text=text,
        native_created_at=created_at,
        native_updated_at=updated_at,
        published=not private,
        engagement_stats={
            "kudos": as_int(native.get("kudos_count")) or 0,
            "comments": as_int(native.get("comment_count")) or 0,
            "achievements": as_int(native.get("achievement_count")) or 0,
        },
        metadata={
            "activity_type": native.get("type"),
            "sport_type": native.get("sport_type"),
            "stats": {key: native[key] for key in STATS_KEYS if native.get(key) is not None},
        },
    )


def media_refs(native: dict[str, Any]) -> list[MediaRef]:
    primary = as_dict(as_dict(native.get("photos")).get("primary"))
    urls = _primary_photo_urls(native)
    if not urls:
        return []
    width, height = _primary_photo_size(primary)
    return [MediaRef(url=urls[0], media_type="image", position=0, width=width, height=height)]


async def fetch_page(
    client: PlatformClient,
    settings: Settings,
    account: ConnectedAccount,
    access_token: str,
    cursor: str | None,
    since: datetime | None = None,
) -> FetchedPage:
    page_cursor, bound = split_cursor(cursor)
    since = bound or since
    page = as_int(page_cursor) or 1
    params: dict[str, Any] = {"page": page, "per_page": PAGE_SIZE}
    if since is not None:
        # only activities started after the previous poll
        params["after"] = int(since.timestamp())
    payload = await client.get_json(
        f"{API_BASE_URL}/athlete/activities",
        params=params,
        headers={"Authorization": f"Bearer {access_token}"},
    )
    if not isinstance(payload, list):
        raise MalformedPayloadError("activity list is not an array")
    observed = _observed_now()
    items = [{**item, "fetched_at": observed} for item in payload if isinstance(item, dict)]
    next_cursor = bound_cursor(str(page + 1), since) if len(items) >= PAGE_SIZE else None
    return FetchedPage(items=items, next_cursor=next_cursor)


async def refresh(client: PlatformClient, settings: Settings, refresh_token: str) -> TokenGrant:
    response = await client.post_form(
        TOKEN_URL,
        data={
            "client_id": settings.strava_client_id,
            "client_secret": settings.strava_client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        },
    )
    if response.status_code in {400, 401}:
        raise RefreshRejected(f"strava refused refresh: HTTP {response.status_code}")
    if response.status_code >= 300:
        raise TransientError(f"strava token endpoint error: HTTP {response.status_code}")

    body = token_body(response)
    expires_at: datetime | None = None
    if as_int(body.get("expires_at")) is not None:
        expires_at = datetime.fromtimestamp(int(body["expires_at"]), tz=timezone.utc)
    elif as_int(body.get("expires_in")) is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(body["expires_in"]))
    return TokenGrant(
        access_token=require_text(body.get("access_token"), field_name="access_token"),
        refresh_token=body.get("refresh_token") or refresh_token,
        expires_at=expires_at,
    )


def _primary_photo_size(primary: dict[str, Any]) -> tuple[int | None, int | None]:
    # `sizes` maps the requested edge length to the rendition's [width, height]
    sizes = as_dict(primary.get("sizes"))
    if not sizes:
        return None, None
    largest = sizes[max(sizes, key=lambda size: as_int(size) or 0)]
    if isinstance(largest, list) and len(largest) == 2:
        return as_dimension(largest[0]), as_dimension(largest[1])
    return None, None


def _observed_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _primary_photo_urls(native: dict[str, Any]) -> list[str]:
    urls = as_dict(as_dict(native.get("photos")).get("primary")).get("urls")
    if not isinstance(urls, dict) or not urls:
        return []
    # keys are pixel sizes; keep the largest rendition
    largest = max(urls, key=lambda size: as_int(size) or 0)
    url = urls[largest]
    return [url] if isinstance(url, str) and url else []


HANDLER = PlatformHandler(
    platform="strava",
    page_event_type="activities.page",
    extract=extract,
    map_post=map_post,
    media_refs=media_refs,
    fetch_page=fetch_page,
    parse_webhook=parse_webhook,
    needs_hydration=needs_hydration,
    hydrate=hydrate,
    is_deletion=is_deletion,
    refresh=refresh,
)
