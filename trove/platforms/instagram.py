"""Instagram Graph media.

Instagram uses fixed-duration long-lived tokens, so the handler has no refresh
capability; the token manager reports days-to-expiry instead.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from trove.core.config import Settings
from trove.core.errors import MalformedPayloadError
from trove.domain.lifecycle import parse_timestamp
from trove.domain.records import CanonicalFields, ConnectedAccount, MediaRef
from trove.platforms.base import (
    Extraction,
    FetchedPage,
    NativePost,
    PlatformHandler,
    WebhookEnvelope,
    as_dict,
    as_int,
    bound_cursor,
    is_page_event,
    page_items,
    reached_bound,
    require_text,
    split_cursor,
)
from trove.services.platform_client import PlatformClient

GRAPH_BASE_URL = "https://graph.instagram.com"
MEDIA_FIELDS = (
    "id,caption,alt_text,media_type,media_product_type,media_url,thumbnail_url,permalink,timestamp,"
    "like_count,comments_count,children{id,alt_text,media_type,media_url,thumbnail_url}"
)
PAGE_SIZE = 50
CONTENT_KIND_BY_PRODUCT = {"REELS": "reel", "STORY": "story"}


def parse_webhook(payload: dict[str, Any]) -> WebhookEnvelope:
    entries = payload.get("entry")
    if not isinstance(entries, list) or not entries:
        raise MalformedPayloadError("instagram webhook has no entry list")
    first = as_dict(entries[0])
    owner_id = first.get("id")
    changes = first.get("changes")
    field = as_dict(changes[0]).get("field") if isinstance(changes, list) and changes else None
    # batched deliveries carry no stable id; downstream dedup happens on the post id
    return WebhookEnvelope(event_type=f"{field or 'media'}.changed", owner_id=str(owner_id) if owner_id is not None else None)


def extract(event_type: str, payload: dict[str, Any]) -> Extraction:
    if is_page_event(event_type):
        items, next_cursor = page_items(payload)
        posts = [NativePost(platform_post_id=require_text(item.get("id"), field_name="media id"), payload=item) for item in items]
        return Extraction(posts=posts, next_cursor=next_cursor)

    entries = payload.get("entry")
    if not isinstance(entries, list):
        raise MalformedPayloadError("instagram webhook has no entry list")

    posts: list[NativePost] = []
    for entry in entries:
        for change in as_dict(entry).get("changes") or []:
            value = as_dict(as_dict(change).get("value"))
            media_id = value.get("media_id") or value.get("id")
            if media_id is None:
                continue
            media_id = require_text(media_id, field_name="media_id")
            posts.append(
                NativePost(
                    platform_post_id=media_id,
                    payload={"id": media_id, "field": as_dict(change).get("field"), "stub": True},
                )
            )
    return Extraction(posts=posts)


def needs_hydration(native: dict[str, Any]) -> bool:
    return bool(native.get("stub"))


async def hydrate(
    client: PlatformClient,
    settings: Settings,
    account: ConnectedAccount,
    access_token: str,
    native: dict[str, Any],
) -> dict[str, Any]:
    media_id = require_text(native.get("id"), field_name="media id")
    detail = await client.get_json(
        f"{GRAPH_BASE_URL}/{media_id}",
        params={"fields": MEDIA_FIELDS, "access_token": access_token},
    )
    if not isinstance(detail, dict):
        raise MalformedPayloadError("media detail is not an object")
    return detail


def map_post(native: dict[str, Any]) -> CanonicalFields:
    media_id = require_text(native.get("id"), field_name="media id")
    created_at = parse_timestamp(native.get("timestamp"))
    if created_at is None:
        raise MalformedPayloadError(f"media {media_id} has no timestamp")

    return CanonicalFields(
        platform_post_id=media_id,
        content_kind=CONTENT_KIND_BY_PRODUCT.get(str(native.get("media_product_type") or "").upper(), "post"),
        text=native.get("caption") or None,
        native_created_at=created_at,
        native_updated_at=created_at,
        engagement_stats={
            "likes": as_int(native.get("like_count")) or 0,
            "comments": as_int(native.get("comments_count")) or 0,
        },
        metadata={
            "permalink": native.get("permalink"),
            "product_type": native.get("media_product_type"),
            "is_carousel": native.get("media_type") == "CAROUSEL_ALBUM",
        },
    )


def media_refs(native: dict[str, Any]) -> list[MediaRef]:
    children = as_dict(native.get("children")).get("data")
    sources = [as_dict(child) for child in children] if isinstance(children, list) and children else [native]
    refs: list[MediaRef] = []
    seen: set[str] = set()
    for source in sources:
        url = source.get("media_url")
        if not isinstance(url, str) or not url or url in seen:
            continue
        seen.add(url)
        refs.append(
            MediaRef(
                url=url,
                media_type="video" if source.get("media_type") == "VIDEO" else "image",
                position=len(refs),
                alt_text=source.get("alt_text") or native.get("alt_text") or None,
            )
        )
    return refs


async def fetch_page(
    client: PlatformClient,
    settings: Settings,
    account: ConnectedAccount,
    access_token: str,
    cursor: str | None,
    since: datetime | None = None,
) -> FetchedPage:
    after, bound = split_cursor(cursor)
    since = bound or since
    params: dict[str, Any] = {"fields": MEDIA_FIELDS, "limit": PAGE_SIZE, "access_token": access_token}
    if after:
        params["after"] = after
    payload = await client.get_json(f"{GRAPH_BASE_URL}/me/media", params=params)
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise MalformedPayloadError("media list response has no data array")

    items = [item for item in payload["data"] if isinstance(item, dict)]
    paging = as_dict(payload.get("paging"))
    next_cursor = as_dict(paging.get("cursors")).get("after") if paging.get("next") else None
    if reached_bound([parse_timestamp(item.get("timestamp")) for item in items], since):
        next_cursor = None
    return FetchedPage(items=items, next_cursor=bound_cursor(next_cursor or None, since))


HANDLER = PlatformHandler(
    platform="instagram",
    page_event_type="media.page",
    extract=extract,
    map_post=map_post,
    media_refs=media_refs,
    fetch_page=fetch_page,
    parse_webhook=parse_webhook,
    needs_hydration=needs_hydration,
    hydrate=hydrate,
)
