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
    reached_bound,
    require_text,
    split_cursor,
    token_body,
)
from trove.services.platform_client import PlatformClient

POST_COLLECTION = "app.bsky.feed.post"
CDN_BASE_URL = "https://cdn.bsky.app/img/feed_fullsize/plain"
PAGE_SIZE = 50
ACCESS_TOKEN_LIFETIME = timedelta(hours=2)
REJECTED_REFRESH_ERRORS = {"invalid_grant", "ExpiredToken", "InvalidToken", "AccountTakedown"}


def parse_webhook(payload: dict[str, Any]) -> WebhookEnvelope:
    did = require_text(payload.get("did"), field_name="did")
    commit = as_dict(payload.get("commit"))
    operation = commit.get("operation") or "create"
    external_id = None
    if commit.get("rev") and commit.get("rkey"):
        external_id = f"{did}:{commit.get('collection')}:{commit['rkey']}:{commit['rev']}"
    return WebhookEnvelope(event_type=f"commit.{operation}", owner_id=did, external_id=external_id)


def extract(event_type: str, payload: dict[str, Any]) -> Extraction:
    if is_page_event(event_type):
        items, next_cursor = page_items(payload)
        posts = [_from_feed_item(item) for item in items]
        return Extraction(posts=[post for post in posts if post is not None], next_cursor=next_cursor)

    commit = as_dict(payload.get("commit"))
    if not commit:
        raise MalformedPayloadError("bluesky event has no commit")
    if commit.get("collection") != POST_COLLECTION:
        return Extraction()

    did = require_text(payload.get("did"), field_name="did")
    rkey = require_text(commit.get("rkey"), field_name="rkey")
    uri = f"at://{did}/{POST_COLLECTION}/{rkey}"
    record = as_dict(commit.get("record"))
    indexed_at = None
    time_us = as_int(payload.get("time_us"))
    if time_us is not None:
        indexed_at = datetime.fromtimestamp(time_us / 1_000_000, tz=timezone.utc).isoformat()

    native = {
        "uri": uri,
        "cid": commit.get("cid"),
        "author_did": did,
        "author_handle": payload.get("handle"),
        "record": record,
        "embed": None,
        "counts": {},
        "indexed_at": indexed_at,
        "operation": commit.get("operation") or "create",
        "reason": None,
    }
    return Extraction(posts=[NativePost(platform_post_id=uri, payload=native)])


def is_deletion(native: dict[str, Any]) -> bool:
    return native.get("operation") == "delete"


def map_post(native: dict[str, Any]) -> CanonicalFields:
    uri = require_text(native.get("uri"), field_name="uri")
    record = as_dict(native.get("record"))
    created_at = parse_timestamp(record.get("createdAt")) or parse_timestamp(native.get("indexed_at"))
    if created_at is None:
        raise MalformedPayloadError(f"post {uri} has no createdAt")

    if native.get("reason") == "repost":
        content_kind = "repost"
    elif record.get("reply"):
        content_kind = "reply"
    else:
        content_kind = "post"

    reply = as_dict(record.get("reply"))
    counts = as_dict(native.get("counts"))
    return CanonicalFields(
        platform_post_id=uri,
        content_kind=content_kind,
        text=record.get("text") or None,
        native_created_at=created_at,
        native_updated_at=parse_timestamp(native.get("indexed_at")) or created_at,
        engagement_stats={key: as_int(value) or 0 for key, value in counts.items()},
        metadata={
            "author_did": native.get("author_did"),
            "author_handle": native.get("author_handle"),
            "uri": uri,
            "reply_parent": as_dict(reply.get("parent")).get("uri"),
            "reply_root": as_dict(reply.get("root")).get("uri"),
        },
    )


def media_refs(native: dict[str, Any]) -> list[MediaRef]:
    embed = as_dict(native.get("embed"))
    refs: list[MediaRef] = []
    # hydrated view embeds carry CDN URLs
    for position, image in enumerate(_images(embed)):
        fullsize = image.get("fullsize")
        if isinstance(fullsize, str) and fullsize:
            refs.append(_image_ref(fullsize, position, image))
    if refs:
        return refs

    # raw records only carry blob refs
    did = native.get("author_did")
    record_embed = as_dict(as_dict(native.get("record")).get("embed"))
    for position, image in enumerate(_images(record_embed)):
        link = as_dict(as_dict(image.get("image")).get("ref")).get("$link")
        if isinstance(did, str) and isinstance(link, str) and link:
            refs.append(_image_ref(f"{CDN_BASE_URL}/{did}/{link}@jpeg", position, image))
    return refs


async def fetch_page(
    client: PlatformClient,
    settings: Settings,
    account: ConnectedAccount,
    access_token: str,
    cursor: str | None,
    since: datetime | None = None,
) -> FetchedPage:
    feed_cursor, bound = split_cursor(cursor)
    since = bound or since
    params: dict[str, Any] = {"actor": account.platform_user_id, "limit": PAGE_SIZE}
    if feed_cursor:
        params["cursor"] = feed_cursor
    payload = await client.get_json(
        f"{settings.bluesky_pds_url.rstrip('/')}/xrpc/app.bsky.feed.getAuthorFeed",
        params=params,
        headers={"Authorization": f"Bearer {access_token}"},
    )
    if not isinstance(payload, dict) or not isinstance(payload.get("feed"), list):
        raise MalformedPayloadError("author feed response has no feed array")
    items = [item for item in payload["feed"] if isinstance(item, dict)]
    next_cursor = payload.get("cursor") if items else None
    if reached_bound([_feed_time(item) for item in items], since):
        next_cursor = None
    return FetchedPage(items=items, next_cursor=bound_cursor(next_cursor or None, since))


async def refresh(client: PlatformClient, settings: Settings, refresh_token: str) -> TokenGrant:
    response = await client.post_form(
        f"{settings.bluesky_pds_url.rstrip('/')}/xrpc/com.atproto.server.refreshSession",
        headers={"Authorization": f"Bearer {refresh_token}"},
    )
    if 400 <= response.status_code < 500:
        error = as_dict(_safe_json(response)).get("error")
        if response.status_code == 401 or error in REJECTED_REFRESH_ERRORS:
            raise RefreshRejected(f"bluesky refused refresh: {error or response.status_code}")
    if response.status_code >= 300:
        raise TransientError(f"bluesky refreshSession error: HTTP {response.status_code}")

    body = token_body(response)
    return TokenGrant(
        access_token=require_text(body.get("accessJwt"), field_name="accessJwt"),
        refresh_token=body.get("refreshJwt") or refresh_token,
        expires_at=datetime.now(timezone.utc) + ACCESS_TOKEN_LIFETIME,
    )


def _from_feed_item(item: dict[str, Any]) -> NativePost | None:
    post = as_dict(item.get("post"))
    if not post:
        return None
    uri = require_text(post.get("uri"), field_name="uri")
    author = as_dict(post.get("author"))
    reason_type = as_dict(item.get("reason")).get("$type", "")
    native = {
        "uri": uri,
        "cid": post.get("cid"),
        "author_did": author.get("did"),
        "author_handle": author.get("handle"),
        "record": as_dict(post.get("record")),
        "embed": as_dict(post.get("embed")) or None,
        "counts": {
            "likes": post.get("likeCount"),
            "reposts": post.get("repostCount"),
            "replies": post.get("replyCount"),
            "quotes": post.get("quoteCount"),
        },
        "indexed_at": post.get("indexedAt"),
        "operation": "create",
        "reason": "repost" if reason_type.endswith("reasonRepost") else None,
    }
    return NativePost(platform_post_id=uri, payload=native)


def _images(embed: dict[str, Any]) -> list[dict[str, Any]]:
    images = embed.get("images")
    if not isinstance(images, list):
        images = as_dict(embed.get("media")).get("images")
    if not isinstance(images, list):
        return []
    return [image for image in images if isinstance(image, dict)]


def _image_ref(url: str, position: int, image: dict[str, Any]) -> MediaRef:
    ratio = as_dict(image.get("aspectRatio"))
    return MediaRef(
        url=url,
        media_type="image",
        position=position,
        width=as_dimension(ratio.get("width")),
        height=as_dimension(ratio.get("height")),
        alt_text=image.get("alt") or None,
    )


def _feed_time(item: dict[str, Any]) -> datetime | None:
    # reposts sit in the feed at the time they were reposted
    reason = as_dict(item.get("reason"))
    return parse_timestamp(reason.get("indexedAt")) or parse_timestamp(as_dict(item.get("post")).get("indexedAt"))


def _safe_json(response: Any) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


HANDLER = PlatformHandler(
    platform="bluesky",
    page_event_type="feed.page",
    extract=extract,
    map_post=map_post,
    media_refs=media_refs,
    fetch_page=fetch_page,
    parse_webhook=parse_webhook,
    is_deletion=is_deletion,
    refresh=refresh,
)
