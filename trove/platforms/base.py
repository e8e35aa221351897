from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from trove.core.config import Settings
from trove.core.errors import MalformedPayloadError, TransientError
from trove.domain.records import CanonicalFields, ConnectedAccount, MediaRef
from trove.services.platform_client import PlatformClient

PAGE_EVENT_SUFFIX = ".page"
BOUND_PREFIX = "since:"


@dataclass(slots=True)
class NativePost:
    platform_post_id: str
    payload: dict[str, Any]


@dataclass(slots=True)
class Extraction:
    posts: list[NativePost] = field(default_factory=list)
    next_cursor: str | None = None


@dataclass(slots=True)
class FetchedPage:
    items: list[dict[str, Any]]
    next_cursor: str | None = None


@dataclass(slots=True)
class WebhookEnvelope:
    """Routing facts read from a webhook body before it is stored."""

    event_type: str
    owner_id: str | None
    external_id: str | None = None


@dataclass(slots=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


Hydrator = Callable[[PlatformClient, Settings, ConnectedAccount, str, dict[str, Any]], Awaitable[dict[str, Any]]]
PageFetcher = Callable[
    [PlatformClient, Settings, ConnectedAccount, str, str | None, datetime | None], Awaitable[FetchedPage]
]
Refresher = Callable[[PlatformClient, Settings, str], Awaitable[TokenGrant]]


@dataclass(frozen=True, slots=True)
class PlatformHandler:
    """Capabilities of one platform, selected by the `platform` tag of a record."""

    platform: str
    page_event_type: str
    extract: Callable[[str, dict[str, Any]], Extraction]
    map_post: Callable[[dict[str, Any]], CanonicalFields]
    media_refs: Callable[[dict[str, Any]], list[MediaRef]]
    fetch_page: PageFetcher
    parse_webhook: Callable[[dict[str, Any]], WebhookEnvelope]
    needs_hydration: Callable[[dict[str, Any]], bool] = lambda native: False
    hydrate: Hydrator | None = None
    is_deletion: Callable[[dict[str, Any]], bool] = lambda native: False
    refresh: Refresher | None = None

    @property
    def supports_refresh(self) -> bool:
        return self.refresh is not None


def build_page_payload(page: FetchedPage, *, cursor: str | None) -> dict[str, Any]:
    return {"cursor": cursor, "next_cursor": page.next_cursor, "items": page.items}


def bound_cursor(cursor: str | None, since: datetime | None) -> str | None:
    """Carries a scheduled poll's lower time bound along with the platform cursor.

    Continuation pages are fetched on later ticks, after `last_sync_at` has
    moved on, so the bound has to travel with the cursor itself.
    """
    if cursor is None or since is None:
        return cursor
    return f"{BOUND_PREFIX}{int(since.timestamp())}|{cursor}"


def split_cursor(cursor: str | None) -> tuple[str | None, datetime | None]:
    if not cursor or not cursor.startswith(BOUND_PREFIX):
        return cursor or None, None
    epoch, separator, inner = cursor[len(BOUND_PREFIX):].partition("|")
    seconds = as_int(epoch)
    if not separator or seconds is None:
        raise MalformedPayloadError(f"invalid bounded cursor {cursor!r}")
    return inner or None, datetime.fromtimestamp(seconds, tz=timezone.utc)


def reached_bound(timestamps: list[datetime | None], since: datetime | None) -> bool:
    """True once a newest-first page reaches content already covered by the previous poll."""
    if since is None:
        return False
    return any(ts is not None and ts <= since for ts in timestamps)


def is_page_event(event_type: str) -> bool:
    return event_type.endswith(PAGE_EVENT_SUFFIX)


def page_items(payload: dict[str, Any]) -> tuple[list[dict[str, Any]], str | None]:
    items = payload.get("items")
    if not isinstance(items, list):
        raise MalformedPayloadError("page payload is missing an items list")
    next_cursor = payload.get("next_cursor")
    if next_cursor is not None and not isinstance(next_cursor, str):
        next_cursor = str(next_cursor)
    return [item for item in items if isinstance(item, dict)], next_cursor or None


def require_text(value: Any, *, field_name: str) -> str:
    if isinstance(value, bool) or value is None:
        raise MalformedPayloadError(f"missing {field_name}")
    if isinstance(value, (int, str)):
        text = str(value).strip()
        if text:
            return text
    raise MalformedPayloadError(f"invalid {field_name}")


def token_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise TransientError("token endpoint returned a non-JSON body") from exc
    if not isinstance(body, dict):
        raise TransientError("token endpoint returned an unexpected body")
    return body


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def as_dimension(value: Any) -> int | None:
    number = as_int(value)
    return number if number is not None and number > 0 else None
