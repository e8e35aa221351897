from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

PLATFORMS = {"strava", "bluesky", "instagram"}
INGESTION_SOURCES = {"webhook", "fetch", "backfill", "retry"}
PROCESSING_STATUSES = {"pending", "processing", "completed", "failed", "dead_letter"}
DOWNLOAD_STATUSES = {"pending", "downloading", "downloaded", "failed", "unavailable"}
MEDIA_TYPES = {"image", "video"}
ACCOUNT_STATUSES = {"active", "error", "disconnected", "token_expired"}
CONTENT_KINDS = {"post", "activity", "story", "reel", "reply", "repost", "article"}
SYNC_TYPES = {"webhook", "manual", "scheduled", "backfill"}
SYNC_STATUSES = {"running", "success", "partial", "failed", "cancelled"}

ProcessingStatus = Literal["pending", "processing", "completed", "failed", "dead_letter"]
DownloadStatus = Literal["pending", "downloading", "downloaded", "failed", "unavailable"]


@dataclass(slots=True)
class RawItem:
    id: str
    source: str
    platform: str
    event_type: str
    payload: dict[str, Any]
    account_id: str | None = None
    user_id: str | None = None
    external_id: str | None = None
    retry_of: str | None = None
    status: ProcessingStatus = "pending"
    attempts: int = 0
    received_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None


@dataclass(slots=True)
class ExtractedPost:
    id: str
    platform: str
    platform_post_id: str
    native_payload: dict[str, Any]
    raw_item_id: str | None = None
    account_id: str | None = None
    user_id: str | None = None
    status: ProcessingStatus = "pending"
    attempts: int = 0
    received_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None


@dataclass(slots=True)
class CanonicalFields:
    """Platform-agnostic shape produced by a platform mapper before upsert."""

    platform_post_id: str
    content_kind: str
    text: str | None
    native_created_at: datetime
    native_updated_at: datetime | None = None
    published: bool = True
    deleted_upstream: bool = False
    engagement_stats: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CanonicalPost:
    id: str
    account_id: str
    user_id: str
    platform: str
    platform_post_id: str
    content_kind: str
    text: str | None
    native_created_at: datetime
    native_updated_at: datetime | None
    published: bool
    deleted_upstream: bool
    engagement_stats: dict[str, Any]
    metadata: dict[str, Any]
    search_text: str


@dataclass(slots=True)
class UpsertOutcome:
    post_id: str
    created: bool
    updated: bool


@dataclass(slots=True)
class MediaRef:
    """One media item referenced by a post, as the platform describes it."""

    url: str
    media_type: str = "image"
    position: int = 0
    width: int | None = None
    height: int | None = None
    alt_text: str | None = None


@dataclass(slots=True)
class MediaDownload:
    id: str
    extracted_post_id: str | None
    user_id: str
    platform: str
    original_url: str
    media_type: str = "image"
    position: int = 0
    width: int | None = None
    height: int | None = None
    aspect_ratio: float | None = None
    alt_text: str | None = None
    mime_type: str | None = None
    file_size: int | None = None
    status: DownloadStatus = "pending"
    attempts: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class ConnectedAccount:
    id: str
    user_id: str
    platform: str
    platform_user_id: str
    access_token_enc: str
    refresh_token_enc: str | None = None
    token_expires_at: datetime | None = None
    scope: str | None = None
    status: str = "active"
    error_message: str | None = None
    error_count: int = 0
    sync_enabled: bool = True
    last_sync_at: datetime | None = None
    sync_cursor: str | None = None
    backfill_cursor: str | None = None


@dataclass(slots=True)
class SyncLog:
    id: str
    account_id: str | None
    user_id: str | None
    sync_type: str
    status: str = "running"
    posts_fetched: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
