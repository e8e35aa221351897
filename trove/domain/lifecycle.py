from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from trove.domain.records import MediaDownload

TERMINAL_STATUSES = {"completed", "dead_letter"}


def resolve_failure_status(*, attempts: int, max_attempts: int) -> str:
    """Status after a failed attempt; `attempts` already includes the failure."""
    if attempts >= max_attempts:
        return "dead_letter"
    return "pending"


def resolve_media_failure_status(*, attempts: int, max_attempts: int, permanent: bool) -> str:
    if permanent:
        return "unavailable"
    if attempts >= max_attempts:
        return "failed"
    return "pending"


def media_retry_delay_seconds(attempts: int) -> int:
    if attempts <= 0:
        return 0
    return 2**attempts


def media_ready(download: MediaDownload, *, now: datetime, max_attempts: int) -> bool:
    claimable = download.status == "pending" or (
        download.status == "failed" and download.attempts < max_attempts
    )
    if not claimable:
        return False
    if download.last_attempt_at is None:
        return True
    delay = timedelta(seconds=media_retry_delay_seconds(download.attempts))
    return download.last_attempt_at + delay <= now


def token_needs_refresh(expires_at: datetime | None, *, now: datetime, margin_seconds: int) -> bool:
    if expires_at is None:
        return False
    return expires_at - timedelta(seconds=margin_seconds) <= now


def days_until(expires_at: datetime | None, *, now: datetime) -> int | None:
    if expires_at is None:
        return None
    return (expires_at - now).days


def poll_due(last_sync_at: datetime | None, *, now: datetime, interval_minutes: int) -> bool:
    if last_sync_at is None:
        return True
    return last_sync_at + timedelta(minutes=interval_minutes) <= now


def is_newer(incoming: datetime | None, stored: datetime | None) -> bool:
    """Last-writer-wins by platform-reported time; an unknown incoming time never wins."""
    if incoming is None:
        return False
    if stored is None:
        return True
    return _as_utc(incoming) > _as_utc(stored)


def compute_duration_ms(started_at: datetime | None, completed_at: datetime | None) -> int | None:
    if started_at is None or completed_at is None:
        return None
    return int((_as_utc(completed_at) - _as_utc(started_at)).total_seconds() * 1000)


def compute_aspect_ratio(width: int | None, height: int | None) -> float | None:
    """Width over height, rounded to the stored precision; None without both dimensions."""
    if not width or not height or width <= 0 or height <= 0:
        return None
    return round(width / height, 6)


def format_error(exc: BaseException) -> str:
    message = str(exc).strip()
    name = type(exc).__name__
    return f"{name}: {message}" if message else name


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return _as_utc(dt)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
