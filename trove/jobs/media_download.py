from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from trove.core.config import Settings
from trove.core.content_address import guess_content_type, storage_path
from trove.core.errors import PermanentResourceError
from trove.domain.lifecycle import format_error
from trove.domain.records import MediaDownload
from trove.services.object_storage import ObjectStorage
from trove.services.platform_client import PlatformClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_media_batch(
    repository: Any,
    storage: ObjectStorage,
    client: PlatformClient,
    settings: Settings,
    *,
    batch_size: int,
    now: datetime | None = None,
) -> int:
    now = now or datetime.now(timezone.utc)
    downloads = await repository.claim_downloadable_media(batch_size, now=now)
    for download in downloads:
        with tracer.start_as_current_span("media.download") as span:
            span.set_attribute("media_download.id", download.id)
            span.set_attribute("media_download.attempts", download.attempts)
            try:
                await download_media(repository, storage, client, settings, download)
            except PermanentResourceError as exc:
                status = await repository.fail_media_download(download.id, format_error(exc), permanent=True)
                logger.info("media %s unavailable upstream: %s (status=%s)", download.id, exc, status)
            except Exception as exc:
                status = await repository.fail_media_download(download.id, format_error(exc), permanent=False)
                logger.exception("media download failed for id=%s status=%s", download.id, status)
    return len(downloads)


async def download_media(
    repository: Any,
    storage: ObjectStorage,
    client: PlatformClient,
    settings: Settings,
    download: MediaDownload,
) -> str:
    path = storage_path(download.user_id, download.platform, download.original_url)
    mime_type: str | None = None
    file_size: int | None = None
    if await storage.exists(path):
        logger.debug("media %s already stored at %s", download.id, path)
    else:
        fetched = await client.fetch_media(download.original_url, timeout_seconds=settings.media_timeout_seconds)
        mime_type = guess_content_type(download.original_url, fetched.content_type)
        file_size = len(fetched.content)
        await storage.put(path, fetched.content, mime_type)

    if not await repository.complete_media_download(download.id, mime_type=mime_type, file_size=file_size):
        logger.warning("media %s left downloading before completion; result discarded", download.id)
    else:
        logger.info("stored media id=%s path=%s", download.id, path)
    return path
