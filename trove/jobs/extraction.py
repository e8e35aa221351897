from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace

from trove.domain.lifecycle import format_error
from trove.domain.records import RawItem
from trove.platforms.registry import get_handler

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CURSOR_SOURCES = {"fetch", "backfill"}


async def run_extraction_batch(repository: Any, *, batch_size: int) -> int:
    """Claims and extracts one batch of raw items; returns how many were claimed."""
    items = await repository.claim_pending_raw_items(batch_size)
    for item in items:
        with tracer.start_as_current_span("extraction.process_item") as span:
            span.set_attribute("raw_item.id", item.id)
            span.set_attribute("raw_item.platform", item.platform)
            try:
                await extract_raw_item(repository, item)
            except Exception as exc:
                status = await repository.fail_raw_item(item.id, format_error(exc))
                logger.exception("extraction failed for raw item id=%s status=%s", item.id, status)
    return len(items)


async def extract_raw_item(repository: Any, item: RawItem) -> int:
    handler = get_handler(item.platform)
    extraction = handler.extract(item.event_type, item.payload)

    created = 0
    for native in extraction.posts:
        _, inserted = await repository.insert_extracted_post(
            raw_item_id=item.id,
            platform=item.platform,
            platform_post_id=native.platform_post_id,
            native_payload=native.payload,
            account_id=item.account_id,
            user_id=item.user_id,
        )
        created += int(inserted)

    if not await repository.complete_raw_item(item.id):
        logger.warning("raw item %s left processing before completion; result discarded", item.id)
        return created

    if extraction.next_cursor and item.account_id and item.source in CURSOR_SOURCES:
        await repository.set_sync_cursor(item.account_id, cursor=extraction.next_cursor, kind=item.source)

    logger.info(
        "extracted raw item id=%s platform=%s posts=%s new=%s",
        item.id,
        item.platform,
        len(extraction.posts),
        created,
    )
    return created
