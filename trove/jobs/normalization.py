from __future__ import annotations

import logging
import re
from typing import Any

from opentelemetry import trace

from trove.core.config import Settings
from trove.core.errors import AuthExpired, MalformedPayloadError, PermanentResourceError
from trove.domain.lifecycle import format_error
from trove.domain.records import CanonicalFields, ExtractedPost
from trove.platforms.base import PlatformHandler
from trove.platforms.registry import get_handler
from trove.services.platform_client import PlatformClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SEARCHABLE_METADATA_KEYS = ("activity_type", "sport_type", "author_handle", "product_type")
_WHITESPACE = re.compile(r"\s+")


def build_search_text(fields: CanonicalFields) -> str:
    parts = [fields.text or ""]
    for key in SEARCHABLE_METADATA_KEYS:
        value = fields.metadata.get(key)
        if isinstance(value, str):
            parts.append(value)
    return _WHITESPACE.sub(" ", " ".join(parts)).strip()


async def run_normalization_batch(
    repository: Any,
    token_manager: Any,
    client: PlatformClient,
    settings: Settings,
    *,
    batch_size: int,
) -> int:
    posts = await repository.claim_pending_posts(batch_size)
    for post in posts:
        with tracer.start_as_current_span("normalization.process_post") as span:
            span.set_attribute("extracted_post.id", post.id)
            span.set_attribute("extracted_post.platform", post.platform)
            try:
                await normalize_post(repository, token_manager, client, settings, post)
            except PermanentResourceError as exc:
                # the post is gone upstream; nothing left to retry
                await repository.mark_deleted_upstream(platform=post.platform, platform_post_id=post.platform_post_id)
                await repository.complete_post(post.id)
                logger.info("post %s gone upstream: %s", post.platform_post_id, exc)
            except AuthExpired as exc:
                # raised by the HTTP layer without an account: the manager thought the token was fine
                if exc.account_id is None and post.account_id is not None:
                    await token_manager.mark_auth_failure(post.account_id, format_error(exc))
                await repository.release_post(post.id, format_error(exc))
                logger.warning("released post id=%s on auth failure: %s", post.id, exc)
            except Exception as exc:
                status = await repository.fail_post(post.id, format_error(exc))
                logger.exception("normalization failed for post id=%s status=%s", post.id, status)
    return len(posts)


async def normalize_post(
    repository: Any,
    token_manager: Any,
    client: PlatformClient,
    settings: Settings,
    post: ExtractedPost,
) -> None:
    handler = get_handler(post.platform)
    native = post.native_payload

    if handler.is_deletion(native):
        await repository.mark_deleted_upstream(platform=post.platform, platform_post_id=post.platform_post_id)
        await repository.complete_post(post.id)
        return

    if handler.needs_hydration(native):
        native = await _hydrate(handler, token_manager, client, settings, repository, post)

    if post.account_id is None or post.user_id is None:
        raise MalformedPayloadError(f"post {post.platform_post_id} has no owning account")

    fields = handler.map_post(native)
    outcome = await repository.upsert_canonical_post(
        account_id=post.account_id,
        user_id=post.user_id,
        platform=post.platform,
        fields=fields,
        search_text=build_search_text(fields),
    )

    queued = 0
    for ref in handler.media_refs(native):
        download_id = await repository.enqueue_media_reference(
            user_id=post.user_id,
            platform=post.platform,
            extracted_post_id=post.id,
            url=ref.url,
            media_type=ref.media_type,
            position=ref.position,
            width=ref.width,
            height=ref.height,
            alt_text=ref.alt_text,
        )
        queued += int(download_id is not None)

    if not await repository.complete_post(post.id):
        logger.warning("post %s left processing before completion; result discarded", post.id)
        return

    logger.info(
        "normalized post id=%s canonical=%s created=%s updated=%s media=%s",
        post.id,
        outcome.post_id,
        outcome.created,
        outcome.updated,
        queued,
    )


async def _hydrate(
    handler: PlatformHandler,
    token_manager: Any,
    client: PlatformClient,
    settings: Settings,
    repository: Any,
    post: ExtractedPost,
) -> dict[str, Any]:
    if handler.hydrate is None:
        raise MalformedPayloadError(f"{post.platform} payload is incomplete and cannot be fetched")
    if post.account_id is None:
        raise MalformedPayloadError(f"post {post.platform_post_id} needs fetching but has no account")
    account = await repository.get_account(post.account_id)
    access_token = await token_manager.get_valid_access_token(post.account_id)
    return await handler.hydrate(client, settings, account, access_token, post.native_payload)
