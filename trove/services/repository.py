from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from trove.core.config import get_settings
from trove.domain.lifecycle import compute_aspect_ratio, compute_duration_ms
from trove.domain.records import (
    CanonicalFields,
    CanonicalPost,
    ConnectedAccount,
    ExtractedPost,
    MediaDownload,
    RawItem,
    UpsertOutcome,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


QUEUE_TABLES = {"raw_item": "raw_items", "extracted_post": "extracted_posts"}

_RAW_ITEM_COLUMNS = """
  id::text as id,
  source,
  platform,
  account_id::text as account_id,
  user_id::text as user_id,
  event_type,
  external_id,
  retry_of::text as retry_of,
  payload,
  status,
  attempts,
  received_at,
  started_at,
  completed_at,
  last_error,
  last_error_at
"""

_EXTRACTED_POST_COLUMNS = """
  id::text as id,
  raw_item_id::text as raw_item_id,
  platform,
  account_id::text as account_id,
  user_id::text as user_id,
  platform_post_id,
  native_payload,
  status,
  attempts,
  received_at,
  started_at,
  completed_at,
  last_error,
  last_error_at
"""

_MEDIA_COLUMNS = """
  id::text as id,
  extracted_post_id::text as extracted_post_id,
  user_id::text as user_id,
  platform,
  original_url,
  media_type,
  position,
  width,
  height,
  aspect_ratio::float8 as aspect_ratio,
  alt_text,
  mime_type,
  file_size,
  status,
  attempts,
  last_attempt_at,
  last_error,
  created_at
"""

_ACCOUNT_COLUMNS = """
  id::text as id,
  user_id::text as user_id,
  platform,
  platform_user_id,
  access_token_enc,
  refresh_token_enc,
  token_expires_at,
  scope,
  status,
  error_message,
  error_count,
  sync_enabled,
  last_sync_at,
  sync_cursor,
  backfill_cursor
"""

# source kind of a paginated fetch -> account column holding its next page
CURSOR_COLUMNS = {"fetch": "sync_cursor", "backfill": "backfill_cursor"}


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        max_attempts: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.max_attempts = max(1, max_attempts)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetchval("select 1")
        except (OSError, asyncpg.PostgresError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    # raw items

    async def enqueue_raw_item(
        self,
        *,
        source: str,
        platform: str,
        event_type: str,
        payload: dict[str, Any],
        account_id: str | None = None,
        user_id: str | None = None,
        external_id: str | None = None,
        retry_of: str | None = None,
    ) -> str:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row_id = await conn.fetchval(
                        """
                        insert into raw_items (
                          source, platform, account_id, user_id, event_type, external_id, retry_of, payload
                        )
                        values ($1, $2, $3::uuid, $4::uuid, $5, $6, $7::uuid, $8::jsonb)
                        on conflict (platform, external_id) where external_id is not null do nothing
                        returning id::text
                        """,
                        source,
                        platform,
                        account_id,
                        user_id,
                        event_type,
                        external_id,
                        retry_of,
                        json.dumps(payload),
                    )
                    if row_id is not None:
                        return row_id
                    # redelivery of an event we already hold
                    return await conn.fetchval(
                        "select id::text from raw_items where platform = $1 and external_id = $2",
                        platform,
                        external_id,
                    )
        except (pg_exc.CheckViolationError, pg_exc.ForeignKeyViolationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def get_raw_item(self, raw_item_id: str) -> RawItem:
        pool = await self._get_pool()
        row = await self._fetchrow_by_id(
            pool,
            f"select {_RAW_ITEM_COLUMNS} from raw_items where id = $1::uuid",
            raw_item_id,
        )
        if not row:
            raise RepositoryNotFoundError("raw item not found")
        return self._raw_item_row_to_record(row)

    async def claim_pending_raw_items(self, batch_size: int) -> list[RawItem]:
        rows = await self._claim("raw_items", _RAW_ITEM_COLUMNS, batch_size)
        return [self._raw_item_row_to_record(row) for row in rows]

    async def complete_raw_item(self, raw_item_id: str) -> bool:
        return await self._complete("raw_items", raw_item_id)

    async def fail_raw_item(self, raw_item_id: str, error: str) -> str | None:
        return await self._fail("raw_items", raw_item_id, error)

    async def release_raw_item(self, raw_item_id: str, error: str) -> bool:
        return await self._release("raw_items", raw_item_id, error)

    async def dead_letter_raw_item(self, raw_item_id: str, reason: str) -> bool:
        return await self._dead_letter("raw_items", raw_item_id, reason)

    async def reinject_raw_item(self, raw_item_id: str) -> str:
        original = await self.get_raw_item(raw_item_id)
        if original.status != "dead_letter":
            raise RepositoryConflictError("only dead-lettered raw items can be reinjected")
        return await self.enqueue_raw_item(
            source="retry",
            platform=original.platform,
            event_type=original.event_type,
            payload=original.payload,
            account_id=original.account_id,
            user_id=original.user_id,
            retry_of=original.id,
        )

    # extracted posts

    async def insert_extracted_post(
        self,
        *,
        raw_item_id: str | None,
        platform: str,
        platform_post_id: str,
        native_payload: dict[str, Any],
        account_id: str | None = None,
        user_id: str | None = None,
    ) -> tuple[str, bool]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row_id = await conn.fetchval(
                    """
                    insert into extracted_posts (
                      raw_item_id, platform, account_id, user_id, platform_post_id, native_payload
                    )
                    values ($1::uuid, $2, $3::uuid, $4::uuid, $5, $6::jsonb)
                    on conflict (raw_item_id, platform_post_id) do nothing
                    returning id::text
                    """,
                    raw_item_id,
                    platform,
                    account_id,
                    user_id,
                    platform_post_id,
                    json.dumps(native_payload),
                )
                if row_id is not None:
                    return row_id, True
                existing = await conn.fetchval(
                    """
                    select id::text
                    from extracted_posts
                    where raw_item_id = $1::uuid and platform_post_id = $2
                    """,
                    raw_item_id,
                    platform_post_id,
                )
                return existing, False

    async def get_extracted_post(self, post_id: str) -> ExtractedPost:
        pool = await self._get_pool()
        row = await self._fetchrow_by_id(
            pool,
            f"select {_EXTRACTED_POST_COLUMNS} from extracted_posts where id = $1::uuid",
            post_id,
        )
        if not row:
            raise RepositoryNotFoundError("extracted post not found")
        return self._extracted_post_row_to_record(row)

    async def claim_pending_posts(self, batch_size: int) -> list[ExtractedPost]:
        rows = await self._claim("extracted_posts", _EXTRACTED_POST_COLUMNS, batch_size)
        return [self._extracted_post_row_to_record(row) for row in rows]

    async def complete_post(self, post_id: str) -> bool:
        return await self._complete("extracted_posts", post_id)

    async def fail_post(self, post_id: str, error: str) -> str | None:
        return await self._fail("extracted_posts", post_id, error)

    async def release_post(self, post_id: str, error: str) -> bool:
        return await self._release("extracted_posts", post_id, error)

    async def dead_letter_post(self, post_id: str, reason: str) -> bool:
        return await self._dead_letter("extracted_posts", post_id, reason)

    # canonical posts

    async def upsert_canonical_post(
        self,
        *,
        account_id: str,
        user_id: str,
        platform: str,
        fields: CanonicalFields,
        search_text: str,
    ) -> UpsertOutcome:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    insert into canonical_posts (
                      account_id, user_id, platform, platform_post_id, content_kind, text,
                      native_created_at, native_updated_at, published, deleted_upstream,
                      engagement_stats, metadata, search_text
                    )
                    values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12::jsonb, $13)
                    on conflict (platform, platform_post_id) do update
                    set
                      content_kind = excluded.content_kind,
                      text = excluded.text,
                      native_created_at = excluded.native_created_at,
                      native_updated_at = excluded.native_updated_at,
                      published = excluded.published,
                      deleted_upstream = excluded.deleted_upstream,
                      engagement_stats = excluded.engagement_stats,
                      metadata = excluded.metadata,
                      search_text = excluded.search_text,
                      updated_at = now()
                    where excluded.native_updated_at is not null
                      and (
                        canonical_posts.native_updated_at is null
                        or excluded.native_updated_at > canonical_posts.native_updated_at
                      )
                    returning id::text as id, (xmax = 0) as created
                    """,
                    account_id,
                    user_id,
                    platform,
                    fields.platform_post_id,
                    fields.content_kind,
                    fields.text,
                    fields.native_created_at,
                    fields.native_updated_at,
                    fields.published,
                    fields.deleted_upstream,
                    json.dumps(fields.engagement_stats),
                    json.dumps(fields.metadata),
                    search_text,
                )
                if row:
                    created = bool(row["created"])
                    return UpsertOutcome(post_id=row["id"], created=created, updated=not created)

                # stored version is newer; keep it
                existing_id = await conn.fetchval(
                    "select id::text from canonical_posts where platform = $1 and platform_post_id = $2",
                    platform,
                    fields.platform_post_id,
                )
                return UpsertOutcome(post_id=existing_id, created=False, updated=False)

    async def mark_deleted_upstream(self, *, platform: str, platform_post_id: str) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update canonical_posts
            set deleted_upstream = true, updated_at = now()
            where platform = $1 and platform_post_id = $2 and deleted_upstream = false
            """,
            platform,
            platform_post_id,
        )
        return result.endswith(" 1")

    async def get_canonical_post(self, *, platform: str, platform_post_id: str) -> CanonicalPost | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              id::text as id,
              account_id::text as account_id,
              user_id::text as user_id,
              platform,
              platform_post_id,
              content_kind,
              text,
              native_created_at,
              native_updated_at,
              published,
              deleted_upstream,
              engagement_stats,
              metadata,
              search_text
            from canonical_posts
            where platform = $1 and platform_post_id = $2
            """,
            platform,
            platform_post_id,
        )
        if not row:
            return None
        return CanonicalPost(
            id=row["id"],
            account_id=row["account_id"],
            user_id=row["user_id"],
            platform=row["platform"],
            platform_post_id=row["platform_post_id"],
            content_kind=row["content_kind"],
            text=row["text"],
            native_created_at=row["native_created_at"],
            native_updated_at=row["native_updated_at"],
            published=row["published"],
            deleted_upstream=row["deleted_upstream"],
            engagement_stats=self._coerce_json_dict(row["engagement_stats"]),
            metadata=self._coerce_json_dict(row["metadata"]),
            search_text=row["search_text"],
        )

    # media downloads

    async def enqueue_media_reference(
        self,
        *,
        user_id: str,
        platform: str,
        extracted_post_id: str | None,
        url: str,
        media_type: str = "image",
        position: int = 0,
        width: int | None = None,
        height: int | None = None,
        alt_text: str | None = None,
    ) -> str | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchval(
                """
                insert into media_downloads (
                  extracted_post_id, user_id, platform, original_url,
                  media_type, position, width, height, aspect_ratio, alt_text
                )
                values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9::float8, $10)
                on conflict (user_id, original_url) do nothing
                returning id::text
                """,
                extracted_post_id,
                user_id,
                platform,
                url,
                media_type,
                max(0, position),
                width,
                height,
                compute_aspect_ratio(width, height),
                alt_text,
            )
        except (pg_exc.CheckViolationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def get_media_download(self, download_id: str) -> MediaDownload:
        pool = await self._get_pool()
        row = await self._fetchrow_by_id(
            pool,
            f"select {_MEDIA_COLUMNS} from media_downloads where id = $1::uuid",
            download_id,
        )
        if not row:
            raise RepositoryNotFoundError("media download not found")
        return self._media_row_to_record(row)

    async def claim_downloadable_media(self, batch_size: int, *, now: datetime) -> list[MediaDownload]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with next_media as (
                      select id as claim_id
                      from media_downloads
                      where (status = 'pending' or (status = 'failed' and attempts < $2))
                        and (
                          last_attempt_at is null
                          or last_attempt_at + (power(2, attempts) * interval '1 second') <= $3
                        )
                      order by created_at asc
                      limit $1
                      for update skip locked
                    )
                    update media_downloads m
                    set status = 'downloading', last_attempt_at = $3
                    from next_media n
                    where m.id = n.claim_id
                    returning {_MEDIA_COLUMNS}
                    """,
                    max(1, batch_size),
                    self.max_attempts,
                    now,
                )
        records = [self._media_row_to_record(row) for row in rows]
        return sorted(records, key=lambda record: record.created_at or now)

    async def complete_media_download(
        self,
        download_id: str,
        *,
        mime_type: str | None = None,
        file_size: int | None = None,
    ) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update media_downloads
            set
              status = 'downloaded',
              attempts = attempts + 1,
              last_error = null,
              mime_type = coalesce($2, mime_type),
              file_size = coalesce($3, file_size)
            where id = $1::uuid and status = 'downloading'
            """,
            download_id,
            mime_type,
            file_size,
        )
        return result.endswith(" 1")

    async def fail_media_download(self, download_id: str, error: str, *, permanent: bool) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            update media_downloads
            set
              attempts = attempts + 1,
              last_error = $2,
              status = case
                when $3 then 'unavailable'
                when attempts + 1 >= $4 then 'failed'
                else 'pending'
              end
            where id = $1::uuid and status = 'downloading'
            returning status
            """,
            download_id,
            error,
            permanent,
            self.max_attempts,
        )

    async def dead_letter_media_download(self, download_id: str, reason: str) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update media_downloads
            set status = 'failed', attempts = greatest(attempts, $3), last_error = $2
            where id = $1::uuid and status in ('pending', 'downloading', 'failed')
            """,
            download_id,
            reason,
            self.max_attempts,
        )
        return result.endswith(" 1")

    # connected accounts

    async def get_account(self, account_id: str) -> ConnectedAccount:
        pool = await self._get_pool()
        row = await self._fetchrow_by_id(
            pool,
            f"select {_ACCOUNT_COLUMNS} from connected_accounts where id = $1::uuid",
            account_id,
        )
        if not row:
            raise RepositoryNotFoundError("connected account not found")
        return self._account_row_to_record(row)

    async def find_account(self, *, platform: str, platform_user_id: str) -> ConnectedAccount | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_ACCOUNT_COLUMNS}
            from connected_accounts
            where platform = $1 and platform_user_id = $2
            order by created_at asc
            limit 1
            """,
            platform,
            platform_user_id,
        )
        return self._account_row_to_record(row) if row else None

    @asynccontextmanager
    async def credential_lock(self, account_id: str) -> AsyncIterator[None]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("select pg_advisory_xact_lock(hashtext($1))", account_id)
                yield

    async def update_account_tokens(
        self,
        account_id: str,
        *,
        access_token_enc: str,
        refresh_token_enc: str | None,
        expires_at: datetime | None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update connected_accounts
            set
              access_token_enc = $2,
              refresh_token_enc = $3,
              token_expires_at = $4,
              status = 'active',
              error_message = null,
              error_count = 0,
              updated_at = now()
            where id = $1::uuid
            """,
            account_id,
            access_token_enc,
            refresh_token_enc,
            expires_at,
        )

    async def set_account_status(self, account_id: str, status: str, *, error_message: str | None = None) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update connected_accounts
            set status = $2, error_message = $3, updated_at = now()
            where id = $1::uuid
            """,
            account_id,
            status,
            error_message,
        )

    async def record_account_error(self, account_id: str, error_message: str) -> int:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            update connected_accounts
            set error_count = error_count + 1, error_message = $2, updated_at = now()
            where id = $1::uuid
            returning error_count
            """,
            account_id,
            error_message,
        )

    async def due_accounts(
        self,
        *,
        now: datetime,
        interval_minutes: dict[str, int],
        limit: int,
    ) -> list[ConnectedAccount]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_ACCOUNT_COLUMNS}
            from connected_accounts
            where sync_enabled = true
              and status = 'active'
              and (
                last_sync_at is null
                or last_sync_at + make_interval(mins => coalesce(($2::jsonb ->> platform)::int, 60)) <= $1
              )
            order by last_sync_at asc nulls first
            limit $3
            """,
            now,
            json.dumps(interval_minutes),
            max(1, limit),
        )
        return [self._account_row_to_record(row) for row in rows]

    async def mark_synced(self, account_id: str, *, at: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "update connected_accounts set last_sync_at = $2, updated_at = now() where id = $1::uuid",
            account_id,
            at,
        )

    async def set_sync_cursor(self, account_id: str, *, cursor: str, kind: str) -> None:
        column = cursor_column(kind)
        pool = await self._get_pool()
        await pool.execute(
            f"update connected_accounts set {column} = $2, updated_at = now() where id = $1::uuid",
            account_id,
            cursor,
        )

    async def take_sync_cursor(self, account_id: str, cursor: str, *, kind: str) -> bool:
        """Clears the cursor only if it is still the one the caller read."""
        column = cursor_column(kind)
        pool = await self._get_pool()
        result = await pool.execute(
            f"""
            update connected_accounts
            set {column} = null, updated_at = now()
            where id = $1::uuid and {column} = $2
            """,
            account_id,
            cursor,
        )
        return result.endswith(" 1")

    async def accounts_with_cursor(self, *, limit: int) -> list[ConnectedAccount]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_ACCOUNT_COLUMNS}
            from connected_accounts
            where (sync_cursor is not null or backfill_cursor is not null)
              and sync_enabled = true
              and status = 'active'
            order by updated_at asc
            limit $1
            """,
            max(1, limit),
        )
        return [self._account_row_to_record(row) for row in rows]

    # sync logs

    async def start_sync_log(
        self,
        *,
        account_id: str | None,
        user_id: str | None,
        sync_type: str,
        started_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into sync_logs (account_id, user_id, sync_type, started_at, metadata)
            values ($1::uuid, $2::uuid, $3, $4, $5::jsonb)
            returning id::text
            """,
            account_id,
            user_id,
            sync_type,
            started_at,
            json.dumps(metadata or {}),
        )

    async def finish_sync_log(
        self,
        sync_log_id: str,
        *,
        status: str,
        completed_at: datetime,
        posts_fetched: int = 0,
        error_message: str | None = None,
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                started_at = await conn.fetchval(
                    "select started_at from sync_logs where id = $1::uuid for update",
                    sync_log_id,
                )
                await conn.execute(
                    """
                    update sync_logs
                    set status = $2, completed_at = $3, posts_fetched = $4, error_message = $5, duration_ms = $6
                    where id = $1::uuid
                    """,
                    sync_log_id,
                    status,
                    completed_at,
                    posts_fetched,
                    error_message,
                    compute_duration_ms(started_at, completed_at),
                )

    # maintenance

    async def reap_stale_claims(self, *, now: datetime, older_than_seconds: int) -> int:
        """Returns claims abandoned by crashed workers to the queue, counting the lost attempt."""
        pool = await self._get_pool()
        cutoff = now - timedelta(seconds=older_than_seconds)
        reaped = 0
        async with pool.acquire() as conn:
            async with conn.transaction():
                for table in QUEUE_TABLES.values():
                    rows = await conn.fetch(
                        f"""
                        update {table}
                        set
                          attempts = attempts + 1,
                          status = case when attempts + 1 >= $2 then 'dead_letter' else 'pending' end,
                          last_error = 'claim abandoned',
                          last_error_at = $3,
                          updated_at = now()
                        where status = 'processing' and started_at <= $1
                        returning id
                        """,
                        cutoff,
                        self.max_attempts,
                        now,
                    )
                    reaped += len(rows)
                rows = await conn.fetch(
                    """
                    update media_downloads
                    set
                      attempts = attempts + 1,
                      status = case when attempts + 1 >= $2 then 'failed' else 'pending' end,
                      last_error = 'claim abandoned'
                    where status = 'downloading' and last_attempt_at <= $1
                    returning id
                    """,
                    cutoff,
                    self.max_attempts,
                )
                reaped += len(rows)
        return reaped

    # queue primitives shared by raw_items and extracted_posts

    async def _claim(self, table: str, columns: str, batch_size: int) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with next_items as (
                      select q.id as claim_id
                      from {table} q
                      left join connected_accounts ca on ca.id = q.account_id
                      where q.status = 'pending'
                        and (q.account_id is null or ca.status = 'active')
                      order by q.received_at asc
                      limit $1
                      for update of q skip locked
                    )
                    update {table} t
                    set status = 'processing', started_at = now(), updated_at = now()
                    from next_items n
                    where t.id = n.claim_id
                    returning {columns}
                    """,
                    max(1, batch_size),
                )
        return sorted(rows, key=lambda row: row["received_at"])

    async def _complete(self, table: str, item_id: str) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            f"""
            update {table}
            set status = 'completed', completed_at = now(), last_error = null, updated_at = now()
            where id = $1::uuid and status = 'processing'
            """,
            item_id,
        )
        return result.endswith(" 1")

    async def _fail(self, table: str, item_id: str, error: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            f"""
            update {table}
            set
              attempts = attempts + 1,
              status = case when attempts + 1 >= $3 then 'dead_letter' else 'pending' end,
              last_error = $2,
              last_error_at = now(),
              updated_at = now()
            where id = $1::uuid and status = 'processing'
            returning status
            """,
            item_id,
            error,
            self.max_attempts,
        )

    async def _release(self, table: str, item_id: str, error: str) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            f"""
            update {table}
            set status = 'pending', started_at = null, last_error = $2, last_error_at = now(), updated_at = now()
            where id = $1::uuid and status = 'processing'
            """,
            item_id,
            error,
        )
        return result.endswith(" 1")

    async def _dead_letter(self, table: str, item_id: str, reason: str) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            f"""
            update {table}
            set status = 'dead_letter', last_error = $2, last_error_at = now(), updated_at = now()
            where id = $1::uuid and status in ('pending', 'processing', 'failed')
            """,
            item_id,
            reason,
        )
        return result.endswith(" 1")

    async def _fetchrow_by_id(self, pool: asyncpg.Pool, query: str, item_id: str) -> asyncpg.Record | None:
        try:
            return await pool.fetchrow(query, item_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("invalid id") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("TROVE_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _raw_item_row_to_record(cls, row: asyncpg.Record) -> RawItem:
        return RawItem(
            id=row["id"],
            source=row["source"],
            platform=row["platform"],
            event_type=row["event_type"],
            payload=cls._coerce_json_dict(row["payload"]),
            account_id=row["account_id"],
            user_id=row["user_id"],
            external_id=row["external_id"],
            retry_of=row["retry_of"],
            status=row["status"],
            attempts=row["attempts"],
            received_at=row["received_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            last_error=row["last_error"],
            last_error_at=row["last_error_at"],
        )

    @classmethod
    def _extracted_post_row_to_record(cls, row: asyncpg.Record) -> ExtractedPost:
        return ExtractedPost(
            id=row["id"],
            platform=row["platform"],
            platform_post_id=row["platform_post_id"],
            native_payload=cls._coerce_json_dict(row["native_payload"]),
            raw_item_id=row["raw_item_id"],
            account_id=row["account_id"],
            user_id=row["user_id"],
            status=row["status"],
            attempts=row["attempts"],
            received_at=row["received_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            last_error=row["last_error"],
            last_error_at=row["last_error_at"],
        )

    @staticmethod
    def _media_row_to_record(row: asyncpg.Record) -> MediaDownload:
        return MediaDownload(
            id=row["id"],
            extracted_post_id=row["extracted_post_id"],
            user_id=row["user_id"],
            platform=row["platform"],
            original_url=row["original_url"],
            media_type=row["media_type"],
            position=row["position"],
            width=row["width"],
            height=row["height"],
            aspect_ratio=row["aspect_ratio"],
            alt_text=row["alt_text"],
            mime_type=row["mime_type"],
            file_size=row["file_size"],
            status=row["status"],
            attempts=row["attempts"],
            last_attempt_at=row["last_attempt_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _account_row_to_record(row: asyncpg.Record) -> ConnectedAccount:
        return ConnectedAccount(
            id=row["id"],
            user_id=row["user_id"],
            platform=row["platform"],
            platform_user_id=row["platform_user_id"],
            access_token_enc=row["access_token_enc"],
            refresh_token_enc=row["refresh_token_enc"],
            token_expires_at=row["token_expires_at"],
            scope=row["scope"],
            status=row["status"],
            error_message=row["error_message"],
            error_count=row["error_count"],
            sync_enabled=row["sync_enabled"],
            last_sync_at=row["last_sync_at"],
            sync_cursor=row["sync_cursor"],
            backfill_cursor=row["backfill_cursor"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        max_attempts=settings.max_attempts,
    )


def cursor_column(kind: str) -> str:
    try:
        return CURSOR_COLUMNS[kind]
    except KeyError:
        raise ValueError(f"unknown cursor kind: {kind}") from None
