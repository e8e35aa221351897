from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Protocol
from uuid import uuid4

import aiofiles
import aiofiles.os
import httpx

from trove.core.config import Settings, get_settings
from trove.core.errors import TransientError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    async def put(self, path: str, data: bytes, content_type: str) -> None: ...

    async def exists(self, path: str) -> bool: ...


class LocalObjectStorage:
    """Content-addressed files under a root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        # write-then-rename so readers never see a partial object
        temp = target.with_name(f".{target.name}.{uuid4().hex}.part")
        async with aiofiles.open(temp, "wb") as handle:
            await handle.write(data)
        await aiofiles.os.replace(temp, target)

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.isfile(self._resolve(path))

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise ValueError(f"storage path escapes root: {path}")
        return target


class SupabaseObjectStorage:
    """Supabase Storage REST API, authenticated with the service role key."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_key: str,
        bucket: str,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = f"{supabase_url.rstrip('/')}/storage/v1/object/{bucket}"
        self.service_key = service_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        response = await self._request(
            "POST",
            path,
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )
        if response.status_code == 409:
            # same content address already uploaded
            logger.debug("object already stored: %s", path)
            return
        if response.status_code >= 300:
            raise TransientError(f"storage upload failed: HTTP {response.status_code}")

    async def exists(self, path: str) -> bool:
        response = await self._request("HEAD", path)
        if response.status_code == 200:
            return True
        if response.status_code in {400, 404}:
            return False
        raise TransientError(f"storage lookup failed: HTTP {response.status_code}")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        merged_headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            **(headers or {}),
        }
        try:
            if self._client is not None:
                return await self._client.request(method, url, content=content, headers=merged_headers)
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                return await temp_client.request(method, url, content=content, headers=merged_headers)
        except httpx.HTTPError as exc:
            raise TransientError(f"storage unavailable: {exc}") from exc


def build_object_storage(settings: Settings) -> ObjectStorage:
    if settings.storage_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_service_key:
            raise RuntimeError("TROVE_SUPABASE_URL and TROVE_SUPABASE_SERVICE_KEY are required for supabase storage")
        return SupabaseObjectStorage(
            supabase_url=settings.supabase_url,
            service_key=settings.supabase_service_key,
            bucket=settings.supabase_bucket,
            timeout_seconds=settings.media_timeout_seconds,
        )
    if settings.storage_backend != "local":
        raise RuntimeError(f"unknown storage backend: {settings.storage_backend}")
    return LocalObjectStorage(settings.storage_root)


@lru_cache
def get_object_storage() -> ObjectStorage:
    return build_object_storage(get_settings())
