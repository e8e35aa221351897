from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from trove.core.errors import AuthExpired, PermanentResourceError, TransientError

USER_AGENT = "trove-archiver/1.0"
PERMANENT_STATUS_CODES = {404, 410}
AUTH_STATUS_CODES = {401, 403}


@dataclass(slots=True)
class FetchedMedia:
    content: bytes
    content_type: str | None


class PlatformClient:
    """HTTP boundary for platform APIs; maps transport failures onto the pipeline error taxonomy."""

    def __init__(self, *, timeout_seconds: float = 15.0, client: httpx.AsyncClient | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        response = await self._request("GET", url, params=params, headers=headers)
        raise_for_upstream_status(response)
        return _decode_json(response)

    async def post_form(
        self,
        url: str,
        *,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Returns the raw response so token endpoints can classify 4xx bodies themselves."""
        return await self._request("POST", url, data=data, headers=headers)

    async def fetch_media(self, url: str, *, timeout_seconds: float | None = None) -> FetchedMedia:
        response = await self._request("GET", url, timeout_seconds=timeout_seconds, follow_redirects=True)
        raise_for_upstream_status(response)
        return FetchedMedia(content=response.content, content_type=response.headers.get("content-type"))

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
        follow_redirects: bool = False,
    ) -> httpx.Response:
        merged_headers = {"User-Agent": USER_AGENT, **(headers or {})}
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        try:
            if self._client is not None:
                return await self._client.request(
                    method,
                    url,
                    params=params,
                    data=data,
                    headers=merged_headers,
                    timeout=timeout,
                    follow_redirects=follow_redirects,
                )
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=follow_redirects) as temp_client:
                return await temp_client.request(method, url, params=params, data=data, headers=merged_headers)
        except httpx.TimeoutException as exc:
            raise TransientError(f"timeout calling {_host(url)}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"network error calling {_host(url)}: {exc}") from exc


def raise_for_upstream_status(response: httpx.Response) -> None:
    status_code = response.status_code
    if status_code < 400:
        return
    if status_code in PERMANENT_STATUS_CODES:
        raise PermanentResourceError(f"upstream resource gone: HTTP {status_code}")
    if status_code in AUTH_STATUS_CODES:
        raise AuthExpired(f"upstream rejected credentials: HTTP {status_code}")
    raise TransientError(f"upstream error: HTTP {status_code}")


def _decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise TransientError("upstream returned a non-JSON body") from exc


def _host(url: str) -> str:
    try:
        return httpx.URL(url).host or url
    except httpx.InvalidURL:
        return url
