from __future__ import annotations

import hashlib
import mimetypes
import posixpath
import re
from urllib.parse import urlparse

DEFAULT_EXTENSION = "bin"
_EXTENSION_RE = re.compile(r"^[a-z0-9]{1,5}$")
_EXTENSION_ALIASES = {"jpeg": "jpg", "jpe": "jpg"}


def content_address(original_url: str) -> str:
    """Storage key for a media URL.

    Derived from the URL rather than the fetched bytes, so the same URL always
    maps to the same object and the path is known before anything is fetched.
    Two URLs serving identical bytes are stored twice.
    """
    return hashlib.sha256(original_url.encode("utf-8")).hexdigest()


def media_extension(original_url: str) -> str:
    path = urlparse(original_url.strip()).path
    _, ext = posixpath.splitext(path)
    ext = ext.lstrip(".").lower()
    ext = _EXTENSION_ALIASES.get(ext, ext)
    if not _EXTENSION_RE.match(ext):
        return DEFAULT_EXTENSION
    return ext


def storage_path(user_id: str, platform: str, original_url: str) -> str:
    return f"{user_id}/{platform}/{content_address(original_url)}.{media_extension(original_url)}"


def guess_content_type(original_url: str, header_value: str | None = None) -> str:
    if header_value:
        return header_value.split(";", maxsplit=1)[0].strip() or "application/octet-stream"
    guessed, _ = mimetypes.guess_type(f"file.{media_extension(original_url)}")
    return guessed or "application/octet-stream"
