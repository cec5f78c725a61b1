"""Small helpers shared by the client and the multipart uploader."""

import base64
import hashlib
import mimetypes
from pathlib import Path
from typing import Any

import httpx

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def mime_type(path: str | Path) -> str:
    """Guess a Content-Type from a filename extension."""
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed or DEFAULT_CONTENT_TYPE


def content_md5(data: bytes) -> str:
    """Return the base64 MD5 digest used in the Content-MD5 header."""
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def merge_headers(*layers: Any) -> httpx.Headers:
    """Merge header layers; later layers win on a case-insensitive name match.

    Each layer may be None, a mapping, an ``httpx.Headers`` or a list of
    ``(name, value)`` pairs. Non-string values are converted with ``str()``.
    """
    merged = httpx.Headers()
    for layer in layers:
        if not layer:
            continue
        if isinstance(layer, httpx.Headers):
            items = layer.multi_items()
        elif hasattr(layer, "items"):
            items = layer.items()
        else:
            items = layer
        merged.update(httpx.Headers([(name, str(value)) for name, value in items]))
    return merged
