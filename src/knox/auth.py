"""AWS Signature Version 2 request signing for knox.

Implements the canonicalization and HMAC-SHA1 signing used both for the
``Authorization`` header of every request and for query-string signed URLs.

The canonical string for a request is::

    VERB\\n
    Content-MD5\\n
    Content-Type\\n
    Date\\n
    CanonicalizedAmzHeaders\\n   (omitted when there are none)
    CanonicalizedResource

The service recomputes this string independently, so any byte of divergence
fails every request, not just some.
"""

import base64
import email.utils
import hashlib
import hmac
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

# Constants
AMZ_HEADER_PREFIX = "x-amz-"
AUTH_SCHEME = "AWS"

# Query keys that select an alternate operation on a resource. These are the
# only keys that survive into the canonical resource.
SUB_RESOURCES = frozenset(
    {
        "acl",
        "location",
        "logging",
        "notification",
        "partNumber",
        "policy",
        "requestPayment",
        "torrent",
        "uploadId",
        "uploads",
        "versionId",
        "versioning",
        "versions",
        "website",
    }
)


# -- Canonicalization ----------------------------------------------------------


def canonicalize_resource(path: str) -> str:
    """Reduce a request path to the resource string that gets signed.

    The path part is kept verbatim. Recognized sub-resource keys in the query
    are kept by name (their values are dropped); every other query key is
    stripped.

    Args:
        path: A bucket-prefixed path, optionally with a query string,
            e.g. ``/bucket/key?partNumber=1&uploadId=abc``.

    Returns:
        The canonical resource, e.g. ``/bucket/key?partNumber&uploadId``.
    """
    base, sep, query = path.partition("?")
    if not sep:
        return base

    kept: set[str] = set()
    for pair in query.split("&"):
        name = pair.split("=", 1)[0]
        if name in SUB_RESOURCES:
            kept.add(name)

    if not kept:
        return base
    return base + "?" + "&".join(sorted(kept))


def canonicalize_headers(headers: Any) -> str:
    """Build the canonicalized ``x-amz-*`` header block.

    Names are lower-cased, values trimmed, repeated names joined with commas
    in input order, and the result sorted by name with one ``name:value``
    per line.

    Args:
        headers: A mapping (values may be strings or lists of strings), an
            ``httpx.Headers``, or an iterable of ``(name, value)`` pairs.

    Returns:
        The newline-joined header block, or "" when no header qualifies.
    """
    collected: dict[str, list[str]] = {}
    for name, value in _iter_header_items(headers):
        lower_name = name.lower().strip()
        if not lower_name.startswith(AMZ_HEADER_PREFIX):
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        collected.setdefault(lower_name, []).extend(str(v).strip() for v in values)

    lines = [f"{name}:{','.join(collected[name])}" for name in sorted(collected)]
    return "\n".join(lines)


def _iter_header_items(headers: Any) -> Iterable[tuple[str, Any]]:
    """Yield ``(name, value)`` pairs from any supported header container."""
    if headers is None:
        return []
    multi_items = getattr(headers, "multi_items", None)
    if callable(multi_items):
        return multi_items()
    if isinstance(headers, Mapping):
        return headers.items()
    return headers


def http_date(date: datetime) -> str:
    """Render a datetime as an RFC 1123 HTTP-date in GMT.

    Naive datetimes are taken to be UTC.
    """
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    return email.utils.format_datetime(date.astimezone(timezone.utc), usegmt=True)


# -- String to sign --------------------------------------------------------------


def string_to_sign(
    verb: str,
    md5: str,
    content_type: str,
    date: datetime | str,
    resource: str,
    amazon_headers: str = "",
) -> str:
    """Assemble the canonical string for a header-signed request.

    Args:
        verb: HTTP method (uppercase).
        md5: The Content-MD5 header value, or "".
        content_type: The Content-Type header value, or "".
        date: The request date; a datetime is rendered as an HTTP-date.
        resource: The canonical resource from ``canonicalize_resource``.
        amazon_headers: The block from ``canonicalize_headers``.

    Returns:
        The string to sign.
    """
    if isinstance(date, datetime):
        date = http_date(date)
    headers_block = amazon_headers + "\n" if amazon_headers else ""
    return "\n".join([verb, md5 or "", content_type or "", date, headers_block + resource])


def query_string_to_sign(date: int | str, resource: str) -> str:
    """Assemble the reduced canonical string for a signed URL.

    Args:
        date: Expiry as epoch seconds.
        resource: The canonical resource.
    """
    return f"GET\n\n\n{date}\n{resource}"


# -- Signing -------------------------------------------------------------------


def hmac_sha1(secret: str, message: str) -> str:
    """Return the base64 HMAC-SHA1 of ``message`` keyed by ``secret``."""
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def sign(
    secret: str,
    verb: str,
    date: datetime | str,
    resource: str,
    content_type: str = "",
    md5: str = "",
    amazon_headers: str = "",
) -> str:
    """Compute the base64 signature of a header-signed request."""
    message = string_to_sign(verb, md5, content_type, date, resource, amazon_headers)
    return hmac_sha1(secret, message)


def authorization(
    key: str,
    secret: str,
    verb: str,
    date: datetime | str,
    resource: str,
    content_type: str = "",
    md5: str = "",
    amazon_headers: str = "",
) -> str:
    """Build the ``Authorization`` header value for a request.

    Args:
        key: The access key id.
        secret: The secret key.
        verb: HTTP method (uppercase).
        date: The value sent in the ``Date`` header.
        resource: The canonical resource.
        content_type: The Content-Type header value, or "".
        md5: The Content-MD5 header value, or "".
        amazon_headers: The canonicalized ``x-amz-*`` block.

    Returns:
        ``"AWS <key>:<signature>"``.
    """
    signature = sign(secret, verb, date, resource, content_type, md5, amazon_headers)
    return f"{AUTH_SCHEME} {key}:{signature}"


def sign_query(secret: str, date: int | str, resource: str) -> str:
    """Compute the raw base64 signature for a query-string signed URL.

    The caller embeds it (URL-encoded) alongside the access key and expiry.
    """
    return hmac_sha1(secret, query_string_to_sign(date, resource))
