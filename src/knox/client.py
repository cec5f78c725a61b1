"""Storage service client for knox.

The client builds signed requests against a single bucket and sends them
through a shared ``httpx.AsyncClient``. Every request is addressed as
``/<bucket>/<key>`` on the configured endpoint and carries an
``Authorization`` header computed from its final header set.
"""

import asyncio
import logging
import os
import time
import urllib.parse
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from knox import auth, metrics
from knox.config import KnoxConfig, MultipartConfig
from knox.errors import ConfigurationError, ResponseError, TransportError
from knox.multipart import BufferSource, FileSource, MultipartUploader
from knox.utils import DEFAULT_CONTENT_TYPE, content_md5, merge_headers, mime_type

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "s3.amazonaws.com"

# Streaming chunk size for put_stream when given a file object: 64 KB
_CHUNK_SIZE = 64 * 1024


class Client:
    """Signed-request client bound to one bucket.

    Attributes:
        key: The access key id.
        bucket: The bucket every request is addressed to.
        endpoint: Host name of the storage service.
        port: TCP port of the storage service.
        secure: Whether requests go over HTTPS.
        multipart: Multipart upload tuning.
    """

    def __init__(
        self,
        key: str = "",
        secret: str = "",
        bucket: str = "",
        endpoint: str = DEFAULT_ENDPOINT,
        port: int | None = None,
        secure: bool = False,
        timeout: float | None = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        multipart: MultipartConfig | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            key: The access key id.
            secret: The secret key used for signing.
            bucket: Bucket name.
            endpoint: Host name of the storage service.
            port: TCP port. Defaults to 443 when secure, otherwise 80.
            secure: Use HTTPS instead of HTTP.
            timeout: Per-request timeout in seconds, None for no timeout.
            transport: Optional httpx transport (tests mount a fake service here).
            multipart: Multipart upload tuning. Defaults to MultipartConfig().

        Raises:
            ConfigurationError: If key, secret or bucket is missing.
        """
        if not key:
            raise ConfigurationError('"key" required')
        if not secret:
            raise ConfigurationError('"secret" required')
        if not bucket:
            raise ConfigurationError('"bucket" required')

        self.key = key
        self._secret = secret
        self.bucket = bucket
        self.endpoint = endpoint or DEFAULT_ENDPOINT
        self.secure = secure
        self.port = port if port is not None else (443 if secure else 80)
        self.multipart = multipart or MultipartConfig()
        self._http = httpx.AsyncClient(transport=transport, timeout=timeout)

    @classmethod
    def from_config(
        cls, config: KnoxConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> "Client":
        """Create a client from a loaded KnoxConfig."""
        return cls(
            key=config.client.key,
            secret=config.client.secret,
            bucket=config.client.bucket,
            endpoint=config.client.endpoint,
            port=config.client.port,
            secure=config.client.secure,
            timeout=config.client.timeout,
            transport=transport,
            multipart=config.multipart,
        )

    def __repr__(self) -> str:
        return f"Client(bucket={self.bucket!r}, endpoint={self.endpoint!r}, port={self.port})"

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._http.aclose()

    # -- Addressing ------------------------------------------------------------

    def _netloc(self, scheme: str) -> str:
        default_port = 443 if scheme == "https" else 80
        if self.port == default_port:
            return self.endpoint
        return f"{self.endpoint}:{self.port}"

    def _object_path(self, filename: str) -> str:
        """Map a key (optionally carrying a query string) to ``/<bucket>/<key>``.

        The key part is percent-encoded; the query part is passed through.
        """
        key, sep, query = filename.partition("?")
        path = "/" + self.bucket + "/" + urllib.parse.quote(key.lstrip("/"), safe="/~")
        return path + sep + query

    def url(self, filename: str) -> str:
        """Return the plain HTTP URL of an object."""
        return f"http://{self._netloc('http')}{self._object_path(filename)}"

    http = url

    def https(self, filename: str) -> str:
        """Return the HTTPS URL of an object."""
        return f"https://{self._netloc('https')}{self._object_path(filename)}"

    def signed_url(self, filename: str, expiration: datetime | int) -> str:
        """Return a pre-signed GET URL valid until ``expiration``.

        Args:
            filename: The object key.
            expiration: Expiry as a datetime (naive values are UTC) or as
                epoch seconds.

        Returns:
            The object URL with ``Expires``, ``AWSAccessKeyId`` and
            ``Signature`` query parameters.
        """
        if isinstance(expiration, datetime):
            if expiration.tzinfo is None:
                expiration = expiration.replace(tzinfo=timezone.utc)
            epoch = int(expiration.timestamp())
        else:
            epoch = int(expiration)

        resource = urllib.parse.urlsplit(self._object_path(filename)).path
        signature = auth.sign_query(self._secret, epoch, resource)
        base = self.url(filename) if not self.secure else self.https(filename)
        return (
            f"{base}?Expires={epoch}"
            f"&AWSAccessKeyId={self.key}"
            f"&Signature={urllib.parse.quote(signature, safe='')}"
        )

    # -- Request building ------------------------------------------------------

    def request(
        self,
        method: str,
        filename: str,
        headers: Any = None,
        content: Any = None,
    ) -> httpx.Request:
        """Build a signed request for ``filename``; nothing is sent.

        Caller headers win over the ``Date`` and ``Host`` defaults. The
        ``Authorization`` header is always computed last, from the final
        merged header set, and replaces any caller-supplied value.

        Args:
            method: HTTP method.
            filename: Object key, optionally followed by a sub-resource
                query string such as ``?uploads``.
            headers: Extra request headers.
            content: Request body (bytes or an async byte iterator).

        Returns:
            An ``httpx.Request`` ready for ``send()``.
        """
        method = method.upper()
        defaults = {
            "Date": auth.http_date(datetime.now(timezone.utc)),
            "Host": self.endpoint,
        }
        merged = merge_headers(defaults, headers)
        merged.pop("Authorization", None)

        path = self._object_path(filename)
        merged["Authorization"] = auth.authorization(
            key=self.key,
            secret=self._secret,
            verb=method,
            date=merged["Date"],
            resource=auth.canonicalize_resource(path),
            content_type=merged.get("Content-Type", ""),
            md5=merged.get("Content-MD5", ""),
            amazon_headers=auth.canonicalize_headers(merged),
        )

        scheme = "https" if self.secure else "http"
        url = f"{scheme}://{self._netloc(scheme)}{path}"
        return self._http.build_request(method, url, headers=merged, content=content)

    def put(self, filename: str, headers: Any = None, content: Any = None) -> httpx.Request:
        """Build a PUT request with ``Expect: 100-continue`` and a public-read ACL by default."""
        headers = merge_headers({"Expect": "100-continue", "x-amz-acl": "public-read"}, headers)
        return self.request("PUT", filename, headers, content)

    def get(self, filename: str, headers: Any = None) -> httpx.Request:
        return self.request("GET", filename, headers)

    def head(self, filename: str, headers: Any = None) -> httpx.Request:
        return self.request("HEAD", filename, headers)

    def delete(self, filename: str, headers: Any = None) -> httpx.Request:
        return self.request("DELETE", filename, headers)

    del_ = delete

    # -- Sending ---------------------------------------------------------------

    async def send(self, request: httpx.Request) -> httpx.Response:
        """Send a built request and return the response, body read.

        Raises:
            TransportError: If the request could not be completed.
        """
        start = time.monotonic()
        try:
            response = await self._http.send(request)
        except httpx.TransportError as exc:
            metrics.record_request(request.method, "error")
            logger.debug("%s %s failed: %s", request.method, request.url.path, exc)
            raise TransportError(f"{request.method} {request.url.path} failed: {exc}") from exc

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        sent = int(request.headers.get("Content-Length", "0") or 0)
        metrics.record_request(request.method, response.status_code, sent=sent)
        logger.debug(
            "%s %s -> %d",
            request.method,
            request.url.path,
            response.status_code,
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response

    async def _execute(self, request: httpx.Request) -> httpx.Response:
        """Send a request and raise ResponseError on a non-success status."""
        response = await self.send(request)
        if not response.is_success:
            raise ResponseError.from_response(response)
        return response

    # -- Single-shot operations ------------------------------------------------

    async def put_buffer(self, data: bytes, filename: str, headers: Any = None) -> httpx.Response:
        """PUT an in-memory buffer as ``filename``.

        ``Content-Length``, ``Content-MD5`` and a default Content-Type are
        derived from ``data``; caller headers override them.
        """
        defaults = {
            "Content-Length": str(len(data)),
            "Content-Type": DEFAULT_CONTENT_TYPE,
            "Content-MD5": content_md5(data),
        }
        return await self._execute(self.put(filename, merge_headers(defaults, headers), data))

    async def put_file(self, src: str | Path, filename: str, headers: Any = None) -> httpx.Response:
        """PUT the file at ``src`` as ``filename``.

        Reads the whole file into memory; use ``put_multipart_file`` or
        ``put_stream`` for large files.
        """
        data = await asyncio.to_thread(Path(src).read_bytes)
        headers = merge_headers({"Content-Type": mime_type(src)}, headers)
        return await self.put_buffer(data, filename, headers)

    async def put_stream(
        self,
        stream: Any,
        filename: str,
        size: int | None = None,
        headers: Any = None,
    ) -> httpx.Response:
        """PUT a byte stream as ``filename`` without buffering it.

        Args:
            stream: A binary file object, a sync iterable of bytes or an async
                iterable of bytes.
            filename: The object key.
            size: Total byte length. Taken from the file on disk when the
                stream is a named file object.
            headers: Extra request headers.

        Raises:
            ValueError: If the length is unknown.
        """
        name = getattr(stream, "name", None)
        if not isinstance(name, (str, os.PathLike)):
            name = None
        if size is None and name is not None:
            size = (await asyncio.to_thread(os.stat, name)).st_size
        if size is None:
            raise ValueError("put_stream needs a size for streams without a file on disk")

        defaults = {
            "Content-Length": str(size),
            "Content-Type": mime_type(name) if name is not None else DEFAULT_CONTENT_TYPE,
        }
        content = _aiter_bytes(stream)
        return await self._execute(self.put(filename, merge_headers(defaults, headers), content))

    async def get_file(self, filename: str, headers: Any = None) -> httpx.Response:
        return await self._execute(self.get(filename, headers))

    async def head_file(self, filename: str, headers: Any = None) -> httpx.Response:
        return await self._execute(self.head(filename, headers))

    async def delete_file(self, filename: str, headers: Any = None) -> httpx.Response:
        return await self._execute(self.delete(filename, headers))

    # -- Multipart -------------------------------------------------------------

    def _uploader(self) -> MultipartUploader:
        return MultipartUploader(
            self,
            min_part_size=self.multipart.min_part_size,
            max_parts=self.multipart.max_parts,
            concurrency=self.multipart.concurrency,
            abort_on_failure=self.multipart.abort_on_failure,
        )

    async def put_multipart_file(
        self,
        src: str | Path,
        filename: str,
        headers: Any = None,
        timeout: float | None = None,
    ) -> str:
        """Upload the file at ``src`` in concurrent parts.

        Files smaller than the minimum part size go up as one PUT instead.

        Args:
            src: Path of the file to upload.
            filename: The object key.
            headers: Extra headers for the initiate (or single PUT) request.
            timeout: Optional deadline in seconds for the part uploads.

        Returns:
            The body of the service's completion (or single PUT) response.
        """
        with FileSource(src) as source:
            return await self._uploader().upload(source, filename, headers, timeout=timeout)

    async def put_multipart_buffer(
        self,
        data: bytes,
        filename: str,
        headers: Any = None,
        timeout: float | None = None,
    ) -> str:
        """Upload an in-memory buffer in concurrent parts."""
        source = BufferSource(data)
        return await self._uploader().upload(source, filename, headers, timeout=timeout)


async def _aiter_bytes(stream: Any) -> AsyncIterator[bytes]:
    """Adapt a file object or (a)sync byte iterable to an async byte iterator."""
    if isinstance(stream, AsyncIterable):
        async for chunk in stream:
            yield chunk
        return

    read = getattr(stream, "read", None)
    if callable(read):
        while True:
            chunk = await asyncio.to_thread(read, _CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
        return

    if isinstance(stream, Iterable):
        for chunk in stream:
            yield chunk
        return

    raise TypeError(f"Unsupported stream type: {type(stream).__name__}")


def create_client(**options: Any) -> Client:
    """Shortcut for ``Client(**options)``."""
    return Client(**options)
