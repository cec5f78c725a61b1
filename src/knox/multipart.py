"""Multipart upload orchestration for knox.

Drives one upload through its lifecycle:
    - SizeCheck: payloads below the minimum part size go up as a single PUT
    - PlanChunks: pick a chunk size and part count within service limits
    - Initiate (POST /{bucket}/{key}?uploads)
    - UploadPart, concurrently (PUT /{bucket}/{key}?partNumber&uploadId)
    - CompleteMultipartUpload (POST /{bucket}/{key}?uploadId)

Any part failure fails the whole session: the remaining in-flight parts are
cancelled, the upload is aborted (DELETE /{bucket}/{key}?uploadId) unless
disabled, and the first error is raised to the caller. Completion is only
sent once every part's ETag has been recorded.
"""

import asyncio
import logging
import os
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator
from xml.sax.saxutils import escape as _sax_escape

from knox import metrics
from knox.config import MAX_PARTS, MIN_PART_SIZE
from knox.errors import (
    CompletionError,
    KnoxError,
    PartUploadError,
    UploadInitiationError,
    UploadTimeoutError,
    extract_element,
)
from knox.utils import DEFAULT_CONTENT_TYPE, content_md5, merge_headers, mime_type

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Chunk planning
# ---------------------------------------------------------------------------


@dataclass
class Part:
    """One numbered byte range of the source payload.

    Attributes:
        part_number: 1-based sequential part number.
        offset: Byte offset of the range within the payload.
        length: Number of bytes in the range.
        etag: The ETag the service returned for this part, once stored.
    """

    part_number: int
    offset: int
    length: int
    etag: str | None = None


@dataclass(frozen=True)
class ChunkPlan:
    """How a payload of ``total_size`` bytes is split into parts."""

    total_size: int
    chunk_size: int
    num_chunks: int

    def parts(self) -> Iterator[Part]:
        """Yield the parts in ascending part-number order."""
        for index in range(self.num_chunks):
            offset = index * self.chunk_size
            yield Part(
                part_number=index + 1,
                offset=offset,
                length=min(self.chunk_size, self.total_size - offset),
            )


def plan_chunks(
    total_size: int,
    min_part_size: int = MIN_PART_SIZE,
    max_parts: int = MAX_PARTS,
) -> ChunkPlan:
    """Choose a chunk size and part count for a multipart upload.

    The chunk size never drops below ``min_part_size``; once the payload
    exceeds ``max_parts * min_part_size`` the chunk size grows instead of the
    part count.

    Args:
        total_size: Payload size in bytes.
        min_part_size: Smallest allowed part (all but the last).
        max_parts: Largest allowed part count.

    Returns:
        A ChunkPlan with ``chunk_size >= min_part_size``,
        ``num_chunks <= max_parts`` and ``num_chunks * chunk_size >= total_size``.

    Raises:
        ValueError: If the payload is smaller than ``min_part_size``.
    """
    if total_size < min_part_size:
        raise ValueError(
            f"Payload of {total_size} bytes is below the minimum part size {min_part_size}"
        )
    chunk_size = max(min_part_size, -(-total_size // max_parts))
    num_chunks = -(-total_size // chunk_size)
    return ChunkPlan(total_size=total_size, chunk_size=chunk_size, num_chunks=num_chunks)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class UploadState(str, Enum):
    """Lifecycle states of a multipart upload session."""

    INITIATED = "initiated"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class MultipartUploadSession:
    """Per-upload state: the upload id and the part -> ETag registry.

    ETag recording is serialized through a lock; the call that records the
    last outstanding part reports it so completion can proceed.

    Attributes:
        upload_id: The id issued by the service at initiation.
        parts: Parts keyed by part number.
        num_chunks: Total number of parts.
        state: Current UploadState.
        error: The error that failed the session, if any.
    """

    def __init__(self, upload_id: str, parts: list[Part]) -> None:
        self.upload_id = upload_id
        self.parts = {part.part_number: part for part in parts}
        self.num_chunks = len(parts)
        self.state = UploadState.INITIATED
        self.error: BaseException | None = None
        self._remaining = self.num_chunks
        self._lock = asyncio.Lock()

    @property
    def all_recorded(self) -> bool:
        return self._remaining == 0

    async def record(self, part_number: int, etag: str) -> bool:
        """Record the ETag returned for ``part_number``.

        Returns:
            True when this call recorded the last outstanding part.

        Raises:
            ValueError: If the part number is unknown or already recorded.
        """
        async with self._lock:
            part = self.parts.get(part_number)
            if part is None:
                raise ValueError(f"Part number {part_number} is not in 1..{self.num_chunks}")
            if part.etag is not None:
                raise ValueError(f"Part {part_number} already has an ETag")
            part.etag = etag
            self._remaining -= 1
            return self._remaining == 0

    def completion_body(self) -> str:
        """Render the CompleteMultipartUpload body, parts in ascending order.

        Raises:
            ValueError: If any part has no ETag yet.
        """
        missing = [n for n, part in sorted(self.parts.items()) if part.etag is None]
        if missing:
            raise ValueError(f"Parts without an ETag: {missing}")

        parts = ["<CompleteMultipartUpload>"]
        for part_number in sorted(self.parts):
            etag = _sax_escape(self.parts[part_number].etag)
            parts.append(
                f"<Part><PartNumber>{part_number}</PartNumber><ETag>{etag}</ETag></Part>"
            )
        parts.append("</CompleteMultipartUpload>")
        return "".join(parts)

    def start(self) -> None:
        self.state = UploadState.UPLOADING

    def complete(self) -> None:
        self.state = UploadState.COMPLETED

    def fail(self, error: BaseException) -> None:
        if self.state is not UploadState.FAILED:
            self.state = UploadState.FAILED
            self.error = error


def parse_upload_id(body: str) -> str:
    """Extract the upload id from an InitiateMultipartUploadResult body.

    Only the ``<UploadId>``/``</UploadId>`` markers are located; the rest of
    the body is not parsed.

    Raises:
        UploadInitiationError: If the markers are missing or enclose nothing.
    """
    upload_id = extract_element(body, "UploadId").strip()
    if not upload_id:
        raise UploadInitiationError("Initiate response carried no UploadId")
    return upload_id


# ---------------------------------------------------------------------------
# Payload sources
# ---------------------------------------------------------------------------


class FileSource:
    """A file on disk read in positioned chunks.

    One handle is shared by all parts; each read takes the lock so the
    seek+read pair is never interleaved, and runs off the event loop.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.content_type = mime_type(self.path)
        self._fh = None
        self._lock = asyncio.Lock()

    def __enter__(self) -> "FileSource":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    async def size(self) -> int:
        stat = await asyncio.to_thread(os.stat, self.path)
        return stat.st_size

    async def read(self, offset: int, length: int) -> bytes:
        async with self._lock:
            return await asyncio.to_thread(self._read_at, offset, length)

    def _read_at(self, offset: int, length: int) -> bytes:
        if self._fh is None:
            self._fh = open(self.path, "rb")
        self._fh.seek(offset)
        return self._fh.read(length)


class BufferSource:
    """An in-memory payload."""

    def __init__(self, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> None:
        self._data = memoryview(data)
        self.content_type = content_type

    async def size(self) -> int:
        return len(self._data)

    async def read(self, offset: int, length: int) -> bytes:
        return bytes(self._data[offset : offset + length])


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class MultipartUploader:
    """Uploads one payload per ``upload()`` call through a Client.

    Attributes:
        client: The knox Client used for every request.
        min_part_size: Smallest part the service accepts (all but the last).
        max_parts: Largest part count the service accepts.
        concurrency: Maximum number of parts in flight at once.
        abort_on_failure: Send an abort request when a started upload fails.
    """

    def __init__(
        self,
        client: Any,
        min_part_size: int = MIN_PART_SIZE,
        max_parts: int = MAX_PARTS,
        concurrency: int = 8,
        abort_on_failure: bool = True,
    ) -> None:
        if min_part_size < 1:
            raise ValueError("min_part_size must be at least 1")
        if max_parts < 1:
            raise ValueError("max_parts must be at least 1")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.client = client
        self.min_part_size = min_part_size
        self.max_parts = max_parts
        self.concurrency = concurrency
        self.abort_on_failure = abort_on_failure

    async def upload(
        self,
        source: Any,
        filename: str,
        headers: Any = None,
        timeout: float | None = None,
    ) -> str:
        """Upload ``source`` as ``filename``.

        Args:
            source: A FileSource or BufferSource.
            filename: The object key.
            headers: Extra headers for the initiate (or single PUT) request.
            timeout: Optional deadline in seconds for the part uploads.

        Returns:
            The body of the completion response, or of the single PUT when the
            payload is below the minimum part size.

        Raises:
            UploadInitiationError: If the upload could not be started.
            PartUploadError: If any part failed.
            CompletionError: If the completion call failed.
            UploadTimeoutError: If ``timeout`` expired during the part uploads.
            TransportError: On a connection-level failure of any request.
        """
        total_size = await source.size()
        headers = merge_headers({"Content-Type": source.content_type}, headers)

        if total_size < self.min_part_size:
            logger.info(
                "Payload for %s is %d bytes, below the %d byte minimum part size; "
                "sending a single PUT",
                filename,
                total_size,
                self.min_part_size,
            )
            data = await source.read(0, total_size)
            response = await self.client.put_buffer(data, filename, headers)
            return response.text

        plan = plan_chunks(total_size, self.min_part_size, self.max_parts)
        session = await self._initiate(filename, headers, plan)

        try:
            try:
                await asyncio.wait_for(self._upload_parts(source, filename, session), timeout)
            except asyncio.TimeoutError:
                raise UploadTimeoutError(timeout, session.upload_id) from None
            body = await self._complete(filename, session)
        except Exception as exc:
            session.fail(exc)
            metrics.record_upload("failed")
            logger.error(
                "Multipart upload %s of %s failed: %s",
                session.upload_id,
                filename,
                exc,
                extra={"upload_id": session.upload_id},
            )
            if self.abort_on_failure:
                await self._abort(filename, session)
            raise
        except asyncio.CancelledError as exc:
            session.fail(exc)
            raise

        session.complete()
        metrics.record_upload("completed")
        logger.info(
            "Completed multipart upload %s of %s (%d parts)",
            session.upload_id,
            filename,
            session.num_chunks,
            extra={"upload_id": session.upload_id},
        )
        return body

    # -- Steps -----------------------------------------------------------------

    def _upload_id_query(self, session: MultipartUploadSession) -> str:
        return "uploadId=" + urllib.parse.quote(session.upload_id, safe="")

    async def _initiate(self, filename: str, headers: Any, plan: ChunkPlan) -> MultipartUploadSession:
        request = self.client.request("POST", f"{filename}?uploads", headers)
        response = await self.client.send(request)
        if not response.is_success:
            raise UploadInitiationError.from_response(response)

        upload_id = parse_upload_id(response.text)
        session = MultipartUploadSession(upload_id, list(plan.parts()))
        logger.info(
            "Initiated multipart upload %s of %s: %d parts of %d bytes",
            upload_id,
            filename,
            plan.num_chunks,
            plan.chunk_size,
            extra={"upload_id": upload_id},
        )
        return session

    async def _upload_parts(
        self, source: Any, filename: str, session: MultipartUploadSession
    ) -> None:
        """Upload every part concurrently; the first failure cancels the rest."""
        session.start()
        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [
            asyncio.create_task(self._upload_part(source, filename, session, part, semaphore))
            for part in session.parts.values()
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            failed = [
                task for task in done if not task.cancelled() and task.exception() is not None
            ]
            if failed:
                first = min(failed, key=lambda task: getattr(task.exception(), "part_number", 0))
                raise first.exception()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if not session.all_recorded:
            raise PartUploadError(f"Upload {session.upload_id} finished with parts missing")

    async def _upload_part(
        self,
        source: Any,
        filename: str,
        session: MultipartUploadSession,
        part: Part,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            data = await source.read(part.offset, part.length)
            if len(data) != part.length:
                metrics.record_part("failed")
                raise PartUploadError(
                    f"Short read for part {part.part_number}: "
                    f"expected {part.length} bytes, got {len(data)}",
                    part_number=part.part_number,
                )

            headers = {
                "Content-Length": str(len(data)),
                "Content-MD5": content_md5(data),
            }
            resource = f"{filename}?partNumber={part.part_number}&{self._upload_id_query(session)}"
            request = self.client.request("PUT", resource, headers, content=data)
            response = await self.client.send(request)

        if not response.is_success:
            metrics.record_part("failed")
            logger.warning(
                "Part %d of upload %s failed with status %d",
                part.part_number,
                session.upload_id,
                response.status_code,
                extra={"upload_id": session.upload_id, "part_number": part.part_number},
            )
            raise PartUploadError.from_response(response, part_number=part.part_number)

        etag = response.headers.get("ETag")
        if not etag:
            metrics.record_part("failed")
            raise PartUploadError(
                f"Part {part.part_number} of upload {session.upload_id} returned no ETag",
                part_number=part.part_number,
                status_code=response.status_code,
                response=response,
            )

        metrics.record_part("uploaded")
        if await session.record(part.part_number, etag):
            logger.debug(
                "All %d parts of upload %s recorded",
                session.num_chunks,
                session.upload_id,
                extra={"upload_id": session.upload_id},
            )

    async def _complete(self, filename: str, session: MultipartUploadSession) -> str:
        body = session.completion_body().encode("utf-8")
        request = self.client.request(
            "POST",
            f"{filename}?{self._upload_id_query(session)}",
            {"Content-Length": str(len(body))},
            content=body,
        )
        response = await self.client.send(request)
        text = response.text
        # The service can report a completion failure inside a 200 response.
        if not response.is_success or "<Error>" in text:
            raise CompletionError.from_response(response)
        return text

    async def _abort(self, filename: str, session: MultipartUploadSession) -> None:
        """Best-effort abort of a failed upload; failures are only logged."""
        request = self.client.request("DELETE", f"{filename}?{self._upload_id_query(session)}")
        try:
            response = await self.client.send(request)
        except KnoxError as exc:
            logger.warning("Could not abort multipart upload %s: %s", session.upload_id, exc)
            return
        if not response.is_success:
            logger.warning(
                "Abort of multipart upload %s returned status %d",
                session.upload_id,
                response.status_code,
            )
