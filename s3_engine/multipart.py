from __future__ import annotations
"""Multipart upload state machine and the split-and-upload driver."""
import asyncio
from enum import Enum
import hashlib
import logging
from typing import Callable, Iterable, Mapping, Optional

from .cancellation import CancellationToken, check_cancelled
from .client import S3Client
from .models import ActiveMultipartUpload, UploadPart
from .pagination import list_multipart_uploads, list_parts

MIN_PART_NUMBER = 1
MAX_PART_NUMBER = 10000
MIN_PART_SIZE = 5 * 1024 * 1024
DEFAULT_PART_SIZE = MIN_PART_SIZE
DEFAULT_CONCURRENCY = 4

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class InvalidUploadStateError(RuntimeError):
    """Raised when a transition is not allowed from the upload's current state."""


class UploadState(str, Enum):
    CREATED = "created"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ABORTED = "aborted"


class MultipartUpload:
    """Local handle of one server-side multipart upload.

    Holds the ETag of every uploaded part by number; uploading the same
    number again replaces it. Parts are sorted only when the completion
    request is built.
    """

    def __init__(
        self,
        client: S3Client,
        key: str,
        upload_id: str,
        *,
        parts: Iterable[UploadPart] = (),
    ):
        self._client = client
        self.key = key
        self.upload_id = upload_id
        self._parts: dict[int, UploadPart] = {part.part_number: part for part in parts}
        self._state = UploadState.UPLOADING if self._parts else UploadState.CREATED

    @classmethod
    async def create(
        cls,
        client: S3Client,
        key: str,
        *,
        content_type: Optional[str] = None,
        metadata: Mapping[str, str] | None = None,
    ) -> "MultipartUpload":
        upload_id = await client.create_multipart_upload(key, metadata=metadata, content_type=content_type)
        LOGGER.debug("Created multipart upload %s for %s", upload_id, key)
        return cls(client, key, upload_id)

    @property
    def state(self) -> UploadState:
        return self._state

    @property
    def parts(self) -> list[UploadPart]:
        return sorted(self._parts.values(), key=lambda part: part.part_number)

    def has_part(self, part_number: int) -> bool:
        return part_number in self._parts

    def _require_open(self, action: str) -> None:
        if self._state in (UploadState.COMPLETED, UploadState.ABORTED):
            raise InvalidUploadStateError(f"Cannot {action} upload in state {self._state.value!r}")

    async def upload_part(self, part_number: int, data: bytes) -> UploadPart:
        if not MIN_PART_NUMBER <= part_number <= MAX_PART_NUMBER:
            raise ValueError(f"Part number must be between {MIN_PART_NUMBER} and {MAX_PART_NUMBER}")
        self._require_open("upload a part of")
        self._state = UploadState.UPLOADING
        etag = await self._client.upload_part(self.key, self.upload_id, part_number, data)
        part = UploadPart(part_number=part_number, etag=etag, size=len(data))
        self._parts[part_number] = part
        LOGGER.debug("Uploaded part %d of %s (%d bytes)", part_number, self.key, len(data))
        return part

    async def complete(self) -> Optional[str]:
        self._require_open("complete")
        if not self._parts:
            raise InvalidUploadStateError("Cannot complete an upload without parts")
        etag = await self._client.complete_multipart_upload(self.key, self.upload_id, self.parts)
        self._state = UploadState.COMPLETED
        LOGGER.debug("Completed multipart upload %s for %s", self.upload_id, self.key)
        return etag

    async def abort(self) -> None:
        if self._state is UploadState.ABORTED:
            return
        if self._state is UploadState.COMPLETED:
            raise InvalidUploadStateError("Cannot abort a completed upload")
        await self._client.abort_multipart_upload(self.key, self.upload_id)
        self._state = UploadState.ABORTED
        LOGGER.debug("Aborted multipart upload %s for %s", self.upload_id, self.key)


def split_parts(data: bytes, part_size: int) -> list[tuple[int, bytes]]:
    """Numbered chunks of ``data``; empty data still yields one empty part."""

    if part_size <= 0:
        raise ValueError("part_size must be greater than zero")
    if not data:
        return [(1, b"")]
    chunks = [
        (index + 1, data[offset:offset + part_size])
        for index, offset in enumerate(range(0, len(data), part_size))
    ]
    if len(chunks) > MAX_PART_NUMBER:
        raise ValueError(f"{len(chunks)} parts exceed the limit of {MAX_PART_NUMBER}; use a larger part size")
    return chunks


class MultipartUploader:
    """Uploads a buffer as parts with bounded concurrency."""

    def __init__(
        self,
        client: S3Client,
        *,
        part_size: int = DEFAULT_PART_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        if part_size <= 0:
            raise ValueError("part_size must be greater than zero")
        self._client = client
        self._part_size = part_size
        self._concurrency = max(1, concurrency)

    async def upload_bytes(
        self,
        key: str,
        data: bytes,
        *,
        content_type: Optional[str] = None,
        metadata: Mapping[str, str] | None = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        resume: bool = False,
        abort_on_error: bool = False,
    ) -> Optional[str]:
        """Upload ``data`` to ``key`` and return the final ETag.

        The payload transform runs on the whole buffer before splitting.
        If a part fails or the operation is cancelled, the upload stays on
        the server for a later retry unless ``abort_on_error`` is set.
        """

        payload = self._client.payload_transform.encode(key, data)
        chunks = split_parts(payload.data, self._part_size)
        upload = await self._resume(key, chunks, payload.metadata) if resume else None
        if upload is None:
            upload = await MultipartUpload.create(
                self._client,
                key,
                content_type=content_type,
                metadata={**dict(metadata or {}), **payload.metadata},
            )

        total = len(chunks)
        pending = [(number, chunk) for number, chunk in chunks if not upload.has_part(number)]
        completed = total - len(pending)
        if progress is not None and completed:
            progress(completed, total)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def send(number: int, chunk: bytes) -> None:
            nonlocal completed
            async with semaphore:
                check_cancelled(cancel)
                await upload.upload_part(number, chunk)
            completed += 1
            if progress is not None:
                progress(completed, total)

        tasks = [asyncio.ensure_future(send(number, chunk)) for number, chunk in pending]
        try:
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            check_cancelled(cancel)
            return await upload.complete()
        except Exception:
            if abort_on_error:
                await self._abort_quietly(upload)
            else:
                LOGGER.debug("Leaving multipart upload %s for %s in place", upload.upload_id, key)
            raise

    async def _resume(
        self,
        key: str,
        chunks: list[tuple[int, bytes]],
        metadata: Mapping[str, str],
    ) -> Optional[MultipartUpload]:
        uploads = [upload for upload in await list_multipart_uploads(self._client, key) if upload.key == key]
        if not uploads:
            return None
        existing = uploads[-1]
        if metadata:
            # Metadata is fixed when the upload is created; fresh transform output needs a new upload.
            LOGGER.debug("Payload metadata present; aborting upload %s and starting over", existing.upload_id)
            await self._client.abort_multipart_upload(key, existing.upload_id)
            return None
        parts = await list_parts(self._client, key, existing.upload_id)
        if parts and parts[0].size != self._part_size and len(chunks) > 1:
            LOGGER.debug("Part size of upload %s differs; aborting it and starting over", existing.upload_id)
            await self._client.abort_multipart_upload(key, existing.upload_id)
            return None
        digests = {number: hashlib.md5(chunk).hexdigest() for number, chunk in chunks}
        reusable = [part for part in parts if digests.get(part.part_number) == part.etag.strip('"').lower()]
        LOGGER.debug(
            "Resuming upload %s for %s with %d of %d parts", existing.upload_id, key, len(reusable), len(parts)
        )
        return MultipartUpload(self._client, key, existing.upload_id, parts=reusable)

    async def _abort_quietly(self, upload: MultipartUpload) -> None:
        try:
            await upload.abort()
        except Exception as exc:
            LOGGER.warning("Failed to abort multipart upload %s: %s", upload.upload_id, exc)


async def abort_all(
    client: S3Client,
    uploads: Iterable[ActiveMultipartUpload],
) -> list[tuple[ActiveMultipartUpload, Exception]]:
    """Abort every upload; failures are collected and returned."""

    failures: list[tuple[ActiveMultipartUpload, Exception]] = []
    for upload in uploads:
        try:
            await client.abort_multipart_upload(upload.key, upload.upload_id)
        except Exception as exc:
            LOGGER.warning("Failed to abort upload %s for %s: %s", upload.upload_id, upload.key, exc)
            failures.append((upload, exc))
    return failures
