from __future__ import annotations
"""Follow continuation tokens and markers across listing pages."""
from datetime import datetime
import logging
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar

from .cancellation import CancellationToken, check_cancelled
from .client import S3Client
from .models import (
    ActiveMultipartUpload,
    FolderStats,
    ListPage,
    ObjectListing,
    ObjectSummary,
    ObjectVersion,
    UploadPart,
)

DEFAULT_PAGE_SIZE = 1000

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
PageFetcher = Callable[[object], Awaitable[ListPage[T]]]
ProgressCallback = Callable[[int, int], None]


async def iter_pages(
    fetch: PageFetcher[T],
    *,
    cancel: Optional[CancellationToken] = None,
    description: str = "listing",
) -> AsyncIterator[ListPage[T]]:
    """Yield pages from ``fetch`` until the service reports no more.

    ``fetch`` receives ``None`` for the first page and afterwards the
    previous page's ``next_token``, replayed verbatim. A truncated page
    without a token ends the iteration with a warning.
    """

    token: object = None
    page_number = 0
    while True:
        check_cancelled(cancel)
        page = await fetch(token)
        page_number += 1
        LOGGER.debug(
            "%s page %d: %d entries, truncated=%s",
            description,
            page_number,
            len(page.items),
            page.is_truncated,
        )
        yield page
        if not page.is_truncated:
            return
        if page.next_token is None:
            LOGGER.warning(
                "%s page %d is truncated but carries no continuation token; stopping",
                description,
                page_number,
            )
            return
        token = page.next_token


async def collect(
    fetch: PageFetcher[T],
    *,
    cancel: Optional[CancellationToken] = None,
    progress: Optional[ProgressCallback] = None,
    description: str = "listing",
) -> list[T]:
    """Accumulate the entries of every page in page order.

    ``progress`` receives ``(entries so far, 0)`` while more pages are
    expected and ``(total, total)`` after the last one.
    """

    items: list[T] = []
    async for page in iter_pages(fetch, cancel=cancel, description=description):
        items.extend(page.items)
        if progress is not None:
            more = page.is_truncated and page.next_token is not None
            progress(len(items), 0 if more else len(items))
    return items


async def list_directory(
    client: S3Client,
    prefix: str = "",
    *,
    max_keys: Optional[int] = None,
    continuation_token: Optional[str] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    cancel: Optional[CancellationToken] = None,
) -> ObjectListing:
    """List one directory level of the client's bucket.

    Without ``max_keys`` every page is fetched. With it, listing stops once
    that many entries are gathered and the returned listing carries the
    token to resume from.
    """

    listing = ObjectListing(bucket=client.bucket, prefix=prefix)
    request_token = continuation_token
    remaining = max_keys
    while True:
        check_cancelled(cancel)
        size = page_size if remaining is None else max(1, min(remaining, page_size))
        page = await client.list_objects_page(
            prefix,
            delimiter="/",
            continuation_token=request_token,
            max_keys=size,
        )
        listing.pages += 1
        listing.objects.extend(page.items)
        LOGGER.debug(
            "Directory %r page %d: %d entries, truncated=%s",
            prefix,
            listing.pages,
            len(page.items),
            page.is_truncated,
        )
        if not page.is_truncated:
            break
        if page.next_token is None:
            LOGGER.warning("Directory listing of %r is truncated without a continuation token", prefix)
            break
        request_token = str(page.next_token)
        if remaining is not None:
            remaining -= len(page.items)
            if remaining <= 0:
                listing.has_more = True
                listing.continuation_token = request_token
                break
    return listing


async def list_all_objects(
    client: S3Client,
    prefix: str = "",
    *,
    include_prefix: bool = True,
    page_size: int = DEFAULT_PAGE_SIZE,
    cancel: Optional[CancellationToken] = None,
    progress: Optional[ProgressCallback] = None,
) -> list[ObjectSummary]:
    """Flat listing of every key under ``prefix``, including ``prefix`` itself."""

    async def fetch(token: object) -> ListPage[ObjectSummary]:
        return await client.list_objects_page(
            prefix,
            delimiter=None,
            continuation_token=token,  # type: ignore[arg-type]
            max_keys=page_size,
            include_prefix=include_prefix,
        )

    return await collect(fetch, cancel=cancel, progress=progress, description=f"Objects under {prefix!r}")


async def list_all_versions(
    client: S3Client,
    prefix: str = "",
    *,
    cancel: Optional[CancellationToken] = None,
) -> list[ObjectVersion]:
    async def fetch(token: object) -> ListPage[ObjectVersion]:
        return await client.list_versions_page(prefix, markers=token)  # type: ignore[arg-type]

    return await collect(fetch, cancel=cancel, description=f"Versions under {prefix!r}")


async def list_object_versions(
    client: S3Client,
    key: str,
    *,
    cancel: Optional[CancellationToken] = None,
) -> list[ObjectVersion]:
    """Versions of exactly ``key``; keys sharing it as a prefix are dropped."""

    versions = await list_all_versions(client, key, cancel=cancel)
    return [version for version in versions if version.key == key]


async def fetch_history(
    client: S3Client,
    prefix: str,
    start: datetime,
    end: datetime,
    *,
    cancel: Optional[CancellationToken] = None,
) -> list[ObjectVersion]:
    versions = await list_all_versions(client, prefix, cancel=cancel)
    return [
        version
        for version in versions
        if version.last_modified is not None and start <= version.last_modified <= end
    ]


async def list_multipart_uploads(
    client: S3Client,
    prefix: str = "",
    *,
    cancel: Optional[CancellationToken] = None,
) -> list[ActiveMultipartUpload]:
    async def fetch(token: object) -> ListPage[ActiveMultipartUpload]:
        return await client.list_uploads_page(prefix, markers=token)  # type: ignore[arg-type]

    return await collect(fetch, cancel=cancel, description=f"Uploads under {prefix!r}")


async def list_parts(
    client: S3Client,
    key: str,
    upload_id: str,
    *,
    cancel: Optional[CancellationToken] = None,
) -> list[UploadPart]:
    async def fetch(token: object) -> ListPage[UploadPart]:
        return await client.list_parts_page(key, upload_id, part_number_marker=token)  # type: ignore[arg-type]

    parts = await collect(fetch, cancel=cancel, description=f"Parts of {key!r}")
    return sorted(parts, key=lambda part: part.part_number)


async def folder_stats(
    client: S3Client,
    prefix: str = "",
    *,
    cancel: Optional[CancellationToken] = None,
) -> FolderStats:
    objects = await list_all_objects(client, prefix, cancel=cancel)
    files = [obj for obj in objects if not obj.is_folder]
    return FolderStats(object_count=len(files), total_size=sum(obj.size for obj in files))


def derive_folders(keys: Iterable[str], root_prefix: str = "") -> list[str]:
    """Every folder path implied by ``keys`` below ``root_prefix``, sorted."""

    folders: set[str] = set()
    for key in keys:
        if not key.startswith(root_prefix):
            continue
        segments = key[len(root_prefix):].split("/")
        # The last segment is the object name, or empty for a folder key.
        current = root_prefix
        for segment in segments[:-1]:
            if not segment:
                break
            current = f"{current}{segment}/"
            folders.add(current)
    return sorted(folders)


async def list_folders(
    client: S3Client,
    prefix: str = "",
    *,
    recursive: bool = False,
    cancel: Optional[CancellationToken] = None,
) -> list[str]:
    """Folder keys under ``prefix``: one level, or every level when ``recursive``."""

    if recursive:
        objects = await list_all_objects(client, prefix, include_prefix=False, cancel=cancel)
        return derive_folders((obj.key for obj in objects), prefix)
    listing = await list_directory(client, prefix, cancel=cancel)
    return sorted(obj.key for obj in listing.folders)
