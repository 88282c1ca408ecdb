from __future__ import annotations
"""File and folder transfers between the local filesystem and a bucket.

Large downloads are fetched in byte-range segments into a ``.part`` file
next to the destination, so a download that was interrupted continues
from where the partial file ends. Folder transfers issue one request per
file and, like the recursive operations, are not transactional.
"""
import asyncio
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable, Optional

from .cancellation import CancellationToken, check_cancelled
from .client import IdentityTransform, S3Client
from .errors import DecodeError
from .pagination import DEFAULT_PAGE_SIZE, list_all_objects
from .utils import compose_s3_key

LOGGER = logging.getLogger(__name__)

MIB = 1024 * 1024
RANGE_SEGMENT_SIZE = 5 * MIB
RANGE_DOWNLOAD_THRESHOLD = 100 * MIB
PARTIAL_SUFFIX = ".part"

ProgressCallback = Callable[[int, int], None]
FileUpload = Callable[[str, Path], Awaitable[object]]
FileDownload = Callable[[str, Path], Awaitable[int]]


def partial_path(destination: Path) -> Path:
    return destination.with_name(destination.name + PARTIAL_SUFFIX)


def _append(path: Path, data: bytes) -> None:
    with path.open("ab") as handle:
        handle.write(data)


async def download_ranges(
    client: S3Client,
    key: str,
    destination: str | Path,
    size: int,
    *,
    version_id: Optional[str] = None,
    segment_size: int = RANGE_SEGMENT_SIZE,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> int:
    """Fetch ``size`` bytes of ``key`` one segment at a time.

    Segments are appended to the ``.part`` sibling of ``destination``. A
    partial file left by an earlier attempt is continued from its end,
    unless it is already longer than the object, in which case it is
    discarded. The finished file is renamed over ``destination``.

    Range reads return the stored bytes, so this is only correct when the
    client's payload transform is the identity.
    """

    if segment_size <= 0:
        raise ValueError("segment_size must be positive")
    destination = Path(destination)
    partial = partial_path(destination)
    offset = partial.stat().st_size if partial.exists() else 0
    if offset > size:
        LOGGER.debug("Discarding partial %s: %d bytes on disk, object has %d", partial, offset, size)
        offset = 0
    elif offset:
        LOGGER.debug("Resuming download of %s at byte %d of %d", key, offset, size)
    if offset == 0:
        await asyncio.to_thread(partial.write_bytes, b"")

    while offset < size:
        check_cancelled(cancel)
        end = min(offset + segment_size, size) - 1
        data = await client.get_object_range(key, offset, end, version_id=version_id)
        if not data:
            raise DecodeError(f"Empty range response for {key} at byte {offset}")
        await asyncio.to_thread(_append, partial, data)
        offset += len(data)
        if progress is not None:
            progress(min(offset, size), size)
    await asyncio.to_thread(os.replace, partial, destination)
    return offset


async def download_file(
    client: S3Client,
    key: str,
    destination: str | Path,
    *,
    version_id: Optional[str] = None,
    segment_size: int = RANGE_SEGMENT_SIZE,
    threshold: int = RANGE_DOWNLOAD_THRESHOLD,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> int:
    """Download one object, in resumable ranges when it is large.

    Objects stored through a non-identity payload transform are always
    fetched whole, because the transform decodes complete bodies only.
    """

    destination = Path(destination)
    if isinstance(client.payload_transform, IdentityTransform):
        metadata = await client.head_object(key, version_id=version_id)
        if metadata.size is not None and metadata.size > threshold:
            return await download_ranges(
                client,
                key,
                destination,
                metadata.size,
                version_id=version_id,
                segment_size=segment_size,
                progress=progress,
                cancel=cancel,
            )
    check_cancelled(cancel)
    data = await client.get_object(key, version_id=version_id)
    await asyncio.to_thread(destination.write_bytes, data)
    if progress is not None:
        progress(len(data), len(data))
    return len(data)


def local_files(source_dir: Path) -> list[tuple[str, Path]]:
    """Regular files under ``source_dir`` with their relative POSIX paths.

    Anything inside a hidden file or folder is skipped.
    """

    found = []
    for path in sorted(source_dir.rglob("*")):
        relative = path.relative_to(source_dir)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if path.is_file():
            found.append((relative.as_posix(), path))
    return found


async def upload_folder(
    client: S3Client,
    source_dir: str | Path,
    target_prefix: str,
    *,
    upload_file: Optional[FileUpload] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> list[str]:
    """Upload every file below ``source_dir`` under ``target_prefix``.

    Each file goes to ``target_prefix`` plus its path relative to
    ``source_dir``. ``upload_file`` replaces the plain PUT, e.g. to switch
    large files to multipart. Progress counts files.
    """

    source_dir = Path(source_dir)
    if not source_dir.is_dir():
        raise NotADirectoryError(f"{source_dir} is not a directory")
    files = await asyncio.to_thread(local_files, source_dir)
    total = len(files)
    uploaded: list[str] = []
    for index, (relative, path) in enumerate(files, start=1):
        check_cancelled(cancel)
        key = compose_s3_key(target_prefix, relative)
        if upload_file is None:
            data = await asyncio.to_thread(path.read_bytes)
            await client.put_object(key, data)
        else:
            await upload_file(key, path)
        uploaded.append(key)
        LOGGER.debug("Uploaded %s as %s (%d/%d)", path, key, index, total)
        if progress is not None:
            progress(index, total)
    return uploaded


async def download_folder(
    client: S3Client,
    prefix: str,
    destination_dir: str | Path,
    *,
    download: Optional[FileDownload] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> list[Path]:
    """Download every object under ``prefix`` into ``destination_dir``.

    Folder placeholders are skipped; local subfolders are created from the
    key path below ``prefix``. Keys whose remainder would climb out of
    ``destination_dir`` are skipped with a warning. Progress counts files.
    """

    destination_dir = Path(destination_dir)
    listing = await list_all_objects(client, prefix, include_prefix=False, page_size=page_size, cancel=cancel)
    objects = [obj for obj in listing if not obj.is_folder]
    total = len(objects)
    written: list[Path] = []
    for index, obj in enumerate(objects, start=1):
        check_cancelled(cancel)
        relative = PurePosixPath(obj.key[len(prefix):].lstrip("/"))
        if not relative.parts or ".." in relative.parts:
            LOGGER.warning("Skipping %s: key does not map to a file inside %s", obj.key, destination_dir)
            continue
        target = destination_dir.joinpath(*relative.parts)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        if download is None:
            await download_file(client, obj.key, target, cancel=cancel)
        else:
            await download(obj.key, target)
        written.append(target)
        LOGGER.debug("Downloaded %s to %s (%d/%d)", obj.key, target, index, total)
        if progress is not None:
            progress(index, total)
    return written
