from __future__ import annotations
"""Whole-prefix delete and rename emulated over a flat key namespace.

Neither operation is transactional. A failure or cancellation part way
leaves the prefix partially processed; a rename may leave both the old and
the new copy of entries already handled. Running the same operation again
converges on the intended result.
"""
import logging
from typing import AsyncIterator, Callable, Iterable, Optional

from .cancellation import CancellationToken, check_cancelled
from .client import S3Client
from .errors import ProtocolError
from .models import ObjectSummary, Progress
from .pagination import list_all_objects

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def processing_order(objects: Iterable[ObjectSummary]) -> list[ObjectSummary]:
    """Longest keys first, so children come before their parent folders."""

    return sorted(objects, key=lambda obj: len(obj.key), reverse=True)


async def iter_delete_recursive(
    client: S3Client,
    prefix: str,
    *,
    cancel: Optional[CancellationToken] = None,
) -> AsyncIterator[Progress]:
    objects = processing_order(await list_all_objects(client, prefix, include_prefix=True, cancel=cancel))
    total = len(objects)
    for index, obj in enumerate(objects, start=1):
        check_cancelled(cancel)
        await client.delete_object(obj.key)
        LOGGER.debug("Deleted %s (%d/%d)", obj.key, index, total)
        yield Progress(completed=index, total=total, key=obj.key)

    if prefix.endswith("/") and all(obj.key != prefix for obj in objects):
        check_cancelled(cancel)
        try:
            await client.delete_object(prefix)
        except ProtocolError as exc:
            LOGGER.warning("Ignoring failure deleting folder placeholder %s: %s", prefix, exc)


async def iter_rename_recursive(
    client: S3Client,
    old_prefix: str,
    new_prefix: str,
    *,
    cancel: Optional[CancellationToken] = None,
) -> AsyncIterator[Progress]:
    """Copy every key under ``old_prefix`` to ``new_prefix``, then delete it."""

    if old_prefix == new_prefix:
        raise ValueError("Source and destination prefixes are identical")
    objects = [
        obj
        for obj in processing_order(
            await list_all_objects(client, old_prefix, include_prefix=True, cancel=cancel)
        )
        if obj.key.startswith(old_prefix)
    ]
    total = len(objects)
    for index, obj in enumerate(objects, start=1):
        check_cancelled(cancel)
        destination = new_prefix + obj.key[len(old_prefix):]
        await client.copy_object(obj.key, destination)
        await client.delete_object(obj.key)
        LOGGER.debug("Renamed %s to %s (%d/%d)", obj.key, destination, index, total)
        yield Progress(completed=index, total=total, key=obj.key)


async def delete_recursive(
    client: S3Client,
    prefix: str,
    *,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> int:
    """Delete everything under ``prefix`` and return the number of keys removed."""

    count = 0
    async for event in iter_delete_recursive(client, prefix, cancel=cancel):
        count = event.completed
        if progress is not None:
            progress(event.completed, event.total)
    return count


async def rename_recursive(
    client: S3Client,
    old_prefix: str,
    new_prefix: str,
    *,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> int:
    count = 0
    async for event in iter_rename_recursive(client, old_prefix, new_prefix, cancel=cancel):
        count = event.completed
        if progress is not None:
            progress(event.completed, event.total)
    return count
