from __future__ import annotations
"""Point-in-time bucket snapshots and the differences between two of them."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional
import uuid

from .cancellation import CancellationToken
from .client import S3Client
from .errors import DecodeError
from .models import ObjectSummary
from .pagination import list_all_objects
from .parsers import parse_timestamp

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotEntry:
    size: int
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    is_folder: bool = False


@dataclass(frozen=True)
class BucketSnapshot:
    """Key index of a full listing, built once in key order and never mutated."""

    id: str
    bucket: str
    captured_at: datetime
    entries: Mapping[str, SnapshotEntry]
    prefix: str = ""

    @classmethod
    def from_objects(
        cls,
        bucket: str,
        objects: Iterable[ObjectSummary],
        *,
        prefix: str = "",
        captured_at: Optional[datetime] = None,
        snapshot_id: Optional[str] = None,
    ) -> "BucketSnapshot":
        entries = {
            obj.key: SnapshotEntry(
                size=obj.size,
                last_modified=obj.last_modified,
                etag=obj.etag,
                is_folder=obj.is_folder,
            )
            for obj in sorted(objects, key=lambda obj: obj.key)
        }
        return cls(
            id=snapshot_id or str(uuid.uuid4()),
            bucket=bucket,
            captured_at=captured_at or datetime.now(timezone.utc),
            entries=MappingProxyType(entries),
            prefix=prefix,
        )

    @property
    def object_count(self) -> int:
        return len(self.entries)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bucket": self.bucket,
            "prefix": self.prefix,
            "captured_at": self.captured_at.isoformat(),
            "objects": {
                key: {
                    "size": entry.size,
                    "last_modified": entry.last_modified.isoformat() if entry.last_modified else None,
                    "etag": entry.etag,
                    "is_folder": entry.is_folder,
                }
                for key, entry in self.entries.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BucketSnapshot":
        try:
            objects = data.get("objects") or {}
            entries = {
                str(key): SnapshotEntry(
                    size=int(value.get("size", 0)),
                    last_modified=parse_timestamp(value["last_modified"]) if value.get("last_modified") else None,
                    etag=value.get("etag"),
                    is_folder=bool(value.get("is_folder", False)),
                )
                for key, value in sorted(objects.items())
            }
            return cls(
                id=str(data["id"]),
                bucket=str(data["bucket"]),
                captured_at=parse_timestamp(str(data["captured_at"])),
                entries=MappingProxyType(entries),
                prefix=str(data.get("prefix", "")),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise DecodeError(f"Invalid snapshot document: {exc}") from exc


@dataclass(frozen=True)
class SnapshotChange:
    key: str
    entry: SnapshotEntry


@dataclass(frozen=True)
class SnapshotModification:
    key: str
    before: SnapshotEntry
    after: SnapshotEntry


@dataclass(frozen=True)
class SnapshotDiff:
    added: list[SnapshotChange] = field(default_factory=list)
    removed: list[SnapshotChange] = field(default_factory=list)
    modified: list[SnapshotModification] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)


def diff_snapshots(base: BucketSnapshot, target: BucketSnapshot) -> SnapshotDiff:
    """Compare two snapshots; a common key is modified when size or ETag differ.

    One membership pass over each key index. Entries are stored in key
    order at capture time, so the result lists come out sorted.
    """

    base_entries, target_entries = base.entries, target.entries
    added = [SnapshotChange(key, entry) for key, entry in target_entries.items() if key not in base_entries]
    removed = []
    modified = []
    for key, before in base_entries.items():
        after = target_entries.get(key)
        if after is None:
            removed.append(SnapshotChange(key, before))
        elif before.size != after.size or before.etag != after.etag:
            modified.append(SnapshotModification(key, before, after))
    return SnapshotDiff(added=added, removed=removed, modified=modified)


async def capture_snapshot(
    client: S3Client,
    prefix: str = "",
    *,
    cancel: Optional[CancellationToken] = None,
) -> BucketSnapshot:
    objects = await list_all_objects(client, prefix, include_prefix=True, cancel=cancel)
    snapshot = BucketSnapshot.from_objects(client.bucket, objects, prefix=prefix)
    LOGGER.debug("Captured snapshot %s of %s with %d objects", snapshot.id, client.bucket, snapshot.object_count)
    return snapshot
