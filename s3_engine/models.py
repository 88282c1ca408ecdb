from __future__ import annotations
"""Data models for S3 requests, listings and configuration documents."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

ALL_USERS_URI = "http://acs.amazonaws.com/groups/global/AllUsers"


@dataclass(frozen=True)
class Credentials:
    """Connection bundle owned by one client instance."""

    access_key: str
    secret_key: str
    region: str = "us-east-1"
    bucket: str = ""
    endpoint: str = ""
    use_path_style: bool = False

    def __repr__(self) -> str:
        return (
            f"Credentials(access_key={self.access_key!r}, region={self.region!r}, "
            f"bucket={self.bucket!r}, endpoint={self.endpoint!r}, "
            f"use_path_style={self.use_path_style!r})"
        )


@dataclass(frozen=True)
class ObjectSummary:
    """One entry of an object listing.

    ``is_folder`` is true for common-prefix groupings and for placeholder
    objects whose key ends with ``/``.
    """

    key: str
    size: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    is_folder: bool = False


@dataclass(frozen=True)
class ObjectVersion:
    key: str
    version_id: str
    is_latest: bool = False
    last_modified: Optional[datetime] = None
    size: int = 0
    is_delete_marker: bool = False


@dataclass(frozen=True)
class ActiveMultipartUpload:
    key: str
    upload_id: str
    initiated: Optional[datetime] = None


@dataclass(frozen=True)
class UploadPart:
    part_number: int
    etag: str
    size: int = 0


@dataclass
class ObjectMetadata:
    """Metadata about a single S3 object, read from a HEAD response."""

    key: str
    size: Optional[int] = None
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    content_type: Optional[str] = None
    storage_class: Optional[str] = None
    version_id: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


class LifecycleStatus(str, Enum):
    ENABLED = "Enabled"
    DISABLED = "Disabled"


@dataclass
class LifecycleTransition:
    storage_class: str
    days: Optional[int] = None


@dataclass
class LifecycleExpiration:
    days: Optional[int] = None


@dataclass
class LifecycleRule:
    id: str = ""
    status: LifecycleStatus = LifecycleStatus.ENABLED
    prefix: str = ""
    transitions: list[LifecycleTransition] = field(default_factory=list)
    expiration: Optional[LifecycleExpiration] = None
    abort_incomplete_multipart_upload_days: Optional[int] = None


class RetentionMode(str, Enum):
    GOVERNANCE = "GOVERNANCE"
    COMPLIANCE = "COMPLIANCE"


@dataclass(frozen=True)
class RetentionPolicy:
    mode: RetentionMode
    retain_until: datetime


@dataclass(frozen=True)
class LegalHold:
    enabled: bool = False


@dataclass(frozen=True)
class Grant:
    permission: str
    grantee_type: str = ""
    grantee_id: Optional[str] = None
    grantee_uri: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class AccessControlPolicy:
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None
    grants: list[Grant] = field(default_factory=list)

    @property
    def is_public_read(self) -> bool:
        return any(
            grant.grantee_uri == ALL_USERS_URI and grant.permission in ("READ", "FULL_CONTROL")
            for grant in self.grants
        )


@dataclass
class ListPage(Generic[T]):
    """Decoded content of one listing response.

    ``next_token`` is whatever the endpoint needs to fetch the following
    page: a continuation token, or a tuple of markers.
    """

    items: list[T] = field(default_factory=list)
    is_truncated: bool = False
    next_token: object = None


@dataclass
class ObjectListing:
    """Result of a delimiter listing for one prefix of a bucket."""

    bucket: str
    prefix: str = ""
    delimiter: str = "/"
    objects: list[ObjectSummary] = field(default_factory=list)
    pages: int = 0
    has_more: bool = False
    continuation_token: Optional[str] = None

    @property
    def folders(self) -> list[ObjectSummary]:
        return [obj for obj in self.objects if obj.is_folder]

    @property
    def files(self) -> list[ObjectSummary]:
        return [obj for obj in self.objects if not obj.is_folder]


@dataclass(frozen=True)
class FolderStats:
    object_count: int
    total_size: int


@dataclass(frozen=True)
class Progress:
    """Progress event emitted after each page, part or recursive step."""

    completed: int
    total: int
    key: Optional[str] = None
