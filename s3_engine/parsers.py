from __future__ import annotations
"""Streaming decoders for S3 XML response bodies.

Each decoder is driven by ``xml.etree.ElementTree.XMLPullParser`` events
and keeps a stack of element names from the document root. Handlers match
on that path and accumulate text into per-record fields, so a value that
arrives in several chunks, or an element name reused in different
sections (``Prefix``, ``StorageClass``), cannot be confused.
"""
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import re
from typing import Generic, Optional, TypeVar
from xml.etree import ElementTree as ET

from .errors import DecodeError
from .models import (
    AccessControlPolicy,
    ActiveMultipartUpload,
    Grant,
    LegalHold,
    LifecycleExpiration,
    LifecycleRule,
    LifecycleStatus,
    LifecycleTransition,
    ListPage,
    ObjectSummary,
    ObjectVersion,
    RetentionMode,
    RetentionPolicy,
    UploadPart,
)

T = TypeVar("T")
Path = tuple[str, ...]

_FRACTION = re.compile(r"\.(\d+)")


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def strip_etag(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip().replace('"', "").replace("&quot;", "")
    return cleaned or None


def parse_timestamp(value: str) -> datetime:
    """Parse the ISO 8601 timestamps used in S3 XML documents."""

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits.
    text = _FRACTION.sub(lambda match: "." + match.group(1).ljust(6, "0")[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return parse_http_date(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_http_date(value: str) -> datetime:
    try:
        parsed = parsedate_to_datetime(value.strip())
    except (TypeError, ValueError, IndexError) as exc:
        raise DecodeError(f"Invalid timestamp '{value}'") from exc
    if parsed is None:
        raise DecodeError(f"Invalid timestamp '{value}'")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_int(value: str, field_name: str) -> int:
    try:
        return int(value.strip())
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"Field '{field_name}' is not an integer: {value!r}") from exc


def _optional_int(value: Optional[str], field_name: str) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return _parse_int(value, field_name)


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


class XmlDecoder(Generic[T]):
    """Base class: feed bytes as they arrive, then ``close()`` for the result."""

    root = ""

    def __init__(self) -> None:
        self._parser = ET.XMLPullParser(events=("start", "end"))
        self._path: list[str] = []
        self._seen_root = False

    def feed(self, chunk: bytes) -> None:
        try:
            self._parser.feed(chunk)
        except ET.ParseError as exc:
            raise DecodeError(f"Malformed XML: {exc}") from exc
        self._drain()

    def close(self) -> T:
        try:
            self._parser.close()
        except ET.ParseError as exc:
            raise DecodeError(f"Malformed XML: {exc}") from exc
        self._drain()
        if not self._seen_root:
            raise DecodeError(f"Empty response, expected <{self.root}>")
        return self.result()

    def _drain(self) -> None:
        for event, element in self._parser.read_events():
            name = _local(element.tag)
            if event == "start":
                if not self._path:
                    if self.root and name != self.root:
                        raise DecodeError(f"Expected <{self.root}> document, got <{name}>")
                    self._seen_root = True
                self._path.append(name)
                self.start(tuple(self._path), element.attrib)
            else:
                self.end(tuple(self._path), element.text or "")
                self._path.pop()
                element.clear()

    def start(self, path: Path, attrs: dict[str, str]) -> None:
        pass

    def end(self, path: Path, text: str) -> None:
        pass

    def result(self) -> T:
        raise NotImplementedError


class _RecordDecoder(XmlDecoder[T]):
    """Collects leaf text of repeated records such as ``Contents`` or ``Part``."""

    def __init__(self) -> None:
        super().__init__()
        self._fields: dict[str, str] = {}

    def _reset(self) -> None:
        self._fields = {}

    def _collect(self, name: str, text: str) -> None:
        self._fields[name] = self._fields.get(name, "") + text

    def _field(self, name: str) -> Optional[str]:
        return self._fields.get(name)

    def _required(self, name: str, record: str) -> str:
        value = self._fields.get(name)
        if value is None or not value.strip():
            raise DecodeError(f"<{record}> entry without <{name}>")
        return value


def decode(decoder: XmlDecoder[T], body: bytes, *, chunk_size: int = 0) -> T:
    """Run ``decoder`` over a complete body, optionally in fixed-size chunks."""

    if chunk_size > 0:
        for offset in range(0, len(body), chunk_size):
            decoder.feed(body[offset:offset + chunk_size])
    else:
        decoder.feed(body)
    return decoder.close()


class ErrorDecoder(XmlDecoder[tuple[Optional[str], Optional[str]]]):
    root = "Error"

    def __init__(self) -> None:
        super().__init__()
        self._code: Optional[str] = None
        self._message: Optional[str] = None

    def end(self, path: Path, text: str) -> None:
        if path == ("Error", "Code"):
            self._code = (self._code or "") + text.strip()
        elif path == ("Error", "Message"):
            self._message = (self._message or "") + text.strip()

    def result(self) -> tuple[Optional[str], Optional[str]]:
        return self._code, self._message


def parse_error(body: bytes) -> tuple[Optional[str], Optional[str]]:
    """Best-effort ``(code, message)`` of an S3 error body; never raises."""

    if not body or not body.lstrip().startswith(b"<"):
        return None, None
    try:
        return decode(ErrorDecoder(), body)
    except DecodeError:
        return None, None


def is_error_document(body: bytes) -> bool:
    head = body.lstrip()[:256]
    if not head.startswith(b"<"):
        return False
    if head.startswith(b"<?xml"):
        head = head[head.find(b"?>") + 2:].lstrip()
    return head.startswith(b"<Error>") or head.startswith(b"<Error ")


class BucketListDecoder(XmlDecoder[list[str]]):
    root = "ListAllMyBucketsResult"

    def __init__(self) -> None:
        super().__init__()
        self._buckets: list[str] = []
        self._name = ""

    def start(self, path: Path, attrs: dict[str, str]) -> None:
        if path[1:] == ("Buckets", "Bucket"):
            self._name = ""

    def end(self, path: Path, text: str) -> None:
        rel = path[1:]
        if rel == ("Buckets", "Bucket", "Name"):
            self._name += text.strip()
        elif rel == ("Buckets", "Bucket"):
            if not self._name:
                raise DecodeError("<Bucket> entry without <Name>")
            self._buckets.append(self._name)

    def result(self) -> list[str]:
        return self._buckets


class ObjectListDecoder(_RecordDecoder[ListPage[ObjectSummary]]):
    """Decodes one ``ListObjectsV2`` page.

    Keys returned relative to ``prefix`` are re-prefixed. The entry equal to
    ``prefix`` itself is dropped unless ``include_prefix`` is set, which
    recursive traversal needs so the folder placeholder is handled too.
    """

    root = "ListBucketResult"

    def __init__(self, prefix: str = "", *, include_prefix: bool = False):
        super().__init__()
        self._prefix = prefix
        self._include_prefix = include_prefix
        self._objects: list[ObjectSummary] = []
        self._truncated = ""
        self._token: Optional[str] = None

    def _qualify(self, key: str) -> str:
        if self._prefix and not key.startswith(self._prefix):
            return self._prefix + key
        return key

    def _keep(self, key: str) -> bool:
        return bool(key) and (self._include_prefix or key != self._prefix)

    def start(self, path: Path, attrs: dict[str, str]) -> None:
        if path[1:] in (("Contents",), ("CommonPrefixes",)):
            self._reset()

    def end(self, path: Path, text: str) -> None:
        rel = path[1:]
        if len(rel) == 2 and rel[0] in ("Contents", "CommonPrefixes"):
            self._collect(rel[1], text)
        elif rel == ("Contents",):
            key = self._qualify(self._required("Key", "Contents"))
            if not self._keep(key):
                return
            modified = self._field("LastModified")
            self._objects.append(
                ObjectSummary(
                    key=key,
                    size=_optional_int(self._field("Size"), "Size") or 0,
                    last_modified=parse_timestamp(modified) if modified and modified.strip() else None,
                    etag=strip_etag(self._field("ETag")),
                    is_folder=key.endswith("/"),
                )
            )
        elif rel == ("CommonPrefixes",):
            key = self._qualify(self._required("Prefix", "CommonPrefixes"))
            if self._keep(key):
                self._objects.append(ObjectSummary(key=key, is_folder=True))
        elif rel == ("IsTruncated",):
            self._truncated += text
        elif rel == ("NextContinuationToken",):
            self._token = (self._token or "") + text.strip()

    def result(self) -> ListPage[ObjectSummary]:
        return ListPage(
            items=self._objects,
            is_truncated=_parse_bool(self._truncated),
            next_token=self._token or None,
        )


class VersionListDecoder(_RecordDecoder[ListPage[ObjectVersion]]):
    root = "ListVersionsResult"

    def __init__(self) -> None:
        super().__init__()
        self._versions: list[ObjectVersion] = []
        self._truncated = ""
        self._key_marker: Optional[str] = None
        self._version_marker: Optional[str] = None

    def start(self, path: Path, attrs: dict[str, str]) -> None:
        if path[1:] in (("Version",), ("DeleteMarker",)):
            self._reset()

    def end(self, path: Path, text: str) -> None:
        rel = path[1:]
        if len(rel) == 2 and rel[0] in ("Version", "DeleteMarker"):
            self._collect(rel[1], text)
        elif rel in (("Version",), ("DeleteMarker",)):
            modified = self._field("LastModified")
            self._versions.append(
                ObjectVersion(
                    key=self._required("Key", rel[0]),
                    version_id=(self._field("VersionId") or "null").strip(),
                    is_latest=_parse_bool(self._field("IsLatest")),
                    last_modified=parse_timestamp(modified) if modified and modified.strip() else None,
                    size=_optional_int(self._field("Size"), "Size") or 0,
                    is_delete_marker=rel[0] == "DeleteMarker",
                )
            )
        elif rel == ("IsTruncated",):
            self._truncated += text
        elif rel == ("NextKeyMarker",):
            self._key_marker = (self._key_marker or "") + text
        elif rel == ("NextVersionIdMarker",):
            self._version_marker = (self._version_marker or "") + text.strip()

    def result(self) -> ListPage[ObjectVersion]:
        token = None
        if self._key_marker or self._version_marker:
            token = (self._key_marker or "", self._version_marker or "")
        return ListPage(items=self._versions, is_truncated=_parse_bool(self._truncated), next_token=token)


class UploadListDecoder(_RecordDecoder[ListPage[ActiveMultipartUpload]]):
    root = "ListMultipartUploadsResult"

    def __init__(self) -> None:
        super().__init__()
        self._uploads: list[ActiveMultipartUpload] = []
        self._truncated = ""
        self._key_marker: Optional[str] = None
        self._upload_marker: Optional[str] = None

    def start(self, path: Path, attrs: dict[str, str]) -> None:
        if path[1:] == ("Upload",):
            self._reset()

    def end(self, path: Path, text: str) -> None:
        rel = path[1:]
        if len(rel) == 2 and rel[0] == "Upload":
            self._collect(rel[1], text)
        elif rel == ("Upload",):
            initiated = self._field("Initiated")
            self._uploads.append(
                ActiveMultipartUpload(
                    key=self._required("Key", "Upload"),
                    upload_id=self._required("UploadId", "Upload").strip(),
                    initiated=parse_timestamp(initiated) if initiated and initiated.strip() else None,
                )
            )
        elif rel == ("IsTruncated",):
            self._truncated += text
        elif rel == ("NextKeyMarker",):
            self._key_marker = (self._key_marker or "") + text
        elif rel == ("NextUploadIdMarker",):
            self._upload_marker = (self._upload_marker or "") + text.strip()

    def result(self) -> ListPage[ActiveMultipartUpload]:
        token = None
        if self._key_marker or self._upload_marker:
            token = (self._key_marker or "", self._upload_marker or "")
        return ListPage(items=self._uploads, is_truncated=_parse_bool(self._truncated), next_token=token)


class PartListDecoder(_RecordDecoder[ListPage[UploadPart]]):
    root = "ListPartsResult"

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[UploadPart] = []
        self._truncated = ""
        self._marker: Optional[str] = None

    def start(self, path: Path, attrs: dict[str, str]) -> None:
        if path[1:] == ("Part",):
            self._reset()

    def end(self, path: Path, text: str) -> None:
        rel = path[1:]
        if len(rel) == 2 and rel[0] == "Part":
            self._collect(rel[1], text)
        elif rel == ("Part",):
            etag = strip_etag(self._required("ETag", "Part"))
            self._parts.append(
                UploadPart(
                    part_number=_parse_int(self._required("PartNumber", "Part"), "PartNumber"),
                    etag=etag or "",
                    size=_optional_int(self._field("Size"), "Size") or 0,
                )
            )
        elif rel == ("IsTruncated",):
            self._truncated += text
        elif rel == ("NextPartNumberMarker",):
            self._marker = (self._marker or "") + text.strip()

    def result(self) -> ListPage[UploadPart]:
        return ListPage(items=self._parts, is_truncated=_parse_bool(self._truncated), next_token=self._marker or None)


class _SingleValueDecoder(XmlDecoder[Optional[str]]):
    """Reads the text of one child of the root element."""

    field = ""

    def __init__(self) -> None:
        super().__init__()
        self._value: Optional[str] = None

    def end(self, path: Path, text: str) -> None:
        if path[1:] == (self.field,):
            self._value = (self._value or "") + text

    def result(self) -> Optional[str]:
        return self._value


class InitiateMultipartUploadDecoder(_SingleValueDecoder):
    root = "InitiateMultipartUploadResult"
    field = "UploadId"

    def result(self) -> Optional[str]:
        upload_id = (self._value or "").strip()
        if not upload_id:
            raise DecodeError("<InitiateMultipartUploadResult> without <UploadId>")
        return upload_id


class CompleteMultipartUploadDecoder(_SingleValueDecoder):
    root = "CompleteMultipartUploadResult"
    field = "ETag"

    def result(self) -> Optional[str]:
        return strip_etag(self._value)


class CopyObjectDecoder(CompleteMultipartUploadDecoder):
    root = "CopyObjectResult"


class VersioningDecoder(_SingleValueDecoder):
    root = "VersioningConfiguration"
    field = "Status"

    def result(self) -> Optional[str]:
        return (self._value or "").strip() or None


class ObjectLockConfigDecoder(_SingleValueDecoder):
    root = "ObjectLockConfiguration"
    field = "ObjectLockEnabled"

    def result(self) -> Optional[str]:
        return (self._value or "").strip() or None


class LegalHoldDecoder(_SingleValueDecoder):
    root = "LegalHold"
    field = "Status"

    def result(self) -> LegalHold:  # type: ignore[override]
        return LegalHold(enabled=(self._value or "").strip().upper() == "ON")


class RetentionDecoder(_RecordDecoder[RetentionPolicy]):
    root = "Retention"

    def end(self, path: Path, text: str) -> None:
        if len(path) == 2:
            self._collect(path[1], text)

    def result(self) -> RetentionPolicy:
        mode = self._required("Mode", "Retention").strip().upper()
        try:
            retention_mode = RetentionMode(mode)
        except ValueError as exc:
            raise DecodeError(f"Unknown retention mode '{mode}'") from exc
        return RetentionPolicy(
            mode=retention_mode,
            retain_until=parse_timestamp(self._required("RetainUntilDate", "Retention")),
        )


class LifecycleDecoder(XmlDecoder[list[LifecycleRule]]):
    root = "LifecycleConfiguration"

    def __init__(self) -> None:
        super().__init__()
        self._rules: list[LifecycleRule] = []
        self._rule = LifecycleRule()
        self._days = ""
        self._storage_class = ""

    def start(self, path: Path, attrs: dict[str, str]) -> None:
        rel = path[1:]
        if rel == ("Rule",):
            self._rule = LifecycleRule()
        elif rel in (("Rule", "Transition"), ("Rule", "Expiration")):
            self._days = ""
            self._storage_class = ""

    def end(self, path: Path, text: str) -> None:
        rel = path[1:]
        value = text.strip()
        if rel == ("Rule", "ID"):
            self._rule.id += value
        elif rel == ("Rule", "Status"):
            try:
                self._rule.status = LifecycleStatus(value)
            except ValueError:
                self._rule.status = LifecycleStatus.DISABLED
        elif rel in (("Rule", "Prefix"), ("Rule", "Filter", "Prefix"), ("Rule", "Filter", "And", "Prefix")):
            self._rule.prefix += value
        elif rel in (("Rule", "Transition", "Days"), ("Rule", "Expiration", "Days")):
            self._days += value
        elif rel == ("Rule", "Transition", "StorageClass"):
            self._storage_class += value
        elif rel == ("Rule", "Transition"):
            self._rule.transitions.append(
                LifecycleTransition(
                    storage_class=self._storage_class,
                    days=_optional_int(self._days, "Days"),
                )
            )
        elif rel == ("Rule", "Expiration"):
            self._rule.expiration = LifecycleExpiration(days=_optional_int(self._days, "Days"))
        elif rel == ("Rule", "AbortIncompleteMultipartUpload", "DaysAfterInitiation"):
            self._rule.abort_incomplete_multipart_upload_days = _optional_int(value, "DaysAfterInitiation")
        elif rel == ("Rule",):
            self._rules.append(self._rule)

    def result(self) -> list[LifecycleRule]:
        return self._rules


class AccessControlPolicyDecoder(XmlDecoder[AccessControlPolicy]):
    root = "AccessControlPolicy"

    def __init__(self) -> None:
        super().__init__()
        self._policy = AccessControlPolicy()
        self._grantee: dict[str, str] = {}
        self._permission = ""

    def start(self, path: Path, attrs: dict[str, str]) -> None:
        rel = path[1:]
        if rel == ("AccessControlList", "Grant"):
            self._grantee = {}
            self._permission = ""
        elif rel == ("AccessControlList", "Grant", "Grantee"):
            for name, value in attrs.items():
                if _local(name) == "type":
                    self._grantee["type"] = value

    def end(self, path: Path, text: str) -> None:
        rel = path[1:]
        value = text.strip()
        if rel == ("Owner", "ID"):
            self._policy.owner_id = value or None
        elif rel == ("Owner", "DisplayName"):
            self._policy.owner_name = value or None
        elif len(rel) == 4 and rel[:3] == ("AccessControlList", "Grant", "Grantee"):
            self._grantee[rel[3]] = self._grantee.get(rel[3], "") + value
        elif rel == ("AccessControlList", "Grant", "Permission"):
            self._permission += value
        elif rel == ("AccessControlList", "Grant"):
            if not self._permission:
                raise DecodeError("<Grant> entry without <Permission>")
            self._policy.grants.append(
                Grant(
                    permission=self._permission,
                    grantee_type=self._grantee.get("type", ""),
                    grantee_id=self._grantee.get("ID"),
                    grantee_uri=self._grantee.get("URI"),
                    display_name=self._grantee.get("DisplayName"),
                )
            )

    def result(self) -> AccessControlPolicy:
        return self._policy
