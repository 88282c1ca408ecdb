from __future__ import annotations
"""Signed-exchange primitive and the single-call S3 operations."""
import base64
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import hashlib
import logging
from typing import Iterable, Mapping, Optional, Protocol
from xml.etree import ElementTree as ET

from .endpoints import DEFAULT_QUIRKS, DEFAULT_REGION, EndpointResolver, ProviderQuirk, uri_encode
from .errors import ConfigurationError, DecodeError, ProtocolError
from .models import (
    AccessControlPolicy,
    ActiveMultipartUpload,
    Credentials,
    LegalHold,
    LifecycleRule,
    ListPage,
    ObjectMetadata,
    ObjectSummary,
    ObjectVersion,
    RetentionPolicy,
    UploadPart,
)
from .parsers import (
    AccessControlPolicyDecoder,
    BucketListDecoder,
    CompleteMultipartUploadDecoder,
    CopyObjectDecoder,
    InitiateMultipartUploadDecoder,
    LegalHoldDecoder,
    LifecycleDecoder,
    ObjectListDecoder,
    ObjectLockConfigDecoder,
    PartListDecoder,
    RetentionDecoder,
    UploadListDecoder,
    VersioningDecoder,
    VersionListDecoder,
    decode,
    is_error_document,
    parse_error,
    parse_http_date,
    strip_etag,
)
from .signing import Clock, RequestSigner
from .transport import BotocoreTransport, HttpResponse, Transport

S3_XMLNS = "http://s3.amazonaws.com/doc/2006-03-01/"
META_PREFIX = "x-amz-meta-"
DEFAULT_PRESIGN_EXPIRY = 3600

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformedPayload:
    data: bytes
    metadata: dict[str, str] = field(default_factory=dict)


class PayloadTransform(Protocol):
    """Byte transform applied to whole object bodies, e.g. client-side encryption."""

    def encode(self, key: str, data: bytes) -> TransformedPayload:
        ...

    def decode(self, key: str, data: bytes, metadata: Mapping[str, str]) -> bytes:
        ...


class IdentityTransform:
    def encode(self, key: str, data: bytes) -> TransformedPayload:
        return TransformedPayload(data)

    def decode(self, key: str, data: bytes, metadata: Mapping[str, str]) -> bytes:
        return data


@dataclass(frozen=True)
class PresignedPost:
    url: str
    fields: dict[str, str]


def content_md5(body: bytes) -> str:
    return base64.b64encode(hashlib.md5(body).digest()).decode("ascii")


def _xml_bytes(root: ET.Element) -> bytes:
    return ET.tostring(root, encoding="utf-8", xml_declaration=False)


def _add_text(parent: ET.Element, tag: str, text: object) -> ET.Element:
    child = ET.SubElement(parent, tag)
    child.text = str(text)
    return child


def _iso8601(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def completion_body(parts: Iterable[UploadPart]) -> bytes:
    """Build the CompleteMultipartUpload document, parts sorted by number."""

    root = ET.Element("CompleteMultipartUpload", xmlns=S3_XMLNS)
    for part in sorted(parts, key=lambda item: item.part_number):
        element = ET.SubElement(root, "Part")
        _add_text(element, "PartNumber", part.part_number)
        _add_text(element, "ETag", f'"{part.etag}"')
    return _xml_bytes(root)


def lifecycle_body(rules: Iterable[LifecycleRule]) -> bytes:
    root = ET.Element("LifecycleConfiguration", xmlns=S3_XMLNS)
    for rule in rules:
        element = ET.SubElement(root, "Rule")
        if rule.id:
            _add_text(element, "ID", rule.id)
        rule_filter = ET.SubElement(element, "Filter")
        _add_text(rule_filter, "Prefix", rule.prefix)
        _add_text(element, "Status", rule.status.value)
        for transition in rule.transitions:
            transition_element = ET.SubElement(element, "Transition")
            if transition.days is not None:
                _add_text(transition_element, "Days", transition.days)
            _add_text(transition_element, "StorageClass", transition.storage_class)
        if rule.expiration is not None and rule.expiration.days is not None:
            expiration = ET.SubElement(element, "Expiration")
            _add_text(expiration, "Days", rule.expiration.days)
        if rule.abort_incomplete_multipart_upload_days is not None:
            abort = ET.SubElement(element, "AbortIncompleteMultipartUpload")
            _add_text(abort, "DaysAfterInitiation", rule.abort_incomplete_multipart_upload_days)
    return _xml_bytes(root)


def user_metadata(headers: Mapping[str, str]) -> dict[str, str]:
    return {
        name[len(META_PREFIX):]: value
        for name, value in headers.items()
        if name.lower().startswith(META_PREFIX)
    }


def _version_params(version_id: Optional[str]) -> list[tuple[str, str]]:
    return [("versionId", version_id)] if version_id else []


class S3Client:
    """One connection: a credential bundle, its resolver, signer and transport.

    Every method is a single signed exchange. Listing methods here fetch one
    page; ``pagination`` follows the tokens.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        transport: Transport | None = None,
        quirks: Iterable[ProviderQuirk] = DEFAULT_QUIRKS,
        payload_transform: PayloadTransform | None = None,
        clock: Clock | None = None,
    ):
        if not credentials.access_key or not credentials.secret_key:
            raise ConfigurationError("Access key and secret key are required")
        self._quirks = tuple(quirks)
        self._resolver = EndpointResolver.from_credentials(credentials, self._quirks)
        self._credentials = credentials
        self._clock = clock
        self._signer = RequestSigner(
            credentials.access_key,
            credentials.secret_key,
            self._resolver.region,
            clock=clock,
        )
        self._transport = transport or BotocoreTransport()
        self._transform = payload_transform or IdentityTransform()

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    @property
    def bucket(self) -> str:
        return self._credentials.bucket

    @property
    def region(self) -> str:
        return self._resolver.region

    @property
    def resolver(self) -> EndpointResolver:
        return self._resolver

    @property
    def payload_transform(self) -> PayloadTransform:
        return self._transform

    def for_bucket(self, bucket: str) -> "S3Client":
        """Return a client for ``bucket`` sharing this client's transport."""

        return S3Client(
            replace(self._credentials, bucket=bucket),
            transport=self._transport,
            quirks=self._quirks,
            payload_transform=self._transform,
            clock=self._clock,
        )

    def _require_bucket(self, bucket: Optional[str] = None) -> str:
        name = self.bucket if bucket is None else bucket
        if not name:
            raise ConfigurationError("No bucket configured for this client")
        return name

    async def request(
        self,
        method: str,
        key: str = "",
        *,
        bucket: Optional[str] = None,
        params: Iterable[tuple[str, str]] = (),
        headers: Mapping[str, str] | None = None,
        body: bytes = b"",
        operation: str = "",
        allow_missing: bool = False,
        allow_partial: bool = False,
    ) -> HttpResponse:
        """Sign and send one request, raising ``ProtocolError`` on failure.

        With ``allow_missing`` a 404 is returned to the caller instead of
        raised; ``allow_partial`` accepts 206 for range reads.
        """

        target_bucket = self.bucket if bucket is None else bucket
        target = self._resolver.resolve(target_bucket, key)
        signed = self._signer.sign(method, target.url(), params=params, headers=headers, body=body)
        LOGGER.debug("%s %s%s (%s)", signed.method, target.host, target.path, operation or "request")
        response = await self._transport.send(signed)
        LOGGER.debug("%s %s%s -> HTTP %s", signed.method, target.host, target.path, response.status)

        if allow_missing and response.status == 404:
            return response
        if response.status == 206 and allow_partial:
            return response
        if not 200 <= response.status < 300 or response.status == 206:
            raise self._protocol_error(response, operation)
        return response

    @staticmethod
    def _protocol_error(response: HttpResponse, operation: str) -> ProtocolError:
        code, message = parse_error(response.body)
        return ProtocolError(
            response.status,
            response.text,
            operation=operation,
            code=code,
            message=message,
        )

    def _raise_embedded_error(self, response: HttpResponse, operation: str) -> None:
        if is_error_document(response.body):
            raise self._protocol_error(response, operation)

    # Buckets

    async def list_buckets(self) -> list[str]:
        response = await self.request("GET", bucket="", operation="ListBuckets")
        return decode(BucketListDecoder(), response.body)

    async def create_bucket(
        self,
        bucket: Optional[str] = None,
        *,
        object_lock_enabled: bool = False,
        acl: Optional[str] = None,
    ) -> None:
        name = self._require_bucket(bucket)
        headers: dict[str, str] = {}
        if object_lock_enabled:
            headers["x-amz-bucket-object-lock-enabled"] = "true"
        if acl:
            headers["x-amz-acl"] = acl
        body = b""
        if self._resolver.is_aws and self.region != DEFAULT_REGION:
            root = ET.Element("CreateBucketConfiguration", xmlns=S3_XMLNS)
            _add_text(root, "LocationConstraint", self.region)
            body = _xml_bytes(root)
        await self.request("PUT", bucket=name, headers=headers, body=body, operation="CreateBucket")

    async def delete_bucket(self, bucket: Optional[str] = None) -> None:
        name = self._require_bucket(bucket)
        await self.request("DELETE", bucket=name, operation="DeleteBucket")

    # Objects

    async def head_object(self, key: str, *, version_id: Optional[str] = None) -> ObjectMetadata:
        self._require_bucket()
        response = await self.request(
            "HEAD", key, params=_version_params(version_id), operation="HeadObject"
        )
        headers = response.headers
        length = headers.get("content-length")
        modified = headers.get("last-modified")
        try:
            size = int(length) if length is not None else None
        except ValueError as exc:
            raise DecodeError(f"Invalid Content-Length '{length}'") from exc
        return ObjectMetadata(
            key=key,
            size=size,
            last_modified=parse_http_date(modified) if modified else None,
            etag=strip_etag(headers.get("etag")),
            content_type=headers.get("content-type"),
            storage_class=headers.get("x-amz-storage-class"),
            version_id=headers.get("x-amz-version-id"),
            metadata=user_metadata(headers),
            headers=dict(headers),
        )

    async def get_object(self, key: str, *, version_id: Optional[str] = None) -> bytes:
        self._require_bucket()
        response = await self.request(
            "GET", key, params=_version_params(version_id), operation="GetObject"
        )
        return self._transform.decode(key, response.body, user_metadata(response.headers))

    async def get_object_range(
        self,
        key: str,
        start: int,
        end: int,
        *,
        version_id: Optional[str] = None,
    ) -> bytes:
        """Read bytes ``start``..``end`` inclusive, without the payload transform."""

        if start < 0 or end < start:
            raise ValueError(f"Invalid byte range {start}-{end}")
        self._require_bucket()
        response = await self.request(
            "GET",
            key,
            params=_version_params(version_id),
            headers={"Range": f"bytes={start}-{end}"},
            operation="GetObject",
            allow_partial=True,
        )
        return response.body

    async def put_object(
        self,
        key: str,
        data: bytes,
        *,
        metadata: Mapping[str, str] | None = None,
        content_type: Optional[str] = None,
        acl: Optional[str] = None,
    ) -> Optional[str]:
        self._require_bucket()
        payload = self._transform.encode(key, data)
        headers = self._object_headers(
            {**dict(metadata or {}), **payload.metadata}, content_type=content_type, acl=acl
        )
        response = await self.request("PUT", key, headers=headers, body=payload.data, operation="PutObject")
        return strip_etag(response.header("etag"))

    async def create_folder(self, key: str) -> None:
        self._require_bucket()
        folder_key = key if key.endswith("/") else f"{key}/"
        await self.request("PUT", folder_key, operation="PutObject")

    async def delete_object(self, key: str, *, version_id: Optional[str] = None) -> None:
        self._require_bucket()
        await self.request(
            "DELETE", key, params=_version_params(version_id), operation="DeleteObject"
        )

    async def copy_object(
        self,
        source_key: str,
        destination_key: str,
        *,
        source_version_id: Optional[str] = None,
        source_bucket: Optional[str] = None,
    ) -> Optional[str]:
        bucket = self._require_bucket()
        source = f"{uri_encode(source_bucket or bucket)}/{uri_encode(source_key)}"
        if source_version_id:
            source += f"?versionId={uri_encode(source_version_id)}"
        response = await self.request(
            "PUT",
            destination_key,
            headers={"x-amz-copy-source": source},
            operation="CopyObject",
        )
        self._raise_embedded_error(response, "CopyObject")
        return decode(CopyObjectDecoder(), response.body) if response.body.strip() else None

    @staticmethod
    def _object_headers(
        metadata: Mapping[str, str],
        *,
        content_type: Optional[str] = None,
        acl: Optional[str] = None,
    ) -> dict[str, str]:
        headers = {f"{META_PREFIX}{name.lower()}": value for name, value in metadata.items()}
        if content_type:
            headers["Content-Type"] = content_type
        if acl:
            headers["x-amz-acl"] = acl
        return headers

    # Access control and object lock

    async def get_object_acl(self, key: str) -> AccessControlPolicy:
        self._require_bucket()
        response = await self.request("GET", key, params=[("acl", "")], operation="GetObjectAcl")
        return decode(AccessControlPolicyDecoder(), response.body)

    async def put_object_acl(self, key: str, *, public: bool) -> None:
        self._require_bucket()
        await self.request(
            "PUT",
            key,
            params=[("acl", "")],
            headers={"x-amz-acl": "public-read" if public else "private"},
            operation="PutObjectAcl",
        )

    async def get_object_retention(
        self, key: str, *, version_id: Optional[str] = None
    ) -> Optional[RetentionPolicy]:
        self._require_bucket()
        response = await self.request(
            "GET",
            key,
            params=[("retention", ""), *_version_params(version_id)],
            operation="GetObjectRetention",
            allow_missing=True,
        )
        if response.status == 404:
            return None
        return decode(RetentionDecoder(), response.body)

    async def put_object_retention(
        self,
        key: str,
        policy: RetentionPolicy,
        *,
        version_id: Optional[str] = None,
        bypass_governance: bool = False,
    ) -> None:
        self._require_bucket()
        root = ET.Element("Retention", xmlns=S3_XMLNS)
        _add_text(root, "Mode", policy.mode.value)
        _add_text(root, "RetainUntilDate", _iso8601(policy.retain_until))
        body = _xml_bytes(root)
        headers = {"Content-MD5": content_md5(body)}
        if bypass_governance:
            headers["x-amz-bypass-governance-retention"] = "true"
        await self.request(
            "PUT",
            key,
            params=[("retention", ""), *_version_params(version_id)],
            headers=headers,
            body=body,
            operation="PutObjectRetention",
        )

    async def get_object_legal_hold(self, key: str, *, version_id: Optional[str] = None) -> LegalHold:
        self._require_bucket()
        response = await self.request(
            "GET",
            key,
            params=[("legal-hold", ""), *_version_params(version_id)],
            operation="GetObjectLegalHold",
            allow_missing=True,
        )
        if response.status == 404:
            return LegalHold(enabled=False)
        return decode(LegalHoldDecoder(), response.body)

    async def put_object_legal_hold(
        self, key: str, enabled: bool, *, version_id: Optional[str] = None
    ) -> None:
        self._require_bucket()
        root = ET.Element("LegalHold", xmlns=S3_XMLNS)
        _add_text(root, "Status", "ON" if enabled else "OFF")
        body = _xml_bytes(root)
        await self.request(
            "PUT",
            key,
            params=[("legal-hold", ""), *_version_params(version_id)],
            headers={"Content-MD5": content_md5(body)},
            body=body,
            operation="PutObjectLegalHold",
        )

    async def get_object_lock_configuration(self) -> bool:
        """Return whether object lock is enabled on the bucket."""

        self._require_bucket()
        response = await self.request(
            "GET", params=[("object-lock", "")], operation="GetObjectLockConfiguration", allow_missing=True
        )
        if response.status == 404:
            return False
        return decode(ObjectLockConfigDecoder(), response.body) == "Enabled"

    # Bucket configuration

    async def get_bucket_versioning(self) -> Optional[str]:
        """Return ``Enabled``, ``Suspended`` or ``None`` if never configured."""

        self._require_bucket()
        response = await self.request("GET", params=[("versioning", "")], operation="GetBucketVersioning")
        return decode(VersioningDecoder(), response.body)

    async def put_bucket_versioning(self, enabled: bool) -> None:
        self._require_bucket()
        root = ET.Element("VersioningConfiguration", xmlns=S3_XMLNS)
        _add_text(root, "Status", "Enabled" if enabled else "Suspended")
        body = _xml_bytes(root)
        await self.request(
            "PUT",
            params=[("versioning", "")],
            headers={"Content-MD5": content_md5(body)},
            body=body,
            operation="PutBucketVersioning",
        )

    async def get_bucket_lifecycle(self) -> list[LifecycleRule]:
        self._require_bucket()
        response = await self.request(
            "GET", params=[("lifecycle", "")], operation="GetBucketLifecycle", allow_missing=True
        )
        if response.status == 404:
            return []
        return decode(LifecycleDecoder(), response.body)

    async def put_bucket_lifecycle(self, rules: list[LifecycleRule]) -> None:
        """Replace the lifecycle configuration; an empty list deletes it."""

        self._require_bucket()
        if not rules:
            await self.request("DELETE", params=[("lifecycle", "")], operation="DeleteBucketLifecycle")
            return
        body = lifecycle_body(rules)
        await self.request(
            "PUT",
            params=[("lifecycle", "")],
            headers={"Content-MD5": content_md5(body)},
            body=body,
            operation="PutBucketLifecycle",
        )

    # Multipart primitives

    async def create_multipart_upload(
        self,
        key: str,
        *,
        metadata: Mapping[str, str] | None = None,
        content_type: Optional[str] = None,
    ) -> str:
        self._require_bucket()
        response = await self.request(
            "POST",
            key,
            params=[("uploads", "")],
            headers=self._object_headers(metadata or {}, content_type=content_type),
            operation="CreateMultipartUpload",
        )
        upload_id = decode(InitiateMultipartUploadDecoder(), response.body)
        return upload_id

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        self._require_bucket()
        response = await self.request(
            "PUT",
            key,
            params=[("partNumber", str(part_number)), ("uploadId", upload_id)],
            body=data,
            operation="UploadPart",
        )
        etag = strip_etag(response.header("etag"))
        if not etag:
            raise DecodeError(f"UploadPart response for part {part_number} has no ETag header")
        return etag

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Iterable[UploadPart]
    ) -> Optional[str]:
        self._require_bucket()
        response = await self.request(
            "POST",
            key,
            params=[("uploadId", upload_id)],
            headers={"Content-Type": "application/xml"},
            body=completion_body(parts),
            operation="CompleteMultipartUpload",
        )
        self._raise_embedded_error(response, "CompleteMultipartUpload")
        return decode(CompleteMultipartUploadDecoder(), response.body) if response.body.strip() else None

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self._require_bucket()
        await self.request(
            "DELETE", key, params=[("uploadId", upload_id)], operation="AbortMultipartUpload"
        )

    # Single listing pages

    async def list_objects_page(
        self,
        prefix: str = "",
        *,
        delimiter: Optional[str] = "/",
        continuation_token: Optional[str] = None,
        max_keys: Optional[int] = None,
        include_prefix: bool = False,
    ) -> ListPage[ObjectSummary]:
        self._require_bucket()
        params = [("list-type", "2")]
        if prefix:
            params.append(("prefix", prefix))
        if delimiter:
            params.append(("delimiter", delimiter))
        if max_keys:
            params.append(("max-keys", str(max_keys)))
        if continuation_token:
            params.append(("continuation-token", continuation_token))
        response = await self.request("GET", params=params, operation="ListObjectsV2")
        return decode(ObjectListDecoder(prefix, include_prefix=include_prefix), response.body)

    async def list_versions_page(
        self,
        prefix: str = "",
        *,
        markers: Optional[tuple[str, str]] = None,
    ) -> ListPage[ObjectVersion]:
        self._require_bucket()
        params = [("versions", "")]
        if prefix:
            params.append(("prefix", prefix))
        if markers:
            key_marker, version_marker = markers
            if key_marker:
                params.append(("key-marker", key_marker))
            if version_marker:
                params.append(("version-id-marker", version_marker))
        response = await self.request("GET", params=params, operation="ListObjectVersions")
        return decode(VersionListDecoder(), response.body)

    async def list_uploads_page(
        self,
        prefix: str = "",
        *,
        markers: Optional[tuple[str, str]] = None,
    ) -> ListPage[ActiveMultipartUpload]:
        self._require_bucket()
        params = [("uploads", "")]
        if prefix:
            params.append(("prefix", prefix))
        if markers:
            key_marker, upload_marker = markers
            if key_marker:
                params.append(("key-marker", key_marker))
            if upload_marker:
                params.append(("upload-id-marker", upload_marker))
        response = await self.request("GET", params=params, operation="ListMultipartUploads")
        return decode(UploadListDecoder(), response.body)

    async def list_parts_page(
        self,
        key: str,
        upload_id: str,
        *,
        part_number_marker: Optional[str] = None,
    ) -> ListPage[UploadPart]:
        self._require_bucket()
        params = [("uploadId", upload_id)]
        if part_number_marker:
            params.append(("part-number-marker", part_number_marker))
        response = await self.request("GET", key, params=params, operation="ListParts")
        return decode(PartListDecoder(), response.body)

    # URLs

    def generate_presigned_url(
        self,
        key: str,
        *,
        method: str = "GET",
        expires_in: int = DEFAULT_PRESIGN_EXPIRY,
        version_id: Optional[str] = None,
        content_type: Optional[str] = None,
        content_disposition: Optional[str] = None,
    ) -> str:
        """Return a URL granting ``method`` on ``key`` for ``expires_in`` seconds.

        For GET, ``content_type`` and ``content_disposition`` become
        ``response-content-*`` overrides of the downloaded object's headers.
        """

        method = method.upper()
        if method not in ("GET", "PUT"):
            raise ValueError(f"Unsupported presign method '{method}'")
        bucket = self._require_bucket()
        params = _version_params(version_id)
        if method == "GET":
            if content_type:
                params.append(("response-content-type", content_type))
            if content_disposition:
                params.append(("response-content-disposition", content_disposition))
        target = self._resolver.resolve(bucket, key)
        return self._signer.presign_url(method, target.url(), expires_in=expires_in, params=params)

    def generate_presigned_post(
        self,
        key_prefix: str = "",
        *,
        expires_in: int = DEFAULT_PRESIGN_EXPIRY,
        max_size: Optional[int] = None,
        acl: Optional[str] = None,
    ) -> PresignedPost:
        """Return the URL and form fields for a browser upload under ``key_prefix``."""

        bucket = self._require_bucket()
        conditions: list[object] = [{"bucket": bucket}, ["starts-with", "$key", key_prefix]]
        fields = {"key": f"{key_prefix}${{filename}}"}
        if acl:
            conditions.append({"acl": acl})
            fields["acl"] = acl
        if max_size is not None:
            conditions.append(["content-length-range", 0, max_size])
        fields.update(self._signer.presign_post_policy(conditions, expires_in=expires_in))
        return PresignedPost(url=self._resolver.resolve(bucket).url(), fields=fields)

    def download_url(self, key: str, *, version_id: Optional[str] = None) -> str:
        """Unsigned URL of ``key``, usable when the object is public."""

        bucket = self._require_bucket()
        target = self._resolver.resolve(bucket, key)
        query = f"versionId={uri_encode(version_id)}" if version_id else ""
        return target.url(query)
