from __future__ import annotations
"""AWS Signature Version 4 signing for S3 requests and presigned URLs."""
import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import json
import re
from typing import Callable, Iterable, Mapping, Optional
from urllib.parse import parse_qsl, unquote, urlsplit

from .endpoints import uri_encode

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
TERMINATOR = "aws4_request"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()
SIGNED_HEADER_PREFIX = "x-amz-"
MAX_PRESIGN_EXPIRY = 7 * 24 * 3600

_WHITESPACE_RUN = re.compile(r"\s+")

Clock = Callable[[], datetime]
QueryParams = Iterable[tuple[str, str]]


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret_key: str, datestamp: str, region: str, service: str = SERVICE) -> bytes:
    """Chain the four HMAC derivations: date, region, service, terminator."""

    k_date = hmac_sha256(f"AWS4{secret_key}".encode("utf-8"), datestamp)
    k_region = hmac_sha256(k_date, region)
    k_service = hmac_sha256(k_region, service)
    return hmac_sha256(k_service, TERMINATOR)


def canonical_uri(url: str) -> str:
    """Return the signed form of the URL path, keeping a trailing slash."""

    raw_path = url.split("?", 1)[0].split("#", 1)[0]
    path = urlsplit(url).path or "/"
    canonical = uri_encode(unquote(path), encode_slash=False)
    if not canonical.startswith("/"):
        canonical = "/" + canonical
    # Path normalisation must never cost us the trailing slash of a folder key.
    if raw_path.endswith("/") and not canonical.endswith("/"):
        canonical += "/"
    return canonical


def canonical_query_string(params: QueryParams) -> str:
    encoded = sorted((uri_encode(name), uri_encode(value or "")) for name, value in params)
    return "&".join(f"{name}={value}" for name, value in encoded)


def canonical_headers(headers: Mapping[str, str]) -> tuple[str, str]:
    """Return the canonical header block and the ``;``-joined signed names."""

    normalized: dict[str, str] = {}
    for name, value in headers.items():
        normalized[name.strip().lower()] = _WHITESPACE_RUN.sub(" ", str(value).strip())
    names = sorted(normalized)
    block = "".join(f"{name}:{normalized[name]}\n" for name in names)
    return block, ";".join(names)


def _utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


@dataclass(frozen=True)
class SignedRequest:
    """A request ready for the transport: URL query matches what was signed."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    canonical_request: str = ""
    signature: str = ""


class RequestSigner:
    """Signs requests with long-term credentials for one region."""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str,
        *,
        service: str = SERVICE,
        clock: Clock | None = None,
    ):
        self._access_key = access_key
        self._secret_key = secret_key
        self._region = region
        self._service = service
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def region(self) -> str:
        return self._region

    def _scope(self, datestamp: str) -> str:
        return f"{datestamp}/{self._region}/{self._service}/{TERMINATOR}"

    def _timestamps(self, timestamp: Optional[datetime]) -> tuple[str, str]:
        moment = _utc(timestamp or self._clock()).replace(microsecond=0)
        return moment.strftime("%Y%m%dT%H%M%SZ"), moment.strftime("%Y%m%d")

    def _signature(self, datestamp: str, string_to_sign: str) -> str:
        signing_key = derive_signing_key(self._secret_key, datestamp, self._region, self._service)
        return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    def _string_to_sign(self, amz_date: str, datestamp: str, canonical_request: str) -> str:
        return "\n".join(
            [
                ALGORITHM,
                amz_date,
                self._scope(datestamp),
                sha256_hex(canonical_request.encode("utf-8")),
            ]
        )

    def sign(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams = (),
        headers: Mapping[str, str] | None = None,
        body: bytes = b"",
        timestamp: Optional[datetime] = None,
    ) -> SignedRequest:
        """Sign a request for header-based authentication.

        ``params`` are merged with any query already present on ``url``;
        the returned URL carries the canonical query string verbatim so the
        bytes on the wire are the bytes that were signed.
        """

        method = method.upper()
        parts = urlsplit(url)
        if not parts.netloc:
            raise ValueError(f"Cannot sign a request without a host: {url!r}")
        query = parse_qsl(parts.query, keep_blank_values=True) + list(params)

        amz_date, datestamp = self._timestamps(timestamp)
        payload_hash = sha256_hex(body) if body else EMPTY_SHA256

        outgoing = dict(headers or {})
        outgoing["x-amz-date"] = amz_date
        outgoing["x-amz-content-sha256"] = payload_hash

        to_sign = {"host": parts.netloc}
        for name, value in outgoing.items():
            lower = name.lower()
            if lower.startswith(SIGNED_HEADER_PREFIX) or lower == "content-type":
                to_sign[lower] = value
        header_block, signed_headers = canonical_headers(to_sign)

        uri = canonical_uri(url)
        query_string = canonical_query_string(query)
        canonical_request = "\n".join(
            [method, uri, query_string, header_block, signed_headers, payload_hash]
        )
        signature = self._signature(datestamp, self._string_to_sign(amz_date, datestamp, canonical_request))
        outgoing["Authorization"] = (
            f"{ALGORITHM} Credential={self._access_key}/{self._scope(datestamp)}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

        final_url = f"{parts.scheme}://{parts.netloc}{uri}"
        if query_string:
            final_url += f"?{query_string}"
        return SignedRequest(
            method=method,
            url=final_url,
            headers=outgoing,
            body=body,
            canonical_request=canonical_request,
            signature=signature,
        )

    def presign_url(
        self,
        method: str,
        url: str,
        *,
        expires_in: int,
        params: QueryParams = (),
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Return ``url`` with the signature carried in query parameters."""

        if not 0 < expires_in <= MAX_PRESIGN_EXPIRY:
            raise ValueError(f"expires_in must be between 1 and {MAX_PRESIGN_EXPIRY} seconds")
        parts = urlsplit(url)
        if not parts.netloc:
            raise ValueError(f"Cannot presign a URL without a host: {url!r}")

        amz_date, datestamp = self._timestamps(timestamp)
        query = parse_qsl(parts.query, keep_blank_values=True) + list(params)
        query += [
            ("X-Amz-Algorithm", ALGORITHM),
            ("X-Amz-Credential", f"{self._access_key}/{self._scope(datestamp)}"),
            ("X-Amz-Date", amz_date),
            ("X-Amz-Expires", str(expires_in)),
            ("X-Amz-SignedHeaders", "host"),
        ]
        uri = canonical_uri(url)
        query_string = canonical_query_string(query)
        canonical_request = "\n".join(
            [method.upper(), uri, query_string, f"host:{parts.netloc}\n", "host", UNSIGNED_PAYLOAD]
        )
        signature = self._signature(datestamp, self._string_to_sign(amz_date, datestamp, canonical_request))
        return f"{parts.scheme}://{parts.netloc}{uri}?{query_string}&X-Amz-Signature={signature}"

    def presign_post_policy(
        self,
        conditions: list[object],
        *,
        expires_in: int,
        timestamp: Optional[datetime] = None,
    ) -> dict[str, str]:
        """Sign a browser-upload POST policy and return the form fields."""

        if expires_in <= 0:
            raise ValueError("expires_in must be greater than zero")
        moment = _utc(timestamp or self._clock()).replace(microsecond=0)
        amz_date, datestamp = self._timestamps(moment)
        credential = f"{self._access_key}/{self._scope(datestamp)}"
        expiration = (moment + timedelta(seconds=expires_in)).strftime("%Y-%m-%dT%H:%M:%S.000Z")
        policy = {
            "expiration": expiration,
            "conditions": list(conditions)
            + [
                {"x-amz-algorithm": ALGORITHM},
                {"x-amz-credential": credential},
                {"x-amz-date": amz_date},
            ],
        }
        encoded_policy = base64.b64encode(json.dumps(policy).encode("utf-8")).decode("ascii")
        return {
            "x-amz-algorithm": ALGORITHM,
            "x-amz-credential": credential,
            "x-amz-date": amz_date,
            "policy": encoded_policy,
            "x-amz-signature": self._signature(datestamp, encoded_policy),
        }
