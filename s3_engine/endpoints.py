from __future__ import annotations
"""Host and path resolution for path-style and virtual-hosted addressing."""
from dataclasses import dataclass
import fnmatch
import ipaddress
import logging
from typing import Iterable, Optional
from urllib.parse import quote, urlsplit

from .errors import ConfigurationError
from .models import Credentials

DEFAULT_REGION = "us-east-1"

LOGGER = logging.getLogger(__name__)


def uri_encode(value: str, *, encode_slash: bool = True) -> str:
    """Percent-encode everything except the RFC 3986 unreserved characters."""

    return quote(value, safe="" if encode_slash else "/")


@dataclass(frozen=True)
class ProviderQuirk:
    """Overrides applied when the endpoint host matches ``host_pattern``.

    ``region`` replaces the configured region only when that region is one
    of ``override_regions``, so an explicit choice by the user still wins.
    """

    host_pattern: str
    force_path_style: bool = False
    region: Optional[str] = None
    override_regions: frozenset[str] = frozenset({""})

    def matches(self, host: str) -> bool:
        return fnmatch.fnmatchcase(host.lower(), self.host_pattern.lower())


DEFAULT_QUIRKS: tuple[ProviderQuirk, ...] = (
    # Virtual-hosted requests answer NoSuchBucket on this provider.
    ProviderQuirk(
        host_pattern="*next.ink*",
        force_path_style=True,
        region="southwest1",
        override_regions=frozenset({"", "us-east-1", "fr1"}),
    ),
)


@dataclass(frozen=True)
class ResolvedEndpoint:
    """Target of one request: ``path`` is already percent-encoded."""

    scheme: str
    host: str
    path: str

    def url(self, query: str = "") -> str:
        base = f"{self.scheme}://{self.host}{self.path}"
        return f"{base}?{query}" if query else base


class EndpointResolver:
    """Computes host and path for bucket/key pairs of one connection."""

    def __init__(
        self,
        endpoint: str = "",
        *,
        region: str = DEFAULT_REGION,
        use_path_style: bool = False,
        quirks: Iterable[ProviderQuirk] = DEFAULT_QUIRKS,
    ):
        self._scheme, self._host, hostname = _parse_endpoint(endpoint)
        effective_region = (region or "").strip()
        force_path_style = use_path_style
        if hostname:
            for quirk in quirks:
                if not quirk.matches(hostname):
                    continue
                LOGGER.debug("Applying provider quirk '%s' to %s", quirk.host_pattern, hostname)
                force_path_style = force_path_style or quirk.force_path_style
                if quirk.region and effective_region in quirk.override_regions:
                    effective_region = quirk.region
            if _is_ip_or_localhost(hostname):
                force_path_style = True
        self.region = effective_region or DEFAULT_REGION
        self.use_path_style = force_path_style

    @classmethod
    def from_credentials(
        cls,
        credentials: Credentials,
        quirks: Iterable[ProviderQuirk] = DEFAULT_QUIRKS,
    ) -> "EndpointResolver":
        return cls(
            credentials.endpoint,
            region=credentials.region,
            use_path_style=credentials.use_path_style,
            quirks=quirks,
        )

    @property
    def scheme(self) -> str:
        return self._scheme

    @property
    def service_host(self) -> str:
        """Host used when no bucket is involved."""

        return self._host or f"s3.{self.region}.amazonaws.com"

    @property
    def is_aws(self) -> bool:
        host = self._host.rsplit(":", 1)[0] if self._host else ""
        return not host or host.endswith(".amazonaws.com")

    def resolve(self, bucket: str, key: str = "") -> ResolvedEndpoint:
        """Return the host and encoded path addressing ``bucket``/``key``."""

        encoded_key = uri_encode(key, encode_slash=False)
        if not bucket:
            return ResolvedEndpoint(self._scheme, self.service_host, "/")
        encoded_bucket = uri_encode(bucket)
        if self.use_path_style:
            return ResolvedEndpoint(
                self._scheme,
                self.service_host,
                f"/{encoded_bucket}/{encoded_key}",
            )
        return ResolvedEndpoint(
            self._scheme,
            f"{bucket}.{self.service_host}",
            f"/{encoded_key}",
        )


def _parse_endpoint(endpoint: str) -> tuple[str, str, str]:
    value = (endpoint or "").strip()
    if not value:
        return "https", "", ""
    if "://" not in value:
        value = f"https://{value}"
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError as exc:
        raise ConfigurationError(f"Invalid endpoint '{endpoint}': {exc}") from exc
    if parts.scheme not in ("http", "https"):
        raise ConfigurationError(f"Unsupported endpoint scheme '{parts.scheme}'")
    hostname = parts.hostname
    if not hostname:
        raise ConfigurationError(f"Endpoint '{endpoint}' has no host")
    if parts.path.strip("/") or parts.query or parts.fragment:
        raise ConfigurationError(f"Endpoint '{endpoint}' must not contain a path or query")
    netloc_host = f"[{hostname}]" if ":" in hostname else hostname
    # http.client omits the default port from the Host header it sends.
    default_port = 443 if parts.scheme == "https" else 80
    host = f"{netloc_host}:{port}" if port not in (None, default_port) else netloc_host
    return parts.scheme, host, hostname


def _is_ip_or_localhost(hostname: str) -> bool:
    if hostname == "localhost":
        return True
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True
