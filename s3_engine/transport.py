from __future__ import annotations
"""HTTP exchange with the storage service."""
import asyncio
from dataclasses import dataclass, field
from typing import Mapping, Protocol

from botocore.awsrequest import AWSRequest
from botocore.httpsession import URLLib3Session

from .signing import SignedRequest

DEFAULT_TIMEOUT = 60


@dataclass(frozen=True)
class HttpResponse:
    """Status, lower-cased headers and body of one completed exchange."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)


class Transport(Protocol):
    async def send(self, request: SignedRequest) -> HttpResponse:
        ...


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(name).lower(): str(value) for name, value in headers.items()}


class BotocoreTransport:
    """Sends signed requests through botocore's urllib3 connection pool.

    The blocking send runs in a worker thread so the caller only suspends
    at the exchange boundary. Connection, DNS and TLS failures surface as
    botocore exceptions, unmodified and not retried.
    """

    def __init__(
        self,
        session: URLLib3Session | None = None,
        *,
        timeout: int = DEFAULT_TIMEOUT,
        max_pool_connections: int = 10,
    ):
        self._session = session or URLLib3Session(
            timeout=timeout,
            max_pool_connections=max_pool_connections,
        )

    async def send(self, request: SignedRequest) -> HttpResponse:
        return await asyncio.to_thread(self._send, request)

    def _send(self, request: SignedRequest) -> HttpResponse:
        prepared = AWSRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers),
            data=request.body,
        ).prepare()
        response = self._session.send(prepared)
        return HttpResponse(
            status=response.status_code,
            headers=_lower_headers(response.headers),
            body=response.content or b"",
        )

    def close(self) -> None:
        self._session.close()
