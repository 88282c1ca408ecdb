from __future__ import annotations
"""Exceptions raised by the S3 engine."""
from typing import Optional


class S3Error(Exception):
    """Base class for failures raised by the engine itself."""


class ConfigurationError(S3Error, ValueError):
    """Raised when the endpoint or credentials cannot be used to build a request."""


class DecodeError(S3Error):
    """Raised when a successful response body does not have the expected shape."""


class ProtocolError(S3Error):
    """Raised for any response status the called operation does not accept.

    S3-compatible services put the real failure reason in the XML body, so
    the raw body is kept alongside the parsed ``code`` and ``message``.
    """

    def __init__(
        self,
        status: int,
        body: str,
        *,
        operation: str = "",
        code: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.status = status
        self.body = body
        self.operation = operation
        self.code = code
        self.message = message
        label = f"{operation} failed" if operation else "Request failed"
        super().__init__(f"{label} with HTTP {status}: {body}")
