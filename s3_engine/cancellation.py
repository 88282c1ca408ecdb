from __future__ import annotations
"""Cooperative cancellation for multi-step operations."""
import threading


class OperationCancelledError(RuntimeError):
    """Raised when a long-running operation is cancelled by the caller."""


class CancellationToken:
    """Flag checked between pages, parts and recursive steps.

    The token may be cancelled from any thread (a UI thread, a signal
    handler); the running coroutine notices at its next check.
    Cancellation is not transactional: work finished before the check
    stays done.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled by user")


def check_cancelled(token: CancellationToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()
