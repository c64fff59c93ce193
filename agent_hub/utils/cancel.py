from __future__ import annotations

import threading


class CancelledError(RuntimeError):
    """Raised when a cancellation request should abort the current execution."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("cancel_requested")
