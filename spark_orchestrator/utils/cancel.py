from __future__ import annotations

import threading


class CancelledError(RuntimeError):
    """Raised when a cancellation request should abort the current run."""


class CancellationToken:
    """In-process cancel flag for one run driver.

    Backed by an Event so that a driver sleeping until its next poll wakes up
    as soon as cancellation is requested.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self, reason: str | None = None) -> None:
        if reason and self.reason is None:
            self.reason = reason
        self._event.set()

    def wait(self, timeout_s: float) -> bool:
        """Sleep up to `timeout_s`; returns True if cancellation arrived meanwhile."""
        return self._event.wait(timeout=max(0.0, float(timeout_s)))
