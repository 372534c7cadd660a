"""Cooperative cancellation for long-running render stages."""

from __future__ import annotations

import threading
import time

from domain.comment_video import CANCELLED_CODE, DEADLINE_CODE, RenderCancelledError


class CancellationToken:
    """Thread-safe cancel flag with an optional monotonic deadline."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._event = threading.Event()
        self._reason = "render cancelled"
        self._deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )

    def cancel(self, reason: str = "render cancelled") -> None:
        """Request cancellation."""
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining_seconds(self) -> float | None:
        """Seconds until the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        """Raise RenderCancelledError when cancelled or past the deadline."""
        if self._event.is_set():
            raise RenderCancelledError(CANCELLED_CODE, self._reason)
        if self.expired:
            raise RenderCancelledError(DEADLINE_CODE, "render deadline exceeded")
