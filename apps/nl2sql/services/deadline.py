"""Caller-supplied deadlines for embedding and connector I/O."""

import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from apps.nl2sql.services.errors import DeadlineExceededError

T = TypeVar("T")


class Deadline:
    """Absolute deadline on the monotonic clock. None seconds = no deadline."""

    def __init__(self, seconds: float | None) -> None:
        self._expires_at = None if seconds is None else time.monotonic() + max(0.0, float(seconds))

    @classmethod
    def none(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> float | None:
        """Seconds left (>= 0), or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        rem = self.remaining()
        return rem is not None and rem <= 0.0

    def check(self, what: str) -> None:
        if self.expired:
            raise DeadlineExceededError(f"timeout: {what} exceeded deadline")


def wait_for(
    future: Future,
    deadline: Deadline,
    what: str,
    on_timeout: Callable[[], Any] | None = None,
) -> Any:
    """Wait for future within deadline. On timeout, cancel it, run on_timeout, raise DeadlineExceededError."""
    try:
        return future.result(timeout=deadline.remaining())
    except FutureTimeoutError:
        future.cancel()
        if on_timeout is not None:
            on_timeout()
        raise DeadlineExceededError(f"timeout: {what} exceeded deadline") from None
