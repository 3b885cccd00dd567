import threading
import time
from typing import Callable

from .errors import RequestCancelledError, YouTubeTimeoutError


class CancelToken:
    """
    Request-scoped cancellation signal.

    Carries an optional wall-clock deadline (monotonic seconds) and an explicit
    cancel flag. A child token shares its parent's deadline and observes the
    parent's cancellation, but cancelling the child leaves the parent alone.
    """

    def __init__(
        self,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        parent: "CancelToken | None" = None,
    ):
        self._clock = clock
        self._event = threading.Event()
        self._parent = parent
        if parent is not None:
            self.deadline = parent.deadline
        elif timeout_seconds is not None:
            self.deadline = clock() + timeout_seconds
        else:
            self.deadline = None

    def child(self) -> "CancelToken":
        return CancelToken(clock=self._clock, parent=self)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - self._clock()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelledError("Request was cancelled.")
        if self.expired():
            raise YouTubeTimeoutError("Total processing time exceeded.")

    def clamp_timeout(self, timeout: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return max(0.001, min(timeout, remaining))
