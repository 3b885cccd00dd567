import logging
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from .errors import YouTubeTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 10 * 60
DEGRADED_CACHE_TTL_SECONDS = 60


class TTLCache:
    """
    In-memory key/value store with per-entry expiry.

    Expired entries are ignored on read and replaced on the next write; there
    is no background sweep.
    """

    def __init__(self, default_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            hit = self._entries.get(key)
        if not hit:
            return None
        expires_at, value = hit
        if self._clock() >= expires_at:
            return None
        return value

    def set(self, key: Hashable, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SingleFlight:
    """At most one running computation per key; concurrent callers share its outcome."""

    def __init__(self):
        self._lock = threading.Lock()
        self._calls: dict[Hashable, Future] = {}

    def in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._calls

    def do(self, key: Hashable, fn: Callable[[], Any], wait_timeout: float | None = None) -> Any:
        with self._lock:
            future = self._calls.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._calls[key] = future

        if not leader:
            logger.debug("Joining in-flight computation for %s", key)
            try:
                return future.result(timeout=wait_timeout)
            except FutureTimeoutError:
                raise YouTubeTimeoutError("Timed out waiting for an in-flight analysis.")

        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._calls.pop(key, None)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: float = 0.0


class FixedWindowRateLimiter:
    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check(self, identity: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            count, reset_at = self._buckets.get(identity, (0, 0.0))
            if reset_at <= now:
                self._buckets[identity] = (1, now + self.window_seconds)
                return RateLimitDecision(allowed=True)
            if count >= self.max_requests:
                return RateLimitDecision(allowed=False, retry_after_seconds=max(0.0, reset_at - now))
            self._buckets[identity] = (count + 1, reset_at)
            return RateLimitDecision(allowed=True)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


class AnalysisCoordinator:
    """
    Memoizes analysis results per key with single-flight de-duplication.

    Degraded results get the short TTL so upstream hiccups clear on the next
    request instead of sticking for the full TTL.
    """

    def __init__(
        self,
        cache: TTLCache,
        flights: SingleFlight | None = None,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        degraded_ttl_seconds: float = DEGRADED_CACHE_TTL_SECONDS,
    ):
        self.cache = cache
        self.flights = flights or SingleFlight()
        self.ttl_seconds = ttl_seconds
        self.degraded_ttl_seconds = degraded_ttl_seconds

    def cached(self, key: Hashable) -> Any | None:
        return self.cache.get(key)

    def run(
        self,
        key: Hashable,
        compute: Callable[[], Any],
        is_degraded: Callable[[Any], bool],
        wait_timeout: float | None = None,
    ) -> Any:
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        def compute_and_store():
            # Another leader may have finished between our miss and taking the flight.
            hit = self.cache.get(key)
            if hit is not None:
                return hit
            result = compute()
            ttl = self.degraded_ttl_seconds if is_degraded(result) else self.ttl_seconds
            self.cache.set(key, result, ttl)
            logger.info("Cached analysis %s for %ss", key, ttl)
            return result

        return self.flights.do(key, compute_and_store, wait_timeout=wait_timeout)
