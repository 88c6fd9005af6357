"""
Per-Key Rate Limiting

Admits or rejects requests for a key (typically "<caller>:<tool>") under
a configured ceiling. Three interchangeable algorithms are supported:

- token_bucket: bucket of burst_limit tokens refilled continuously at
  requests_per_minute per window
- sliding_window: per-key count anchored to the key's first request in
  the window; resets once the window has elapsed
- fixed_window: per-key count in windows aligned to multiples of the
  window size since the epoch

A background sweeper removes entries idle for longer than one window so
memory stays bounded regardless of key cardinality. All state is guarded
by a single lock.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable

from .errors import RateLimitError

logger = logging.getLogger(__name__)


class RateLimitAlgorithm(str, Enum):
    TOKEN_BUCKET = "token_bucket"
    SLIDING_WINDOW = "sliding_window"
    FIXED_WINDOW = "fixed_window"


@dataclass(frozen=True)
class RateLimitConfig:
    """
    Rate limit settings.

    Attributes:
        enabled: When False every request is admitted
        requests_per_minute: Ceiling per window (window-based algorithms)
            and refill amount per window (token bucket)
        burst_limit: Token bucket capacity
        window_size_ms: Window length in milliseconds
    """

    enabled: bool = True
    requests_per_minute: int = 60
    burst_limit: int = 10
    window_size_ms: int = 60000

    def __post_init__(self) -> None:
        if self.requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        if self.burst_limit < 1:
            raise ValueError("burst_limit must be at least 1")
        if self.window_size_ms < 1:
            raise ValueError("window_size_ms must be positive")


@dataclass
class RateLimitEntry:
    """Tracking state for one key; times are epoch milliseconds."""

    key: str
    count: float
    window_start: float
    last_request: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    retry_after: int | None = None


def sanitize_key(key: str) -> str:
    """Shorten long keys before they reach log output."""
    if len(key) > 20:
        return f"{key[:8]}...{key[-4:]}"
    return key


class RateLimiter:
    """
    Rate limiter with a selectable admission algorithm.

    Args:
        config: Rate limit settings
        algorithm: Admission algorithm
        clock: Returns the current time in seconds; injectable for tests
        auto_sweep: Start the background sweeper thread
    """

    def __init__(
        self,
        config: RateLimitConfig,
        algorithm: RateLimitAlgorithm | str = RateLimitAlgorithm.SLIDING_WINDOW,
        clock: Callable[[], float] = time.time,
        auto_sweep: bool = True,
    ):
        self.config = config
        self.algorithm = RateLimitAlgorithm(algorithm)
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._total_requests = 0
        self._blocked_requests = 0

        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None
        if auto_sweep and config.enabled:
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="rate-limit-sweeper", daemon=True
            )
            self._sweeper.start()

        logger.info(
            f"Rate limiter initialized: algorithm={self.algorithm.value}, "
            f"requests_per_minute={config.requests_per_minute}, "
            f"burst_limit={config.burst_limit}, window_size_ms={config.window_size_ms}"
        )

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def check_limit(self, key: str) -> RateLimitResult:
        """
        Run the admission algorithm for a key, recording the request if admitted.

        Args:
            key: Rate limit key

        Returns:
            RateLimitResult: allowed flag, remaining quota, reset time and
            retry_after (seconds) when denied
        """
        now = self._now_ms()
        if not self.config.enabled:
            return RateLimitResult(
                allowed=True,
                remaining=self.config.requests_per_minute,
                reset_time=_to_datetime(now + self.config.window_size_ms),
            )

        with self._lock:
            self._total_requests += 1
            if self.algorithm == RateLimitAlgorithm.TOKEN_BUCKET:
                result = self._check_token_bucket(key, now)
            elif self.algorithm == RateLimitAlgorithm.SLIDING_WINDOW:
                result = self._check_sliding_window(key, now)
            else:
                result = self._check_fixed_window(key, now)
            if not result.allowed:
                self._blocked_requests += 1
        return result

    def consume(self, key: str) -> None:
        """
        Admit a request or raise.

        Raises:
            RateLimitError: If the key is over its limit; carries retry_after
        """
        result = self.check_limit(key)
        safe_key = sanitize_key(key)

        if not result.allowed:
            retry_after = result.retry_after or 1
            logger.warning(
                f"Rate limit exceeded for {safe_key}; retry after {retry_after}s",
                extra={"key": safe_key, "retry_after": retry_after},
            )
            raise RateLimitError(
                f"Rate limit exceeded for {safe_key}",
                retry_after,
                safe_key,
                {"remaining": result.remaining, "reset_time": result.reset_time.isoformat()},
            )

        logger.debug(f"Rate limit check passed for {safe_key}: {result.remaining} remaining")

    def get_remaining(self, key: str) -> int:
        """Remaining quota for a key without consuming a request."""
        if not self.config.enabled:
            return self.config.requests_per_minute

        now = self._now_ms()
        window = self.config.window_size_ms
        with self._lock:
            entry = self._entries.get(key)
            if self.algorithm == RateLimitAlgorithm.TOKEN_BUCKET:
                if entry is None:
                    return self.config.burst_limit
                return int(self._refilled_tokens(entry, now))
            if entry is None:
                return self.config.requests_per_minute
            if self.algorithm == RateLimitAlgorithm.SLIDING_WINDOW:
                expired = now >= entry.window_start + window
            else:
                expired = entry.window_start != math.floor(now / window) * window
            if expired:
                return self.config.requests_per_minute
            return int(self.config.requests_per_minute - entry.count)

    def _refilled_tokens(self, entry: RateLimitEntry, now: float) -> float:
        elapsed = max(0.0, now - entry.last_request)
        refill = elapsed / self.config.window_size_ms * self.config.requests_per_minute
        return min(float(self.config.burst_limit), entry.count + refill)

    def _check_token_bucket(self, key: str, now: float) -> RateLimitResult:
        config = self.config
        entry = self._entries.get(key)
        if entry is None:
            entry = RateLimitEntry(key, float(config.burst_limit), now, now)
            self._entries[key] = entry

        entry.count = self._refilled_tokens(entry, now)
        entry.last_request = now

        if entry.count >= 1:
            entry.count -= 1
            missing = config.burst_limit - entry.count
            reset_ms = now + missing * config.window_size_ms / config.requests_per_minute
            return RateLimitResult(
                allowed=True, remaining=int(entry.count), reset_time=_to_datetime(reset_ms)
            )

        retry_after = max(1, math.ceil(config.window_size_ms / config.requests_per_minute / 1000))
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=_to_datetime(now + retry_after * 1000),
            retry_after=retry_after,
        )

    def _check_sliding_window(self, key: str, now: float) -> RateLimitResult:
        window = self.config.window_size_ms
        entry = self._entries.get(key)
        if entry is None:
            entry = RateLimitEntry(key, 0, now, now)
            self._entries[key] = entry

        if now >= entry.window_start + window:
            entry.count = 0
            entry.window_start = now

        return self._admit_in_window(entry, now, entry.window_start + window)

    def _check_fixed_window(self, key: str, now: float) -> RateLimitResult:
        window = self.config.window_size_ms
        window_start = math.floor(now / window) * window
        entry = self._entries.get(key)
        if entry is None:
            entry = RateLimitEntry(key, 0, window_start, now)
            self._entries[key] = entry

        if entry.window_start != window_start:
            entry.count = 0
            entry.window_start = window_start

        return self._admit_in_window(entry, now, window_start + window)

    def _admit_in_window(
        self, entry: RateLimitEntry, now: float, reset_ms: float
    ) -> RateLimitResult:
        ceiling = self.config.requests_per_minute
        if entry.count < ceiling:
            entry.count += 1
            entry.last_request = now
            return RateLimitResult(
                allowed=True,
                remaining=int(ceiling - entry.count),
                reset_time=_to_datetime(reset_ms),
            )

        retry_after = max(1, math.ceil((reset_ms - now) / 1000))
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=_to_datetime(reset_ms),
            retry_after=retry_after,
        )

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
        logger.debug(f"Rate limit reset for {sanitize_key(key)}")

    def reset_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total_requests = 0
            self._blocked_requests = 0
        logger.info("All rate limits reset")

    def get_stats(self) -> dict[str, Any]:
        """
        Get limiter statistics.

        Returns:
            dict: total_requests, blocked_requests, active_keys, oldest_entry
            and newest_entry (datetimes of the least and most recent requests)
        """
        with self._lock:
            timestamps = [entry.last_request for entry in self._entries.values()]
            return {
                "algorithm": self.algorithm.value,
                "total_requests": self._total_requests,
                "blocked_requests": self._blocked_requests,
                "active_keys": len(self._entries),
                "oldest_entry": _to_datetime(min(timestamps)) if timestamps else None,
                "newest_entry": _to_datetime(max(timestamps)) if timestamps else None,
            }

    def cleanup(self) -> int:
        """
        Remove entries idle for longer than one window.

        Returns:
            int: Number of entries removed
        """
        now = self._now_ms()
        with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if now - entry.last_request > self.config.window_size_ms
            ]
            for key in expired:
                del self._entries[key]
            active = len(self._entries)

        if expired:
            logger.debug(
                f"Rate limiter cleanup removed {len(expired)} entries, {active} active"
            )
        return len(expired)

    def _sweep_loop(self) -> None:
        interval = self.config.window_size_ms / 2 / 1000.0
        while not self._stop_event.wait(interval):
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Rate limiter cleanup failed: {e}")

    def shutdown(self) -> None:
        """Stop the sweeper and drop all entries."""
        self._stop_event.set()
        if self._sweeper is not None and self._sweeper.is_alive():
            self._sweeper.join(timeout=1.0)
        with self._lock:
            self._entries.clear()
        logger.info("Rate limiter shutdown completed")


def _to_datetime(epoch_ms: float) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000.0, UTC)
