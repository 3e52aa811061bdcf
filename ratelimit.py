"""
Fixed-window request limiter keyed by client address.

The counters live behind the WindowCounterStore protocol. The bundled
in-memory store is process-local: with several instances running, each one
enforces the limit on its own.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from errors import RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 60_000
DEFAULT_MAX_REQUESTS = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitRecord:
    client_key: str
    count: int
    window_expiry: int  # epoch ms


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    window_expiry: int

    def retry_after_ms(self, now: int) -> int:
        return max(0, self.window_expiry - now)


class WindowCounterStore(Protocol):
    """Storage for per-client window counters."""

    def increment(self, key: str, now: int, window_ms: int) -> RateLimitRecord:
        """Reset the window when ``now`` is past its expiry, else bump the count."""
        ...

    def reset(self, key: str) -> bool: ...

    def prune(self, now: int) -> int: ...

    def __len__(self) -> int: ...


class InMemoryWindowStore:
    """Dict-backed counter store with opportunistic pruning of dead windows."""

    def __init__(self, max_records: int = 10_000):
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()
        self.max_records = max_records

    def increment(self, key: str, now: int, window_ms: int) -> RateLimitRecord:
        with self._lock:
            record = self._records.get(key)
            if record is None or now >= record.window_expiry:
                if record is None and len(self._records) >= self.max_records:
                    self._prune_locked(now)
                record = RateLimitRecord(client_key=key, count=1, window_expiry=now + window_ms)
                self._records[key] = record
            else:
                record.count += 1
            return RateLimitRecord(record.client_key, record.count, record.window_expiry)

    def reset(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def prune(self, now: int) -> int:
        with self._lock:
            return self._prune_locked(now)

    def _prune_locked(self, now: int) -> int:
        expired = [k for k, r in self._records.items() if now >= r.window_expiry]
        for k in expired:
            del self._records[k]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired rate-limit records")
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


class FixedWindowRateLimiter:
    """Allow up to ``max_requests`` per client per ``window_ms``.

    No smoothing: a burst is fully permitted at the start of a window and
    fully blocked once the quota is spent, until the window expires.
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        store: WindowCounterStore | None = None,
        clock: Callable[[], int] = _now_ms,
    ):
        if window_ms <= 0 or max_requests <= 0:
            raise ValueError("window_ms and max_requests must be positive")
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.store = store if store is not None else InMemoryWindowStore()
        self._clock = clock

    def hit(self, client_key: str) -> RateLimitDecision:
        """Count one request from ``client_key`` and decide whether it may proceed."""
        record = self.store.increment(client_key, self._clock(), self.window_ms)
        return RateLimitDecision(
            allowed=record.count <= self.max_requests,
            count=record.count,
            window_expiry=record.window_expiry,
        )

    def check(self, client_key: str) -> None:
        """Like hit(), but raise RateLimitError when the quota is exceeded."""
        decision = self.hit(client_key)
        if not decision.allowed:
            logger.info(f"Rate limit exceeded for {client_key} ({decision.count}/{self.max_requests} in window)")
            raise RateLimitError(client_key, decision.retry_after_ms(self._clock()))

    def reset(self, client_key: str) -> bool:
        return self.store.reset(client_key)

    def prune(self) -> int:
        return self.store.prune(self._clock())
