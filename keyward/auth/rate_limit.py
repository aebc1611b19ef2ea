"""
Per-principal token buckets.

Buckets live in process memory for the lifetime of the process. Each bucket
instance guards its storage with a lock so the check-and-decrement for a key
cannot interleave with another call for the same key.
"""
import time
import threading
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Hashable

logger = logging.getLogger(__name__)


@dataclass
class _RefillingBucket:
    count: int
    refilled_at: float


@dataclass
class _ExpiringBucket:
    count: int
    created_at: float


class RefillingTokenBucket:
    """
    Bucket that regains one token every ``refill_interval_seconds``.

    Used for mutations a user may legitimately repeat a few times over a
    longer period (e.g. replacing the TOTP key).
    """

    def __init__(
        self,
        max_tokens: int,
        refill_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_tokens = max_tokens
        self.refill_interval_seconds = refill_interval_seconds
        self._clock = clock
        self._storage: Dict[Hashable, _RefillingBucket] = {}
        self._lock = threading.Lock()

    def _refill(self, key: Hashable, now: float) -> _RefillingBucket:
        bucket = self._storage.get(key)
        if bucket is None:
            return _RefillingBucket(count=self.max_tokens, refilled_at=now)
        refill = int((now - bucket.refilled_at) // self.refill_interval_seconds)
        if refill > 0:
            bucket.count = min(bucket.count + refill, self.max_tokens)
            bucket.refilled_at += refill * self.refill_interval_seconds
        return bucket

    def _prune(self, now: float) -> None:
        # A bucket that has refilled completely is the same as no bucket.
        full = [
            key for key, bucket in self._storage.items()
            if bucket.count + (now - bucket.refilled_at) // self.refill_interval_seconds >= self.max_tokens
        ]
        for key in full:
            del self._storage[key]

    def check(self, key: Hashable, cost: int = 1) -> bool:
        """Return whether ``cost`` tokens are available without consuming them."""
        with self._lock:
            return self._refill(key, self._clock()).count >= cost

    def consume(self, key: Hashable, cost: int = 1) -> bool:
        """Consume ``cost`` tokens. Returns False (and consumes nothing) if short."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            bucket = self._refill(key, now)
            if bucket.count < cost:
                self._storage[key] = bucket
                logger.debug(f"Refilling bucket exhausted for key {key}")
                return False
            bucket.count -= cost
            self._storage[key] = bucket
            return True

    def reset(self, key: Hashable) -> None:
        with self._lock:
            self._storage.pop(key, None)


class ExpiringTokenBucket:
    """
    Bucket that is refilled completely once ``expires_in_seconds`` have passed
    since it was first drawn from.

    Used to bound guessing (TOTP codes, recovery codes, passwords): after N
    attempts the key is locked out until the window expires.
    """

    def __init__(
        self,
        max_tokens: int,
        expires_in_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_tokens = max_tokens
        self.expires_in_seconds = expires_in_seconds
        self._clock = clock
        self._storage: Dict[Hashable, _ExpiringBucket] = {}
        self._lock = threading.Lock()

    def _current(self, key: Hashable, now: float) -> _ExpiringBucket:
        bucket = self._storage.get(key)
        if bucket is None or now - bucket.created_at >= self.expires_in_seconds:
            return _ExpiringBucket(count=self.max_tokens, created_at=now)
        return bucket

    def _prune(self, now: float) -> None:
        expired = [
            key for key, bucket in self._storage.items()
            if now - bucket.created_at >= self.expires_in_seconds
        ]
        for key in expired:
            del self._storage[key]

    def check(self, key: Hashable, cost: int = 1) -> bool:
        with self._lock:
            return self._current(key, self._clock()).count >= cost

    def consume(self, key: Hashable, cost: int = 1) -> bool:
        with self._lock:
            now = self._clock()
            self._prune(now)
            bucket = self._current(key, now)
            if bucket.count < cost:
                logger.debug(f"Expiring bucket exhausted for key {key}")
                return False
            bucket.count -= cost
            self._storage[key] = bucket
            return True

    def retry_after(self, key: Hashable) -> int:
        """Seconds until the bucket for ``key`` is refilled (0 if it is not in use)."""
        with self._lock:
            bucket = self._storage.get(key)
            if bucket is None:
                return 0
            remaining = self.expires_in_seconds - (self._clock() - bucket.created_at)
            return max(0, int(remaining))

    def reset(self, key: Hashable) -> None:
        with self._lock:
            self._storage.pop(key, None)
