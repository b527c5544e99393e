"""
Sentinel Gate Counter Store

TTL-keyed counters and bindings, Redis-backed with an in-process fallback.

Key Schemas:
    RATE:{kind}:{value}        # Rate counter (truncated window)
    HONEYPOT:{ip}              # Honeypot hit counter
    WATCH_ASN:{asn}            # ASN watchlist marker
    BINDING:fp:{fingerprint}   # Last network prefix seen for a fingerprint
    REPUTATION:{ip}            # Cached reputation score
    SESSION:{token_prefix}     # Session -> fingerprint audit binding

Every remote failure (timeout, connection error, unexpected reply) is handled
exactly like "not configured": the call is served from the fallback map.
The fallback map lives for the lifetime of this process only and is not
shared between instances.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from redis.exceptions import RedisError


logger = logging.getLogger(__name__)


Value = Union[int, str]

# Minimum spacing between full expiry sweeps of the fallback map
SWEEP_INTERVAL_SEC = 60


@dataclass
class BindingChange:
    """Result of get_and_set_binding."""
    changed: bool
    previous: Optional[str]


@dataclass
class _Entry:
    value: Value
    expires_at: float


class MemoryFallback:
    """
    Process-local TTL map implementing the four store operations.

    Mutations are guarded by a lock: FastAPI runs sync handlers on a
    thread pool, so several requests may touch the map at once.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def _sweep(self) -> None:
        """Drop every expired entry, at most once per SWEEP_INTERVAL_SEC."""
        now = self._clock()
        if now - self._last_sweep < SWEEP_INTERVAL_SEC:
            return
        self._last_sweep = now
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for k in expired:
            del self._entries[k]

    def increment(self, key: str, ttl: int) -> int:
        with self._lock:
            self._sweep()
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, int):
                # First increment in the window sets the expiry
                self._entries[key] = _Entry(1, self._clock() + ttl)
                return 1
            entry.value += 1
            return entry.value

    def get(self, key: str) -> Optional[Value]:
        with self._lock:
            entry = self._live(key)
            return None if entry is None else entry.value

    def set_with_expiry(self, key: str, value: Value, ttl: int) -> None:
        with self._lock:
            self._sweep()
            self._entries[key] = _Entry(value, self._clock() + ttl)

    def get_and_set(self, key: str, value: str, ttl: int) -> Optional[str]:
        with self._lock:
            self._sweep()
            entry = self._live(key)
            previous = None if entry is None else str(entry.value)
            self._entries[key] = _Entry(value, self._clock() + ttl)
            return previous

    def __len__(self) -> int:
        return len(self._entries)


class CounterStore:
    """
    Counter and binding store.

    Constructed once per process and passed by reference to every
    component that needs it.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        fallback: Optional[MemoryFallback] = None,
    ) -> None:
        self.client = client
        self.fallback = fallback if fallback is not None else MemoryFallback()

    @property
    def remote_enabled(self) -> bool:
        return self.client is not None

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def increment(self, key: str, ttl: int) -> int:
        """
        Increment a counter and return the new count.

        TTL is applied only when the count is 1, so later increments in the
        same window do not extend it.
        """
        if self.client is not None:
            try:
                count = self.client.incr(key)
                if isinstance(count, int):
                    if count == 1:
                        self.client.expire(key, ttl)
                    return count
                logger.warning(f"Unexpected INCR reply for {key}: {count!r}")
            except RedisError as e:
                logger.warning(f"Redis increment failed for {key}: {e}")

        return self.fallback.increment(key, ttl)

    def get(self, key: str) -> Optional[str]:
        """Return the stored value as a string, or None if missing/expired."""
        if self.client is not None:
            try:
                value = self.client.get(key)
                if isinstance(value, bytes):
                    value = value.decode("utf-8")
                return value
            except RedisError as e:
                logger.warning(f"Redis read failed for {key}: {e}")

        value = self.fallback.get(key)
        return None if value is None else str(value)

    def set_with_expiry(self, key: str, value: Value, ttl: int) -> bool:
        """Store value under key for ttl seconds."""
        if self.client is not None:
            try:
                if self.client.setex(key, ttl, value):
                    return True
                logger.warning(f"Redis SETEX not acknowledged for {key}")
            except RedisError as e:
                logger.warning(f"Redis write failed for {key}: {e}")

        self.fallback.set_with_expiry(key, value, ttl)
        return True

    def get_and_set_binding(self, key: str, value: str, ttl: int) -> BindingChange:
        """
        Record value under key and report whether it differs from the
        previously bound value.
        """
        if self.client is not None:
            try:
                pipe = self.client.pipeline()
                pipe.get(key)
                pipe.setex(key, ttl, value)
                previous, _ = pipe.execute()
                if isinstance(previous, bytes):
                    previous = previous.decode("utf-8")
                return BindingChange(changed=previous != value, previous=previous)
            except RedisError as e:
                logger.warning(f"Redis binding update failed for {key}: {e}")

        previous = self.fallback.get_and_set(key, value, ttl)
        return BindingChange(changed=previous != value, previous=previous)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def get_int(self, key: str) -> int:
        """Read a counter, treating missing or non-numeric values as 0."""
        value = self.get(key)
        if value is None:
            return 0
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0
