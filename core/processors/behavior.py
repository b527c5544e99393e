"""
Sentinel Gate Rate & Behavior Analyzer

Per-key request counts over a shared window plus inter-arrival timing.

Human interaction is irregular and comparatively slow; scripted polling is
fast and regular. Timing history is kept in-process only (last 10 arrivals
per (ip, fingerprint) key).
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Sequence, Tuple

import numpy as np

from persistence.counter_store import CounterStore


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

HISTORY_SIZE = 10
MAX_TRACKED_KEYS = 50_000
FAST_MEAN_FLOOR_MS = 600.0
UNIFORM_CV_FLOOR = 0.10
UNIFORM_MIN_INTERVALS = 4
BINDING_TTL_SEC = 15 * 60
UA_KEY_LENGTH = 40


@dataclass
class Penalty:
    """Rate and timing flags for one request."""
    rate_high: bool
    count: int
    uniform: bool
    fast: bool


@dataclass
class TimingFlags:
    uniform: bool
    fast: bool


def analyze_intervals(timestamps_ms: Sequence[float]) -> TimingFlags:
    """
    Derive timing flags from arrival timestamps (milliseconds, ascending).

    - fast: mean interval below FAST_MEAN_FLOOR_MS (needs >= 2 intervals)
    - uniform: coefficient of variation below UNIFORM_CV_FLOOR with at
      least UNIFORM_MIN_INTERVALS intervals
    """
    if len(timestamps_ms) < 3:
        return TimingFlags(uniform=False, fast=False)

    intervals = np.diff(np.asarray(timestamps_ms, dtype=float))
    mean = float(intervals.mean())
    std = float(intervals.std())
    cv = std / mean if mean else 0.0

    fast = mean < FAST_MEAN_FLOOR_MS
    uniform = cv < UNIFORM_CV_FLOOR and len(intervals) >= UNIFORM_MIN_INTERVALS
    return TimingFlags(uniform=uniform, fast=fast)


def tracking_key(ip: Optional[str], fingerprint: Optional[str], user_agent: Optional[str]) -> str:
    """Prefer the client fingerprint; fall back to address + truncated UA."""
    if fingerprint:
        return fingerprint
    return f"{ip or 'noip'}:{(user_agent or '')[:UA_KEY_LENGTH]}"


class RateBehaviorAnalyzer:
    """
    Counter-backed rate tracking and in-process timing analysis.

    Counter keys:
        RATE:ip:{ip}
        RATE:fp:{fingerprint}
        RATE:asn:{asn}
        BINDING:fp:{fingerprint}
    """

    def __init__(self, store: CounterStore) -> None:
        self.store = store
        self._history: Dict[str, Tuple[Deque[float], float]] = {}
        self._lock = threading.Lock()

    def bump_and_penalize(
        self,
        ip: str,
        fingerprint: str,
        asn: Optional[int],
        window_sec: int,
        per_ip_limit: int,
        per_fp_limit: int,
        per_asn_limit: int,
        now_ms: Optional[float] = None,
    ) -> Penalty:
        """
        Increment the address, fingerprint and ASN counters and derive flags.

        The ASN counter is skipped when the ASN is unknown so unresolved
        traffic does not share one bucket.
        """
        ip_count = self.store.increment(f"RATE:ip:{ip}", window_sec)
        fp_count = self.store.increment(f"RATE:fp:{fingerprint}", window_sec)
        asn_count = 0
        if asn is not None:
            asn_count = self.store.increment(f"RATE:asn:{asn}", window_sec)

        rate_high = (
            ip_count > per_ip_limit
            or fp_count > per_fp_limit
            or asn_count > per_asn_limit
        )
        count = max(ip_count, fp_count, asn_count)

        timestamps = self.record_arrival(
            f"{ip}:{fingerprint}",
            now_ms if now_ms is not None else time.time() * 1000.0,
            window_sec,
        )
        flags = analyze_intervals(timestamps)

        return Penalty(rate_high=rate_high, count=count, uniform=flags.uniform, fast=flags.fast)

    def record_arrival(self, key: str, ts_ms: float, window_sec: int) -> Tuple[float, ...]:
        """Append an arrival to the bounded history and return a snapshot."""
        with self._lock:
            entry = self._history.get(key)
            if entry is None or ts_ms >= entry[1]:
                if len(self._history) >= MAX_TRACKED_KEYS:
                    self._prune(ts_ms)
                entry = (deque(maxlen=HISTORY_SIZE), ts_ms + window_sec * 1000.0)
                self._history[key] = entry
            entry[0].append(ts_ms)
            return tuple(entry[0])

    def _prune(self, now_ms: float) -> None:
        expired = [k for k, (_, exp) in self._history.items() if now_ms >= exp]
        for k in expired:
            del self._history[k]
        # Still full: drop the oldest half
        if len(self._history) >= MAX_TRACKED_KEYS:
            oldest = sorted(self._history.items(), key=lambda kv: kv[1][1])
            for k, _ in oldest[: len(oldest) // 2]:
                del self._history[k]

    def check_binding_churn(
        self,
        fingerprint: Optional[str],
        prefix: Optional[str],
        ttl: int = BINDING_TTL_SEC,
    ) -> bool:
        """
        True when a stable fingerprint shows up under a different network
        prefix than last time (proxy/VPN rotation).
        """
        if not fingerprint or not prefix:
            return False
        change = self.store.get_and_set_binding(f"BINDING:fp:{fingerprint}", prefix, ttl)
        return change.changed and change.previous is not None
