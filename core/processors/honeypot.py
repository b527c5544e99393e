"""
Sentinel Gate Honeypot & Watchlist Tracker

Trap endpoints are only reachable through hidden links and resources, so any
hit is a strong automation signal. A hit also puts the whole ASN of the
address on a temporary watchlist, which raises risk for co-tenants of that
network until the entry expires.
"""

import logging
from typing import Optional

from persistence.counter_store import CounterStore


logger = logging.getLogger(__name__)


HONEYPOT_TTL_SEC = 6 * 60 * 60
TRAP_ASN_WATCH_SEC = 2 * 60 * 60
FEED_ASN_WATCH_SEC = 60 * 60


class HoneypotTracker:
    """Honeypot hit counters and the ASN watchlist, backed by the counter store."""

    def __init__(self, store: CounterStore) -> None:
        self.store = store

    def _hit_key(self, ip: str) -> str:
        return f"HONEYPOT:{ip}"

    def _watch_key(self, asn: int) -> str:
        return f"WATCH_ASN:{asn}"

    def inc_honeypot(self, ip: Optional[str], ttl: int = HONEYPOT_TTL_SEC) -> int:
        """Record a trap hit for an address. Returns the hit count."""
        return self.store.increment(self._hit_key(ip or "noip"), ttl)

    def get_honeypot_hits(self, ip: Optional[str]) -> int:
        if not ip:
            return 0
        return self.store.get_int(self._hit_key(ip))

    def watch_asn(self, asn: int, ttl: int) -> None:
        self.store.set_with_expiry(self._watch_key(asn), "1", ttl)

    def is_asn_watched(self, asn: Optional[int]) -> bool:
        if asn is None:
            return False
        return self.store.get(self._watch_key(asn)) is not None

    def record_trap_hit(
        self,
        ip: Optional[str],
        asn: Optional[int],
        asn_ttl: Optional[int] = TRAP_ASN_WATCH_SEC,
    ) -> int:
        """
        Count the hit for the address and escalate its ASN when resolvable.

        Pass asn_ttl=None to skip the watchlist (tracking pixel).
        """
        hits = self.inc_honeypot(ip)
        if asn is not None and asn_ttl:
            self.watch_asn(asn, asn_ttl)
            logger.info(f"Honeypot hit from {ip}, watching AS{asn} for {asn_ttl}s")
        else:
            logger.info(f"Honeypot hit from {ip}")
        return hits
