"""
Sentinel Gate Remote Lookups

Timeout-bounded, single-attempt network signals:
- IP reputation (third-party API, cached in the counter store)
- Reverse DNS PTR match against known crawler domains (DNS-over-HTTPS)

Any timeout or error yields None (signal absent). Nothing is retried.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

import httpx

from core.config import ConfigProvider
from core.errors import UpstreamTimeoutError
from core.processors.context import is_public_ip
from persistence.counter_store import CounterStore


logger = logging.getLogger(__name__)


REPUTATION_TIMEOUT_SEC = 1.2
REPUTATION_CACHE_TTL_SEC = 5 * 60
PTR_TIMEOUT_SEC = 0.5
DEFAULT_DOH_URL = "https://dns.google/resolve"

CRAWLER_PTR_PATTERNS: List[re.Pattern] = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\.googlebot\.com\.?$",
        r"\.search\.msn\.com\.?$",
        r"\.crawl\.yahoo\.net\.?$",
        r"\.baidu\.com\.?$",
        r"\.yandex\.ru\.?$",
        r"\.facebook\.com\.?$",
    )
]


def _get_json(
    client: httpx.Client,
    url: str,
    timeout: float,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Any:
    """Single GET returning parsed JSON. Timeouts raise UpstreamTimeoutError."""
    try:
        response = client.get(url, params=params, headers=headers, timeout=timeout)
    except httpx.TimeoutException as exc:
        raise UpstreamTimeoutError(f"{url} timed out after {timeout}s") from exc
    response.raise_for_status()
    return response.json()


class ReputationClient:
    """
    Third-party IP reputation lookup.

    Disabled unless IP_REPUTATION_URL is configured. Understands AbuseIPDB
    style responses (`data.abuseConfidenceScore`) and plain `{score}`.
    """

    def __init__(
        self,
        config: ConfigProvider,
        store: CounterStore,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = config.get_str("IP_REPUTATION_URL")
        self.api_key = config.get_str("IP_REPUTATION_KEY")
        self.timeout = config.get_float("IP_REPUTATION_TIMEOUT", REPUTATION_TIMEOUT_SEC)
        self.store = store
        self.client = client or httpx.Client()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def score(self, ip: Optional[str]) -> Optional[float]:
        """Return a 0-100 abuse score, or None when unavailable."""
        if not self.enabled or not is_public_ip(ip):
            return None

        cache_key = f"REPUTATION:{ip}"
        cached = self.store.get(cache_key)
        if cached is not None:
            try:
                return float(cached)
            except ValueError:
                pass

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Key"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            body = _get_json(
                self.client,
                self.url,
                self.timeout,
                params={"ipAddress": ip},
                headers=headers,
            )
        except UpstreamTimeoutError as e:
            logger.warning(f"IP reputation lookup timed out for {ip}: {e}")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"IP reputation lookup failed for {ip}: {e}")
            return None
        except ValueError as e:
            logger.warning(f"IP reputation response not JSON for {ip}: {e}")
            return None

        score = self._extract_score(body)
        if score is None:
            return None
        self.store.set_with_expiry(cache_key, str(score), REPUTATION_CACHE_TTL_SEC)
        return score

    def _extract_score(self, body: Any) -> Optional[float]:
        if not isinstance(body, dict):
            return None
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        value = data.get("abuseConfidenceScore", data.get("score"))
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)


class ReverseDnsChecker:
    """
    PTR lookup over DNS-over-HTTPS, matched against crawler domains.

    Private and non-public addresses are never looked up.
    """

    def __init__(
        self,
        config: ConfigProvider,
        client: Optional[httpx.Client] = None,
        patterns: Optional[Iterable[re.Pattern]] = None,
    ) -> None:
        self.enabled = config.get_bool("PTR_CHECK_ENABLED", True)
        self.url = config.get_str("PTR_RESOLVER_URL", DEFAULT_DOH_URL)
        self.timeout = config.get_float("PTR_TIMEOUT", PTR_TIMEOUT_SEC)
        self.patterns = list(patterns) if patterns is not None else CRAWLER_PTR_PATTERNS
        self.client = client or httpx.Client()

    def matches(self, ip: Optional[str]) -> Optional[bool]:
        """
        True if a PTR record matches a crawler domain, False if none does,
        None if the lookup could not complete.
        """
        if not self.enabled or not is_public_ip(ip):
            return False

        name = ipaddress.ip_address(ip).reverse_pointer
        try:
            body = _get_json(
                self.client,
                self.url,
                self.timeout,
                params={"name": name, "type": "PTR"},
            )
        except UpstreamTimeoutError as e:
            logger.debug(f"PTR lookup timed out for {ip}: {e}")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"PTR lookup failed for {ip}: {e}")
            return None

        answers = body.get("Answer") if isinstance(body, dict) else None
        for answer in answers or []:
            data = answer.get("data", "") if isinstance(answer, dict) else ""
            if any(p.search(data) for p in self.patterns):
                return True
        return False
