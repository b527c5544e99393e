"""
Sentinel Gate Request Context Processor

Turns raw edge data (headers, cookies, peer address) into a RequestContext.
No decisions. No blocking. Pure enrichment.

Uses GeoIP2 (GeoLite2-ASN) to resolve the ASN when the platform did not
forward one.
"""

import ipaddress
import logging
from http.cookies import CookieError, SimpleCookie
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import unquote

import geoip2.database

from core.config import ConfigProvider
from core.schemas.inputs import RequestContext, TlsMetadata


logger = logging.getLogger(__name__)


DEFAULT_ASN_DB = "assets/GeoLite2-ASN.mmdb"

ASN_HEADERS = ("x-vercel-asn", "cf-asn", "x-asn")
COUNTRY_HEADERS = ("cf-ipcountry", "x-vercel-ip-country")
TRUSTED_PROVIDERS = frozenset({"cloudflare", "vercel", "direct"})


# =============================================================================
# Address Helpers
# =============================================================================

def parse_ip(value: Optional[str]) -> Optional[str]:
    """Return the normalized address, or None if value is not an IP."""
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def network_prefix(ip: Optional[str]) -> Optional[str]:
    """
    Binding prefix for an address: /24 for IPv4, /64 for IPv6.

    Returns None for unparseable input.
    """
    addr = parse_ip(ip)
    if addr is None:
        return None
    prefix = 24 if ipaddress.ip_address(addr).version == 4 else 64
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


def same_network(ip: Optional[str], cidr: Optional[str]) -> bool:
    """True if ip falls inside cidr."""
    addr = parse_ip(ip)
    if addr is None or not cidr:
        return False
    try:
        return ipaddress.ip_address(addr) in ipaddress.ip_network(cidr, strict=False)
    except ValueError:
        return False


def is_public_ip(ip: Optional[str]) -> bool:
    addr = parse_ip(ip)
    if addr is None:
        return False
    return ipaddress.ip_address(addr).is_global


def resolve_client_ip(headers: Mapping[str, str], peer: Optional[str]) -> Tuple[Optional[str], str, bool]:
    """
    Resolve (address, provider, trusted) from request headers.

    Order: Cloudflare client headers, platform-set forwarding headers on
    Vercel, the socket peer, then generic forwarding headers (untrusted).
    """
    cf_ip = parse_ip(headers.get("cf-connecting-ip")) or parse_ip(headers.get("true-client-ip"))
    if cf_ip:
        return cf_ip, "cloudflare", True

    forwarded = parse_ip(headers.get("x-real-ip"))
    if forwarded is None:
        xff = headers.get("x-forwarded-for", "")
        forwarded = parse_ip(xff.split(",")[0]) if xff else None

    on_vercel = "x-vercel-id" in headers or "x-vercel-ip-country" in headers
    if forwarded and on_vercel:
        return forwarded, "vercel", True

    if forwarded:
        return forwarded, "unknown", False

    peer_ip = parse_ip(peer)
    if peer_ip:
        return peer_ip, "direct", True

    return None, "unknown", False


def parse_cookie_header(header: Optional[str]) -> Dict[str, str]:
    if not header:
        return {}
    jar = SimpleCookie()
    try:
        jar.load(header)
    except CookieError:
        return {}
    return {name: morsel.value for name, morsel in jar.items()}


# =============================================================================
# Context Processor
# =============================================================================

class RequestContextProcessor:
    """
    Builds RequestContext objects from edge data.

    The ASN database is optional; lookups fail open to None.
    """

    def __init__(self, config: Optional[ConfigProvider] = None) -> None:
        config = config or ConfigProvider()
        db_path = config.get_str("GEOIP_ASN_DB", DEFAULT_ASN_DB)

        # GeoIP - Fail open if database is unavailable
        try:
            self.asn_reader = geoip2.database.Reader(db_path)
        except Exception as e:
            logger.warning(f"GeoIP ASN database unavailable, ASN from headers only: {e}")
            self.asn_reader = None

    def build(
        self,
        path: str,
        headers: Mapping[str, str],
        cookies: Optional[Mapping[str, str]] = None,
        peer_address: Optional[str] = None,
        asn: Optional[int] = None,
        tls: Optional[TlsMetadata] = None,
    ) -> RequestContext:
        """Assemble the per-request context."""
        lowered = {k.lower(): v for k, v in headers.items()}
        jar = dict(cookies) if cookies else parse_cookie_header(lowered.get("cookie"))

        ip, provider, trusted = resolve_client_ip(lowered, peer_address)

        if asn is None:
            asn = self._asn_from_headers(lowered)
        if asn is None and ip is not None:
            asn = self._lookup_asn(ip)

        fingerprint = jar.get("fp") or lowered.get("x-fp-hash")
        if fingerprint:
            fingerprint = unquote(fingerprint)

        if tls is None and (lowered.get("x-tls-signature") or lowered.get("x-ja3")):
            tls = TlsMetadata(
                signature=lowered.get("x-tls-signature"),
                ja3=lowered.get("x-ja3"),
            )

        country = None
        for name in COUNTRY_HEADERS:
            if lowered.get(name):
                country = lowered[name]
                break

        return RequestContext(
            ip_address=ip,
            ip_trusted=trusted,
            provider=provider,
            asn=asn,
            country=country,
            user_agent=lowered.get("user-agent", ""),
            accept=lowered.get("accept", ""),
            accept_language=lowered.get("accept-language", ""),
            referer=lowered.get("referer", ""),
            path=path or "/",
            cookies=jar,
            headers=lowered,
            fingerprint=fingerprint,
            tls=tls,
        )

    def _asn_from_headers(self, headers: Mapping[str, str]) -> Optional[int]:
        for name in ASN_HEADERS:
            value = headers.get(name)
            if not value:
                continue
            value = value.strip().upper().removeprefix("AS")
            if value.isdigit():
                return int(value)
        return None

    def _lookup_asn(self, ip: str) -> Optional[int]:
        if self.asn_reader is None or not is_public_ip(ip):
            return None
        try:
            return self.asn_reader.asn(ip).autonomous_system_number
        except Exception as e:
            logger.debug(f"GeoIP ASN lookup failed for {ip}: {e}")
            return None
