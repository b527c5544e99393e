"""
Sentinel Gate Static Signals

Deterministic, local checks: user-agent patterns, ASN and CIDR blacklists,
analyzer and automation hints, allowlisted referrals, and cookie markers.
No network calls. No decisions.
"""

import ipaddress
import logging
import re
from typing import List, Optional, Tuple
from urllib.parse import unquote, urlsplit

from user_agents import parse as parse_user_agent

from core.schemas.inputs import RequestContext


logger = logging.getLogger(__name__)


# =============================================================================
# Blocklists
# =============================================================================

BOT_UA_PATTERNS: List[re.Pattern] = [
    re.compile(p, re.IGNORECASE) for p in (
        # Search and ad crawlers
        r"adsbot-google",
        r"googlebot",
        r"mediapartners-google",
        r"google[- ]ads",
        r"googleadwords",
        r"doubleclick",
        r"bingbot",
        r"ahrefsbot",
        r"semrushbot",
        r"yandex(bot)?",
        r"baiduspider",
        r"facebookexternalhit",
        r"twitterbot",
        r"linkedinbot",
        r"applebot",
        # Performance testers / analyzers
        r"lighthouse",
        r"page ?speed",
        r"google-?pagespeed",
        r"gtmetrix",
        r"pingdom",
        r"webpagetest",
        r"headlesschrome",
        # Browser automation / headless
        r"puppeteer",
        r"playwright",
        r"selenium",
        r"phantomjs",
        r"electron",
        r"wkhtmlto",
        r"node\.?js",
        # HTTP libraries
        r"curl/|wget/|httpie/|python-requests|axios/",
    )
]

ASN_BLACKLIST = frozenset({
    16509,   # Amazon (AWS)
    14618,   # Amazon-1
    396982,  # Amazon-2
    15169,   # Google
    8075,    # Microsoft
    31898,   # Oracle Cloud
    45102,   # Alibaba
    132203,  # Tencent Cloud
    16276,   # OVH
    24940,   # Hetzner
    14061,   # DigitalOcean
    20473,   # Choopa/Vultr
    16265,   # Leaseweb
    12876,   # Scaleway/Online.net
    63949,   # Akamai/Linode
    20940,   # Akamai Technologies
    16625,   # Akamai International
    13335,   # Cloudflare
    54113,   # Fastly
    32934,   # Meta/Facebook
})

# Broad cloud ranges; aggressive, tune for false positives
CIDR_BLACKLIST = tuple(ipaddress.ip_network(c) for c in (
    "34.0.0.0/8",       # Google
    "35.0.0.0/8",       # Google
    "52.0.0.0/8",       # AWS
    "54.0.0.0/8",       # AWS
    "13.64.0.0/11",     # Azure
    "20.0.0.0/8",       # Microsoft Azure broad
    "104.16.0.0/13",    # Cloudflare (proxy)
    "172.64.0.0/13",    # Cloudflare (proxy)
    "141.101.64.0/18",
    "108.162.192.0/18",
    "190.93.240.0/20",
    "188.114.96.0/20",
    "197.234.240.0/22",
    "198.41.128.0/17",
    "162.158.0.0/15",
    "173.245.48.0/20",
    "103.21.244.0/22",
    "103.22.200.0/22",
    "103.31.4.0/22",
    "151.101.0.0/16",   # Fastly
    "199.232.0.0/16",   # Fastly
))

ANALYZER_REFERER = re.compile(
    r"pagespeed\.web\.dev|developers\.google\.com/speed|gtmetrix\.com|"
    r"tools\.pingdom\.com|webpagetest\.org",
    re.IGNORECASE,
)

AUTOMATION_UA = re.compile(
    r"HeadlessChrome|Puppeteer|Playwright|Selenium|PhantomJS|Electron|wkhtmlto|Node\.js",
    re.IGNORECASE,
)

PREFETCH_PURPOSE = re.compile(r"preview|prefetch|prerender", re.IGNORECASE)

STATIC_ASSET = re.compile(
    r"\.(?:png|jpg|jpeg|gif|svg|ico|css|js|map|txt|webp|woff2?|ttf|eot)$",
    re.IGNORECASE,
)

BYPASS_PREFIXES = ("/_next", "/api/", "/static/")
BYPASS_PATHS = frozenset({"/health", "/hc", "/safe.html", "/offer.html", "/favicon.ico"})

GOOGLE_HOST = re.compile(r"(^|\.)google\.[a-z.]+$")
AD_OR_SEARCH_PARAMS = re.compile(r"[?&](gclid|utm_source=google|utm_medium=cpc|utm_campaign)=", re.IGNORECASE)

HEADLESS_FP_MARKERS = re.compile(r"headless|puppeteer|playwright", re.IGNORECASE)


# =============================================================================
# User Agent
# =============================================================================

def match_blocked_user_agent(user_agent: Optional[str]) -> Optional[str]:
    """Return the matching blocklist pattern, or None."""
    if not user_agent:
        return None
    for pattern in BOT_UA_PATTERNS:
        if pattern.search(user_agent):
            return pattern.pattern
    return None


def is_unknown_user_agent(user_agent: Optional[str]) -> bool:
    """
    Detect non-browser user agents the parser cannot place.

    Empty user agents count as unknown.
    """
    if not user_agent:
        return True
    ua = parse_user_agent(user_agent)
    if ua.is_bot:
        return True
    return ua.browser.family == "Other"


# =============================================================================
# Network
# =============================================================================

def is_blacklisted_asn(asn: Optional[int]) -> bool:
    if asn is None:
        return False
    return asn in ASN_BLACKLIST


def is_blacklisted_ip(ip: Optional[str]) -> bool:
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in net for net in CIDR_BLACKLIST if net.version == addr.version)


# =============================================================================
# Headers
# =============================================================================

def is_analyzer_request(ctx: RequestContext) -> bool:
    """Performance analyzers identified by referer or the lighthouse header."""
    if ANALYZER_REFERER.search(ctx.referer or ""):
        return True
    return ctx.header("x-lighthouse") == "1"


def detect_browser_automation(ctx: RequestContext) -> Tuple[bool, List[str]]:
    """
    Flag likely browser automation behind a generic user agent.

    Only hard signals flag the request; a missing Accept-Language is
    reported but is too weak on its own.
    """
    reasons: List[str] = []
    if AUTOMATION_UA.search(ctx.user_agent or ""):
        reasons.append("ua:automation")

    purpose = ctx.header("purpose") or ctx.header("x-purpose")
    if PREFETCH_PURPOSE.search(purpose):
        reasons.append("hdr:purpose")

    if len(ctx.accept_language or "") < 2:
        reasons.append("hdr:lang")

    if "text/html" not in (ctx.accept or "").lower():
        reasons.append("hdr:accept")

    hard = {"ua:automation", "hdr:purpose", "hdr:accept"}
    return any(r in hard for r in reasons), reasons


def is_trusted_google_ref(ctx: RequestContext) -> bool:
    """
    Real browser navigation arriving from Google search or ads.

    Requires a google.* referer (googleusercontent excluded), navigational
    fetch metadata or ad/search query params, and an HTML accept header.
    """
    if not ctx.referer:
        return False
    try:
        parts = urlsplit(ctx.referer)
    except ValueError:
        return False
    host = (parts.hostname or "").lower()
    if not GOOGLE_HOST.search(host) or host.endswith("googleusercontent.com"):
        return False

    sec_fetch_user = ctx.header("sec-fetch-user")
    sec_fetch_dest = ctx.header("sec-fetch-dest")
    sec_fetch_mode = ctx.header("sec-fetch-mode")
    query = f"?{parts.query}" if parts.query else ""

    has_params = bool(AD_OR_SEARCH_PARAMS.search(query))
    navigational = "?1" in sec_fetch_user or (
        sec_fetch_dest == "document" and "navigate" in sec_fetch_mode.lower()
    )
    html_accept = "text/html" in (ctx.accept or "").lower()
    return (navigational or has_params) and html_accept


# =============================================================================
# Cookies and Paths
# =============================================================================

def fingerprint_valid(ctx: RequestContext) -> bool:
    """Basic sanity checks on the client fingerprint."""
    fp = ctx.fingerprint
    if not fp:
        return False
    value = unquote(fp)
    if len(value) < 10 or len(value) > 130:
        return False
    return not HEADLESS_FP_MARKERS.search(value)


def has_human_activity(ctx: RequestContext) -> bool:
    return ctx.cookies.get("act") == "1" and ctx.cookies.get("hc") == "1"


def is_banned(ctx: RequestContext) -> bool:
    return ctx.cookies.get("ban") == "1"


def is_static_asset_path(path: str) -> bool:
    return bool(STATIC_ASSET.search(path or ""))


def is_bypass_path(path: str) -> bool:
    """Infrastructure, asset and API paths are never scored."""
    path = path or "/"
    if path in BYPASS_PATHS:
        return True
    if path.startswith(BYPASS_PREFIXES):
        return True
    return is_static_asset_path(path)
