"""
Sentinel Gate Risk Scorer

Transparent linear model fusing every signal into a bot probability.

    p = clamp(0.5 + sum(weight[tag] for each fired tag), 0, 1)

Positive weights are risk signals, negative weights are trust signals.
Weights come from a default table, overridden by WEIGHT_TABLE and then by
the experiment variant's table. Every fired signal is reported as a reason
tag so the score can be audited and individual weights retuned.
"""

import logging
from typing import Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from core.processors import blocklists
from core.processors.behavior import Penalty, RateBehaviorAnalyzer, tracking_key
from core.processors.context import network_prefix
from core.processors.honeypot import HoneypotTracker
from core.processors.lookups import ReputationClient, ReverseDnsChecker
from core.config import ConfigProvider
from core.schemas.inputs import RequestContext
from core.schemas.outputs import RiskAssessment


logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Scorer Configuration
# =============================================================================

PRIOR_PROBABILITY = 0.5

DEFAULT_WEIGHTS: Dict[str, float] = {
    # Static blocklists
    "ua:block": 0.60,
    "ua:unknown": 0.10,
    "ip:blacklist": 0.35,
    "asn:blacklist": 0.40,
    "ptr:bot": 0.50,
    # Remote reputation
    "rep:bad": 0.30,
    # Honeypot and watchlist
    "hp:hit": 0.45,
    "asn:watch": 0.20,
    # Rate and behavior
    "rate:high": 0.25,
    "beh:fast": 0.10,
    "beh:uniform": 0.15,
    "fp:churn": 0.15,
    # Header sanity
    "accept:odd": 0.10,
    "lang:none": 0.05,
    "fp:invalid": 0.05,
    # Address provenance
    "src:untrusted": 0.05,
    "src:trusted": -0.05,
    # Client evidence
    "fp:ok": -0.10,
    "activity:seen": -0.10,
    "session:valid": -0.30,
    "session:invalid": 0.10,
}

DEFAULT_RATE_WINDOW_SEC = 60
DEFAULT_RATE_PER_IP = 30
DEFAULT_RATE_PER_FP = 30
DEFAULT_RATE_PER_ASN = 300
DEFAULT_BINDING_TTL_SEC = 15 * 60
DEFAULT_REPUTATION_THRESHOLD = 50.0


def tag_name(reason: str) -> str:
    """Strip the detail suffix: 'rate:high(12)' -> 'rate:high'."""
    return reason.split("(", 1)[0]


def merge_weights(*overrides: Optional[Mapping[str, float]]) -> Dict[str, float]:
    """Apply overrides on top of the defaults, ignoring non-numeric entries."""
    weights = dict(DEFAULT_WEIGHTS)
    for override in overrides:
        if not override:
            continue
        for tag, value in override.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                logger.warning(f"Ignoring non-numeric weight for {tag}")
                continue
            weights[tag] = float(value)
    return weights


# =============================================================================
# Risk Scorer
# =============================================================================

class RiskScorer:
    """
    Fuses static, remote, rate/behavior and honeypot signals.

    Each signal source runs in isolation: a failing source is logged and
    omitted, the rest of the assessment proceeds.
    """

    def __init__(
        self,
        config: ConfigProvider,
        analyzer: RateBehaviorAnalyzer,
        honeypot: HoneypotTracker,
        reputation: Optional[ReputationClient] = None,
        reverse_dns: Optional[ReverseDnsChecker] = None,
    ) -> None:
        self.config = config
        self.analyzer = analyzer
        self.honeypot = honeypot
        self.reputation = reputation
        self.reverse_dns = reverse_dns

        self.window_sec = config.get_int("RATE_WINDOW_SEC", DEFAULT_RATE_WINDOW_SEC)
        self.per_ip = config.get_int("RATE_PER_IP", DEFAULT_RATE_PER_IP)
        self.per_fp = config.get_int("RATE_PER_FP", DEFAULT_RATE_PER_FP)
        self.per_asn = config.get_int("RATE_PER_ASN", DEFAULT_RATE_PER_ASN)
        self.binding_ttl = config.get_int("BINDING_TTL_SEC", DEFAULT_BINDING_TTL_SEC)
        self.reputation_threshold = config.get_float(
            "IP_REPUTATION_THRESHOLD", DEFAULT_REPUTATION_THRESHOLD
        )

    def assess(
        self,
        ctx: RequestContext,
        weight_override: Optional[Mapping[str, float]] = None,
        ptr_match: Optional[bool] = None,
        session_state: Optional[str] = None,
    ) -> RiskAssessment:
        """
        Score a request.

        Args:
            ctx: Request context.
            weight_override: Variant weight table, applied over WEIGHT_TABLE.
            ptr_match: Reverse-DNS result already computed by the caller;
                looked up here when None.
            session_state: "valid", "invalid" or None (no session cookie).

        Returns:
            RiskAssessment with probability in [0, 1] and ordered reasons.
        """
        weights = merge_weights(self.config.get_json("WEIGHT_TABLE"), weight_override)
        reasons: List[str] = []

        reasons.extend(self._safe("static", lambda: self._static_signals(ctx), []))

        if ptr_match is None and self.reverse_dns is not None:
            ptr_match = self._safe("reverse_dns", lambda: self.reverse_dns.matches(ctx.ip_address), None)
        if ptr_match:
            reasons.append("ptr:bot")

        reasons.extend(self._safe("reputation", lambda: self._reputation_signals(ctx), []))
        reasons.extend(self._safe("honeypot", lambda: self._honeypot_signals(ctx), []))
        reasons.extend(self._safe("rate", lambda: self._rate_signals(ctx), []))
        reasons.extend(self._header_signals(ctx))

        if session_state == "valid":
            reasons.append("session:valid")
        elif session_state == "invalid":
            reasons.append("session:invalid")

        probability, contributing = self._fuse(reasons, weights)
        return RiskAssessment(probability=probability, reasons=contributing)

    # -------------------------------------------------------------------------
    # Fusion
    # -------------------------------------------------------------------------

    def _fuse(self, reasons: List[str], weights: Mapping[str, float]) -> Tuple[float, List[str]]:
        """Sum weights for fired tags onto the prior and clamp."""
        total = PRIOR_PROBABILITY
        contributing: List[str] = []
        for reason in reasons:
            weight = weights.get(tag_name(reason))
            if not weight:
                continue
            total += weight
            contributing.append(reason)
        return min(max(total, 0.0), 1.0), contributing

    def _safe(self, name: str, fn: Callable[[], T], default: T) -> T:
        try:
            return fn()
        except Exception as e:
            logger.warning(f"Signal source '{name}' failed, omitting: {e}")
            return default

    # -------------------------------------------------------------------------
    # Signal Sources
    # -------------------------------------------------------------------------

    def _static_signals(self, ctx: RequestContext) -> List[str]:
        reasons: List[str] = []
        if blocklists.match_blocked_user_agent(ctx.user_agent):
            reasons.append("ua:block")
        elif blocklists.is_unknown_user_agent(ctx.user_agent):
            reasons.append("ua:unknown")
        if blocklists.is_blacklisted_ip(ctx.ip_address):
            reasons.append("ip:blacklist")
        if blocklists.is_blacklisted_asn(ctx.asn):
            reasons.append("asn:blacklist")
        return reasons

    def _reputation_signals(self, ctx: RequestContext) -> List[str]:
        if self.reputation is None:
            return []
        score = self.reputation.score(ctx.ip_address)
        if score is not None and score >= self.reputation_threshold:
            return [f"rep:bad({score:g})"]
        return []

    def _honeypot_signals(self, ctx: RequestContext) -> List[str]:
        reasons: List[str] = []
        hits = self.honeypot.get_honeypot_hits(ctx.ip_address)
        if hits > 0:
            reasons.append(f"hp:hit({hits})")
        if self.honeypot.is_asn_watched(ctx.asn):
            reasons.append("asn:watch")
        return reasons

    def _rate_signals(self, ctx: RequestContext) -> List[str]:
        ip = ctx.ip_address or "noip"
        fp = tracking_key(ctx.ip_address, ctx.fingerprint, ctx.user_agent)
        penalty: Penalty = self.analyzer.bump_and_penalize(
            ip=ip,
            fingerprint=fp,
            asn=ctx.asn,
            window_sec=self.window_sec,
            per_ip_limit=self.per_ip,
            per_fp_limit=self.per_fp,
            per_asn_limit=self.per_asn,
        )
        reasons: List[str] = []
        if penalty.rate_high:
            reasons.append(f"rate:high({penalty.count})")
        if penalty.fast:
            reasons.append("beh:fast")
        if penalty.uniform:
            reasons.append("beh:uniform")
        if self.analyzer.check_binding_churn(
            ctx.fingerprint, network_prefix(ctx.ip_address), self.binding_ttl
        ):
            reasons.append("fp:churn")
        return reasons

    def _header_signals(self, ctx: RequestContext) -> List[str]:
        reasons: List[str] = []
        if "text/html" not in (ctx.accept or "").lower():
            reasons.append("accept:odd")
        if len(ctx.accept_language or "") < 2:
            reasons.append("lang:none")

        if ctx.fingerprint:
            reasons.append("fp:ok" if blocklists.fingerprint_valid(ctx) else "fp:invalid")
        if blocklists.has_human_activity(ctx):
            reasons.append("activity:seen")

        reasons.append("src:trusted" if ctx.ip_trusted else "src:untrusted")
        return reasons
