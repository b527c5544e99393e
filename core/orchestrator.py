"""
Sentinel Gate Decision Engine

Per-request decision state machine. Evaluated in strict order, first
terminal state wins:

    BYPASS → TRUSTED_PASS (session) → allowlist → HARD_SAFE → scoring

Scoring maps the risk probability p against the variant thresholds:

    p >= strict                                  → HARD_SAFE
    base <= p < strict                           → CHALLENGE
    base - margin <= p < base, untrusted address → CHALLENGE
    otherwise                                    → PASS

With CHALLENGE_ENABLED=false the challenge band degrades to SOFT_SAFE.

Also owns the challenge flow: nonce issuance and proof-of-work
verification, which upgrades a challenge token into a session token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from core import pow as proof_of_work
from core.config import ConfigProvider
from core.errors import MalformedInputError, TokenInvalidError
from core.experiments import ExperimentConfig, get_experiment_config
from core.models.risk import RiskScorer
from core.processors import blocklists
from core.processors.behavior import RateBehaviorAnalyzer
from core.processors.context import network_prefix, same_network
from core.processors.honeypot import HoneypotTracker
from core.processors.lookups import ReputationClient, ReverseDnsChecker
from core.schemas.inputs import RequestContext, VerifyChallengePayload
from core.schemas.outputs import DecisionResult, GateDecision
from core.tokens import TOKEN_TYPE_CHALLENGE, TOKEN_TYPE_SESSION, TokenService, now_ms
from persistence.counter_store import CounterStore


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

SESSION_COOKIE = "human_signed"
BAN_COOKIE = "ban"

CHALLENGE_TTL_SEC = 2 * 60
SESSION_TTL_SEC = 30 * 60
DEFAULT_CHALLENGE_MARGIN = 0.05
FP_HASH_MAX_LENGTH = 128

SESSION_VALID = "valid"
SESSION_INVALID = "invalid"


@dataclass
class ChallengeOutcome:
    """Result of a successful challenge verification."""
    session_token: str
    max_age: int
    variant: str


# =============================================================================
# Decision Engine
# =============================================================================

class DecisionEngine:
    """
    Stateless per request. All durable state lives in the counter store.

    Collaborators are injectable; anything omitted is built from config.
    """

    def __init__(
        self,
        config: ConfigProvider,
        store: Optional[CounterStore] = None,
        tokens: Optional[TokenService] = None,
        scorer: Optional[RiskScorer] = None,
        reverse_dns: Optional[ReverseDnsChecker] = None,
        reporter: Optional[Any] = None,
        clock_ms=now_ms,
    ) -> None:
        self.config = config
        self.store = store or CounterStore()
        self.tokens = tokens or TokenService(config, clock_ms=clock_ms)
        self.honeypot = HoneypotTracker(self.store)
        self.analyzer = RateBehaviorAnalyzer(self.store)
        self.reverse_dns = reverse_dns or ReverseDnsChecker(config)
        self.scorer = scorer or RiskScorer(
            config,
            analyzer=self.analyzer,
            honeypot=self.honeypot,
            reputation=ReputationClient(config, self.store),
            reverse_dns=self.reverse_dns,
        )
        self.reporter = reporter
        self._clock_ms = clock_ms

        logger.info(
            f"DecisionEngine initialized (remote store: {self.store.remote_enabled}, "
            f"ephemeral key: {self.tokens.ephemeral})"
        )

    @property
    def challenge_enabled(self) -> bool:
        return self.config.get_bool("CHALLENGE_ENABLED", True)

    # -------------------------------------------------------------------------
    # Decide
    # -------------------------------------------------------------------------

    def decide(self, ctx: RequestContext) -> DecisionResult:
        """Run the state machine and report the terminal decision."""
        result = self._decide(ctx)
        logger.info(
            f"{result.decision.value} {ctx.path} ip={ctx.ip_address} "
            f"score={result.score} reasons={','.join(result.reasons)}"
        )
        self._report(ctx, result)
        return result

    def _decide(self, ctx: RequestContext) -> DecisionResult:
        # ===== 1. Bypass =====
        if blocklists.is_bypass_path(ctx.path):
            return DecisionResult(decision=GateDecision.BYPASS, reasons=["matcher:excluded"])

        # ===== 2. Verified session =====
        session_state = self.session_state(ctx)
        if session_state == SESSION_VALID:
            return DecisionResult(decision=GateDecision.TRUSTED_PASS, reasons=["session:valid"])

        # ===== 3. Allowlisted referral =====
        if blocklists.is_trusted_google_ref(ctx):
            return DecisionResult(decision=GateDecision.TRUSTED_PASS, reasons=["allow:google-ref"])

        # ===== 4. Static hard checks =====
        hard = self._hard_safe_reasons(ctx)
        if hard:
            return DecisionResult(decision=GateDecision.HARD_SAFE, reasons=hard)

        # A failed lookup counts as no match and is not retried by the scorer
        ptr_match = bool(self.reverse_dns.matches(ctx.ip_address))
        if ptr_match:
            return DecisionResult(decision=GateDecision.HARD_SAFE, reasons=["ptr:bot"])

        # ===== 5. Scoring =====
        experiment = get_experiment_config(self.experiment_seed(ctx), self.config)
        assessment = self.scorer.assess(
            ctx,
            weight_override=experiment.weight_override,
            ptr_match=ptr_match,
            session_state=session_state,
        )
        p = assessment.probability
        decision, band = self.classify(p, experiment, ctx.ip_trusted)

        reasons = [f"exp:{experiment.variant}"] + assessment.reasons + [band, f"score:{p:.2f}"]
        result = DecisionResult(
            decision=decision,
            reasons=reasons,
            score=p,
            variant=experiment.variant,
        )
        if decision == GateDecision.CHALLENGE and network_prefix(ctx.ip_address):
            result.challenge_token = self.issue_nonce(ctx, variant=experiment.variant)
        return result

    def classify(
        self,
        probability: float,
        experiment: ExperimentConfig,
        ip_trusted: bool,
    ) -> Tuple[GateDecision, str]:
        """Map a probability to (decision, band tag)."""
        base = experiment.bot_threshold
        strict = experiment.bot_threshold_strict
        margin = self.config.get_float("CHALLENGE_MARGIN", DEFAULT_CHALLENGE_MARGIN)

        if probability >= strict:
            return GateDecision.HARD_SAFE, "ml:strict"

        in_band = base <= probability
        in_margin = (base - margin) <= probability < base and not ip_trusted
        if in_band or in_margin:
            if not self.challenge_enabled:
                return GateDecision.SOFT_SAFE, "ml:soft"
            return GateDecision.CHALLENGE, "ml:challenge" if in_band else "ml:margin"

        return GateDecision.PASS, "ml:pass"

    def _hard_safe_reasons(self, ctx: RequestContext) -> List[str]:
        """Deterministic checks that end the evaluation immediately."""
        if blocklists.is_banned(ctx):
            return ["cookie:ban"]
        if blocklists.match_blocked_user_agent(ctx.user_agent):
            return ["ua:block"]
        if blocklists.is_analyzer_request(ctx):
            return ["analyzer:detected"]

        automated, automation_reasons = blocklists.detect_browser_automation(ctx)
        if automated:
            return ["automation:suspect"] + automation_reasons

        if blocklists.is_blacklisted_ip(ctx.ip_address):
            return ["ip:blacklist"]
        if blocklists.is_blacklisted_asn(ctx.asn):
            return ["asn:blacklist"]
        return []

    def experiment_seed(self, ctx: RequestContext) -> str:
        return ctx.fingerprint or network_prefix(ctx.ip_address) or "anon"

    def _report(self, ctx: RequestContext, result: DecisionResult) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter.submit(ctx, result)
        except Exception as e:
            logger.error(f"Decision report failed: {e}")

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def session_state(self, ctx: RequestContext) -> Optional[str]:
        """None without a session cookie, otherwise valid or invalid."""
        token = ctx.cookies.get(SESSION_COOKIE)
        if not token:
            return None
        payload = self.tokens.verify(token)
        if payload is None or not self._binding_matches(payload, ctx, TOKEN_TYPE_SESSION):
            return SESSION_INVALID
        return SESSION_VALID

    def _binding_matches(self, payload: Dict[str, Any], ctx: RequestContext, typ: str) -> bool:
        """Token bindings must agree with the presenting request."""
        if payload.get("typ") != typ:
            return False
        if not same_network(ctx.ip_address, payload.get("ip_cidr")):
            return False
        if payload.get("provider") and payload.get("provider") != ctx.provider:
            return False

        bound_fp = payload.get("fpHash")
        if bound_fp and ctx.fingerprint and bound_fp != ctx.fingerprint[:FP_HASH_MAX_LENGTH]:
            return False

        bound_tls = payload.get("tlsSig")
        tls_sig = ctx.tls.signature if ctx.tls else None
        if bound_tls and tls_sig and bound_tls != tls_sig:
            return False
        return True

    def session_cookie(self, token: str) -> str:
        """Set-Cookie value for an issued session token."""
        return (
            f"{SESSION_COOKIE}={token}; HttpOnly; Secure; SameSite=Lax; "
            f"Path=/; Max-Age={SESSION_TTL_SEC}"
        )

    # -------------------------------------------------------------------------
    # Challenge Flow
    # -------------------------------------------------------------------------

    def issue_nonce(self, ctx: RequestContext, variant: Optional[str] = None) -> str:
        """
        Issue a short-lived challenge token bound to the caller.

        Raises:
            MalformedInputError: the client address could not be resolved.
        """
        prefix = network_prefix(ctx.ip_address)
        if prefix is None:
            raise MalformedInputError("client address unavailable")

        if variant is None:
            variant = get_experiment_config(self.experiment_seed(ctx), self.config).variant

        payload: Dict[str, Any] = {
            "exp": self._clock_ms() + CHALLENGE_TTL_SEC * 1000,
            "ip_cidr": prefix,
            "provider": ctx.provider,
            "fpHash": (ctx.fingerprint or "")[:FP_HASH_MAX_LENGTH],
            "expVariant": variant,
            "typ": TOKEN_TYPE_CHALLENGE,
        }
        if ctx.tls and ctx.tls.signature:
            payload["tlsSig"] = ctx.tls.signature
        return self.tokens.issue(payload)

    def verify_challenge(self, body: VerifyChallengePayload, ctx: RequestContext) -> ChallengeOutcome:
        """
        Check a proof-of-work solution and issue a session token.

        Raises:
            MalformedInputError: the client address could not be resolved.
            TokenInvalidError: any token or solution failure.
        """
        prefix = network_prefix(ctx.ip_address)
        if prefix is None:
            raise MalformedInputError("client address unavailable")

        payload = self.tokens.verify(body.token)
        if payload is None or not self._binding_matches(payload, ctx, TOKEN_TYPE_CHALLENGE):
            raise TokenInvalidError()
        if not proof_of_work.verify_solution(body.token, body.solution):
            raise TokenInvalidError()

        fp_hash = (body.fp_hash or ctx.fingerprint or "")[:FP_HASH_MAX_LENGTH]
        variant = payload.get("expVariant") or "control"
        session: Dict[str, Any] = {
            "exp": self._clock_ms() + SESSION_TTL_SEC * 1000,
            "ip_cidr": prefix,
            "provider": ctx.provider,
            "fpHash": fp_hash,
            "expVariant": variant,
            "typ": TOKEN_TYPE_SESSION,
        }
        if payload.get("tlsSig"):
            session["tlsSig"] = payload["tlsSig"]
        session_token = self.tokens.issue(session)

        self.store.set_with_expiry(f"SESSION:{session_token[:32]}", fp_hash, SESSION_TTL_SEC)
        logger.info(f"Challenge solved by {prefix} (variant {variant})")

        return ChallengeOutcome(session_token=session_token, max_age=SESSION_TTL_SEC, variant=variant)
