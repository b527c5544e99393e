"""
Decision Engine Tests

Tests the full decision flow of DecisionEngine over the in-process
counter store:
- Strict state order (bypass, session, allowlist, hard-safe, scoring)
- Threshold mapping including the challenge margin
- The challenge round trip: nonce → proof-of-work → session → TRUSTED_PASS
- Reporting of terminal decisions
"""

from unittest.mock import MagicMock

import httpx
import pytest

from core.errors import MalformedInputError, TokenInvalidError
from core.experiments import ExperimentConfig
from core.orchestrator import SESSION_COOKIE, SESSION_TTL_SEC, DecisionEngine
from core.pow import meets_difficulty, pow_digest, solve
from core.processors.context import network_prefix
from core.processors.lookups import ReverseDnsChecker
from core.schemas.inputs import TlsMetadata, VerifyChallengePayload
from core.schemas.outputs import GateDecision
from core.tokens import TokenService
from tests.conftest import CLIENT_IP, make_config, make_context


def session_payload(engine, clock, **overrides):
    payload = {
        "exp": clock.ms() + SESSION_TTL_SEC * 1000,
        "ip_cidr": network_prefix(CLIENT_IP),
        "provider": "cloudflare",
        "fpHash": "",
        "expVariant": "control",
        "typ": "session",
    }
    payload.update(overrides)
    return engine.tokens.issue(payload)


def solve_challenge(engine, ctx, fp_hash=None):
    token = engine.issue_nonce(ctx)
    return token, VerifyChallengePayload(token=token, solution=solve(token), fpHash=fp_hash)


# =============================================================================
# State Order
# =============================================================================

class TestStateOrder:
    """First terminal state wins."""

    def test_bypass_path(self, engine):
        result = engine.decide(make_context(path="/_next/static/chunk.js"))
        assert result.decision == GateDecision.BYPASS
        assert result.reasons == ["matcher:excluded"]

    def test_curl_is_hard_safe(self, engine):
        result = engine.decide(make_context(user_agent="curl/8.4.0", accept="*/*"))
        assert result.decision == GateDecision.HARD_SAFE
        assert result.reasons == ["ua:block"]
        assert result.score is None
        print(f"\n✅ curl → {result.decision.value} {result.reasons}")

    def test_ban_cookie_is_hard_safe(self, engine):
        result = engine.decide(make_context(cookies={"ban": "1"}))
        assert result.decision == GateDecision.HARD_SAFE
        assert result.reasons == ["cookie:ban"]

    def test_valid_session_is_trusted_pass(self, engine, clock):
        token = session_payload(engine, clock)
        result = engine.decide(make_context(cookies={SESSION_COOKIE: token}))
        assert result.decision == GateDecision.TRUSTED_PASS
        assert result.reasons == ["session:valid"]

    def test_valid_session_precedes_hard_checks(self, engine, clock):
        token = session_payload(engine, clock)
        result = engine.decide(make_context(cookies={SESSION_COOKIE: token}, accept="*/*"))
        assert result.decision == GateDecision.TRUSTED_PASS

    def test_google_referral_is_trusted_pass(self, engine):
        ctx = make_context(referer="https://www.google.com/", headers={"sec-fetch-user": "?1"})
        result = engine.decide(ctx)
        assert result.decision == GateDecision.TRUSTED_PASS
        assert result.reasons == ["allow:google-ref"]

    def test_analyzer_is_hard_safe(self, engine):
        result = engine.decide(make_context(referer="https://pagespeed.web.dev/"))
        assert result.decision == GateDecision.HARD_SAFE
        assert result.reasons == ["analyzer:detected"]

    def test_automation_is_hard_safe(self, engine):
        result = engine.decide(make_context(headers={"purpose": "prefetch"}))
        assert result.decision == GateDecision.HARD_SAFE
        assert result.reasons[0] == "automation:suspect"
        assert "hdr:purpose" in result.reasons

    def test_blacklisted_network(self, engine):
        assert engine.decide(make_context(ip_address="52.10.20.30")).reasons == ["ip:blacklist"]
        assert engine.decide(make_context(asn=16509)).reasons == ["asn:blacklist"]

    def test_ptr_match_is_hard_safe(self, engine):
        engine.reverse_dns = MagicMock()
        engine.reverse_dns.matches.return_value = True
        result = engine.decide(make_context())
        assert result.decision == GateDecision.HARD_SAFE
        assert result.reasons == ["ptr:bot"]

    def test_failed_ptr_lookup_is_attempted_once(self, store, clock):
        calls = []

        def timeout(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        config = make_config(SIGN_KEY="test-signing-key", PTR_CHECK_ENABLED="true")
        engine = DecisionEngine(
            config,
            store=store,
            tokens=TokenService(config, clock_ms=clock.ms),
            reverse_dns=ReverseDnsChecker(config, client=httpx.Client(transport=httpx.MockTransport(timeout))),
            clock_ms=clock.ms,
        )

        result = engine.decide(make_context(ip_address="8.8.4.4"))

        assert len(calls) == 1
        assert "ptr:bot" not in result.reasons
        assert result.score is not None


# =============================================================================
# Sessions
# =============================================================================

class TestSessionBinding:
    """Session tokens only count when every binding agrees."""

    def test_other_network_is_invalid(self, engine, clock):
        token = session_payload(engine, clock, ip_cidr="198.51.100.0/24")
        result = engine.decide(make_context(cookies={SESSION_COOKIE: token}))
        assert result.decision != GateDecision.TRUSTED_PASS
        assert "session:invalid" in result.reasons

    def test_other_provider_is_invalid(self, engine, clock):
        token = session_payload(engine, clock, provider="vercel")
        assert engine.session_state(make_context(cookies={SESSION_COOKIE: token})) == "invalid"

    def test_other_fingerprint_is_invalid(self, engine, clock):
        token = session_payload(engine, clock, fpHash="fingerprint-one")
        ctx = make_context(cookies={SESSION_COOKIE: token}, fingerprint="fingerprint-two")
        assert engine.session_state(ctx) == "invalid"

    def test_other_tls_signature_is_invalid(self, engine, clock):
        token = session_payload(engine, clock, tlsSig="tls-a")
        ctx = make_context(cookies={SESSION_COOKIE: token}, tls=TlsMetadata(signature="tls-b"))
        assert engine.session_state(ctx) == "invalid"

    def test_challenge_token_is_not_a_session(self, engine):
        ctx = make_context()
        token = engine.issue_nonce(ctx)
        assert engine.session_state(make_context(cookies={SESSION_COOKIE: token})) == "invalid"

    def test_expired_session(self, engine, clock):
        token = session_payload(engine, clock)
        clock.advance(SESSION_TTL_SEC + 1)
        assert engine.session_state(make_context(cookies={SESSION_COOKIE: token})) == "invalid"

    def test_no_cookie(self, engine):
        assert engine.session_state(make_context()) is None


# =============================================================================
# Threshold Mapping
# =============================================================================

class TestClassify:
    """Probability bands against base/strict thresholds."""

    @pytest.fixture
    def experiment(self):
        return ExperimentConfig(variant="control", bot_threshold=0.5, bot_threshold_strict=0.75)

    def test_at_strict_is_hard_safe(self, engine, experiment):
        assert engine.classify(0.75, experiment, True) == (GateDecision.HARD_SAFE, "ml:strict")

    def test_at_base_is_challenge(self, engine, experiment):
        assert engine.classify(0.5, experiment, True) == (GateDecision.CHALLENGE, "ml:challenge")

    def test_margin_challenges_untrusted_only(self, engine, experiment):
        assert engine.classify(0.46875, experiment, False) == (GateDecision.CHALLENGE, "ml:margin")
        assert engine.classify(0.46875, experiment, True) == (GateDecision.PASS, "ml:pass")

    def test_below_margin_passes(self, engine, experiment):
        assert engine.classify(0.25, experiment, False) == (GateDecision.PASS, "ml:pass")

    def test_challenge_disabled_is_soft_safe(self, engine_factory, experiment):
        engine = engine_factory(CHALLENGE_ENABLED="false")
        assert engine.classify(0.5, experiment, True) == (GateDecision.SOFT_SAFE, "ml:soft")
        assert engine.classify(0.75, experiment, True)[0] == GateDecision.HARD_SAFE


class TestScoredDecisions:
    """End-to-end scoring with exact binary weights."""

    def test_probability_equal_to_strict_is_hard_safe(self, engine_factory):
        engine = engine_factory(
            BOT_THRESHOLD="0.5",
            BOT_THRESHOLD_STRICT="0.75",
            WEIGHT_TABLE='{"src:trusted": 0.25}',
        )
        result = engine.decide(make_context())
        assert result.score == 0.75
        assert result.decision == GateDecision.HARD_SAFE
        assert result.reasons[0] == "exp:control"
        assert "ml:strict" in result.reasons

    def test_low_score_passes(self, engine_factory):
        engine = engine_factory(WEIGHT_TABLE='{"src:trusted": -0.25}')
        result = engine.decide(make_context())
        assert result.decision == GateDecision.PASS
        assert result.score == 0.25
        assert result.challenge_token is None

    def test_challenge_carries_token(self, engine_factory):
        engine = engine_factory(
            BOT_THRESHOLD="0.5",
            BOT_THRESHOLD_STRICT="0.875",
            WEIGHT_TABLE='{"src:trusted": 0.125}',
        )
        result = engine.decide(make_context())
        assert result.decision == GateDecision.CHALLENGE
        assert engine.tokens.verify(result.challenge_token)["typ"] == "challenge"

    def test_honeypot_hit_escalates(self, engine_factory):
        engine = engine_factory(WEIGHT_TABLE='{"src:trusted": -0.25}')
        engine.honeypot.record_trap_hit(CLIENT_IP, None)
        result = engine.decide(make_context())
        assert "hp:hit(1)" in result.reasons
        assert result.decision == GateDecision.HARD_SAFE

    def test_variant_reported(self, engine_factory):
        engine = engine_factory(EXPERIMENT_MODE="ab", EXPERIMENT_SPLIT_A="100")
        result = engine.decide(make_context())
        assert result.variant == "A"
        assert result.reasons[0] == "exp:A"


# =============================================================================
# Challenge Flow
# =============================================================================

class TestChallengeFlow:
    """Nonce → proof-of-work → session token."""

    def test_full_round_trip(self, engine, store):
        ctx = make_context(fingerprint="a1b2c3d4e5f6a7b8c9d0")
        token, body = solve_challenge(engine, ctx, fp_hash="a1b2c3d4e5f6a7b8c9d0")

        outcome = engine.verify_challenge(body, ctx)
        assert outcome.max_age == SESSION_TTL_SEC
        assert store.get(f"SESSION:{outcome.session_token[:32]}") == "a1b2c3d4e5f6a7b8c9d0"

        follow_up = make_context(
            fingerprint="a1b2c3d4e5f6a7b8c9d0",
            cookies={SESSION_COOKIE: outcome.session_token},
        )
        result = engine.decide(follow_up)
        assert result.decision == GateDecision.TRUSTED_PASS
        print(f"\n✅ Challenge solved, follow-up → {result.decision.value}")

    def test_session_cookie_attributes(self, engine):
        cookie = engine.session_cookie("tok")
        assert cookie.startswith(f"{SESSION_COOKIE}=tok;")
        for attribute in ("HttpOnly", "Secure", "SameSite=Lax", "Path=/", f"Max-Age={SESSION_TTL_SEC}"):
            assert attribute in cookie

    def test_other_network_rejected(self, engine):
        _, body = solve_challenge(engine, make_context())
        with pytest.raises(TokenInvalidError):
            engine.verify_challenge(body, make_context(ip_address="198.51.100.7"))

    def test_other_provider_rejected(self, engine):
        _, body = solve_challenge(engine, make_context())
        with pytest.raises(TokenInvalidError):
            engine.verify_challenge(body, make_context(provider="vercel"))

    def test_wrong_solution_rejected(self, engine):
        ctx = make_context()
        token = engine.issue_nonce(ctx)
        n = 0
        while meets_difficulty(pow_digest(token, n)):
            n += 1
        with pytest.raises(TokenInvalidError) as exc:
            engine.verify_challenge(VerifyChallengePayload(token=token, solution=n), ctx)
        assert str(exc.value) == "invalid token"

    def test_expired_nonce_rejected(self, engine, clock):
        ctx = make_context()
        _, body = solve_challenge(engine, ctx)
        clock.advance(121)
        with pytest.raises(TokenInvalidError):
            engine.verify_challenge(body, ctx)

    def test_session_token_is_not_a_challenge(self, engine, clock):
        token = session_payload(engine, clock)
        body = VerifyChallengePayload(token=token, solution=solve(token))
        with pytest.raises(TokenInvalidError):
            engine.verify_challenge(body, make_context())

    def test_missing_address(self, engine):
        with pytest.raises(MalformedInputError):
            engine.issue_nonce(make_context(ip_address=None))


# =============================================================================
# Reporting
# =============================================================================

class TestReporting:

    def test_terminal_decisions_reported(self, engine_factory):
        reporter = MagicMock()
        engine = engine_factory(reporter=reporter)
        ctx = make_context(user_agent="curl/8.4.0")
        result = engine.decide(ctx)
        reporter.submit.assert_called_once_with(ctx, result)

    def test_bypass_is_reported(self, engine_factory):
        reporter = MagicMock()
        engine = engine_factory(reporter=reporter)
        ctx = make_context(path="/_next/static/chunk.js")
        result = engine.decide(ctx)
        assert result.decision == GateDecision.BYPASS
        reporter.submit.assert_called_once_with(ctx, result)

    def test_reporter_failure_does_not_change_decision(self, engine_factory):
        reporter = MagicMock()
        reporter.submit.side_effect = RuntimeError("sink down")
        engine = engine_factory(reporter=reporter)
        result = engine.decide(make_context(user_agent="curl/8.4.0"))
        assert result.decision == GateDecision.HARD_SAFE
