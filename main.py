"""
Sentinel Gate API

FastAPI application exposing:
- POST /evaluate → decision for a request described by the routing layer
- GET  /api/challenge-nonce → {ok, token}
- POST /api/verify-challenge → {ok}, sets the session cookie on success
- GET  /api/honeytrap, /api/px, /api/decoy/feed → honeypot traps

The engine is synchronous (Redis and HTTP lookups block), so handlers hand
it to the thread pool.
"""

from contextlib import asynccontextmanager
import json
import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import ValidationError

from core.config import ConfigProvider, RedisHashConfigSource
from core.errors import MalformedInputError, TokenInvalidError
from core.orchestrator import DecisionEngine, BAN_COOKIE
from core.processors.context import RequestContextProcessor
from core.processors.honeypot import FEED_ASN_WATCH_SEC, TRAP_ASN_WATCH_SEC
from core.schemas.inputs import EvaluatePayload, RequestContext, VerifyChallengePayload
from core.schemas.outputs import DecisionResult, NonceResponse, VerifyChallengeResponse
from persistence.audit_logger import DecisionAuditLogger
from persistence.connection import try_get_redis_client
from persistence.counter_store import CounterStore


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"
BAN_MAX_AGE_SEC = 365 * 24 * 60 * 60

# 1x1 transparent GIF
PIXEL_GIF = bytes.fromhex(
    "47494638396101000100800000ffffff00000021f90401000000002c00000000010001000002024401003b"
)

DECOY_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Updates</title>
    <link>/</link>
    <description>Latest updates</description>
  </channel>
</rss>
"""


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Application state container."""
    config: Optional[ConfigProvider] = None
    store: Optional[CounterStore] = None
    engine: Optional[DecisionEngine] = None
    context_processor: Optional[RequestContextProcessor] = None
    reporter: Optional[DecisionAuditLogger] = None


state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Sentinel Gate API...")
    load_dotenv()

    env_config = ConfigProvider()
    client = try_get_redis_client(env_config)
    remote = RedisHashConfigSource(client) if client is not None else None

    state.config = ConfigProvider(remote=remote)
    state.store = CounterStore(client)
    state.reporter = DecisionAuditLogger(state.config)
    state.context_processor = RequestContextProcessor(state.config)
    state.engine = DecisionEngine(state.config, store=state.store, reporter=state.reporter)
    logger.info("Sentinel Gate ready")

    yield

    # Shutdown
    logger.info("Shutting down Sentinel Gate API...")
    state.reporter.shutdown()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Sentinel Gate",
    description="Adaptive bot-detection gate with proof-of-work challenges",
    version=VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_context(request: Request) -> RequestContext:
    """Context for a request hitting this service directly."""
    return state.context_processor.build(
        path=request.url.path,
        headers=dict(request.headers),
        cookies=dict(request.cookies),
        peer_address=request.client.host if request.client else None,
    )


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": VERSION}


# =============================================================================
# Evaluate Endpoint
# =============================================================================

@app.post("/evaluate", response_model=DecisionResult)
async def evaluate(payload: EvaluatePayload):
    """
    Decide how to serve a request described by the routing layer.

    Returns BYPASS, TRUSTED_PASS, HARD_SAFE, SOFT_SAFE, CHALLENGE or PASS
    with the reason tags and score.
    """
    try:
        ctx = state.context_processor.build(
            path=payload.path,
            headers=payload.headers,
            cookies=payload.cookies,
            peer_address=payload.peer_address,
            asn=payload.asn,
            tls=payload.tls,
        )
        return await run_in_threadpool(state.engine.decide, ctx)
    except Exception as e:
        logger.error(f"Evaluate error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal error during evaluation"
        )


# =============================================================================
# Challenge Endpoints
# =============================================================================

@app.get("/api/challenge-nonce", response_model=NonceResponse)
async def challenge_nonce(request: Request):
    """Issue a challenge token bound to the caller's network and provider."""
    ctx = build_context(request)
    try:
        token = await run_in_threadpool(state.engine.issue_nonce, ctx)
    except MalformedInputError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False})
    return NonceResponse(ok=True, token=token)


@app.post("/api/verify-challenge", response_model=VerifyChallengeResponse)
async def verify_challenge(request: Request):
    """
    Verify a proof-of-work solution.

    Every failure returns the same generic 400 body.
    """
    rejected = JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False})
    try:
        body = VerifyChallengePayload.model_validate(json.loads(await request.body()))
    except (ValueError, ValidationError):
        return rejected

    ctx = build_context(request)
    try:
        outcome = await run_in_threadpool(state.engine.verify_challenge, body, ctx)
    except (MalformedInputError, TokenInvalidError):
        return rejected

    response = JSONResponse(content={"ok": True})
    response.headers["Set-Cookie"] = state.engine.session_cookie(outcome.session_token)
    return response


# =============================================================================
# Honeypot Traps
# =============================================================================

@app.get("/api/honeytrap", include_in_schema=False)
async def honeytrap(request: Request):
    """Hidden link target: count the hit, watch the ASN, ban the browser."""
    ctx = build_context(request)
    await run_in_threadpool(
        state.engine.honeypot.record_trap_hit, ctx.ip_address, ctx.asn, TRAP_ASN_WATCH_SEC
    )
    response = RedirectResponse(url="/safe.html", status_code=status.HTTP_302_FOUND)
    response.set_cookie(BAN_COOKIE, "1", max_age=BAN_MAX_AGE_SEC, path="/", samesite="lax")
    return response


@app.get("/api/px", include_in_schema=False)
async def tracking_pixel(request: Request, hp: Optional[str] = None):
    """Invisible pixel; only hp=1 requests count as trap hits."""
    if hp == "1":
        ctx = build_context(request)
        await run_in_threadpool(state.engine.honeypot.record_trap_hit, ctx.ip_address, ctx.asn, None)
    return Response(
        content=PIXEL_GIF,
        media_type="image/gif",
        headers={"Cache-Control": "no-store"},
    )


@app.get("/api/decoy/feed", include_in_schema=False)
async def decoy_feed(request: Request):
    """Feed only linked from hidden markup; scrapers following it get flagged."""
    ctx = build_context(request)
    await run_in_threadpool(
        state.engine.honeypot.record_trap_hit, ctx.ip_address, ctx.asn, FEED_ASN_WATCH_SEC
    )
    return Response(content=DECOY_FEED, media_type="application/rss+xml")


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
