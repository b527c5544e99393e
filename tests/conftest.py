"""
Sentinel Gate Test Suite - Shared Pytest Fixtures

This conftest.py provides fixtures for all test categories including:
- A controllable clock for TTL and token expiry
- Config providers backed by in-memory sources
- Counter store, token service and engine instances
- Optional real Redis for integration tests

Usage:
    pytest tests/ -v -s
"""

import os
from typing import Any, Dict

import pytest

from core.config import ConfigProvider, DictConfigSource
from core.schemas.inputs import RequestContext
from persistence.counter_store import CounterStore, MemoryFallback


CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
CLIENT_IP = "203.0.113.10"


# =============================================================================
# Helpers
# =============================================================================

class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def ms(self) -> int:
        return int(self.now * 1000)

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**values: Any) -> ConfigProvider:
    """Config provider that ignores the process environment."""
    return ConfigProvider(remote=DictConfigSource(values), environ={})


def make_context(**overrides: Any) -> RequestContext:
    """A clean browser request from a trusted edge, unless overridden."""
    fields: Dict[str, Any] = {
        "ip_address": CLIENT_IP,
        "ip_trusted": True,
        "provider": "cloudflare",
        "user_agent": CHROME_UA,
        "accept": HTML_ACCEPT,
        "accept_language": "en-US,en;q=0.9",
        "path": "/",
    }
    fields.update(overrides)
    return RequestContext(**fields)


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> ConfigProvider:
    return make_config(SIGN_KEY="test-signing-key", PTR_CHECK_ENABLED="false")


@pytest.fixture
def store(clock) -> CounterStore:
    """Counter store running on the in-process fallback only."""
    return CounterStore(client=None, fallback=MemoryFallback(clock=clock))


@pytest.fixture
def tokens(config, clock):
    from core.tokens import TokenService
    return TokenService(config, clock_ms=clock.ms)


@pytest.fixture
def engine_factory(store, clock):
    """Build a DecisionEngine over the shared store and clock."""
    from core.orchestrator import DecisionEngine
    from core.processors.lookups import ReverseDnsChecker
    from core.tokens import TokenService

    def _build(reporter=None, **values: Any):
        values.setdefault("SIGN_KEY", "test-signing-key")
        values.setdefault("PTR_CHECK_ENABLED", "false")
        config = make_config(**values)
        return DecisionEngine(
            config,
            store=store,
            tokens=TokenService(config, clock_ms=clock.ms),
            reverse_dns=ReverseDnsChecker(config),
            reporter=reporter,
            clock_ms=clock.ms,
        )

    return _build


@pytest.fixture
def engine(engine_factory):
    return engine_factory()


# =============================================================================
# Redis Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def redis_client():
    """
    Session-scoped Redis client for integration tests.

    Skipped unless a Redis server is reachable:
        docker run -p 6379:6379 redis
    """
    import redis

    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", "6379"))
    password = os.environ.get("REDIS_PASSWORD")

    try:
        client = redis.Redis(
            host=host,
            port=port,
            password=password,
            decode_responses=True,
            socket_timeout=0.5,
            socket_connect_timeout=0.5,
        )
        client.ping()
    except redis.RedisError:
        pytest.skip(f"Redis not available at {host}:{port}")
    yield client
    client.close()


@pytest.fixture
def clean_redis(redis_client):
    """
    Function-scoped fixture that provides a clean Redis state.
    Flushes the database after each test for isolation.
    """
    yield redis_client
    redis_client.flushdb()
