import logging
from typing import Optional

import redis
from redis.exceptions import RedisError, AuthenticationError

from core.config import ConfigProvider
from core.errors import ConfigurationMissingError

# Configure module-level logger
logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 0.3


def get_redis_client(config: ConfigProvider) -> redis.Redis:
    """
    Creates a Redis client with a connection pool for the counter store.

    Reads configuration through the provider:
    - REDIS_URL: Full connection URL (takes precedence)
    - REDIS_HOST: Hostname
    - REDIS_PORT: Port (default: 6379)
    - REDIS_PASSWORD: Password (required with REDIS_HOST)
    - REDIS_TIMEOUT: Socket timeout in seconds (default: 0.3)

    Raises:
        ConfigurationMissingError: no endpoint configured.
        RedisError: the endpoint is configured but unreachable.
    """
    timeout = config.get_float("REDIS_TIMEOUT", DEFAULT_TIMEOUT_SEC)
    url = config.get_str("REDIS_URL")
    host = config.get_str("REDIS_HOST")

    if url:
        pool = redis.ConnectionPool.from_url(
            url,
            decode_responses=True,
            max_connections=50,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
    elif host:
        password = config.get_str("REDIS_PASSWORD")
        if not password:
            raise ConfigurationMissingError("REDIS_PASSWORD is required with REDIS_HOST")
        pool = redis.ConnectionPool(
            host=host,
            port=config.get_int("REDIS_PORT", 6379),
            password=password,
            decode_responses=True,  # Returns str instead of bytes
            max_connections=50,     # Cap connections to prevent resource exhaustion
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
    else:
        raise ConfigurationMissingError("No Redis endpoint configured")

    client = redis.Redis(connection_pool=pool)

    try:
        # Health check: Ping immediately to verify connection
        client.ping()
        logger.info("Connected to Redis counter store")
        return client
    except AuthenticationError:
        logger.error("Redis authentication failed. Check REDIS_PASSWORD.")
        raise
    except RedisError as e:
        logger.error(f"Could not connect to Redis: {e}")
        raise


def try_get_redis_client(config: ConfigProvider) -> Optional[redis.Redis]:
    """Return a client, or None when the store is not configured or unreachable."""
    try:
        return get_redis_client(config)
    except ConfigurationMissingError as e:
        logger.warning(f"Counter store not configured, using in-process fallback: {e}")
    except RedisError as e:
        logger.warning(f"Counter store unavailable, using in-process fallback: {e}")
    return None
