"""
Sentinel Gate Configuration Provider

Two-tier lookup:
    1. Remote source (Redis hash GATE_CONFIG, or any injected ConfigSource)
    2. Process environment (.env is loaded by main.py via python-dotenv)

Values may be strings, numbers or JSON documents. A missing key returns None
so callers can fall back to their own defaults.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Mapping, Optional

from redis.exceptions import RedisError


logger = logging.getLogger(__name__)


class ConfigSource:
    """Remote configuration tier."""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError


class DictConfigSource(ConfigSource):
    """In-memory source, used for tests and static overrides."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None) -> None:
        self.values: Dict[str, Any] = dict(values or {})

    def get(self, key: str) -> Optional[Any]:
        return self.values.get(key)


class RedisHashConfigSource(ConfigSource):
    """Reads configuration from a Redis hash. Errors read as missing keys."""

    HASH_KEY: str = "GATE_CONFIG"

    def __init__(self, client: Any, hash_key: Optional[str] = None) -> None:
        self.client = client
        self.hash_key = hash_key or self.HASH_KEY

    def get(self, key: str) -> Optional[Any]:
        try:
            value = self.client.hget(self.hash_key, key)
        except RedisError as e:
            logger.debug(f"Remote config read failed for {key}: {e}")
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value


class ConfigProvider:
    """
    Configuration provider with environment fallback.

    Injected into every component that needs tunables; nothing in the
    engine reads os.environ directly.
    """

    def __init__(
        self,
        remote: Optional[ConfigSource] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.remote = remote
        self.environ = environ if environ is not None else os.environ

    def get(self, key: str) -> Optional[Any]:
        """Return the raw value for key, remote tier first. Empty strings count as missing."""
        if self.remote is not None:
            value = self.remote.get(key)
            if value is not None and value != "":
                return value
        value = self.environ.get(key)
        if value is None or value == "":
            return None
        return value

    def get_str(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.get(key)
        if value is None:
            return default
        return str(value)

    def get_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        value = self.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning(f"Config {key} is not numeric, using default")
            return default

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        value = self.get_float(key)
        if value is None:
            return default
        return int(value)

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "yes", "on"}

    def get_json(self, key: str) -> Optional[Any]:
        """Return a structured value. Strings are parsed as JSON; invalid JSON reads as missing."""
        value = self.get(key)
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            logger.warning(f"Config {key} is not valid JSON, ignoring")
            return None
