"""
Sentinel Gate Token Service

Server-signed, time-bound tokens carrying their own binding data.

Wire format:
    base64url(payload_json) "." base64url(hmac_sha256(secret, payload_json))

Verification is stateless. The payload must carry `exp` (epoch milliseconds)
and normally the bindings `ip_cidr`, `provider`, `fpHash`, and optionally
`tlsSig` and `expVariant`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional

from core.config import ConfigProvider


logger = logging.getLogger(__name__)


TOKEN_SEPARATOR = "."

TOKEN_TYPE_CHALLENGE = "challenge"
TOKEN_TYPE_SESSION = "session"


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode((text + padding).encode("ascii"))


def now_ms() -> int:
    return int(time.time() * 1000)


class TokenService:
    """
    Issues and verifies signed tokens.

    The secret comes from SIGN_KEY. Without one, a random per-process
    secret is generated so the service keeps working; such tokens cannot be
    verified by any other process.
    """

    def __init__(
        self,
        config: ConfigProvider,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._clock_ms = clock_ms
        secret = config.get_str("SIGN_KEY")
        if secret:
            self._secret = secret.encode("utf-8")
            self.ephemeral = False
        else:
            logger.warning("SIGN_KEY not configured, using an ephemeral per-process secret")
            self._secret = ("ephemeral-" + secrets.token_urlsafe(32)).encode("utf-8")
            self.ephemeral = True

    def _mac(self, data: bytes) -> bytes:
        return hmac.new(self._secret, data, hashlib.sha256).digest()

    def issue(self, payload: Dict[str, Any]) -> str:
        """Serialize and sign payload."""
        data = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return f"{b64url_encode(data)}{TOKEN_SEPARATOR}{b64url_encode(self._mac(data))}"

    def verify(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Return the payload of a valid, unexpired token, otherwise None.

        All failure modes collapse to None with no detail.
        """
        if not token or not isinstance(token, str):
            return None

        parts = token.split(TOKEN_SEPARATOR)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None

        try:
            data = b64url_decode(parts[0])
            signature = b64url_decode(parts[1])
        except (binascii.Error, ValueError):
            return None

        # Re-encoding must reproduce the segments exactly, otherwise
        # distinct strings would verify to the same token
        if b64url_encode(data) != parts[0] or b64url_encode(signature) != parts[1]:
            return None

        if not hmac.compare_digest(self._mac(data), signature):
            return None

        try:
            payload = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        if not isinstance(payload, dict):
            return None

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            return None
        if self._clock_ms() > exp:
            return None

        return payload
