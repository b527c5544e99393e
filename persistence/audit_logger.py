"""
Sentinel Gate Decision Audit Logger

Fire-and-forget reporter that ships one redacted record per terminal
decision to the Supabase `decision_logs` table and, when configured, to a
logs webhook.

Schema:
    decision_logs (
        event_id TEXT PRIMARY KEY,
        payload  JSONB,
        created_at TIMESTAMPTZ DEFAULT now()
    )

Redaction: the client address is reduced to its network prefix, the user
agent is replaced by a truncated SHA-256, and the reason list is capped.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from supabase import create_client, Client

from core.config import ConfigProvider
from core.processors.context import network_prefix
from core.schemas.inputs import RequestContext
from core.schemas.outputs import DecisionResult

logger = logging.getLogger(__name__)


MAX_REASONS = 20
UA_HASH_LENGTH = 32
WEBHOOK_TIMEOUT_SEC = 2.0
MAX_PENDING = 1000


def hash_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    return hashlib.sha256(user_agent.encode("utf-8")).hexdigest()[:UA_HASH_LENGTH]


class DecisionAuditLogger:
    """
    Builds redacted decision records and delivers them off the request path.

    All writes are best-effort: errors are logged but never raised, and
    nothing is retried.
    """

    ENGINE_VERSION = "v1.0.0"
    TABLE = "decision_logs"

    def __init__(
        self,
        config: ConfigProvider,
        executor: Optional[Executor] = None,
        supabase_client: Optional[Client] = None,
        http_client: Optional[httpx.Client] = None,
        max_pending: int = MAX_PENDING,
    ) -> None:
        self.environment = config.get_str("SENTINEL_ENV", "production")
        self.webhook_url = config.get_str("LOGS_WEBHOOK_URL")
        self.webhook_token = config.get_str("LOGS_WEBHOOK_TOKEN")
        self.executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="decision-log"
        )
        self.http = http_client or httpx.Client(timeout=WEBHOOK_TIMEOUT_SEC)
        self._pending = threading.BoundedSemaphore(max_pending)
        self.dropped = 0

        self._client: Optional[Client] = supabase_client
        if self._client is None:
            url = config.get_str("SUPABASE_URL")
            key = config.get_str("SUPABASE_KEY")
            if url and key:
                self._client = create_client(url, key)
            else:
                logger.warning("Supabase credentials missing, decision logs go to webhook only")

    @property
    def enabled(self) -> bool:
        return self._client is not None or bool(self.webhook_url)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, ctx: RequestContext, result: DecisionResult) -> None:
        """
        Queue a record for delivery. Never blocks, never raises.

        Records are dropped while max_pending deliveries are outstanding.
        """
        if not self.enabled:
            return
        if not self._pending.acquire(blocking=False):
            self.dropped += 1
            logger.warning(f"Decision log backlog full, record dropped (total dropped: {self.dropped})")
            return
        try:
            entry = self.build_entry(ctx, result)
            future = self.executor.submit(self.deliver, entry)
            future.add_done_callback(lambda _: self._pending.release())
        except Exception as e:
            self._pending.release()
            logger.error(f"Decision log submission failed: {e}")

    def deliver(self, entry: Dict[str, Any]) -> None:
        """Send one record to every configured sink."""
        if self._client is not None:
            try:
                self._client.table(self.TABLE).insert({
                    "event_id": entry["event_id"],
                    "payload": entry,
                }).execute()
                logger.debug(f"Decision log inserted: {entry['event_id']}")
            except Exception as e:
                logger.error(f"Decision log insertion failed: {e}")

        if self.webhook_url:
            headers = {"Content-Type": "application/json"}
            if self.webhook_token:
                headers["Authorization"] = f"Bearer {self.webhook_token}"
            try:
                response = self.http.post(self.webhook_url, json=entry, headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(f"Decision log webhook failed: {e}")

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Payload Builder
    # ------------------------------------------------------------------

    def build_entry(self, ctx: RequestContext, result: DecisionResult) -> Dict[str, Any]:
        """Assemble the redacted record."""
        now = datetime.now(timezone.utc)
        return {
            "event_id": f"evt_{uuid.uuid4()}",
            "timestamp": now.isoformat(),
            "environment": self.environment,
            "engine_version": self.ENGINE_VERSION,
            "path": ctx.path,
            "decision": result.decision.value,
            "score": result.score,
            "variant": result.variant,
            "reasons": result.reasons[:MAX_REASONS],
            "network": {
                "ip_prefix": network_prefix(ctx.ip_address),
                "provider": ctx.provider,
                "asn": ctx.asn,
                "country": ctx.country,
            },
            "ua_hash": hash_user_agent(ctx.user_agent),
        }
