"""
Sentinel Gate Input Schemas

This module defines Pydantic V2 models for:
- Per-request context consumed by the decision engine (RequestContext)
- The routing-layer evaluation call (EvaluatePayload)
- The challenge verification call (VerifyChallengePayload)
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Request Context
# =============================================================================

class TlsMetadata(BaseModel):
    """Optional TLS fingerprint data forwarded by the edge."""
    signature: Optional[str] = Field(None, description="Stable TLS signature bound into tokens")
    ja3: Optional[str] = Field(None, description="JA3 hash")


class RequestContext(BaseModel):
    """
    Ephemeral, one per request. Built at entry, discarded after the decision.
    """
    ip_address: Optional[str] = Field(None, description="Resolved client address")
    ip_trusted: bool = Field(
        False,
        description="True if the address came from a platform-trusted field"
    )
    provider: str = Field("unknown", description="cloudflare, vercel, direct or unknown")
    asn: Optional[int] = Field(None, description="Autonomous system number")
    country: Optional[str] = Field(None, description="Country code, if known")
    user_agent: str = Field("", description="Raw user agent string")
    accept: str = Field("", description="Accept header")
    accept_language: str = Field("", description="Accept-Language header")
    referer: str = Field("", description="Referer header")
    path: str = Field("/", description="Request path")
    cookies: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(
        default_factory=dict,
        description="Lower-cased raw request headers"
    )
    fingerprint: Optional[str] = Field(None, description="Client-supplied fingerprint hash")
    tls: Optional[TlsMetadata] = None

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")


# =============================================================================
# API Payloads
# =============================================================================

class EvaluatePayload(BaseModel):
    """
    Description of an inbound request, sent by the routing layer.

    Mirrors what the edge sees: path, headers, cookies and the peer address.
    """
    path: str = Field("/", description="Request path")
    headers: Dict[str, str] = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)
    peer_address: Optional[str] = Field(None, description="Socket peer address")
    asn: Optional[int] = Field(None, description="ASN resolved by the edge, if any")
    tls: Optional[TlsMetadata] = None


class VerifyChallengePayload(BaseModel):
    """Body of the challenge verification call."""
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(..., min_length=1, description="Challenge token from the nonce call")
    solution: Any = Field(None, description="Proof-of-work solution")
    webgl: Optional[str] = Field(None, description="Optional renderer string, informational")
    fp_hash: Optional[str] = Field(None, alias="fpHash", description="Client fingerprint hash")
