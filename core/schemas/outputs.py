"""
Sentinel Gate Output Schemas

This module defines Pydantic V2 models for decision results and the
challenge endpoints' JSON contracts.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Enums
# =============================================================================

class GateDecision(str, Enum):
    """Final verdict consumed by the routing layer."""
    BYPASS = "BYPASS"
    HARD_SAFE = "HARD_SAFE"
    TRUSTED_PASS = "TRUSTED_PASS"
    CHALLENGE = "CHALLENGE"
    SOFT_SAFE = "SOFT_SAFE"
    PASS = "PASS"


# =============================================================================
# Risk Assessment
# =============================================================================

class RiskAssessment(BaseModel):
    """Probability that the request is automated, with audit tags."""
    probability: float = Field(..., ge=0.0, le=1.0)
    reasons: List[str] = Field(
        default_factory=list,
        description="Every contributing signal, in evaluation order"
    )


# =============================================================================
# Decision Result
# =============================================================================

class DecisionResult(BaseModel):
    """
    Terminal decision for one request.

    - decision: the verdict
    - reasons: audit tags
    - score: probability from the risk scorer (None when not scored)
    - variant: experiment variant that supplied thresholds
    - challenge_token: issued only for CHALLENGE
    """
    decision: GateDecision
    reasons: List[str] = Field(default_factory=list)
    score: Optional[float] = Field(None, ge=0.0, le=1.0)
    variant: Optional[str] = None
    challenge_token: Optional[str] = None


# =============================================================================
# Challenge Endpoints
# =============================================================================

class NonceResponse(BaseModel):
    ok: bool
    token: Optional[str] = None


class VerifyChallengeResponse(BaseModel):
    ok: bool
