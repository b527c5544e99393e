"""
Sentinel Gate Core Schemas

Public exports for input and output Pydantic models.
"""

# Input schemas
from core.schemas.inputs import (
    EvaluatePayload,
    RequestContext,
    TlsMetadata,
    VerifyChallengePayload,
)

# Output schemas
from core.schemas.outputs import (
    DecisionResult,
    GateDecision,
    NonceResponse,
    RiskAssessment,
    VerifyChallengeResponse,
)

__all__ = [
    # Input
    "TlsMetadata",
    "RequestContext",
    "EvaluatePayload",
    "VerifyChallengePayload",
    # Output
    "GateDecision",
    "RiskAssessment",
    "DecisionResult",
    "NonceResponse",
    "VerifyChallengeResponse",
]
