"""
Sentinel Gate Models

Risk scoring over static, remote, behavioral and honeypot signals.
"""

from core.models.risk import DEFAULT_WEIGHTS, RiskScorer

__all__ = [
    "DEFAULT_WEIGHTS",
    "RiskScorer",
]
