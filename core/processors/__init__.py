"""
Sentinel Gate Processors

Public exports for request enrichment and signal sources.
"""

from core.processors.context import RequestContextProcessor
from core.processors.behavior import RateBehaviorAnalyzer
from core.processors.honeypot import HoneypotTracker
from core.processors.lookups import ReputationClient, ReverseDnsChecker

__all__ = [
    "RequestContextProcessor",
    "RateBehaviorAnalyzer",
    "HoneypotTracker",
    "ReputationClient",
    "ReverseDnsChecker",
]
