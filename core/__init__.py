"""
Sentinel Gate Core

Central module exports for the Sentinel bot-detection gate.
"""

from core.orchestrator import DecisionEngine

__all__ = [
    "DecisionEngine",
]
