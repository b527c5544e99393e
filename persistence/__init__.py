"""
Sentinel Gate Persistence Layer

Public exports for the Redis connection, counter store and decision logs.
"""

from .connection import get_redis_client, try_get_redis_client
from .counter_store import BindingChange, CounterStore, MemoryFallback
from .audit_logger import DecisionAuditLogger

__all__ = [
    "get_redis_client",
    "try_get_redis_client",
    "BindingChange",
    "CounterStore",
    "MemoryFallback",
    "DecisionAuditLogger",
]
