"""
Isolation module - per-agent/user/thread memory boundaries.

Components:
- context: IsolationContext and deterministic context ids
- audit: In-memory audit ring buffer
- contamination: Foreign identifier heuristics
- layer: IsolationLayer, the access gate for every memory operation
"""

from mnemo.isolation.context import IsolationContext, Permissions, derive_context_id
from mnemo.isolation.layer import IsolationLayer

__all__ = ["IsolationContext", "IsolationLayer", "Permissions", "derive_context_id"]
