"""
Core module - configuration, shared types, events and scheduling.

Components:
- config: Settings management via pydantic-settings
- types: Shared data structures (MemoryTier, StoreResult, AccessDecision)
- events: Explicit event channel for discovery/evolution notifications
- registry: Keyed instance registry with idle eviction
- orchestrator: Periodic cycle scheduler
- logging: Structured logging setup
"""

from mnemo.core.config import Settings
from mnemo.core.types import AccessDecision, MemoryTier, StoreResult

__all__ = ["AccessDecision", "MemoryTier", "Settings", "StoreResult"]
