"""
Shared type definitions.

Core data structures used across modules.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MemoryTier(Enum):
    WORKING = "working"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"


TIERS: tuple[MemoryTier, ...] = tuple(MemoryTier)


@dataclass
class StoreResult:
    """Outcome of a single tier store call."""

    stored: bool
    id: str | None = None
    tier: MemoryTier = MemoryTier.EPISODIC
    episode_type: str | None = None
    importance_score: float | None = None
    user_satisfaction: float | None = None
    response_time_ms: float = 0.0
    error: str | None = None


@dataclass
class AccessDecision:
    """Result of an isolation check. Denials are returned, never raised."""

    allowed: bool
    reason: str | None = None
    context_id: str | None = None
    cross_context: bool = False
    risk_score: float | None = None
    details: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class ServiceResult:
    """Aggregate result of a service-level store or retrieve."""

    success: bool
    response_time_ms: float = 0.0
    results: dict[str, StoreResult] = field(default_factory=dict)
    memories: list[dict[str, Any]] = field(default_factory=list)
    breakdown: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    @property
    def storage_targets(self) -> list[str]:
        return [tier for tier, result in self.results.items() if result.stored]
