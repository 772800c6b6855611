"""
Memory record types and the tier store interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from mnemo.core.types import MemoryTier


class EpisodeType(Enum):
    CONVERSATION = "conversation"
    TASK = "task"
    ERROR = "error"
    SUCCESS = "success"
    LEARNING = "learning"
    DISCOVERY = "discovery"


@dataclass
class Episode:
    """One recorded interaction event in episodic memory."""

    agent_id: str
    user_id: str
    session_id: str
    episode_type: EpisodeType
    content: dict[str, Any]
    context: dict[str, Any] = field(default_factory=dict)
    importance_score: float = 0.5
    user_satisfaction: float | None = None
    outcome: str | None = None
    session_duration: float | None = None
    promoted_to_semantic: bool = False
    context_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid4()))

    # Set on retrieval only
    relevance_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "episode_type": self.episode_type.value,
            "content": self.content,
            "context": self.context,
            "importance_score": self.importance_score,
            "user_satisfaction": self.user_satisfaction,
            "outcome": self.outcome,
            "session_duration": self.session_duration,
            "promoted_to_semantic": self.promoted_to_semantic,
            "created_at": self.created_at.isoformat(),
            "memory_type": MemoryTier.EPISODIC.value,
            "relevance_score": self.relevance_score,
        }


@dataclass
class TierRecord:
    """Generic record for the working, semantic and procedural tiers.

    ``kind`` is the context type (working), knowledge type (semantic) or
    behavior type (procedural). ``score`` is relevance, confidence or success
    rate respectively.
    """

    tier: MemoryTier
    agent_id: str
    user_id: str
    content: dict[str, Any]
    kind: str = "general"
    context: dict[str, Any] = field(default_factory=dict)
    score: float = 0.5
    usage_count: int = 0
    adaptation_history: list[Any] = field(default_factory=list)
    session_id: str | None = None
    context_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid4()))

    relevance_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "kind": self.kind,
            "content": self.content,
            "context": self.context,
            "score": self.score,
            "usage_count": self.usage_count,
            "adaptation_history": self.adaptation_history,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "memory_type": self.tier.value,
            "relevance_score": self.relevance_score,
        }


@dataclass
class DiscoveredPattern:
    """One mined regularity."""

    type: str
    category: str
    description: str
    confidence: float
    support: int
    parameters: dict[str, Any] = field(default_factory=dict)
    agent_id: str = ""
    user_id: str = ""
    discovered_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "category": self.category,
            "description": self.description,
            "confidence": self.confidence,
            "support": self.support,
            "parameters": self.parameters,
            "discovered_at": self.discovered_at.isoformat(),
        }


class TierStore(ABC):
    """Per-tier record storage keyed by (agent_id, user_id)."""

    @abstractmethod
    async def insert_record(self, record: TierRecord) -> str:
        """Store record, return ID."""
        ...

    @abstractmethod
    async def query_records(
        self,
        tier: MemoryTier,
        agent_id: str,
        user_id: str,
        query: str | None = None,
        since: datetime | None = None,
        limit: int = 10,
    ) -> list[TierRecord]:
        """Retrieve records of one tier, newest first."""
        ...

    @abstractmethod
    async def get_record(
        self,
        tier: MemoryTier,
        record_id: str,
        agent_id: str | None = None,
        user_id: str | None = None,
    ) -> TierRecord | None:
        """Get record by ID, optionally only when owned by (agent_id, user_id)."""
        ...

    @abstractmethod
    async def update_record_usage(self, record: TierRecord) -> None:
        """Persist score, usage count and adaptation history."""
        ...

    @abstractmethod
    async def count_foreign_records(
        self, tier: MemoryTier, context_id: str, user_id: str
    ) -> int:
        """Count records written under context_id whose owner is not user_id."""
        ...
