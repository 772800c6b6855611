"""Working, semantic and procedural tiers.

These share one record shape (TierRecord) and differ in how a record is
scored and typed on write, and ranked on read.
"""

import re
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from mnemo.core.logging import get_logger
from mnemo.core.types import MemoryTier, StoreResult
from mnemo.memory.base import TierRecord, TierStore
from mnemo.memory.classification import content_text
from mnemo.memory.scoring import clamp, sanitize_context, to_datetime

logger = get_logger("memory.tiers")


class TierMemory(ABC):
    """One non-episodic tier for a single (agent, user) pair."""

    tier: MemoryTier
    # Records scoring below this are skipped unless metadata.force_store is set
    min_score: float = 0.0

    def __init__(self, agent_id: str, user_id: str, store: TierStore):
        self.agent_id = str(agent_id)
        self.user_id = user_id
        self.store = store
        self.total_items = 0
        self.skipped = 0
        self.failures = 0
        self.average_response_ms = 0.0

    @abstractmethod
    def score(self, content: Any, context: Mapping[str, Any], metadata: Mapping[str, Any]) -> float:
        ...

    @abstractmethod
    def kind(self, content: Any, context: Mapping[str, Any], metadata: Mapping[str, Any]) -> str:
        ...

    def rank(self, record: TierRecord) -> float:
        return record.score

    def since(self) -> datetime | None:
        return None

    async def store_content(
        self,
        content: Any,
        context: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> StoreResult:
        start = time.perf_counter()
        context = context or {}
        metadata = metadata or {}

        score = self.score(content, context, metadata)
        if score < self.min_score and not metadata.get("force_store"):
            self.skipped += 1
            logger.debug(f"Skipping low-score {self.tier.value} content ({score:.2f})")
            return StoreResult(
                stored=False,
                tier=self.tier,
                importance_score=score,
                error="low_score",
            )

        record = TierRecord(
            tier=self.tier,
            agent_id=self.agent_id,
            user_id=self.user_id,
            content=content if isinstance(content, dict) else {"text": content},
            kind=self.kind(content, context, metadata),
            context=sanitize_context(context),
            score=score,
            session_id=context.get("session_id"),
            context_id=context.get("context_id"),
        )
        try:
            await self.store.insert_record(record)
        except Exception as e:
            self.failures += 1
            logger.error(f"{self.tier.value} storage failed: {e}")
            return StoreResult(stored=False, tier=self.tier, error=str(e))

        elapsed = (time.perf_counter() - start) * 1000
        self.total_items += 1
        self.average_response_ms = 0.9 * self.average_response_ms + 0.1 * elapsed
        return StoreResult(
            stored=True,
            id=record.id,
            tier=self.tier,
            importance_score=score,
            response_time_ms=elapsed,
        )

    async def retrieve(
        self,
        query: str | None = None,
        context: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> list[TierRecord]:
        options = options or {}
        limit = options.get("limit", 10)
        try:
            records = await self.store.query_records(
                self.tier,
                self.agent_id,
                self.user_id,
                query=options.get("text_filter"),
                since=self.since(),
                limit=limit * 2,
            )
        except Exception as e:
            logger.error(f"{self.tier.value} retrieval failed: {e}")
            return []

        for record in records:
            record.relevance_score = self.rank(record)
        records.sort(key=lambda r: r.relevance_score or 0.0, reverse=True)
        return records[:limit]

    def get_stats(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "total_items": self.total_items,
            "skipped": self.skipped,
            "failures": self.failures,
            "average_response_ms": round(self.average_response_ms, 2),
        }


class WorkingMemory(TierMemory):
    """Short-lived, high-relevance context."""

    tier = MemoryTier.WORKING
    min_score = 0.3
    retention = timedelta(hours=24)

    IMPORTANT_KEYWORDS = ("error", "help", "how to", "explain", "show me")

    def score(self, content, context, metadata) -> float:
        relevance = 0.5
        text = content_text(content)
        if text:
            if len(text) > 100:
                relevance += 0.1
            if len(text) > 500:
                relevance += 0.1
            if "?" in text:
                relevance += 0.1
            if any(keyword in text.lower() for keyword in self.IMPORTANT_KEYWORDS):
                relevance += 0.2

        if context.get("has_screenshot"):
            relevance += 0.2
        if context.get("is_user_initiated"):
            relevance += 0.1
        if context.get("session_start"):
            relevance += 0.3

        if metadata.get("is_important"):
            relevance += 0.3
        if (metadata.get("user_rating") or 0) > 0.7:
            relevance += 0.2
        if metadata.get("follow_up"):
            relevance += 0.1

        occurred = to_datetime(context.get("timestamp"))
        if occurred is None or (datetime.now() - occurred).total_seconds() < 60:
            relevance += 0.1

        return clamp(relevance)

    def kind(self, content, context, metadata) -> str:
        if context.get("domain"):
            return str(context["domain"])
        if context.get("has_screenshot") or (isinstance(content, dict) and content.get("image")):
            return "screenshot"
        if context.get("has_audio") or (isinstance(content, dict) and content.get("audio")):
            return "audio"
        if metadata.get("tool_result") or (isinstance(content, dict) and content.get("tool")):
            return "tool_result"
        return "text"

    def since(self) -> datetime | None:
        return datetime.now() - self.retention

    def rank(self, record: TierRecord) -> float:
        # Recency bonus decays over ten minutes
        age = (datetime.now() - record.created_at).total_seconds()
        return record.score + max(0.0, 1 - age / 600) * 0.2


class SemanticMemory(TierMemory):
    """Durable factual knowledge."""

    tier = MemoryTier.SEMANTIC
    min_score = 0.4

    TECHNICAL_TERMS = ("algorithm", "implementation", "architecture", "pattern", "methodology")
    CONNECTORS = ("because", "therefore", "however", "in contrast", "similar to")
    PROCEDURAL_TERMS = ("how to", "step", "first", "then", "process")

    def score(self, content, context, metadata) -> float:
        importance = 0.5
        text = content_text(content)
        if text:
            lowered = text.lower()
            if len(text) > 500:
                importance += 0.2
            if len(text) > 1000:
                importance += 0.2
            if any(term in lowered for term in self.TECHNICAL_TERMS):
                importance += 0.25
            if any(connector in lowered for connector in self.CONNECTORS):
                importance += 0.15

        if context.get("is_expert_domain"):
            importance += 0.3
        if context.get("problem_solved"):
            importance += 0.25
        if context.get("knowledge_gap"):
            importance += 0.2
        if context.get("cross_domain"):
            importance += 0.15

        if metadata.get("is_breakthrough"):
            importance += 0.4
        if metadata.get("user_validated"):
            importance += 0.2
        if metadata.get("from_episodic") and (metadata.get("episode_importance") or 0) > 0.8:
            importance += 0.2
        if metadata.get("is_novel"):
            importance += 0.2

        return clamp(importance)

    def kind(self, content, context, metadata) -> str:
        text = content_text(content).lower()
        if metadata.get("is_technical") or context.get("is_technical"):
            return "technical"
        if any(term in text for term in self.TECHNICAL_TERMS):
            return "technical"
        if context.get("user_interaction") or metadata.get("from_episodic"):
            return "experiential"
        if any(term in text for term in self.PROCEDURAL_TERMS):
            return "procedural"
        return "factual"

    def rank(self, record: TierRecord) -> float:
        return record.score


class ProceduralMemory(TierMemory):
    """Learned behaviors with success rates and adaptation history."""

    tier = MemoryTier.PROCEDURAL

    SEQUENCE_TERMS = ("first", "then", "next", "finally", "step", "process", "workflow")
    ERROR_TERMS = ("error", "fix", "retry", "fallback", "recover")
    ACTION_WORDS = ("click", "type", "select", "choose", "navigate", "open", "close")
    NUMBERED = re.compile(r"\d+\.")

    def _has_structure(self, text: str) -> bool:
        indicators = [
            "\n-" in text or "\n*" in text,
            ":" in text,
            bool(self.NUMBERED.search(text)),
            "\n\n" in text,
        ]
        return sum(indicators) >= 2

    def score(self, content, context, metadata) -> float:
        effectiveness = 0.5
        text = content_text(content)
        if text:
            if len(text) > 200:
                effectiveness += 0.1
            if len(text) > 500:
                effectiveness += 0.1
            if self._has_structure(text):
                effectiveness += 0.15
            if any(word in text.lower() for word in self.ACTION_WORDS):
                effectiveness += 0.2

        if context.get("user_satisfaction"):
            effectiveness += float(context["user_satisfaction"]) * 0.3
        if context.get("task_completion"):
            effectiveness += 0.25
        if context.get("problem_resolved"):
            effectiveness += 0.3
        if (context.get("user_engagement") or 0) > 0.7:
            effectiveness += 0.15

        if metadata.get("was_successful"):
            effectiveness += 0.2
        if (metadata.get("user_rating") or 0) > 0.8:
            effectiveness += 0.2
        if metadata.get("follow_up_reduced"):
            effectiveness += 0.15
        resolution = metadata.get("time_to_resolution")
        if resolution is not None and resolution < 30:
            effectiveness += 0.1

        return clamp(effectiveness)

    def kind(self, content, context, metadata) -> str:
        if metadata.get("behavior_type"):
            return str(metadata["behavior_type"])
        text = content_text(content).lower()
        if metadata.get("is_task_sequence") or any(t in text for t in self.SEQUENCE_TERMS):
            return "task_sequence"
        if metadata.get("is_error_handling") or any(t in text for t in self.ERROR_TERMS):
            return "error_handling"
        return "response_pattern"

    def rank(self, record: TierRecord) -> float:
        return record.score + min(0.2, record.usage_count * 0.02)

    async def record_feedback(
        self, record_id: str, feedback: Mapping[str, Any]
    ) -> TierRecord | None:
        """Apply usage feedback: bump usage, blend success rate, log adaptations."""
        record = await self.store.get_record(self.tier, record_id, self.agent_id, self.user_id)
        if record is None:
            return None

        record.usage_count += 1
        if feedback.get("success") is not None:
            outcome = 1.0 if feedback["success"] else 0.0
            record.score = clamp(0.8 * record.score + 0.2 * outcome)
        if feedback.get("adaptation") or feedback.get("improvement"):
            record.adaptation_history.append(
                {
                    "timestamp": datetime.now().isoformat(),
                    "feedback": dict(feedback),
                }
            )
        await self.store.update_record_usage(record)
        logger.debug(f"Procedural feedback applied to {record_id} (usage {record.usage_count})")
        return record
