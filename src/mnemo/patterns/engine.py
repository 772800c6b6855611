"""Pattern discovery engine - one instance per (agent, user).

Mines temporal, contextual, cross-memory and behavioral regularities from
stored memories and feeds them back into retrieval ranking.
"""

import asyncio
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

from mnemo.core.config import Settings
from mnemo.core.events import EventChannel
from mnemo.core.logging import get_logger
from mnemo.core.types import MemoryTier
from mnemo.evolution.strategy import PATTERN_RECOGNITION, StrategyRegistry
from mnemo.memory.base import DiscoveredPattern
from mnemo.memory.store import SQLiteMemoryStore
from mnemo.patterns import analyzers
from mnemo.patterns.analyzers import MemoryFeatures

logger = get_logger("patterns.engine")

CONTEXT_SAMPLE = 50
BEHAVIOR_SAMPLE = 100
ENHANCEMENT_PATTERNS = 10
ENHANCEMENT_SCALE = 0.1
MAX_BOOST = 0.1
# pattern_recognition weights are 0.25 each by default
WEIGHT_NORMALIZER = 4.0

# Pattern type -> pattern_recognition parameter
RECOGNITION_WEIGHTS = {
    "temporal": "temporal",
    "contextual": "contextual",
    "behavioral": "behavioral",
    "cross_memory": "semantic",
}


class PatternDiscoveryEngine:
    """Discovers and applies patterns for a single agent/user pair."""

    def __init__(
        self,
        agent_id: str,
        user_id: str,
        store: SQLiteMemoryStore,
        settings: Settings | None = None,
        events: EventChannel | None = None,
        strategies: StrategyRegistry | None = None,
    ):
        self.agent_id = str(agent_id)
        self.user_id = user_id
        self.store = store
        self.settings = settings or Settings()
        self.events = events
        self.strategies = strategies

        # (category, description) -> pattern; the live view used for enhancement
        self._patterns: dict[tuple[str, str], DiscoveredPattern] = {}
        self.initialized = False
        self.last_analysis: datetime | None = None
        self.metrics = {
            "analyses": 0,
            "candidates": 0,
            "patterns_stored": 0,
            "analyzer_failures": 0,
            "enhancements": 0,
            "evolutions": 0,
            "patterns_retired": 0,
        }

    async def initialize(self) -> None:
        if self.initialized:
            return
        try:
            stored = await self.store.list_patterns(
                self.agent_id,
                self.user_id,
                min_confidence=self.settings.pattern_confidence_threshold,
                limit=self.settings.max_patterns_per_agent,
            )
        except Exception as e:
            logger.error(f"Failed to load patterns for {self.agent_id}:{self.user_id}: {e}")
            stored = []
        for pattern in stored:
            self._patterns[(pattern.category, pattern.description)] = pattern
        self.initialized = True
        logger.debug(f"Loaded {len(stored)} patterns for {self.agent_id}:{self.user_id}")

    # Analysis

    async def analyze_new_memory(
        self,
        content: Any,
        context: Mapping[str, Any] | None = None,
        stored_tiers: Sequence[str] = (),
        now: datetime | None = None,
    ) -> list[DiscoveredPattern]:
        """Run all analyzers for one storage event; return the patterns persisted."""
        if not self.initialized:
            await self.initialize()

        features = analyzers.extract_features(content, context or {}, stored_tiers, now)
        results = await asyncio.gather(
            self._guard("temporal", self.analyze_temporal(features)),
            self._guard("contextual", self.analyze_contextual(features)),
            self._guard("cross_memory", self.analyze_cross_memory(features)),
            self._guard("behavioral", self.analyze_behavioral()),
        )
        candidates = [pattern for group in results for pattern in group]
        self.metrics["analyses"] += 1
        self.metrics["candidates"] += len(candidates)
        self.last_analysis = datetime.now()

        accepted = [p for p in candidates if self.is_significant(p)]
        stored = []
        for pattern in accepted:
            pattern.agent_id = self.agent_id
            pattern.user_id = self.user_id
            if await self._persist(pattern):
                stored.append(pattern)

        if stored:
            await self._enforce_cap()
            logger.info(
                f"Discovered {len(stored)} patterns for {self.agent_id}:{self.user_id}: "
                f"{', '.join(p.category for p in stored)}"
            )
            if self.events is not None:
                self.events.publish(
                    "patterns.discovered",
                    agent_id=self.agent_id,
                    user_id=self.user_id,
                    patterns=[p.to_dict() for p in stored],
                )
        return stored

    def is_significant(self, pattern: DiscoveredPattern) -> bool:
        return (
            pattern.confidence >= self.settings.pattern_confidence_threshold
            and pattern.support >= self.settings.min_pattern_support
        )

    async def _guard(self, name: str, coro) -> list[DiscoveredPattern]:
        try:
            return await coro
        except Exception as e:
            self.metrics["analyzer_failures"] += 1
            logger.error(f"{name} analysis failed for {self.agent_id}:{self.user_id}: {e}")
            return []

    async def analyze_temporal(self, features: MemoryFeatures) -> list[DiscoveredPattern]:
        since = features.timestamp - timedelta(hours=self.settings.temporal_window_hours)
        rows = await self.store.timeline(self.agent_id, self.user_id, since)
        if len(rows) < self.settings.min_pattern_support:
            return []
        candidates = [
            analyzers.time_of_day(rows, features),
            analyzers.session_duration(rows, features),
            analyzers.storage_frequency(rows, features),
        ]
        return [c for c in candidates if c is not None]

    async def analyze_contextual(self, features: MemoryFeatures) -> list[DiscoveredPattern]:
        episodes = await self.store.recent_episodes(self.agent_id, self.user_id, CONTEXT_SAMPLE)
        if len(episodes) < self.settings.min_pattern_support:
            return []
        rows = [
            {
                "domain": episode.context.get("domain") or "general",
                "user_initiated": bool(episode.context.get("is_user_initiated")),
                "complexity": analyzers.content_complexity(episode.content),
            }
            for episode in episodes
        ]
        candidates = [
            analyzers.domain_preference(rows, features),
            analyzers.interaction_style(rows, features),
            analyzers.complexity_preference(rows, features),
        ]
        return [c for c in candidates if c is not None]

    async def analyze_cross_memory(self, features: MemoryFeatures) -> list[DiscoveredPattern]:
        candidates = []
        if len(features.stored_tiers) > 1:
            combination = "+".join(features.stored_tiers)
            occurrences, total = await self.store.record_combination(
                self.agent_id, self.user_id, combination
            )
            candidates.append(
                analyzers.memory_combination(features.stored_tiers, occurrences, total)
            )

        counts = await self.store.episode_counts(self.agent_id, self.user_id)
        candidates.append(
            analyzers.memory_transition(
                counts["promoted"], counts["total"], self.settings.min_pattern_support
            )
        )
        return [c for c in candidates if c is not None]

    async def analyze_behavioral(self) -> list[DiscoveredPattern]:
        records = await self.store.query_records(
            MemoryTier.PROCEDURAL, self.agent_id, self.user_id, limit=BEHAVIOR_SAMPLE
        )
        if len(records) < self.settings.min_pattern_support:
            return []
        rows = [
            {
                "behavior_type": record.kind,
                "success_rate": record.score,
                "usage_count": record.usage_count,
                "adaptation_history": record.adaptation_history,
            }
            for record in records
        ]
        candidates = [
            analyzers.success_pattern(rows),
            analyzers.preference_pattern(rows),
            analyzers.adaptation_pattern(rows),
        ]
        return [c for c in candidates if c is not None]

    async def _persist(self, pattern: DiscoveredPattern) -> bool:
        try:
            updated = await self.store.upsert_pattern(pattern)
        except Exception as e:
            logger.error(f"Failed to store pattern {pattern.category}: {e}")
            return False
        if updated:
            key = (pattern.category, pattern.description)
            current = self._patterns.get(key)
            if current is None or pattern.confidence >= current.confidence:
                self._patterns[key] = pattern
            self.metrics["patterns_stored"] += 1
        return updated

    async def _enforce_cap(self) -> None:
        cap = self.settings.max_patterns_per_agent
        if await self.store.count_patterns(self.agent_id, self.user_id) <= cap:
            return
        removed = await self.store.prune_patterns(self.agent_id, self.user_id, cap)
        if len(self._patterns) > cap:
            ranked = sorted(self._patterns.items(), key=lambda kv: kv[1].confidence, reverse=True)
            self._patterns = dict(ranked[:cap])
        logger.info(f"Pruned {removed} low-confidence patterns for {self.agent_id}:{self.user_id}")

    # Retrieval enhancement

    def relevant_patterns(self, limit: int = ENHANCEMENT_PATTERNS) -> list[DiscoveredPattern]:
        threshold = self.settings.pattern_confidence_threshold
        ranked = sorted(
            (p for p in self._patterns.values() if p.confidence >= threshold),
            key=lambda p: (-p.confidence, p.category, p.description),
        )
        return ranked[:limit]

    def _category_weight(self, pattern: DiscoveredPattern) -> float:
        if self.strategies is None:
            return 1.0
        parameter = RECOGNITION_WEIGHTS.get(pattern.type)
        if parameter is None:
            return 1.0
        weights = self.strategies.get(PATTERN_RECOGNITION)
        return weights.get(parameter, 0.25) * WEIGHT_NORMALIZER

    async def enhance_retrieval(
        self,
        memories_by_tier: Mapping[str, list[dict[str, Any]]],
        query: str | None = None,
        context: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> dict[str, list[dict[str, Any]]]:
        """Boost retrieved memories that match stored patterns.

        Returns a new mapping; adds a ``pattern_derived`` tier of suggestions
        for patterns that match the current context.
        """
        if not self.initialized:
            await self.initialize()
        context = context or {}
        patterns = self.relevant_patterns()
        enhanced: dict[str, list[dict[str, Any]]] = {}

        for tier, memories in memories_by_tier.items():
            boosted = []
            for memory in memories:
                memory = dict(memory)
                boost = 0.0
                for pattern in patterns:
                    relevance = analyzers.pattern_relevance(memory, pattern)
                    if relevance > 0:
                        boost += (
                            relevance
                            * pattern.confidence
                            * ENHANCEMENT_SCALE
                            * self._category_weight(pattern)
                        )
                boost = min(MAX_BOOST, boost)
                if boost > 0:
                    memory["relevance_score"] = (memory.get("relevance_score") or 0.0) + boost
                    memory["pattern_boost"] = boost
                boosted.append(memory)
            enhanced[tier] = boosted

        derived = self._derived_suggestions(patterns, context, now or datetime.now())
        if derived:
            enhanced["pattern_derived"] = derived
        self.metrics["enhancements"] += 1
        return enhanced

    def _derived_suggestions(
        self, patterns: list[DiscoveredPattern], context: Mapping[str, Any], now: datetime
    ) -> list[dict[str, Any]]:
        domain = context.get("domain") or "general"
        suggestions = []
        for pattern in patterns:
            parameters = pattern.parameters
            if parameters.get("domain") == domain or parameters.get("peak_hour") == now.hour:
                suggestions.append(
                    {
                        "id": f"pattern:{pattern.id}",
                        "memory_type": "pattern_derived",
                        "pattern_id": pattern.id,
                        "category": pattern.category,
                        "content": {"text": pattern.description},
                        "relevance_score": pattern.confidence * ENHANCEMENT_SCALE,
                        "created_at": pattern.discovered_at.isoformat(),
                    }
                )
        return suggestions

    # Maintenance

    async def evolve_patterns(self, now: datetime | None = None) -> dict[str, int]:
        """Decay patterns not rediscovered within the temporal window.

        Patterns that fall below threshold leave the live view; persisted
        rows are kept.
        """
        now = now or datetime.now()
        window = timedelta(hours=self.settings.temporal_window_hours)
        decay = 1 - self.settings.adaptation_rate
        decayed, retired = 0, 0
        for key, pattern in list(self._patterns.items()):
            if now - pattern.discovered_at <= window:
                continue
            pattern.confidence *= decay
            decayed += 1
            if pattern.confidence < self.settings.pattern_confidence_threshold:
                del self._patterns[key]
                retired += 1
        self.metrics["evolutions"] += 1
        self.metrics["patterns_retired"] += retired
        if decayed:
            logger.info(
                f"Pattern evolution for {self.agent_id}:{self.user_id}: "
                f"{decayed} decayed, {retired} retired"
            )
        return {"decayed": decayed, "retired": retired, "active": len(self._patterns)}

    def get_patterns(self, pattern_type: str | None = None) -> list[DiscoveredPattern]:
        patterns = sorted(self._patterns.values(), key=lambda p: p.confidence, reverse=True)
        if pattern_type:
            patterns = [p for p in patterns if p.type == pattern_type]
        return patterns

    def category_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for pattern in self._patterns.values():
            counts[pattern.type] = counts.get(pattern.type, 0) + 1
        return counts

    def get_stats(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "active_patterns": len(self._patterns),
            "pattern_types": self.category_counts(),
            "last_analysis": self.last_analysis.isoformat() if self.last_analysis else None,
            **self.metrics,
            "config": {
                "confidence_threshold": self.settings.pattern_confidence_threshold,
                "min_support": self.settings.min_pattern_support,
                "temporal_window_hours": self.settings.temporal_window_hours,
                "max_patterns": self.settings.max_patterns_per_agent,
            },
        }
