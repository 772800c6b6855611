"""
Memory service - the facade callers use to store and recall memories.

Every call is gated by the isolation layer, then fans out to the tier
managers of the caller's (agent, user) instance. Pattern analysis runs in
the background after a store; retrieval results are re-ranked with
discovered patterns and the live retrieval weighting strategy.
"""

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from mnemo.core.background import BackgroundTasks
from mnemo.core.config import Settings, get_settings
from mnemo.core.events import EventChannel
from mnemo.core.logging import get_logger
from mnemo.core.orchestrator import Orchestrator, TaskPriority
from mnemo.core.registry import InstanceRegistry, instance_key
from mnemo.core.types import TIERS, MemoryTier, ServiceResult, StoreResult
from mnemo.evolution.engine import EvolutionDecision, EvolutionEngine
from mnemo.evolution.strategy import RETRIEVAL_WEIGHTING, StrategyRegistry
from mnemo.isolation.layer import IsolationLayer
from mnemo.memory.episodic import EpisodicMemoryManager
from mnemo.memory.scoring import to_datetime
from mnemo.memory.store import SQLiteMemoryStore
from mnemo.memory.tiers import ProceduralMemory, SemanticMemory, WorkingMemory
from mnemo.patterns.engine import PatternDiscoveryEngine

logger = get_logger("memory.service")

SESSION_BONUS = 0.15
RECENCY_HORIZON_HOURS = 24
FREQUENCY_SATURATION = 10


@dataclass
class MemoryInstance:
    """All tier managers for one (agent, user) pair."""

    key: str
    agent_id: str
    user_id: str
    working: WorkingMemory
    episodic: EpisodicMemoryManager
    semantic: SemanticMemory
    procedural: ProceduralMemory
    patterns: PatternDiscoveryEngine
    created: datetime = field(default_factory=datetime.now)
    retrievals: int = 0
    hits: int = 0

    def tier(self, tier: MemoryTier):
        return {
            MemoryTier.WORKING: self.working,
            MemoryTier.EPISODIC: self.episodic,
            MemoryTier.SEMANTIC: self.semantic,
            MemoryTier.PROCEDURAL: self.procedural,
        }[tier]

    @property
    def hit_rate(self) -> float:
        if self.retrievals == 0:
            return 0.5
        return self.hits / self.retrievals

    def tier_response_ms(self) -> dict[str, float]:
        return {
            MemoryTier.WORKING.value: self.working.average_response_ms,
            MemoryTier.EPISODIC.value: self.episodic.metrics["average_response_ms"],
            MemoryTier.SEMANTIC.value: self.semantic.average_response_ms,
            MemoryTier.PROCEDURAL.value: self.procedural.average_response_ms,
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "created": self.created.isoformat(),
            "retrievals": self.retrievals,
            "hit_rate": self.hit_rate,
            "working": self.working.get_stats(),
            "episodic": self.episodic.get_stats(),
            "semantic": self.semantic.get_stats(),
            "procedural": self.procedural.get_stats(),
            "patterns": self.patterns.get_stats(),
        }


def determine_storage_targets(
    content: Any, context: Mapping[str, Any], metadata: Mapping[str, Any]
) -> list[MemoryTier]:
    """Tiers that should keep this content; episodic when nothing else fits."""
    content_type = metadata.get("content_type")
    importance = metadata.get("importance", 0.5)
    targets = []

    if metadata.get("is_immediate") or importance > 0.7 or content_type == "context":
        targets.append(MemoryTier.WORKING)
    if context.get("session_id") or content_type in ("interaction", "conversation"):
        targets.append(MemoryTier.EPISODIC)
    if metadata.get("is_knowledge") or importance > 0.6 or content_type in ("knowledge", "fact"):
        targets.append(MemoryTier.SEMANTIC)
    if content_type in ("pattern", "behavior") or metadata.get("is_learned"):
        targets.append(MemoryTier.PROCEDURAL)

    return targets or [MemoryTier.EPISODIC]


class MemoryService:
    """Entry point for storing and retrieving agent memories."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: SQLiteMemoryStore | None = None,
        events: EventChannel | None = None,
        seed: int | None = None,
    ):
        self.settings = settings or get_settings()
        self.memory_store = store or SQLiteMemoryStore(self.settings.db_path)
        self.events = events or EventChannel(self.settings.event_queue_size)
        self.strategies = StrategyRegistry()
        self.isolation = IsolationLayer(self.memory_store, self.settings, self.events)
        self.evolution = EvolutionEngine(
            self.memory_store, self.settings, self.events, self.strategies, seed=seed
        )
        self.instances: InstanceRegistry[MemoryInstance] = InstanceRegistry(
            "memory", max_idle=timedelta(hours=self.settings.context_idle_hours)
        )
        self.background = BackgroundTasks("memory")
        self.stats = {
            "total_queries": 0,
            "stores": 0,
            "retrievals": 0,
            "denied": 0,
            "average_response_ms": 0.0,
            "last_activity": None,
        }

    async def connect(self) -> None:
        await self.memory_store.connect()
        logger.info(f"Memory service connected to {self.memory_store.db_path}")

    async def close(self) -> None:
        await self.background.drain()
        await self.memory_store.close()
        logger.info("Memory service closed")

    async def get_instance(self, agent_id: int | str, user_id: str) -> MemoryInstance:
        key = instance_key(agent_id, user_id)

        async def create() -> MemoryInstance:
            agent = str(agent_id)
            instance = MemoryInstance(
                key=key,
                agent_id=agent,
                user_id=user_id,
                working=WorkingMemory(agent, user_id, self.memory_store),
                episodic=EpisodicMemoryManager(
                    agent,
                    user_id,
                    self.memory_store,
                    settings=self.settings,
                    events=self.events,
                    strategies=self.strategies,
                    background=self.background,
                ),
                semantic=SemanticMemory(agent, user_id, self.memory_store),
                procedural=ProceduralMemory(agent, user_id, self.memory_store),
                patterns=PatternDiscoveryEngine(
                    agent,
                    user_id,
                    self.memory_store,
                    settings=self.settings,
                    events=self.events,
                    strategies=self.strategies,
                ),
            )
            await instance.episodic.initialize()
            await instance.patterns.initialize()
            logger.info(f"Created memory instance {key}")
            return instance

        return await self.instances.get_or_create(key, create)

    def _track(self, started: float) -> float:
        elapsed = (time.perf_counter() - started) * 1000
        self.stats["total_queries"] += 1
        self.stats["last_activity"] = datetime.now().isoformat()
        self.stats["average_response_ms"] = (
            0.9 * self.stats["average_response_ms"] + 0.1 * elapsed
        )
        return elapsed

    # Store

    async def store(
        self,
        content: Any,
        context: Mapping[str, Any],
        metadata: Mapping[str, Any] | None = None,
    ) -> ServiceResult:
        started = time.perf_counter()
        context = dict(context or {})
        metadata = metadata or {}
        agent_id, user_id = context.get("agent_id"), context.get("user_id")
        if agent_id is None or not user_id:
            return ServiceResult(success=False, error="agent_id and user_id are required")

        targets = determine_storage_targets(content, context, metadata)
        scope = self.isolation.create_context(agent_id, user_id, context.get("thread_id"))
        decision = await self.isolation.validate_access(
            scope.context_id, "store", context.get("target_context_id"), metadata
        )
        if not decision.allowed:
            self.stats["denied"] += 1
            return ServiceResult(
                success=False,
                error=decision.reason,
                results={
                    t.value: StoreResult(stored=False, tier=t, error=decision.reason)
                    for t in targets
                },
                response_time_ms=self._track(started),
            )

        try:
            instance = await self.get_instance(agent_id, user_id)
        except Exception as e:
            logger.error(f"Failed to open memory instance {agent_id}:{user_id}: {e}")
            return ServiceResult(
                success=False, error=str(e), response_time_ms=self._track(started)
            )

        context["context_id"] = scope.context_id
        outcomes = await asyncio.gather(
            *(self._store_in(instance, tier, content, context, metadata) for tier in targets),
            return_exceptions=True,
        )
        results: dict[str, StoreResult] = {}
        for tier, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"{tier.value} store raised for {instance.key}: {outcome}")
                outcome = StoreResult(stored=False, tier=tier, error=str(outcome))
            results[tier.value] = outcome

        stored_tiers = [name for name, result in results.items() if result.stored]
        if stored_tiers:
            self.background.spawn(
                instance.patterns.analyze_new_memory(content, context, stored_tiers),
                f"patterns:{instance.key}",
            )

        self.stats["stores"] += 1
        elapsed = self._track(started)
        logger.info(
            f"Stored memory for {instance.key} in {elapsed:.1f}ms - "
            f"tiers: {', '.join(stored_tiers) or 'none'}"
        )
        return ServiceResult(
            success=bool(stored_tiers),
            response_time_ms=elapsed,
            results=results,
            error=None if stored_tiers else "Nothing stored",
        )

    async def _store_in(
        self,
        instance: MemoryInstance,
        tier: MemoryTier,
        content: Any,
        context: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> StoreResult:
        if tier == MemoryTier.EPISODIC:
            return await instance.episodic.store(content, context, metadata)
        return await instance.tier(tier).store_content(content, context, metadata)

    # Retrieve

    async def retrieve(
        self,
        query: str | None,
        context: Mapping[str, Any],
        options: Mapping[str, Any] | None = None,
    ) -> ServiceResult:
        started = time.perf_counter()
        context = context or {}
        options = options or {}
        agent_id, user_id = context.get("agent_id"), context.get("user_id")
        if agent_id is None or not user_id:
            return ServiceResult(success=False, error="agent_id and user_id are required")

        scope = self.isolation.create_context(agent_id, user_id, context.get("thread_id"))
        decision = await self.isolation.validate_access(
            scope.context_id, "retrieve", context.get("target_context_id")
        )
        if not decision.allowed:
            self.stats["denied"] += 1
            return ServiceResult(
                success=False, error=decision.reason, response_time_ms=self._track(started)
            )

        # An allowed cross-context read is served from the target's memories
        owner = scope
        if decision.cross_context:
            owner = self.isolation.get_context(context["target_context_id"]) or scope
        instance = await self.get_instance(owner.agent_id, owner.user_id)
        working, episodic, semantic, procedural = await asyncio.gather(
            instance.working.retrieve(query, context, options),
            instance.episodic.retrieve(query, context, options),
            instance.semantic.retrieve(query, context, options),
            instance.procedural.retrieve(query, context, options),
        )
        by_tier = {
            MemoryTier.WORKING.value: [r.to_dict() for r in working],
            MemoryTier.EPISODIC.value: [e.to_dict() for e in episodic],
            MemoryTier.SEMANTIC.value: [r.to_dict() for r in semantic],
            MemoryTier.PROCEDURAL.value: [r.to_dict() for r in procedural],
        }
        try:
            enhanced = await instance.patterns.enhance_retrieval(by_tier, query, context)
        except Exception as e:
            logger.error(f"Pattern enhancement failed for {instance.key}: {e}")
            enhanced = by_tier

        memories = self.rank_and_merge(enhanced, context, options.get("limit", 10))
        instance.retrievals += 1
        if memories:
            instance.hits += 1

        self.stats["retrievals"] += 1
        elapsed = self._track(started)
        logger.debug(f"Retrieved {len(memories)} memories for {instance.key} in {elapsed:.1f}ms")
        return ServiceResult(
            success=True,
            response_time_ms=elapsed,
            memories=memories,
            breakdown={tier: len(items) for tier, items in by_tier.items()},
        )

    def rank_and_merge(
        self,
        memories_by_tier: Mapping[str, list[dict[str, Any]]],
        context: Mapping[str, Any],
        limit: int = 10,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Blend relevance, recency and usage by the retrieval weighting strategy."""
        now = now or datetime.now()
        weights = self.strategies.get(RETRIEVAL_WEIGHTING)
        relevance_w = weights.get("relevance", 0.4)
        recency_w = weights.get("recency", 0.3)
        frequency_w = weights.get("frequency", 0.3)
        total_w = relevance_w + recency_w + frequency_w or 1.0

        merged = []
        for tier, memories in memories_by_tier.items():
            for memory in memories:
                memory = dict(memory)
                memory.setdefault("memory_type", tier)
                base = self._base_score(memory, context)
                created = to_datetime(memory.get("created_at"))
                age_hours = (now - created).total_seconds() / 3600 if created else 0.0
                recency = max(0.0, 1 - age_hours / RECENCY_HORIZON_HOURS)
                frequency = min(1.0, (memory.get("usage_count") or 0) / FREQUENCY_SATURATION)
                memory["base_score"] = base
                memory["final_score"] = (
                    relevance_w * base + recency_w * recency + frequency_w * frequency
                ) / total_w
                merged.append(memory)

        merged.sort(
            key=lambda m: (m["final_score"], m.get("created_at") or ""), reverse=True
        )
        return merged[:limit]

    @staticmethod
    def _base_score(memory: Mapping[str, Any], context: Mapping[str, Any]) -> float:
        if memory.get("memory_type") == MemoryTier.EPISODIC.value:
            # relevance_score carries the episodic session bonus on a 0..2 scale
            base = memory.get("importance_score") or 0.0
            if context.get("session_id") and memory.get("session_id") == context["session_id"]:
                base += SESSION_BONUS
            return base + (memory.get("pattern_boost") or 0.0)
        return memory.get("relevance_score") or 0.0

    # Procedural feedback

    async def record_feedback(
        self, agent_id: int | str, user_id: str, record_id: str, feedback: Mapping[str, Any]
    ) -> bool:
        """Apply feedback to one of the caller's own procedural records."""
        scope = self.isolation.create_context(agent_id, user_id)
        decision = await self.isolation.validate_access(scope.context_id, "update")
        if not decision.allowed:
            self.stats["denied"] += 1
            return False

        instance = await self.get_instance(agent_id, user_id)
        record = await instance.procedural.record_feedback(record_id, feedback)
        if record is None:
            logger.warning(f"No procedural record {record_id} owned by {instance.key}")
        return record is not None

    # Maintenance cycles

    async def run_consolidation(self) -> dict[str, Any]:
        results = {}
        for key, instance in self.instances.items():
            try:
                results[key] = await instance.episodic.consolidate()
            except Exception as e:
                logger.error(f"Consolidation failed for {key}: {e}")
        return results

    async def run_pattern_evolution(self) -> dict[str, Any]:
        return {
            key: await instance.patterns.evolve_patterns()
            for key, instance in self.instances.items()
        }

    async def evolve_instance(self, instance: MemoryInstance) -> EvolutionDecision:
        snapshot = await self.evolution.collect_snapshot(
            instance.agent_id,
            instance.user_id,
            tier_response_ms=instance.tier_response_ms(),
            hit_rate=instance.hit_rate,
        )
        return await self.evolution.evaluate_evolution(instance.key, snapshot)

    async def run_evolution(self) -> dict[str, EvolutionDecision]:
        decisions = {}
        for key, instance in self.instances.items():
            try:
                decisions[key] = await self.evolve_instance(instance)
            except Exception as e:
                logger.error(f"Evolution failed for {key}: {e}")
        return decisions

    async def evict_idle(self) -> dict[str, int]:
        evicted = self.instances.evict_idle()
        for key in evicted:
            self.evolution.forget(key)
        contexts = self.isolation.cleanup_expired_contexts()
        rules = await self.isolation.purge_expired_sharing_rules()
        return {"instances": len(evicted), "contexts": contexts, "sharing_rules": rules}

    def register_cycles(self, orchestrator: Orchestrator) -> None:
        """Schedule every periodic maintenance cycle on the orchestrator."""
        settings = self.settings
        cycles = [
            ("consolidation", "Episodic consolidation", self.run_consolidation,
             timedelta(hours=settings.consolidation_interval_hours), TaskPriority.NORMAL),
            ("pattern_evolution", "Pattern evolution", self.run_pattern_evolution,
             timedelta(hours=settings.discovery_interval_hours), TaskPriority.LOW),
            ("strategy_evolution", "Strategy evolution", self.run_evolution,
             timedelta(hours=settings.evolution_interval_hours), TaskPriority.LOW),
            ("security_scan", "Security scan", self.isolation.perform_security_scan,
             timedelta(minutes=settings.security_scan_interval_minutes), TaskPriority.HIGH),
            ("security_check", "Contamination check", self.isolation.perform_comprehensive_check,
             timedelta(minutes=settings.security_check_interval_minutes), TaskPriority.HIGH),
            ("evict_idle", "Idle eviction", self.evict_idle,
             timedelta(hours=1), TaskPriority.LOW),
        ]
        for task_id, name, callback, interval, priority in cycles:
            orchestrator.schedule_task(
                task_id, name, callback, interval=interval, priority=priority, delay=interval
            )

    # Introspection

    def get_patterns(self, agent_id: int | str, user_id: str) -> list[dict[str, Any]]:
        instance = self.instances.get(instance_key(agent_id, user_id))
        if instance is None:
            return []
        return [p.to_dict() for p in instance.patterns.get_patterns()]

    def get_evolution_history(self, agent_id: int | str, user_id: str) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.evolution.get_history(instance_key(agent_id, user_id))]

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.stats,
            "instances": len(self.instances),
            "pending_background": self.background.pending,
            "background_failures": self.background.failures,
            "events_published": self.events.published,
            "memory_types": [tier.value for tier in TIERS],
        }

    async def get_system_stats(self) -> dict[str, Any]:
        """Component stats plus persisted totals."""
        stats = {
            "service": self.get_stats(),
            "isolation": self.isolation.get_stats(),
            "evolution": self.evolution.get_stats(),
            "instances": {key: i.get_stats() for key, i in self.instances.items()},
        }
        try:
            stats["database"] = {
                "patterns": await self.memory_store.pattern_aggregates(),
                "evolution": await self.memory_store.evolution_aggregates(),
                "active_sharing_rules": await self.memory_store.count_active_sharing_rules(
                    datetime.now()
                ),
            }
        except Exception as e:
            logger.error(f"Failed to read database totals: {e}")
        return stats
