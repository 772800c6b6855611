"""
Evolution engine - self-tuning of memory strategies.

Each cycle measures live fitness per strategy, decides whether evolution is
warranted, and for every strategy simulates a handful of perturbed parameter
sets. A candidate replaces the live strategy only when its simulated fitness
is strictly better.
"""

import random
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from mnemo.core.config import Settings
from mnemo.core.events import EventChannel
from mnemo.core.logging import get_logger
from mnemo.core.types import TIERS, MemoryTier
from mnemo.evolution.fitness import EVALUATORS, SIMULATORS, PerformanceSnapshot
from mnemo.evolution.strategy import Strategy, StrategyRegistry
from mnemo.memory.store import SQLiteMemoryStore

logger = get_logger("evolution.engine")

HISTORY_LIMIT = 50
VARIATIONS_PER_PARAMETER = 3
RANDOM_MUTATIONS = 2
DEGRADATION_RATIO = 0.9


@dataclass
class EvolutionDecision:
    should_evolve: bool
    reason: str
    priority: float = 0.0
    avg_fitness: float = 0.0
    applied: list[str] = field(default_factory=list)


@dataclass
class EvolutionRecord:
    instance_key: str
    generation: int
    reason: str
    strategies_changed: int
    avg_fitness: float
    changes: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instance_key": self.instance_key,
            "generation": self.generation,
            "reason": self.reason,
            "strategies_changed": self.strategies_changed,
            "avg_fitness": self.avg_fitness,
            "changes": self.changes,
            "timestamp": self.timestamp.isoformat(),
        }


class EvolutionEngine:
    """Measures, mutates and selects strategy parameters."""

    def __init__(
        self,
        store: SQLiteMemoryStore,
        settings: Settings,
        events: EventChannel,
        strategies: StrategyRegistry,
        seed: int | None = None,
    ):
        self.store = store
        self.settings = settings
        self.events = events
        self.strategies = strategies
        self.rng = random.Random(seed)

        self.generation = 0
        self._history: dict[str, list[EvolutionRecord]] = {}
        self.metrics = {
            "evaluations": 0,
            "evolutions": 0,
            "successful_evolutions": 0,
        }

    # Measurement

    async def collect_snapshot(
        self,
        agent_id: str,
        user_id: str,
        tier_response_ms: Mapping[str, float] | None = None,
        hit_rate: float = 0.5,
        now: datetime | None = None,
    ) -> PerformanceSnapshot:
        """Aggregate persisted counts with live timings for one instance."""
        tier_counts = {}
        for tier in TIERS:
            if tier == MemoryTier.EPISODIC:
                continue
            tier_counts[tier.value] = await self.store.count_records(tier, agent_id, user_id)
        episodes = await self.store.episode_counts(agent_id, user_id)
        tier_counts[MemoryTier.EPISODIC.value] = episodes["total"]

        patterns = await self.store.list_patterns(agent_id, user_id)
        type_counts: dict[str, int] = {}
        for pattern in patterns:
            type_counts[pattern.type] = type_counts.get(pattern.type, 0) + 1

        return PerformanceSnapshot(
            tier_counts=tier_counts,
            tier_response_ms=dict(tier_response_ms or {}),
            hit_rate=hit_rate,
            promoted_episodes=episodes["promoted"],
            total_episodes=episodes["total"],
            importance_distribution=await self.store.importance_distribution(agent_id, user_id),
            pattern_confidences=[p.confidence for p in patterns],
            pattern_type_counts=type_counts,
            timestamp=now or datetime.now(),
        )

    async def evaluate_fitness(self, snapshot: PerformanceSnapshot) -> dict[str, float]:
        """Fold live fitness into every strategy, return the smoothed values."""
        fitness = {}
        for name in self.strategies.names():
            strategy = self.strategies.get(name)
            evaluator = EVALUATORS.get(name)
            if evaluator is None:
                continue
            updated = strategy.with_fitness(evaluator(strategy.current, snapshot))
            await self.strategies.replace(updated)
            fitness[name] = updated.fitness
        return fitness

    def assess_evolution_need(
        self, instance_key: str, fitness: Mapping[str, float], now: datetime | None = None
    ) -> EvolutionDecision:
        now = now or datetime.now()
        avg_fitness = sum(fitness.values()) / len(fitness) if fitness else 0.0
        reasons = []
        priority = 0.0

        if avg_fitness < self.settings.performance_threshold:
            reasons.append("Low average fitness")
            priority += 0.5

        history = self._history.get(instance_key, [])
        if history and avg_fitness < history[-1].avg_fitness * DEGRADATION_RATIO:
            reasons.append("Performance degradation")
            priority += 0.3

        interval = timedelta(hours=self.settings.evolution_interval_hours)
        if not history or now - history[-1].timestamp > interval:
            reasons.append("Scheduled evolution")
            priority += 0.2

        return EvolutionDecision(
            should_evolve=bool(reasons),
            reason=", ".join(reasons) if reasons else "No evolution needed",
            priority=priority,
            avg_fitness=avg_fitness,
        )

    # Candidate generation

    def propose_candidates(self, strategy: Strategy) -> list[dict[str, float]]:
        """Perturbations of every parameter plus a few uniform mutations."""
        candidates = []
        step = self.settings.adaptation_rate
        for parameter, value in strategy.current.items():
            domain = strategy.domain(parameter)
            for _ in range(VARIATIONS_PER_PARAMETER):
                candidate = dict(strategy.current)
                delta = self.rng.uniform(-1, 1) * step * domain.span
                candidate[parameter] = domain.clamp(value + delta)
                candidates.append(candidate)

        parameters = list(strategy.current)
        for _ in range(RANDOM_MUTATIONS):
            if not parameters:
                break
            candidate = dict(strategy.current)
            parameter = self.rng.choice(parameters)
            domain = strategy.domain(parameter)
            candidate[parameter] = domain.clamp(self.rng.uniform(domain.low, domain.high))
            candidates.append(candidate)
        return candidates

    def simulate(
        self, name: str, parameters: Mapping[str, float], snapshot: PerformanceSnapshot
    ) -> float:
        simulator = SIMULATORS[name]
        noise = self.rng.uniform(-0.5, 0.5) * self.settings.mutation_rate
        return max(0.0, min(1.0, simulator(parameters, snapshot) + noise))

    def select_best(
        self, strategy: Strategy, snapshot: PerformanceSnapshot
    ) -> tuple[dict[str, float], float] | None:
        """Best simulated candidate, or None when nothing beats the live fitness."""
        best: tuple[dict[str, float], float] | None = None
        for candidate in self.propose_candidates(strategy):
            score = self.simulate(strategy.name, candidate, snapshot)
            if best is None or score > best[1]:
                best = (candidate, score)
        if best is None or best[1] <= strategy.fitness:
            return None
        return best

    async def evolve(
        self, instance_key: str, snapshot: PerformanceSnapshot, decision: EvolutionDecision
    ) -> EvolutionRecord:
        changes: dict[str, Any] = {}
        for name in self.strategies.names():
            if name not in SIMULATORS:
                continue
            strategy = self.strategies.get(name)
            best = self.select_best(strategy, snapshot)
            if best is None:
                continue
            parameters, score = best
            evolved = strategy.evolved(parameters, score)
            await self.strategies.replace(evolved)
            changes[name] = {
                "from": dict(strategy.current),
                "to": parameters,
                "fitness_before": strategy.fitness,
                "fitness_after": score,
                "generation": evolved.generation,
            }

        self.generation += 1
        self.metrics["evolutions"] += 1
        if changes:
            self.metrics["successful_evolutions"] += 1
        decision.applied = list(changes)

        record = EvolutionRecord(
            instance_key=instance_key,
            generation=self.generation,
            reason=decision.reason,
            strategies_changed=len(changes),
            avg_fitness=decision.avg_fitness,
            changes=changes,
            timestamp=snapshot.timestamp,
        )
        await self._record(record, snapshot)
        return record

    async def _record(self, record: EvolutionRecord, snapshot: PerformanceSnapshot) -> None:
        history = self._history.setdefault(record.instance_key, [])
        history.append(record)
        del history[:-HISTORY_LIMIT]

        try:
            await self.store.insert_evolution_record(
                record_id=record.id,
                instance_key=record.instance_key,
                generation=record.generation,
                timestamp=record.timestamp,
                reason=record.reason,
                strategies_changed=record.strategies_changed,
                avg_fitness=record.avg_fitness,
                evolution_data={"changes": record.changes, "snapshot": snapshot.to_dict()},
            )
        except Exception as e:
            logger.error(f"Failed to persist evolution record for {record.instance_key}: {e}")

        self.events.publish(
            "evolution.completed",
            instance_key=record.instance_key,
            generation=record.generation,
            strategies_changed=record.strategies_changed,
            reason=record.reason,
        )

    # Cycle

    async def evaluate_evolution(
        self, instance_key: str, snapshot: PerformanceSnapshot
    ) -> EvolutionDecision:
        """One full measure / decide / evolve pass for an instance."""
        self.metrics["evaluations"] += 1
        fitness = await self.evaluate_fitness(snapshot)
        decision = self.assess_evolution_need(instance_key, fitness, now=snapshot.timestamp)
        logger.info(
            f"Evolution check {instance_key}: {decision.reason} "
            f"(avg fitness {decision.avg_fitness:.3f}, priority {decision.priority:.1f})"
        )
        if not decision.should_evolve:
            return decision

        record = await self.evolve(instance_key, snapshot, decision)
        logger.info(
            f"Evolution {record.generation} for {instance_key}: "
            f"{record.strategies_changed} strategies changed"
        )
        return decision

    def get_history(self, instance_key: str) -> list[EvolutionRecord]:
        return list(self._history.get(instance_key, []))

    def forget(self, instance_key: str) -> None:
        self._history.pop(instance_key, None)

    def get_stats(self) -> dict[str, Any]:
        last = max(
            (h[-1].timestamp for h in self._history.values() if h), default=None
        )
        return {
            **self.metrics,
            "current_generation": self.generation,
            "tracked_instances": len(self._history),
            "last_evolution": last.isoformat() if last else None,
            "strategies": self.strategies.to_dict(),
        }
