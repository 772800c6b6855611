"""Fitness of strategies against observed performance, and simulation proxies.

``evaluate_*`` score the live parameters from a PerformanceSnapshot.
``simulate_*`` score candidate parameters without live traffic; the engine
adds noise on top.
"""

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mnemo.evolution.strategy import (
    MEMORY_ALLOCATION,
    MEMORY_CONSOLIDATION,
    PATTERN_RECOGNITION,
    RETRIEVAL_WEIGHTING,
)

NEUTRAL_FITNESS = 0.5
IDEAL_PROMOTION_RATE = 0.1
SLOW_RESPONSE_MS = 1000.0

# pattern type -> pattern_recognition parameter
PATTERN_WEIGHT_KEYS = {
    "temporal": "temporal",
    "contextual": "contextual",
    "behavioral": "behavioral",
    "cross_memory": "semantic",
}


@dataclass
class PerformanceSnapshot:
    """Aggregate metrics for one (agent, user) instance."""

    tier_counts: dict[str, int] = field(default_factory=dict)
    tier_response_ms: dict[str, float] = field(default_factory=dict)
    hit_rate: float = 0.5
    promoted_episodes: int = 0
    total_episodes: int = 0
    importance_distribution: list[int] = field(default_factory=lambda: [0] * 10)
    pattern_confidences: list[float] = field(default_factory=list)
    pattern_type_counts: dict[str, int] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def total_memories(self) -> int:
        return sum(self.tier_counts.values())

    @property
    def average_response_ms(self) -> float:
        if not self.tier_response_ms:
            return 0.0
        return sum(self.tier_response_ms.values()) / len(self.tier_response_ms)

    @property
    def promotion_rate(self) -> float:
        return self.promoted_episodes / max(1, self.total_episodes)

    def actual_allocation(self) -> dict[str, float]:
        total = self.total_memories
        if total == 0:
            return {}
        return {tier: count / total for tier, count in self.tier_counts.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier_counts": self.tier_counts,
            "tier_response_ms": self.tier_response_ms,
            "hit_rate": self.hit_rate,
            "promoted_episodes": self.promoted_episodes,
            "total_episodes": self.total_episodes,
            "pattern_type_counts": self.pattern_type_counts,
            "timestamp": self.timestamp.isoformat(),
        }


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def response_score(ms: float) -> float:
    return max(0.0, 1 - ms / SLOW_RESPONSE_MS)


def normalized_entropy(values: Mapping[str, float]) -> float:
    """Shannon entropy of the normalized values, scaled to [0, 1]."""
    total = sum(values.values())
    if total <= 0 or len(values) < 2:
        return 0.0
    entropy = 0.0
    for value in values.values():
        share = value / total
        if share > 0:
            entropy -= share * math.log2(share)
    return entropy / math.log2(len(values))


# Live evaluation


def evaluate_allocation(params: Mapping[str, float], snapshot: PerformanceSnapshot) -> float:
    actual = snapshot.actual_allocation()
    if not actual:
        return NEUTRAL_FITNESS
    fitness = 0.0
    for tier, intended in params.items():
        ms = snapshot.tier_response_ms.get(tier, SLOW_RESPONSE_MS)
        fit = 1 - abs(intended - actual.get(tier, 0.0))
        fitness += (response_score(ms) * 0.7 + fit * 0.3) * intended
    return _clamp(fitness)


def evaluate_weighting(params: Mapping[str, float], snapshot: PerformanceSnapshot) -> float:
    fitness = snapshot.hit_rate * 0.6 + response_score(snapshot.average_response_ms) * 0.4
    balance = 1 - max(params.values(), default=0.0)
    return _clamp(fitness * (0.8 + balance * 0.2))


def evaluate_pattern_recognition(
    params: Mapping[str, float], snapshot: PerformanceSnapshot
) -> float:
    if not snapshot.pattern_confidences:
        return NEUTRAL_FITNESS
    return _clamp(sum(snapshot.pattern_confidences) / len(snapshot.pattern_confidences))


def promotion_fitness(rate: float) -> float:
    return _clamp(1 - abs(rate - IDEAL_PROMOTION_RATE) / IDEAL_PROMOTION_RATE)


def evaluate_consolidation(params: Mapping[str, float], snapshot: PerformanceSnapshot) -> float:
    return promotion_fitness(snapshot.promotion_rate)


# Simulation proxies


def simulate_allocation(params: Mapping[str, float], snapshot: PerformanceSnapshot) -> float:
    if snapshot.total_memories == 0:
        return 0.3 + normalized_entropy(params) * 0.4
    return evaluate_allocation(params, snapshot)


def simulate_weighting(params: Mapping[str, float], snapshot: PerformanceSnapshot) -> float:
    return 0.2 + normalized_entropy(params) * 0.6


def simulate_pattern_recognition(
    params: Mapping[str, float], snapshot: PerformanceSnapshot
) -> float:
    """Alignment of weights with where patterns are actually being found."""
    found = {
        key: float(snapshot.pattern_type_counts.get(pattern_type, 0))
        for pattern_type, key in PATTERN_WEIGHT_KEYS.items()
    }
    found_total = sum(found.values())
    weight_total = sum(params.values())
    if found_total == 0 or weight_total <= 0:
        return 0.3 + normalized_entropy(params) * 0.4
    distance = sum(
        abs(params.get(key, 0.0) / weight_total - found[key] / found_total) for key in found
    )
    return _clamp(1 - distance / 2)


def share_at_or_above(distribution: list[int], threshold: float) -> float:
    """Approximate share of episodes with importance >= threshold from deciles."""
    total = sum(distribution)
    if total == 0:
        return 0.0
    index = min(9, max(0, int(threshold * 10)))
    # Linear interpolation inside the bucket that contains the threshold
    partial = distribution[index] * (1 - (threshold * 10 - index)) if threshold < 1 else 0
    return (sum(distribution[index + 1:]) + partial) / total


def simulate_consolidation(params: Mapping[str, float], snapshot: PerformanceSnapshot) -> float:
    if sum(snapshot.importance_distribution) == 0:
        return NEUTRAL_FITNESS
    eligible = share_at_or_above(
        snapshot.importance_distribution, params.get("importance_threshold", 0.7)
    )
    required = max(1.0, params.get("frequency_threshold", 3))
    estimated_rate = eligible * min(1.0, 3 / required) * (1 - params.get("time_decay", 0.1))
    return promotion_fitness(estimated_rate)


FitnessFunction = Callable[[Mapping[str, float], PerformanceSnapshot], float]

EVALUATORS: dict[str, FitnessFunction] = {
    MEMORY_ALLOCATION: evaluate_allocation,
    RETRIEVAL_WEIGHTING: evaluate_weighting,
    PATTERN_RECOGNITION: evaluate_pattern_recognition,
    MEMORY_CONSOLIDATION: evaluate_consolidation,
}

SIMULATORS: dict[str, FitnessFunction] = {
    MEMORY_ALLOCATION: simulate_allocation,
    RETRIEVAL_WEIGHTING: simulate_weighting,
    PATTERN_RECOGNITION: simulate_pattern_recognition,
    MEMORY_CONSOLIDATION: simulate_consolidation,
}
