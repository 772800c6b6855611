"""Versioned, immutable strategy parameter sets and their registry."""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any

from mnemo.core.logging import get_logger

logger = get_logger("evolution.strategy")

FITNESS_SMOOTHING = 0.2
INITIAL_FITNESS = 0.5

MEMORY_ALLOCATION = "memory_allocation"
RETRIEVAL_WEIGHTING = "retrieval_weighting"
PATTERN_RECOGNITION = "pattern_recognition"
MEMORY_CONSOLIDATION = "memory_consolidation"


@dataclass(frozen=True)
class ParameterDomain:
    low: float = 0.0
    high: float = 1.0

    @property
    def span(self) -> float:
        return self.high - self.low

    def clamp(self, value: float) -> float:
        return max(self.low, min(self.high, value))


UNIT = ParameterDomain()


@dataclass(frozen=True)
class Strategy:
    """One named parameter set. Never mutated; evolution swaps in a new object."""

    name: str
    current: Mapping[str, float]
    fitness: float = INITIAL_FITNESS
    generation: int = 0
    domains: Mapping[str, ParameterDomain] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        object.__setattr__(self, "current", MappingProxyType(dict(self.current)))
        object.__setattr__(self, "domains", MappingProxyType(dict(self.domains)))

    def domain(self, parameter: str) -> ParameterDomain:
        return self.domains.get(parameter, UNIT)

    def get(self, parameter: str, default: float = 0.0) -> float:
        return self.current.get(parameter, default)

    def with_fitness(self, observed: float) -> "Strategy":
        """Exponentially smoothed fitness update."""
        smoothed = (1 - FITNESS_SMOOTHING) * self.fitness + FITNESS_SMOOTHING * observed
        return replace(self, fitness=smoothed, updated_at=datetime.now())

    def evolved(self, parameters: Mapping[str, float], fitness: float) -> "Strategy":
        return replace(
            self,
            current=parameters,
            fitness=fitness,
            generation=self.generation + 1,
            updated_at=datetime.now(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "current": dict(self.current),
            "fitness": self.fitness,
            "generation": self.generation,
            "updated_at": self.updated_at.isoformat(),
        }


def default_strategies() -> dict[str, Strategy]:
    return {
        MEMORY_ALLOCATION: Strategy(
            MEMORY_ALLOCATION,
            {"working": 0.3, "episodic": 0.3, "semantic": 0.2, "procedural": 0.2},
        ),
        RETRIEVAL_WEIGHTING: Strategy(
            RETRIEVAL_WEIGHTING,
            {"relevance": 0.4, "recency": 0.3, "frequency": 0.3},
        ),
        PATTERN_RECOGNITION: Strategy(
            PATTERN_RECOGNITION,
            {"temporal": 0.25, "contextual": 0.25, "behavioral": 0.25, "semantic": 0.25},
        ),
        MEMORY_CONSOLIDATION: Strategy(
            MEMORY_CONSOLIDATION,
            {"importance_threshold": 0.7, "frequency_threshold": 3, "time_decay": 0.1},
            domains={"frequency_threshold": ParameterDomain(1, 10)},
        ),
    }


class StrategyRegistry:
    """Holds the live strategies.

    Reads are lock-free and always see a whole strategy object; writers
    replace entries under a lock.
    """

    def __init__(self, strategies: Mapping[str, Strategy] | None = None):
        self._strategies: dict[str, Strategy] = dict(strategies or default_strategies())
        self._lock = asyncio.Lock()

    def get(self, name: str) -> Strategy:
        return self._strategies[name]

    def names(self) -> list[str]:
        return list(self._strategies)

    def snapshot(self) -> dict[str, Strategy]:
        return dict(self._strategies)

    async def replace(self, strategy: Strategy) -> None:
        async with self._lock:
            previous = self._strategies.get(strategy.name)
            self._strategies[strategy.name] = strategy
        if previous is not None and previous.generation != strategy.generation:
            logger.info(
                f"Strategy {strategy.name} -> generation {strategy.generation} "
                f"(fitness {strategy.fitness:.3f})"
            )

    def frequency_threshold(self) -> int:
        return int(round(self.get(MEMORY_CONSOLIDATION).get("frequency_threshold", 3)))

    def importance_threshold(self) -> float:
        return float(self.get(MEMORY_CONSOLIDATION).get("importance_threshold", 0.7))

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {name: s.to_dict() for name, s in self._strategies.items()}
