"""Pattern analyzers.

Pure functions over plain rows so identical data always yields identical
confidence. Each returns a candidate (possibly with zero confidence) or None
when there is nothing to measure; thresholding happens in the engine.
"""

import math
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mnemo.memory.base import DiscoveredPattern
from mnemo.memory.classification import content_text

TIME_OF_DAY_MIN_FREQUENCY = 0.3
DOMAIN_MIN_FREQUENCY = 0.4
SUCCESS_RATE_CUTOFF = 0.7
TRANSITION_SATURATION = 10


@dataclass
class MemoryFeatures:
    """Features of one storage event."""

    timestamp: datetime = field(default_factory=datetime.now)
    domain: str = "general"
    user_initiated: bool = False
    complexity: float = 0.5
    session_length: float = 0.0
    session_id: str | None = None
    stored_tiers: list[str] = field(default_factory=list)

    @property
    def hour(self) -> int:
        return self.timestamp.hour

    @property
    def weekday(self) -> int:
        return self.timestamp.weekday()

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "hour": self.hour,
            "weekday": self.weekday,
            "domain": self.domain,
            "user_initiated": self.user_initiated,
            "complexity": self.complexity,
            "session_length": self.session_length,
            "stored_tiers": self.stored_tiers,
        }


def content_complexity(content: Any) -> float:
    text = content if isinstance(content, str) else content_text(content)
    if text:
        return min(1.0, len(text) / 1000 + len(text.split()) / 100)
    if isinstance(content, Mapping):
        return min(1.0, len(content) / 10)
    return 0.0


def extract_features(
    content: Any,
    context: Mapping[str, Any],
    stored_tiers: Sequence[str] = (),
    now: datetime | None = None,
) -> MemoryFeatures:
    return MemoryFeatures(
        timestamp=now or datetime.now(),
        domain=str(context.get("domain") or "general"),
        user_initiated=bool(context.get("is_user_initiated")),
        complexity=content_complexity(content),
        session_length=float(context.get("session_duration") or 0),
        session_id=context.get("session_id"),
        stored_tiers=sorted(stored_tiers),
    )


def _pattern(type_: str, category: str, description: str, confidence: float, support: int,
             **parameters: Any) -> DiscoveredPattern:
    return DiscoveredPattern(
        type=type_,
        category=category,
        description=description,
        confidence=max(0.0, min(1.0, confidence)),
        support=support,
        parameters=parameters,
    )


# Temporal


def time_of_day(rows: Sequence[Mapping[str, Any]], features: MemoryFeatures) -> DiscoveredPattern | None:
    if not rows:
        return None
    hours = Counter(row["created_at"].hour for row in rows)
    count = hours.get(features.hour, 0)
    frequency = count / len(rows)
    return _pattern(
        "temporal",
        "time_of_day",
        f"User tends to interact at hour {features.hour}",
        frequency if frequency > TIME_OF_DAY_MIN_FREQUENCY else 0.0,
        count,
        peak_hour=features.hour,
        frequency=frequency,
        hour_distribution={str(h): n for h, n in sorted(hours.items())},
    )


def session_duration(rows: Sequence[Mapping[str, Any]], features: MemoryFeatures) -> DiscoveredPattern | None:
    durations = [row["session_duration"] for row in rows if (row.get("session_duration") or 0) > 0]
    if not durations:
        return None
    average = sum(durations) / len(durations)
    deviation = abs(features.session_length - average) / average
    return _pattern(
        "temporal",
        "session_duration",
        f"Average session duration: {round(average)}s",
        1 - deviation,
        len(durations),
        average_duration=average,
        current_duration=features.session_length,
        deviation=deviation,
    )


def consistency(values: Sequence[float]) -> float:
    """1 - coefficient of variation, floored at 0."""
    if not values:
        return 0.0
    average = sum(values) / len(values)
    if average <= 0:
        return 0.0
    variance = sum((v - average) ** 2 for v in values) / len(values)
    return max(0.0, 1 - math.sqrt(variance) / average)


def storage_frequency(rows: Sequence[Mapping[str, Any]], features: MemoryFeatures) -> DiscoveredPattern | None:
    times = sorted(row["created_at"] for row in rows)
    intervals = [(b - a).total_seconds() for a, b in zip(times, times[1:])]
    if not intervals:
        return None
    average = sum(intervals) / len(intervals)
    score = consistency(intervals)
    return _pattern(
        "temporal",
        "storage_frequency",
        f"Memory storage interval: {round(average)}s",
        score,
        len(intervals),
        average_interval=average,
        consistency=score,
        total_memories=len(rows),
    )


# Contextual


def domain_preference(rows: Sequence[Mapping[str, Any]], features: MemoryFeatures) -> DiscoveredPattern | None:
    if not rows:
        return None
    domains = Counter(row.get("domain") or "general" for row in rows)
    count = domains.get(features.domain, 0)
    frequency = count / len(rows)
    return _pattern(
        "contextual",
        "domain_preference",
        f"Frequent domain: {features.domain}",
        frequency if frequency > DOMAIN_MIN_FREQUENCY else 0.0,
        count,
        domain=features.domain,
        frequency=frequency,
        domain_distribution=dict(domains),
    )


def interaction_style(rows: Sequence[Mapping[str, Any]], features: MemoryFeatures) -> DiscoveredPattern | None:
    if not rows:
        return None
    rate = sum(1 for row in rows if row.get("user_initiated")) / len(rows)
    style = "proactive" if rate > 0.5 else "reactive"
    return _pattern(
        "contextual",
        "interaction_style",
        "User-driven interactions" if rate > 0.5 else "System-driven interactions",
        abs(rate - 0.5) * 2,
        len(rows),
        user_initiated_rate=rate,
        interaction_style=style,
    )


def complexity_preference(rows: Sequence[Mapping[str, Any]], features: MemoryFeatures) -> DiscoveredPattern | None:
    if not rows:
        return None
    values = [row.get("complexity", 0.5) for row in rows]
    average = sum(values) / len(values)
    deviation = abs(features.complexity - average)
    return _pattern(
        "contextual",
        "complexity_preference",
        f"Preferred complexity level: {average:.2f}",
        1 - deviation * 2,
        len(values),
        average_complexity=average,
        current_complexity=features.complexity,
        deviation=deviation,
    )


# Cross-memory


def memory_combination(tiers: Sequence[str], occurrences: int, total: int) -> DiscoveredPattern | None:
    if len(tiers) < 2 or total <= 0:
        return None
    combination = "+".join(sorted(tiers))
    share = occurrences / total
    return _pattern(
        "cross_memory",
        "memory_combination",
        f"Memory types used together: {combination}",
        min(1.0, share * 2),
        occurrences,
        memory_types=sorted(tiers),
        combination=combination,
        frequency=share,
        historical_count=occurrences,
    )


def memory_transition(promoted: int, total_episodes: int, min_support: int) -> DiscoveredPattern | None:
    if promoted <= min_support:
        return None
    return _pattern(
        "cross_memory",
        "memory_transition",
        "Episodic memories frequently promoted to semantic",
        min(1.0, promoted / TRANSITION_SATURATION),
        promoted,
        transition_type="episodic_to_semantic",
        count=promoted,
        rate=promoted / total_episodes if total_episodes else 0.0,
    )


# Behavioral


def success_pattern(rows: Sequence[Mapping[str, Any]]) -> DiscoveredPattern | None:
    if not rows:
        return None
    successful = [row for row in rows if (row.get("success_rate") or 0) > SUCCESS_RATE_CUTOFF]
    rate = len(successful) / len(rows)
    return _pattern(
        "behavioral",
        "success_pattern",
        f"High success rate behaviors: {rate:.2f}",
        rate,
        len(successful),
        success_rate=rate,
        successful_behaviors=len(successful),
        total_behaviors=len(rows),
    )


def preference_pattern(rows: Sequence[Mapping[str, Any]]) -> DiscoveredPattern | None:
    if not rows:
        return None
    totals: dict[str, list[float]] = {}
    for row in rows:
        totals.setdefault(row.get("behavior_type") or "unknown", []).append(
            row.get("success_rate") or 0.0
        )

    best_type, best_score = None, 0.0
    # Sorted for deterministic tie-breaking
    for behavior_type, rates in sorted(totals.items()):
        score = sum(rates) / len(rates) * len(rates)
        if score > best_score:
            best_type, best_score = behavior_type, score

    if best_type is None:
        return None
    return _pattern(
        "behavioral",
        "preference_pattern",
        f"Preferred behavior type: {best_type}",
        best_score / len(rows),
        len(totals[best_type]),
        preferred_type=best_type,
        score=best_score,
        behavior_distribution={k: len(v) for k, v in totals.items()},
    )


def adaptation_pattern(rows: Sequence[Mapping[str, Any]]) -> DiscoveredPattern | None:
    if not rows:
        return None
    adaptive = [row for row in rows if row.get("adaptation_history")]
    rate = len(adaptive) / len(rows)
    return _pattern(
        "behavioral",
        "adaptation_pattern",
        f"Behavior adaptation rate: {rate:.2f}",
        rate,
        len(adaptive),
        adaptation_rate=rate,
        adaptive_behaviors=len(adaptive),
        total_behaviors=len(rows),
    )


# Retrieval enhancement


def memory_domain(memory: Mapping[str, Any]) -> str:
    context = memory.get("context") or {}
    if isinstance(context, Mapping) and context.get("domain"):
        return str(context["domain"])
    if memory.get("memory_type") == "working" and memory.get("kind"):
        return str(memory["kind"])
    return "general"


def _memory_hour(memory: Mapping[str, Any]) -> int | None:
    created = memory.get("created_at")
    if isinstance(created, str):
        try:
            created = datetime.fromisoformat(created)
        except ValueError:
            return None
    return created.hour if isinstance(created, datetime) else None


def pattern_relevance(memory: Mapping[str, Any], pattern: DiscoveredPattern) -> float:
    """How strongly one stored pattern applies to one retrieved memory."""
    parameters = pattern.parameters
    if pattern.category == "domain_preference":
        return 0.3 if memory_domain(memory) == parameters.get("domain") else 0.0
    if pattern.category == "time_of_day":
        return 0.2 if _memory_hour(memory) == parameters.get("peak_hour") else 0.0
    if pattern.category == "complexity_preference":
        if "average_complexity" not in parameters:
            return 0.0
        complexity = content_complexity(memory.get("content"))
        return max(0.0, 1 - abs(complexity - parameters["average_complexity"])) * 0.25
    if pattern.category == "memory_combination":
        return 0.2 if memory.get("memory_type") in parameters.get("memory_types", []) else 0.0
    return 0.0
