"""Importance scoring, satisfaction inference and context sanitizing for episodes."""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from mnemo.memory.base import EpisodeType
from mnemo.memory.classification import content_text

BASE_IMPORTANCE = 0.5
MIN_TYPE_WEIGHT = 0.5
MAX_TYPE_WEIGHT = 2.0

DOMAIN_TERMS = ("function", "error", "solution", "method", "process")
RECENT_ERROR_SECONDS = 5 * 60

STRIPPED_CONTEXT_KEYS = ("screenshot", "audio", "raw_data")
MAX_CONTEXT_STRING = 500


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def to_datetime(value: Any) -> datetime | None:
    """Accept datetime, ISO string, or epoch seconds/milliseconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def calculate_importance(
    content: Any,
    context: Mapping[str, Any],
    metadata: Mapping[str, Any],
    episode_type: EpisodeType,
    type_weight: float = 1.0,
    now: datetime | None = None,
) -> float:
    """Importance in [0, 1] from type weight, content, context and metadata signals."""
    importance = BASE_IMPORTANCE * clamp(type_weight, MIN_TYPE_WEIGHT, MAX_TYPE_WEIGHT)

    text = content_text(content)
    if text:
        if len(text) > 200:
            importance += 0.1
        if len(text) > 500:
            importance += 0.1
        if "?" in text and "." in text:
            importance += 0.15
        lowered = text.lower()
        if any(term in lowered for term in DOMAIN_TERMS):
            importance += 0.1

    if context.get("is_user_initiated"):
        importance += 0.1
    if context.get("has_screenshot"):
        importance += 0.15
    if context.get("session_start"):
        importance += 0.2
    if (context.get("conversation_length") or 0) > 5:
        importance += 0.1

    if metadata.get("is_task_completion"):
        importance += 0.3
    if (metadata.get("user_rating") or 0) > 0.7:
        importance += 0.2
    if metadata.get("is_learning_moment"):
        importance += 0.25
    if metadata.get("problem_solved"):
        importance += 0.2

    # Recent errors; a missing timestamp means "just now"
    if episode_type == EpisodeType.ERROR:
        now = now or datetime.now()
        occurred = to_datetime(context.get("timestamp")) or now
        if (now - occurred).total_seconds() < RECENT_ERROR_SECONDS:
            importance += 0.3

    return clamp(importance)


def infer_satisfaction(
    context: Mapping[str, Any], metadata: Mapping[str, Any]
) -> float | None:
    """Explicit rating or feedback, else the last applicable implicit signal."""
    if metadata.get("user_rating") is not None:
        return clamp(float(metadata["user_rating"]))
    if context.get("user_feedback") is not None:
        return clamp(float(context["user_feedback"]))

    satisfaction = None

    if context.get("conversation_continued"):
        satisfaction = 0.7

    quick_follow_up = context.get("quick_follow_up")
    if quick_follow_up and quick_follow_up < 30:
        satisfaction = 0.3

    duration = context.get("session_duration")
    if duration:
        if duration > 300:
            satisfaction = 0.8
        elif duration < 30:
            satisfaction = 0.2

    if metadata.get("task_completed"):
        satisfaction = 0.9

    return satisfaction


def infer_outcome(context: Mapping[str, Any], metadata: Mapping[str, Any]) -> str:
    if metadata.get("outcome"):
        return str(metadata["outcome"])
    if context.get("task_completed"):
        return "success"
    if context.get("is_error"):
        return "failure"
    if context.get("conversation_continued"):
        return "ongoing"
    return "completed"


def session_duration(context: Mapping[str, Any]) -> float | None:
    """Seconds since session start, when the context carries enough to tell."""
    if context.get("session_duration"):
        return float(context["session_duration"])
    started = to_datetime(context.get("session_start"))
    current = to_datetime(context.get("timestamp"))
    if started and current:
        return max(0.0, (current - started).total_seconds())
    return None


def sanitize_context(context: Mapping[str, Any]) -> dict[str, Any]:
    """Strip large blobs and truncate long strings before persistence."""
    sanitized = {
        key: value for key, value in context.items() if key not in STRIPPED_CONTEXT_KEYS
    }
    for key, value in sanitized.items():
        if isinstance(value, str) and len(value) > MAX_CONTEXT_STRING:
            sanitized[key] = value[:MAX_CONTEXT_STRING] + "..."
    return sanitized


def learned_type_weight(avg_importance: float | None, avg_satisfaction: float | None) -> float:
    """Type weight relearned from historical averages."""
    importance = avg_importance if avg_importance is not None else BASE_IMPORTANCE
    satisfaction = avg_satisfaction if avg_satisfaction is not None else 0.5
    return clamp(1.5 * (importance + satisfaction) / 2, MIN_TYPE_WEIGHT, MAX_TYPE_WEIGHT)
