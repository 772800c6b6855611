"""Episode classification as an ordered chain of signal rules.

Each rule checks explicit flags first, then keywords over the episode text.
The first matching rule wins, so rule order is significant.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from mnemo.memory.base import EpisodeType

TEXT_FIELDS = ("text", "query", "response", "message", "content")


def content_text(content: Any) -> str:
    """Textual view of an episode payload used by keyword heuristics."""
    if isinstance(content, str):
        return content
    if isinstance(content, Mapping):
        parts = [str(content[key]) for key in TEXT_FIELDS if isinstance(content.get(key), str)]
        return " ".join(parts)
    return ""


FlagCheck = Callable[[Mapping[str, Any], Mapping[str, Any]], bool]


def metadata_flag(name: str) -> FlagCheck:
    return lambda context, metadata: bool(metadata.get(name))


def context_flag(name: str) -> FlagCheck:
    return lambda context, metadata: bool(context.get(name))


@dataclass(frozen=True)
class SignalRule:
    """One classification rule: flag checks, then keyword match."""

    episode_type: EpisodeType
    flags: tuple[FlagCheck, ...] = ()
    keywords: tuple[str, ...] = ()

    def matches(self, text: str, context: Mapping[str, Any], metadata: Mapping[str, Any]) -> bool:
        if any(flag(context, metadata) for flag in self.flags):
            return True
        lowered = text.lower()
        return any(keyword in lowered for keyword in self.keywords)


DEFAULT_RULES: tuple[SignalRule, ...] = (
    SignalRule(
        EpisodeType.ERROR,
        flags=(metadata_flag("is_error"), context_flag("is_error")),
        keywords=("error", "failed", "broke", "problem", "issue", "bug"),
    ),
    SignalRule(
        EpisodeType.SUCCESS,
        flags=(metadata_flag("is_success"), context_flag("task_completed")),
        keywords=("success", "complete", "finished", "solved", "working", "done"),
    ),
    SignalRule(
        EpisodeType.TASK,
        flags=(metadata_flag("is_task"), context_flag("is_task")),
        keywords=("create", "build", "make", "implement", "design", "develop"),
    ),
    SignalRule(
        EpisodeType.LEARNING,
        flags=(metadata_flag("is_learning"), context_flag("is_learning")),
        keywords=("how to", "explain", "what is", "why", "teach", "learn"),
    ),
    SignalRule(
        EpisodeType.DISCOVERY,
        flags=(metadata_flag("is_discovery"), context_flag("new_feature")),
        keywords=("found", "discovered", "new", "interesting", "unexpected"),
    ),
)


class EpisodeClassifier:
    """Resolves an episode type from its content, context and metadata."""

    def __init__(
        self,
        rules: Iterable[SignalRule] = DEFAULT_RULES,
        default: EpisodeType = EpisodeType.CONVERSATION,
    ):
        self.rules = tuple(rules)
        self.default = default

    def classify(
        self,
        content: Any,
        context: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> EpisodeType:
        context = context or {}
        metadata = metadata or {}
        text = content_text(content)
        for rule in self.rules:
            if rule.matches(text, context, metadata):
                return rule.episode_type
        return self.default
