"""Tests for episode classification."""

from mnemo.memory.base import EpisodeType
from mnemo.memory.classification import EpisodeClassifier, SignalRule, content_text


def classify(content, context=None, metadata=None) -> EpisodeType:
    return EpisodeClassifier().classify(content, context, metadata)


def test_error_keyword_wins_over_later_rules():
    """'The build failed' is an error even though 'build' is a task keyword."""
    assert classify("The build failed") == EpisodeType.ERROR


def test_explicit_success_flag():
    assert classify("Deployed to production", metadata={"is_success": True}) == (
        EpisodeType.SUCCESS
    )


def test_context_task_completed_is_success():
    assert classify("all set", context={"task_completed": True}) == EpisodeType.SUCCESS


def test_context_error_flag():
    assert classify("hello", context={"is_error": True}) == EpisodeType.ERROR


def test_flag_false_does_not_suppress_keywords():
    assert classify("this is a bug", metadata={"is_error": False}) == EpisodeType.ERROR


def test_keyword_types():
    assert classify("Let's implement the parser") == EpisodeType.TASK
    assert classify("Can you explain decorators") == EpisodeType.LEARNING
    assert classify("I discovered a shortcut") == EpisodeType.DISCOVERY
    assert classify("Hello there") == EpisodeType.CONVERSATION


def test_context_task_and_learning_flags():
    assert classify("hello there", context={"is_task": True}) == EpisodeType.TASK
    assert classify("hello there", context={"is_learning": True}) == EpisodeType.LEARNING


def test_new_feature_context_is_discovery():
    assert classify("look at this", context={"new_feature": True}) == EpisodeType.DISCOVERY


def test_dict_content_uses_text_fields():
    content = {"query": "why does this happen", "image": "..."}
    assert content_text(content) == "why does this happen"
    assert classify(content) == EpisodeType.LEARNING


def test_custom_rule_chain():
    """Rules are pluggable and evaluated in order."""
    classifier = EpisodeClassifier(
        rules=[SignalRule(EpisodeType.TASK, keywords=("todo",))],
        default=EpisodeType.LEARNING,
    )
    assert classifier.classify("todo: write tests") == EpisodeType.TASK
    assert classifier.classify("an error") == EpisodeType.LEARNING
