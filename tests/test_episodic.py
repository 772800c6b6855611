"""Tests for the episodic memory manager."""

import pytest

from mnemo.core.config import Settings
from mnemo.core.events import EventChannel
from mnemo.evolution.strategy import (
    MEMORY_CONSOLIDATION,
    StrategyRegistry,
)
from mnemo.memory.base import Episode, EpisodeType
from mnemo.memory.episodic import EpisodicMemoryManager
from mnemo.memory.store import SQLiteMemoryStore


@pytest.fixture
async def manager(store: SQLiteMemoryStore, settings: Settings, events: EventChannel):
    episodic = EpisodicMemoryManager(
        "1", "alice", store, settings=settings, events=events, strategies=StrategyRegistry()
    )
    await episodic.initialize()
    yield episodic
    await episodic.background.drain()


@pytest.mark.asyncio
async def test_store_classifies_and_scores(manager: EpisodicMemoryManager):
    result = await manager.store("The build failed", {"session_id": "s1"})

    assert result.stored
    assert result.episode_type == "error"
    # Base 0.5 plus recent-error bonus
    assert result.importance_score == pytest.approx(0.8)
    episode = await manager.store_backend.get_episode(result.id)
    assert episode.content == {"text": "The build failed"}
    assert episode.session_id == "s1"
    assert episode.outcome == "completed"


@pytest.mark.asyncio
async def test_store_generates_session_id(manager: EpisodicMemoryManager):
    result = await manager.store("hello")
    episode = await manager.store_backend.get_episode(result.id)
    assert episode.session_id.startswith("session_")
    assert manager.current_session_id == episode.session_id


@pytest.mark.asyncio
async def test_store_strips_blobs(manager: EpisodicMemoryManager):
    result = await manager.store("look", {"screenshot": "data:image/png;base64,AAAA"})
    episode = await manager.store_backend.get_episode(result.id)
    assert "screenshot" not in episode.context


@pytest.mark.asyncio
async def test_store_failure_returns_error(manager: EpisodicMemoryManager):
    await manager.store_backend.close()

    result = await manager.store("hello")

    assert not result.stored
    assert result.error
    assert manager.metrics["store_failures"] == 1


@pytest.mark.asyncio
async def test_successful_episode_promoted_once(
    manager: EpisodicMemoryManager, events: EventChannel
):
    """A satisfied success episode is promoted in the background, exactly once."""
    subscription = events.subscribe(["episode.promoted"])

    result = await manager.store(
        "Task complete, everything is working now",
        {"session_id": "s1"},
        {"user_rating": 0.9, "is_task_completion": True},
    )
    await manager.background.drain()

    assert result.importance_score >= 0.8
    episode = await manager.store_backend.get_episode(result.id)
    assert episode.promoted_to_semantic
    assert not await manager.evaluate_promotion(episode)
    assert len(subscription.drain()) == 1
    assert manager.metrics["promoted_to_semantic"] == 1


@pytest.mark.asyncio
async def test_low_importance_not_scheduled(manager: EpisodicMemoryManager):
    result = await manager.store("hello there")
    assert manager.background.pending == 0
    episode = await manager.store_backend.get_episode(result.id)
    assert not episode.promoted_to_semantic


@pytest.mark.asyncio
async def test_promotion_by_similar_episodes(manager: EpisodicMemoryManager):
    """Enough similar episodes (same type, close importance) trigger promotion."""
    for _ in range(3):
        await manager.store_backend.insert_episode(
            Episode(agent_id="1", user_id="alice", session_id="s",
                    episode_type=EpisodeType.CONVERSATION, content={"text": "x"},
                    importance_score=0.82)
        )
    candidate = Episode(agent_id="1", user_id="alice", session_id="s",
                        episode_type=EpisodeType.CONVERSATION, content={"text": "y"},
                        importance_score=0.85)
    await manager.store_backend.insert_episode(candidate)

    assert await manager.should_promote(candidate)
    assert await manager.evaluate_promotion(candidate)
    assert not await manager.evaluate_promotion(candidate)


@pytest.mark.asyncio
async def test_similarity_requirement_follows_strategy(manager: EpisodicMemoryManager):
    """frequency_threshold of the consolidation strategy sets N."""
    strategy = manager.strategies.get(MEMORY_CONSOLIDATION)
    await manager.strategies.replace(
        strategy.evolved({**strategy.current, "frequency_threshold": 5}, 0.9)
    )
    for _ in range(3):
        await manager.store_backend.insert_episode(
            Episode(agent_id="1", user_id="alice", session_id="s",
                    episode_type=EpisodeType.TASK, content={"text": "x"},
                    importance_score=0.8)
        )
    candidate = Episode(agent_id="1", user_id="alice", session_id="s",
                        episode_type=EpisodeType.TASK, content={"text": "y"},
                        importance_score=0.8)
    await manager.store_backend.insert_episode(candidate)

    assert not await manager.should_promote(candidate)


@pytest.mark.asyncio
async def test_discovery_always_promotes(manager: EpisodicMemoryManager):
    episode = Episode(agent_id="1", user_id="alice", session_id="s",
                      episode_type=EpisodeType.DISCOVERY, content={"text": "found it"},
                      importance_score=0.9)
    await manager.store_backend.insert_episode(episode)
    assert await manager.evaluate_promotion(episode)


@pytest.mark.asyncio
async def test_retrieve_prefers_current_session(manager: EpisodicMemoryManager):
    other = await manager.store("hello from before", {"session_id": "old"})
    current = await manager.store("hello again", {"session_id": "now"})

    episodes = await manager.retrieve(None, {"session_id": "now"})

    assert [e.id for e in episodes] == [current.id, other.id]
    assert episodes[0].relevance_score > episodes[1].relevance_score


@pytest.mark.asyncio
async def test_retrieve_filters(manager: EpisodicMemoryManager):
    await manager.store("The build failed", {"session_id": "a"})
    await manager.store("hello", {"session_id": "b"})

    errors = await manager.retrieve(None, {}, {"episode_types": ["error"]})
    session_b = await manager.retrieve(None, {}, {"session_id": "b"})
    limited = await manager.retrieve(None, {}, {"limit": 1})

    assert [e.episode_type for e in errors] == [EpisodeType.ERROR]
    assert len(session_b) == 1 and session_b[0].session_id == "b"
    assert len(limited) == 1


@pytest.mark.asyncio
async def test_retrieve_returns_empty_on_failure(manager: EpisodicMemoryManager):
    await manager.store_backend.close()
    assert await manager.retrieve("anything", {}) == []


@pytest.mark.asyncio
async def test_search_and_recent(manager: EpisodicMemoryManager):
    await manager.store("asyncio event loops")
    await manager.store("gardening tips")

    found = await manager.search("asyncio")
    recent = await manager.get_recent(limit=1)

    assert len(found) == 1
    assert recent[0].content["text"] == "gardening tips"


@pytest.mark.asyncio
async def test_learn_type_weights(manager: EpisodicMemoryManager):
    await manager.store("hello", {}, {"user_rating": 1.0})

    weights = await manager.learn_type_weights()

    # 1.5 * (0.7 + 1.0) / 2
    assert weights["conversation"] == pytest.approx(1.275)
    assert weights["error"] == 1.0


@pytest.mark.asyncio
async def test_consolidate_reevaluates_recent(manager: EpisodicMemoryManager):
    episode = Episode(agent_id="1", user_id="alice", session_id="s",
                      episode_type=EpisodeType.LEARNING, content={"text": "x"},
                      importance_score=0.9, user_satisfaction=0.8)
    await manager.store_backend.insert_episode(episode)

    result = await manager.consolidate()

    assert result == {"weights": result["weights"], "evaluated": 1, "promoted": 1}
    assert manager.get_stats()["consolidation_count"] == 1


@pytest.mark.asyncio
async def test_consolidation_threshold_follows_strategy(manager: EpisodicMemoryManager):
    """The evolved importance_threshold decides which episodes are re-evaluated."""
    episode = Episode(agent_id="1", user_id="alice", session_id="s",
                      episode_type=EpisodeType.DISCOVERY, content={"text": "x"},
                      importance_score=0.75)
    await manager.store_backend.insert_episode(episode)
    strategy = manager.strategies.get(MEMORY_CONSOLIDATION)
    await manager.strategies.replace(
        strategy.evolved({**strategy.current, "importance_threshold": 0.8}, 0.9)
    )

    assert (await manager.consolidate())["evaluated"] == 0

    await manager.strategies.replace(
        strategy.evolved({**strategy.current, "importance_threshold": 0.7}, 0.9)
    )

    result = await manager.consolidate()
    assert result["evaluated"] == 1
    assert result["promoted"] == 1
