"""Tests for the SQLite memory store."""

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from mnemo.core.types import MemoryTier
from mnemo.memory.base import DiscoveredPattern, Episode, EpisodeType, TierRecord
from mnemo.memory.store import SQLiteMemoryStore, safe_json_loads


def make_episode(**overrides) -> Episode:
    values = {
        "agent_id": "1",
        "user_id": "alice",
        "session_id": "s1",
        "episode_type": EpisodeType.CONVERSATION,
        "content": {"text": "hello"},
        "importance_score": 0.5,
    }
    values.update(overrides)
    return Episode(**values)


@pytest.mark.asyncio
async def test_store_requires_connect(tmp_path: Path):
    """Using the store before connect() is a programming error."""
    store = SQLiteMemoryStore(tmp_path / "x.db")
    with pytest.raises(RuntimeError):
        _ = store.conn


def test_safe_json_loads():
    assert safe_json_loads('{"a": 1}', {}) == {"a": 1}
    assert safe_json_loads("not json", {"fallback": True}) == {"fallback": True}
    assert safe_json_loads(None, []) == []


@pytest.mark.asyncio
async def test_episode_roundtrip(store: SQLiteMemoryStore):
    episode = make_episode(
        context={"domain": "coding"}, user_satisfaction=0.8, outcome="success"
    )
    await store.insert_episode(episode)

    loaded = await store.get_episode(episode.id)
    assert loaded is not None
    assert loaded.content == {"text": "hello"}
    assert loaded.context == {"domain": "coding"}
    assert loaded.episode_type == EpisodeType.CONVERSATION
    assert isinstance(loaded.created_at, datetime)


@pytest.mark.asyncio
async def test_query_episodes_orders_by_importance_and_session(store: SQLiteMemoryStore):
    """Same-session episodes get a 1.0 bonus, others 0.8."""
    low_current = make_episode(session_id="current", importance_score=0.5)
    high_other = make_episode(session_id="other", importance_score=0.65)
    filtered = make_episode(session_id="current", importance_score=0.05)
    for episode in (low_current, high_other, filtered):
        await store.insert_episode(episode)

    results = await store.query_episodes("1", "alice", current_session_id="current")

    assert [e.id for e in results] == [low_current.id, high_other.id]
    assert results[0].relevance_score == pytest.approx(1.5)
    assert results[1].relevance_score == pytest.approx(1.45)


@pytest.mark.asyncio
async def test_query_episodes_is_owner_scoped(store: SQLiteMemoryStore):
    await store.insert_episode(make_episode(user_id="alice"))
    await store.insert_episode(make_episode(user_id="bob"))
    await store.insert_episode(make_episode(agent_id="2"))

    results = await store.query_episodes("1", "alice")
    assert len(results) == 1
    assert results[0].user_id == "alice"


@pytest.mark.asyncio
async def test_mark_promoted_only_once(store: SQLiteMemoryStore):
    episode = make_episode()
    await store.insert_episode(episode)

    assert await store.mark_promoted(episode.id)
    assert not await store.mark_promoted(episode.id)
    counts = await store.episode_counts("1", "alice")
    assert counts == {"total": 1, "promoted": 1}


@pytest.mark.asyncio
async def test_search_episodes_substring(store: SQLiteMemoryStore):
    await store.insert_episode(make_episode(content={"text": "python asyncio question"}))
    await store.insert_episode(make_episode(content={"text": "weather today"}))

    results = await store.search_episodes("1", "alice", "asyncio")
    assert len(results) == 1
    assert "asyncio" in results[0].content["text"]


@pytest.mark.asyncio
async def test_importance_distribution(store: SQLiteMemoryStore):
    for score in (0.05, 0.15, 0.95, 1.0):
        await store.insert_episode(make_episode(importance_score=score))

    buckets = await store.importance_distribution("1", "alice")
    assert buckets[0] == 1
    assert buckets[1] == 1
    assert buckets[9] == 2
    assert sum(buckets) == 4


@pytest.mark.asyncio
async def test_tier_record_roundtrip_and_usage(store: SQLiteMemoryStore):
    record = TierRecord(
        tier=MemoryTier.PROCEDURAL,
        agent_id="1",
        user_id="alice",
        content={"text": "first open the file"},
        kind="task_sequence",
        score=0.6,
    )
    await store.insert_record(record)

    record.usage_count = 3
    record.adaptation_history.append({"note": "shorter"})
    await store.update_record_usage(record)

    loaded = await store.get_record(MemoryTier.PROCEDURAL, record.id)
    assert loaded.usage_count == 3
    assert loaded.adaptation_history == [{"note": "shorter"}]
    assert await store.count_records(MemoryTier.PROCEDURAL, "1", "alice") == 1


@pytest.mark.asyncio
async def test_record_lookup_scoped_to_owner(store: SQLiteMemoryStore):
    record = TierRecord(
        tier=MemoryTier.PROCEDURAL, agent_id="1", user_id="alice", content={"text": "save often"}
    )
    await store.insert_record(record)

    assert await store.get_record(MemoryTier.PROCEDURAL, record.id, "1", "alice") is not None
    assert await store.get_record(MemoryTier.PROCEDURAL, record.id, "1", "bob") is None
    assert await store.get_record(MemoryTier.PROCEDURAL, record.id, "2", "alice") is None

    # An update carrying a different owner matches no row
    forged = TierRecord(
        tier=MemoryTier.PROCEDURAL, agent_id="1", user_id="bob", content={}, usage_count=9,
        id=record.id,
    )
    await store.update_record_usage(forged)
    loaded = await store.get_record(MemoryTier.PROCEDURAL, record.id)
    assert loaded.usage_count == 0


@pytest.mark.asyncio
async def test_episodic_records_rejected_by_insert_record(store: SQLiteMemoryStore):
    record = TierRecord(tier=MemoryTier.EPISODIC, agent_id="1", user_id="a", content={})
    with pytest.raises(ValueError):
        await store.insert_record(record)


@pytest.mark.asyncio
async def test_count_foreign_records(store: SQLiteMemoryStore):
    """Rows written under a context by a different user are counted."""
    await store.insert_record(
        TierRecord(tier=MemoryTier.WORKING, agent_id="1", user_id="bob",
                   content={}, context_id="ctx-a")
    )
    await store.insert_record(
        TierRecord(tier=MemoryTier.WORKING, agent_id="1", user_id="alice",
                   content={}, context_id="ctx-a")
    )
    assert await store.count_foreign_records(MemoryTier.WORKING, "ctx-a", "alice") == 1
    assert await store.count_foreign_records(MemoryTier.SEMANTIC, "ctx-a", "alice") == 0


@pytest.mark.asyncio
async def test_upsert_pattern_keeps_higher_confidence(store: SQLiteMemoryStore):
    def pattern(confidence: float) -> DiscoveredPattern:
        return DiscoveredPattern(
            type="temporal",
            category="time_of_day",
            description="User tends to interact at hour 9",
            confidence=confidence,
            support=5,
            agent_id="1",
            user_id="alice",
        )

    assert await store.upsert_pattern(pattern(0.8))
    assert not await store.upsert_pattern(pattern(0.75))
    assert await store.upsert_pattern(pattern(0.9))

    stored = await store.list_patterns("1", "alice")
    assert len(stored) == 1
    assert stored[0].confidence == 0.9


@pytest.mark.asyncio
async def test_record_combination_counts(store: SQLiteMemoryStore):
    assert await store.record_combination("1", "alice", "episodic+working") == (1, 1)
    assert await store.record_combination("1", "alice", "semantic+working") == (1, 2)
    assert await store.record_combination("1", "alice", "episodic+working") == (2, 3)


@pytest.mark.asyncio
async def test_sharing_rule_expiry(store: SQLiteMemoryStore):
    now = datetime.now()
    await store.insert_sharing_rule("r1", "a", "b", True, {}, now - timedelta(minutes=1), now)
    await store.insert_sharing_rule("r2", "a", "c", False, {"read": True}, None, now)

    assert await store.get_sharing_rule("a", "b", now) is None
    rule = await store.get_sharing_rule("a", "c", now)
    assert rule["allowed"] is False
    assert rule["permissions"] == {"read": True}
    assert await store.count_active_sharing_rules(now) == 1
    assert await store.purge_expired_sharing_rules(now) == 1
