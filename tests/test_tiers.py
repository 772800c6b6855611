"""Tests for working, semantic and procedural tiers."""

from datetime import datetime, timedelta

import pytest

from mnemo.core.types import MemoryTier
from mnemo.memory.base import TierRecord
from mnemo.memory.store import SQLiteMemoryStore
from mnemo.memory.tiers import ProceduralMemory, SemanticMemory, WorkingMemory


@pytest.mark.asyncio
async def test_working_memory_stores_relevant_content(store: SQLiteMemoryStore):
    working = WorkingMemory("1", "alice", store)

    result = await working.store_content(
        "How to fix this error?", {"domain": "coding", "is_user_initiated": True}
    )

    assert result.stored
    assert result.tier == MemoryTier.WORKING
    records = await working.retrieve()
    assert len(records) == 1
    assert records[0].kind == "coding"
    # Fresh records carry the full recency bonus
    assert records[0].relevance_score == pytest.approx(records[0].score + 0.2, abs=0.01)


@pytest.mark.asyncio
async def test_working_memory_skips_expired(store: SQLiteMemoryStore):
    working = WorkingMemory("1", "alice", store)
    await store.insert_record(
        TierRecord(tier=MemoryTier.WORKING, agent_id="1", user_id="alice",
                   content={"text": "stale"}, created_at=datetime.now() - timedelta(days=2))
    )
    assert await working.retrieve() == []


@pytest.mark.asyncio
async def test_semantic_low_score_skipped_unless_forced(store: SQLiteMemoryStore):
    semantic = SemanticMemory("1", "alice", store)
    semantic.min_score = 0.6

    skipped = await semantic.store_content("short note")
    forced = await semantic.store_content("short note", {}, {"force_store": True})

    assert not skipped.stored
    assert skipped.error == "low_score"
    assert forced.stored
    assert semantic.get_stats()["skipped"] == 1


@pytest.mark.asyncio
async def test_semantic_kind(store: SQLiteMemoryStore):
    semantic = SemanticMemory("1", "alice", store)
    await semantic.store_content("The algorithm uses a heap because it is fast")
    records = await semantic.retrieve()
    assert records[0].kind == "technical"
    assert records[0].score == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_procedural_feedback(store: SQLiteMemoryStore):
    procedural = ProceduralMemory("1", "alice", store)
    result = await procedural.store_content(
        "First open the settings, then click save", {}, {"was_successful": True}
    )
    assert result.stored

    record = await procedural.record_feedback(result.id, {"success": False, "adaptation": "x"})

    assert record.usage_count == 1
    assert record.score == pytest.approx(0.8 * result.importance_score)
    assert len(record.adaptation_history) == 1
    loaded = await store.get_record(MemoryTier.PROCEDURAL, result.id)
    assert loaded.usage_count == 1
    assert loaded.kind == "task_sequence"


@pytest.mark.asyncio
async def test_procedural_feedback_unknown_record(store: SQLiteMemoryStore):
    procedural = ProceduralMemory("1", "alice", store)
    assert await procedural.record_feedback("missing", {"success": True}) is None


@pytest.mark.asyncio
async def test_procedural_rank_usage_bonus(store: SQLiteMemoryStore):
    procedural = ProceduralMemory("1", "alice", store)
    record = TierRecord(tier=MemoryTier.PROCEDURAL, agent_id="1", user_id="alice",
                        content={}, score=0.5, usage_count=50)
    assert procedural.rank(record) == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_store_failure_degrades(store: SQLiteMemoryStore):
    working = WorkingMemory("1", "alice", store)
    await store.close()

    result = await working.store_content("How to fix this error?")

    assert not result.stored
    assert working.get_stats()["failures"] == 1
    assert await working.retrieve() == []
