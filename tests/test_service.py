"""Tests for the memory service facade."""

from datetime import datetime, timedelta

import pytest

from mnemo.core.config import Settings
from mnemo.core.orchestrator import Orchestrator
from mnemo.core.types import MemoryTier
from mnemo.memory.service import MemoryService, determine_storage_targets

ALICE = {"agent_id": 1, "user_id": "alice"}


@pytest.fixture
async def service(settings: Settings):
    memory_service = MemoryService(settings=settings, seed=1)
    await memory_service.connect()
    yield memory_service
    await memory_service.close()


def test_storage_targets():
    assert determine_storage_targets("x", {}, {}) == [MemoryTier.EPISODIC]
    assert determine_storage_targets("x", {}, {"is_immediate": True}) == [MemoryTier.WORKING]
    assert determine_storage_targets("x", {}, {"importance": 0.65}) == [MemoryTier.SEMANTIC]
    assert determine_storage_targets("x", {"session_id": "s"}, {"importance": 0.9}) == [
        MemoryTier.WORKING, MemoryTier.EPISODIC, MemoryTier.SEMANTIC
    ]
    assert determine_storage_targets("x", {}, {"content_type": "behavior"}) == [
        MemoryTier.PROCEDURAL
    ]
    assert determine_storage_targets("x", {}, {"content_type": "fact"}) == [MemoryTier.SEMANTIC]


@pytest.mark.asyncio
async def test_store_requires_identity(service: MemoryService):
    result = await service.store("hello", {"user_id": "alice"})
    assert not result.success
    assert result.error == "agent_id and user_id are required"


@pytest.mark.asyncio
async def test_store_episodic_and_analyze_in_background(service: MemoryService):
    result = await service.store("The build failed", {**ALICE, "session_id": "s1"})
    await service.background.drain()

    assert result.success
    assert result.storage_targets == ["episodic"]
    instance = await service.get_instance(1, "alice")
    assert instance.patterns.metrics["analyses"] == 1
    episode = await service.memory_store.get_episode(result.results["episodic"].id)
    assert episode.context_id == service.isolation.create_context(1, "alice").context_id


@pytest.mark.asyncio
async def test_store_fans_out_to_tiers(service: MemoryService):
    result = await service.store(
        "The algorithm is fast because of caching",
        {**ALICE, "session_id": "s1"},
        {"importance": 0.9},
    )

    assert result.success
    assert set(result.storage_targets) == {"working", "episodic", "semantic"}
    assert service.get_stats()["stores"] == 1


@pytest.mark.asyncio
async def test_store_skipped_everywhere_is_failure(service: MemoryService):
    instance = await service.get_instance(1, "alice")
    instance.semantic.min_score = 0.95

    result = await service.store("hi", ALICE, {"content_type": "fact"})

    assert not result.success
    assert result.error == "Nothing stored"
    assert result.results["semantic"].error == "low_score"


@pytest.mark.asyncio
async def test_cross_user_store_denied(service: MemoryService):
    bob = service.isolation.create_context(1, "bob")

    result = await service.store(
        "hello", {**ALICE, "session_id": "s1", "target_context_id": bob.context_id}
    )

    reason = "Cross-user access denied - data isolation required"
    assert not result.success
    assert result.error == reason
    assert result.results["episodic"].error == reason
    assert not result.results["episodic"].stored
    assert await service.memory_store.episode_counts("1", "alice") == {"total": 0, "promoted": 0}
    assert service.get_stats()["denied"] == 1


@pytest.mark.asyncio
async def test_contaminated_store_denied(service: MemoryService):
    metadata = {
        "source_data": {"user_id": "bob", "memory_type": "working", "context_id": "elsewhere"}
    }

    result = await service.store("hello", ALICE, metadata)

    assert not result.success
    assert result.error == "High contamination risk detected"


@pytest.mark.asyncio
async def test_retrieve_merges_tiers(service: MemoryService):
    await service.store(
        "The algorithm is fast because of caching",
        {**ALICE, "session_id": "s1"},
        {"importance": 0.9},
    )
    await service.background.drain()

    result = await service.retrieve(None, {**ALICE, "session_id": "s1"})

    assert result.success
    assert result.breakdown == {"working": 1, "episodic": 1, "semantic": 1, "procedural": 0}
    assert {"working", "episodic", "semantic"} <= {m["memory_type"] for m in result.memories}
    scores = [m["final_score"] for m in result.memories]
    assert scores == sorted(scores, reverse=True)
    instance = await service.get_instance(1, "alice")
    assert instance.hit_rate == 1.0


@pytest.mark.asyncio
async def test_retrieve_is_isolated_per_user(service: MemoryService):
    await service.store("secret plan", {**ALICE, "session_id": "s1"})

    result = await service.retrieve(None, {"agent_id": 1, "user_id": "bob"})

    assert result.success
    assert result.memories == []
    instance = await service.get_instance(1, "bob")
    assert instance.hit_rate == 0.0


@pytest.mark.asyncio
async def test_cross_agent_retrieve_reads_target(service: MemoryService):
    await service.store("deploy plan for friday", {**ALICE, "session_id": "s1"})
    target = service.isolation.create_context(1, "alice")

    result = await service.retrieve(
        None, {"agent_id": 2, "user_id": "alice", "target_context_id": target.context_id}
    )

    assert result.success
    assert result.memories
    assert {m["agent_id"] for m in result.memories} == {"1"}
    assert result.breakdown["episodic"] == 1


@pytest.mark.asyncio
async def test_rank_and_merge_weighting(service: MemoryService):
    now = datetime(2026, 3, 2, 12, 0)
    memories = {
        "semantic": [
            {"id": "fresh", "relevance_score": 0.9, "created_at": now.isoformat()},
        ],
        "procedural": [
            {"id": "used", "relevance_score": 0.5, "usage_count": 10,
             "created_at": (now - timedelta(hours=48)).isoformat()},
        ],
        "episodic": [
            {"id": "session", "memory_type": "episodic", "importance_score": 0.5,
             "session_id": "s1", "created_at": (now - timedelta(hours=12)).isoformat()},
        ],
    }

    ranked = service.rank_and_merge(memories, {"session_id": "s1"}, now=now)

    by_id = {m["id"]: m for m in ranked}
    # 0.4 * 0.9 + 0.3 * 1.0
    assert by_id["fresh"]["final_score"] == pytest.approx(0.66)
    # 0.4 * 0.5 + 0.3 * 1.0 (usage)
    assert by_id["used"]["final_score"] == pytest.approx(0.5)
    # 0.4 * (0.5 + 0.15) + 0.3 * 0.5
    assert by_id["session"]["base_score"] == pytest.approx(0.65)
    assert by_id["session"]["final_score"] == pytest.approx(0.41)
    assert [m["id"] for m in ranked] == ["fresh", "used", "session"]
    assert len(service.rank_and_merge(memories, {}, limit=1, now=now)) == 1


@pytest.mark.asyncio
async def test_procedural_feedback(service: MemoryService):
    result = await service.store(
        "First open the settings, then click save",
        ALICE,
        {"content_type": "behavior", "was_successful": True},
    )
    record_id = result.results["procedural"].id

    assert await service.record_feedback(1, "alice", record_id, {"success": True})
    assert not await service.record_feedback(1, "alice", "missing", {"success": True})


@pytest.mark.asyncio
async def test_feedback_from_another_user_leaves_record_untouched(service: MemoryService):
    result = await service.store(
        "First open the settings, then click save",
        ALICE,
        {"content_type": "behavior", "was_successful": True},
    )
    record = result.results["procedural"]

    applied = await service.record_feedback(
        1, "mallory", record.id, {"success": False, "adaptation": "rewrite"}
    )

    assert not applied
    loaded = await service.memory_store.get_record(MemoryTier.PROCEDURAL, record.id)
    assert loaded.user_id == "alice"
    assert loaded.usage_count == 0
    assert loaded.score == pytest.approx(record.importance_score)
    assert loaded.adaptation_history == []


@pytest.mark.asyncio
async def test_run_evolution_records_history(service: MemoryService):
    await service.store("hello", {**ALICE, "session_id": "s1"})

    decisions = await service.run_evolution()

    assert "Scheduled evolution" in decisions["1:alice"].reason
    history = service.get_evolution_history(1, "alice")
    assert len(history) == 1
    assert history[0]["instance_key"] == "1:alice"


@pytest.mark.asyncio
async def test_maintenance_cycles(service: MemoryService):
    await service.store("hello", {**ALICE, "session_id": "s1"})

    consolidation = await service.run_consolidation()
    patterns = await service.run_pattern_evolution()

    # "hello" is below the promotion threshold
    assert consolidation["1:alice"]["evaluated"] == 0
    assert patterns["1:alice"]["active"] == 0


@pytest.mark.asyncio
async def test_register_cycles(service: MemoryService):
    orchestrator = Orchestrator()
    service.register_cycles(orchestrator)

    tasks = {task["id"] for task in orchestrator.list_tasks()}
    assert tasks == {
        "consolidation", "pattern_evolution", "strategy_evolution",
        "security_scan", "security_check", "evict_idle",
    }


@pytest.mark.asyncio
async def test_evict_idle(service: MemoryService):
    await service.store("hello", {**ALICE, "session_id": "s1"})
    await service.run_evolution()
    # Age both the instance and its isolation context past the idle limit
    long_ago = datetime.now() - timedelta(hours=25)
    service.instances._entries["1:alice"].last_accessed = long_ago
    for context in service.isolation.contexts:
        context.last_accessed = long_ago

    result = await service.evict_idle()

    assert result == {"instances": 1, "contexts": 1, "sharing_rules": 0}
    assert len(service.instances) == 0
    assert service.get_evolution_history(1, "alice") == []


@pytest.mark.asyncio
async def test_system_stats(service: MemoryService):
    await service.store("hello", {**ALICE, "session_id": "s1"})
    await service.background.drain()

    stats = await service.get_system_stats()

    assert stats["service"]["stores"] == 1
    assert stats["service"]["memory_types"] == ["working", "episodic", "semantic", "procedural"]
    assert "1:alice" in stats["instances"]
    assert stats["isolation"]["active_contexts"] == 1
    assert stats["database"]["active_sharing_rules"] == 0
    assert service.get_patterns(1, "alice") == []
