"""Tests for the keyed instance registry and background tasks."""

import asyncio
from datetime import datetime, timedelta

import pytest

from mnemo.core.background import BackgroundTasks
from mnemo.core.registry import InstanceRegistry, instance_key


def test_instance_key():
    assert instance_key(1, "alice") == "1:alice"
    assert instance_key("1", "alice", "t1") == "1:alice:t1"


@pytest.mark.asyncio
async def test_concurrent_get_or_create_returns_same_instance():
    """Concurrent callers for the same key share one instance."""
    registry: InstanceRegistry[object] = InstanceRegistry("test")
    created = []

    async def factory():
        await asyncio.sleep(0)
        value = object()
        created.append(value)
        return value

    results = await asyncio.gather(*(registry.get_or_create("k", factory) for _ in range(5)))

    assert len(created) == 1
    assert all(r is created[0] for r in results)
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_sync_factory():
    registry: InstanceRegistry[dict] = InstanceRegistry("test")
    value = await registry.get_or_create("k", dict)
    assert registry.get("k") is value
    assert "k" in registry


def test_evict_idle():
    """Entries idle past max_idle are removed."""
    registry: InstanceRegistry[str] = InstanceRegistry("test", max_idle=timedelta(minutes=30))
    registry.put("old", "a")
    registry.put("fresh", "b")
    registry._entries["old"].last_accessed = datetime.now() - timedelta(hours=1)

    evicted = registry.evict_idle()

    assert evicted == ["old"]
    assert "old" not in registry
    assert registry.values() == ["b"]


def test_no_eviction_without_max_idle():
    registry: InstanceRegistry[str] = InstanceRegistry("test")
    registry.put("k", "v")
    registry._entries["k"].last_accessed = datetime.now() - timedelta(days=30)
    assert registry.evict_idle() == []


@pytest.mark.asyncio
async def test_background_failures_are_logged_not_raised():
    background = BackgroundTasks("test")

    async def ok():
        return 1

    async def fail():
        raise RuntimeError("boom")

    background.spawn(ok(), "ok")
    background.spawn(fail(), "fail")
    await background.drain()

    assert background.pending == 0
    assert background.completed == 1
    assert background.failures == 1


@pytest.mark.asyncio
async def test_background_cancel_all():
    background = BackgroundTasks("test")
    background.spawn(asyncio.sleep(10), "sleep")
    assert background.pending == 1

    await background.cancel_all()
    await asyncio.sleep(0)

    assert background.pending == 0
