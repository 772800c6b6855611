"""Shared fixtures."""

from pathlib import Path

import pytest

from mnemo.core.config import Settings
from mnemo.core.events import EventChannel
from mnemo.memory.store import SQLiteMemoryStore


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Default settings rooted in a temporary data directory."""
    return Settings(data_dir=tmp_path, _env_file=None)


@pytest.fixture
async def store(tmp_path: Path):
    """Create a temporary memory store."""
    memory_store = SQLiteMemoryStore(tmp_path / "test.db")
    await memory_store.connect()
    yield memory_store
    await memory_store.close()


@pytest.fixture
def events() -> EventChannel:
    return EventChannel(queue_size=100)
