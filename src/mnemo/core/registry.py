"""Keyed instance registry with creation on demand and idle eviction."""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from mnemo.core.logging import get_logger

logger = get_logger("core.registry")

V = TypeVar("V")


def instance_key(agent_id: int | str, user_id: str, thread_id: str | None = None) -> str:
    """Composite key for per-(agent, user[, thread]) state."""
    if thread_id:
        return f"{agent_id}:{user_id}:{thread_id}"
    return f"{agent_id}:{user_id}"


@dataclass
class RegistryEntry(Generic[V]):
    value: V
    created: datetime = field(default_factory=datetime.now)
    last_accessed: datetime = field(default_factory=datetime.now)


class InstanceRegistry(Generic[V]):
    """Holds one instance per composite key.

    Creation is serialized by a lock so concurrent callers for the same key
    receive the same instance. Entries idle longer than ``max_idle`` are
    removed by ``evict_idle``.
    """

    def __init__(self, name: str, max_idle: timedelta | None = None):
        self.name = name
        self.max_idle = max_idle
        self._entries: dict[str, RegistryEntry[V]] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(
        self, key: str, factory: Callable[[], V | Awaitable[V]]
    ) -> V:
        entry = self._entries.get(key)
        if entry is not None:
            entry.last_accessed = datetime.now()
            return entry.value

        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                value = factory()
                if inspect.isawaitable(value):
                    value = await value
                entry = RegistryEntry(value=value)
                self._entries[key] = entry
                logger.debug(f"[{self.name}] created instance {key}")
            entry.last_accessed = datetime.now()
            return entry.value

    def get(self, key: str) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.last_accessed = datetime.now()
        return entry.value

    def put(self, key: str, value: V) -> None:
        self._entries[key] = RegistryEntry(value=value)

    def remove(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def evict_idle(self, now: datetime | None = None) -> list[str]:
        """Remove entries idle past max_idle, return evicted keys."""
        if self.max_idle is None:
            return []
        now = now or datetime.now()
        evicted = [
            key for key, entry in self._entries.items()
            if now - entry.last_accessed > self.max_idle
        ]
        for key in evicted:
            del self._entries[key]
        if evicted:
            logger.info(f"[{self.name}] evicted {len(evicted)} idle instances")
        return evicted

    def values(self) -> list[V]:
        return [entry.value for entry in self._entries.values()]

    def items(self) -> Iterator[tuple[str, V]]:
        for key, entry in list(self._entries.items()):
            yield key, entry.value

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
