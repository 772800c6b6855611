"""Isolation contexts: the access scope of one (agent, user[, thread])."""

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from mnemo.core.types import TIERS


def derive_context_id(agent_id: int | str, user_id: str, thread_id: str | None = None) -> str:
    """Deterministic context id: ``agent:user[:thread]:hash8``."""
    base = f"{agent_id}:{user_id}"
    digest = hashlib.md5((base + (thread_id or "")).encode("utf-8")).hexdigest()[:8]
    if thread_id:
        return f"{base}:{thread_id}:{digest}"
    return f"{base}:{digest}"


@dataclass
class Permissions:
    read: bool = True
    write: bool = True
    delete: bool = False
    share: bool = True
    cross_agent: bool = True

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


@dataclass
class IsolationContext:
    """One scoped access boundary."""

    agent_id: str
    user_id: str
    thread_id: str | None = None
    permissions: Permissions = field(default_factory=Permissions)
    access_count: int = 0
    created: datetime = field(default_factory=datetime.now)
    last_accessed: datetime = field(default_factory=datetime.now)
    context_id: str = ""

    def __post_init__(self):
        self.agent_id = str(self.agent_id)
        if not self.context_id:
            self.context_id = derive_context_id(self.agent_id, self.user_id, self.thread_id)

    @property
    def boundaries(self) -> dict[str, str]:
        return {tier.value: f"{tier.value}_{self.context_id}" for tier in TIERS}

    def touch(self, now: datetime | None = None) -> datetime:
        """Record an access, return the previous access time."""
        previous = self.last_accessed
        self.last_accessed = now or datetime.now()
        self.access_count += 1
        return previous

    def access_rate(self, now: datetime | None = None) -> float:
        """Accesses per second since creation."""
        elapsed = ((now or datetime.now()) - self.created).total_seconds()
        if elapsed <= 0:
            return float(self.access_count)
        return self.access_count / elapsed

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_id": self.context_id,
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "thread_id": self.thread_id,
            "permissions": self.permissions.to_dict(),
            "access_count": self.access_count,
            "created": self.created.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "boundaries": self.boundaries,
        }
