"""In-memory audit trail of access decisions."""

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4


@dataclass(frozen=True)
class AuditEntry:
    context_id: str
    operation: str
    allowed: bool
    reason: str | None = None
    cross_context: bool = False
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def persistent(self) -> bool:
        """Denials and cross-context passes are written to the audit table."""
        return not self.allowed or self.cross_context

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "context_id": self.context_id,
            "operation": self.operation,
            "allowed": self.allowed,
            "reason": self.reason,
            "cross_context": self.cross_context,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditLog:
    """Append-only ring buffer.

    Once more than ``capacity`` entries are held, the oldest are dropped
    down to half capacity.
    """

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._entries: list[AuditEntry] = []
        self.total_entries = 0

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)
        self.total_entries += 1
        if len(self._entries) > self.capacity:
            self._entries = self._entries[-(self.capacity // 2):]

    def recent(self, limit: int = 50) -> list[AuditEntry]:
        if limit <= 0:
            return []
        return self._entries[-limit:]

    def violations(self, hours: float = 24, now: datetime | None = None) -> list[AuditEntry]:
        since = (now or datetime.now()) - timedelta(hours=hours)
        return [e for e in self._entries if e.timestamp > since and not e.allowed]

    def __iter__(self) -> Iterator[AuditEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
