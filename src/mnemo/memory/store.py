"""SQLite memory store for all tiers, patterns, evolution log, audit and sharing rules."""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from mnemo.core.logging import get_logger
from mnemo.core.types import MemoryTier
from mnemo.memory.base import DiscoveredPattern, Episode, EpisodeType, TierRecord, TierStore

logger = get_logger("memory.store")


# Python 3.12+ fix: Register datetime adapters explicitly
def _adapt_datetime(dt: datetime) -> str:
    """Convert datetime to ISO format string for SQLite storage."""
    return dt.isoformat()


def _convert_datetime(val: bytes) -> datetime:
    """Convert ISO format string from SQLite to datetime."""
    return datetime.fromisoformat(val.decode())


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("DATETIME", _convert_datetime)


def safe_json_loads(value: Any, default: Any = None) -> Any:
    """Parse persisted JSON, falling back to default on malformed input."""
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str):
        logger.warning(f"Unexpected value type for JSON parsing: {type(value).__name__}")
        return default
    if not value.strip():
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(f"JSON parse failed ({len(value)} chars): {e}")
        return default


TIER_TABLES = {
    MemoryTier.WORKING: "working_memory",
    MemoryTier.EPISODIC: "episodic_memory",
    MemoryTier.SEMANTIC: "semantic_memory",
    MemoryTier.PROCEDURAL: "procedural_memory",
}

_TIER_RECORD_TABLE = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    context_id TEXT,
    session_id TEXT,
    kind TEXT DEFAULT 'general',
    content TEXT NOT NULL,  -- JSON object
    context TEXT,  -- JSON object
    score REAL DEFAULT 0.5,
    usage_count INTEGER DEFAULT 0,
    adaptation_history TEXT,  -- JSON array
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_{table}_owner
    ON {table}(agent_id, user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_{table}_context
    ON {table}(context_id);
"""

SCHEMA = """
-- Episodic memory: classified, scored interaction events
CREATE TABLE IF NOT EXISTS episodic_memory (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    context_id TEXT,
    session_id TEXT NOT NULL,
    episode_type TEXT DEFAULT 'conversation',
    content TEXT NOT NULL,  -- JSON object
    context TEXT,  -- JSON object
    outcome TEXT,
    user_satisfaction REAL,
    importance_score REAL DEFAULT 0.5,
    session_duration REAL,
    promoted_to_semantic INTEGER DEFAULT 0,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_episodic_owner
    ON episodic_memory(agent_id, user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_episodic_session
    ON episodic_memory(session_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_episodic_promotion
    ON episodic_memory(agent_id, user_id, importance_score DESC)
    WHERE promoted_to_semantic = 0;
CREATE INDEX IF NOT EXISTS idx_episodic_context
    ON episodic_memory(context_id);

-- Mined regularities, one row per (agent, user, category, description)
CREATE TABLE IF NOT EXISTS discovered_patterns (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    pattern_type TEXT NOT NULL,
    pattern_category TEXT NOT NULL,
    description TEXT NOT NULL,
    confidence REAL NOT NULL,
    support_count INTEGER NOT NULL,
    parameters TEXT,  -- JSON object
    discovered_at DATETIME NOT NULL,
    UNIQUE (agent_id, user_id, pattern_category, description)
);

CREATE INDEX IF NOT EXISTS idx_patterns_owner
    ON discovered_patterns(agent_id, user_id, confidence DESC);

-- Co-occurrence of tiers written by one storage event
CREATE TABLE IF NOT EXISTS memory_combinations (
    agent_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    combination TEXT NOT NULL,
    occurrences INTEGER DEFAULT 0,
    last_seen DATETIME,
    PRIMARY KEY (agent_id, user_id, combination)
);

-- Strategy evolution history
CREATE TABLE IF NOT EXISTS memory_evolution_log (
    id TEXT PRIMARY KEY,
    instance_key TEXT NOT NULL,
    generation INTEGER NOT NULL,
    timestamp DATETIME NOT NULL,
    reason TEXT,
    strategies_changed INTEGER DEFAULT 0,
    avg_fitness REAL,
    evolution_data TEXT  -- JSON object
);

CREATE INDEX IF NOT EXISTS idx_evolution_instance
    ON memory_evolution_log(instance_key, timestamp DESC);

-- Denied and cross-context access decisions
CREATE TABLE IF NOT EXISTS memory_access_audit (
    id TEXT PRIMARY KEY,
    context_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    allowed INTEGER NOT NULL,
    reason TEXT,
    result TEXT,  -- JSON object
    timestamp DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_context
    ON memory_access_audit(context_id, timestamp DESC);

-- Explicit, optionally expiring grants between isolation contexts
CREATE TABLE IF NOT EXISTS memory_sharing_rules (
    id TEXT PRIMARY KEY,
    source_context_id TEXT NOT NULL,
    target_context_id TEXT NOT NULL,
    allowed INTEGER DEFAULT 1,
    permissions TEXT,  -- JSON object
    expires_at DATETIME,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sharing_pair
    ON memory_sharing_rules(source_context_id, target_context_id);
""" + "".join(
    _TIER_RECORD_TABLE.format(table=TIER_TABLES[tier])
    for tier in (MemoryTier.WORKING, MemoryTier.SEMANTIC, MemoryTier.PROCEDURAL)
)


class SQLiteMemoryStore(TierStore):
    """SQLite-backed store shared by every memory component."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(
            self.db_path,
            detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
        )
        self._conn.row_factory = aiosqlite.Row
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()
        logger.info(f"Connected to memory store: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Memory store not connected. Call connect() first.")
        return self._conn

    # Episodic tier

    async def insert_episode(self, episode: Episode) -> str:
        await self.conn.execute(
            """INSERT INTO episodic_memory (
                   id, agent_id, user_id, context_id, session_id, episode_type,
                   content, context, outcome, user_satisfaction, importance_score,
                   session_duration, promoted_to_semantic, created_at
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                episode.id,
                episode.agent_id,
                episode.user_id,
                episode.context_id,
                episode.session_id,
                episode.episode_type.value,
                json.dumps(episode.content, default=str),
                json.dumps(episode.context, default=str),
                episode.outcome,
                episode.user_satisfaction,
                episode.importance_score,
                episode.session_duration,
                int(episode.promoted_to_semantic),
                episode.created_at,
            ),
        )
        await self.conn.commit()
        return episode.id

    def _row_to_episode(self, row: aiosqlite.Row) -> Episode:
        try:
            episode_type = EpisodeType(row["episode_type"])
        except ValueError:
            logger.warning(f"Unknown episode type {row['episode_type']!r}, using conversation")
            episode_type = EpisodeType.CONVERSATION
        keys = row.keys()
        return Episode(
            id=row["id"],
            agent_id=row["agent_id"],
            user_id=row["user_id"],
            context_id=row["context_id"],
            session_id=row["session_id"],
            episode_type=episode_type,
            content=safe_json_loads(row["content"], {}),
            context=safe_json_loads(row["context"], {}),
            outcome=row["outcome"],
            user_satisfaction=row["user_satisfaction"],
            importance_score=row["importance_score"],
            session_duration=row["session_duration"],
            promoted_to_semantic=bool(row["promoted_to_semantic"]),
            created_at=row["created_at"],
            relevance_score=row["relevance_score"] if "relevance_score" in keys else None,
        )

    async def get_episode(self, episode_id: str) -> Episode | None:
        async with self.conn.execute(
            "SELECT * FROM episodic_memory WHERE id = ?", (episode_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_episode(row) if row else None

    async def query_episodes(
        self,
        agent_id: str,
        user_id: str,
        current_session_id: str = "",
        min_importance: float = 0.1,
        session_id: str | None = None,
        episode_types: list[str] | None = None,
        since: datetime | None = None,
        include_promoted: bool = False,
        limit: int = 10,
    ) -> list[Episode]:
        """Episodes ranked by importance plus session affinity, then recency."""
        conditions = ["agent_id = ?", "user_id = ?", "importance_score >= ?"]
        params: list[Any] = [agent_id, user_id, min_importance]

        if session_id:
            conditions.append("session_id = ?")
            params.append(session_id)
        if episode_types:
            conditions.append(f"episode_type IN ({', '.join('?' for _ in episode_types)})")
            params.extend(episode_types)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(since)
        if not include_promoted:
            conditions.append("promoted_to_semantic = 0")

        sql = f"""
            SELECT *,
                   importance_score + CASE WHEN session_id = ? THEN 1.0 ELSE 0.8 END
                       AS relevance_score
            FROM episodic_memory
            WHERE {' AND '.join(conditions)}
            ORDER BY relevance_score DESC, created_at DESC
            LIMIT ?
        """
        async with self.conn.execute(sql, (current_session_id, *params, limit)) as cursor:
            return [self._row_to_episode(row) async for row in cursor]

    async def search_episodes(
        self, agent_id: str, user_id: str, query: str, limit: int = 10, offset: int = 0
    ) -> list[Episode]:
        """Substring search over JSON content, context and outcome."""
        pattern = f"%{query}%"
        async with self.conn.execute(
            """SELECT * FROM episodic_memory
               WHERE agent_id = ? AND user_id = ?
               AND (content LIKE ? OR context LIKE ? OR outcome LIKE ?)
               ORDER BY importance_score DESC, created_at DESC
               LIMIT ? OFFSET ?""",
            (agent_id, user_id, pattern, pattern, pattern, limit, offset),
        ) as cursor:
            return [self._row_to_episode(row) async for row in cursor]

    async def recent_episodes(
        self, agent_id: str, user_id: str, limit: int = 10, since: datetime | None = None
    ) -> list[Episode]:
        sql = "SELECT * FROM episodic_memory WHERE agent_id = ? AND user_id = ?"
        params: list[Any] = [agent_id, user_id]
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(since)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        async with self.conn.execute(sql, params) as cursor:
            return [self._row_to_episode(row) async for row in cursor]

    async def mark_promoted(self, episode_id: str) -> bool:
        """Flip the promotion flag; returns False if it was already set."""
        cursor = await self.conn.execute(
            """UPDATE episodic_memory SET promoted_to_semantic = 1
               WHERE id = ? AND promoted_to_semantic = 0""",
            (episode_id,),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def find_similar_episodes(
        self,
        agent_id: str,
        user_id: str,
        episode_type: str,
        importance: float,
        exclude_id: str,
        since: datetime,
        tolerance: float = 0.1,
    ) -> list[Episode]:
        async with self.conn.execute(
            """SELECT * FROM episodic_memory
               WHERE agent_id = ? AND user_id = ?
               AND episode_type = ?
               AND importance_score BETWEEN ? AND ?
               AND id != ?
               AND created_at >= ?""",
            (
                agent_id,
                user_id,
                episode_type,
                importance - tolerance,
                importance + tolerance,
                exclude_id,
                since,
            ),
        ) as cursor:
            return [self._row_to_episode(row) async for row in cursor]

    async def promotion_candidates(
        self, agent_id: str, user_id: str, threshold: float, since: datetime
    ) -> list[Episode]:
        async with self.conn.execute(
            """SELECT * FROM episodic_memory
               WHERE agent_id = ? AND user_id = ?
               AND importance_score >= ?
               AND promoted_to_semantic = 0
               AND created_at >= ?""",
            (agent_id, user_id, threshold, since),
        ) as cursor:
            return [self._row_to_episode(row) async for row in cursor]

    async def episode_type_aggregates(self, agent_id: str, user_id: str) -> list[dict[str, Any]]:
        async with self.conn.execute(
            """SELECT episode_type,
                      COUNT(*) AS frequency,
                      AVG(importance_score) AS avg_importance,
                      AVG(user_satisfaction) AS avg_satisfaction
               FROM episodic_memory
               WHERE agent_id = ? AND user_id = ?
               GROUP BY episode_type""",
            (agent_id, user_id),
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def session_aggregates(
        self, agent_id: str, user_id: str, since: datetime
    ) -> list[dict[str, Any]]:
        async with self.conn.execute(
            """SELECT session_id,
                      COUNT(*) AS episode_count,
                      AVG(importance_score) AS avg_importance,
                      AVG(user_satisfaction) AS avg_satisfaction,
                      MAX(created_at) AS last_activity
               FROM episodic_memory
               WHERE agent_id = ? AND user_id = ? AND created_at >= ?
               GROUP BY session_id
               ORDER BY last_activity DESC""",
            (agent_id, user_id, since),
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def episode_counts(self, agent_id: str, user_id: str) -> dict[str, int]:
        """Total and promoted episode counts for one owner."""
        async with self.conn.execute(
            """SELECT COUNT(*) AS total,
                      COALESCE(SUM(promoted_to_semantic), 0) AS promoted
               FROM episodic_memory WHERE agent_id = ? AND user_id = ?""",
            (agent_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
            return {"total": int(row["total"]), "promoted": int(row["promoted"])}

    async def importance_distribution(self, agent_id: str, user_id: str) -> list[int]:
        """Episode counts per importance decile (index 9 includes 1.0)."""
        buckets = [0] * 10
        async with self.conn.execute(
            """SELECT MIN(CAST(importance_score * 10 AS INTEGER), 9) AS bucket,
                      COUNT(*) AS n
               FROM episodic_memory WHERE agent_id = ? AND user_id = ?
               GROUP BY bucket""",
            (agent_id, user_id),
        ) as cursor:
            async for row in cursor:
                buckets[max(0, int(row["bucket"]))] += int(row["n"])
        return buckets

    # Working, semantic and procedural tiers

    def _tier_table(self, tier: MemoryTier) -> str:
        if tier == MemoryTier.EPISODIC:
            raise ValueError("Episodic records are stored with insert_episode()")
        return TIER_TABLES[tier]

    async def insert_record(self, record: TierRecord) -> str:
        table = self._tier_table(record.tier)
        await self.conn.execute(
            f"""INSERT INTO {table} (
                    id, agent_id, user_id, context_id, session_id, kind, content,
                    context, score, usage_count, adaptation_history, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.agent_id,
                record.user_id,
                record.context_id,
                record.session_id,
                record.kind,
                json.dumps(record.content, default=str),
                json.dumps(record.context, default=str),
                record.score,
                record.usage_count,
                json.dumps(record.adaptation_history, default=str),
                record.created_at,
            ),
        )
        await self.conn.commit()
        return record.id

    def _row_to_record(self, tier: MemoryTier, row: aiosqlite.Row) -> TierRecord:
        return TierRecord(
            id=row["id"],
            tier=tier,
            agent_id=row["agent_id"],
            user_id=row["user_id"],
            context_id=row["context_id"],
            session_id=row["session_id"],
            kind=row["kind"] or "general",
            content=safe_json_loads(row["content"], {}),
            context=safe_json_loads(row["context"], {}),
            score=row["score"] if row["score"] is not None else 0.5,
            usage_count=row["usage_count"] or 0,
            adaptation_history=safe_json_loads(row["adaptation_history"], []),
            created_at=row["created_at"],
        )

    async def query_records(
        self,
        tier: MemoryTier,
        agent_id: str,
        user_id: str,
        query: str | None = None,
        since: datetime | None = None,
        limit: int = 10,
    ) -> list[TierRecord]:
        table = self._tier_table(tier)
        sql = f"SELECT * FROM {table} WHERE agent_id = ? AND user_id = ?"
        params: list[Any] = [agent_id, user_id]
        if query:
            sql += " AND (content LIKE ? OR kind LIKE ?)"
            params.extend([f"%{query}%", f"%{query}%"])
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(since)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        async with self.conn.execute(sql, params) as cursor:
            return [self._row_to_record(tier, row) async for row in cursor]

    async def get_record(
        self,
        tier: MemoryTier,
        record_id: str,
        agent_id: str | None = None,
        user_id: str | None = None,
    ) -> TierRecord | None:
        table = self._tier_table(tier)
        sql = f"SELECT * FROM {table} WHERE id = ?"
        params: list[Any] = [record_id]
        if agent_id is not None:
            sql += " AND agent_id = ? AND user_id = ?"
            params.extend([str(agent_id), user_id])
        async with self.conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
            return self._row_to_record(tier, row) if row else None

    async def update_record_usage(self, record: TierRecord) -> None:
        """Persist score, usage count and adaptation history of a record."""
        table = self._tier_table(record.tier)
        await self.conn.execute(
            f"""UPDATE {table}
                SET score = ?, usage_count = ?, adaptation_history = ?
                WHERE id = ? AND agent_id = ? AND user_id = ?""",
            (
                record.score,
                record.usage_count,
                json.dumps(record.adaptation_history, default=str),
                record.id,
                record.agent_id,
                record.user_id,
            ),
        )
        await self.conn.commit()

    async def count_records(self, tier: MemoryTier, agent_id: str, user_id: str) -> int:
        table = TIER_TABLES[tier]
        async with self.conn.execute(
            f"SELECT COUNT(*) FROM {table} WHERE agent_id = ? AND user_id = ?",
            (agent_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
            return int(row[0])

    async def count_foreign_records(
        self, tier: MemoryTier, context_id: str, user_id: str
    ) -> int:
        table = TIER_TABLES[tier]
        async with self.conn.execute(
            f"SELECT COUNT(*) FROM {table} WHERE context_id = ? AND user_id != ?",
            (context_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
            return int(row[0])

    async def timeline(
        self, agent_id: str, user_id: str, since: datetime
    ) -> list[dict[str, Any]]:
        """Lightweight rows from every tier created since a point in time."""
        rows: list[dict[str, Any]] = []
        async with self.conn.execute(
            """SELECT created_at, session_id, session_duration, context
               FROM episodic_memory
               WHERE agent_id = ? AND user_id = ? AND created_at >= ?""",
            (agent_id, user_id, since),
        ) as cursor:
            async for row in cursor:
                context = safe_json_loads(row["context"], {})
                rows.append(
                    {
                        "memory_type": MemoryTier.EPISODIC.value,
                        "created_at": row["created_at"],
                        "session_id": row["session_id"],
                        "session_duration": row["session_duration"],
                        "domain": context.get("domain"),
                    }
                )
        for tier in (MemoryTier.WORKING, MemoryTier.SEMANTIC, MemoryTier.PROCEDURAL):
            async with self.conn.execute(
                f"""SELECT created_at, session_id, kind FROM {TIER_TABLES[tier]}
                    WHERE agent_id = ? AND user_id = ? AND created_at >= ?""",
                (agent_id, user_id, since),
            ) as cursor:
                async for row in cursor:
                    rows.append(
                        {
                            "memory_type": tier.value,
                            "created_at": row["created_at"],
                            "session_id": row["session_id"],
                            "session_duration": None,
                            "domain": row["kind"] if tier == MemoryTier.WORKING else None,
                        }
                    )
        return rows

    # Discovered patterns

    async def upsert_pattern(self, pattern: DiscoveredPattern) -> bool:
        """Insert or replace a pattern unless a higher-confidence version exists."""
        cursor = await self.conn.execute(
            """INSERT INTO discovered_patterns (
                   id, agent_id, user_id, pattern_type, pattern_category,
                   description, confidence, support_count, parameters, discovered_at
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (agent_id, user_id, pattern_category, description)
               DO UPDATE SET
                   confidence = excluded.confidence,
                   support_count = excluded.support_count,
                   parameters = excluded.parameters,
                   discovered_at = excluded.discovered_at
               WHERE excluded.confidence >= discovered_patterns.confidence""",
            (
                pattern.id,
                pattern.agent_id,
                pattern.user_id,
                pattern.type,
                pattern.category,
                pattern.description,
                pattern.confidence,
                pattern.support,
                json.dumps(pattern.parameters, default=str),
                pattern.discovered_at,
            ),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    def _row_to_pattern(self, row: aiosqlite.Row) -> DiscoveredPattern:
        return DiscoveredPattern(
            id=row["id"],
            agent_id=row["agent_id"],
            user_id=row["user_id"],
            type=row["pattern_type"],
            category=row["pattern_category"],
            description=row["description"],
            confidence=row["confidence"],
            support=row["support_count"],
            parameters=safe_json_loads(row["parameters"], {}),
            discovered_at=row["discovered_at"],
        )

    async def list_patterns(
        self,
        agent_id: str,
        user_id: str,
        min_confidence: float = 0.0,
        pattern_type: str | None = None,
        limit: int | None = None,
    ) -> list[DiscoveredPattern]:
        sql = """SELECT * FROM discovered_patterns
                 WHERE agent_id = ? AND user_id = ? AND confidence >= ?"""
        params: list[Any] = [agent_id, user_id, min_confidence]
        if pattern_type:
            sql += " AND pattern_type = ?"
            params.append(pattern_type)
        sql += " ORDER BY confidence DESC, discovered_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        async with self.conn.execute(sql, params) as cursor:
            return [self._row_to_pattern(row) async for row in cursor]

    async def count_patterns(self, agent_id: str, user_id: str) -> int:
        async with self.conn.execute(
            "SELECT COUNT(*) FROM discovered_patterns WHERE agent_id = ? AND user_id = ?",
            (agent_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
            return int(row[0])

    async def prune_patterns(self, agent_id: str, user_id: str, keep: int) -> int:
        """Drop lowest-confidence patterns beyond the per-owner cap."""
        cursor = await self.conn.execute(
            """DELETE FROM discovered_patterns
               WHERE agent_id = ? AND user_id = ? AND id NOT IN (
                   SELECT id FROM discovered_patterns
                   WHERE agent_id = ? AND user_id = ?
                   ORDER BY confidence DESC, discovered_at DESC
                   LIMIT ?
               )""",
            (agent_id, user_id, agent_id, user_id, keep),
        )
        await self.conn.commit()
        return cursor.rowcount

    async def pattern_aggregates(self) -> dict[str, float]:
        async with self.conn.execute(
            "SELECT COUNT(*) AS total, AVG(confidence) AS avg_confidence FROM discovered_patterns"
        ) as cursor:
            row = await cursor.fetchone()
            return {
                "total": int(row["total"]),
                "avg_confidence": float(row["avg_confidence"] or 0.0),
            }

    async def record_combination(
        self, agent_id: str, user_id: str, combination: str
    ) -> tuple[int, int]:
        """Count one co-occurrence; return (this combination, all combinations)."""
        await self.conn.execute(
            """INSERT INTO memory_combinations (agent_id, user_id, combination, occurrences, last_seen)
               VALUES (?, ?, ?, 1, ?)
               ON CONFLICT (agent_id, user_id, combination)
               DO UPDATE SET occurrences = occurrences + 1, last_seen = excluded.last_seen""",
            (agent_id, user_id, combination, datetime.now()),
        )
        await self.conn.commit()
        async with self.conn.execute(
            """SELECT
                   COALESCE(SUM(CASE WHEN combination = ? THEN occurrences END), 0) AS mine,
                   COALESCE(SUM(occurrences), 0) AS total
               FROM memory_combinations WHERE agent_id = ? AND user_id = ?""",
            (combination, agent_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
            return int(row["mine"]), int(row["total"])

    # Evolution log

    async def insert_evolution_record(
        self,
        record_id: str,
        instance_key: str,
        generation: int,
        timestamp: datetime,
        reason: str,
        strategies_changed: int,
        avg_fitness: float,
        evolution_data: dict[str, Any],
    ) -> None:
        await self.conn.execute(
            """INSERT INTO memory_evolution_log (
                   id, instance_key, generation, timestamp, reason,
                   strategies_changed, avg_fitness, evolution_data
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record_id,
                instance_key,
                generation,
                timestamp,
                reason,
                strategies_changed,
                avg_fitness,
                json.dumps(evolution_data, default=str),
            ),
        )
        await self.conn.commit()

    async def evolution_aggregates(self) -> dict[str, float]:
        async with self.conn.execute(
            """SELECT COUNT(*) AS total_evolutions,
                      MAX(generation) AS max_generation,
                      AVG(avg_fitness) AS avg_fitness
               FROM memory_evolution_log"""
        ) as cursor:
            row = await cursor.fetchone()
            return {
                "total_evolutions": int(row["total_evolutions"]),
                "max_generation": int(row["max_generation"] or 0),
                "avg_fitness": float(row["avg_fitness"] or 0.5),
            }

    # Access audit

    async def insert_audit(
        self,
        audit_id: str,
        context_id: str,
        operation: str,
        allowed: bool,
        reason: str | None,
        result: dict[str, Any],
        timestamp: datetime,
    ) -> None:
        await self.conn.execute(
            """INSERT INTO memory_access_audit (
                   id, context_id, operation, allowed, reason, result, timestamp
               ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                audit_id,
                context_id,
                operation,
                int(allowed),
                reason,
                json.dumps(result, default=str),
                timestamp,
            ),
        )
        await self.conn.commit()

    async def list_audit(self, context_id: str | None = None, limit: int = 50) -> list[dict]:
        sql = "SELECT * FROM memory_access_audit"
        params: list[Any] = []
        if context_id:
            sql += " WHERE context_id = ?"
            params.append(context_id)
        sql += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)
        async with self.conn.execute(sql, params) as cursor:
            return [
                {
                    "id": row["id"],
                    "context_id": row["context_id"],
                    "operation": row["operation"],
                    "allowed": bool(row["allowed"]),
                    "reason": row["reason"],
                    "result": safe_json_loads(row["result"], {}),
                    "timestamp": row["timestamp"],
                }
                async for row in cursor
            ]

    # Sharing rules

    async def insert_sharing_rule(
        self,
        rule_id: str,
        source_context_id: str,
        target_context_id: str,
        allowed: bool,
        permissions: dict[str, Any],
        expires_at: datetime | None,
        created_at: datetime,
    ) -> None:
        await self.conn.execute(
            """INSERT INTO memory_sharing_rules (
                   id, source_context_id, target_context_id, allowed,
                   permissions, expires_at, created_at
               ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                rule_id,
                source_context_id,
                target_context_id,
                int(allowed),
                json.dumps(permissions),
                expires_at,
                created_at,
            ),
        )
        await self.conn.commit()

    async def get_sharing_rule(
        self, source_context_id: str, target_context_id: str, now: datetime
    ) -> dict[str, Any] | None:
        """Most recent unexpired rule for a context pair."""
        async with self.conn.execute(
            """SELECT * FROM memory_sharing_rules
               WHERE source_context_id = ? AND target_context_id = ?
               AND (expires_at IS NULL OR expires_at > ?)
               ORDER BY created_at DESC
               LIMIT 1""",
            (source_context_id, target_context_id, now),
        ) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return {
                "id": row["id"],
                "allowed": bool(row["allowed"]),
                "permissions": safe_json_loads(row["permissions"], {}),
                "expires_at": row["expires_at"],
            }

    async def count_active_sharing_rules(self, now: datetime) -> int:
        async with self.conn.execute(
            """SELECT COUNT(*) FROM memory_sharing_rules
               WHERE expires_at IS NULL OR expires_at > ?""",
            (now,),
        ) as cursor:
            row = await cursor.fetchone()
            return int(row[0])

    async def purge_expired_sharing_rules(self, now: datetime) -> int:
        cursor = await self.conn.execute(
            "DELETE FROM memory_sharing_rules WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (now,),
        )
        await self.conn.commit()
        return cursor.rowcount
