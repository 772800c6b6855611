"""Episodic memory manager - classifies, scores, stores and promotes episodes."""

import time
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from mnemo.core.background import BackgroundTasks
from mnemo.core.config import Settings
from mnemo.core.events import EventChannel
from mnemo.core.logging import get_logger
from mnemo.core.types import MemoryTier, StoreResult
from mnemo.evolution.strategy import StrategyRegistry
from mnemo.memory.base import Episode, EpisodeType
from mnemo.memory.classification import EpisodeClassifier
from mnemo.memory.scoring import (
    calculate_importance,
    infer_outcome,
    infer_satisfaction,
    learned_type_weight,
    sanitize_context,
    session_duration,
)
from mnemo.memory.store import SQLiteMemoryStore

logger = get_logger("memory.episodic")

SIMILARITY_TOLERANCE = 0.1
RECENT_SESSION_DAYS = 7
REEVALUATION_HOURS = 24


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class EpisodicMemoryManager:
    """Episodic tier for one (agent, user) pair."""

    def __init__(
        self,
        agent_id: str,
        user_id: str,
        store: SQLiteMemoryStore,
        settings: Settings | None = None,
        events: EventChannel | None = None,
        strategies: StrategyRegistry | None = None,
        classifier: EpisodeClassifier | None = None,
        background: BackgroundTasks | None = None,
    ):
        self.agent_id = str(agent_id)
        self.user_id = user_id
        self.store_backend = store
        self.settings = settings or Settings()
        self.events = events
        self.strategies = strategies
        self.classifier = classifier or EpisodeClassifier()
        self.background = background or BackgroundTasks(f"episodic:{self.agent_id}:{user_id}")

        self.type_weights: dict[EpisodeType, float] = {t: 1.0 for t in EpisodeType}
        self.current_session_id: str | None = None
        self.initialized = False

        self.metrics = {
            "total_episodes": 0,
            "sessions_active": 0,
            "average_importance": 0.0,
            "promoted_to_semantic": 0,
            "consolidation_count": 0,
            "store_failures": 0,
            "average_response_ms": 0.0,
        }

    async def initialize(self) -> None:
        """Load recent session aggregates and learn type weights."""
        if self.initialized:
            return
        since = datetime.now() - timedelta(days=RECENT_SESSION_DAYS)
        try:
            sessions = await self.store_backend.session_aggregates(
                self.agent_id, self.user_id, since
            )
            counts = await self.store_backend.episode_counts(self.agent_id, self.user_id)
        except Exception as e:
            logger.error(f"Failed to load session history for {self.agent_id}:{self.user_id}: {e}")
            sessions, counts = [], {"total": 0, "promoted": 0}

        self.metrics["sessions_active"] = len(sessions)
        self.metrics["total_episodes"] = counts["total"]
        self.metrics["promoted_to_semantic"] = counts["promoted"]
        if sessions:
            importances = [s["avg_importance"] for s in sessions if s["avg_importance"] is not None]
            if importances:
                self.metrics["average_importance"] = sum(importances) / len(importances)
            self.current_session_id = sessions[0]["session_id"]

        await self.learn_type_weights()
        self.initialized = True
        logger.info(
            f"Episodic memory ready for {self.agent_id}:{self.user_id} "
            f"({self.metrics['total_episodes']} episodes)"
        )

    async def store(
        self,
        content: Any,
        context: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> StoreResult:
        if not self.initialized:
            await self.initialize()

        start = time.perf_counter()
        context = context or {}
        metadata = metadata or {}

        try:
            episode_type = self.classifier.classify(content, context, metadata)
            importance = calculate_importance(
                content, context, metadata, episode_type, self.type_weights[episode_type]
            )
            satisfaction = infer_satisfaction(context, metadata)

            session_id = context.get("session_id") or self.current_session_id or new_session_id()
            self.current_session_id = session_id

            episode = Episode(
                agent_id=self.agent_id,
                user_id=self.user_id,
                session_id=session_id,
                episode_type=episode_type,
                content=content if isinstance(content, dict) else {"text": content},
                context=sanitize_context(context),
                importance_score=importance,
                user_satisfaction=satisfaction,
                outcome=infer_outcome(context, metadata),
                session_duration=session_duration(context),
                context_id=context.get("context_id"),
            )
            await self.store_backend.insert_episode(episode)
        except Exception as e:
            self.metrics["store_failures"] += 1
            logger.error(f"Episode storage failed for {self.agent_id}:{self.user_id}: {e}")
            return StoreResult(
                stored=False,
                tier=MemoryTier.EPISODIC,
                error=str(e),
                response_time_ms=(time.perf_counter() - start) * 1000,
            )

        self._track(episode)

        if importance >= self.settings.promotion_threshold:
            self.background.spawn(self.evaluate_promotion(episode), f"promote:{episode.id}")

        elapsed = (time.perf_counter() - start) * 1000
        self.metrics["average_response_ms"] = (
            0.9 * self.metrics["average_response_ms"] + 0.1 * elapsed
        )
        logger.debug(
            f"Stored {episode_type.value} episode {episode.id} "
            f"(importance {importance:.2f}, {elapsed:.1f}ms)"
        )
        return StoreResult(
            stored=True,
            id=episode.id,
            tier=MemoryTier.EPISODIC,
            episode_type=episode_type.value,
            importance_score=importance,
            user_satisfaction=satisfaction,
            response_time_ms=elapsed,
        )

    def _track(self, episode: Episode) -> None:
        total = self.metrics["total_episodes"]
        average = self.metrics["average_importance"]
        self.metrics["total_episodes"] = total + 1
        self.metrics["average_importance"] = (average * total + episode.importance_score) / (
            total + 1
        )

    async def retrieve(
        self,
        query: str | None = None,
        context: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> list[Episode]:
        """Episodes ranked by importance plus session affinity, then recency.

        Options: limit, session_id, episode_types, min_importance,
        time_range_hours, include_promoted.
        """
        context = context or {}
        options = options or {}
        since = None
        if options.get("time_range_hours"):
            since = datetime.now() - timedelta(hours=float(options["time_range_hours"]))
        try:
            return await self.store_backend.query_episodes(
                self.agent_id,
                self.user_id,
                current_session_id=context.get("session_id") or "",
                min_importance=options.get("min_importance", 0.1),
                session_id=options.get("session_id"),
                episode_types=options.get("episode_types"),
                since=since,
                include_promoted=options.get("include_promoted", False),
                limit=options.get("limit", 10),
            )
        except Exception as e:
            logger.error(f"Episode retrieval failed for {self.agent_id}:{self.user_id}: {e}")
            return []

    async def search(self, query: str, limit: int = 10, offset: int = 0) -> list[Episode]:
        try:
            return await self.store_backend.search_episodes(
                self.agent_id, self.user_id, query, limit, offset
            )
        except Exception as e:
            logger.error(f"Episode search failed: {e}")
            return []

    async def get_recent(self, limit: int = 10) -> list[Episode]:
        try:
            return await self.store_backend.recent_episodes(self.agent_id, self.user_id, limit)
        except Exception as e:
            logger.error(f"Recent episode lookup failed: {e}")
            return []

    def _similarity_count_needed(self) -> int:
        if self.strategies is None:
            return 3
        return self.strategies.frequency_threshold()

    def _consolidation_threshold(self) -> float:
        if self.strategies is None:
            return self.settings.promotion_threshold
        return self.strategies.importance_threshold()

    async def should_promote(self, episode: Episode) -> bool:
        satisfaction = episode.user_satisfaction
        if episode.episode_type == EpisodeType.SUCCESS and (satisfaction or 0) > 0.7:
            return True
        if episode.episode_type == EpisodeType.LEARNING and (satisfaction or 0) > 0.6:
            return True
        if episode.episode_type == EpisodeType.DISCOVERY:
            return True

        since = datetime.now() - timedelta(days=self.settings.importance_decay_days)
        similar = await self.store_backend.find_similar_episodes(
            self.agent_id,
            self.user_id,
            episode.episode_type.value,
            episode.importance_score,
            exclude_id=episode.id,
            since=since,
            tolerance=SIMILARITY_TOLERANCE,
        )
        return len(similar) >= self._similarity_count_needed()

    async def evaluate_promotion(self, episode: Episode) -> bool:
        """Promote the episode to semantic visibility if it qualifies.

        Returns True only when this call flipped the flag.
        """
        if episode.promoted_to_semantic or not await self.should_promote(episode):
            return False

        promoted = await self.store_backend.mark_promoted(episode.id)
        if not promoted:
            return False

        episode.promoted_to_semantic = True
        self.metrics["promoted_to_semantic"] += 1
        logger.info(f"Promoted {episode.episode_type.value} episode {episode.id} to semantic")
        if self.events is not None:
            self.events.publish(
                "episode.promoted",
                agent_id=self.agent_id,
                user_id=self.user_id,
                episode_id=episode.id,
                episode_type=episode.episode_type.value,
                importance_score=episode.importance_score,
            )
        return True

    async def learn_type_weights(self) -> dict[str, float]:
        try:
            aggregates = await self.store_backend.episode_type_aggregates(
                self.agent_id, self.user_id
            )
        except Exception as e:
            logger.error(f"Type weight learning failed: {e}")
            return {t.value: w for t, w in self.type_weights.items()}

        for row in aggregates:
            try:
                episode_type = EpisodeType(row["episode_type"])
            except ValueError:
                continue
            self.type_weights[episode_type] = learned_type_weight(
                row["avg_importance"], row["avg_satisfaction"]
            )
        return {t.value: w for t, w in self.type_weights.items()}

    async def consolidate(self) -> dict[str, Any]:
        """Relearn type weights and re-evaluate recent unpromoted episodes."""
        result = {"weights": {}, "evaluated": 0, "promoted": 0}
        result["weights"] = await self.learn_type_weights()

        since = datetime.now() - timedelta(hours=REEVALUATION_HOURS)
        try:
            candidates = await self.store_backend.promotion_candidates(
                self.agent_id, self.user_id, self._consolidation_threshold(), since
            )
        except Exception as e:
            logger.error(f"Consolidation candidate lookup failed: {e}")
            return result

        for episode in candidates:
            result["evaluated"] += 1
            try:
                if await self.evaluate_promotion(episode):
                    result["promoted"] += 1
            except Exception as e:
                logger.error(f"Promotion evaluation failed for {episode.id}: {e}")

        self.metrics["consolidation_count"] += 1
        logger.info(
            f"Consolidated {self.agent_id}:{self.user_id}: "
            f"{result['promoted']}/{result['evaluated']} promoted"
        )
        return result

    def get_stats(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "initialized": self.initialized,
            "current_session_id": self.current_session_id,
            "type_weights": {t.value: w for t, w in self.type_weights.items()},
            "pending_background": self.background.pending,
            "config": {
                "promotion_threshold": self.settings.promotion_threshold,
                "importance_decay_days": self.settings.importance_decay_days,
                "consolidation_interval_hours": self.settings.consolidation_interval_hours,
            },
            **self.metrics,
        }
