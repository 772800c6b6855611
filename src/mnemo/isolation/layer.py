"""Isolation layer - gates every memory operation by context.

Checks run in order and the first failure wins:
1. context exists
2. the context holds the permission the operation needs
3. cross-context rules (cross-user never, same-user cross-agent by policy)
4. contamination risk of supplied data
5. suspicious access rate
6. session timeout

Every call produces exactly one audit entry. Denials are returned as
AccessDecision(allowed=False), never raised.
"""

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from mnemo.core.config import Settings
from mnemo.core.events import EventChannel
from mnemo.core.logging import get_logger
from mnemo.core.types import TIERS, AccessDecision
from mnemo.isolation.audit import AuditEntry, AuditLog
from mnemo.isolation.contamination import analyze_contamination_risk
from mnemo.isolation.context import IsolationContext, Permissions, derive_context_id
from mnemo.memory.store import SQLiteMemoryStore

logger = get_logger("isolation.layer")

READ_OPERATIONS = frozenset({"read", "retrieve"})
WRITE_OPERATIONS = frozenset({"write", "store", "update"})
DELETE_OPERATIONS = frozenset({"delete", "remove"})
SHARE_OPERATIONS = frozenset({"share"})
DESTRUCTIVE_OPERATIONS = frozenset({"delete", "update", "remove"})

IDLE_ALERT_COUNT = 10


class IsolationLayer:
    """Owns isolation contexts, sharing rules and the access audit trail."""

    def __init__(
        self,
        store: SQLiteMemoryStore,
        settings: Settings | None = None,
        events: EventChannel | None = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.events = events
        self._contexts: dict[str, IsolationContext] = {}
        self.audit_log = AuditLog(self.settings.audit_log_capacity)
        self.metrics = {
            "total_contexts_created": 0,
            "access_denials": 0,
            "cross_context_accesses": 0,
            "contamination_prevented": 0,
            "security_violations": 0,
            "contaminated_contexts": 0,
            "last_security_scan": None,
            "last_security_check": None,
        }

    # Contexts

    def create_context(
        self, agent_id: int | str, user_id: str, thread_id: str | None = None
    ) -> IsolationContext:
        """Return the context for (agent, user, thread), creating it on first use."""
        context_id = derive_context_id(agent_id, user_id, thread_id)
        existing = self._contexts.get(context_id)
        if existing is not None:
            return existing

        context = IsolationContext(
            agent_id=str(agent_id),
            user_id=user_id,
            thread_id=thread_id,
            permissions=Permissions(cross_agent=self.settings.cross_agent_sharing_allowed),
            context_id=context_id,
        )
        self._contexts[context_id] = context
        self.metrics["total_contexts_created"] += 1
        logger.info(f"Created isolation context {context_id}")
        return context

    def get_context(self, context_id: str) -> IsolationContext | None:
        return self._contexts.get(context_id)

    @property
    def contexts(self) -> list[IsolationContext]:
        return list(self._contexts.values())

    # Access validation

    def _check_permission(self, context: IsolationContext, operation: str) -> str | None:
        permissions = context.permissions
        if operation in READ_OPERATIONS:
            return None if permissions.read else "Read permission denied"
        if operation in WRITE_OPERATIONS:
            return None if permissions.write else "Write permission denied"
        if operation in DELETE_OPERATIONS:
            return None if permissions.delete else "Delete permission denied"
        if operation in SHARE_OPERATIONS:
            return None if permissions.share else "Share permission denied"
        return f"Unknown operation: {operation}"

    async def _check_cross_context(
        self, source: IsolationContext, target_context_id: str, operation: str
    ) -> str | None:
        target = self._contexts.get(target_context_id)
        if target is None:
            return "Target context not found"

        if source.user_id != target.user_id:
            return "Cross-user access denied - data isolation required"

        if operation in DESTRUCTIVE_OPERATIONS:
            return "Destructive cross-context operations not allowed"

        if source.agent_id != target.agent_id:
            if self.settings.strict_mode:
                return "Cross-agent access denied - strict mode"
            if not source.permissions.cross_agent:
                return "Cross-agent access denied by permissions"

        rule = await self.get_sharing_rule(source.context_id, target_context_id)
        if rule is not None and not rule["allowed"]:
            return "Explicit sharing rule denial"

        return None

    async def validate_access(
        self,
        context_id: str,
        operation: str,
        target_context_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AccessDecision:
        operation = (operation or "").lower()
        try:
            decision = await self._validate(context_id, operation, target_context_id, metadata or {})
        except Exception as e:
            logger.error(f"Access validation failed for {context_id}: {e}")
            decision = AccessDecision(
                allowed=False,
                reason="Validation error",
                context_id=context_id,
                details=[str(e)],
            )

        if not decision.allowed:
            self.metrics["access_denials"] += 1
            self.metrics["security_violations"] += 1
            logger.warning(f"Access denied for {context_id} ({operation}): {decision.reason}")
        elif decision.cross_context:
            self.metrics["cross_context_accesses"] += 1

        await self._audit(context_id, operation, decision)
        return decision

    async def _validate(
        self,
        context_id: str,
        operation: str,
        target_context_id: str | None,
        metadata: Mapping[str, Any],
    ) -> AccessDecision:
        context = self._contexts.get(context_id)
        if context is None:
            return AccessDecision(allowed=False, reason="Context not found", context_id=context_id)

        now = datetime.now()
        previous_access = context.touch(now)

        reason = self._check_permission(context, operation)
        if reason:
            return AccessDecision(allowed=False, reason=reason, context_id=context_id)

        cross_context = bool(target_context_id) and target_context_id != context_id
        if cross_context:
            reason = await self._check_cross_context(context, target_context_id, operation)
            if reason:
                return AccessDecision(
                    allowed=False, reason=reason, context_id=context_id, cross_context=True
                )

        source_data = metadata.get("source_data", metadata)
        if source_data:
            risk = analyze_contamination_risk(context, source_data)
            if risk.risk >= self.settings.contamination_risk_threshold:
                self.metrics["contamination_prevented"] += 1
                return AccessDecision(
                    allowed=False,
                    reason="High contamination risk detected",
                    context_id=context_id,
                    cross_context=cross_context,
                    risk_score=risk.risk,
                    details=risk.details,
                )

        if self._is_suspicious(context, now):
            return AccessDecision(
                allowed=False,
                reason="Suspicious access pattern detected",
                context_id=context_id,
                cross_context=cross_context,
            )

        timeout = timedelta(minutes=self.settings.session_timeout_minutes)
        if now - previous_access > timeout:
            return AccessDecision(
                allowed=False,
                reason="Access session timed out",
                context_id=context_id,
                cross_context=cross_context,
            )

        return AccessDecision(allowed=True, context_id=context_id, cross_context=cross_context)

    def _is_suspicious(self, context: IsolationContext, now: datetime | None = None) -> bool:
        return (
            context.access_count > self.settings.suspicious_access_count
            and context.access_rate(now) > self.settings.suspicious_access_rate
        )

    async def _audit(self, context_id: str, operation: str, decision: AccessDecision) -> None:
        entry = AuditEntry(
            context_id=context_id,
            operation=operation,
            allowed=decision.allowed,
            reason=decision.reason,
            cross_context=decision.cross_context,
            timestamp=decision.timestamp,
        )
        self.audit_log.append(entry)
        if not entry.persistent:
            return
        try:
            await self.store.insert_audit(
                entry.id,
                context_id,
                operation,
                entry.allowed,
                entry.reason,
                decision.to_dict(),
                entry.timestamp,
            )
        except Exception as e:
            logger.error(f"Audit persistence failed for {context_id}: {e}")

    # Contamination

    async def check_cross_contamination(self, context_id: str) -> dict[str, Any]:
        """Count foreign-user records inside each tier boundary of the context."""
        context = self._contexts.get(context_id)
        if context is None:
            return {"contaminated": True, "reason": "Context not found"}

        details: dict[str, dict[str, Any]] = {}
        for tier in TIERS:
            try:
                count = await self.store.count_foreign_records(tier, context_id, context.user_id)
                details[tier.value] = {"contaminated": count > 0, "suspicious_entries": count}
            except Exception as e:
                logger.error(f"{tier.value} contamination check failed for {context_id}: {e}")
                details[tier.value] = {"contaminated": True, "reason": "Check failed"}

        contaminated_tiers = [name for name, d in details.items() if d["contaminated"]]
        result = {
            "contaminated": bool(contaminated_tiers),
            "contaminated_tiers": contaminated_tiers,
            "details": details,
            "timestamp": datetime.now().isoformat(),
        }
        if contaminated_tiers:
            logger.warning(f"Cross-contamination detected in {context_id}: {contaminated_tiers}")
            if self.events is not None:
                self.events.publish(
                    "isolation.contamination_detected", context_id=context_id, result=result
                )
        return result

    # Sharing rules

    async def create_sharing_rule(
        self,
        source_context_id: str,
        target_context_id: str,
        permissions: Mapping[str, Any] | None = None,
        expires_in: timedelta | None = None,
        allowed: bool = True,
    ) -> str:
        rule_id = str(uuid4())
        now = datetime.now()
        await self.store.insert_sharing_rule(
            rule_id,
            source_context_id,
            target_context_id,
            allowed,
            dict(permissions or {}),
            now + expires_in if expires_in else None,
            now,
        )
        logger.info(
            f"Created sharing rule {source_context_id} -> {target_context_id} "
            f"({'allow' if allowed else 'deny'})"
        )
        return rule_id

    async def get_sharing_rule(
        self, source_context_id: str, target_context_id: str
    ) -> dict[str, Any] | None:
        try:
            return await self.store.get_sharing_rule(
                source_context_id, target_context_id, datetime.now()
            )
        except Exception as e:
            logger.error(f"Sharing rule lookup failed: {e}")
            return None

    async def purge_expired_sharing_rules(self) -> int:
        removed = await self.store.purge_expired_sharing_rules(datetime.now())
        if removed:
            logger.info(f"Purged {removed} expired sharing rules")
        return removed

    # Periodic checks

    def _idle(self, context: IsolationContext, now: datetime) -> bool:
        return now - context.last_accessed > timedelta(hours=self.settings.context_idle_hours)

    async def perform_security_scan(self) -> dict[str, Any]:
        now = datetime.now()
        suspicious = [c.context_id for c in self.contexts if self._is_suspicious(c, now)]
        idle = sum(1 for c in self.contexts if self._idle(c, now))
        for context_id in suspicious:
            logger.warning(f"Suspicious access pattern in context {context_id}")

        self.metrics["last_security_scan"] = now.isoformat()
        result = {"suspicious_contexts": len(suspicious), "idle_contexts": idle}
        if suspicious or idle > IDLE_ALERT_COUNT:
            if self.events is not None:
                self.events.publish("isolation.security_alert", **result)
        return result

    async def perform_comprehensive_check(self) -> dict[str, Any]:
        logger.info(f"Comprehensive security check over {len(self._contexts)} contexts")
        contaminated = 0
        for context in self.contexts:
            result = await self.check_cross_contamination(context.context_id)
            if result["contaminated"]:
                contaminated += 1

        self.metrics["contaminated_contexts"] = contaminated
        self.metrics["last_security_check"] = datetime.now().isoformat()
        summary = {"contaminated_contexts": contaminated, "total_contexts": len(self._contexts)}
        if contaminated and self.events is not None:
            self.events.publish("isolation.contamination_alert", **summary)
        return summary

    def cleanup_expired_contexts(self) -> int:
        now = datetime.now()
        expired = [cid for cid, c in self._contexts.items() if self._idle(c, now)]
        for context_id in expired:
            del self._contexts[context_id]
        if expired:
            logger.info(f"Cleaned up {len(expired)} idle contexts")
        return len(expired)

    # Introspection

    def get_audit_log(self, limit: int = 50) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.audit_log.recent(limit)]

    def get_security_violations(self, hours: float = 24) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.audit_log.violations(hours)]

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.metrics,
            "active_contexts": len(self._contexts),
            "audit_log_size": len(self.audit_log),
            "audit_entries_total": self.audit_log.total_entries,
            "config": {
                "strict_mode": self.settings.strict_mode,
                "cross_agent_sharing_allowed": self.settings.cross_agent_sharing_allowed,
                "session_timeout_minutes": self.settings.session_timeout_minutes,
                "contamination_risk_threshold": self.settings.contamination_risk_threshold,
            },
        }
