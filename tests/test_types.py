"""Tests for core types."""

from datetime import datetime

from mnemo.core.types import TIERS, AccessDecision, MemoryTier, ServiceResult, StoreResult


def test_tiers_order():
    """Tiers are listed from fastest to most durable."""
    assert [tier.value for tier in TIERS] == ["working", "episodic", "semantic", "procedural"]


def test_access_decision_to_dict():
    """Decision serializes its timestamp as ISO text."""
    decision = AccessDecision(
        allowed=False,
        reason="Context not found",
        timestamp=datetime(2026, 1, 1, 9, 30),
    )
    data = decision.to_dict()
    assert data["allowed"] is False
    assert data["reason"] == "Context not found"
    assert data["timestamp"] == "2026-01-01T09:30:00"
    assert data["details"] == []


def test_storage_targets_only_stored_tiers():
    result = ServiceResult(
        success=True,
        results={
            "working": StoreResult(stored=True, tier=MemoryTier.WORKING),
            "semantic": StoreResult(stored=False, tier=MemoryTier.SEMANTIC, error="low_score"),
        },
    )
    assert result.storage_targets == ["working"]
