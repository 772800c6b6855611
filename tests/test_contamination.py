"""Tests for contamination heuristics."""

import pytest

from mnemo.isolation.contamination import (
    analyze_contamination_risk,
    extract_session_ids,
    extract_user_identifiers,
)
from mnemo.isolation.context import IsolationContext


def test_foreign_user_identifier():
    context = IsolationContext(agent_id="1", user_id="alice")
    risk = analyze_contamination_risk(context, {"user_id": "bob"})
    assert risk.risk == pytest.approx(0.3)
    assert risk.details == ["Foreign user identifier: bob"]


def test_own_user_ignored():
    context = IsolationContext(agent_id="1", user_id="Alice")
    assert analyze_contamination_risk(context, {"user_id": "alice"}).risk == 0.0


def test_key_names_are_not_identifiers():
    assert extract_user_identifiers({"username": "x", "user_id": "bob"}) == ["bob"]


def test_session_ids_only_count_with_thread():
    data = {"session_id": "s-other"}
    plain = IsolationContext(agent_id="1", user_id="alice")
    threaded = IsolationContext(agent_id="1", user_id="alice", thread_id="t1")

    assert extract_session_ids(data) == ["s-other"]
    assert analyze_contamination_risk(plain, data).risk == 0.0
    assert analyze_contamination_risk(threaded, data).risk == pytest.approx(0.2)
    assert analyze_contamination_risk(threaded, {"thread_id": "t1"}).risk == 0.0


def test_context_mismatch_needs_memory_type():
    context = IsolationContext(agent_id="1", user_id="alice")
    tagged = {"memory_type": "semantic", "context_id": "elsewhere"}

    assert analyze_contamination_risk(context, tagged).risk == pytest.approx(0.4)
    assert analyze_contamination_risk(context, {"context_id": "elsewhere"}).risk == 0.0


def test_risk_is_capped():
    context = IsolationContext(agent_id="1", user_id="alice", thread_id="t1")
    data = {
        "user_id": "bob",
        "owner": {"user_id": "carol"},
        "session_id": "zzz",
        "memory_type": "working",
        "context_id": "other",
    }
    risk = analyze_contamination_risk(context, data)
    assert risk.risk == 1.0
    assert len(risk.details) == 4
