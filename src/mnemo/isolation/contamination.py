"""Heuristics for foreign identifiers embedded in data written to a context."""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from mnemo.isolation.context import IsolationContext

FOREIGN_USER_WEIGHT = 0.3
FOREIGN_SESSION_WEIGHT = 0.2
CONTEXT_MISMATCH_WEIGHT = 0.4

USER_ID_PATTERNS = (
    re.compile(r'user[_-]?id["\s]*[:=]["\s]*([^",\s}]+)'),
    re.compile(r'"([^"]*user[^"]*)"["\s]*[:=]'),
)
SESSION_ID_PATTERNS = (
    re.compile(r'session[_-]?id["\s]*[:=]["\s]*([^",\s}]+)'),
    re.compile(r'thread[_-]?id["\s]*[:=]["\s]*([^",\s}]+)'),
)
# Bare key names such as "user_id" or "username" are not identifiers
KEY_NAME = re.compile(r"^[a-z_-]*user[a-z_-]*$")


@dataclass
class ContaminationRisk:
    risk: float = 0.0
    details: list[str] = field(default_factory=list)


def _serialize(data: Any) -> str:
    return json.dumps(data, default=str).lower()


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def extract_user_identifiers(data: Any) -> list[str]:
    text = _serialize(data)
    found = [
        match.group(1)
        for pattern in USER_ID_PATTERNS
        for match in pattern.finditer(text)
        if match.group(1)
    ]
    return _unique([value for value in found if not KEY_NAME.match(value)])


def extract_session_ids(data: Any) -> list[str]:
    text = _serialize(data)
    found = [
        match.group(1)
        for pattern in SESSION_ID_PATTERNS
        for match in pattern.finditer(text)
        if match.group(1)
    ]
    return _unique(found)


def analyze_contamination_risk(context: IsolationContext, data: Any) -> ContaminationRisk:
    """Weighted risk in [0, 1] that ``data`` belongs to another tenant."""
    result = ContaminationRisk()
    own_user = context.user_id.lower()
    own_agent = context.agent_id.lower()

    for identifier in extract_user_identifiers(data):
        if identifier in (own_user, own_agent) or identifier.startswith("agent_"):
            continue
        result.risk += FOREIGN_USER_WEIGHT
        result.details.append(f"Foreign user identifier: {identifier}")

    if context.thread_id:
        own_thread = context.thread_id.lower()
        for session_id in extract_session_ids(data):
            if session_id != own_thread:
                result.risk += FOREIGN_SESSION_WEIGHT
                result.details.append(f"Foreign session ID: {session_id}")

    if isinstance(data, dict):
        foreign_context = data.get("context_id")
        if data.get("memory_type") and foreign_context and foreign_context != context.context_id:
            result.risk += CONTEXT_MISMATCH_WEIGHT
            result.details.append(f"Context ID mismatch: {foreign_context}")

    result.risk = round(min(1.0, result.risk), 6)
    return result
