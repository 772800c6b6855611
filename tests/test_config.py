"""Tests for configuration module."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from mnemo.core.config import Settings


def test_default_settings():
    """Settings load with defaults."""
    settings = Settings(
        _env_file=None,  # Don't load .env in tests
    )
    assert settings.data_dir == Path("data")
    assert settings.promotion_threshold == 0.8
    assert settings.session_timeout_minutes == 30
    assert settings.pattern_confidence_threshold == 0.7
    assert settings.min_pattern_support == 3
    assert settings.max_patterns_per_agent == 500
    assert settings.performance_threshold == 0.8
    assert settings.adaptation_rate == 0.1
    assert settings.mutation_rate == 0.05
    assert settings.contamination_risk_threshold == 0.7
    assert settings.audit_log_capacity == 1000
    assert settings.strict_mode is False
    assert settings.cross_agent_sharing_allowed is True


def test_db_path():
    """Database path combines data_dir and db_name."""
    settings = Settings(
        data_dir=Path("/tmp/test"),
        db_name="test.db",
        _env_file=None,
    )
    assert settings.db_path == Path("/tmp/test/test.db")


def test_env_prefix(monkeypatch):
    """MNEMO_ environment variables override defaults."""
    monkeypatch.setenv("MNEMO_STRICT_MODE", "true")
    monkeypatch.setenv("MNEMO_PROMOTION_THRESHOLD", "0.9")
    settings = Settings(_env_file=None)
    assert settings.strict_mode is True
    assert settings.promotion_threshold == 0.9


def test_threshold_bounds():
    """Thresholds outside [0, 1] are rejected."""
    with pytest.raises(ValidationError):
        Settings(promotion_threshold=1.5, _env_file=None)
