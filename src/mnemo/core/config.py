"""
Configuration management.

Loads settings from environment variables and .env file.
Prefix: MNEMO_
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MNEMO_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Storage
    data_dir: Path = Field(default=Path("data"), description="Data storage directory")
    db_name: str = Field(default="mnemo.db", description="SQLite database name")

    # Episodic memory
    promotion_threshold: float = Field(
        default=0.8, ge=0.0, le=1.0, description="Importance needed to consider promotion"
    )
    importance_decay_days: int = Field(default=30, description="Similar-episode lookback window")
    consolidation_interval_hours: float = Field(default=24.0, description="Consolidation cycle")

    # Isolation
    session_timeout_minutes: float = Field(default=30.0, description="Isolation session timeout")
    contamination_risk_threshold: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Risk score that denies an operation"
    )
    suspicious_access_count: int = Field(
        default=100, description="Access count before rate checks apply"
    )
    suspicious_access_rate: float = Field(default=10.0, description="Max accesses per second")
    audit_log_capacity: int = Field(default=1000, description="In-memory audit ring size")
    strict_mode: bool = Field(default=False, description="Deny all cross-agent access")
    cross_agent_sharing_allowed: bool = Field(
        default=True, description="Default cross-agent policy for the same user"
    )
    context_idle_hours: float = Field(default=24.0, description="Idle time before eviction")
    security_scan_interval_minutes: float = Field(default=5.0, description="Rate scan cycle")
    security_check_interval_minutes: float = Field(
        default=30.0, description="Contamination check cycle"
    )

    # Pattern discovery
    pattern_confidence_threshold: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Minimum confidence to persist a pattern"
    )
    min_pattern_support: int = Field(default=3, description="Minimum occurrences for a pattern")
    temporal_window_hours: float = Field(default=24.0, description="Temporal analysis window")
    max_patterns_per_agent: int = Field(default=500, description="Stored pattern cap")
    discovery_interval_hours: float = Field(default=2.0, description="Pattern evolution cycle")

    # Evolution
    evolution_interval_hours: float = Field(default=12.0, description="Scheduled evolution")
    performance_threshold: float = Field(
        default=0.8, description="Average fitness below which evolution triggers"
    )
    adaptation_rate: float = Field(default=0.1, description="Perturbation size (domain share)")
    mutation_rate: float = Field(default=0.05, description="Simulation noise amplitude")

    # Events
    event_queue_size: int = Field(default=100, description="Per-subscriber queue bound")

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name


def get_settings() -> Settings:
    """Get settings instance."""
    return Settings()
