"""Strategy evolution."""

from mnemo.evolution.strategy import Strategy, StrategyRegistry

__all__ = ["Strategy", "StrategyRegistry"]
