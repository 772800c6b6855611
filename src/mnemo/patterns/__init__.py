"""
Pattern discovery - unsupervised mining of memory regularities.

Categories:
- temporal: time of day, session duration, storage frequency
- contextual: domain preference, interaction style, complexity preference
- cross_memory: tier combinations, episodic to semantic transitions
- behavioral: success, preference and adaptation of procedural behaviors
"""

from mnemo.memory.base import DiscoveredPattern
from mnemo.patterns.engine import PatternDiscoveryEngine

__all__ = ["DiscoveredPattern", "PatternDiscoveryEngine"]
