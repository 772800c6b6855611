"""
Mnemo - self-tuning, isolated, multi-tier agent memory.

Package structure:
- core: Configuration, logging, shared types, events, scheduling
- memory: Tier storage, episodic manager, service facade
- isolation: Access control, auditing, contamination checks
- patterns: Unsupervised pattern discovery
- evolution: Strategy mutation and fitness selection
"""

__version__ = "0.1.0"
