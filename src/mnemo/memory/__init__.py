"""
Memory module - four-tier agent memory.

Tiers:
- working: Short-lived, high-relevance context
- episodic: Classified, scored interaction events
- semantic: Durable knowledge (and promoted episodes)
- procedural: Learned behaviors with success rates

Storage: SQLite (aiosqlite)
"""
