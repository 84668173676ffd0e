"""
Storage backends for Chiral reputation state.

SQLite append-only store for confirmed verdicts and blacklist events.
"""

from .verdict_backend import VerdictBackend, PersistenceError

__all__ = ["VerdictBackend", "PersistenceError"]
