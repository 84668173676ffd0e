"""
Per-Peer Lock Registry

One re-entrant lock per peer id. Mutations of a single peer's state (verdict
log, cache entry, blacklist entry, issuer high-water mark) are serialized on
that peer's lock; different peers never contend. The registry lock is held
only long enough to create a missing per-peer lock.
"""

from threading import Lock, RLock
from typing import Dict


class PeerLockRegistry:
    """Stable peer-id -> RLock mapping."""

    def __init__(self):
        self._locks: Dict[str, RLock] = {}
        self._registry_lock = Lock()

    def lock_for(self, peer_id: str) -> RLock:
        lock = self._locks.get(peer_id)
        if lock is not None:
            return lock
        with self._registry_lock:
            return self._locks.setdefault(peer_id, RLock())

    def __len__(self) -> int:
        return len(self._locks)
