"""
Reputation Score Cache

TTL memo of (score, trust level) per peer to bound recomputation. Entries are
valid while now - cached_at < ttl. The service invalidates a peer's entry in
the same critical section that appends a confirmed verdict, so a freshly
demoted peer is never served its old score.
"""

import time
from threading import RLock
from typing import Dict, Optional

from .models import CachedScore, TrustLevel


class ReputationCache:
    """Per-peer TTL cache of computed scores."""

    def __init__(self, ttl: float):
        """
        Initialize cache.

        Args:
            ttl: Seconds an entry stays valid (0 disables caching)
        """
        self.ttl = ttl
        self._scores: Dict[str, CachedScore] = {}
        self._lock = RLock()

        self.hits = 0
        self.misses = 0

    def get(self, peer_id: str, now: Optional[float] = None) -> Optional[CachedScore]:
        """Cached score for a peer if still fresh, else None."""
        now = time.time() if now is None else now
        cached = self._scores.get(peer_id)
        if cached is not None and now - cached.cached_at < self.ttl:
            self.hits += 1
            return cached
        self.misses += 1
        return None

    def set(
        self,
        peer_id: str,
        score: float,
        trust_level: TrustLevel,
        now: Optional[float] = None,
    ) -> CachedScore:
        now = time.time() if now is None else now
        entry = CachedScore(score=score, trust_level=trust_level, cached_at=now)
        with self._lock:
            self._scores[peer_id] = entry
        return entry

    def invalidate(self, peer_id: str) -> bool:
        """Drop a peer's entry. Returns True if one was present."""
        with self._lock:
            return self._scores.pop(peer_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._scores.clear()

    def cleanup_stale(self, now: Optional[float] = None) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = time.time() if now is None else now
        with self._lock:
            stale = [
                peer_id for peer_id, cached in self._scores.items()
                if now - cached.cached_at >= self.ttl
            ]
            for peer_id in stale:
                del self._scores[peer_id]
        return len(stale)

    def __len__(self) -> int:
        return len(self._scores)

    def stats(self) -> Dict[str, int]:
        """Get cache statistics."""
        return {
            "size": len(self._scores),
            "hits": self.hits,
            "misses": self.misses,
        }
