"""
Blacklist Management

Per-peer state machine:

    CLEAR -> FLAGGED -> BLACKLISTED -> CLEAR   (automatic entry expires)
                        BLACKLISTED -> CLEAR   (manual removal)

Automatic blacklisting needs auto mode enabled (automatic or hybrid) and
BOTH a score at or below the score threshold AND at least the configured
number of confirmed bad verdicts. FLAGGED is observational only.

Manual entries can be added in any mode, always take precedence over
automatic ones and never expire. Automatic entries expire
`blacklist_retention` days after `blacklisted_at`; a new confirmed bad
verdict restarts that timer. A manual removal suppresses automatic
re-blacklisting until the peer collects another bad verdict.
"""

import logging
import time
from enum import Enum
from threading import RLock
from typing import Dict, List, Optional, Set

from .config import ReputationConfig
from .models import BlacklistEntry

logger = logging.getLogger(__name__)


# How close to the thresholds a peer has to be before it is flagged
FLAG_SCORE_MARGIN = 0.1
FLAG_BAD_VERDICT_MARGIN = 1


class BlacklistState(Enum):
    CLEAR = "clear"
    FLAGGED = "flagged"
    BLACKLISTED = "blacklisted"


class BlacklistManager:
    """Tracks blacklist entries and applies automatic transitions."""

    def __init__(self, config: ReputationConfig):
        self.config = config

        # peer_id -> BlacklistEntry
        self._entries: Dict[str, BlacklistEntry] = {}
        # Peers near the thresholds (observability only)
        self._flagged: Set[str] = set()
        # Peers manually removed; no automatic re-entry until a new bad verdict
        self._amnesty: Set[str] = set()
        self._lock = RLock()

        self.stats = {
            "auto_blacklisted": 0,
            "manual_blacklisted": 0,
            "expired": 0,
            "removed": 0,
        }

    # -- Queries --

    def is_blacklisted(self, peer_id: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        with self._lock:
            entry = self._entries.get(peer_id)
            if entry is None:
                return False
            if self._is_expired(entry, now):
                self._expire(entry)
                return False
            return True

    def state(self, peer_id: str, now: Optional[float] = None) -> BlacklistState:
        if self.is_blacklisted(peer_id, now):
            return BlacklistState.BLACKLISTED
        if peer_id in self._flagged:
            return BlacklistState.FLAGGED
        return BlacklistState.CLEAR

    def get_entry(self, peer_id: str) -> Optional[BlacklistEntry]:
        return self._entries.get(peer_id)

    def list_all(self) -> List[BlacklistEntry]:
        with self._lock:
            return list(self._entries.values())

    def is_active(self, entry: BlacklistEntry, now: float) -> bool:
        """Expiry check that leaves the entry in place."""
        return not self._is_expired(entry, now)

    def flagged_peers(self) -> List[str]:
        return sorted(self._flagged)

    def expires_at(self, peer_id: str) -> Optional[float]:
        entry = self._entries.get(peer_id)
        if entry is None:
            return None
        return entry.expires_at(self.config.blacklist_retention_seconds)

    # -- Automatic transitions --

    def evaluate(
        self,
        peer_id: str,
        score: float,
        bad_verdict_count: int,
        now: Optional[float] = None,
        evidence: Optional[List[str]] = None,
    ) -> BlacklistState:
        """
        Re-evaluate a peer after its score changed.

        Args:
            peer_id: Peer to evaluate
            score: Current final score
            bad_verdict_count: Confirmed bad verdicts currently in the peer's log
            now: Evaluation time
            evidence: Optional evidence attached to a new automatic entry

        Returns:
            Resulting BlacklistState
        """
        now = time.time() if now is None else now
        cfg = self.config

        with self._lock:
            if self.is_blacklisted(peer_id, now):
                self._flagged.discard(peer_id)
                return BlacklistState.BLACKLISTED

            low_score = score <= cfg.blacklist_score_threshold
            many_bad = bad_verdict_count >= cfg.blacklist_bad_verdicts_threshold

            if (
                cfg.auto_blacklist_active
                and low_score
                and many_bad
                and peer_id not in self._amnesty
            ):
                self._entries[peer_id] = BlacklistEntry(
                    peer_id=peer_id,
                    reason=(
                        f"Score {score:.3f} <= {cfg.blacklist_score_threshold} with "
                        f"{bad_verdict_count} bad verdicts (threshold "
                        f"{cfg.blacklist_bad_verdicts_threshold})"
                    ),
                    blacklisted_at=now,
                    is_automatic=True,
                    evidence=list(evidence) if evidence else None,
                )
                self._flagged.discard(peer_id)
                self.stats["auto_blacklisted"] += 1
                logger.warning(
                    f"Auto-blacklisted peer {peer_id[:16]}... "
                    f"(score={score:.3f}, bad_verdicts={bad_verdict_count})"
                )
                return BlacklistState.BLACKLISTED

            near_score = score <= cfg.blacklist_score_threshold + FLAG_SCORE_MARGIN
            near_bad = bad_verdict_count >= max(
                1, cfg.blacklist_bad_verdicts_threshold - FLAG_BAD_VERDICT_MARGIN
            )
            if near_score or near_bad:
                if peer_id not in self._flagged:
                    logger.info(
                        f"Flagged peer {peer_id[:16]}... "
                        f"(score={score:.3f}, bad_verdicts={bad_verdict_count})"
                    )
                self._flagged.add(peer_id)
                return BlacklistState.FLAGGED

            self._flagged.discard(peer_id)
            return BlacklistState.CLEAR

    def record_bad_verdict(self, peer_id: str, now: Optional[float] = None) -> bool:
        """
        Note a newly confirmed bad verdict for a peer.

        Restarts the retention timer of an active automatic entry and lifts
        any amnesty from an earlier manual removal.

        Returns:
            True if an automatic entry's timer was restarted
        """
        now = time.time() if now is None else now
        with self._lock:
            self.lift_amnesty(peer_id)
            entry = self._entries.get(peer_id)
            if entry is None or not entry.is_automatic:
                return False
            if self._is_expired(entry, now):
                self._expire(entry)
                return False
            entry.blacklisted_at = now
            logger.info(f"Restarted blacklist retention for {peer_id[:16]}...")
            return True

    # -- Manual administration --

    def add_manual(
        self,
        peer_id: str,
        reason: str,
        now: Optional[float] = None,
        evidence: Optional[List[str]] = None,
    ) -> BlacklistEntry:
        """Blacklist a peer by administrative action (allowed in every mode)."""
        now = time.time() if now is None else now
        entry = BlacklistEntry(
            peer_id=peer_id,
            reason=reason,
            blacklisted_at=now,
            is_automatic=False,
            evidence=list(evidence) if evidence else None,
        )
        with self._lock:
            self._entries[peer_id] = entry
            self._flagged.discard(peer_id)
            self._amnesty.discard(peer_id)
        self.stats["manual_blacklisted"] += 1
        logger.warning(f"Manually blacklisted peer {peer_id[:16]}...: {reason}")
        return entry

    def remove(self, peer_id: str) -> bool:
        """Remove any entry for a peer. Returns True if one existed."""
        with self._lock:
            entry = self._entries.pop(peer_id, None)
            if entry is None:
                return False
            self._amnesty.add(peer_id)
        self.stats["removed"] += 1
        logger.info(f"Removed peer {peer_id[:16]}... from blacklist")
        return True

    def has_amnesty(self, peer_id: str) -> bool:
        return peer_id in self._amnesty

    def lift_amnesty(self, peer_id: str) -> bool:
        """End a removal amnesty. Returns True if the peer had one."""
        with self._lock:
            if peer_id not in self._amnesty:
                return False
            self._amnesty.discard(peer_id)
        logger.info(f"Lifted blacklist amnesty for {peer_id[:16]}...")
        return True

    def restore(self, entry: BlacklistEntry) -> None:
        """Re-install an entry replayed from the persistent store."""
        with self._lock:
            self._entries[entry.peer_id] = entry

    # -- Maintenance --

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        """
        Remove expired automatic entries.

        Returns:
            Number of entries removed
        """
        now = time.time() if now is None else now
        with self._lock:
            expired = [e for e in self._entries.values() if self._is_expired(e, now)]
            for entry in expired:
                self._expire(entry)
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._flagged.clear()
            self._amnesty.clear()

    def _is_expired(self, entry: BlacklistEntry, now: float) -> bool:
        expires_at = entry.expires_at(self.config.blacklist_retention_seconds)
        return expires_at is not None and now >= expires_at

    def _expire(self, entry: BlacklistEntry) -> None:
        self._entries.pop(entry.peer_id, None)
        self.stats["expired"] += 1
        logger.info(f"Blacklist entry for {entry.peer_id[:16]}... expired")
