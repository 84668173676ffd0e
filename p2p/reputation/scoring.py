"""
Decayed Reputation Scoring

Turns each peer's confirmed verdict log into a single score in [0, 1].

Algorithm (given `now`):
1. age_days = (now - issued_at) / 86400
2. weight = 1 if decay_half_life == 0 else exp(-ln2 * age_days / half_life)
3. value: good = 1.0, disputed = 0.5, bad = 0.0
4. raw = sum(weight * value) / sum(weight)
5. maturity m = min(count / maturity_threshold, 1)
6. final = raw * m + 0.5 * (1 - m)

A peer with no verdicts scores exactly 0.5. The score is a pure function of
the log and `now`; nothing is accumulated between calls.
"""

import bisect
import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .config import SECONDS_PER_DAY, ReputationConfig
from .models import NEUTRAL_SCORE, TransactionVerdict, VerdictOutcome

logger = logging.getLogger(__name__)


LN2 = math.log(2)


@dataclass(frozen=True)
class ScoreBreakdown:
    """Intermediate values of a score computation."""

    raw_score: Optional[float]  # None when there are no verdicts
    maturity: float
    final_score: float
    verdict_count: int
    weight_sum: float


def decay_weight(age_days: float, half_life_days: float) -> float:
    """Exponential decay weight; half_life_days == 0 disables decay."""
    if half_life_days == 0:
        return 1.0
    return math.exp(-LN2 * max(0.0, age_days) / half_life_days)


def calculate_score(
    verdicts: Iterable[TransactionVerdict],
    config: ReputationConfig,
    now: float,
) -> ScoreBreakdown:
    """
    Compute the decayed, maturity-damped score for a set of verdicts.

    Args:
        verdicts: Confirmed verdicts about a single peer
        config: Scoring parameters (half-life, maturity threshold)
        now: Unix timestamp to age verdicts against

    Returns:
        ScoreBreakdown with final_score in [0, 1]
    """
    weighted_sum = 0.0
    weight_sum = 0.0
    count = 0

    for verdict in verdicts:
        age_days = max(0.0, now - verdict.issued_at) / SECONDS_PER_DAY
        weight = decay_weight(age_days, config.decay_half_life)
        weighted_sum += weight * verdict.outcome.value_score
        weight_sum += weight
        count += 1

    if count == 0:
        return ScoreBreakdown(
            raw_score=None,
            maturity=0.0,
            final_score=NEUTRAL_SCORE,
            verdict_count=0,
            weight_sum=0.0,
        )

    # Very old verdicts can underflow to zero weight; fall back to neutral
    raw = weighted_sum / weight_sum if weight_sum > 0 else NEUTRAL_SCORE
    maturity = min(count / config.maturity_threshold, 1.0)
    final = raw * maturity + NEUTRAL_SCORE * (1.0 - maturity)

    return ScoreBreakdown(
        raw_score=raw,
        maturity=maturity,
        final_score=max(0.0, min(1.0, final)),
        verdict_count=count,
        weight_sum=weight_sum,
    )


class ScoreEngine:
    """
    Per-peer confirmed verdict logs and score computation.

    Mutating calls for a peer must be made while holding that peer's lock
    (see PeerLockRegistry); reads work on a snapshot of the log.
    """

    def __init__(self, config: ReputationConfig):
        self.config = config

        # peer_id -> verdicts ordered by issued_at
        self._logs: Dict[str, List[TransactionVerdict]] = {}
        # peer_id -> {(issuer_id, issuer_seq_no)}
        self._keys: Dict[str, Set[Tuple[str, int]]] = {}
        # peer_id -> time of last append
        self._last_updated: Dict[str, float] = {}

        self.stats = {
            "verdicts_appended": 0,
            "duplicates_ignored": 0,
            "verdicts_pruned": 0,
        }

    def append(self, verdict: TransactionVerdict, now: Optional[float] = None) -> bool:
        """
        Append a confirmed verdict to its target's log.

        Returns:
            True if appended, False if the same (issuer, seq_no) is already logged
        """
        peer_id = verdict.target_id
        keys = self._keys.setdefault(peer_id, set())
        if verdict.key in keys:
            self.stats["duplicates_ignored"] += 1
            return False

        log = self._logs.setdefault(peer_id, [])
        bisect.insort(log, verdict, key=lambda v: v.issued_at)
        keys.add(verdict.key)
        self._last_updated[peer_id] = now if now is not None else verdict.issued_at
        self.stats["verdicts_appended"] += 1

        logger.debug(
            f"Appended {verdict.outcome.value} verdict for {peer_id[:16]}... "
            f"from {verdict.issuer_id[:16]}... (log size {len(log)})"
        )
        return True

    def compute(self, peer_id: str, now: float) -> ScoreBreakdown:
        return calculate_score(self.verdicts(peer_id), self.config, now)

    def score(self, peer_id: str, now: float) -> float:
        return self.compute(peer_id, now).final_score

    def verdicts(self, peer_id: str) -> List[TransactionVerdict]:
        """Snapshot of a peer's log, oldest first."""
        return list(self._logs.get(peer_id, ()))

    def counts(self, peer_id: str) -> Tuple[int, int]:
        """(successful, failed) = (good, bad) verdict counts; disputed counts as neither."""
        good = bad = 0
        for verdict in self.verdicts(peer_id):
            if verdict.outcome == VerdictOutcome.GOOD:
                good += 1
            elif verdict.outcome == VerdictOutcome.BAD:
                bad += 1
        return good, bad

    def bad_verdict_count(self, peer_id: str) -> int:
        return self.counts(peer_id)[1]

    def verdict_count(self, peer_id: str) -> int:
        return len(self._logs.get(peer_id, ()))

    def last_updated(self, peer_id: str) -> Optional[float]:
        return self._last_updated.get(peer_id)

    def peer_ids(self) -> List[str]:
        return [peer_id for peer_id, log in list(self._logs.items()) if log]

    def all_verdicts(self) -> List[TransactionVerdict]:
        """Every logged verdict across all peers (unordered)."""
        result: List[TransactionVerdict] = []
        for log in list(self._logs.values()):
            result.extend(list(log))
        return result

    def prune_expired(self, peer_id: str, now: float) -> int:
        """
        Drop verdicts older than the retention period for one peer.

        Returns:
            Number of verdicts removed
        """
        log = self._logs.get(peer_id)
        if not log:
            return 0

        cutoff = now - self.config.retention_seconds
        # Log is ordered by issued_at, so expired verdicts form a prefix
        split = bisect.bisect_left(log, cutoff, key=lambda v: v.issued_at)
        if split == 0:
            return 0

        expired = log[:split]
        del log[:split]
        keys = self._keys.get(peer_id, set())
        for verdict in expired:
            keys.discard(verdict.key)

        self.stats["verdicts_pruned"] += split
        logger.debug(f"Pruned {split} expired verdicts for {peer_id[:16]}...")
        return split

    def clear(self) -> None:
        self._logs.clear()
        self._keys.clear()
        self._last_updated.clear()
