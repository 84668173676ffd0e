"""
Reputation Analytics

Read-only, network-wide statistics over every peer with a verdict log.
"""

import heapq
import time
from typing import Dict, List, Optional

from .blacklist import BlacklistManager
from .classifier import classify
from .confirmation import ConfirmationTracker
from .models import (
    PeerReputationSummary,
    ReputationAnalytics,
    TransactionVerdict,
    TrustLevel,
)
from .scoring import ScoreEngine


DEFAULT_RECENT_LIMIT = 20
DEFAULT_TOP_K = 10


def build_summary(
    engine: ScoreEngine,
    peer_id: str,
    now: float,
    blacklisted: bool = False,
) -> PeerReputationSummary:
    """Summary of one peer computed straight from its verdict log."""
    score = engine.score(peer_id, now)
    good, bad = engine.counts(peer_id)
    return PeerReputationSummary(
        peer_id=peer_id,
        score=score,
        trust_level=classify(score),
        successful_transactions=good,
        failed_transactions=bad,
        total_verdicts=engine.verdict_count(peer_id),
        last_updated=engine.last_updated(peer_id),
        blacklisted=blacklisted,
    )


class AnalyticsAggregator:
    """Builds ReputationAnalytics snapshots. Never mutates peer state."""

    def __init__(
        self,
        engine: ScoreEngine,
        blacklist: BlacklistManager,
        tracker: Optional[ConfirmationTracker] = None,
    ):
        self.engine = engine
        self.blacklist = blacklist
        self.tracker = tracker

    def snapshot(
        self,
        now: Optional[float] = None,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
        top_k: int = DEFAULT_TOP_K,
    ) -> ReputationAnalytics:
        """
        Compute analytics at `now`.

        Args:
            now: Reference time for decay
            recent_limit: Max verdicts in the recent window (newest first)
            top_k: Number of top performers (ties broken by peer id)

        Returns:
            ReputationAnalytics
        """
        now = time.time() if now is None else now

        distribution: Dict[TrustLevel, int] = {level: 0 for level in TrustLevel}
        summaries: List[PeerReputationSummary] = []

        for peer_id in self.engine.peer_ids():
            summary = build_summary(self.engine, peer_id, now)
            distribution[summary.trust_level] += 1
            summaries.append(summary)

        total = len(summaries)
        average = sum(s.score for s in summaries) / total if total else 0.0

        top = heapq.nsmallest(
            max(0, top_k), summaries, key=lambda s: (-s.score, s.peer_id)
        )

        blacklisted = {
            entry.peer_id for entry in self.blacklist.list_all()
            if self.blacklist.is_active(entry, now)
        }
        for summary in top:
            summary.blacklisted = summary.peer_id in blacklisted

        return ReputationAnalytics(
            total_peers=total,
            average_score=average,
            trust_level_distribution=distribution,
            recent_verdicts=self.recent_verdicts(recent_limit),
            top_performers=top,
            blacklisted_peers=len(blacklisted),
            pending_confirmations=self.tracker.pending_count() if self.tracker else 0,
        )

    def recent_verdicts(self, limit: int = DEFAULT_RECENT_LIMIT) -> List[TransactionVerdict]:
        """Most recent confirmed verdicts across all peers, newest first."""
        if limit <= 0:
            return []
        return heapq.nlargest(
            limit,
            self.engine.all_verdicts(),
            key=lambda v: (v.issued_at, v.issuer_id, v.issuer_seq_no),
        )
