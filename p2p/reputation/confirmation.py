"""
Verdict Confirmation Tracking

Payment-backed verdicts (tx_hash set) wait here until their transaction has
enough confirmations on chain:

    PENDING -> CONFIRMED -> (handed to the score engine, dropped)
    PENDING -> EXPIRED   -> (dropped, no penalty to either party)

Polling queries the chain observer with bounded concurrency and retries
transient failures with exponential backoff. A failed or missing answer keeps
a verdict PENDING; nothing is ever confirmed optimistically. Evidence-only
verdicts never enter the tracker.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from .config import ReputationConfig
from .errors import ObserverUnavailable
from .models import TransactionVerdict

logger = logging.getLogger(__name__)


# Polling defaults
MAX_CONCURRENT_QUERIES = 8
RETRY_ATTEMPTS = 3
RETRY_BACKOFF = 0.5  # Seconds, doubled per attempt


class ConfirmationStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


class ConfirmationSource(Protocol):
    """Chain-observer collaborator."""

    async def confirmations(self, tx_hash: str, receipt: Optional[str] = None) -> int:
        ...


@dataclass
class PendingVerdict:
    """A payment-backed verdict waiting for chain confirmation."""

    verdict: TransactionVerdict
    submitted_at: float
    status: ConfirmationStatus = ConfirmationStatus.PENDING
    confirmations: int = 0
    polls: int = 0
    last_error: Optional[str] = None

    def is_expired(self, now: float, timeout: float) -> bool:
        return now - self.submitted_at >= timeout


@dataclass
class PollResult:
    """Outcome of one polling round."""

    confirmed: List[TransactionVerdict] = field(default_factory=list)
    expired: List[TransactionVerdict] = field(default_factory=list)
    still_pending: int = 0
    observer_failures: int = 0


class ConfirmationTracker:
    """
    Holds payment-backed verdicts until confirmed or expired.

    Confirmed verdicts are passed to `on_confirmed`; if that callback raises
    (e.g. the durable append failed) the verdict stays pending and is retried
    on the next poll.
    """

    def __init__(
        self,
        config: ReputationConfig,
        observer: ConfirmationSource,
        on_confirmed: Optional[Callable[[TransactionVerdict], None]] = None,
        max_concurrency: int = MAX_CONCURRENT_QUERIES,
        retry_attempts: int = RETRY_ATTEMPTS,
        retry_backoff: float = RETRY_BACKOFF,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize confirmation tracker.

        Args:
            config: Reputation configuration (threshold, timeout)
            observer: Chain observer answering confirmations(tx_hash)
            on_confirmed: Callback receiving each confirmed verdict
            max_concurrency: Maximum in-flight observer queries per poll
            retry_attempts: Attempts per query before giving up for this poll
            retry_backoff: Base backoff in seconds between attempts
            clock: Time source
        """
        self.config = config
        self.observer = observer
        self.on_confirmed = on_confirmed
        self.max_concurrency = max(1, max_concurrency)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = max(0.0, retry_backoff)
        self.clock = clock

        # (issuer_id, issuer_seq_no) -> PendingVerdict
        self._pending: Dict[Tuple[str, int], PendingVerdict] = {}
        self._lock = RLock()

        self.stats = {
            "tracked": 0,
            "confirmed": 0,
            "expired": 0,
            "abandoned": 0,
            "observer_failures": 0,
        }

    def track(self, verdict: TransactionVerdict, now: Optional[float] = None) -> bool:
        """
        Start tracking a payment-backed verdict.

        Returns:
            True if newly tracked, False if the same verdict is already pending

        Raises:
            ValueError: verdict has no tx_hash
        """
        if verdict.tx_hash is None:
            raise ValueError("only payment-backed verdicts can be tracked")

        now = self.clock() if now is None else now
        with self._lock:
            if verdict.key in self._pending:
                return False
            self._pending[verdict.key] = PendingVerdict(verdict=verdict, submitted_at=now)

        self.stats["tracked"] += 1
        logger.debug(
            f"Tracking verdict {verdict.issuer_id[:16]}.../{verdict.issuer_seq_no} "
            f"for tx {verdict.tx_hash[:16]}..."
        )
        return True

    def abandon(self, key: Tuple[str, int]) -> bool:
        """Drop a pending verdict without any effect on peer state."""
        with self._lock:
            entry = self._pending.pop(key, None)
        if entry is None:
            return False
        self.stats["abandoned"] += 1
        return True

    def get(self, key: Tuple[str, int]) -> Optional[PendingVerdict]:
        return self._pending.get(key)

    def pending(self) -> List[PendingVerdict]:
        with self._lock:
            return list(self._pending.values())

    def pending_count(self) -> int:
        return len(self._pending)

    def pending_for(self, peer_id: str) -> List[PendingVerdict]:
        return [p for p in self.pending() if p.verdict.target_id == peer_id]

    def expire_stale(self, now: Optional[float] = None) -> List[TransactionVerdict]:
        """
        Drop verdicts pending longer than confirmation_timeout.

        Expiry is silent and penalty-free: absence of proof is not evidence
        of wrongdoing.
        """
        now = self.clock() if now is None else now
        timeout = self.config.confirmation_timeout

        with self._lock:
            stale = [p for p in self._pending.values() if p.is_expired(now, timeout)]
            for entry in stale:
                entry.status = ConfirmationStatus.EXPIRED
                del self._pending[entry.verdict.key]

        for entry in stale:
            logger.info(
                f"Verdict {entry.verdict.issuer_id[:16]}.../{entry.verdict.issuer_seq_no} "
                f"expired unconfirmed after {now - entry.submitted_at:.0f}s "
                f"({entry.confirmations} confirmations)"
            )
        self.stats["expired"] += len(stale)
        return [entry.verdict for entry in stale]

    async def poll(self, now: Optional[float] = None) -> PollResult:
        """
        Run one polling round over every pending verdict.

        Returns:
            PollResult with confirmed/expired verdicts and failure count
        """
        now = self.clock() if now is None else now
        result = PollResult(expired=self.expire_stale(now))

        entries = self.pending()
        if entries:
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def check(entry: PendingVerdict) -> Tuple[PendingVerdict, Optional[int]]:
                async with semaphore:
                    return entry, await self._query_with_retries(entry)

            answers = await asyncio.gather(*(check(e) for e in entries))

            for entry, count in answers:
                entry.polls += 1
                if count is None:
                    result.observer_failures += 1
                    continue
                entry.confirmations = count
                if count >= self.config.confirmation_threshold:
                    if self._confirm(entry):
                        result.confirmed.append(entry.verdict)

        result.still_pending = self.pending_count()
        self.stats["observer_failures"] += result.observer_failures
        if result.confirmed or result.expired or result.observer_failures:
            logger.info(
                f"Confirmation poll: {len(result.confirmed)} confirmed, "
                f"{len(result.expired)} expired, {result.observer_failures} observer failures, "
                f"{result.still_pending} pending"
            )
        return result

    def _confirm(self, entry: PendingVerdict) -> bool:
        key = entry.verdict.key
        with self._lock:
            # Abandoned while the query was in flight
            if key not in self._pending:
                return False
            entry.status = ConfirmationStatus.CONFIRMED

        if self.on_confirmed is not None:
            try:
                self.on_confirmed(entry.verdict)
            except Exception as e:
                entry.status = ConfirmationStatus.PENDING
                entry.last_error = str(e)
                logger.error(
                    f"Failed to record confirmed verdict "
                    f"{entry.verdict.issuer_id[:16]}.../{entry.verdict.issuer_seq_no}: {e}"
                )
                return False

        with self._lock:
            self._pending.pop(key, None)
        self.stats["confirmed"] += 1
        return True

    async def _query_with_retries(self, entry: PendingVerdict) -> Optional[int]:
        """Query confirmations with retry and backoff; None if every attempt failed."""
        verdict = entry.verdict
        attempt = 0
        while attempt < self.retry_attempts:
            try:
                count = await self.observer.confirmations(verdict.tx_hash, verdict.tx_receipt)
                entry.last_error = None
                return count
            except ObserverUnavailable as exc:
                entry.last_error = str(exc)
                attempt += 1
                if attempt >= self.retry_attempts:
                    break
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"Chain observer failed for tx {verdict.tx_hash[:16]}... "
                    f"(attempt {attempt}/{self.retry_attempts}): {exc}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
        return None

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()
