"""
Reputation Service

Lifecycle object wiring the reputation components together:

    verdict -> VerdictValidator
            -> (payment-backed) ConfirmationTracker -> confirmed
            -> VerdictBackend append -> ScoreEngine append
            -> ReputationCache invalidate -> BlacklistManager evaluate

Everything from the durable append to the blacklist evaluation runs under the
target peer's lock. Chain polling and maintenance run as background asyncio
tasks between start() and stop(); submitting a verdict never waits on the
chain.

Example:
    >>> service = ReputationService(config, keyring=keyring, store=store)
    >>> await service.start()
    >>> result = service.submit_verdict(verdict)
    >>> score, level = service.get_score(peer_id)
    >>> await service.stop()
"""

import asyncio
import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from chiral.backends.verdict_backend import (
    EVENT_ADD,
    EVENT_LIFT_AMNESTY,
    EVENT_REMOVE,
    EVENT_RENEW,
    VerdictBackend,
)
from chiral.blockchain.chain_observer import ChainObserver
from chiral.p2p.identity import NodeIdentity, PeerKeyring

from .analytics import AnalyticsAggregator
from .blacklist import BlacklistManager, BlacklistState
from .cache import ReputationCache
from .canonical import verdict_payload
from .classifier import classify
from .config import DEFAULT_CONFIG, ReputationConfig
from .confirmation import ConfirmationTracker, PollResult
from .errors import ReputationError
from .handshake import HandshakeValidator, create_payment_message
from .locks import PeerLockRegistry
from .models import (
    BlacklistEntry,
    PeerReputationSummary,
    ReputationAnalytics,
    SignedTransactionMessage,
    TransactionVerdict,
    TrustLevel,
    ValidationResult,
    VerdictOutcome,
)
from .scoring import ScoreEngine
from .validator import VerdictValidator

logger = logging.getLogger(__name__)


DEFAULT_POLL_INTERVAL = 15.0  # Seconds between confirmation polls
DEFAULT_MAINTENANCE_INTERVAL = 300.0  # Seconds between cleanup passes


class ReputationService:
    """
    Transaction-backed reputation for peer selection.

    Construct one per node and pass it where it is needed; there is no
    module-level instance.
    """

    def __init__(
        self,
        config: Optional[ReputationConfig] = None,
        keyring: Optional[PeerKeyring] = None,
        observer: Optional[ChainObserver] = None,
        store: Optional[VerdictBackend] = None,
        identity: Optional[NodeIdentity] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        maintenance_interval: float = DEFAULT_MAINTENANCE_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize reputation service.

        Args:
            config: Reputation configuration (defaults if omitted)
            keyring: Public keys used to verify verdicts and payment messages
            observer: Chain observer (a mock-mode observer if omitted)
            store: Durable verdict store; in-memory only if omitted
            identity: Local signing identity for verdicts and payment messages
            poll_interval: Seconds between confirmation polls
            maintenance_interval: Seconds between maintenance passes
            clock: Time source
        """
        self.config = config or DEFAULT_CONFIG
        self.keyring = keyring or PeerKeyring()
        self._owns_observer = observer is None
        self.observer = observer or ChainObserver(mock_mode=True)
        self.store = store
        self.identity = identity
        self.poll_interval = poll_interval
        self.maintenance_interval = maintenance_interval
        self.clock = clock

        if identity is not None:
            self.keyring.register_identity(identity)

        self.locks = PeerLockRegistry()
        self.validator = VerdictValidator(self.config, self.keyring, self.locks)
        self.engine = ScoreEngine(self.config)
        self.cache = ReputationCache(self.config.cache_ttl)
        self.blacklist = BlacklistManager(self.config)
        self.tracker = ConfirmationTracker(
            self.config,
            self.observer,
            on_confirmed=self._record_confirmed,
            clock=clock,
        )
        self.analytics = AnalyticsAggregator(self.engine, self.blacklist, self.tracker)
        self.handshake = HandshakeValidator(
            self.config,
            self.validator,
            self.observer,
            score_of=lambda peer_id, now: self.get_score(peer_id, now)[0],
            is_blacklisted=self.is_blacklisted,
        )

        self._seq_lock = Lock()
        self._last_issued_seq = -1

        self.running = False
        self._background_tasks: List[asyncio.Task] = []

    # -- Lifecycle --

    async def start(self, restore: bool = True):
        """
        Start background confirmation polling and maintenance.

        Args:
            restore: Replay the durable store before starting
        """
        if self.running:
            logger.warning("Reputation service already running")
            return

        if restore and self.store is not None:
            self.restore()

        if not self.observer.connected:
            await self.observer.connect()

        self.running = True
        self._background_tasks.append(asyncio.create_task(self._confirmation_loop()))
        self._background_tasks.append(asyncio.create_task(self._maintenance_loop()))

        logger.info(
            f"Reputation service started (poll every {self.poll_interval:g}s, "
            f"maintenance every {self.maintenance_interval:g}s)"
        )

    async def stop(self):
        """Stop background tasks. Pending confirmations are kept in memory."""
        if not self.running:
            return

        for task in self._background_tasks:
            task.cancel()

        # Wait for cancellation
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        if self._owns_observer:
            await self.observer.disconnect()
        self.running = False

        logger.info("Reputation service stopped")

    def reset(self, purge_store: bool = False) -> None:
        """
        Drop all in-memory reputation state.

        Args:
            purge_store: Also delete everything in the durable store
        """
        self.engine.clear()
        self.cache.clear()
        self.blacklist.clear()
        self.tracker.clear()
        self.validator.reset()
        with self._seq_lock:
            self._last_issued_seq = -1

        if purge_store and self.store is not None:
            self.store.clear()

        logger.info("Reputation state reset")

    def restore(self) -> Dict[str, int]:
        """
        Rebuild in-memory state from the durable store.

        Verdicts are re-appended to the score engine, issuer high-water marks
        are restored, and the blacklist event log is folded into current
        entries. Entries whose retention elapsed while offline are expired.

        Returns:
            Counts of restored verdicts, issuers and blacklist entries
        """
        if self.store is None:
            return {"verdicts": 0, "issuers": 0, "blacklist_entries": 0}

        self.reset()
        now = self.clock()

        high_water = self.store.load_high_water()
        for issuer_id, seq_no in high_water.items():
            self.validator.restore_high_water(issuer_id, seq_no)

        verdicts = self.store.load_verdicts()
        for verdict in verdicts:
            self.engine.append(verdict, now=verdict.issued_at)
            self.validator.restore_high_water(verdict.issuer_id, verdict.issuer_seq_no)

        for event, peer_id, entry in self.store.load_blacklist_events():
            if event == EVENT_REMOVE:
                # Replayed removals keep their amnesty
                self.blacklist.remove(peer_id)
            elif event == EVENT_LIFT_AMNESTY:
                self.blacklist.lift_amnesty(peer_id)
            elif entry is not None:
                self.blacklist.restore(entry)
        self.blacklist.cleanup_expired(now)

        restored = {
            "verdicts": len(verdicts),
            "issuers": len(high_water),
            "blacklist_entries": len(self.blacklist.list_all()),
        }
        logger.info(
            f"Restored {restored['verdicts']} verdicts, {restored['issuers']} issuers, "
            f"{restored['blacklist_entries']} blacklist entries"
        )
        return restored

    def reload_config(self, config: ReputationConfig) -> None:
        """
        Swap in a new configuration.

        Every component sees the new object from its next operation on; the
        score cache is cleared since cached scores were computed under the
        old parameters.
        """
        self.config = config
        for component in (
            self.validator,
            self.engine,
            self.blacklist,
            self.tracker,
            self.handshake,
        ):
            component.config = config
        self.cache.ttl = config.cache_ttl
        self.cache.clear()
        logger.info("Reputation config reloaded")

    # -- Verdict ingestion --

    def submit_verdict(
        self,
        verdict: TransactionVerdict,
        now: Optional[float] = None,
    ) -> ValidationResult:
        """
        Validate and ingest a verdict.

        Payment-backed verdicts are accepted into the confirmation tracker
        and only affect scores once confirmed. Evidence-only verdicts are
        recorded immediately.

        Returns:
            ValidationResult

        Raises:
            PersistenceError: the store rejected the verdict (or, for a
                payment-backed one, its seq_no); it was not recorded
        """
        result = self.validator.validate(verdict)
        if not result.accepted:
            return result

        if verdict.is_payment_backed:
            if self.store is not None:
                # Pending verdicts never reach the verdicts table until confirmed
                self.store.record_high_water(verdict.issuer_id, verdict.issuer_seq_no)
            self.tracker.track(verdict, now)
        else:
            self._record_confirmed(verdict, now)
        return result

    def _record_confirmed(
        self,
        verdict: TransactionVerdict,
        now: Optional[float] = None,
    ) -> bool:
        """Persist, append, invalidate and re-evaluate; all under the peer's lock."""
        now = self.clock() if now is None else now
        peer_id = verdict.target_id

        with self.locks.lock_for(peer_id):
            if self.store is not None:
                self.store.append_verdict(verdict)

            appended = self.engine.append(verdict, now)
            self.cache.invalidate(peer_id)
            if not appended:
                return False

            if verdict.outcome == VerdictOutcome.BAD:
                if self.blacklist.has_amnesty(peer_id):
                    self._persist_blacklist(EVENT_LIFT_AMNESTY, peer_id)
                if self.blacklist.record_bad_verdict(peer_id, now):
                    self._persist_blacklist(EVENT_RENEW, peer_id)

            previous = self.blacklist.get_entry(peer_id)
            score = self.engine.score(peer_id, now)
            state = self.blacklist.evaluate(
                peer_id,
                score,
                self.engine.bad_verdict_count(peer_id),
                now,
                evidence=list(verdict.evidence_blobs) if verdict.evidence_blobs else None,
            )
            entry = self.blacklist.get_entry(peer_id)
            if state == BlacklistState.BLACKLISTED and entry is not previous:
                self._persist_blacklist(EVENT_ADD, peer_id)

        logger.debug(
            f"Recorded {verdict.outcome.value} verdict for {peer_id[:16]}... "
            f"score={score:.3f} state={state.value}"
        )
        return True

    def _persist_blacklist(self, event: str, peer_id: str) -> None:
        if self.store is not None:
            self.store.append_blacklist_event(event, peer_id, self.blacklist.get_entry(peer_id))

    async def poll_confirmations(self, now: Optional[float] = None) -> PollResult:
        """Run one confirmation poll now (the background loop does this periodically)."""
        return await self.tracker.poll(now)

    def run_maintenance(self, now: Optional[float] = None) -> Dict[str, int]:
        """
        One maintenance pass: stale cache entries, expired blacklist
        entries, verdicts past retention, nonces past their deadline.
        """
        now = self.clock() if now is None else now

        pruned = 0
        for peer_id in self.engine.peer_ids():
            with self.locks.lock_for(peer_id):
                removed = self.engine.prune_expired(peer_id, now)
                if removed:
                    self.cache.invalidate(peer_id)
                pruned += removed

        if self.store is not None:
            self.store.prune_before(now - self.config.retention_seconds)

        result = {
            "cache_entries_removed": self.cache.cleanup_stale(now),
            "blacklist_entries_expired": self.blacklist.cleanup_expired(now),
            "verdicts_pruned": pruned,
            "nonces_pruned": self.validator.prune_nonces(now),
        }
        logger.debug(f"Maintenance: {result}")
        return result

    # -- Queries --

    def get_score(self, peer_id: str, now: Optional[float] = None) -> Tuple[float, TrustLevel]:
        """
        Current (score, trust level) of a peer, served from cache when fresh.

        Unknown peers get the neutral 0.5 / Medium.
        """
        now = self.clock() if now is None else now
        cached = self.cache.get(peer_id, now)
        if cached is not None:
            return cached.score, cached.trust_level

        with self.locks.lock_for(peer_id):
            score = self.engine.score(peer_id, now)
            level = classify(score)
            self.cache.set(peer_id, score, level, now)
        return score, level

    def is_blacklisted(self, peer_id: str, now: Optional[float] = None) -> bool:
        return self.blacklist.is_blacklisted(peer_id, now if now is not None else self.clock())

    def get_peer_summary(
        self,
        peer_id: str,
        now: Optional[float] = None,
    ) -> PeerReputationSummary:
        now = self.clock() if now is None else now
        score, level = self.get_score(peer_id, now)
        good, bad = self.engine.counts(peer_id)
        return PeerReputationSummary(
            peer_id=peer_id,
            score=score,
            trust_level=level,
            successful_transactions=good,
            failed_transactions=bad,
            total_verdicts=self.engine.verdict_count(peer_id),
            last_updated=self.engine.last_updated(peer_id),
            blacklisted=self.is_blacklisted(peer_id, now),
        )

    def get_verdicts(self, peer_id: str) -> List[TransactionVerdict]:
        """Confirmed verdicts about a peer, oldest first."""
        return self.engine.verdicts(peer_id)

    def get_analytics(
        self,
        now: Optional[float] = None,
        recent_limit: int = 20,
        top_k: int = 10,
    ) -> ReputationAnalytics:
        now = self.clock() if now is None else now
        return self.analytics.snapshot(now, recent_limit=recent_limit, top_k=top_k)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "peers": len(self.engine.peer_ids()),
            "pending_confirmations": self.tracker.pending_count(),
            "blacklisted": len(self.blacklist.list_all()),
            "validator": dict(self.validator.stats),
            "scoring": dict(self.engine.stats),
            "confirmation": dict(self.tracker.stats),
            "blacklist": dict(self.blacklist.stats),
            "cache": self.cache.stats(),
            "handshake": dict(self.handshake.stats),
        }

    # -- Blacklist administration --

    def blacklist_peer(
        self,
        peer_id: str,
        reason: str,
        evidence: Optional[List[str]] = None,
        now: Optional[float] = None,
    ) -> BlacklistEntry:
        """
        Manually blacklist a peer. The entry never expires on its own.

        Raises:
            PersistenceError: the event could not be stored; nothing changed
        """
        now = self.clock() if now is None else now
        with self.locks.lock_for(peer_id):
            if self.store is not None:
                self.store.append_blacklist_event(
                    EVENT_ADD,
                    peer_id,
                    BlacklistEntry(
                        peer_id=peer_id,
                        reason=reason,
                        blacklisted_at=now,
                        is_automatic=False,
                        evidence=list(evidence) if evidence else None,
                    ),
                )
            return self.blacklist.add_manual(peer_id, reason, now, evidence)

    def unblacklist_peer(self, peer_id: str) -> bool:
        """Remove a peer's blacklist entry. Returns False if there was none."""
        with self.locks.lock_for(peer_id):
            if self.blacklist.get_entry(peer_id) is None:
                return False
            if self.store is not None:
                self.store.append_blacklist_event(EVENT_REMOVE, peer_id)
            return self.blacklist.remove(peer_id)

    def list_blacklist(self, now: Optional[float] = None) -> List[BlacklistEntry]:
        """Active blacklist entries (expired automatic entries are dropped first)."""
        now = self.clock() if now is None else now
        self.blacklist.cleanup_expired(now)
        return sorted(self.blacklist.list_all(), key=lambda e: e.blacklisted_at)

    # -- Payments --

    def validate_payment_message(
        self,
        message: SignedTransactionMessage,
        now: Optional[float] = None,
    ) -> ValidationResult:
        return self.validator.validate_payment_message(
            message, now if now is not None else self.clock()
        )

    def check_settlement_expired(
        self,
        message: SignedTransactionMessage,
        now: Optional[float] = None,
    ) -> bool:
        return self.validator.is_settlement_expired(
            message, now if now is not None else self.clock()
        )

    async def validate_handshake(
        self,
        message: SignedTransactionMessage,
        file_price: int,
        now: Optional[float] = None,
    ) -> ValidationResult:
        return await self.handshake.validate_handshake(
            message, file_price, now if now is not None else self.clock()
        )

    def create_payment_message(
        self,
        to: str,
        amount: int,
        file_hash: str,
        deadline: Optional[float] = None,
        now: Optional[float] = None,
    ) -> SignedTransactionMessage:
        """Sign a payment message as the local node."""
        return create_payment_message(
            self._require_identity(),
            to,
            amount,
            file_hash,
            self.config,
            deadline=deadline,
            now=now if now is not None else self.clock(),
        )

    # -- Originating verdicts --

    def create_verdict(
        self,
        target_id: str,
        outcome: VerdictOutcome,
        tx_hash: Optional[str] = None,
        details: Optional[str] = None,
        metric: Optional[str] = None,
        tx_receipt: Optional[str] = None,
        evidence_blobs: Optional[Sequence[str]] = None,
        now: Optional[float] = None,
    ) -> TransactionVerdict:
        """
        Build and sign a verdict as the local node with the next seq_no.

        Returns:
            Signed TransactionVerdict (not yet submitted)
        """
        identity = self._require_identity()
        now = self.clock() if now is None else now

        with self._seq_lock:
            last_seen = self.validator.last_seq_no(identity.peer_id)
            seq_no = max(self._last_issued_seq, -1 if last_seen is None else last_seen) + 1
            self._last_issued_seq = seq_no

        verdict = TransactionVerdict(
            target_id=target_id,
            outcome=outcome,
            issued_at=int(now),
            issuer_id=identity.peer_id,
            issuer_seq_no=seq_no,
            tx_hash=tx_hash,
            details=details,
            metric=metric,
            tx_receipt=tx_receipt,
            evidence_blobs=tuple(evidence_blobs) if evidence_blobs is not None else None,
        )
        return verdict.with_signature(identity.sign_hex(verdict_payload(verdict)))

    def file_complaint(
        self,
        target_id: str,
        evidence_blobs: Sequence[str],
        details: Optional[str] = None,
        outcome: VerdictOutcome = VerdictOutcome.BAD,
        now: Optional[float] = None,
    ) -> ValidationResult:
        """Sign and submit a non-payment complaint backed by evidence."""
        verdict = self.create_verdict(
            target_id,
            outcome,
            details=details,
            evidence_blobs=evidence_blobs,
            now=now,
        )
        return self.submit_verdict(verdict, now)

    def _require_identity(self) -> NodeIdentity:
        if self.identity is None:
            raise ReputationError("No local identity configured")
        return self.identity

    # -- Background loops --

    async def _confirmation_loop(self):
        """Background task polling pending confirmations."""
        while self.running:
            try:
                await self.tracker.poll()
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in confirmation loop: {e}")
                await asyncio.sleep(self.poll_interval)

    async def _maintenance_loop(self):
        """Background task for cache, blacklist and retention cleanup."""
        while self.running:
            try:
                await asyncio.sleep(self.maintenance_interval)
                self.run_maintenance()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in maintenance loop: {e}")
