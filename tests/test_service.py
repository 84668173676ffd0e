"""
Reputation Service Tests

Test Coverage:
- Evidence-only and payment-backed ingestion
- Cache invalidation on confirmed verdicts
- Automatic blacklisting end to end
- Persistence failures, restore after restart
- Config reload, maintenance, verdict origination
- Background task lifecycle and analytics
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from chiral.backends.verdict_backend import VerdictBackend
from chiral.p2p.identity import NodeIdentity
from chiral.p2p.reputation.blacklist import BlacklistState
from chiral.p2p.reputation.config import ReputationConfig
from chiral.p2p.reputation.errors import PersistenceError, RejectionReason, ReputationError
from chiral.p2p.reputation.models import TrustLevel, VerdictOutcome
from chiral.p2p.reputation.scoring import calculate_score
from chiral.p2p.reputation.service import ReputationService


NOW = 1_700_000_000
DAY = 86400
PEER = "target-peer"

BAD = VerdictOutcome.BAD
GOOD = VerdictOutcome.GOOD


class FailingStore(VerdictBackend):
    """Store whose verdict writes always fail."""

    def append_verdict(self, verdict):
        raise PersistenceError("disk full")


def make_service(keyring, config=None, store=None, now=NOW, **kwargs):
    return ReputationService(
        config or ReputationConfig(),
        keyring=keyring,
        store=store,
        clock=lambda: now,
        **kwargs
    )


@pytest.fixture
def fast_config():
    # Scores react fully to a handful of verdicts
    return ReputationConfig(maturity_threshold=1)


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "reputation.db")


@pytest.mark.unit
class TestIngestion:
    """Verdicts flowing into scores."""

    def test_evidence_verdict_is_recorded_immediately(self, keyring, make_verdict):
        service = make_service(keyring)
        verdict = make_verdict(outcome=BAD)

        assert service.submit_verdict(verdict).accepted

        assert service.get_verdicts(PEER) == [verdict]
        assert service.get_peer_summary(PEER).failed_transactions == 1

    def test_rejected_verdict_changes_nothing(self, keyring, make_verdict):
        service = make_service(keyring)
        verdict = make_verdict(evidence_blobs=None)

        result = service.submit_verdict(verdict)

        assert result.reason == RejectionReason.MISSING_EVIDENCE
        assert service.get_verdicts(PEER) == []

    def test_duplicate_submission_rejected(self, keyring, make_verdict):
        service = make_service(keyring)
        verdict = make_verdict()
        service.submit_verdict(verdict)

        assert service.submit_verdict(verdict).reason == RejectionReason.DUPLICATE_VERDICT
        assert len(service.get_verdicts(PEER)) == 1

    def test_confirmed_verdict_invalidates_cache(self, keyring, make_verdict, fast_config):
        service = make_service(keyring, fast_config)
        assert service.get_score(PEER) == (0.5, TrustLevel.MEDIUM)

        service.submit_verdict(make_verdict(outcome=BAD))

        score, level = service.get_score(PEER)
        assert score == pytest.approx(0.0)
        assert level == TrustLevel.UNKNOWN

    @pytest.mark.asyncio
    async def test_payment_backed_verdict_waits_for_confirmation(self, keyring, make_verdict):
        service = make_service(keyring)
        verdict = make_verdict(outcome=GOOD, tx_hash="0xpayment")

        assert service.submit_verdict(verdict).accepted
        assert service.get_verdicts(PEER) == []
        assert service.get_analytics().pending_confirmations == 1

        service.observer.record_inclusion("0xpayment", 100)
        service.observer.set_mock_head(111)
        result = await service.poll_confirmations(NOW + 60)

        assert result.confirmed == [verdict]
        assert service.get_verdicts(PEER) == [verdict]

    @pytest.mark.asyncio
    async def test_unconfirmed_payment_verdict_expires(self, keyring, make_verdict, config):
        service = make_service(keyring)
        service.submit_verdict(make_verdict(tx_hash="0xnever"))

        result = await service.poll_confirmations(NOW + config.confirmation_timeout)

        assert len(result.expired) == 1
        assert service.get_verdicts(PEER) == []

    def test_concurrent_submissions_for_one_peer(self, keyring, make_verdict, store_path):
        service = make_service(keyring, store=VerdictBackend(db_path=store_path))
        verdicts = []
        for i in range(16):
            identity = NodeIdentity.generate()
            keyring.register_identity(identity)
            outcome = BAD if i % 3 == 0 else GOOD
            verdicts.append(make_verdict(identity=identity, seq_no=0, outcome=outcome))

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(service.submit_verdict, verdicts))

        accepted = [r for r in results if r.accepted]
        assert len(accepted) == len(verdicts)
        assert len(service.get_verdicts(PEER)) == len(accepted)
        assert service.store.count_verdicts() == len(accepted)
        expected = calculate_score(service.get_verdicts(PEER), service.config, NOW)
        assert service.get_score(PEER)[0] == pytest.approx(expected.final_score)

    def test_persistence_failure_propagates(self, keyring, make_verdict, store_path):
        service = make_service(keyring, store=FailingStore(db_path=store_path))

        with pytest.raises(PersistenceError):
            service.submit_verdict(make_verdict(outcome=BAD))

        assert service.get_verdicts(PEER) == []
        assert service.get_score(PEER)[0] == 0.5


@pytest.mark.unit
class TestBlacklisting:
    """Blacklist driven through the service."""

    def test_auto_blacklist_after_three_bad_verdicts(self, keyring, make_verdict, fast_config):
        service = make_service(keyring, fast_config)

        for _ in range(2):
            service.submit_verdict(make_verdict(outcome=BAD))
        assert not service.is_blacklisted(PEER)

        service.submit_verdict(make_verdict(outcome=BAD))
        assert service.is_blacklisted(PEER)
        assert service.list_blacklist()[0].is_automatic

    def test_manual_blacklist_and_removal(self, keyring):
        service = make_service(keyring)

        entry = service.blacklist_peer("spammer", "flooding requests", ["QmLog"])

        assert not entry.is_automatic
        assert service.is_blacklisted("spammer")
        assert service.unblacklist_peer("spammer") is True
        assert service.unblacklist_peer("spammer") is False
        assert service.list_blacklist() == []


@pytest.mark.integration
class TestPersistence:
    """Durable state across restarts."""

    def test_restore_rebuilds_state(self, keyring, make_verdict, fast_config, store_path):
        first = make_service(keyring, fast_config, VerdictBackend(db_path=store_path))
        verdicts = [make_verdict(outcome=BAD) for _ in range(3)]
        for verdict in verdicts:
            first.submit_verdict(verdict)
        first.blacklist_peer("spammer", "flooding requests")
        score = first.get_score(PEER)[0]

        second = make_service(keyring, fast_config, VerdictBackend(db_path=store_path))
        restored = second.restore()

        assert restored["verdicts"] == 3
        assert restored["blacklist_entries"] == 2
        assert second.get_verdicts(PEER) == verdicts
        assert second.get_score(PEER)[0] == pytest.approx(score)
        assert second.is_blacklisted(PEER)
        assert second.is_blacklisted("spammer")

    def test_restore_keeps_issuer_freshness(self, keyring, make_verdict, store_path):
        first = make_service(keyring, store=VerdictBackend(db_path=store_path))
        verdict = make_verdict()
        first.submit_verdict(verdict)

        second = make_service(keyring, store=VerdictBackend(db_path=store_path))
        second.restore()

        assert second.submit_verdict(verdict).reason == RejectionReason.DUPLICATE_VERDICT

    def test_restore_keeps_freshness_of_unconfirmed_payment_verdicts(
        self, keyring, make_verdict, issuer, store_path
    ):
        first = make_service(keyring, store=VerdictBackend(db_path=store_path))
        verdict = make_verdict(tx_hash="0xabc")
        assert first.submit_verdict(verdict).accepted
        first.tracker.expire_stale(NOW + 10_000)

        store = VerdictBackend(db_path=store_path)
        second = make_service(keyring, store=store)
        second.restore()

        assert store.load_high_water()[issuer.peer_id] == verdict.issuer_seq_no
        assert second.submit_verdict(verdict).reason == RejectionReason.DUPLICATE_VERDICT

    def test_entries_expired_while_offline_stay_expired(
        self, keyring, make_verdict, fast_config, store_path
    ):
        first = make_service(keyring, fast_config, VerdictBackend(db_path=store_path))
        for _ in range(3):
            first.submit_verdict(make_verdict(outcome=BAD))
        assert first.is_blacklisted(PEER)

        later = make_service(
            keyring, fast_config, VerdictBackend(db_path=store_path), now=NOW + 31 * DAY
        )
        later.restore()

        assert not later.is_blacklisted(PEER)

    def test_removal_survives_restart(self, keyring, store_path):
        first = make_service(keyring, store=VerdictBackend(db_path=store_path))
        first.blacklist_peer("spammer", "flooding requests")
        first.unblacklist_peer("spammer")

        second = make_service(keyring, store=VerdictBackend(db_path=store_path))
        second.restore()

        assert not second.is_blacklisted("spammer")

    def test_lifted_amnesty_survives_restart(self, keyring, make_verdict, fast_config, store_path):
        first = make_service(keyring, fast_config, VerdictBackend(db_path=store_path))
        first.blacklist_peer(PEER, "flooding requests")
        first.unblacklist_peer(PEER)
        assert first.blacklist.has_amnesty(PEER)

        first.submit_verdict(make_verdict(outcome=BAD))
        assert not first.blacklist.has_amnesty(PEER)

        second = make_service(keyring, fast_config, VerdictBackend(db_path=store_path))
        second.restore()

        assert not second.blacklist.has_amnesty(PEER)
        assert second.blacklist.evaluate(PEER, 0.0, 3, NOW) == BlacklistState.BLACKLISTED

    def test_removal_amnesty_survives_restart(self, keyring, store_path):
        first = make_service(keyring, store=VerdictBackend(db_path=store_path))
        first.blacklist_peer(PEER, "flooding requests")
        first.unblacklist_peer(PEER)

        second = make_service(keyring, store=VerdictBackend(db_path=store_path))
        second.restore()

        assert second.blacklist.has_amnesty(PEER)

    def test_reset_with_purge(self, keyring, make_verdict, store_path):
        store = VerdictBackend(db_path=store_path)
        service = make_service(keyring, store=store)
        service.submit_verdict(make_verdict())

        service.reset(purge_store=True)

        assert service.get_verdicts(PEER) == []
        assert store.count_verdicts() == 0


@pytest.mark.unit
class TestOperations:
    """Config reload, maintenance and verdict origination."""

    def test_reload_config_applies_immediately(self, keyring, make_verdict):
        service = make_service(keyring)
        service.submit_verdict(make_verdict(outcome=GOOD))
        assert service.get_score(PEER)[0] == pytest.approx(0.505)

        service.reload_config(ReputationConfig(maturity_threshold=1, cache_ttl=60))

        assert service.get_score(PEER)[0] == pytest.approx(1.0)
        assert service.cache.ttl == 60

    def test_maintenance_prunes_old_verdicts(self, keyring, make_verdict):
        service = make_service(keyring)
        service.submit_verdict(make_verdict(issued_at=NOW - 100 * DAY))
        service.submit_verdict(make_verdict(issued_at=NOW))

        result = service.run_maintenance(NOW)

        assert result["verdicts_pruned"] == 1
        assert len(service.get_verdicts(PEER)) == 1

    def test_create_verdict_increments_seq(self, keyring, issuer):
        service = make_service(keyring, identity=issuer)

        first = service.create_verdict(PEER, GOOD, evidence_blobs=["QmReceipt"])
        second = service.create_verdict(PEER, GOOD, evidence_blobs=["QmReceipt"])

        assert (first.issuer_seq_no, second.issuer_seq_no) == (0, 1)
        assert first.issued_at == NOW
        assert service.submit_verdict(first).accepted
        assert service.submit_verdict(second).accepted

    def test_create_verdict_continues_after_restore(self, keyring, issuer, store_path):
        first = make_service(keyring, store=VerdictBackend(db_path=store_path), identity=issuer)
        for _ in range(3):
            first.file_complaint(PEER, ["QmLog"])

        second = make_service(keyring, store=VerdictBackend(db_path=store_path), identity=issuer)
        second.restore()

        assert second.create_verdict(PEER, BAD, evidence_blobs=["QmLog"]).issuer_seq_no == 3

    def test_file_complaint(self, keyring, issuer):
        service = make_service(keyring, identity=issuer)

        result = service.file_complaint(PEER, ["QmLog"], details="corrupt chunks")

        assert result.accepted
        assert service.get_verdicts(PEER)[0].outcome == BAD

    def test_complaint_needs_identity(self, keyring):
        service = make_service(keyring)

        with pytest.raises(ReputationError):
            service.file_complaint(PEER, ["QmLog"])

    @pytest.mark.asyncio
    async def test_handshake_through_service(self, keyring, issuer, other_identity):
        downloader = make_service(keyring, identity=other_identity)
        seeder = make_service(keyring, identity=issuer)
        message = downloader.create_payment_message(issuer.peer_id, 100, "QmFile")
        seeder.observer.set_mock_balance(other_identity.peer_id, 120)

        assert (await seeder.validate_handshake(message, 100)).accepted
        assert not seeder.check_settlement_expired(message)

    def test_statistics(self, keyring, make_verdict):
        service = make_service(keyring)
        service.submit_verdict(make_verdict())

        stats = service.get_statistics()

        assert stats["peers"] == 1
        assert stats["validator"]["accepted"] == 1
        assert stats["running"] is False


@pytest.mark.unit
class TestAnalytics:
    """Network-wide snapshots."""

    def test_snapshot(self, keyring, make_verdict, fast_config):
        service = make_service(keyring, fast_config)
        service.submit_verdict(make_verdict(target_id="good-peer", outcome=GOOD))
        for _ in range(3):
            service.submit_verdict(make_verdict(target_id="bad-peer", outcome=BAD))

        snapshot = service.get_analytics(recent_limit=2, top_k=1)

        assert snapshot.total_peers == 2
        assert snapshot.average_score == pytest.approx(0.5)
        assert snapshot.trust_level_distribution[TrustLevel.TRUSTED] == 1
        assert snapshot.trust_level_distribution[TrustLevel.UNKNOWN] == 1
        assert [s.peer_id for s in snapshot.top_performers] == ["good-peer"]
        assert len(snapshot.recent_verdicts) == 2
        assert snapshot.blacklisted_peers == 1

    def test_snapshot_leaves_expired_entries_alone(self, keyring, make_verdict, fast_config):
        service = make_service(keyring, fast_config)
        for _ in range(3):
            service.submit_verdict(make_verdict(outcome=BAD))
        entry = service.blacklist.get_entry(PEER)

        snapshot = service.get_analytics(now=NOW + 31 * DAY)

        assert snapshot.blacklisted_peers == 0
        assert service.blacklist.get_entry(PEER) is entry

    def test_empty_snapshot(self, keyring):
        snapshot = make_service(keyring).get_analytics()

        assert snapshot.total_peers == 0
        assert snapshot.average_score == 0.0
        assert snapshot.top_performers == []


@pytest.mark.unit
class TestLifecycle:
    """Background task management."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, keyring):
        service = ReputationService(
            keyring=keyring, poll_interval=0.01, maintenance_interval=0.01
        )

        await service.start()
        assert service.running
        assert service.observer.connected
        await asyncio.sleep(0.05)

        await service.stop()
        assert not service.running
        assert not service.observer.connected

    @pytest.mark.asyncio
    async def test_start_twice_is_harmless(self, keyring):
        service = ReputationService(keyring=keyring)

        await service.start()
        await service.start()
        assert len(service._background_tasks) == 2

        await service.stop()
