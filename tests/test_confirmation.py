"""
Confirmation Tracker Tests

Test Coverage:
- Pending -> confirmed at the confirmation threshold
- Pending -> expired at the confirmation timeout (no callback)
- Observer failures never confirm a verdict
- Retry with backoff and bounded polling concurrency
"""

import asyncio

import pytest

from chiral.blockchain.chain_observer import ChainObserver
from chiral.p2p.reputation.confirmation import ConfirmationStatus, ConfirmationTracker
from chiral.p2p.reputation.errors import ObserverUnavailable


NOW = 1_700_000_000


class FakeObserver:
    """Scripted chain observer."""

    def __init__(self, confirmations=0, failures=0, delay=0.0):
        self.confirmations_by_tx = {}
        self.default = confirmations
        self.failures = failures
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def confirmations(self, tx_hash, receipt=None):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                self.failures -= 1
                raise ObserverUnavailable("rpc timeout")
            return self.confirmations_by_tx.get(tx_hash, self.default)
        finally:
            self.in_flight -= 1


class AlwaysFailing:
    def __init__(self):
        self.calls = 0

    async def confirmations(self, tx_hash, receipt=None):
        self.calls += 1
        raise ObserverUnavailable("node down")


def make_tracker(config, observer, confirmed=None, **kwargs):
    kwargs.setdefault("retry_backoff", 0)
    kwargs.setdefault("clock", lambda: NOW)
    return ConfirmationTracker(
        config,
        observer,
        on_confirmed=confirmed.append if confirmed is not None else None,
        **kwargs
    )


@pytest.mark.unit
class TestTracking:
    """Entering and leaving the tracker."""

    def test_only_payment_backed_verdicts_tracked(self, config, make_verdict):
        tracker = make_tracker(config, FakeObserver())

        with pytest.raises(ValueError):
            tracker.track(make_verdict())

    def test_track_is_idempotent(self, config, make_verdict):
        tracker = make_tracker(config, FakeObserver())
        verdict = make_verdict(tx_hash="0xabc")

        assert tracker.track(verdict, NOW) is True
        assert tracker.track(verdict, NOW + 5) is False
        assert tracker.pending_count() == 1
        assert tracker.get(verdict.key).submitted_at == NOW

    def test_abandon(self, config, make_verdict):
        confirmed = []
        tracker = make_tracker(config, FakeObserver(confirmations=100), confirmed)
        verdict = make_verdict(tx_hash="0xabc")
        tracker.track(verdict, NOW)

        assert tracker.abandon(verdict.key) is True
        assert tracker.abandon(verdict.key) is False
        assert tracker.pending_count() == 0
        assert confirmed == []

    def test_expire_stale_at_timeout(self, config, make_verdict):
        tracker = make_tracker(config, FakeObserver())
        verdict = make_verdict(tx_hash="0xabc")
        tracker.track(verdict, NOW)

        assert tracker.expire_stale(NOW + config.confirmation_timeout - 1) == []
        assert tracker.expire_stale(NOW + config.confirmation_timeout) == [verdict]
        assert tracker.pending_count() == 0

    def test_pending_for_peer(self, config, make_verdict):
        tracker = make_tracker(config, FakeObserver())
        tracker.track(make_verdict(target_id="a", tx_hash="0x1"), NOW)
        tracker.track(make_verdict(target_id="b", tx_hash="0x2"), NOW)

        assert [p.verdict.target_id for p in tracker.pending_for("a")] == ["a"]


@pytest.mark.unit
class TestPolling:
    """Polling the chain observer."""

    @pytest.mark.asyncio
    async def test_below_threshold_stays_pending(self, config, make_verdict):
        confirmed = []
        tracker = make_tracker(config, FakeObserver(confirmations=11), confirmed)
        tracker.track(make_verdict(tx_hash="0xabc"), NOW)

        result = await tracker.poll(NOW + 60)

        assert result.confirmed == []
        assert result.still_pending == 1
        assert tracker.pending()[0].confirmations == 11
        assert confirmed == []

    @pytest.mark.asyncio
    async def test_threshold_confirms_and_hands_off(self, config, make_verdict):
        confirmed = []
        tracker = make_tracker(config, FakeObserver(confirmations=12), confirmed)
        verdict = make_verdict(tx_hash="0xabc")
        tracker.track(verdict, NOW)

        result = await tracker.poll(NOW + 60)

        assert result.confirmed == [verdict]
        assert confirmed == [verdict]
        assert tracker.pending_count() == 0
        assert tracker.stats["confirmed"] == 1

    @pytest.mark.asyncio
    async def test_timeout_expires_without_callback(self, config, make_verdict):
        confirmed = []
        observer = FakeObserver(confirmations=100)
        tracker = make_tracker(config, observer, confirmed)
        verdict = make_verdict(tx_hash="0xabc")
        tracker.track(verdict, NOW)

        result = await tracker.poll(NOW + config.confirmation_timeout)

        assert result.expired == [verdict]
        assert confirmed == []
        assert observer.calls == 0

    @pytest.mark.asyncio
    async def test_observer_failure_never_confirms(self, config, make_verdict):
        confirmed = []
        observer = AlwaysFailing()
        tracker = make_tracker(config, observer, confirmed, retry_attempts=3)
        tracker.track(make_verdict(tx_hash="0xabc"), NOW)

        result = await tracker.poll(NOW + 60)

        assert result.observer_failures == 1
        assert result.still_pending == 1
        assert observer.calls == 3
        assert confirmed == []
        pending = tracker.pending()[0]
        assert pending.status == ConfirmationStatus.PENDING
        assert "node down" in pending.last_error

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, config, make_verdict):
        confirmed = []
        observer = FakeObserver(confirmations=12, failures=2)
        tracker = make_tracker(config, observer, confirmed, retry_attempts=3)
        tracker.track(make_verdict(tx_hash="0xabc"), NOW)

        result = await tracker.poll(NOW + 60)

        assert len(result.confirmed) == 1
        assert observer.calls == 3

    @pytest.mark.asyncio
    async def test_failed_callback_keeps_verdict_pending(self, config, make_verdict):
        attempts = []

        def flaky(verdict):
            attempts.append(verdict)
            if len(attempts) == 1:
                raise RuntimeError("disk full")

        tracker = ConfirmationTracker(
            config, FakeObserver(confirmations=12), on_confirmed=flaky, retry_backoff=0
        )
        tracker.track(make_verdict(tx_hash="0xabc"), NOW)

        first = await tracker.poll(NOW + 60)
        second = await tracker.poll(NOW + 120)

        assert first.confirmed == [] and first.still_pending == 1
        assert len(second.confirmed) == 1
        assert tracker.pending_count() == 0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, config, make_verdict):
        observer = FakeObserver(confirmations=0, delay=0.01)
        tracker = make_tracker(config, observer, max_concurrency=2)
        for i in range(6):
            tracker.track(make_verdict(target_id=f"peer-{i}", tx_hash=f"0x{i}"), NOW)

        await tracker.poll(NOW + 60)

        assert observer.calls == 6
        assert observer.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_with_mock_chain_observer(self, config, make_verdict):
        confirmed = []
        chain = ChainObserver(mock_mode=True)
        await chain.connect()
        tracker = make_tracker(config, chain, confirmed)
        verdict = make_verdict(tx_hash="0xfeed")
        tracker.track(verdict, NOW)

        chain.record_inclusion("0xfeed", 100)
        chain.set_mock_head(110)
        await tracker.poll(NOW + 60)
        assert confirmed == []

        chain.advance_mock_head()
        await tracker.poll(NOW + 120)
        assert confirmed == [verdict]
