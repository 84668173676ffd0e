"""
Scoring and Classification Tests

Test Coverage:
- Decay weights and half-life behaviour
- Maturity damping and the neutral default
- Score bounds
- ScoreEngine log handling (ordering, duplicates, retention)
- Trust tier boundaries
"""

import math

import pytest

from chiral.p2p.reputation.classifier import TrustClassifier, classify
from chiral.p2p.reputation.config import ReputationConfig
from chiral.p2p.reputation.models import TrustLevel, VerdictOutcome
from chiral.p2p.reputation.scoring import ScoreEngine, calculate_score, decay_weight


NOW = 1_700_000_000
DAY = 86400

GOOD = VerdictOutcome.GOOD
DISPUTED = VerdictOutcome.DISPUTED
BAD = VerdictOutcome.BAD


@pytest.mark.unit
class TestCalculateScore:
    """Pure score computation."""

    def test_no_verdicts_is_exactly_neutral(self, config):
        breakdown = calculate_score([], config, NOW)

        assert breakdown.final_score == 0.5
        assert breakdown.raw_score is None
        assert classify(breakdown.final_score) == TrustLevel.MEDIUM

    def test_half_life_halves_weight(self):
        assert decay_weight(90, 90) == pytest.approx(0.5)
        assert decay_weight(180, 90) == pytest.approx(0.25)
        assert decay_weight(0, 90) == 1.0

    def test_zero_half_life_disables_decay(self):
        assert decay_weight(10_000, 0) == 1.0

    def test_ten_good_verdicts_are_maturity_damped(self, config, make_verdict):
        verdicts = [make_verdict(outcome=GOOD) for _ in range(10)]

        breakdown = calculate_score(verdicts, config, NOW)

        assert breakdown.raw_score == pytest.approx(1.0)
        assert breakdown.maturity == pytest.approx(0.1)
        assert breakdown.final_score == pytest.approx(0.55)

    def test_two_good_three_bad(self, config, make_verdict):
        verdicts = [make_verdict(outcome=GOOD) for _ in range(2)]
        verdicts += [make_verdict(outcome=BAD) for _ in range(3)]

        breakdown = calculate_score(verdicts, config, NOW)

        assert breakdown.raw_score == pytest.approx(0.4)
        assert breakdown.maturity == pytest.approx(0.05)
        assert breakdown.final_score == pytest.approx(0.495)
        assert classify(breakdown.final_score) == TrustLevel.MEDIUM

    def test_old_verdicts_count_less(self, config, make_verdict):
        verdicts = [
            make_verdict(outcome=GOOD, issued_at=NOW - 90 * DAY),
            make_verdict(outcome=BAD, issued_at=NOW),
        ]

        breakdown = calculate_score(verdicts, config, NOW)

        # Good weighs 0.5, Bad weighs 1.0
        assert breakdown.raw_score == pytest.approx(1 / 3)
        assert breakdown.final_score == pytest.approx((1 / 3) * 0.02 + 0.5 * 0.98)

    def test_disputed_counts_as_half(self, config, make_verdict):
        config = ReputationConfig(maturity_threshold=1)
        breakdown = calculate_score([make_verdict(outcome=DISPUTED)], config, NOW)

        assert breakdown.final_score == pytest.approx(0.5)

    def test_future_verdicts_have_full_weight(self, config, make_verdict):
        config = ReputationConfig(maturity_threshold=1)
        verdicts = [
            make_verdict(outcome=GOOD, issued_at=NOW + 10 * DAY),
            make_verdict(outcome=BAD, issued_at=NOW),
        ]

        breakdown = calculate_score(verdicts, config, NOW)

        assert breakdown.weight_sum == pytest.approx(2.0)
        assert breakdown.final_score == pytest.approx(0.5)

    def test_underflowed_weights_fall_back_to_neutral(self, make_verdict):
        config = ReputationConfig(decay_half_life=0.0001, maturity_threshold=1)
        verdicts = [make_verdict(outcome=BAD, issued_at=NOW - 1000 * DAY)]

        breakdown = calculate_score(verdicts, config, NOW)

        assert breakdown.weight_sum == 0.0
        assert breakdown.final_score == 0.5

    def test_score_always_in_unit_interval(self, make_verdict):
        outcomes = [GOOD, DISPUTED, BAD]
        for maturity in (1, 3, 100):
            for half_life in (0, 1, 90):
                config = ReputationConfig(maturity_threshold=maturity, decay_half_life=half_life)
                for n in range(0, 12):
                    verdicts = [
                        make_verdict(outcome=outcomes[i % 3], issued_at=NOW - i * 7 * DAY)
                        for i in range(n)
                    ]
                    for now in (NOW - 30 * DAY, NOW, NOW + 3650 * DAY):
                        score = calculate_score(verdicts, config, now).final_score
                        assert 0.0 <= score <= 1.0
                        assert not math.isnan(score)

    def test_deterministic(self, config, make_verdict):
        verdicts = [make_verdict(outcome=o) for o in (GOOD, BAD, GOOD, DISPUTED)]

        first = calculate_score(verdicts, config, NOW)
        second = calculate_score(list(reversed(verdicts)), config, NOW)

        assert first.final_score == pytest.approx(second.final_score)


@pytest.mark.unit
class TestScoreEngine:
    """Per-peer verdict logs."""

    def test_unknown_peer_scores_neutral(self, config):
        engine = ScoreEngine(config)

        assert engine.score("nobody", NOW) == 0.5
        assert engine.counts("nobody") == (0, 0)
        assert engine.last_updated("nobody") is None

    def test_append_orders_by_issued_at(self, config, make_verdict):
        engine = ScoreEngine(config)
        late = make_verdict(issued_at=NOW)
        early = make_verdict(issued_at=NOW - DAY)

        engine.append(late)
        engine.append(early)

        assert engine.verdicts("target-peer") == [early, late]

    def test_append_rejects_same_issuer_and_seq(self, config, make_verdict):
        engine = ScoreEngine(config)
        verdict = make_verdict(seq_no=7)
        different_payload = make_verdict(seq_no=7, outcome=BAD)

        assert engine.append(verdict) is True
        assert engine.append(different_payload) is False
        assert engine.verdict_count("target-peer") == 1
        assert engine.stats["duplicates_ignored"] == 1

    def test_counts_ignore_disputed(self, config, make_verdict):
        engine = ScoreEngine(config)
        for outcome in (GOOD, GOOD, DISPUTED, BAD):
            engine.append(make_verdict(outcome=outcome))

        assert engine.counts("target-peer") == (2, 1)
        assert engine.bad_verdict_count("target-peer") == 1
        assert engine.verdict_count("target-peer") == 4

    def test_logs_are_per_peer(self, config, make_verdict):
        engine = ScoreEngine(config)
        engine.append(make_verdict(target_id="peer-a", outcome=BAD))
        engine.append(make_verdict(target_id="peer-b", outcome=GOOD))

        assert sorted(engine.peer_ids()) == ["peer-a", "peer-b"]
        assert engine.score("peer-a", NOW) < 0.5 < engine.score("peer-b", NOW)

    def test_prune_expired_drops_old_prefix(self, config, make_verdict):
        engine = ScoreEngine(config)
        old = make_verdict(issued_at=NOW - 100 * DAY)
        recent = make_verdict(issued_at=NOW - 10 * DAY)
        engine.append(old)
        engine.append(recent)

        removed = engine.prune_expired("target-peer", NOW)

        assert removed == 1
        assert engine.verdicts("target-peer") == [recent]

    def test_prune_keeps_verdicts_inside_retention(self, config, make_verdict):
        engine = ScoreEngine(config)
        engine.append(make_verdict(issued_at=NOW - 89 * DAY))

        assert engine.prune_expired("target-peer", NOW) == 0

    def test_last_updated_tracks_append_time(self, config, make_verdict):
        engine = ScoreEngine(config)
        engine.append(make_verdict(issued_at=NOW - DAY), now=NOW)

        assert engine.last_updated("target-peer") == NOW


@pytest.mark.unit
class TestTrustClassifier:
    """Score to tier mapping."""

    @pytest.mark.parametrize("score,level", [
        (0.0, TrustLevel.UNKNOWN),
        (0.1999, TrustLevel.UNKNOWN),
        (0.2, TrustLevel.LOW),
        (0.3999, TrustLevel.LOW),
        (0.4, TrustLevel.MEDIUM),
        (0.5, TrustLevel.MEDIUM),
        (0.6, TrustLevel.HIGH),
        (0.7999, TrustLevel.HIGH),
        (0.8, TrustLevel.TRUSTED),
        (1.0, TrustLevel.TRUSTED),
    ])
    def test_boundaries(self, score, level):
        assert classify(score) == level
        assert TrustLevel.from_score(score) == level

    def test_out_of_range_is_clamped(self):
        assert classify(-3.0) == TrustLevel.UNKNOWN
        assert classify(7.0) == TrustLevel.TRUSTED
        assert classify(float("nan")) == TrustLevel.UNKNOWN

    def test_levels_are_ordered(self):
        assert TrustLevel.UNKNOWN < TrustLevel.LOW < TrustLevel.MEDIUM
        assert TrustLevel.MEDIUM < TrustLevel.HIGH < TrustLevel.TRUSTED
        assert max(TrustLevel) == TrustLevel.TRUSTED

    def test_level_ranges(self):
        assert TrustLevel.LOW.min_score == 0.2
        assert TrustLevel.LOW.max_score == 0.4
        assert TrustLevel.TRUSTED.max_score == 1.0

    def test_meets_minimum(self):
        classifier = TrustClassifier()

        assert classifier.meets(0.65, TrustLevel.HIGH)
        assert not classifier.meets(0.55, TrustLevel.HIGH)
