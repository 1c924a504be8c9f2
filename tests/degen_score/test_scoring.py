"""
Tests for the Scoring Engine.

============================================================
PURPOSE
============================================================
- Scaling functions (log for money, linear for counts)
- Total bounded to [0, 100], categories sum to total
- Determinism
- Reference wallet: long-lived but otherwise inactive
- Weight and cap validation

============================================================
"""

import math

import pytest

from degen_score.config import ScoringThresholds, ScoringWeights
from degen_score.exceptions import ConfigurationError
from degen_score.models import ChainId, ChainStatus, DegenMetrics, ScoreTier
from degen_score.scoring import CATEGORY_COMPONENTS, ScoringEngine, linear_scale, log_scale


@pytest.fixture
def engine():
    return ScoringEngine()


def _maxed_metrics(factor=1.0):
    t = ScoringThresholds()
    return DegenMetrics(
        trading_volume_usd=t.max_trading_volume_usd * factor,
        trade_count=int(t.max_trades_count * factor),
        defi_protocols_used=int(t.max_protocols_count * factor),
        casino_platforms_used=int(t.max_casino_platforms * factor),
        casino_tokens_held=int(t.max_casino_tokens * factor),
        distinct_tokens_traded=int(t.max_distinct_tokens * factor),
        nft_count=int(t.max_nft_count * factor),
        nft_value_usd=t.max_nft_value_usd * factor,
        wallet_age_days=t.max_wallet_age_days * factor,
        active_days=int(t.max_active_days * factor),
    )


# ============================================================
# SCALING
# ============================================================

class TestScaling:

    @pytest.mark.parametrize("value", [0.0, -5.0, float("nan")])
    def test_log_scale_non_positive_is_zero(self, value):
        assert log_scale(value, 1_000.0) == 0.0

    def test_log_scale_at_and_above_cap(self):
        assert log_scale(1_000.0, 1_000.0) == pytest.approx(1.0)
        assert log_scale(1e12, 1_000.0) == 1.0
        assert log_scale(float("inf"), 1_000.0) == 1.0

    def test_log_scale_midpoint(self):
        expected = math.log10(101) / math.log10(10_001)
        assert log_scale(100.0, 10_000.0) == pytest.approx(expected)

    def test_log_scale_monotonic(self):
        values = [1, 10, 100, 1_000, 10_000]
        scaled = [log_scale(v, 1e6) for v in values]
        assert scaled == sorted(scaled)

    def test_linear_scale(self):
        assert linear_scale(0, 100) == 0.0
        assert linear_scale(25, 100) == 0.25
        assert linear_scale(250, 100) == 1.0
        assert linear_scale(-3, 100) == 0.0


# ============================================================
# ENGINE
# ============================================================

class TestScoringEngine:

    def test_empty_profile_scores_zero(self, engine):
        breakdown = engine.score(DegenMetrics())
        assert breakdown.total == 0.0
        assert breakdown.tier is ScoreTier.NOVICE
        assert breakdown.eligible is False

    def test_maxed_profile_scores_100(self, engine):
        breakdown = engine.score(_maxed_metrics())
        assert breakdown.total == pytest.approx(100.0)
        assert breakdown.tier is ScoreTier.LEGENDARY
        assert breakdown.eligible is True

    def test_beyond_caps_still_bounded(self, engine):
        assert engine.score(_maxed_metrics(factor=50.0)).total <= 100.0

    def test_categories_sum_to_total(self, engine):
        breakdown = engine.score(_maxed_metrics(factor=0.37))
        assert sum(breakdown.category_points().values()) == pytest.approx(breakdown.total)
        assert [name for name, _ in breakdown.categories] == [name for name, _ in CATEGORY_COMPONENTS]

    def test_category_maximums_follow_weights(self, engine):
        points = engine.score(_maxed_metrics()).category_points()
        assert points == pytest.approx({
            "trading": 25.0,
            "gambling": 15.0,
            "defi": 15.0,
            "nfts": 10.0,
            "longevity": 35.0,
        })

    def test_deterministic(self, engine):
        metrics = _maxed_metrics(factor=0.61)
        assert engine.score(metrics) == engine.score(metrics)

    def test_long_lived_inactive_wallet(self, engine):
        """Two years old, 1567 transactions, no detected protocol activity."""
        metrics = DegenMetrics(wallet_age_days=735, total_tx_count=1_567)
        breakdown = engine.score(metrics)

        assert breakdown.total == pytest.approx(4.03, abs=0.01)
        assert breakdown.tier is ScoreTier.NOVICE
        assert breakdown.eligible is False
        assert breakdown.component_points()["wallet_age"] == pytest.approx(735 / 1825 * 10)

    def test_eligibility_threshold_inclusive(self, engine):
        metrics = DegenMetrics(wallet_age_days=800, active_days=12)
        total = engine.score(metrics).total
        assert ScoringEngine(min_score_for_airdrop=total).score(metrics).eligible is True
        assert ScoringEngine(min_score_for_airdrop=total + 0.01).score(metrics).eligible is False

    def test_missing_chains_reported_not_scored(self, engine):
        metrics = DegenMetrics(
            wallet_age_days=100,
            chain_status=((ChainId.ETHEREUM, ChainStatus.OK), (ChainId.SOLANA, ChainStatus.MISSING)),
        )
        breakdown = engine.score(metrics)
        assert breakdown.missing_chains == (ChainId.SOLANA,)
        assert breakdown.total == engine.score(DegenMetrics(wallet_age_days=100)).total

    def test_invalid_weights_rejected(self):
        with pytest.raises(ConfigurationError):
            ScoringEngine(weights=ScoringWeights(wallet_age=50.0))

    def test_zero_cap_rejected(self):
        with pytest.raises(ConfigurationError):
            ScoringEngine(thresholds=ScoringThresholds(max_nft_count=0))

    def test_custom_weights(self):
        weights = ScoringWeights(
            trading_volume=0.0,
            trading_count=0.0,
            gambling_platforms=0.0,
            casino_tokens=0.0,
            defi_protocols=0.0,
            token_diversity=0.0,
            nft_holdings=0.0,
            wallet_age=100.0,
            activity_consistency=0.0,
        )
        engine = ScoringEngine(weights=weights)
        assert engine.score(DegenMetrics(wallet_age_days=1825)).total == pytest.approx(100.0)
