"""
Scoring Engine - DegenMetrics x Weights -> ScoreBreakdown.

============================================================
SCALING
============================================================
- Monetary values: log10(1 + value) / log10(1 + cap), clamped to [0, 1]
- Counts: min(value, cap) / cap
- Wallet age: linear with a ceiling at max_wallet_age_days

Component points = scaled metric x weight. Components are summed in a
fixed order, categories are sums of their components, and the total is
clamped to [0, 100].

============================================================
CATEGORIES
============================================================
    trading    trading_volume, trading_count
    gambling   gambling_platforms, casino_tokens
    defi       defi_protocols, token_diversity
    nfts       nft_count, nft_value (half of nft_holdings each)
    longevity  wallet_age, activity_consistency

============================================================
"""

import logging
import math
from typing import Optional

from .config import ScoringThresholds, ScoringWeights
from .models import DegenMetrics, ScoreBreakdown, ScoreTier


logger = logging.getLogger(__name__)


CATEGORY_COMPONENTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("trading", ("trading_volume", "trading_count")),
    ("gambling", ("gambling_platforms", "casino_tokens")),
    ("defi", ("defi_protocols", "token_diversity")),
    ("nfts", ("nft_count", "nft_value")),
    ("longevity", ("wallet_age", "activity_consistency")),
)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def log_scale(value: float, cap: float) -> float:
    """Logarithmic scale for monetary values."""
    if not value > 0:
        return 0.0
    if math.isinf(value):
        return 1.0
    return _clamp(math.log10(1 + value) / math.log10(1 + cap))


def linear_scale(value: float, cap: float) -> float:
    """Linear scale with a ceiling, for counts."""
    if value <= 0:
        return 0.0
    return _clamp(min(value, cap) / cap)


class ScoringEngine:
    """
    Deterministic scoring of a unified profile.

    Usage:
        engine = ScoringEngine(config.weights, config.thresholds, config.min_score_for_airdrop)
        breakdown = engine.score(metrics)
    """

    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        thresholds: Optional[ScoringThresholds] = None,
        min_score_for_airdrop: float = 20.0,
    ) -> None:
        self.weights = weights or ScoringWeights()
        self.thresholds = thresholds or ScoringThresholds()
        self.weights.validate()
        self.thresholds.validate()
        self.min_score_for_airdrop = min_score_for_airdrop

    def component_points(self, metrics: DegenMetrics) -> dict[str, float]:
        """Points per component, in fixed order."""
        w = self.weights
        t = self.thresholds
        half_nft = w.nft_holdings / 2

        return {
            "trading_volume": log_scale(metrics.trading_volume_usd, t.max_trading_volume_usd) * w.trading_volume,
            "trading_count": linear_scale(metrics.trade_count, t.max_trades_count) * w.trading_count,
            "gambling_platforms": linear_scale(metrics.casino_platforms_used, t.max_casino_platforms) * w.gambling_platforms,
            "casino_tokens": linear_scale(metrics.casino_tokens_held, t.max_casino_tokens) * w.casino_tokens,
            "defi_protocols": linear_scale(metrics.defi_protocols_used, t.max_protocols_count) * w.defi_protocols,
            "token_diversity": linear_scale(metrics.distinct_tokens_traded, t.max_distinct_tokens) * w.token_diversity,
            "nft_count": linear_scale(metrics.nft_count, t.max_nft_count) * half_nft,
            "nft_value": log_scale(metrics.nft_value_usd, t.max_nft_value_usd) * half_nft,
            "wallet_age": linear_scale(metrics.wallet_age_days, t.max_wallet_age_days) * w.wallet_age,
            "activity_consistency": linear_scale(metrics.active_days, t.max_active_days) * w.activity_consistency,
        }

    def score(self, metrics: DegenMetrics) -> ScoreBreakdown:
        components = self.component_points(metrics)

        categories: list[tuple[str, float]] = []
        for category, names in CATEGORY_COMPONENTS:
            points = 0.0
            for name in names:
                points += components[name]
            categories.append((category, points))

        total = 0.0
        for _, points in categories:
            total += points
        total = _clamp(total, 0.0, 100.0)

        tier = ScoreTier.from_score(total)
        eligible = total >= self.min_score_for_airdrop

        logger.info(
            f"[scoring] total={total:.2f} tier={tier.value} eligible={eligible} "
            f"missing={[c.value for c in metrics.missing_chains]}"
        )

        return ScoreBreakdown(
            categories=tuple(categories),
            components=tuple(components.items()),
            total=total,
            tier=tier,
            eligible=eligible,
            missing_chains=metrics.missing_chains,
            partial_chains=metrics.partial_chains,
            diagnostics=metrics.diagnostics,
        )
