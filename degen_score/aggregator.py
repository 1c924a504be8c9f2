"""
Metrics Aggregator - Folds per-address results into one user profile.

The fold is pure, commutative and idempotent over its input set: results
are de-duplicated and sorted before folding, so permuting the input
never changes the profile.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from .models import (
    DEFI_CATEGORIES,
    TRADING_CATEGORIES,
    AddressFetchResult,
    ChainId,
    ChainStatus,
    DegenMetrics,
    FetchDiagnostic,
    ProtocolCategory,
    merge_interactions,
)


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


def _merge_status(current: Optional[ChainStatus], new: ChainStatus) -> ChainStatus:
    """Several addresses on one chain: any disagreement is PARTIAL."""
    if current is None or current is new:
        return new
    return ChainStatus.PARTIAL


def _diagnostic_key(d: FetchDiagnostic) -> tuple:
    return (d.chain.value, d.address, d.data_kind, d.error_type, d.message, d.attempts)


_STATUS_RANK = {ChainStatus.MISSING: 0, ChainStatus.PARTIAL: 1, ChainStatus.OK: 2}


def _timestamp(value: Optional[datetime]) -> float:
    return value.timestamp() if value is not None else 0.0


def _preference(r: AddressFetchResult) -> tuple:
    """
    Total order over results for the same address.

    The most complete result sorts last; every field takes part so
    two different results never tie.
    """
    return (
        _STATUS_RANK[r.status],
        r.tx_count,
        r.active_days,
        r.first_seen is not None,
        -_timestamp(r.first_seen),
        tuple(sorted(
            (i.chain.value, i.protocol_id, i.category.value, i.interaction_count,
             i.volume_usd_estimate, _timestamp(i.first_seen))
            for i in r.interactions
        )),
        r.memecoin_trades,
        r.nft_value_usd,
        tuple(sorted(r.tokens_traded)),
        tuple(sorted(r.casino_tokens)),
        tuple(sorted(r.nfts)),
        tuple(sorted(_diagnostic_key(d) for d in r.diagnostics)),
    )


class MetricsAggregator:
    """
    Builds DegenMetrics from AddressFetchResults.

    Usage:
        metrics = MetricsAggregator().aggregate(results, now=datetime.now(timezone.utc))
    """

    def aggregate(
        self,
        results: Iterable[AddressFetchResult],
        now: Optional[datetime] = None,
    ) -> DegenMetrics:
        now = now or datetime.now(timezone.utc)

        # Duplicates of one address keep the most complete result
        unique: dict[tuple[str, str], AddressFetchResult] = {}
        for r in results:
            key = (r.chain.value, r.address.value)
            current = unique.get(key)
            if current is None or _preference(r) > _preference(current):
                unique[key] = r
        ordered = [unique[k] for k in sorted(unique)]

        chain_status: dict[ChainId, ChainStatus] = {}
        diagnostics: set[FetchDiagnostic] = set()
        for result in ordered:
            chain_status[result.chain] = _merge_status(chain_status.get(result.chain), result.status)
            diagnostics.update(result.diagnostics)

        usable = [r for r in ordered if r.status is not ChainStatus.MISSING]

        interactions = merge_interactions(
            [i for r in usable for i in r.interactions]
        )

        trading = [i for i in interactions if i.category in TRADING_CATEGORIES]
        trading_volume = sum(i.volume_usd_estimate for i in trading)
        trade_count = sum(i.interaction_count for i in trading)

        defi_protocols = {i.key for i in interactions if i.category in DEFI_CATEGORIES}
        casino_platforms = {
            i.protocol_id for i in interactions if i.category is ProtocolCategory.CASINO
        }
        bridges = {i.key for i in interactions if i.category is ProtocolCategory.BRIDGE}

        tokens_traded: set[str] = set()
        casino_tokens: set[str] = set()
        nfts: set[str] = set()
        nft_value = 0.0
        for result in usable:
            tokens_traded |= result.tokens_traded
            casino_tokens |= result.casino_tokens
            nft_value += result.nft_value_usd
            nfts |= result.nfts

        first_seen = [r.first_seen for r in usable if r.first_seen is not None]
        wallet_age_days = 0.0
        if first_seen:
            age = (now - min(first_seen)).total_seconds() / SECONDS_PER_DAY
            wallet_age_days = max(0.0, age)

        chains_active = {
            r.chain for r in usable if r.tx_count > 0 or r.interactions
        }

        metrics = DegenMetrics(
            trading_volume_usd=trading_volume,
            trade_count=trade_count,
            defi_protocols_used=len(defi_protocols),
            casino_platforms_used=len(casino_platforms),
            casino_tokens_held=len(casino_tokens),
            distinct_tokens_traded=len(tokens_traded),
            nft_count=len(nfts),
            nft_value_usd=nft_value,
            wallet_age_days=wallet_age_days,
            active_days=sum(r.active_days for r in usable),
            total_tx_count=sum(r.tx_count for r in usable),
            bridges_used=len(bridges),
            memecoin_trades=sum(r.memecoin_trades for r in usable),
            chains_active=len(chains_active),
            interactions=interactions,
            chain_status=tuple(
                (chain, chain_status[chain])
                for chain in sorted(chain_status, key=lambda c: c.value)
            ),
            diagnostics=tuple(sorted(diagnostics, key=_diagnostic_key)),
        )

        logger.debug(
            f"[aggregator] {len(ordered)} results, {len(usable)} usable, "
            f"{len(interactions)} interactions"
        )
        return metrics
