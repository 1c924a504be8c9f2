"""
Degen Score Manager - Main entry point for the module.

Coordinates:
- Ownership verification (signatures and micro-deposits)
- Concurrent on-chain data collection
- Profile aggregation and scoring
- Airdrop allocation

Only addresses verified for a user ever contribute to that user's score.
"""

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Union

import aiohttp

from .aggregator import MetricsAggregator
from .airdrop import AirdropAllocation, AirdropAllocator
from .cache import CacheStore, InMemoryCacheStore, SqlCacheStore
from .config import DegenScoreConfig, load_config
from .detection import PriceOracle, ProtocolDetector
from .exceptions import InvalidAddressError, NoUsableDataError
from .models import (
    Address,
    ChainId,
    ChainStatus,
    Challenge,
    DegenMetrics,
    FetchDiagnostic,
    ScoreBreakdown,
    VerifiedAddress,
)
from .orchestrator import FetchOrchestrator
from .providers import BaseChainProvider, is_ens_name
from .scoring import ScoringEngine
from .storage.database import Database
from .verification import (
    DepositVerificationResult,
    DepositVerifier,
    VerificationProtocol,
    deposit_window_blocks,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreReport:
    """Profile and score for one user."""
    user_id: str
    metrics: DegenMetrics
    breakdown: ScoreBreakdown
    addresses: tuple[Address, ...] = ()
    unverified: tuple[Address, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "addresses": [a.to_dict() for a in self.addresses],
            "unverified": [a.to_dict() for a in self.unverified],
            "metrics": self.metrics.to_dict(),
            "score": self.breakdown.to_dict(),
        }


def _address_key(address: Address) -> tuple[str, str]:
    return (address.chain.value, address.value)


def _requested_addresses(
    addresses: Mapping[ChainId, Union[str, Iterable[str]]],
) -> list[Address]:
    requested: list[Address] = []
    for chain, raw in addresses.items():
        values = [raw] if isinstance(raw, str) else list(raw)
        requested.extend(Address.parse(chain, value) for value in values)
    return requested


class DegenScoreManager:
    """
    Main orchestrator for Degen Score.

    Usage:
        manager = DegenScoreManager()
        await manager.initialize()

        challenge = await manager.issue_challenge(ChainId.ETHEREUM, "0xabc...")
        await manager.verify("user-1", challenge.nonce, signature)

        report = await manager.score("user-1")
        print(f"Score: {report.breakdown.total:.1f} ({report.breakdown.tier.value})")
    """

    def __init__(
        self,
        config: Optional[DegenScoreConfig] = None,
        providers: Optional[dict[ChainId, list[BaseChainProvider]]] = None,
        database: Optional[Database] = None,
        cache: Optional[CacheStore] = None,
        oracle: Optional[PriceOracle] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = (config or load_config()).validate()

        self.database = database or Database(self.config.verification.database_url)
        self._cache_database: Optional[Database] = None
        if cache is None:
            cache_url = self.config.cache.database_url
            if cache_url:
                self._cache_database = (
                    self.database if cache_url == self.database.url else Database(cache_url)
                )
                cache = SqlCacheStore(self._cache_database, self.config.cache.ttl_seconds)
            else:
                cache = InMemoryCacheStore(self.config.cache.ttl_seconds, self.config.cache.max_entries)
        self.cache = cache

        self.detector = ProtocolDetector(
            oracle=oracle,
            min_usd_threshold=self.config.detection.min_usd_threshold,
        )
        self.orchestrator = FetchOrchestrator(
            self.config,
            cache=self.cache,
            detector=self.detector,
            providers=providers,
            session=session,
        )
        self.aggregator = MetricsAggregator()
        self.engine = ScoringEngine(
            self.config.weights,
            self.config.thresholds,
            self.config.min_score_for_airdrop,
        )
        self.allocator = AirdropAllocator(self.config.airdrop, self.config.min_score_for_airdrop)
        self.verification = VerificationProtocol(
            self.config.verification,
            self.database,
            DepositVerifier(
                self.orchestrator.call,
                self.config.verification.max_deposit_blocks_scanned,
                window_blocks={
                    chain: deposit_window_blocks(chain_config, self.config.verification.deposit_ttl_seconds)
                    for chain, chain_config in self.config.chains.items()
                    if chain.is_evm
                },
            ),
        )

        self._initialized = False
        self._stats = {
            "scores_computed": 0,
            "partial_scores": 0,
            "verifications": 0,
        }

    async def initialize(self) -> None:
        """Connect storage. Idempotent."""
        if self._initialized:
            return
        await self.database.connect()
        if self._cache_database is not None:
            await self._cache_database.connect()
        self._initialized = True
        logger.info(
            f"DegenScoreManager initialized for chains "
            f"{[c.value for c in self.config.get_enabled_chains()]}"
        )

    # ─────────────────────────────────────────────────────────────
    # Addresses
    # ─────────────────────────────────────────────────────────────

    async def resolve_address(self, chain: ChainId, raw: str) -> Address:
        """
        Parse an address, resolving ENS names on EVM chains.

        Names are looked up in the Ethereum mainnet registry and the
        resolved address is used on whichever EVM chain was asked for.
        """
        if not (chain.is_evm and is_ens_name(raw)):
            return Address.parse(chain, raw)

        resolved = await self.orchestrator.call(ChainId.ETHEREUM, "resolve_ens_name", raw.strip())
        if resolved is None:
            raise InvalidAddressError(raw, chain, "ENS name does not resolve")
        logger.info(f"[{chain.value}] Resolved {raw.strip()} to {resolved}")
        return Address.parse(chain, resolved)

    # ─────────────────────────────────────────────────────────────
    # Verification
    # ─────────────────────────────────────────────────────────────

    async def issue_challenge(self, chain: ChainId, address: str) -> Challenge:
        await self.initialize()
        return await self.verification.issue_challenge(chain, address)

    async def verify(self, user_id: str, nonce: str, signature: str) -> VerifiedAddress:
        await self.initialize()
        verified = await self.verification.verify(user_id, nonce, signature)
        self._stats["verifications"] += 1
        return verified

    async def issue_deposit_challenge(self, chain: ChainId, address: str) -> Challenge:
        await self.initialize()
        return await self.verification.issue_deposit_challenge(chain, address)

    async def verify_deposit(self, user_id: str, nonce: str) -> DepositVerificationResult:
        await self.initialize()
        result = await self.verification.verify_deposit(user_id, nonce)
        self._stats["verifications"] += 1
        return result

    async def await_deposit(self, user_id: str, nonce: str) -> DepositVerificationResult:
        await self.initialize()
        result = await self.verification.await_deposit(user_id, nonce)
        self._stats["verifications"] += 1
        return result

    async def list_verified(self, user_id: str) -> list[VerifiedAddress]:
        await self.initialize()
        return await self.verification.list_verified(user_id)

    # ─────────────────────────────────────────────────────────────
    # Scoring
    # ─────────────────────────────────────────────────────────────

    async def score(
        self,
        user_id: str,
        addresses: Optional[Mapping[ChainId, Union[str, Iterable[str]]]] = None,
        now: Optional[datetime] = None,
    ) -> ScoreReport:
        """
        Score a user from their verified addresses.

        With `addresses`, only the verified subset is scored; the rest are
        reported as unverified. Raises NoUsableDataError when no chain
        returned data.
        """
        await self.initialize()
        now = now or datetime.now(timezone.utc)

        verified = {v.address for v in await self.list_verified(user_id)}
        if addresses is None:
            targets = verified
            unverified: set[Address] = set()
        else:
            requested = set(_requested_addresses(addresses))
            targets = requested & verified
            unverified = requested - verified

        ordered_targets = tuple(sorted(targets, key=_address_key))
        ordered_unverified = tuple(sorted(unverified, key=_address_key))

        if ordered_unverified:
            logger.warning(
                f"[{user_id}] Ignoring {len(ordered_unverified)} unverified addresses"
            )
        if not ordered_targets:
            raise NoUsableDataError(
                f"User {user_id} has no verified addresses to score",
                details={"unverified": [a.to_dict() for a in ordered_unverified]},
            )

        results = await self.orchestrator.fetch(ordered_targets)
        metrics = self.aggregator.aggregate(results, now)

        if all(r.status is ChainStatus.MISSING for r in results):
            raise NoUsableDataError(
                f"No chain returned data for user {user_id}",
                details={"diagnostics": [d.to_dict() for d in metrics.diagnostics]},
            )

        if ordered_unverified:
            metrics = dataclasses.replace(
                metrics,
                diagnostics=metrics.diagnostics + tuple(
                    FetchDiagnostic(
                        chain=a.chain,
                        address=a.value,
                        data_kind="verification",
                        error_type="Unverified",
                        message=f"{a.value} is not verified for {user_id}",
                        attempts=0,
                    )
                    for a in ordered_unverified
                ),
            )

        breakdown = self.engine.score(metrics)

        self._stats["scores_computed"] += 1
        if breakdown.missing_chains or breakdown.partial_chains:
            self._stats["partial_scores"] += 1

        logger.info(
            f"[{user_id}] Score {breakdown.total:.2f} ({breakdown.tier.value}) "
            f"from {len(ordered_targets)} addresses"
        )
        return ScoreReport(
            user_id=user_id,
            metrics=metrics,
            breakdown=breakdown,
            addresses=ordered_targets,
            unverified=ordered_unverified,
        )

    def allocate_airdrop(
        self,
        breakdowns: Mapping[str, ScoreBreakdown],
        pool: float,
    ) -> list[AirdropAllocation]:
        return self.allocator.allocate(breakdowns, pool)

    # ─────────────────────────────────────────────────────────────
    # Health, statistics, lifecycle
    # ─────────────────────────────────────────────────────────────

    async def get_health(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "database": await self.database.health_check() if self._initialized else False,
            "endpoints": self.orchestrator.get_provider_health(),
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "orchestrator": self.orchestrator.get_stats(),
        }

    async def close(self) -> None:
        """Cleanup resources."""
        await self.orchestrator.close()
        if self._cache_database is not None and self._cache_database is not self.database:
            await self._cache_database.disconnect()
        await self.database.disconnect()
        self._initialized = False
