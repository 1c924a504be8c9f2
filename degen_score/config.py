"""
Degen Score Configuration - Weights, caps, endpoints and limits.

All thresholds are configurable for tuning. RPC endpoints can be
overridden from environment variables. A configuration is validated once
at startup; a weight table that does not sum to 100 or a cap of zero is
rejected instead of being silently normalized.
"""

import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .models import ChainId


@dataclass(frozen=True)
class ScoringWeights:
    """
    Points available per scoring component. Must sum to 100.

    Components are grouped into categories:
        trading:   trading_volume, trading_count
        gambling:  gambling_platforms, casino_tokens
        defi:      defi_protocols, token_diversity
        nfts:      nft_holdings (split evenly between count and value)
        longevity: wallet_age, activity_consistency
    """
    trading_volume: float = 15.0
    trading_count: float = 10.0
    gambling_platforms: float = 10.0
    casino_tokens: float = 5.0
    defi_protocols: float = 10.0
    token_diversity: float = 5.0
    nft_holdings: float = 10.0
    wallet_age: float = 10.0
    activity_consistency: float = 25.0

    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value < 0:
                raise ConfigurationError(
                    f"Weight {f.name} must be non-negative, got {value}",
                    details={"weight": f.name, "value": value},
                )
        total = self.total()
        if abs(total - 100.0) > 1e-9:
            raise ConfigurationError(
                f"Scoring weights must sum to 100, got {total}",
                details={"weights": self.to_dict(), "total": total},
            )

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ScoringThresholds:
    """Caps used by the scaling functions."""
    max_trading_volume_usd: float = 10_000_000.0
    max_trades_count: int = 100
    max_protocols_count: int = 20
    max_nft_count: int = 50
    max_wallet_age_days: int = 1825  # 5 years

    max_casino_platforms: int = 3
    max_casino_tokens: int = 2
    max_distinct_tokens: int = 50
    max_nft_value_usd: float = 100_000.0
    max_active_days: int = 365

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value <= 0:
                raise ConfigurationError(
                    f"Cap {f.name} must be positive, got {value}",
                    details={"cap": f.name, "value": value},
                )

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class EndpointConfig:
    """A single JSON-RPC endpoint."""
    url: str
    max_concurrent_requests: int = 2
    timeout_seconds: float = 15.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "max_concurrent_requests": self.max_concurrent_requests,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for a specific blockchain."""
    chain: ChainId
    endpoints: tuple[EndpointConfig, ...]
    enabled: bool = True

    # Bounded history window (blocks or slots)
    lookback_blocks: int = 8_000
    blocks_per_day: int = 7_200

    # Bounds on per-address work
    max_signatures: int = 1_000
    max_transactions: int = 50
    max_signature_pages: int = 5

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain.value,
            "enabled": self.enabled,
            "endpoints": [e.to_dict() for e in self.endpoints],
            "lookback_blocks": self.lookback_blocks,
            "blocks_per_day": self.blocks_per_day,
        }


@dataclass(frozen=True)
class FetchConfig:
    """Concurrency, retry and timeout settings for the orchestrator."""
    max_concurrent_requests: int = 8
    max_concurrent_chains: int = 4
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_jitter_seconds: float = 0.25
    overall_timeout_seconds: float = 120.0

    # Endpoint circuit breaker
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class CacheConfig:
    """Read-through cache settings."""
    ttl_seconds: float = 900.0  # 15 minutes
    database_url: Optional[str] = None  # None keeps the cache in memory
    max_entries: int = 10_000  # in-memory store only


@dataclass(frozen=True)
class DetectionConfig:
    """Protocol detection settings."""
    min_usd_threshold: float = 10.0
    max_timestamp_lookups: int = 20


@dataclass(frozen=True)
class VerificationConfig:
    """Ownership verification settings."""
    platform_name: str = "Craps Anchor"
    challenge_ttl_seconds: int = 600

    # Micro-deposit fallback
    min_deposit_amount: Decimal = Decimal("0.001")
    deposit_ttl_seconds: int = 300
    deposit_poll_interval_seconds: float = 10.0
    max_deposit_blocks_scanned: int = 200

    database_url: str = "sqlite+aiosqlite:///:memory:"


@dataclass(frozen=True)
class AirdropConfig:
    """Airdrop sizing."""
    pool_percentage: float = 50.0
    wagering_multiplier: float = 100.0

    def validate(self) -> None:
        if not 0 < self.pool_percentage <= 100:
            raise ConfigurationError(
                f"pool_percentage must be in (0, 100], got {self.pool_percentage}"
            )
        if self.wagering_multiplier < 0:
            raise ConfigurationError(
                f"wagering_multiplier must be non-negative, got {self.wagering_multiplier}"
            )


def default_chain_configs() -> dict[ChainId, ChainConfig]:
    """Free public RPC endpoints for every supported chain."""
    return {
        ChainId.ETHEREUM: ChainConfig(
            chain=ChainId.ETHEREUM,
            endpoints=(
                EndpointConfig("https://ethereum.publicnode.com"),
                EndpointConfig("https://1rpc.io/eth"),
            ),
            blocks_per_day=7_200,
        ),
        ChainId.ARBITRUM: ChainConfig(
            chain=ChainId.ARBITRUM,
            endpoints=(
                EndpointConfig("https://arbitrum-one.publicnode.com"),
                EndpointConfig("https://arb1.arbitrum.io/rpc"),
            ),
            blocks_per_day=345_600,  # ~0.25s blocks
        ),
        ChainId.OPTIMISM: ChainConfig(
            chain=ChainId.OPTIMISM,
            endpoints=(
                EndpointConfig("https://optimism.publicnode.com"),
                EndpointConfig("https://mainnet.optimism.io"),
            ),
            blocks_per_day=43_200,
        ),
        ChainId.BLAST: ChainConfig(
            chain=ChainId.BLAST,
            endpoints=(EndpointConfig("https://rpc.blast.io"),),
            blocks_per_day=43_200,
        ),
        ChainId.SOLANA: ChainConfig(
            chain=ChainId.SOLANA,
            endpoints=(
                EndpointConfig("https://api.mainnet-beta.solana.com", max_concurrent_requests=1),
            ),
            lookback_blocks=216_000,  # ~1 day of slots
            blocks_per_day=216_000,
        ),
    }


@dataclass(frozen=True)
class DegenScoreConfig:
    """Main configuration, passed explicitly to every component."""
    chains: dict[ChainId, ChainConfig] = field(default_factory=default_chain_configs)
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    thresholds: ScoringThresholds = field(default_factory=ScoringThresholds)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    airdrop: AirdropConfig = field(default_factory=AirdropConfig)
    min_score_for_airdrop: float = 20.0

    def validate(self) -> "DegenScoreConfig":
        """Raise ConfigurationError on any invalid setting."""
        self.weights.validate()
        self.thresholds.validate()
        self.airdrop.validate()

        if not 0 <= self.min_score_for_airdrop <= 100:
            raise ConfigurationError(
                f"min_score_for_airdrop must be in [0, 100], got {self.min_score_for_airdrop}"
            )
        if self.fetch.max_attempts < 1:
            raise ConfigurationError("fetch.max_attempts must be at least 1")
        if self.fetch.max_concurrent_requests < 1 or self.fetch.max_concurrent_chains < 1:
            raise ConfigurationError("Concurrency ceilings must be at least 1")
        if self.cache.ttl_seconds <= 0:
            raise ConfigurationError("cache.ttl_seconds must be positive")
        if self.cache.max_entries < 1:
            raise ConfigurationError("cache.max_entries must be at least 1")

        for chain, chain_config in self.chains.items():
            if chain_config.chain is not chain:
                raise ConfigurationError(
                    f"Chain config for {chain.value} declares {chain_config.chain.value}",
                    chain=chain,
                )
            if chain_config.enabled and not chain_config.endpoints:
                raise ConfigurationError(
                    f"No RPC endpoints configured for {chain.value}",
                    chain=chain,
                )
            if chain_config.lookback_blocks <= 0 or chain_config.blocks_per_day <= 0:
                raise ConfigurationError(
                    f"Lookback and blocks_per_day must be positive for {chain.value}",
                    chain=chain,
                )
            for endpoint in chain_config.endpoints:
                if endpoint.max_concurrent_requests < 1:
                    raise ConfigurationError(
                        f"Endpoint {endpoint.url} needs a concurrency of at least 1",
                        chain=chain,
                    )
        return self

    def get_enabled_chains(self) -> list[ChainId]:
        return [c for c, cfg in self.chains.items() if cfg.enabled]

    def get_chain_config(self, chain: ChainId) -> Optional[ChainConfig]:
        return self.chains.get(chain)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chains": {c.value: cfg.to_dict() for c, cfg in self.chains.items()},
            "weights": self.weights.to_dict(),
            "thresholds": self.thresholds.to_dict(),
            "fetch": self.fetch.to_dict(),
            "cache_ttl_seconds": self.cache.ttl_seconds,
            "platform_name": self.verification.platform_name,
            "min_score_for_airdrop": self.min_score_for_airdrop,
        }


def _endpoints_from_env(chain: ChainId) -> Optional[tuple[EndpointConfig, ...]]:
    raw = os.getenv(f"DEGEN_SCORE_{chain.name}_RPC_URLS")
    if not raw:
        return None
    urls = [u.strip() for u in raw.split(",") if u.strip()]
    return tuple(EndpointConfig(url) for url in urls)


def load_config(dotenv: bool = True) -> DegenScoreConfig:
    """
    Build and validate a configuration from defaults and environment.

    Recognized variables:
        DEGEN_SCORE_<CHAIN>_RPC_URLS  comma separated endpoint list
        DEGEN_SCORE_MIN_SCORE         eligibility threshold
        DEGEN_SCORE_CACHE_TTL         cache TTL in seconds
        DEGEN_SCORE_CACHE_MAX_ENTRIES in-memory cache size limit
        DEGEN_SCORE_PLATFORM_NAME     name shown in verification messages
        DEGEN_SCORE_DATABASE_URL      verification store database URL
    """
    if dotenv:
        load_dotenv()

    chains = default_chain_configs()
    for chain, chain_config in list(chains.items()):
        endpoints = _endpoints_from_env(chain)
        if endpoints:
            chains[chain] = ChainConfig(
                chain=chain,
                endpoints=endpoints,
                enabled=chain_config.enabled,
                lookback_blocks=chain_config.lookback_blocks,
                blocks_per_day=chain_config.blocks_per_day,
                max_signatures=chain_config.max_signatures,
                max_transactions=chain_config.max_transactions,
                max_signature_pages=chain_config.max_signature_pages,
            )

    defaults = VerificationConfig()
    verification = VerificationConfig(
        platform_name=os.getenv("DEGEN_SCORE_PLATFORM_NAME", defaults.platform_name),
        database_url=os.getenv("DEGEN_SCORE_DATABASE_URL", defaults.database_url),
    )

    try:
        config = DegenScoreConfig(
            chains=chains,
            cache=CacheConfig(
                ttl_seconds=float(os.getenv("DEGEN_SCORE_CACHE_TTL", "900")),
                max_entries=int(os.getenv("DEGEN_SCORE_CACHE_MAX_ENTRIES", "10000")),
            ),
            verification=verification,
            min_score_for_airdrop=float(os.getenv("DEGEN_SCORE_MIN_SCORE", "20.0")),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting in environment: {e}") from e

    return config.validate()
