"""
Degen Score - Multi-chain wallet reputation.

Scores a user's on-chain "degen" activity (trading, gambling, DeFi
breadth, NFTs, longevity) across Ethereum, Arbitrum, Optimism, Blast
and Solana, from addresses the user has proven to control.

Ownership is proven by signing a human-readable message (EIP-191 on EVM
chains, Ed25519 on Solana) or, as a fallback, by a small refundable
deposit. Private keys are never requested.

Usage:
    from degen_score import DegenScoreManager, ChainId

    manager = DegenScoreManager()
    await manager.initialize()

    challenge = await manager.issue_challenge(ChainId.ETHEREUM, "0x...")
    # user signs challenge.message in their wallet
    await manager.verify("user-1", challenge.nonce, signature)

    report = await manager.score("user-1")
    print(f"Score: {report.breakdown.total:.1f}")
    print(f"Tier: {report.breakdown.tier.value}")
    print(f"Eligible: {report.breakdown.eligible}")

Chain data:
- Free public JSON-RPC endpoints, several per chain with failover
- Results cached per (chain, address, data kind) for 15 minutes
- An unreachable chain is reported as missing, never scored as zero
"""

from .aggregator import MetricsAggregator
from .airdrop import AirdropAllocation, AirdropAllocator
from .cache import CacheStore, InMemoryCacheStore, SqlCacheStore
from .config import (
    AirdropConfig,
    CacheConfig,
    ChainConfig,
    DegenScoreConfig,
    DetectionConfig,
    EndpointConfig,
    FetchConfig,
    ScoringThresholds,
    ScoringWeights,
    VerificationConfig,
    default_chain_configs,
    load_config,
)
from .detection import PriceOracle, ProtocolDetector, StaticPriceOracle
from .exceptions import (
    AddressCollisionError,
    ConfigurationError,
    DegenScoreError,
    FailureReason,
    InvalidAddressError,
    MalformedResponseError,
    NoUsableDataError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    RpcUnavailableError,
    VerificationFailedError,
)
from .manager import DegenScoreManager, ScoreReport
from .models import (
    Address,
    AddressFetchResult,
    ChainId,
    ChainStatus,
    Challenge,
    DegenMetrics,
    FetchDiagnostic,
    ProtocolCategory,
    ProtocolInteraction,
    ScoreBreakdown,
    ScoreTier,
    VerificationMethod,
    VerifiedAddress,
)
from .orchestrator import FetchOrchestrator
from .providers import BaseChainProvider, EvmProvider, SolanaProvider, create_provider
from .registry import ProtocolRegistry, get_registry
from .scoring import ScoringEngine
from .verification import VerificationProtocol


__version__ = "0.1.0"

__all__ = [
    # Manager
    "DegenScoreManager",
    "ScoreReport",
    # Config
    "AirdropConfig",
    "CacheConfig",
    "ChainConfig",
    "DegenScoreConfig",
    "DetectionConfig",
    "EndpointConfig",
    "FetchConfig",
    "ScoringThresholds",
    "ScoringWeights",
    "VerificationConfig",
    "default_chain_configs",
    "load_config",
    # Models
    "Address",
    "AddressFetchResult",
    "ChainId",
    "ChainStatus",
    "Challenge",
    "DegenMetrics",
    "FetchDiagnostic",
    "ProtocolCategory",
    "ProtocolInteraction",
    "ScoreBreakdown",
    "ScoreTier",
    "VerificationMethod",
    "VerifiedAddress",
    # Components
    "AirdropAllocation",
    "AirdropAllocator",
    "BaseChainProvider",
    "CacheStore",
    "EvmProvider",
    "FetchOrchestrator",
    "InMemoryCacheStore",
    "MetricsAggregator",
    "PriceOracle",
    "ProtocolDetector",
    "ProtocolRegistry",
    "ScoringEngine",
    "SolanaProvider",
    "SqlCacheStore",
    "StaticPriceOracle",
    "VerificationProtocol",
    "create_provider",
    "get_registry",
    # Exceptions
    "AddressCollisionError",
    "ConfigurationError",
    "DegenScoreError",
    "FailureReason",
    "InvalidAddressError",
    "MalformedResponseError",
    "NoUsableDataError",
    "ProviderError",
    "ProviderTimeoutError",
    "RateLimitedError",
    "RpcUnavailableError",
    "VerificationFailedError",
]
