"""
Degen Score Data Models - Chains, addresses, interactions and scores.

Every address is paired with its chain. Interactions, metrics and score
breakdowns are immutable once built; merging always produces new objects.
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import base58

from .exceptions import InvalidAddressError


class ChainId(Enum):
    """Supported blockchain networks."""
    ETHEREUM = "ethereum"
    ARBITRUM = "arbitrum"
    OPTIMISM = "optimism"
    BLAST = "blast"
    SOLANA = "solana"

    @property
    def is_evm(self) -> bool:
        return self is not ChainId.SOLANA

    @property
    def evm_chain_id(self) -> Optional[int]:
        return EVM_CHAIN_IDS.get(self)

    @property
    def native_symbol(self) -> str:
        return "SOL" if self is ChainId.SOLANA else "ETH"

    @property
    def native_decimals(self) -> int:
        return 9 if self is ChainId.SOLANA else 18


EVM_CHAIN_IDS: dict[ChainId, int] = {
    ChainId.ETHEREUM: 1,
    ChainId.ARBITRUM: 42161,
    ChainId.OPTIMISM: 10,
    ChainId.BLAST: 81457,
}


class ProtocolCategory(Enum):
    """Category of an on-chain application."""
    DEX = "dex"
    LENDING = "lending"
    CASINO = "casino"
    BRIDGE = "bridge"
    NFT = "nft"
    PERPS = "perps"


# Categories counted towards DeFi breadth
DEFI_CATEGORIES: frozenset[ProtocolCategory] = frozenset({
    ProtocolCategory.DEX,
    ProtocolCategory.LENDING,
    ProtocolCategory.PERPS,
    ProtocolCategory.BRIDGE,
})

# Categories whose volume and count are trading activity
TRADING_CATEGORIES: frozenset[ProtocolCategory] = frozenset({
    ProtocolCategory.DEX,
    ProtocolCategory.PERPS,
})


class ChainStatus(Enum):
    """How much of a chain's data was retrieved."""
    OK = "ok"            # Every data kind retrieved
    PARTIAL = "partial"  # Some data kinds failed
    MISSING = "missing"  # Nothing retrieved, activity unknown


class DataKind(Enum):
    """Unit of cached provider data for one address."""
    ACCOUNT = "account"
    FIRST_ACTIVITY = "first_activity"
    PROTOCOL_LOGS = "protocol_logs"
    TOKEN_TRANSFERS = "token_transfers"
    TOKEN_BALANCES = "token_balances"
    TOKEN_ACCOUNTS = "token_accounts"


class VerificationMethod(Enum):
    """How control of an address was proven."""
    SIGNATURE = "signature"
    MICRO_DEPOSIT = "micro_deposit"


class ScoreTier(Enum):
    """Ordered classification bucket derived from total score."""
    NOVICE = "novice"
    COMMON = "common"
    UNCOMMON = "uncommon"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"

    @classmethod
    def from_score(cls, total: float) -> "ScoreTier":
        for threshold, tier in TIER_THRESHOLDS:
            if total >= threshold:
                return tier
        return cls.NOVICE


# Highest threshold first
TIER_THRESHOLDS: tuple[tuple[float, ScoreTier], ...] = (
    (90.0, ScoreTier.LEGENDARY),
    (75.0, ScoreTier.EPIC),
    (60.0, ScoreTier.RARE),
    (40.0, ScoreTier.UNCOMMON),
    (20.0, ScoreTier.COMMON),
)


# ─────────────────────────────────────────────────────────────
# Addresses
# ─────────────────────────────────────────────────────────────

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


@dataclass(frozen=True)
class Address:
    """
    Chain-scoped address in canonical form.

    EVM addresses are stored lowercase, Solana addresses as base-58.
    Use Address.parse() to build one from user input.
    """
    chain: ChainId
    value: str

    @classmethod
    def parse(cls, chain: ChainId, raw: str) -> "Address":
        """Validate and canonicalize a raw address string."""
        if not isinstance(raw, str):
            raise InvalidAddressError(repr(raw), chain, "not a string")

        candidate = raw.strip()

        if chain.is_evm:
            if not _EVM_ADDRESS_RE.match(candidate):
                raise InvalidAddressError(candidate, chain, "expected 0x + 40 hex characters")
            return cls(chain, candidate.lower())

        if not 32 <= len(candidate) <= 44:
            raise InvalidAddressError(candidate, chain, "expected 32-44 base58 characters")
        try:
            decoded = base58.b58decode(candidate)
        except ValueError as e:
            raise InvalidAddressError(candidate, chain, "not valid base58") from e
        if len(decoded) != 32:
            raise InvalidAddressError(candidate, chain, "does not decode to 32 bytes")
        return cls(chain, candidate)

    def __str__(self) -> str:
        return self.value

    def to_dict(self) -> dict[str, Any]:
        return {"chain": self.chain.value, "address": self.value}


def make_cache_key(address: Address, data_kind: DataKind) -> str:
    """Hash of (chain, address, data kind)."""
    raw = "|".join([address.chain.value, address.value, data_kind.value])
    return hashlib.md5(raw.encode()).hexdigest()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ─────────────────────────────────────────────────────────────
# Interactions and fetch results
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProtocolInteraction:
    """Detected use of a known on-chain application by an address."""
    protocol_id: str
    category: ProtocolCategory
    chain: ChainId
    first_seen: Optional[datetime] = None
    interaction_count: int = 0
    volume_usd_estimate: float = 0.0

    @property
    def key(self) -> tuple[str, str]:
        return (self.chain.value, self.protocol_id)

    def merge(self, other: "ProtocolInteraction") -> "ProtocolInteraction":
        """Combine two records for the same (chain, protocol)."""
        if other.key != self.key:
            raise ValueError(f"Cannot merge {other.key} into {self.key}")

        seen = [ts for ts in (self.first_seen, other.first_seen) if ts is not None]
        return ProtocolInteraction(
            protocol_id=self.protocol_id,
            category=self.category,
            chain=self.chain,
            first_seen=min(seen) if seen else None,
            interaction_count=self.interaction_count + other.interaction_count,
            volume_usd_estimate=self.volume_usd_estimate + other.volume_usd_estimate,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol_id": self.protocol_id,
            "category": self.category.value,
            "chain": self.chain.value,
            "first_seen": _iso(self.first_seen),
            "interaction_count": self.interaction_count,
            "volume_usd_estimate": self.volume_usd_estimate,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProtocolInteraction":
        return cls(
            protocol_id=data["protocol_id"],
            category=ProtocolCategory(data["category"]),
            chain=ChainId(data["chain"]),
            first_seen=_from_iso(data.get("first_seen")),
            interaction_count=data.get("interaction_count", 0),
            volume_usd_estimate=data.get("volume_usd_estimate", 0.0),
        )


def _interaction_sort_key(interaction: ProtocolInteraction) -> tuple:
    # Total order so float sums do not depend on input order
    return (
        interaction.key,
        _iso(interaction.first_seen) or "",
        interaction.interaction_count,
        interaction.volume_usd_estimate,
    )


def merge_interactions(
    interactions: list[ProtocolInteraction],
) -> tuple[ProtocolInteraction, ...]:
    """Merge records sharing a (chain, protocol) key; result sorted by key."""
    merged: dict[tuple[str, str], ProtocolInteraction] = {}
    for interaction in sorted(interactions, key=_interaction_sort_key):
        existing = merged.get(interaction.key)
        merged[interaction.key] = existing.merge(interaction) if existing else interaction
    return tuple(merged[k] for k in sorted(merged))


@dataclass(frozen=True)
class FetchDiagnostic:
    """One isolated failure recorded during collection."""
    chain: ChainId
    address: str
    data_kind: str
    error_type: str
    message: str
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain.value,
            "address": self.address,
            "data_kind": self.data_kind,
            "error_type": self.error_type,
            "message": self.message,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class AddressFetchResult:
    """Classified activity of one address on one chain."""
    address: Address
    status: ChainStatus
    interactions: tuple[ProtocolInteraction, ...] = ()
    tx_count: int = 0
    first_seen: Optional[datetime] = None
    active_days: int = 0
    tokens_traded: frozenset[str] = frozenset()
    casino_tokens: frozenset[str] = frozenset()
    nfts: frozenset[str] = frozenset()
    nft_value_usd: float = 0.0
    memecoin_trades: int = 0
    diagnostics: tuple[FetchDiagnostic, ...] = ()

    @property
    def chain(self) -> ChainId:
        return self.address.chain

    @classmethod
    def missing(
        cls,
        address: Address,
        diagnostics: tuple[FetchDiagnostic, ...],
    ) -> "AddressFetchResult":
        return cls(address=address, status=ChainStatus.MISSING, diagnostics=diagnostics)


# ─────────────────────────────────────────────────────────────
# Profile and score
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DegenMetrics:
    """
    Unified per-user profile folded from every verified address.

    Built fresh for each scoring request and never persisted.
    """
    trading_volume_usd: float = 0.0
    trade_count: int = 0
    defi_protocols_used: int = 0
    casino_platforms_used: int = 0
    casino_tokens_held: int = 0
    distinct_tokens_traded: int = 0
    nft_count: int = 0
    nft_value_usd: float = 0.0
    wallet_age_days: float = 0.0
    active_days: int = 0
    total_tx_count: int = 0

    # Reported, not weighted
    bridges_used: int = 0
    memecoin_trades: int = 0
    chains_active: int = 0

    interactions: tuple[ProtocolInteraction, ...] = ()
    chain_status: tuple[tuple[ChainId, ChainStatus], ...] = ()
    diagnostics: tuple[FetchDiagnostic, ...] = ()

    def values(self) -> dict[str, float]:
        """Metric name to numeric value."""
        return {
            "trading_volume_usd": self.trading_volume_usd,
            "trade_count": self.trade_count,
            "defi_protocols_used": self.defi_protocols_used,
            "casino_platforms_used": self.casino_platforms_used,
            "casino_tokens_held": self.casino_tokens_held,
            "distinct_tokens_traded": self.distinct_tokens_traded,
            "nft_count": self.nft_count,
            "nft_value_usd": self.nft_value_usd,
            "wallet_age_days": self.wallet_age_days,
            "active_days": self.active_days,
            "total_tx_count": self.total_tx_count,
            "bridges_used": self.bridges_used,
            "memecoin_trades": self.memecoin_trades,
            "chains_active": self.chains_active,
        }

    def chains_with(self, status: ChainStatus) -> tuple[ChainId, ...]:
        return tuple(chain for chain, s in self.chain_status if s is status)

    @property
    def missing_chains(self) -> tuple[ChainId, ...]:
        return self.chains_with(ChainStatus.MISSING)

    @property
    def partial_chains(self) -> tuple[ChainId, ...]:
        return self.chains_with(ChainStatus.PARTIAL)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.values(),
            "interactions": [i.to_dict() for i in self.interactions],
            "chain_status": {chain.value: s.value for chain, s in self.chain_status},
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


@dataclass(frozen=True)
class ScoreBreakdown:
    """Weighted score with per-category points; never mutated."""
    categories: tuple[tuple[str, float], ...]
    components: tuple[tuple[str, float], ...]
    total: float
    tier: ScoreTier
    eligible: bool
    missing_chains: tuple[ChainId, ...] = ()
    partial_chains: tuple[ChainId, ...] = ()
    diagnostics: tuple[FetchDiagnostic, ...] = ()

    def category_points(self) -> dict[str, float]:
        return dict(self.categories)

    def component_points(self) -> dict[str, float]:
        return dict(self.components)

    def to_dict(self) -> dict[str, Any]:
        return {
            "categories": self.category_points(),
            "components": self.component_points(),
            "total": self.total,
            "tier": self.tier.value,
            "eligible": self.eligible,
            "missing_chains": [c.value for c in self.missing_chains],
            "partial_chains": [c.value for c in self.partial_chains],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


# ─────────────────────────────────────────────────────────────
# Verification
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Challenge:
    """Single-use proof-of-control request for one address."""
    nonce: str
    address: Address
    issued_at: datetime
    expires_at: datetime
    method: VerificationMethod = VerificationMethod.SIGNATURE
    message: str = ""

    # Micro-deposit only
    deposit_address: Optional[str] = None
    min_amount: Optional[Decimal] = None
    start_block: Optional[int] = None

    @property
    def chain(self) -> ChainId:
        return self.address.chain

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "nonce": self.nonce,
            "chain": self.chain.value,
            "address": self.address.value,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "method": self.method.value,
            "message": self.message,
            "deposit_address": self.deposit_address,
            "min_amount": str(self.min_amount) if self.min_amount is not None else None,
        }


@dataclass(frozen=True)
class VerifiedAddress:
    """Address bound to exactly one user after a successful proof."""
    user_id: str
    address: Address
    method: VerificationMethod
    verified_at: datetime

    @property
    def chain(self) -> ChainId:
        return self.address.chain

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "chain": self.chain.value,
            "address": self.address.value,
            "verification_method": self.method.value,
            "verified_at": self.verified_at.isoformat(),
        }


# ─────────────────────────────────────────────────────────────
# Cache
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CacheEntry:
    """Raw provider payload for one (chain, address, data kind)."""
    cache_key: str
    payload: Any
    fetched_at: datetime
    ttl_seconds: float

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or datetime.now(timezone.utc)) - self.fetched_at).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.age_seconds(now) >= self.ttl_seconds


class EndpointStatus(Enum):
    """Health status of an RPC endpoint."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass
class EndpointHealth:
    """Rolling health of one RPC endpoint."""
    url: str
    status: EndpointStatus = EndpointStatus.HEALTHY
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    last_error: Optional[str] = None
    unavailable_until: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "last_error": self.last_error,
            "unavailable_until": _iso(self.unavailable_until),
        }
