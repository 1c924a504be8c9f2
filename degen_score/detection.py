"""
Protocol Detection Engine - Raw chain data to protocol interactions.

Two strategies:
1. Event-based: decode known events from watched contracts; each match
   counts as one interaction and adds an amount-derived volume estimate.
2. Transfer-based: ERC-20 transfers to/from known routers, bridges and
   casinos count as interactions; tokens without a bespoke ABI (casino,
   memecoin) only count when they pass the noise filter.

NFTs are recognised structurally: ERC-721-shaped Transfer logs (tokenId
indexed) on EVM, amount 1 / decimals 0 token accounts on Solana.

Every function here is pure: the same payloads always produce the same
AddressFetchResult, which lets the orchestrator replay cached data.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Protocol

from .models import (
    Address,
    AddressFetchResult,
    ChainId,
    ChainStatus,
    DataKind,
    FetchDiagnostic,
    ProtocolInteraction,
    merge_interactions,
)
from .providers.base import RawLog
from .providers.evm import address_topic, topic_to_address
from .registry import (
    TRANSFER_SIGNATURE,
    EventSpec,
    ProtocolInfo,
    ProtocolRegistry,
    TokenInfo,
    TokenKind,
    event_topic,
    get_registry,
)


logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Price oracle
# ─────────────────────────────────────────────────────────────

class PriceOracle(Protocol):
    """USD price lookup injected into the detection engine."""

    def price_at(self, token: str, timestamp: Optional[int]) -> Optional[Decimal]:
        ...


DEFAULT_PRICES: dict[str, Decimal] = {
    "USD": Decimal(1),
    "USDC": Decimal(1),
    "USDT": Decimal(1),
    "DAI": Decimal(1),
    "USDB": Decimal(1),
}


class StaticPriceOracle:
    """
    Fixed price table keyed by token symbol or identifier.

    Stablecoins default to $1. Identifiers not in the table have no
    price, which the engine treats as zero volume.
    """

    def __init__(self, prices: Optional[dict[str, Any]] = None) -> None:
        self._prices: dict[str, Decimal] = dict(DEFAULT_PRICES)
        for token, price in (prices or {}).items():
            self._prices[token] = Decimal(str(price))

    def price_at(self, token: str, timestamp: Optional[int]) -> Optional[Decimal]:
        return self._prices.get(token)


# ─────────────────────────────────────────────────────────────
# Noise filter
# ─────────────────────────────────────────────────────────────

def is_meaningful_activity(
    transfers_in: int,
    transfers_out: int,
    total_usd: float,
    min_usd_threshold: float,
) -> bool:
    """Genuine use vs unsolicited airdrop or dust."""
    return (
        transfers_in + transfers_out > 2
        or total_usd > min_usd_threshold
        or (transfers_in > 0 and transfers_out > 0)
    )


@dataclass
class TransferStats:
    """Per-token transfer tally for one address."""
    transfers_in: int = 0
    transfers_out: int = 0
    total_usd: float = 0.0
    first_timestamp: Optional[int] = None

    def record(self, incoming: bool, usd: float, timestamp: Optional[int]) -> None:
        if incoming:
            self.transfers_in += 1
        else:
            self.transfers_out += 1
        self.total_usd += usd
        if timestamp is not None and (
            self.first_timestamp is None or timestamp < self.first_timestamp
        ):
            self.first_timestamp = timestamp

    def is_meaningful(self, min_usd_threshold: float) -> bool:
        return is_meaningful_activity(
            self.transfers_in, self.transfers_out, self.total_usd, min_usd_threshold
        )


@dataclass
class TokenClassification:
    """Token-derived facts for one address."""
    tokens_traded: set[str] = field(default_factory=set)
    casino_tokens: set[str] = field(default_factory=set)
    nfts: set[str] = field(default_factory=set)
    nft_value_usd: float = 0.0
    memecoin_trades: int = 0
    interactions: list[ProtocolInteraction] = field(default_factory=list)


def _to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _data_word(data: str, index: int) -> Optional[str]:
    body = data.removeprefix("0x")
    start = index * 64
    word = body[start:start + 64]
    return word if len(word) == 64 else None


def _word_to_int(word: str, signed: bool = False) -> int:
    value = int(word, 16)
    if signed and value >= 2 ** 255:
        value -= 2 ** 256
    return value


class _InteractionBuilder:
    """Accumulates interactions keyed by protocol."""

    def __init__(self, chain: ChainId) -> None:
        self.chain = chain
        self._records: dict[str, ProtocolInteraction] = {}

    def add(
        self,
        protocol: ProtocolInfo,
        timestamp: Optional[int],
        volume_usd: float = 0.0,
        count: int = 1,
    ) -> None:
        record = ProtocolInteraction(
            protocol_id=protocol.protocol_id,
            category=protocol.category,
            chain=self.chain,
            first_seen=_to_datetime(timestamp),
            interaction_count=count,
            volume_usd_estimate=volume_usd,
        )
        existing = self._records.get(protocol.protocol_id)
        self._records[protocol.protocol_id] = existing.merge(record) if existing else record

    def build(self) -> list[ProtocolInteraction]:
        return list(self._records.values())


class ProtocolDetector:
    """
    Classifies raw provider payloads into interactions and token facts.

    Usage:
        detector = ProtocolDetector(oracle=StaticPriceOracle({"ETH": 3000}))
        result = detector.build_result(address, payloads, ChainStatus.OK)
    """

    def __init__(
        self,
        registry: Optional[ProtocolRegistry] = None,
        oracle: Optional[PriceOracle] = None,
        min_usd_threshold: float = 10.0,
    ) -> None:
        self.registry = registry or get_registry()
        self.oracle = oracle or StaticPriceOracle()
        self.min_usd_threshold = min_usd_threshold
        self._transfer_topic = event_topic(TRANSFER_SIGNATURE)

    # ─────────────────────────────────────────────────────────────
    # Pricing
    # ─────────────────────────────────────────────────────────────

    def _token_id(self, chain: ChainId, address: str, info: Optional[TokenInfo]) -> str:
        return info.symbol if info else f"{chain.value}:{address}"

    def usd_value(
        self,
        chain: ChainId,
        token: str,
        raw_amount: int,
        timestamp: Optional[int],
    ) -> float:
        """Raw token amount in USD; zero when decimals or price are unknown."""
        info = self.registry.token(chain, token)
        if info is None or raw_amount == 0:
            return 0.0
        price = self.oracle.price_at(self._token_id(chain, token, info), timestamp)
        if price is None:
            return 0.0
        try:
            amount = Decimal(raw_amount) / (Decimal(10) ** info.decimals)
            return float(amount * price)
        except InvalidOperation:
            return 0.0

    def _holding_counts(
        self,
        chain: ChainId,
        token: str,
        info: TokenInfo,
        raw_amount: int,
    ) -> bool:
        """A balance counts when worth more than the threshold, or >= 1 unit if unpriced."""
        if raw_amount <= 0:
            return False
        price = self.oracle.price_at(self._token_id(chain, token, info), None)
        units = Decimal(raw_amount) / (Decimal(10) ** info.decimals)
        if price is None:
            return units >= 1
        return float(units * price) > self.min_usd_threshold

    # ─────────────────────────────────────────────────────────────
    # Event-based detection
    # ─────────────────────────────────────────────────────────────

    def _event_user(self, spec: EventSpec, log: RawLog) -> Optional[str]:
        if spec.user_topic is not None:
            if len(log.topics) <= spec.user_topic:
                return None
            return topic_to_address(log.topics[spec.user_topic])
        if spec.user_word is not None:
            word = _data_word(log.data, spec.user_word)
            return topic_to_address(word) if word else None
        return None

    def _event_volume(self, chain: ChainId, spec: EventSpec, log: RawLog) -> float:
        if spec.amount_word is None:
            return 0.0
        word = _data_word(log.data, spec.amount_word)
        if word is None:
            return 0.0
        amount = abs(_word_to_int(word, spec.signed_amount))

        if spec.usd_decimals is not None:
            return float(Decimal(amount) / (Decimal(10) ** spec.usd_decimals))

        token = spec.fixed_token
        if spec.token_topic is not None and len(log.topics) > spec.token_topic:
            token = topic_to_address(log.topics[spec.token_topic])
        if token is None:
            return 0.0
        return self.usd_value(chain, token, amount, log.timestamp)

    def classify_events(
        self,
        address: Address,
        logs: Iterable[RawLog],
    ) -> list[ProtocolInteraction]:
        """Interactions from decoded events of watched contracts."""
        chain = address.chain
        builder = _InteractionBuilder(chain)
        watched = {w.address: w for w in self.registry.watched_contracts(chain)}

        for log in logs:
            contract = watched.get(log.contract.lower())
            if contract is None or not log.topics:
                continue
            for spec in contract.events:
                if log.topics[0] != spec.topic:
                    continue
                if self._event_user(spec, log) != address.value:
                    continue
                builder.add(
                    contract.protocol,
                    log.timestamp,
                    self._event_volume(chain, spec, log),
                )
                break

        return builder.build()

    # ─────────────────────────────────────────────────────────────
    # Transfer-based detection (EVM)
    # ─────────────────────────────────────────────────────────────

    def classify_transfers(
        self,
        address: Address,
        logs: Iterable[RawLog],
    ) -> TokenClassification:
        """Token facts and counterparty interactions from Transfer logs."""
        chain = address.chain
        me = address_topic(address.value)
        builder = _InteractionBuilder(chain)
        stats: dict[str, TransferStats] = {}
        nft_owner: dict[str, bool] = {}

        unique: dict[tuple[str, int], RawLog] = {}
        for log in logs:
            if log.topics and log.topics[0] == self._transfer_topic:
                unique[(log.tx_hash, log.log_index)] = log
        ordered = sorted(unique.values(), key=lambda l: (l.block_number, l.log_index, l.tx_hash))

        for log in ordered:
            if len(log.topics) < 3:
                continue
            sender, recipient = log.topics[1], log.topics[2]
            if me not in (sender, recipient):
                continue
            incoming = recipient == me

            if len(log.topics) == 4:
                token_id = int(log.topics[3], 16)
                nft_owner[f"{chain.value}:{log.contract}:{token_id}"] = incoming
                continue

            word = _data_word(log.data, 0)
            amount = int(word, 16) if word else 0
            usd = self.usd_value(chain, log.contract, amount, log.timestamp)
            stats.setdefault(log.contract, TransferStats()).record(incoming, usd, log.timestamp)

            counterparty = topic_to_address(sender if incoming else recipient)
            protocol = self.registry.counterparty(chain, counterparty)
            if protocol is not None:
                builder.add(protocol, log.timestamp, usd)

        result = TokenClassification()
        for token, tally in stats.items():
            if not tally.is_meaningful(self.min_usd_threshold):
                continue
            result.tokens_traded.add(f"{chain.value}:{token}")

            info = self.registry.token(chain, token)
            if info is None:
                continue
            if info.kind is TokenKind.MEMECOIN:
                result.memecoin_trades += tally.transfers_in + tally.transfers_out
            elif info.kind is TokenKind.CASINO:
                result.casino_tokens.add(info.symbol)
                platform = self.registry.casino_platform(info.platform) if info.platform else None
                if platform is not None:
                    builder.add(
                        platform,
                        tally.first_timestamp,
                        tally.total_usd,
                        tally.transfers_in + tally.transfers_out,
                    )

        for nft, held in nft_owner.items():
            if held:
                result.nfts.add(nft)
                collection = nft.rsplit(":", 1)[0]
                price = self.oracle.price_at(f"nft:{collection}", None)
                if price is not None:
                    result.nft_value_usd += float(price)

        result.interactions = builder.build()
        return result

    def classify_balances(
        self,
        address: Address,
        balances: dict[str, int],
    ) -> set[str]:
        """Casino tokens currently held."""
        held: set[str] = set()
        for token, raw_amount in balances.items():
            info = self.registry.token(address.chain, token)
            if info is None or info.kind is not TokenKind.CASINO:
                continue
            if self._holding_counts(address.chain, token, info, raw_amount):
                held.add(info.symbol)
        return held

    # ─────────────────────────────────────────────────────────────
    # Solana
    # ─────────────────────────────────────────────────────────────

    def classify_programs(
        self,
        address: Address,
        logs: Iterable[RawLog],
    ) -> list[ProtocolInteraction]:
        """One interaction per (transaction, known program)."""
        builder = _InteractionBuilder(address.chain)
        for log in logs:
            protocol = self.registry.lookup(address.chain, log.contract)
            if protocol is not None:
                builder.add(protocol, log.timestamp)
        return builder.build()

    def classify_token_accounts(
        self,
        address: Address,
        accounts: Iterable[dict[str, Any]],
    ) -> TokenClassification:
        """NFTs, casino tokens and known tokens from SPL token accounts."""
        chain = address.chain
        result = TokenClassification()

        for account in accounts:
            mint = account["mint"]
            amount = int(account["amount"])
            decimals = int(account["decimals"])

            if amount == 1 and decimals == 0:
                result.nfts.add(f"{chain.value}:{mint}")
                price = self.oracle.price_at(f"nft:{chain.value}:{mint}", None)
                if price is not None:
                    result.nft_value_usd += float(price)
                continue

            info = self.registry.token(chain, mint)
            if info is not None:
                counts = self._holding_counts(chain, mint, info, amount)
            else:
                counts = self.usd_value(chain, mint, amount, None) > self.min_usd_threshold
            if not counts:
                continue

            result.tokens_traded.add(f"{chain.value}:{mint}")
            if info is not None and info.kind is TokenKind.CASINO:
                result.casino_tokens.add(info.symbol)

        return result

    # ─────────────────────────────────────────────────────────────
    # Result assembly
    # ─────────────────────────────────────────────────────────────

    def build_result(
        self,
        address: Address,
        payloads: dict[DataKind, Any],
        status: ChainStatus,
        diagnostics: tuple[FetchDiagnostic, ...] = (),
    ) -> AddressFetchResult:
        """Classify every available payload of one (address, chain)."""
        if status is ChainStatus.MISSING:
            return AddressFetchResult.missing(address, diagnostics)

        account = payloads.get(DataKind.ACCOUNT) or {}
        first = payloads.get(DataKind.FIRST_ACTIVITY) or {}
        protocol_logs = [RawLog.from_dict(d) for d in payloads.get(DataKind.PROTOCOL_LOGS) or []]

        interactions: list[ProtocolInteraction] = []
        tokens = TokenClassification()
        timestamps: list[int] = [l.timestamp for l in protocol_logs if l.timestamp is not None]

        if address.chain.is_evm:
            transfers = [RawLog.from_dict(d) for d in payloads.get(DataKind.TOKEN_TRANSFERS) or []]
            timestamps.extend(l.timestamp for l in transfers if l.timestamp is not None)

            interactions.extend(self.classify_events(address, protocol_logs))
            tokens = self.classify_transfers(address, transfers)
            tokens.casino_tokens |= self.classify_balances(
                address, payloads.get(DataKind.TOKEN_BALANCES) or {}
            )
        else:
            timestamps.extend(
                s["block_time"] for s in account.get("signatures", [])
                if s.get("block_time") is not None
            )
            interactions.extend(self.classify_programs(address, protocol_logs))
            tokens = self.classify_token_accounts(
                address, payloads.get(DataKind.TOKEN_ACCOUNTS) or []
            )

        interactions.extend(tokens.interactions)
        active_days = len({ts // 86_400 for ts in timestamps})

        # Receive-only EVM wallets have no nonce history; use the earliest dated activity
        first_timestamp = first.get("timestamp")
        if first_timestamp is None and timestamps:
            first_timestamp = min(timestamps)

        return AddressFetchResult(
            address=address,
            status=status,
            interactions=merge_interactions(interactions),
            tx_count=int(account.get("tx_count", 0)),
            first_seen=_to_datetime(first_timestamp),
            active_days=active_days,
            tokens_traded=frozenset(tokens.tokens_traded),
            casino_tokens=frozenset(tokens.casino_tokens),
            nfts=frozenset(tokens.nfts),
            nft_value_usd=tokens.nft_value_usd,
            memecoin_trades=tokens.memecoin_trades,
            diagnostics=diagnostics,
        )
