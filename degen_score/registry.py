"""
Protocol Registry - Static table of known contracts, events and tokens.

Maps (chain, contract address) to a protocol id and category, lists the
event signatures worth decoding per contract, and labels tokens (stable,
casino, memecoin) for transfer-based detection.

EVM addresses are keyed lowercase; Solana program ids and mints are
case-sensitive base-58 strings.
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Optional

from web3 import Web3

from .models import ChainId, ProtocolCategory


class TokenKind(Enum):
    """Label used by transfer-based detection."""
    STABLE = "stable"
    CASINO = "casino"
    MEMECOIN = "memecoin"
    OTHER = "other"


@dataclass(frozen=True)
class ProtocolInfo:
    """A known on-chain application."""
    protocol_id: str
    category: ProtocolCategory
    name: str = ""


@dataclass(frozen=True)
class TokenInfo:
    """A labelled fungible token."""
    symbol: str
    decimals: int
    kind: TokenKind = TokenKind.OTHER
    platform: Optional[str] = None  # Casino platform that issued the token


@dataclass(frozen=True)
class EventSpec:
    """
    Layout of an event worth decoding.

    user_topic / user_word locate the address that performed the action
    (indexed topic or 32-byte data word). amount_word locates the amount.
    The amount is denominated either in the token found at token_topic,
    in a fixed token, or in USD with usd_decimals decimals.
    """
    name: str
    signature: str
    user_topic: Optional[int] = None
    user_word: Optional[int] = None
    amount_word: Optional[int] = None
    token_topic: Optional[int] = None
    fixed_token: Optional[str] = None
    usd_decimals: Optional[int] = None
    signed_amount: bool = False

    @property
    def topic(self) -> str:
        return event_topic(self.signature)


@dataclass(frozen=True)
class WatchedContract:
    """Contract whose events are fetched with fetch_logs."""
    chain: ChainId
    address: str
    protocol: ProtocolInfo
    events: tuple[EventSpec, ...] = field(default_factory=tuple)


@lru_cache(maxsize=None)
def event_topic(signature: str) -> str:
    """keccak256 of an event signature as 0x-prefixed hex."""
    return Web3.to_hex(Web3.keccak(text=signature))


TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"


# ─────────────────────────────────────────────────────────────
# Protocols
# ─────────────────────────────────────────────────────────────

UNISWAP_V2 = ProtocolInfo("uniswap_v2", ProtocolCategory.DEX, "Uniswap V2")
UNISWAP_V3 = ProtocolInfo("uniswap_v3", ProtocolCategory.DEX, "Uniswap V3")
UNISWAP_UNIVERSAL = ProtocolInfo("uniswap_universal", ProtocolCategory.DEX, "Uniswap Universal Router")
SUSHISWAP = ProtocolInfo("sushiswap", ProtocolCategory.DEX, "SushiSwap")
CAMELOT = ProtocolInfo("camelot", ProtocolCategory.DEX, "Camelot")
GMX = ProtocolInfo("gmx", ProtocolCategory.PERPS, "GMX")
PERP_V2 = ProtocolInfo("perp_v2", ProtocolCategory.PERPS, "Perpetual Protocol")
AAVE_V2 = ProtocolInfo("aave_v2", ProtocolCategory.LENDING, "Aave V2")
AAVE_V3 = ProtocolInfo("aave_v3", ProtocolCategory.LENDING, "Aave V3")
COMPOUND_V2 = ProtocolInfo("compound_v2", ProtocolCategory.LENDING, "Compound")
HOP = ProtocolInfo("hop", ProtocolCategory.BRIDGE, "Hop Protocol")
ACROSS = ProtocolInfo("across", ProtocolCategory.BRIDGE, "Across")
HYPERLIQUID_BRIDGE = ProtocolInfo("hyperliquid", ProtocolCategory.BRIDGE, "Hyperliquid Bridge")
ROLLBIT = ProtocolInfo("rollbit", ProtocolCategory.CASINO, "Rollbit")
SHUFFLE = ProtocolInfo("shuffle", ProtocolCategory.CASINO, "Shuffle")
YEET = ProtocolInfo("yeet", ProtocolCategory.CASINO, "Yeet")
WINR = ProtocolInfo("winr", ProtocolCategory.CASINO, "WINR Protocol")

JUPITER = ProtocolInfo("jupiter", ProtocolCategory.DEX, "Jupiter")
RAYDIUM = ProtocolInfo("raydium", ProtocolCategory.DEX, "Raydium")
ORCA = ProtocolInfo("orca", ProtocolCategory.DEX, "Orca Whirlpools")
PUMP_FUN = ProtocolInfo("pump_fun", ProtocolCategory.DEX, "Pump.fun")
DRIFT = ProtocolInfo("drift", ProtocolCategory.PERPS, "Drift")
MARGINFI = ProtocolInfo("marginfi", ProtocolCategory.LENDING, "marginfi")
SOLEND = ProtocolInfo("solend", ProtocolCategory.LENDING, "Solend")
WORMHOLE = ProtocolInfo("wormhole", ProtocolCategory.BRIDGE, "Wormhole")
MAGIC_EDEN = ProtocolInfo("magic_eden", ProtocolCategory.NFT, "Magic Eden")

CASINO_PLATFORMS: dict[str, ProtocolInfo] = {
    p.protocol_id: p for p in (ROLLBIT, SHUFFLE, YEET, WINR)
}


# ─────────────────────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────────────────────

GMX_INCREASE_POSITION = EventSpec(
    name="IncreasePosition",
    signature="IncreasePosition(bytes32,address,address,address,uint256,uint256,bool,uint256,uint256)",
    user_word=1,
    amount_word=5,  # sizeDelta
    usd_decimals=30,
)
GMX_DECREASE_POSITION = EventSpec(
    name="DecreasePosition",
    signature="DecreasePosition(bytes32,address,address,address,uint256,uint256,bool,uint256,uint256)",
    user_word=1,
    amount_word=5,
    usd_decimals=30,
)
PERP_POSITION_CHANGED = EventSpec(
    name="PositionChanged",
    signature="PositionChanged(address,address,int256,int256,uint256,int256,int256,uint256)",
    user_topic=1,
    amount_word=1,  # exchangedPositionNotional
    usd_decimals=18,
    signed_amount=True,
)
AAVE_V2_DEPOSIT = EventSpec(
    name="Deposit",
    signature="Deposit(address,address,address,uint256,uint16)",
    user_topic=2,  # onBehalfOf
    amount_word=1,
    token_topic=1,  # reserve
)
AAVE_V2_BORROW = EventSpec(
    name="Borrow",
    signature="Borrow(address,address,address,uint256,uint256,uint256,uint16)",
    user_topic=2,
    amount_word=1,
    token_topic=1,
)
AAVE_V3_SUPPLY = EventSpec(
    name="Supply",
    signature="Supply(address,address,address,uint256,uint16)",
    user_topic=2,
    amount_word=1,
    token_topic=1,
)
AAVE_V3_BORROW = EventSpec(
    name="Borrow",
    signature="Borrow(address,address,address,uint256,uint8,uint256,uint16)",
    user_topic=2,
    amount_word=1,
    token_topic=1,
)


def _compound_events(underlying: str) -> tuple[EventSpec, ...]:
    return (
        EventSpec(
            name="Mint",
            signature="Mint(address,uint256,uint256)",
            user_word=0,
            amount_word=1,
            fixed_token=underlying,
        ),
        EventSpec(
            name="Borrow",
            signature="Borrow(address,uint256,uint256,uint256)",
            user_word=0,
            amount_word=1,
            fixed_token=underlying,
        ),
    )


# ─────────────────────────────────────────────────────────────
# Tokens
# ─────────────────────────────────────────────────────────────

_EVM_TOKENS: dict[ChainId, dict[str, TokenInfo]] = {
    ChainId.ETHEREUM: {
        "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": TokenInfo("USDC", 6, TokenKind.STABLE),
        "0xdac17f958d2ee523a2206206994597c13d831ec7": TokenInfo("USDT", 6, TokenKind.STABLE),
        "0x6b175474e89094c44da98b954eedeac495271d0f": TokenInfo("DAI", 18, TokenKind.STABLE),
        "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2": TokenInfo("WETH", 18),
        "0x2260fac5e5542a773aa44fbcfedf7c193bc2c599": TokenInfo("WBTC", 8),
        "0x046eee2cc3188071c02bfc1745a6b17c656e3f3d": TokenInfo("RLB", 18, TokenKind.CASINO, "rollbit"),
        "0x8881562783028f5c1bcb985d2283d5e170d88888": TokenInfo("SHFL", 18, TokenKind.CASINO, "shuffle"),
        "0x89581561f1f98584f88b0d57c2180fb89225388f": TokenInfo("YEET", 18, TokenKind.CASINO, "yeet"),
        "0x6982508145454ce325ddbe47a25d4ec3d2311933": TokenInfo("PEPE", 18, TokenKind.MEMECOIN),
        "0x95ad61b0a150d79219dcf64e1e6cc01f0b64c4ce": TokenInfo("SHIB", 18, TokenKind.MEMECOIN),
        "0xcf0c122c6b73ff809c693db761e7baebe62b6a2e": TokenInfo("FLOKI", 9, TokenKind.MEMECOIN),
    },
    ChainId.ARBITRUM: {
        "0xaf88d065e77c8cc2239327c5edb3a432268e5831": TokenInfo("USDC", 6, TokenKind.STABLE),
        "0xfd086bc7cd5c481dcc9c85ebe478a1c0b69fcbb9": TokenInfo("USDT", 6, TokenKind.STABLE),
        "0x82af49447d8a07e3bd95bd0d56f35241523fbab1": TokenInfo("WETH", 18),
        "0x1be3735dd0c0eb229fb11094b6c277192349ebbf": TokenInfo("RLB", 18, TokenKind.CASINO, "rollbit"),
        "0xd77b108d4f6cefaa0cae9506a934e825becca46e": TokenInfo("WINR", 18, TokenKind.CASINO, "winr"),
    },
    ChainId.OPTIMISM: {
        "0x0b2c639c533813f4aa9d7837caf62653d097ff85": TokenInfo("USDC", 6, TokenKind.STABLE),
        "0x4200000000000000000000000000000000000006": TokenInfo("WETH", 18),
    },
    ChainId.BLAST: {
        "0x4300000000000000000000000000000000000003": TokenInfo("USDB", 18, TokenKind.STABLE),
        "0x4300000000000000000000000000000000000004": TokenInfo("WETH", 18),
    },
}

_SOLANA_TOKENS: dict[str, TokenInfo] = {
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v": TokenInfo("USDC", 6, TokenKind.STABLE),
    "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB": TokenInfo("USDT", 6, TokenKind.STABLE),
    "So11111111111111111111111111111111111111112": TokenInfo("SOL", 9),
    "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263": TokenInfo("BONK", 5, TokenKind.MEMECOIN),
    "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm": TokenInfo("WIF", 6, TokenKind.MEMECOIN),
}


# ─────────────────────────────────────────────────────────────
# Contracts
# ─────────────────────────────────────────────────────────────

_AAVE_V3_POOL = "0x794a61358d6845594f94dc1db02a252b5b4814ad"
_UNISWAP_V3_ROUTER = "0xe592427a0aece92de3edee1f18e0157c05861564"

_WATCHED_CONTRACTS: tuple[WatchedContract, ...] = (
    WatchedContract(
        ChainId.ETHEREUM,
        "0x7d2768de32b0b80b7a3454c06bdac94a69ddc7a9",
        AAVE_V2,
        (AAVE_V2_DEPOSIT, AAVE_V2_BORROW),
    ),
    WatchedContract(
        ChainId.ETHEREUM,
        "0x39aa39c021dfbae8fac545936693ac917d5e7563",  # cUSDC
        COMPOUND_V2,
        _compound_events("0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"),
    ),
    WatchedContract(
        ChainId.ETHEREUM,
        "0x5d3a536e4d6dbd6114cc1ead35777bab948e3643",  # cDAI
        COMPOUND_V2,
        _compound_events("0x6b175474e89094c44da98b954eedeac495271d0f"),
    ),
    WatchedContract(
        ChainId.ARBITRUM,
        "0x489ee077994b6658eafa855c308275ead8097c4a",
        GMX,
        (GMX_INCREASE_POSITION, GMX_DECREASE_POSITION),
    ),
    WatchedContract(ChainId.ARBITRUM, _AAVE_V3_POOL, AAVE_V3, (AAVE_V3_SUPPLY, AAVE_V3_BORROW)),
    WatchedContract(ChainId.OPTIMISM, _AAVE_V3_POOL, AAVE_V3, (AAVE_V3_SUPPLY, AAVE_V3_BORROW)),
    WatchedContract(
        ChainId.OPTIMISM,
        "0x82ac2ce43e33583cd50c42a43b7b4a525f0459bc",
        PERP_V2,
        (PERP_POSITION_CHANGED,),
    ),
)

# Counterparties recognised in token transfers (routers, bridges, casinos)
_COUNTERPARTIES: dict[ChainId, dict[str, ProtocolInfo]] = {
    ChainId.ETHEREUM: {
        "0x7a250d5630b4cf539739df2c5dacb4c659f2488d": UNISWAP_V2,
        _UNISWAP_V3_ROUTER: UNISWAP_V3,
        "0x3fc91a3afd70395cd496c647d5a6cc9d4b2b7fad": UNISWAP_UNIVERSAL,
        "0xd9e1ce17f2641f24ae83637ab66a2cca9c378b9f": SUSHISWAP,
        "0x3666f603cc164936c1b87e207f36beba4ac5f18a": HOP,
        "0x4d9079bb4165aeb4084c526a32695dcfd2f77381": ACROSS,
        "0xda83c3bdbcd4ec35f87d75d718556dd60e07f201": ROLLBIT,  # lottery
        "0x6ef13c2dbdcf8691d8d311f7e4558b5b3eb3d3c7": ROLLBIT,  # staking
        "0xa56472f02f29b3c3b5e29f0be08bb3639abe86c0": SHUFFLE,
    },
    ChainId.ARBITRUM: {
        _UNISWAP_V3_ROUTER: UNISWAP_V3,
        "0xc873fecbd354f5a56e00e710b90ef4201db2448d": CAMELOT,
        "0x2df1c51e09aecf9cacb7bc98cb1742757f163df7": HYPERLIQUID_BRIDGE,
    },
    ChainId.OPTIMISM: {
        _UNISWAP_V3_ROUTER: UNISWAP_V3,
    },
    ChainId.BLAST: {},
}

_SOLANA_PROGRAMS: dict[str, ProtocolInfo] = {
    "JUP4Fb2cqiRUcaTHdrPC8h2gNsA2ETXiPDD33WcGuJB": JUPITER,
    "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4": JUPITER,
    "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8": RAYDIUM,
    "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc": ORCA,
    "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P": PUMP_FUN,
    "dRiftyHA39MWEi3m9aunc5MzRF1JYuBsbn6VPcn33UH": DRIFT,
    "MFv2hWf31Z9kbCa1snEPYctwafyhdvnV7FZnsebVacA": MARGINFI,
    "So1endDq2YkqhipRh3WViPa8hdiSpxWy6z3Z6tMCpAo": SOLEND,
    "worm2ZoG2kUd4vFXhvjh93UUH596ayRfgQ2MgjNMTth": WORMHOLE,
    "M2mx93ekt1fmXSVkTrUL9xVFHkmME8HTUi5Cyc5aF7K": MAGIC_EDEN,
}


class ProtocolRegistry:
    """
    Read-only lookup over the protocol, event and token tables.

    A registry is built once and passed to the detection engine; custom
    tables can be supplied for tests or additional deployments.
    """

    def __init__(
        self,
        watched: tuple[WatchedContract, ...] = _WATCHED_CONTRACTS,
        counterparties: Optional[dict[ChainId, dict[str, ProtocolInfo]]] = None,
        evm_tokens: Optional[dict[ChainId, dict[str, TokenInfo]]] = None,
        solana_programs: Optional[dict[str, ProtocolInfo]] = None,
        solana_tokens: Optional[dict[str, TokenInfo]] = None,
    ) -> None:
        self._watched = watched
        self._counterparties = counterparties if counterparties is not None else _COUNTERPARTIES
        self._evm_tokens = evm_tokens if evm_tokens is not None else _EVM_TOKENS
        self._solana_programs = solana_programs if solana_programs is not None else _SOLANA_PROGRAMS
        self._solana_tokens = solana_tokens if solana_tokens is not None else _SOLANA_TOKENS

    @staticmethod
    def _key(chain: ChainId, address: str) -> str:
        return address.lower() if chain.is_evm else address

    def lookup(self, chain: ChainId, contract: str) -> Optional[ProtocolInfo]:
        """Protocol for a contract or program address, if known."""
        key = self._key(chain, contract)
        if chain is ChainId.SOLANA:
            return self._solana_programs.get(key)

        for watched in self._watched:
            if watched.chain is chain and watched.address == key:
                return watched.protocol
        return self._counterparties.get(chain, {}).get(key)

    def watched_contracts(self, chain: ChainId) -> list[WatchedContract]:
        return [w for w in self._watched if w.chain is chain]

    def counterparty(self, chain: ChainId, address: str) -> Optional[ProtocolInfo]:
        """
        Protocol attributed to a token transfer with `address`.

        Watched contracts are counted from their decoded events, so a
        transfer to one of them is not attributed a second time.
        """
        key = self._key(chain, address)
        if any(w.chain is chain and w.address == key for w in self._watched):
            return None
        return self._counterparties.get(chain, {}).get(key)

    def token(self, chain: ChainId, address: str) -> Optional[TokenInfo]:
        if chain is ChainId.SOLANA:
            return self._solana_tokens.get(address)
        return self._evm_tokens.get(chain, {}).get(address.lower())

    def tokens(self, chain: ChainId, kind: Optional[TokenKind] = None) -> dict[str, TokenInfo]:
        table = self._solana_tokens if chain is ChainId.SOLANA else self._evm_tokens.get(chain, {})
        return {
            address: info for address, info in table.items()
            if kind is None or info.kind is kind
        }

    def solana_programs(self) -> dict[str, ProtocolInfo]:
        return dict(self._solana_programs)

    def casino_platform(self, platform_id: str) -> Optional[ProtocolInfo]:
        return CASINO_PLATFORMS.get(platform_id)


_default_registry: Optional[ProtocolRegistry] = None


def get_registry() -> ProtocolRegistry:
    """Shared read-only default registry."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ProtocolRegistry()
    return _default_registry
