"""
Shared fixtures for Degen Score tests.

============================================================
FAKES
============================================================
FakeEvmProvider replaces the JSON-RPC primitives of EvmProvider
with canned chain state, so the orchestrator, the binary search
for first activity and the deposit verifier run unmodified.

============================================================
"""

import asyncio
from decimal import Decimal
from typing import Any, Optional

import pytest
import pytest_asyncio

from degen_score.config import (
    ChainConfig,
    DegenScoreConfig,
    EndpointConfig,
    FetchConfig,
)
from degen_score.models import Address, ChainId
from degen_score.providers import BlockRange, EvmProvider, RawLog, address_topic
from degen_score.registry import TRANSFER_SIGNATURE, event_topic
from degen_score.storage.database import Database


GENESIS_TIMESTAMP = 1_438_269_973
SECONDS_PER_BLOCK = 12

USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
RLB = "0x046eee2cc3188071c02bfc1745a6b17c656e3f3d"
UNISWAP_V2_ROUTER = "0x7a250d5630b4cf539739df2c5dacb4c659f2488d"


def block_timestamp(block: int) -> int:
    return GENESIS_TIMESTAMP + block * SECONDS_PER_BLOCK


class FakeEvmProvider(EvmProvider):
    """
    EvmProvider backed by in-memory chain state.

    `errors` maps a method name to exceptions raised on successive
    calls (one per call, then the method succeeds). `down` makes every
    call fail with the given error.
    """

    def __init__(
        self,
        chain_config: ChainConfig,
        url: str = "https://eth-a.test",
        latest_block: int = 20_000_000,
        tx_count: int = 25,
        first_block: Optional[int] = 19_990_000,
        native_balance: Decimal = Decimal("1.5"),
        transfer_logs: tuple[RawLog, ...] = (),
        token_balances: Optional[dict[str, int]] = None,
        block_transactions: Optional[dict[int, list[dict[str, Any]]]] = None,
        ens_names: Optional[dict[str, str]] = None,
        errors: Optional[dict[str, list[Exception]]] = None,
        down: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(chain_config, EndpointConfig(url))
        self.latest_block = latest_block
        self.tx_count = tx_count
        self.first_block = first_block
        self.native_balance = native_balance
        self.transfer_logs = transfer_logs
        self.token_balances = token_balances or {}
        self.block_transactions = block_transactions or {}
        self.ens_names = ens_names or {}
        self.errors = {k: list(v) for k, v in (errors or {}).items()}
        self.down = down
        self.delay = delay
        self.calls: list[str] = []

    async def _enter(self, method: str) -> None:
        self.calls.append(method)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.down is not None:
            raise self.down
        pending = self.errors.get(method)
        if pending:
            raise pending.pop(0)

    async def fetch_latest_block(self) -> int:
        await self._enter("fetch_latest_block")
        return self.latest_block

    async def fetch_tx_count(self, address: Address, block: Optional[int] = None) -> int:
        await self._enter("fetch_tx_count")
        if self.first_block is None:
            return 0
        if block is None or block >= self.first_block:
            return self.tx_count
        return 0

    async def fetch_native_balance(self, address: Address) -> Decimal:
        await self._enter("fetch_native_balance")
        return self.native_balance

    async def fetch_token_balance(self, address: Address, token: str) -> int:
        await self._enter("fetch_token_balance")
        return self.token_balances.get(token, 0)

    async def fetch_block_timestamp(self, block: int) -> Optional[int]:
        await self._enter("fetch_block_timestamp")
        return block_timestamp(block)

    async def fetch_block_transactions(self, block: int) -> list[dict[str, Any]]:
        await self._enter("fetch_block_transactions")
        return self.block_transactions.get(block, [])

    async def resolve_ens_name(self, name: str) -> Optional[str]:
        await self._enter("resolve_ens_name")
        return self.ens_names.get(name)

    async def fetch_logs(
        self,
        contract: Optional[str],
        event_signature: Optional[str],
        block_range: BlockRange,
        topics: tuple = (),
        **filters: Any,
    ) -> list[RawLog]:
        await self._enter("fetch_logs")
        if event_signature != TRANSFER_SIGNATURE:
            return []

        matched = []
        for log in self.transfer_logs:
            if not block_range.start <= log.block_number <= block_range.end:
                continue
            if all(
                wanted is None or (len(log.topics) > i + 1 and log.topics[i + 1] == wanted)
                for i, wanted in enumerate(topics)
            ):
                matched.append(log)
        return matched


# =============================================================
# FIXTURES
# =============================================================

@pytest.fixture
def evm_user():
    """A valid lowercase EVM address."""
    return "0x" + "ab" * 20


@pytest.fixture
def eth_chain_config():
    return ChainConfig(
        chain=ChainId.ETHEREUM,
        endpoints=(
            EndpointConfig("https://eth-a.test"),
            EndpointConfig("https://eth-b.test"),
        ),
        lookback_blocks=10_000,
        blocks_per_day=7_200,
    )


@pytest.fixture
def arb_chain_config():
    return ChainConfig(
        chain=ChainId.ARBITRUM,
        endpoints=(EndpointConfig("https://arb-a.test"),),
        lookback_blocks=10_000,
        blocks_per_day=7_200,
    )


@pytest.fixture
def fast_fetch_config():
    """No backoff sleeps, short overall timeout."""
    return FetchConfig(
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_jitter_seconds=0.0,
        overall_timeout_seconds=5.0,
    )


@pytest.fixture
def make_config(eth_chain_config, arb_chain_config, fast_fetch_config):
    """Factory for a two-chain configuration."""
    def _make(fetch: Optional[FetchConfig] = None, **overrides: Any) -> DegenScoreConfig:
        return DegenScoreConfig(
            chains={
                ChainId.ETHEREUM: eth_chain_config,
                ChainId.ARBITRUM: arb_chain_config,
            },
            fetch=fetch or fast_fetch_config,
            **overrides,
        ).validate()
    return _make


@pytest.fixture
def make_provider():
    """Factory for FakeEvmProvider."""
    def _make(chain_config: ChainConfig, **kwargs: Any) -> FakeEvmProvider:
        kwargs.setdefault("url", chain_config.endpoints[0].url)
        return FakeEvmProvider(chain_config, **kwargs)
    return _make


@pytest.fixture
def make_transfer_log():
    """Factory for ERC-20 Transfer logs (or ERC-721 with token_id)."""
    transfer_topic = event_topic(TRANSFER_SIGNATURE)

    def _make(
        token: str,
        sender: str,
        recipient: str,
        amount: int = 0,
        block: int = 19_995_000,
        log_index: int = 0,
        token_id: Optional[int] = None,
        timestamp: Optional[int] = None,
    ) -> RawLog:
        topics = [transfer_topic, address_topic(sender), address_topic(recipient)]
        data = "0x"
        if token_id is not None:
            topics.append("0x" + format(token_id, "064x"))
        else:
            data = "0x" + format(amount, "064x")
        return RawLog(
            contract=token,
            topics=tuple(topics),
            data=data,
            block_number=block,
            tx_hash=f"0x{block:x}{log_index:04x}",
            log_index=log_index,
            timestamp=timestamp,
        )
    return _make


@pytest.fixture
def usdc_swaps(make_transfer_log):
    """Factory: `count` USDC transfers of 1000 USDC to the Uniswap V2 router."""
    def _make(user: str, count: int = 3, first_block: int = 19_991_000) -> tuple[RawLog, ...]:
        return tuple(
            make_transfer_log(
                USDC,
                user,
                UNISWAP_V2_ROUTER,
                amount=1_000 * 10 ** 6,
                block=first_block + i * 3_000,
            )
            for i in range(count)
        )
    return _make


@pytest_asyncio.fixture
async def database():
    """Fresh in-memory database per test."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.connect()
    yield db
    await db.disconnect()
