"""
Tests for Protocol Detection.

============================================================
PURPOSE
============================================================
- Noise filter (airdrop spam vs genuine activity)
- Event-based detection of watched contracts
- Transfer-based detection of routers and casino tokens
- NFT ownership, casino token holdings
- Solana program and token account classification

============================================================
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from degen_score.detection import (
    ProtocolDetector,
    StaticPriceOracle,
    TransferStats,
    is_meaningful_activity,
)
from degen_score.models import Address, ChainId, ChainStatus, DataKind, ProtocolCategory
from degen_score.providers import RawLog, address_topic
from degen_score.registry import AAVE_V2_DEPOSIT, GMX_INCREASE_POSITION


USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
RLB = "0x046eee2cc3188071c02bfc1745a6b17c656e3f3d"
PEPE = "0x6982508145454ce325ddbe47a25d4ec3d2311933"
UNISWAP_V2_ROUTER = "0x7a250d5630b4cf539739df2c5dacb4c659f2488d"
AAVE_V2_POOL = "0x7d2768de32b0b80b7a3454c06bdac94a69ddc7a9"
NFT_COLLECTION = "0x" + "77" * 20
STRANGER = "0x" + "99" * 20

SOLANA_USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
JUPITER = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"

ARB_USDC = "0xaf88d065e77c8cc2239327c5edb3a432268e5831"
GMX_VAULT = "0x489ee077994b6658eafa855c308275ead8097c4a"


@pytest.fixture
def user(evm_user):
    return Address.parse(ChainId.ETHEREUM, evm_user)


@pytest.fixture
def detector():
    return ProtocolDetector(oracle=StaticPriceOracle(), min_usd_threshold=10.0)


# ============================================================
# NOISE FILTER
# ============================================================

class TestNoiseFilter:
    """Airdropped spam must not count as activity."""

    @pytest.mark.parametrize("transfers_in,transfers_out,usd,expected", [
        (1, 0, 0.0, False),     # unsolicited airdrop
        (2, 0, 5.0, False),     # two dust airdrops
        (1, 0, 50.0, True),     # meaningful value
        (1, 1, 0.0, True),      # received and sent
        (3, 0, 0.0, True),      # repeated use
        (0, 1, 10.0, False),    # exactly at threshold is not above it
    ])
    def test_is_meaningful_activity(self, transfers_in, transfers_out, usd, expected):
        assert is_meaningful_activity(transfers_in, transfers_out, usd, 10.0) is expected

    def test_transfer_stats_tracks_first_timestamp(self):
        stats = TransferStats()
        stats.record(True, 1.0, 200)
        stats.record(False, 2.0, 100)
        stats.record(False, 0.0, None)
        assert stats.first_timestamp == 100
        assert stats.transfers_in == 1
        assert stats.transfers_out == 2
        assert stats.total_usd == 3.0


# ============================================================
# EVENT-BASED DETECTION
# ============================================================

class TestEventDetection:

    def _aave_deposit(self, on_behalf_of: str, amount: int) -> RawLog:
        return RawLog(
            contract=AAVE_V2_POOL,
            topics=(AAVE_V2_DEPOSIT.topic, address_topic(USDC), address_topic(on_behalf_of)),
            data="0x" + "00" * 32 + format(amount, "064x"),
            block_number=100,
            tx_hash="0xaaa",
            timestamp=1_700_000_000,
        )

    def test_aave_deposit_detected_with_volume(self, detector, user):
        interactions = detector.classify_events(user, [self._aave_deposit(user.value, 500 * 10 ** 6)])
        assert len(interactions) == 1
        interaction = interactions[0]
        assert interaction.protocol_id == "aave_v2"
        assert interaction.category is ProtocolCategory.LENDING
        assert interaction.interaction_count == 1
        assert interaction.volume_usd_estimate == pytest.approx(500.0)
        assert interaction.first_seen == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_event_for_other_user_ignored(self, detector, user):
        assert detector.classify_events(user, [self._aave_deposit(STRANGER, 10 ** 6)]) == []

    def test_unwatched_contract_ignored(self, detector, user):
        log = self._aave_deposit(user.value, 10 ** 6)
        stray = RawLog(
            contract=STRANGER,
            topics=log.topics,
            data=log.data,
            block_number=log.block_number,
            tx_hash=log.tx_hash,
        )
        assert detector.classify_events(user, [stray]) == []


# ============================================================
# TRANSFER-BASED DETECTION
# ============================================================

class TestTransferDetection:

    def test_router_transfers_become_dex_interactions(self, detector, user, usdc_swaps):
        result = detector.classify_transfers(user, usdc_swaps(user.value, count=3))

        assert len(result.interactions) == 1
        swap = result.interactions[0]
        assert swap.protocol_id == "uniswap_v2"
        assert swap.interaction_count == 3
        assert swap.volume_usd_estimate == pytest.approx(3_000.0)
        assert result.tokens_traded == {f"ethereum:{USDC}"}

    def test_duplicate_logs_counted_once(self, detector, user, usdc_swaps):
        swaps = usdc_swaps(user.value, count=2)
        result = detector.classify_transfers(user, swaps + swaps)
        assert result.interactions[0].interaction_count == 2

    def test_airdropped_casino_token_ignored(self, detector, user, make_transfer_log):
        airdrop = make_transfer_log(RLB, STRANGER, user.value, amount=10 ** 18)
        result = detector.classify_transfers(user, [airdrop])
        assert result.casino_tokens == set()
        assert result.interactions == []
        assert result.tokens_traded == set()

    def test_casino_token_activity_counts_platform(self, detector, user, make_transfer_log):
        logs = [
            make_transfer_log(RLB, STRANGER, user.value, amount=10 ** 18, block=1, log_index=0),
            make_transfer_log(RLB, STRANGER, user.value, amount=10 ** 18, block=2, log_index=0),
            make_transfer_log(RLB, user.value, STRANGER, amount=10 ** 18, block=3, log_index=0),
        ]
        result = detector.classify_transfers(user, logs)

        assert result.casino_tokens == {"RLB"}
        assert [(i.protocol_id, i.interaction_count) for i in result.interactions] == [("rollbit", 3)]
        assert result.interactions[0].category is ProtocolCategory.CASINO

    def test_memecoin_trades_counted(self, detector, user, make_transfer_log):
        logs = [
            make_transfer_log(PEPE, STRANGER, user.value, amount=10 ** 24, block=1),
            make_transfer_log(PEPE, user.value, STRANGER, amount=10 ** 24, block=2),
        ]
        result = detector.classify_transfers(user, logs)
        assert result.memecoin_trades == 2

    def test_nft_held_only_if_not_sent_away(self, detector, user, make_transfer_log):
        kept = make_transfer_log(NFT_COLLECTION, STRANGER, user.value, token_id=1, block=10)
        received = make_transfer_log(NFT_COLLECTION, STRANGER, user.value, token_id=2, block=11)
        sold = make_transfer_log(NFT_COLLECTION, user.value, STRANGER, token_id=2, block=12)

        result = detector.classify_transfers(user, [sold, received, kept])
        assert result.nfts == {f"ethereum:{NFT_COLLECTION}:1"}

    def test_nft_value_from_oracle(self, user, make_transfer_log):
        oracle = StaticPriceOracle({f"nft:ethereum:{NFT_COLLECTION}": 250})
        detector = ProtocolDetector(oracle=oracle)
        log = make_transfer_log(NFT_COLLECTION, STRANGER, user.value, token_id=5)
        result = detector.classify_transfers(user, [log])
        assert result.nft_value_usd == pytest.approx(250.0)


# ============================================================
# HOLDINGS
# ============================================================

class TestCasinoHoldings:

    def test_unpriced_token_counts_from_one_unit(self, detector, user):
        assert detector.classify_balances(user, {RLB: 5 * 10 ** 18}) == {"RLB"}
        assert detector.classify_balances(user, {RLB: 10 ** 17}) == set()

    def test_priced_token_needs_value_above_threshold(self, user):
        detector = ProtocolDetector(oracle=StaticPriceOracle({"RLB": Decimal("0.1")}))
        assert detector.classify_balances(user, {RLB: 5 * 10 ** 18}) == set()
        assert detector.classify_balances(user, {RLB: 500 * 10 ** 18}) == {"RLB"}

    def test_non_casino_token_ignored(self, detector, user):
        assert detector.classify_balances(user, {USDC: 10 ** 12}) == set()


# ============================================================
# SOLANA
# ============================================================

class TestSolanaDetection:

    @pytest.fixture
    def sol_user(self):
        return Address.parse(ChainId.SOLANA, "11111111111111111111111111111111")

    def test_program_invocations_counted_per_transaction(self, detector, sol_user):
        logs = [
            RawLog(contract=JUPITER, topics=("Route",), data="", block_number=1, tx_hash="a", timestamp=100),
            RawLog(contract=JUPITER, topics=("Route",), data="", block_number=2, tx_hash="b", timestamp=50),
            RawLog(contract="Unknown1111111111111111111111111", topics=(), data="", block_number=3, tx_hash="c"),
        ]
        interactions = detector.classify_programs(sol_user, logs)
        assert len(interactions) == 1
        assert interactions[0].protocol_id == "jupiter"
        assert interactions[0].interaction_count == 2
        assert interactions[0].first_seen == datetime.fromtimestamp(50, tz=timezone.utc)

    def test_token_accounts(self, detector, sol_user):
        accounts = [
            {"mint": "NftMint111111111111111111111111111", "amount": 1, "decimals": 0},
            {"mint": SOLANA_USDC, "amount": 50 * 10 ** 6, "decimals": 6},
            {"mint": "Dust1111111111111111111111111111111", "amount": 3, "decimals": 6},
        ]
        result = detector.classify_token_accounts(sol_user, accounts)
        assert result.nfts == {"solana:NftMint111111111111111111111111111"}
        assert result.tokens_traded == {f"solana:{SOLANA_USDC}"}


# ============================================================
# RESULT ASSEMBLY
# ============================================================

class TestBuildResult:

    def test_missing_status_ignores_payloads(self, detector, user):
        result = detector.build_result(user, {DataKind.ACCOUNT: {"tx_count": 5}}, ChainStatus.MISSING)
        assert result.status is ChainStatus.MISSING
        assert result.tx_count == 0

    def test_evm_result_from_payloads(self, detector, user, usdc_swaps):
        payloads = {
            DataKind.ACCOUNT: {"latest_block": 20_000_000, "tx_count": 42, "native_balance": "1"},
            DataKind.FIRST_ACTIVITY: {"block": 1_000, "timestamp": 1_500_000_000},
            DataKind.TOKEN_TRANSFERS: [
                log.with_timestamp(1_700_000_000 + i * 86_400).to_dict()
                for i, log in enumerate(usdc_swaps(user.value, count=3))
            ],
            DataKind.TOKEN_BALANCES: {RLB: 2 * 10 ** 18},
        }
        result = detector.build_result(user, payloads, ChainStatus.PARTIAL)

        assert result.status is ChainStatus.PARTIAL
        assert result.tx_count == 42
        assert result.first_seen == datetime.fromtimestamp(1_500_000_000, tz=timezone.utc)
        assert result.active_days == 3
        assert result.casino_tokens == frozenset({"RLB"})
        assert [i.protocol_id for i in result.interactions] == ["uniswap_v2"]

    def test_build_result_is_deterministic(self, detector, user, usdc_swaps):
        payloads = {
            DataKind.ACCOUNT: {"tx_count": 1},
            DataKind.TOKEN_TRANSFERS: [l.to_dict() for l in usdc_swaps(user.value)],
        }
        first = detector.build_result(user, payloads, ChainStatus.OK)
        second = detector.build_result(user, payloads, ChainStatus.OK)
        assert first == second

    def test_watched_contract_not_counted_twice(self, detector, evm_user, make_transfer_log):
        """A GMX position emits an event and moves collateral to the vault in one tx."""
        arb_user = Address.parse(ChainId.ARBITRUM, evm_user)
        words = [
            "00" * 32,                                            # key
            address_topic(evm_user).removeprefix("0x"),           # account
            address_topic(ARB_USDC).removeprefix("0x"),           # collateralToken
            "00" * 32,                                            # indexToken
            format(1_000 * 10 ** 30, "064x"),                     # collateralDelta
            format(10_000 * 10 ** 30, "064x"),                    # sizeDelta
        ] + ["00" * 32] * 3
        position = RawLog(
            contract=GMX_VAULT,
            topics=(GMX_INCREASE_POSITION.topic,),
            data="0x" + "".join(words),
            block_number=19_995_000,
            tx_hash="0x4c2",
            log_index=3,
            timestamp=1_700_000_000,
        )
        collateral = make_transfer_log(
            ARB_USDC, evm_user, GMX_VAULT, amount=1_000 * 10 ** 6, log_index=1, timestamp=1_700_000_000,
        )
        payloads = {
            DataKind.ACCOUNT: {"tx_count": 1},
            DataKind.PROTOCOL_LOGS: [position.to_dict()],
            DataKind.TOKEN_TRANSFERS: [collateral.to_dict()],
        }

        result = detector.build_result(arb_user, payloads, ChainStatus.OK)

        [gmx] = result.interactions
        assert gmx.protocol_id == "gmx"
        assert gmx.interaction_count == 1
        assert gmx.volume_usd_estimate == pytest.approx(10_000.0)

    def test_transfer_to_watched_contract_has_no_counterparty(self, detector):
        assert detector.registry.counterparty(ChainId.ARBITRUM, GMX_VAULT) is None
        assert detector.registry.lookup(ChainId.ARBITRUM, GMX_VAULT).protocol_id == "gmx"

    def test_first_seen_falls_back_to_earliest_activity(self, detector, user, usdc_swaps):
        """Receive-only wallet: no nonce history, but dated transfers in the window."""
        payloads = {
            DataKind.ACCOUNT: {"tx_count": 0},
            DataKind.FIRST_ACTIVITY: {"block": None, "timestamp": None},
            DataKind.TOKEN_TRANSFERS: [
                log.with_timestamp(1_700_000_000 - i * 86_400).to_dict()
                for i, log in enumerate(usdc_swaps(user.value, count=3))
            ],
        }
        result = detector.build_result(user, payloads, ChainStatus.OK)

        assert result.first_seen == datetime.fromtimestamp(1_700_000_000 - 2 * 86_400, tz=timezone.utc)

    def test_first_activity_preferred_over_transfers(self, detector, user, usdc_swaps):
        payloads = {
            DataKind.ACCOUNT: {"tx_count": 3},
            DataKind.FIRST_ACTIVITY: {"block": 1_000, "timestamp": 1_600_000_000},
            DataKind.TOKEN_TRANSFERS: [
                log.with_timestamp(1_500_000_000).to_dict() for log in usdc_swaps(user.value, count=1)
            ],
        }
        result = detector.build_result(user, payloads, ChainStatus.OK)

        assert result.first_seen == datetime.fromtimestamp(1_600_000_000, tz=timezone.utc)

    def test_no_dated_activity_leaves_first_seen_empty(self, detector, user):
        result = detector.build_result(user, {DataKind.ACCOUNT: {"tx_count": 0}}, ChainStatus.OK)
        assert result.first_seen is None
