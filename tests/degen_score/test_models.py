"""
Tests for Degen Score data models.

============================================================
PURPOSE
============================================================
- Address validation and canonical form
- Tier derivation from totals
- Interaction merging
- Cache keys

============================================================
"""

from datetime import datetime, timedelta, timezone

import pytest
from solders.keypair import Keypair

from degen_score.exceptions import InvalidAddressError
from degen_score.models import (
    Address,
    ChainId,
    DataKind,
    ProtocolCategory,
    ProtocolInteraction,
    ScoreTier,
    make_cache_key,
    merge_interactions,
)


# ============================================================
# ADDRESS TESTS
# ============================================================

class TestAddress:
    """Tests for Address.parse."""

    def test_evm_address_is_lowercased(self):
        address = Address.parse(ChainId.ETHEREUM, "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")
        assert address.value == "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
        assert address.chain is ChainId.ETHEREUM

    def test_evm_address_whitespace_stripped(self):
        address = Address.parse(ChainId.ARBITRUM, "  0x" + "11" * 20 + "\n")
        assert address.value == "0x" + "11" * 20

    @pytest.mark.parametrize("raw", [
        "0x1234",
        "5aaeb6053f3e94c9b9a09f33669435e7ef1beaed",
        "0x" + "zz" * 20,
        "",
    ])
    def test_invalid_evm_address_rejected(self, raw):
        with pytest.raises(InvalidAddressError) as exc_info:
            Address.parse(ChainId.ETHEREUM, raw)
        assert exc_info.value.chain is ChainId.ETHEREUM

    def test_solana_address_kept_verbatim(self):
        raw = str(Keypair().pubkey())
        address = Address.parse(ChainId.SOLANA, raw)
        assert address.value == raw

    def test_solana_address_case_sensitive(self):
        raw = str(Keypair().pubkey())
        swapped = raw.swapcase()
        if swapped == raw:
            pytest.skip("address has no letters")
        # Either invalid or a different key, never equal
        try:
            other = Address.parse(ChainId.SOLANA, swapped)
        except InvalidAddressError:
            return
        assert other != Address.parse(ChainId.SOLANA, raw)

    @pytest.mark.parametrize("raw", [
        "1111",
        "0x" + "ab" * 20,
        "O0Il" * 10,
    ])
    def test_invalid_solana_address_rejected(self, raw):
        with pytest.raises(InvalidAddressError):
            Address.parse(ChainId.SOLANA, raw)

    def test_evm_address_not_valid_on_solana(self):
        with pytest.raises(InvalidAddressError):
            Address.parse(ChainId.SOLANA, "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")

    def test_non_string_rejected(self):
        with pytest.raises(InvalidAddressError):
            Address.parse(ChainId.ETHEREUM, 12345)

    def test_same_value_different_chain_not_equal(self):
        value = "0x" + "ab" * 20
        assert Address.parse(ChainId.ETHEREUM, value) != Address.parse(ChainId.ARBITRUM, value)

    def test_to_dict(self):
        address = Address.parse(ChainId.BLAST, "0x" + "cd" * 20)
        assert address.to_dict() == {"chain": "blast", "address": "0x" + "cd" * 20}


# ============================================================
# TIER TESTS
# ============================================================

class TestScoreTier:
    """Tier boundaries are inclusive lower bounds."""

    @pytest.mark.parametrize("total,tier", [
        (100.0, ScoreTier.LEGENDARY),
        (90.0, ScoreTier.LEGENDARY),
        (89.99, ScoreTier.EPIC),
        (75.0, ScoreTier.EPIC),
        (60.0, ScoreTier.RARE),
        (40.0, ScoreTier.UNCOMMON),
        (20.0, ScoreTier.COMMON),
        (19.99, ScoreTier.NOVICE),
        (0.0, ScoreTier.NOVICE),
    ])
    def test_from_score(self, total, tier):
        assert ScoreTier.from_score(total) is tier


# ============================================================
# INTERACTION TESTS
# ============================================================

class TestInteractions:
    """Tests for merging protocol interactions."""

    def _interaction(self, protocol_id="uniswap_v3", chain=ChainId.ETHEREUM, first_seen=None, count=1, volume=0.0):
        return ProtocolInteraction(
            protocol_id=protocol_id,
            category=ProtocolCategory.DEX,
            chain=chain,
            first_seen=first_seen,
            interaction_count=count,
            volume_usd_estimate=volume,
        )

    def test_merge_sums_and_keeps_earliest(self):
        early = datetime(2023, 1, 1, tzinfo=timezone.utc)
        late = early + timedelta(days=30)
        merged = self._interaction(first_seen=late, count=2, volume=100.0).merge(
            self._interaction(first_seen=early, count=3, volume=50.0)
        )
        assert merged.interaction_count == 5
        assert merged.volume_usd_estimate == 150.0
        assert merged.first_seen == early

    def test_merge_with_unknown_first_seen(self):
        seen = datetime(2024, 5, 1, tzinfo=timezone.utc)
        merged = self._interaction(first_seen=None).merge(self._interaction(first_seen=seen))
        assert merged.first_seen == seen

    def test_merge_different_keys_rejected(self):
        with pytest.raises(ValueError):
            self._interaction(chain=ChainId.ETHEREUM).merge(self._interaction(chain=ChainId.ARBITRUM))

    def test_merge_interactions_groups_by_chain_and_protocol(self):
        merged = merge_interactions([
            self._interaction("uniswap_v3", ChainId.ARBITRUM, count=1),
            self._interaction("uniswap_v3", ChainId.ETHEREUM, count=2),
            self._interaction("uniswap_v3", ChainId.ETHEREUM, count=4),
        ])
        assert [(i.chain, i.interaction_count) for i in merged] == [
            (ChainId.ARBITRUM, 1),
            (ChainId.ETHEREUM, 6),
        ]

    def test_merge_interactions_order_independent(self):
        items = [
            self._interaction("a", volume=0.1),
            self._interaction("a", volume=0.2),
            self._interaction("a", volume=0.3),
            self._interaction("b", volume=1.0),
        ]
        assert merge_interactions(items) == merge_interactions(list(reversed(items)))

    def test_round_trip_dict(self):
        interaction = self._interaction(first_seen=datetime(2024, 1, 2, tzinfo=timezone.utc), count=7, volume=12.5)
        assert ProtocolInteraction.from_dict(interaction.to_dict()) == interaction


# ============================================================
# CACHE KEY TESTS
# ============================================================

class TestCacheKey:

    def test_key_depends_on_chain_address_and_kind(self):
        eth = Address.parse(ChainId.ETHEREUM, "0x" + "ab" * 20)
        arb = Address.parse(ChainId.ARBITRUM, "0x" + "ab" * 20)
        keys = {
            make_cache_key(eth, DataKind.ACCOUNT),
            make_cache_key(eth, DataKind.TOKEN_TRANSFERS),
            make_cache_key(arb, DataKind.ACCOUNT),
        }
        assert len(keys) == 3

    def test_key_is_stable(self):
        address = Address.parse(ChainId.ETHEREUM, "0x" + "ab" * 20)
        assert make_cache_key(address, DataKind.ACCOUNT) == make_cache_key(address, DataKind.ACCOUNT)
