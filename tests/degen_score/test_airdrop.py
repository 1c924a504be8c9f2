"""
Tests for airdrop allocation.
"""

import pytest

from degen_score.airdrop import AirdropAllocator
from degen_score.config import AirdropConfig
from degen_score.exceptions import ConfigurationError
from degen_score.models import ScoreBreakdown, ScoreTier


def _breakdown(total):
    return ScoreBreakdown(
        categories=(),
        components=(),
        total=total,
        tier=ScoreTier.from_score(total),
        eligible=total >= 20.0,
    )


class TestAirdropAllocator:

    def test_proportional_split_of_distributable_pool(self):
        allocator = AirdropAllocator(AirdropConfig(pool_percentage=50.0, wagering_multiplier=100.0))
        allocations = allocator.allocate(
            {"carol": _breakdown(10.0), "alice": _breakdown(60.0), "bob": _breakdown(40.0)},
            pool=1_000.0,
        )

        assert [a.user_id for a in allocations] == ["alice", "bob", "carol"]
        amounts = {a.user_id: a.token_amount for a in allocations}
        assert amounts["alice"] == pytest.approx(300.0)
        assert amounts["bob"] == pytest.approx(200.0)
        assert amounts["carol"] == 0.0
        assert sum(amounts.values()) == pytest.approx(allocator.distributable(1_000.0))

    def test_ineligible_user_flagged(self):
        allocations = AirdropAllocator().allocate({"low": _breakdown(19.99)}, pool=100.0)
        assert allocations[0].eligible is False
        assert allocations[0].token_amount == 0.0

    def test_wagering_requirement(self):
        allocator = AirdropAllocator(AirdropConfig(pool_percentage=100.0, wagering_multiplier=250.0))
        [allocation] = allocator.allocate({"alice": _breakdown(50.0)}, pool=80.0)
        assert allocation.token_amount == pytest.approx(80.0)
        assert allocation.wagering_requirement == pytest.approx(200.0)

    def test_nobody_eligible(self):
        allocations = AirdropAllocator().allocate(
            {"a": _breakdown(1.0), "b": _breakdown(2.0)}, pool=1_000.0,
        )
        assert all(a.token_amount == 0.0 for a in allocations)

    def test_custom_minimum_score(self):
        allocator = AirdropAllocator(min_score=50.0)
        allocations = allocator.allocate({"a": _breakdown(45.0), "b": _breakdown(55.0)}, pool=100.0)
        assert [a.eligible for a in allocations] == [False, True]

    def test_negative_pool_rejected(self):
        with pytest.raises(ValueError):
            AirdropAllocator().allocate({"a": _breakdown(50.0)}, pool=-1.0)

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigurationError):
            AirdropAllocator(AirdropConfig(pool_percentage=150.0))

    def test_to_dict(self):
        [allocation] = AirdropAllocator().allocate({"a": _breakdown(50.0)}, pool=10.0)
        assert allocation.to_dict()["user_id"] == "a"
        assert allocation.to_dict()["token_amount"] == pytest.approx(5.0)
