"""
Airdrop Allocation - Splits a token pool among eligible users.

distributable = pool x pool_percentage / 100
allocation    = distributable x score / sum(eligible scores)
wagering      = allocation x wagering_multiplier / 100

Users below the eligibility threshold receive zero.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .config import AirdropConfig
from .models import ScoreBreakdown


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AirdropAllocation:
    """Tokens assigned to one user."""
    user_id: str
    score: float
    eligible: bool
    token_amount: float
    wagering_requirement: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "score": self.score,
            "eligible": self.eligible,
            "token_amount": self.token_amount,
            "wagering_requirement": self.wagering_requirement,
        }


class AirdropAllocator:
    """Proportional-to-score allocator."""

    def __init__(
        self,
        config: Optional[AirdropConfig] = None,
        min_score: float = 20.0,
    ) -> None:
        self.config = config or AirdropConfig()
        self.config.validate()
        self.min_score = min_score

    def distributable(self, pool: float) -> float:
        return pool * self.config.pool_percentage / 100.0

    def allocate(
        self,
        breakdowns: Mapping[str, ScoreBreakdown],
        pool: float,
    ) -> list[AirdropAllocation]:
        """One allocation per user, sorted by user id."""
        if pool < 0:
            raise ValueError(f"Airdrop pool must be non-negative, got {pool}")

        users = sorted(breakdowns)
        eligible = {
            user: breakdowns[user].total for user in users
            if breakdowns[user].total >= self.min_score
        }
        score_sum = sum(eligible[user] for user in sorted(eligible))
        distributable = self.distributable(pool)

        allocations = []
        for user in users:
            score = breakdowns[user].total
            amount = 0.0
            if user in eligible and score_sum > 0:
                amount = distributable * score / score_sum
            allocations.append(AirdropAllocation(
                user_id=user,
                score=score,
                eligible=user in eligible,
                token_amount=amount,
                wagering_requirement=amount * self.config.wagering_multiplier / 100.0,
            ))

        logger.info(
            f"[airdrop] {len(eligible)}/{len(users)} eligible users share "
            f"{distributable:.4f} of a {pool:.4f} pool"
        )
        return allocations
