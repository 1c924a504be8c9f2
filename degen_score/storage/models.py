"""
Storage - ORM Models.

Tables:
- verification_challenges: issued nonces and deposit challenges
- verified_addresses: address to user bindings, unique per (chain, address)
- cache_entries: raw provider payloads for the read-through cache

All timestamps are stored in UTC.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


# ============================================================
# CHALLENGES
# ============================================================


class ChallengeRecord(Base):
    """
    Issued verification challenge.

    consumed_at is set exactly once, by the transaction that binds the
    address.
    """

    __tablename__ = "verification_challenges"

    nonce: Mapped[str] = mapped_column(String(64), primary_key=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(64), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Micro-deposit only
    deposit_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sweep_key: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Key controlling the one-time deposit address, for refunds",
    )
    min_amount: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    start_block: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_verification_challenges_address", "chain", "address"),
    )

    def __repr__(self) -> str:
        return (
            f"ChallengeRecord(nonce={self.nonce}, chain={self.chain}, "
            f"address={self.address}, consumed={self.consumed_at is not None})"
        )


# ============================================================
# VERIFIED ADDRESSES
# ============================================================


class VerifiedAddressRecord(Base):
    """Immutable binding of an address to one user."""

    __tablename__ = "verified_addresses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(64), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    verified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("chain", "address", name="uq_verified_addresses_chain_address"),
        Index("ix_verified_addresses_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return f"VerifiedAddressRecord(user={self.user_id}, chain={self.chain}, address={self.address})"


# ============================================================
# CACHE
# ============================================================


class CacheRecord(Base):
    """Whole-entry cached payload; replaced on refresh."""

    __tablename__ = "cache_entries"

    cache_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ttl_seconds: Mapped[float] = mapped_column(Float, nullable=False)
