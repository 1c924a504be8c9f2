"""
Storage - Repositories.

============================================================
PURPOSE
============================================================
Repository pattern over the verification and cache tables.

- VerificationRepository: challenges and verified address bindings
- CacheRepository: whole-entry cached payloads

Repositories never commit. The caller owns the transaction boundary
(Database.transaction()).

============================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Address, CacheEntry, Challenge, ChainId, VerificationMethod, VerifiedAddress
from .models import CacheRecord, ChallengeRecord, VerifiedAddressRecord


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class VerificationRepository:
    """
    Repository for verification persistence operations.

    ============================================================
    METHODS
    ============================================================
    - save_challenge / get_challenge
    - consume_challenge: conditional single-use update
    - get_verified / insert_verified / list_verified

    ============================================================
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    # --------------------------------------------------------
    # CHALLENGES
    # --------------------------------------------------------

    async def save_challenge(self, challenge: Challenge, sweep_key: Optional[str] = None) -> ChallengeRecord:
        record = ChallengeRecord(
            nonce=challenge.nonce,
            chain=challenge.chain.value,
            address=challenge.address.value,
            method=challenge.method.value,
            message=challenge.message,
            issued_at=challenge.issued_at,
            expires_at=challenge.expires_at,
            deposit_address=challenge.deposit_address,
            sweep_key=sweep_key,
            min_amount=str(challenge.min_amount) if challenge.min_amount is not None else None,
            start_block=challenge.start_block,
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def get_challenge_record(self, nonce: str) -> Optional[ChallengeRecord]:
        return await self._session.get(ChallengeRecord, nonce)

    async def get_challenge(self, nonce: str) -> Optional[Challenge]:
        record = await self.get_challenge_record(nonce)
        return self.to_challenge(record) if record else None

    async def consume_challenge(self, nonce: str, now: datetime) -> bool:
        """
        Mark a challenge consumed.

        Only matches a row that is unconsumed and unexpired, so of several
        concurrent attempts exactly one succeeds.
        """
        result = await self._session.execute(
            update(ChallengeRecord)
            .where(
                and_(
                    ChallengeRecord.nonce == nonce,
                    ChallengeRecord.consumed_at.is_(None),
                    ChallengeRecord.expires_at > now,
                )
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def to_challenge(record: ChallengeRecord) -> Challenge:
        return Challenge(
            nonce=record.nonce,
            address=Address(ChainId(record.chain), record.address),
            issued_at=_utc(record.issued_at),
            expires_at=_utc(record.expires_at),
            method=VerificationMethod(record.method),
            message=record.message,
            deposit_address=record.deposit_address,
            min_amount=Decimal(record.min_amount) if record.min_amount else None,
            start_block=record.start_block,
        )

    # --------------------------------------------------------
    # VERIFIED ADDRESSES
    # --------------------------------------------------------

    async def get_verified(self, address: Address) -> Optional[VerifiedAddress]:
        result = await self._session.execute(
            select(VerifiedAddressRecord).where(
                and_(
                    VerifiedAddressRecord.chain == address.chain.value,
                    VerifiedAddressRecord.address == address.value,
                )
            )
        )
        record = result.scalar_one_or_none()
        return self.to_verified(record) if record else None

    async def insert_verified(self, verified: VerifiedAddress) -> None:
        """Insert a binding; the unique constraint rejects a second one."""
        self._session.add(VerifiedAddressRecord(
            user_id=verified.user_id,
            chain=verified.chain.value,
            address=verified.address.value,
            method=verified.method.value,
            verified_at=verified.verified_at,
        ))
        await self._session.flush()

    async def list_verified(self, user_id: str) -> list[VerifiedAddress]:
        result = await self._session.execute(
            select(VerifiedAddressRecord)
            .where(VerifiedAddressRecord.user_id == user_id)
            .order_by(VerifiedAddressRecord.chain, VerifiedAddressRecord.address)
        )
        return [self.to_verified(r) for r in result.scalars().all()]

    @staticmethod
    def to_verified(record: VerifiedAddressRecord) -> VerifiedAddress:
        return VerifiedAddress(
            user_id=record.user_id,
            address=Address(ChainId(record.chain), record.address),
            method=VerificationMethod(record.method),
            verified_at=_utc(record.verified_at),
        )


class CacheRepository:
    """Cached payload rows, replaced whole on refresh."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        record = await self._session.get(CacheRecord, cache_key)
        if record is None:
            return None
        return CacheEntry(
            cache_key=record.cache_key,
            payload=record.payload,
            fetched_at=_utc(record.fetched_at),
            ttl_seconds=record.ttl_seconds,
        )

    async def upsert(self, entry: CacheEntry) -> None:
        await self._session.merge(CacheRecord(
            cache_key=entry.cache_key,
            payload=entry.payload,
            fetched_at=entry.fetched_at,
            ttl_seconds=entry.ttl_seconds,
        ))

    async def delete_expired(self, now: datetime) -> int:
        """Drop rows past their TTL; returns the number removed."""
        result = await self._session.execute(select(CacheRecord))
        expired = [
            r.cache_key for r in result.scalars().all()
            if (now - _utc(r.fetched_at)).total_seconds() >= r.ttl_seconds
        ]
        if expired:
            await self._session.execute(
                delete(CacheRecord).where(CacheRecord.cache_key.in_(expired))
            )
        return len(expired)

    async def count(self) -> int:
        result = await self._session.execute(select(CacheRecord.cache_key))
        return len(result.scalars().all())

    async def clear(self) -> None:
        await self._session.execute(delete(CacheRecord))
