"""
Verification Protocol - Proves control of an address without a private key.

============================================================
GUARANTEES
============================================================
- Nonces are single-use: consumption is a conditional UPDATE that
  only matches unconsumed, unexpired challenges
- Consuming the nonce and inserting the binding happen in one
  database transaction
- An address binds to exactly one user; UNIQUE(chain, address)
  settles concurrent attempts
- Re-verifying an address for the same user returns the existing
  binding

============================================================
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ..config import VerificationConfig
from ..exceptions import (
    AddressCollisionError,
    ConfigurationError,
    FailureReason,
    VerificationFailedError,
)
from ..models import Address, Challenge, ChainId, VerificationMethod, VerifiedAddress
from ..storage.database import Database
from ..storage.repository import VerificationRepository
from .deposit import DepositVerificationResult, DepositVerifier, create_deposit_account
from .messages import format_deposit_instructions, format_verification_message, generate_nonce
from .signatures import verify_signature


logger = logging.getLogger(__name__)


class VerificationProtocol:
    """
    Issues challenges and binds verified addresses to users.

    Usage:
        protocol = VerificationProtocol(config.verification, database)
        challenge = await protocol.issue_challenge(ChainId.ETHEREUM, "0xabc...")
        verified = await protocol.verify("user-1", challenge.nonce, signature)
    """

    def __init__(
        self,
        config: VerificationConfig,
        database: Database,
        deposits: Optional[DepositVerifier] = None,
    ) -> None:
        self.config = config
        self.database = database
        self.deposits = deposits

    # ─────────────────────────────────────────────────────────────
    # Signature challenges
    # ─────────────────────────────────────────────────────────────

    async def issue_challenge(
        self,
        chain: ChainId,
        raw_address: str,
        now: Optional[datetime] = None,
    ) -> Challenge:
        address = Address.parse(chain, raw_address)
        now = now or datetime.now(timezone.utc)
        nonce = generate_nonce()

        challenge = Challenge(
            nonce=nonce,
            address=address,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.config.challenge_ttl_seconds),
            method=VerificationMethod.SIGNATURE,
            message=format_verification_message(address, nonce, self.config.platform_name),
        )
        async with self.database.transaction() as session:
            await VerificationRepository(session).save_challenge(challenge)

        logger.info(f"[{chain.value}] Issued signature challenge for {address.value}")
        return challenge

    async def verify(
        self,
        user_id: str,
        nonce: str,
        signature: str,
        now: Optional[datetime] = None,
    ) -> VerifiedAddress:
        """Bind the challenged address to `user_id` if `signature` is valid."""
        now = now or datetime.now(timezone.utc)
        challenge = await self._load_usable(nonce, VerificationMethod.SIGNATURE, now)
        verify_signature(challenge.address, challenge.message, signature)
        return await self._bind(user_id, challenge, now)

    # ─────────────────────────────────────────────────────────────
    # Micro-deposit challenges
    # ─────────────────────────────────────────────────────────────

    def _require_deposits(self) -> DepositVerifier:
        if self.deposits is None:
            raise ConfigurationError("Micro-deposit verification needs chain providers")
        return self.deposits

    async def issue_deposit_challenge(
        self,
        chain: ChainId,
        raw_address: str,
        now: Optional[datetime] = None,
    ) -> Challenge:
        deposits = self._require_deposits()
        address = Address.parse(chain, raw_address)
        start_block = await deposits.current_block(chain)
        now = now or datetime.now(timezone.utc)

        account = create_deposit_account(chain)
        min_amount = self.config.min_deposit_amount
        challenge = Challenge(
            nonce=generate_nonce(),
            address=address,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.config.deposit_ttl_seconds),
            method=VerificationMethod.MICRO_DEPOSIT,
            message=format_deposit_instructions(address, account.address, min_amount),
            deposit_address=account.address,
            min_amount=min_amount,
            start_block=start_block,
        )
        async with self.database.transaction() as session:
            await VerificationRepository(session).save_challenge(challenge, sweep_key=account.secret)

        logger.info(
            f"[{chain.value}] Issued deposit challenge for {address.value} "
            f"(deposit address {account.address}, from block {start_block})"
        )
        return challenge

    async def verify_deposit(
        self,
        user_id: str,
        nonce: str,
        now: Optional[datetime] = None,
    ) -> DepositVerificationResult:
        """Bind the address if a qualifying deposit has been observed."""
        deposits = self._require_deposits()
        now = now or datetime.now(timezone.utc)
        challenge = await self._load_usable(nonce, VerificationMethod.MICRO_DEPOSIT, now)

        deposit = await deposits.find_deposit(challenge)
        if deposit is None:
            raise VerificationFailedError(
                FailureReason.DEPOSIT_NOT_OBSERVED,
                f"No deposit of at least {challenge.min_amount} {challenge.chain.native_symbol} "
                f"from {challenge.address.value} yet",
                challenge.chain,
            )

        verified = await self._bind(user_id, challenge, now)
        return DepositVerificationResult(verified=verified, deposit=deposit)

    async def await_deposit(self, user_id: str, nonce: str) -> DepositVerificationResult:
        """Poll verify_deposit until it succeeds or the challenge expires."""
        while True:
            try:
                return await self.verify_deposit(user_id, nonce)
            except VerificationFailedError as e:
                if e.reason is not FailureReason.DEPOSIT_NOT_OBSERVED:
                    raise
                logger.debug(f"Deposit for challenge {nonce[:8]}... not observed yet")
            await asyncio.sleep(self.config.deposit_poll_interval_seconds)

    # ─────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────

    async def list_verified(self, user_id: str) -> list[VerifiedAddress]:
        async with self.database.transaction() as session:
            return await VerificationRepository(session).list_verified(user_id)

    async def get_binding(self, address: Address) -> Optional[VerifiedAddress]:
        async with self.database.transaction() as session:
            return await VerificationRepository(session).get_verified(address)

    # ─────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def _failure(reason: FailureReason, challenge_chain: Optional[ChainId] = None) -> VerificationFailedError:
        messages = {
            FailureReason.UNKNOWN_NONCE: "Unknown verification nonce",
            FailureReason.EXPIRED: "Verification challenge has expired",
            FailureReason.CONSUMED: "Verification challenge was already used",
        }
        return VerificationFailedError(reason, messages.get(reason), challenge_chain)

    async def _load_usable(
        self,
        nonce: str,
        method: VerificationMethod,
        now: datetime,
    ) -> Challenge:
        async with self.database.transaction() as session:
            repo = VerificationRepository(session)
            record = await repo.get_challenge_record(nonce)
            if record is None:
                raise self._failure(FailureReason.UNKNOWN_NONCE)
            challenge = repo.to_challenge(record)
            consumed = record.consumed_at is not None

        if challenge.method is not method:
            # A deposit nonce cannot be redeemed with a signature and vice versa
            raise self._failure(FailureReason.UNKNOWN_NONCE, challenge.chain)
        if consumed:
            raise self._failure(FailureReason.CONSUMED, challenge.chain)
        if challenge.is_expired(now):
            raise self._failure(FailureReason.EXPIRED, challenge.chain)
        return challenge

    async def _bind(self, user_id: str, challenge: Challenge, now: datetime) -> VerifiedAddress:
        """Consume the nonce and insert the binding in one transaction."""
        address = challenge.address
        try:
            async with self.database.transaction() as session:
                repo = VerificationRepository(session)

                existing = await repo.get_verified(address)
                if existing is not None and existing.user_id != user_id:
                    raise AddressCollisionError(address.value, address.chain)

                if not await repo.consume_challenge(challenge.nonce, now):
                    record = await repo.get_challenge_record(challenge.nonce)
                    if record is None:
                        raise self._failure(FailureReason.UNKNOWN_NONCE, address.chain)
                    if record.consumed_at is not None:
                        raise self._failure(FailureReason.CONSUMED, address.chain)
                    raise self._failure(FailureReason.EXPIRED, address.chain)

                if existing is not None:
                    logger.info(f"[{address.chain.value}] {address.value} already verified for {user_id}")
                    return existing

                verified = VerifiedAddress(
                    user_id=user_id,
                    address=address,
                    method=challenge.method,
                    verified_at=now,
                )
                await repo.insert_verified(verified)
        except IntegrityError as e:
            # Lost a race on UNIQUE(chain, address)
            winner = await self.get_binding(address)
            if winner is not None and winner.user_id == user_id:
                return winner
            raise AddressCollisionError(address.value, address.chain) from e

        logger.info(
            f"[{address.chain.value}] Verified {address.value} for {user_id} "
            f"via {challenge.method.value}"
        )
        return verified
