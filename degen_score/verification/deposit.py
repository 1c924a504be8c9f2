"""
Micro-Deposit Verification - Fallback for wallets that cannot sign.

============================================================
FLOW
============================================================
1. A fresh one-time receiving address is generated per challenge
   (eth_account Account.create() / solders Keypair())
2. The user sends at least min_deposit_amount of the native coin from
   the claimed address to it
3. The deposit is observed on-chain through the chain data providers:
   - EVM: full transactions of blocks since the challenge was issued
   - Solana: signatures of the deposit address plus parsed transfers
4. deposit - network fee is reported as the refund amount

============================================================
"""

import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional

from eth_account import Account
from solders.keypair import Keypair

from ..config import ChainConfig
from ..models import Challenge, ChainId, VerifiedAddress


logger = logging.getLogger(__name__)


# Routes a provider primitive through retry and failover: (chain, method, *args)
ChainCall = Callable[..., Awaitable[Any]]

CHAIN_FEES: dict[ChainId, Decimal] = {
    ChainId.ETHEREUM: Decimal("0.0005"),
    ChainId.ARBITRUM: Decimal("0.0001"),
    ChainId.OPTIMISM: Decimal("0.0001"),
    ChainId.BLAST: Decimal("0.0001"),
    ChainId.SOLANA: Decimal("0.000005"),
}

SYSTEM_PROGRAM = "11111111111111111111111111111111"
DEPOSIT_SIGNATURE_LIMIT = 100


def calculate_refund(chain: ChainId, amount: Decimal) -> Decimal:
    """Deposit minus the chain's transfer fee, never negative."""
    return max(Decimal(0), amount - CHAIN_FEES[chain])


def deposit_window_blocks(chain_config: ChainConfig, ttl_seconds: int) -> int:
    """Blocks the chain produces while a deposit challenge is open."""
    return math.ceil(ttl_seconds * chain_config.blocks_per_day / 86_400)


@dataclass(frozen=True)
class DepositAccount:
    """One-time receiving address and the key that controls it."""
    address: str
    secret: str


def create_deposit_account(chain: ChainId) -> DepositAccount:
    if chain.is_evm:
        account = Account.create()
        return DepositAccount(address=account.address.lower(), secret=account.key.hex())
    keypair = Keypair()
    return DepositAccount(address=str(keypair.pubkey()), secret=str(keypair))


@dataclass(frozen=True)
class ObservedDeposit:
    """Qualifying inbound transfer."""
    tx_hash: str
    sender: str
    amount: Decimal
    refund_amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "sender": self.sender,
            "amount": str(self.amount),
            "refund_amount": str(self.refund_amount),
        }


@dataclass(frozen=True)
class DepositVerificationResult:
    """Binding produced by a micro-deposit, with the observed transfer."""
    verified: VerifiedAddress
    deposit: ObservedDeposit

    def to_dict(self) -> dict[str, Any]:
        return {**self.verified.to_dict(), "deposit": self.deposit.to_dict()}


class DepositVerifier:
    """
    Observes deposits through a provider call hook.

    The EVM scan covers every block produced while the challenge is
    open (`window_blocks` per chain, never less than
    `max_blocks_scanned`). Each poll resumes after the last block the
    previous poll of the same challenge scanned.
    """

    def __init__(
        self,
        call: ChainCall,
        max_blocks_scanned: int = 200,
        window_blocks: Optional[Mapping[ChainId, int]] = None,
    ) -> None:
        self._call = call
        self.max_blocks_scanned = max_blocks_scanned
        self.window_blocks = dict(window_blocks or {})
        self._scanned: dict[str, int] = {}

    def blocks_for(self, chain: ChainId) -> int:
        return max(self.max_blocks_scanned, self.window_blocks.get(chain, 0))

    async def current_block(self, chain: ChainId) -> int:
        return await self._call(chain, "fetch_latest_block")

    async def find_deposit(self, challenge: Challenge) -> Optional[ObservedDeposit]:
        """First transfer from the claimed address of at least the minimum."""
        if challenge.deposit_address is None or challenge.min_amount is None:
            raise ValueError(f"Challenge {challenge.nonce} is not a deposit challenge")

        if challenge.chain.is_evm:
            deposit = await self._find_evm_deposit(challenge)
        else:
            deposit = await self._find_solana_deposit(challenge)

        if deposit is not None:
            logger.info(
                f"[{challenge.chain.value}] Deposit of {deposit.amount} observed "
                f"from {deposit.sender} in {deposit.tx_hash}"
            )
        return deposit

    def _observed(self, challenge: Challenge, tx_hash: str, amount: Decimal) -> Optional[ObservedDeposit]:
        if amount < challenge.min_amount:
            logger.debug(
                f"[{challenge.chain.value}] Deposit {tx_hash} of {amount} below minimum "
                f"{challenge.min_amount}"
            )
            return None
        return ObservedDeposit(
            tx_hash=tx_hash,
            sender=challenge.address.value,
            amount=amount,
            refund_amount=calculate_refund(challenge.chain, amount),
        )

    async def _find_evm_deposit(self, challenge: Challenge) -> Optional[ObservedDeposit]:
        chain = challenge.chain
        latest = await self._call(chain, "fetch_latest_block")
        start = challenge.start_block if challenge.start_block is not None else latest
        end = min(latest, start + self.blocks_for(chain) - 1)
        resume = max(start, self._scanned.get(challenge.nonce, start - 1) + 1)
        scale = Decimal(10) ** chain.native_decimals

        for block in range(resume, end + 1):
            transactions = await self._call(chain, "fetch_block_transactions", block)
            for tx in transactions:
                if tx["from"] != challenge.address.value or tx["to"] != challenge.deposit_address:
                    continue
                deposit = self._observed(challenge, tx["hash"], Decimal(tx["value"]) / scale)
                if deposit is not None:
                    self._scanned.pop(challenge.nonce, None)
                    return deposit
            self._scanned[challenge.nonce] = block
        return None

    @staticmethod
    def _system_transfers(tx: dict[str, Any]) -> list[dict[str, Any]]:
        message = (tx.get("transaction") or {}).get("message") or {}
        instructions = list(message.get("instructions", []))
        for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
            instructions.extend(inner.get("instructions", []))

        transfers = []
        for instruction in instructions:
            if not isinstance(instruction, dict) or instruction.get("programId") != SYSTEM_PROGRAM:
                continue
            parsed = instruction.get("parsed")
            if isinstance(parsed, dict) and parsed.get("type") == "transfer":
                transfers.append(parsed.get("info") or {})
        return transfers

    async def _find_solana_deposit(self, challenge: Challenge) -> Optional[ObservedDeposit]:
        chain = challenge.chain
        signatures = await self._call(
            chain, "fetch_signatures", challenge.deposit_address, None, DEPOSIT_SIGNATURE_LIMIT,
        )
        candidates = [s["signature"] for s in signatures if not s["failed"]]
        if not candidates:
            return None

        scale = Decimal(10) ** chain.native_decimals
        transactions = await self._call(chain, "fetch_transactions", candidates)
        for signature, tx in zip(candidates, transactions):
            if tx is None or (tx.get("meta") or {}).get("err") is not None:
                continue
            for info in self._system_transfers(tx):
                if info.get("source") != challenge.address.value:
                    continue
                if info.get("destination") != challenge.deposit_address:
                    continue
                deposit = self._observed(challenge, signature, Decimal(int(info.get("lamports", 0))) / scale)
                if deposit is not None:
                    return deposit
        return None

