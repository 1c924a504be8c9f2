"""
Solana Chain Data Provider - Solana JSON-RPC.

Solana has no per-account nonce and no EVM-style event logs:
- transaction counts come from getSignaturesForAddress
- "logs" are the transactions of an address that invoke a program,
  fetched as one batched getTransaction request
- token holdings come from getTokenAccountsByOwner (jsonParsed)
"""

import logging
import re
from decimal import Decimal
from typing import Any, Optional, Sequence

from ..exceptions import MalformedResponseError
from ..models import Address
from .base import BaseChainProvider, BlockRange, CallHook, RawLog


logger = logging.getLogger(__name__)


LAMPORTS_PER_SOL = Decimal(10) ** 9
SPL_TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
SIGNATURE_PAGE_LIMIT = 1000

_INSTRUCTION_RE = re.compile(r"^Program log: Instruction: (\w+)")


class SolanaProvider(BaseChainProvider):
    """Solana provider over the public JSON-RPC API."""

    def _expect_list(self, method: str, result: Any) -> list[Any]:
        if not isinstance(result, list):
            raise MalformedResponseError(
                f"{method}: result is not a list",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(result),
            )
        return result

    async def fetch_latest_block(self) -> int:
        result = await self._rpc_call("getSlot", [{"commitment": "finalized"}])
        if not isinstance(result, int):
            raise MalformedResponseError(
                "getSlot: slot is not an integer",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(result),
            )
        return result

    async def fetch_signatures(
        self,
        address: str,
        before: Optional[str] = None,
        limit: int = SIGNATURE_PAGE_LIMIT,
    ) -> list[dict[str, Any]]:
        """One page of signatures, newest first."""
        options: dict[str, Any] = {"limit": min(limit, SIGNATURE_PAGE_LIMIT)}
        if before:
            options["before"] = before

        result = await self._rpc_call("getSignaturesForAddress", [address, options])
        signatures = []
        for entry in self._expect_list("getSignaturesForAddress", result):
            if not isinstance(entry, dict) or "signature" not in entry or "slot" not in entry:
                raise MalformedResponseError(
                    "getSignaturesForAddress: entry missing signature or slot",
                    chain=self.chain,
                    rpc_url=self.url,
                    raw_data=repr(entry),
                )
            signatures.append({
                "signature": entry["signature"],
                "slot": entry["slot"],
                "block_time": entry.get("blockTime"),
                "failed": entry.get("err") is not None,
            })
        return signatures

    async def fetch_tx_count(self, address: Address, block: Optional[int] = None) -> int:
        """Signatures at or before `block`, bounded by one page."""
        signatures = await self.fetch_signatures(
            address.value,
            limit=self.chain_config.max_signatures,
        )
        if block is None:
            return len(signatures)
        return sum(1 for s in signatures if s["slot"] <= block)

    async def fetch_native_balance(self, address: Address) -> Decimal:
        result = await self._rpc_call("getBalance", [address.value])
        if not isinstance(result, dict) or not isinstance(result.get("value"), int):
            raise MalformedResponseError(
                "getBalance: unexpected shape",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(result),
            )
        return Decimal(result["value"]) / LAMPORTS_PER_SOL

    async def _token_accounts(self, owner: str, selector: dict[str, str]) -> list[dict[str, Any]]:
        result = await self._rpc_call(
            "getTokenAccountsByOwner",
            [owner, selector, {"encoding": "jsonParsed"}],
        )
        if not isinstance(result, dict):
            raise MalformedResponseError(
                "getTokenAccountsByOwner: unexpected shape",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(result),
            )

        accounts = []
        for entry in self._expect_list("getTokenAccountsByOwner", result.get("value")):
            try:
                info = entry["account"]["data"]["parsed"]["info"]
                amount = info["tokenAmount"]
                accounts.append({
                    "mint": info["mint"],
                    "amount": int(amount["amount"]),
                    "decimals": int(amount["decimals"]),
                })
            except (KeyError, TypeError, ValueError) as e:
                raise MalformedResponseError(
                    "getTokenAccountsByOwner: account is not jsonParsed",
                    chain=self.chain,
                    rpc_url=self.url,
                    raw_data=repr(entry),
                ) from e
        return accounts

    async def fetch_token_accounts(self, address: Address) -> list[dict[str, Any]]:
        """Every SPL token account of the owner as {mint, amount, decimals}."""
        return await self._token_accounts(address.value, {"programId": SPL_TOKEN_PROGRAM})

    async def fetch_token_balance(self, address: Address, token: str) -> int:
        accounts = await self._token_accounts(address.value, {"mint": token})
        return sum(a["amount"] for a in accounts)

    async def fetch_block_timestamp(self, block: int) -> Optional[int]:
        result = await self._rpc_call("getBlockTime", [block])
        if result is not None and not isinstance(result, int):
            raise MalformedResponseError(
                "getBlockTime: not an integer",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(result),
            )
        return result

    async def fetch_transactions(self, signatures: Sequence[str]) -> list[Optional[dict[str, Any]]]:
        """Batched getTransaction (jsonParsed); None where unavailable."""
        calls = [
            (
                "getTransaction",
                [sig, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
            )
            for sig in signatures
        ]
        results = await self._rpc_batch(calls)
        return [r if isinstance(r, dict) else None for r in results]

    async def fetch_logs(
        self,
        contract: Optional[str],
        event_signature: Optional[str],
        block_range: BlockRange,
        signatures: Sequence[str] = (),
        **filters: Any,
    ) -> list[RawLog]:
        """
        Program invocations inside the given transactions.

        Emits one RawLog per (transaction, invoked program). `contract`
        restricts to one program id, `event_signature` to one
        instruction name.
        """
        logs: list[RawLog] = []
        if not signatures:
            return logs

        transactions = await self.fetch_transactions(signatures)
        for signature, tx in zip(signatures, transactions):
            if tx is None:
                continue
            slot = tx.get("slot")
            if not isinstance(slot, int) or not block_range.start <= slot <= block_range.end:
                continue
            meta = tx.get("meta") or {}
            if meta.get("err") is not None:
                continue

            for index, program in enumerate(sorted(self._invoked_programs(tx))):
                if contract and program != contract:
                    continue
                instructions = self._instruction_names(meta, program)
                if event_signature and event_signature not in instructions:
                    continue
                logs.append(RawLog(
                    contract=program,
                    topics=instructions,
                    data="",
                    block_number=slot,
                    tx_hash=signature,
                    log_index=index,
                    timestamp=tx.get("blockTime"),
                ))
        return logs

    @staticmethod
    def _invoked_programs(tx: dict[str, Any]) -> set[str]:
        message = (tx.get("transaction") or {}).get("message") or {}
        programs: set[str] = set()

        for instruction in message.get("instructions", []):
            if isinstance(instruction, dict) and instruction.get("programId"):
                programs.add(instruction["programId"])

        for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
            for instruction in inner.get("instructions", []):
                if isinstance(instruction, dict) and instruction.get("programId"):
                    programs.add(instruction["programId"])

        return programs

    @staticmethod
    def _instruction_names(meta: dict[str, Any], program: str) -> tuple[str, ...]:
        """Instruction names logged while `program` was executing."""
        names: list[str] = []
        stack: list[str] = []
        for line in meta.get("logMessages") or []:
            if line.startswith("Program ") and " invoke [" in line:
                stack.append(line.split()[1])
            elif line.startswith("Program ") and (line.endswith(" success") or " failed" in line):
                if stack:
                    stack.pop()
            else:
                match = _INSTRUCTION_RE.match(line)
                if match and stack and stack[-1] == program:
                    names.append(match.group(1))
        return tuple(names)

    async def fetch_first_activity_block(
        self,
        address: Address,
        block_range: BlockRange,
        call: Optional[CallHook] = None,
    ) -> Optional[int]:
        """
        Page signatures backwards to the oldest one.

        Bounded by max_signature_pages; if history is longer, the oldest
        slot seen is returned (age is then a lower bound).
        """
        call = call or self._direct_call()
        oldest: Optional[int] = None
        before: Optional[str] = None

        for _ in range(self.chain_config.max_signature_pages):
            page = await call("fetch_signatures", address.value, before, SIGNATURE_PAGE_LIMIT)
            if not page:
                break
            oldest = page[-1]["slot"]
            before = page[-1]["signature"]
            if len(page) < SIGNATURE_PAGE_LIMIT or oldest < block_range.start:
                break

        if oldest is None:
            return None
        return max(oldest, block_range.start)
