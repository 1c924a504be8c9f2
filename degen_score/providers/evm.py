"""
EVM Chain Data Provider - Standard Ethereum JSON-RPC.

One implementation serves every EVM-family chain (Ethereum, Arbitrum,
Optimism, Blast); the chain id and endpoint come from configuration.
"""

import logging
from decimal import Decimal
from typing import Any, Optional, Sequence

from ens.exceptions import InvalidName
from ens.utils import raw_name_to_hash

from ..exceptions import InvalidAddressError, MalformedResponseError
from ..models import Address
from ..registry import event_topic
from .base import BaseChainProvider, BlockRange, CallHook, RawLog, hex_to_int


logger = logging.getLogger(__name__)


BALANCE_OF_SELECTOR = "0x70a08231"

ENS_REGISTRY = "0x00000000000c2e074ec69a0dfb2997ba6c7d2e1e"
ENS_RESOLVER_SELECTOR = "0x0178b8bf"  # resolver(bytes32)
ENS_ADDR_SELECTOR = "0x3b3b57de"  # addr(bytes32)
ZERO_ADDRESS = "0x" + "00" * 20
MAX_BINARY_SEARCH_ITERATIONS = 20
WEI_PER_ETH = Decimal(10) ** 18


def address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte topic."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def topic_to_address(topic: str) -> str:
    """Last 20 bytes of a 32-byte topic or data word."""
    return "0x" + topic.lower().removeprefix("0x")[-40:]


def is_ens_name(value: str) -> bool:
    """Dotted name such as vitalik.eth rather than a hex address."""
    candidate = value.strip()
    return "." in candidate and not candidate.lower().startswith("0x")


class EvmProvider(BaseChainProvider):
    """
    EVM-family provider over eth_* JSON-RPC methods.

    Free public endpoints cap eth_getLogs ranges, so callers always pass
    a bounded BlockRange.
    """

    @staticmethod
    def _block_tag(block: Optional[int]) -> str:
        return "latest" if block is None else hex(block)

    async def fetch_latest_block(self) -> int:
        result = await self._rpc_call("eth_blockNumber", [])
        return hex_to_int(result, self.chain, "eth_blockNumber")

    async def fetch_tx_count(self, address: Address, block: Optional[int] = None) -> int:
        result = await self._rpc_call(
            "eth_getTransactionCount",
            [address.value, self._block_tag(block)],
        )
        return hex_to_int(result, self.chain, "eth_getTransactionCount")

    async def fetch_native_balance(self, address: Address) -> Decimal:
        result = await self._rpc_call("eth_getBalance", [address.value, "latest"])
        return Decimal(hex_to_int(result, self.chain, "eth_getBalance")) / WEI_PER_ETH

    async def fetch_token_balance(self, address: Address, token: str) -> int:
        data = BALANCE_OF_SELECTOR + address.value.removeprefix("0x").rjust(64, "0")
        result = await self._rpc_call(
            "eth_call",
            [{"to": token, "data": data}, "latest"],
        )
        # Non-contract addresses answer "0x"
        return hex_to_int(result, self.chain, "balanceOf")

    async def _call_address(self, contract: str, selector: str, node: str, what: str) -> Optional[str]:
        result = await self._rpc_call("eth_call", [{"to": contract, "data": selector + node}, "latest"])
        if result == "0x":
            return None
        if not isinstance(result, str) or len(result) != 66:
            raise MalformedResponseError(
                f"{what}: expected one 32-byte word",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(result),
            )
        address = topic_to_address(result)
        return None if address == ZERO_ADDRESS else address

    async def resolve_ens_name(self, name: str) -> Optional[str]:
        """Address an ENS name points to, or None when it has no resolver or record."""
        try:
            node = raw_name_to_hash(name.strip()).hex().removeprefix("0x")
        except InvalidName as e:
            raise InvalidAddressError(name, self.chain, "not a valid ENS name") from e
        resolver = await self._call_address(ENS_REGISTRY, ENS_RESOLVER_SELECTOR, node, "resolver")
        if resolver is None:
            logger.debug(f"[{self.chain.value}] {name} has no resolver")
            return None
        return await self._call_address(resolver, ENS_ADDR_SELECTOR, node, "addr")

    async def fetch_block_timestamp(self, block: int) -> Optional[int]:
        result = await self._rpc_call("eth_getBlockByNumber", [hex(block), False])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise MalformedResponseError(
                "eth_getBlockByNumber: block is not an object",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(result),
            )
        return hex_to_int(result.get("timestamp"), self.chain, "timestamp")

    async def fetch_block_transactions(self, block: int) -> list[dict[str, Any]]:
        """Full transactions of a block as {hash, from, to, value}."""
        result = await self._rpc_call("eth_getBlockByNumber", [hex(block), True])
        if result is None:
            return []
        if not isinstance(result, dict) or not isinstance(result.get("transactions"), list):
            raise MalformedResponseError(
                "eth_getBlockByNumber: missing transactions",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(result),
            )

        transactions = []
        for tx in result["transactions"]:
            if not isinstance(tx, dict):
                continue
            transactions.append({
                "hash": tx.get("hash", ""),
                "from": (tx.get("from") or "").lower(),
                "to": (tx.get("to") or "").lower(),
                "value": hex_to_int(tx.get("value", "0x0"), self.chain, "value"),
            })
        return transactions

    async def fetch_logs(
        self,
        contract: Optional[str],
        event_signature: Optional[str],
        block_range: BlockRange,
        topics: Sequence[Optional[str]] = (),
        **filters: Any,
    ) -> list[RawLog]:
        """
        eth_getLogs for one contract (or every contract when None).

        `topics` filters indexed positions 1..3; None matches anything.
        """
        topic_filter: list[Optional[str]] = [
            event_topic(event_signature) if event_signature else None,
            *topics,
        ]
        while topic_filter and topic_filter[-1] is None:
            topic_filter.pop()

        params: dict[str, Any] = {
            "fromBlock": hex(block_range.start),
            "toBlock": hex(block_range.end),
        }
        if contract:
            params["address"] = contract
        if topic_filter:
            params["topics"] = topic_filter

        result = await self._rpc_call("eth_getLogs", [params])
        if not isinstance(result, list):
            raise MalformedResponseError(
                "eth_getLogs: result is not a list",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(result),
            )

        logs: list[RawLog] = []
        for entry in result:
            if not isinstance(entry, dict) or entry.get("removed"):
                continue
            try:
                logs.append(RawLog(
                    contract=str(entry["address"]).lower(),
                    topics=tuple(str(t).lower() for t in entry.get("topics", [])),
                    data=entry.get("data", "0x"),
                    block_number=hex_to_int(entry["blockNumber"], self.chain, "blockNumber"),
                    tx_hash=entry.get("transactionHash", ""),
                    log_index=hex_to_int(entry.get("logIndex", "0x0"), self.chain, "logIndex"),
                    timestamp=(
                        hex_to_int(entry["blockTimestamp"], self.chain, "blockTimestamp")
                        if entry.get("blockTimestamp") else None
                    ),
                ))
            except KeyError as e:
                raise MalformedResponseError(
                    f"eth_getLogs: log missing {e}",
                    chain=self.chain,
                    rpc_url=self.url,
                    raw_data=repr(entry),
                ) from e
        return logs

    async def fetch_first_activity_block(
        self,
        address: Address,
        block_range: BlockRange,
        call: Optional[CallHook] = None,
    ) -> Optional[int]:
        """
        Binary search for the first block where the nonce becomes non-zero.

        Only outgoing transactions move the nonce, so receive-only wallets
        report None. If activity predates the range, the range start is
        returned (age is then a lower bound).
        """
        call = call or self._direct_call()

        if await call("fetch_tx_count", address, block_range.end) == 0:
            return None
        if await call("fetch_tx_count", address, block_range.start) > 0:
            return block_range.start

        low, high = block_range.start, block_range.end
        for _ in range(MAX_BINARY_SEARCH_ITERATIONS):
            if high - low <= 1:
                break
            mid = (low + high) // 2
            if await call("fetch_tx_count", address, mid) > 0:
                high = mid
            else:
                low = mid

        logger.debug(f"[{self.name}] First activity of {address} at block {high}")
        return high
