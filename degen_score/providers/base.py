"""
Base Chain Data Provider - Capability interface shared by all chain families.

A provider wraps exactly one JSON-RPC endpoint. Every primitive issues at
most one HTTP request and either returns a decoded result or raises a
typed ProviderError. Retrying, failover and caching belong to the
orchestrator, not to the provider.

Composite operations (first activity search) accept an optional `call`
hook so the orchestrator can route each underlying primitive through its
retry and concurrency controls.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

import aiohttp

from ..config import ChainConfig, EndpointConfig
from ..exceptions import (
    MalformedResponseError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    RpcUnavailableError,
)
from ..models import Address, ChainId, EndpointHealth, EndpointStatus


logger = logging.getLogger(__name__)


# Routes a primitive (by method name) through the caller's controls
CallHook = Callable[..., Awaitable[Any]]

# JSON-RPC error codes that signal throttling
RATE_LIMIT_ERROR_CODES = {-32005, 429}


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block (EVM) or slot (Solana) window."""
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid block range {self.start}..{self.end}")

    @classmethod
    def lookback(cls, latest: int, size: int) -> "BlockRange":
        return cls(max(0, latest - size), latest)


@dataclass(frozen=True)
class RawLog:
    """
    Provider-neutral event record.

    EVM: one eth_getLogs entry. Solana: one (transaction, program) pair,
    with instruction names from the program logs in `topics`.
    """
    contract: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    tx_hash: str
    log_index: int = 0
    timestamp: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract": self.contract,
            "topics": list(self.topics),
            "data": self.data,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawLog":
        return cls(
            contract=data["contract"],
            topics=tuple(data.get("topics", [])),
            data=data.get("data", ""),
            block_number=data["block_number"],
            tx_hash=data.get("tx_hash", ""),
            log_index=data.get("log_index", 0),
            timestamp=data.get("timestamp"),
        )

    def with_timestamp(self, timestamp: Optional[int]) -> "RawLog":
        return RawLog(
            contract=self.contract,
            topics=self.topics,
            data=self.data,
            block_number=self.block_number,
            tx_hash=self.tx_hash,
            log_index=self.log_index,
            timestamp=timestamp,
        )


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header as seconds (numeric form only)."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def hex_to_int(value: Any, chain: ChainId, field: str = "value") -> int:
    """Decode a 0x-prefixed quantity, raising MalformedResponseError."""
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.startswith("0x"):
        raise MalformedResponseError(
            f"Expected hex quantity for {field}",
            chain=chain,
            raw_data=repr(value),
        )
    try:
        return int(value, 16) if len(value) > 2 else 0
    except ValueError as e:
        raise MalformedResponseError(
            f"Invalid hex quantity for {field}",
            chain=chain,
            raw_data=value,
        ) from e


class BaseChainProvider(ABC):
    """
    Abstract capability set for one chain family and one RPC endpoint.

    Subclasses implement:
    - fetch_latest_block()
    - fetch_tx_count()
    - fetch_first_activity_block()
    - fetch_token_balance()
    - fetch_logs()
    - fetch_native_balance()
    - fetch_block_timestamp()
    """

    DEGRADED_THRESHOLD = 2

    def __init__(
        self,
        chain_config: ChainConfig,
        endpoint: EndpointConfig,
        session: Optional[aiohttp.ClientSession] = None,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
    ) -> None:
        self.chain_config = chain_config
        self.endpoint = endpoint
        self._session = session
        self._owns_session = session is None
        self._request_id = 0

        self._failure_threshold = failure_threshold
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._health = EndpointHealth(url=endpoint.url)

        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "rate_limits_hit": 0,
            "errors": 0,
        }

    @property
    def chain(self) -> ChainId:
        return self.chain_config.chain

    @property
    def url(self) -> str:
        return self.endpoint.url

    @property
    def name(self) -> str:
        return f"{self.chain.value}@{urlparse(self.url).netloc or self.url}"

    # ─────────────────────────────────────────────────────────────
    # Capabilities
    # ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_latest_block(self) -> int:
        """Current head block (EVM) or slot (Solana)."""

    @abstractmethod
    async def fetch_tx_count(self, address: Address, block: Optional[int] = None) -> int:
        """Transactions sent by the address as of `block` (latest if None)."""

    @abstractmethod
    async def fetch_first_activity_block(
        self,
        address: Address,
        block_range: BlockRange,
        call: Optional[CallHook] = None,
    ) -> Optional[int]:
        """Earliest block/slot in the range with activity, or None."""

    @abstractmethod
    async def fetch_token_balance(self, address: Address, token: str) -> int:
        """Raw (undecimalized) balance of a fungible token."""

    @abstractmethod
    async def fetch_logs(
        self,
        contract: Optional[str],
        event_signature: Optional[str],
        block_range: BlockRange,
        **filters: Any,
    ) -> list[RawLog]:
        """Event records emitted inside the range."""

    @abstractmethod
    async def fetch_native_balance(self, address: Address) -> Decimal:
        """Native balance in whole units (ETH / SOL)."""

    @abstractmethod
    async def fetch_block_timestamp(self, block: int) -> Optional[int]:
        """Unix timestamp of a block or slot."""

    def _direct_call(self) -> CallHook:
        async def call(method: str, *args: Any, **kwargs: Any) -> Any:
            return await getattr(self, method)(*args, **kwargs)
        return call

    # ─────────────────────────────────────────────────────────────
    # JSON-RPC transport
    # ─────────────────────────────────────────────────────────────

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.endpoint.timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _post(self, payload: Any) -> Any:
        """Send one HTTP POST and return the decoded JSON body."""
        session = await self._get_session()
        self._stats["total_requests"] += 1

        try:
            async with session.post(self.url, json=payload) as response:
                if response.status == 429:
                    raise RateLimitedError(
                        "RPC rate limit exceeded",
                        chain=self.chain,
                        rpc_url=self.url,
                        retry_after_seconds=parse_retry_after(
                            response.headers.get("Retry-After")
                        ),
                    )

                if response.status >= 400:
                    raise RpcUnavailableError(
                        f"RPC HTTP {response.status}",
                        chain=self.chain,
                        rpc_url=self.url,
                        status_code=response.status,
                    )

                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    body = await response.text()
                    raise MalformedResponseError(
                        "RPC response is not valid JSON",
                        chain=self.chain,
                        rpc_url=self.url,
                        raw_data=body,
                    ) from e

        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"RPC call timed out after {self.endpoint.timeout_seconds}s",
                chain=self.chain,
                rpc_url=self.url,
            ) from e
        except aiohttp.ClientError as e:
            raise RpcUnavailableError(
                f"Network error: {e}",
                chain=self.chain,
                rpc_url=self.url,
            ) from e

    def _raise_for_rpc_error(self, error: Any) -> None:
        if not isinstance(error, dict):
            raise MalformedResponseError(
                "RPC error object has unexpected shape",
                chain=self.chain,
                rpc_url=self.url,
                raw_data=repr(error),
            )
        code = error.get("code")
        message = str(error.get("message", "Unknown"))
        if code in RATE_LIMIT_ERROR_CODES or "rate limit" in message.lower() \
                or "too many requests" in message.lower():
            raise RateLimitedError(
                f"RPC rate limit: {message}",
                chain=self.chain,
                rpc_url=self.url,
                details=error,
            )
        raise RpcUnavailableError(
            f"RPC error: {message}",
            chain=self.chain,
            rpc_url=self.url,
            details=error,
        )

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make a single JSON-RPC call."""
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_request_id(),
            "method": method,
            "params": params,
        }

        try:
            data = await self._post(payload)

            if not isinstance(data, dict):
                raise MalformedResponseError(
                    f"{method}: response is not an object",
                    chain=self.chain,
                    rpc_url=self.url,
                    raw_data=repr(data),
                )
            if data.get("error") is not None:
                self._raise_for_rpc_error(data["error"])
            if "result" not in data:
                raise MalformedResponseError(
                    f"{method}: response has no result",
                    chain=self.chain,
                    rpc_url=self.url,
                    raw_data=repr(data),
                )
        except ProviderError as e:
            self._on_error(e)
            raise

        self._on_success()
        return data["result"]

    async def _rpc_batch(self, calls: list[tuple[str, list[Any]]]) -> list[Any]:
        """
        Make several JSON-RPC calls in one HTTP request.

        Results come back in request order; an item whose call failed with
        a non-throttling error is returned as None.
        """
        if not calls:
            return []

        ids = [self._next_request_id() for _ in calls]
        payload = [
            {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
            for request_id, (method, params) in zip(ids, calls)
        ]

        try:
            data = await self._post(payload)
            if not isinstance(data, list):
                if isinstance(data, dict) and data.get("error") is not None:
                    self._raise_for_rpc_error(data["error"])
                raise MalformedResponseError(
                    "Batch response is not a list",
                    chain=self.chain,
                    rpc_url=self.url,
                    raw_data=repr(data),
                )

            by_id: dict[Any, Any] = {}
            for item in data:
                if not isinstance(item, dict):
                    continue
                error = item.get("error")
                if error is not None:
                    if isinstance(error, dict) and error.get("code") in RATE_LIMIT_ERROR_CODES:
                        self._raise_for_rpc_error(error)
                    logger.debug(f"[{self.name}] Batch item {item.get('id')} failed: {error}")
                    continue
                by_id[item.get("id")] = item.get("result")
        except ProviderError as e:
            self._on_error(e)
            raise

        self._on_success()
        return [by_id.get(request_id) for request_id in ids]

    # ─────────────────────────────────────────────────────────────
    # Health & statistics
    # ─────────────────────────────────────────────────────────────

    def _on_success(self) -> None:
        self._stats["successful_requests"] += 1
        self._health.total_successes += 1
        self._health.consecutive_failures = 0
        self._health.unavailable_until = None

        if self._health.status is not EndpointStatus.HEALTHY:
            self._health.status = EndpointStatus.HEALTHY
            logger.info(f"[{self.name}] Recovered to HEALTHY status")

    def _on_error(self, error: ProviderError) -> None:
        if isinstance(error, RateLimitedError):
            self._stats["rate_limits_hit"] += 1
        else:
            self._stats["errors"] += 1

        # A malformed body still means the endpoint answered
        if isinstance(error, MalformedResponseError):
            return

        self._health.total_failures += 1
        self._health.consecutive_failures += 1
        self._health.last_error = str(error)

        if self._health.consecutive_failures >= self._failure_threshold:
            if self._health.status is not EndpointStatus.UNAVAILABLE:
                logger.error(f"[{self.name}] Marked UNAVAILABLE")
            self._health.status = EndpointStatus.UNAVAILABLE
            self._health.unavailable_until = datetime.now(timezone.utc) + self._cooldown
        elif self._health.consecutive_failures >= self.DEGRADED_THRESHOLD:
            if self._health.status is not EndpointStatus.DEGRADED:
                logger.warning(f"[{self.name}] Marked DEGRADED")
            self._health.status = EndpointStatus.DEGRADED

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """False while the endpoint's circuit is open."""
        if self._health.status is not EndpointStatus.UNAVAILABLE:
            return True
        until = self._health.unavailable_until
        return until is not None and (now or datetime.now(timezone.utc)) >= until

    def get_health(self) -> EndpointHealth:
        return self._health

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "chain": self.chain.value,
            "url": self.url,
            "status": self._health.status.value,
        }

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "BaseChainProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name}, status={self._health.status.value})>"
