"""
Fetch Orchestrator - Concurrent, cached, fault-isolated data collection.

============================================================
RESPONSIBILITY
============================================================
Collects provider data for a set of addresses and hands it to the
detection engine.

- One independent task per (address, chain) unit
- Read-through cache per (chain, address, data kind)
- Retry with exponential backoff and jitter, rotating endpoints
- Global, per-endpoint and per-chain concurrency ceilings
- Overall timeout: pending units are cancelled and reported MISSING

A failing chain never fails the request. Errors become FetchDiagnostic
entries on the unit's result.

============================================================
DATA KINDS
============================================================
EVM:    account, first_activity, protocol_logs, token_transfers,
        token_balances
Solana: account, first_activity, protocol_logs, token_accounts

The account kind is fetched first; if it fails the unit is MISSING.
Any other failed kind degrades the unit to PARTIAL.

============================================================
"""

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Optional

import aiohttp

from .cache import CacheStore, InMemoryCacheStore
from .config import ChainConfig, DegenScoreConfig
from .detection import ProtocolDetector
from .exceptions import (
    MalformedResponseError,
    ProviderError,
    RateLimitedError,
    RpcUnavailableError,
)
from .models import (
    Address,
    AddressFetchResult,
    ChainId,
    ChainStatus,
    DataKind,
    FetchDiagnostic,
    make_cache_key,
)
from .providers import BaseChainProvider, BlockRange, RawLog, address_topic, create_providers
from .registry import TRANSFER_SIGNATURE, TokenKind


logger = logging.getLogger(__name__)


EVM_DATA_KINDS: tuple[DataKind, ...] = (
    DataKind.ACCOUNT,
    DataKind.FIRST_ACTIVITY,
    DataKind.PROTOCOL_LOGS,
    DataKind.TOKEN_TRANSFERS,
    DataKind.TOKEN_BALANCES,
)

SOLANA_DATA_KINDS: tuple[DataKind, ...] = (
    DataKind.ACCOUNT,
    DataKind.FIRST_ACTIVITY,
    DataKind.PROTOCOL_LOGS,
    DataKind.TOKEN_ACCOUNTS,
)


def data_kinds_for(chain: ChainId) -> tuple[DataKind, ...]:
    return EVM_DATA_KINDS if chain.is_evm else SOLANA_DATA_KINDS


class _FetchRun:
    """State shared by the units of one fetch() call."""

    def __init__(self, orchestrator: "FetchOrchestrator") -> None:
        self._orchestrator = orchestrator
        self._latest: dict[ChainId, int] = {}
        self._locks: dict[ChainId, asyncio.Lock] = {}

    async def latest_block(self, chain: ChainId) -> int:
        """Head block or slot, resolved at most once per chain per run."""
        lock = self._locks.setdefault(chain, asyncio.Lock())
        async with lock:
            if chain not in self._latest:
                self._latest[chain] = await self._orchestrator.call(chain, "fetch_latest_block")
            return self._latest[chain]


class _ChainSlots:
    """
    Admits at most `limit` distinct chains at once.

    Units of a chain that already holds a slot share it; the slot is
    released when the last of them finishes.
    """

    def __init__(self, limit: int) -> None:
        self._semaphore = asyncio.Semaphore(limit)
        self._active: dict[ChainId, int] = {}
        self._locks: dict[ChainId, asyncio.Lock] = {}
        self.peak = 0

    @asynccontextmanager
    async def hold(self, chain: ChainId) -> AsyncIterator[None]:
        async with self._locks.setdefault(chain, asyncio.Lock()):
            if chain not in self._active:
                await self._semaphore.acquire()
                self._active[chain] = 0
            self._active[chain] += 1
            self.peak = max(self.peak, len(self._active))
        try:
            yield
        finally:
            self._active[chain] -= 1
            if self._active[chain] == 0:
                del self._active[chain]
                self._semaphore.release()


class FetchOrchestrator:
    """
    Drives concurrent collection for many addresses across chains.

    Usage:
        orchestrator = FetchOrchestrator(config)
        results = await orchestrator.fetch(addresses)
        await orchestrator.close()
    """

    def __init__(
        self,
        config: DegenScoreConfig,
        cache: Optional[CacheStore] = None,
        detector: Optional[ProtocolDetector] = None,
        providers: Optional[dict[ChainId, list[BaseChainProvider]]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        if cache is None:
            cache = InMemoryCacheStore(config.cache.ttl_seconds, config.cache.max_entries)
        self.cache = cache
        self.detector = detector or ProtocolDetector(
            min_usd_threshold=config.detection.min_usd_threshold,
        )

        if providers is None:
            providers = {
                chain: create_providers(chain_config, config.fetch, session)
                for chain, chain_config in config.chains.items()
                if chain_config.enabled
            }
        self._providers = providers

        fetch = config.fetch
        self._global_semaphore = asyncio.Semaphore(fetch.max_concurrent_requests)
        self._chain_slots = _ChainSlots(fetch.max_concurrent_chains)
        self._endpoint_semaphores: dict[str, asyncio.Semaphore] = {}
        for chain_providers in providers.values():
            for provider in chain_providers:
                self._endpoint_semaphores.setdefault(
                    provider.url,
                    asyncio.Semaphore(provider.endpoint.max_concurrent_requests),
                )

        self._stats = {
            "units_fetched": 0,
            "units_timed_out": 0,
            "provider_calls": 0,
            "retries": 0,
            "failed_kinds": 0,
        }

    # ─────────────────────────────────────────────────────────────
    # Provider calls
    # ─────────────────────────────────────────────────────────────

    def providers_for(self, chain: ChainId) -> list[BaseChainProvider]:
        return self._providers.get(chain, [])

    def _backoff(self, attempt: int, error: ProviderError) -> float:
        fetch = self.config.fetch
        delay = fetch.backoff_base_seconds * (2 ** attempt)
        if fetch.backoff_jitter_seconds > 0:
            delay += random.uniform(0, fetch.backoff_jitter_seconds)
        if isinstance(error, RateLimitedError) and error.retry_after_seconds:
            delay = max(delay, error.retry_after_seconds)
        return delay

    async def call(self, chain: ChainId, method: str, *args: Any, **kwargs: Any) -> Any:
        """
        Invoke one provider primitive with retry and failover.

        Attempts rotate through the chain's usable endpoints, primary
        first. MalformedResponseError is raised immediately; other
        ProviderErrors are retried up to max_attempts. The raised error
        carries the attempt count in details["attempts"].
        """
        providers = self.providers_for(chain)
        if not providers:
            raise RpcUnavailableError(f"No RPC endpoints for {chain.value}", chain=chain)

        max_attempts = self.config.fetch.max_attempts
        last_error: Optional[ProviderError] = None

        for attempt in range(max_attempts):
            usable = [p for p in providers if p.is_usable()]
            if usable:
                provider = usable[attempt % len(usable)]
                try:
                    async with self._global_semaphore, self._endpoint_semaphores[provider.url]:
                        self._stats["provider_calls"] += 1
                        return await getattr(provider, method)(*args, **kwargs)
                except MalformedResponseError as e:
                    logger.warning(f"[{provider.name}] Malformed response to {method}: {e.message}")
                    e.details["attempts"] = attempt + 1
                    raise
                except ProviderError as e:
                    last_error = e
            else:
                last_error = RpcUnavailableError(
                    f"Every {chain.value} endpoint is cooling down",
                    chain=chain,
                )

            if attempt + 1 >= max_attempts:
                break

            delay = self._backoff(attempt, last_error)
            self._stats["retries"] += 1
            logger.warning(
                f"[{chain.value}] {method} failed ({type(last_error).__name__}: "
                f"{last_error.message}), retry {attempt + 1}/{max_attempts - 1} in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

        logger.error(f"[{chain.value}] {method} failed after {max_attempts} attempts")
        last_error.details["attempts"] = max_attempts
        raise last_error

    def _call_hook(self, chain: ChainId):
        async def hook(method: str, *args: Any, **kwargs: Any) -> Any:
            return await self.call(chain, method, *args, **kwargs)
        return hook

    # ─────────────────────────────────────────────────────────────
    # Per-kind fetchers
    # ─────────────────────────────────────────────────────────────

    def _age_window(self, chain_config: ChainConfig, latest: int) -> BlockRange:
        span = self.config.thresholds.max_wallet_age_days * chain_config.blocks_per_day
        return BlockRange.lookback(latest, span)

    async def _fill_timestamps(self, chain: ChainId, logs: list[RawLog]) -> list[RawLog]:
        """Resolve block timestamps for the earliest blocks, bounded."""
        blocks = sorted({l.block_number for l in logs if l.timestamp is None})
        blocks = blocks[:self.config.detection.max_timestamp_lookups]
        if not blocks:
            return logs

        timestamps = await asyncio.gather(
            *(self.call(chain, "fetch_block_timestamp", b) for b in blocks)
        )
        by_block = dict(zip(blocks, timestamps))
        return [
            l.with_timestamp(by_block[l.block_number])
            if l.timestamp is None and l.block_number in by_block else l
            for l in logs
        ]

    @staticmethod
    def _serialize_logs(logs: Iterable[RawLog]) -> list[dict[str, Any]]:
        ordered = sorted(logs, key=lambda l: (l.block_number, l.log_index, l.tx_hash))
        return [l.to_dict() for l in ordered]

    async def _fetch_evm_account(self, address: Address, run: _FetchRun, **_: Any) -> dict[str, Any]:
        latest = await run.latest_block(address.chain)
        tx_count = await self.call(address.chain, "fetch_tx_count", address, latest)
        balance = await self.call(address.chain, "fetch_native_balance", address)
        return {
            "latest_block": latest,
            "tx_count": tx_count,
            "native_balance": str(balance),
        }

    async def _fetch_first_activity(self, address: Address, run: _FetchRun, **_: Any) -> dict[str, Any]:
        chain = address.chain
        chain_config = self.config.chains[chain]
        latest = await run.latest_block(chain)

        provider = self.providers_for(chain)[0]
        block = await provider.fetch_first_activity_block(
            address,
            self._age_window(chain_config, latest),
            call=self._call_hook(chain),
        )
        timestamp = None
        if block is not None:
            timestamp = await self.call(chain, "fetch_block_timestamp", block)
        return {"block": block, "timestamp": timestamp}

    async def _fetch_evm_protocol_logs(self, address: Address, run: _FetchRun, **_: Any) -> list[dict[str, Any]]:
        chain = address.chain
        chain_config = self.config.chains[chain]
        window = BlockRange.lookback(await run.latest_block(chain), chain_config.lookback_blocks)
        me_topic = address_topic(address.value)
        me_body = address.value.removeprefix("0x")

        logs: list[RawLog] = []
        for contract in self.detector.registry.watched_contracts(chain):
            for spec in contract.events:
                if spec.user_topic is not None:
                    topics = [None] * (spec.user_topic - 1) + [me_topic]
                    found = await self.call(
                        chain, "fetch_logs", contract.address, spec.signature, window,
                        topics=tuple(topics),
                    )
                else:
                    # User sits in the data section; filter locally
                    found = await self.call(
                        chain, "fetch_logs", contract.address, spec.signature, window,
                    )
                    found = [l for l in found if me_body in l.data.lower()]
                logs.extend(found)

        logs = await self._fill_timestamps(chain, logs)
        return self._serialize_logs(logs)

    async def _fetch_token_transfers(self, address: Address, run: _FetchRun, **_: Any) -> list[dict[str, Any]]:
        chain = address.chain
        chain_config = self.config.chains[chain]
        window = BlockRange.lookback(await run.latest_block(chain), chain_config.lookback_blocks)
        me_topic = address_topic(address.value)

        outgoing = await self.call(
            chain, "fetch_logs", None, TRANSFER_SIGNATURE, window, topics=(me_topic,),
        )
        incoming = await self.call(
            chain, "fetch_logs", None, TRANSFER_SIGNATURE, window, topics=(None, me_topic),
        )

        unique = {(l.tx_hash, l.log_index): l for l in [*outgoing, *incoming]}
        logs = await self._fill_timestamps(chain, list(unique.values()))
        return self._serialize_logs(logs)

    async def _fetch_token_balances(self, address: Address, run: _FetchRun, **_: Any) -> dict[str, int]:
        chain = address.chain
        balances: dict[str, int] = {}
        for token in sorted(self.detector.registry.tokens(chain, TokenKind.CASINO)):
            balances[token] = await self.call(chain, "fetch_token_balance", address, token)
        return balances

    async def _fetch_solana_account(self, address: Address, run: _FetchRun, **_: Any) -> dict[str, Any]:
        chain = address.chain
        chain_config = self.config.chains[chain]
        latest = await run.latest_block(chain)
        window = BlockRange.lookback(latest, chain_config.lookback_blocks)

        signatures = await self.call(
            chain, "fetch_signatures", address.value, None, chain_config.max_signatures,
        )
        balance = await self.call(chain, "fetch_native_balance", address)
        return {
            "latest_block": latest,
            "tx_count": len(signatures),
            "native_balance": str(balance),
            "signatures": [s for s in signatures if s["slot"] >= window.start],
        }

    async def _fetch_solana_protocol_logs(
        self,
        address: Address,
        run: _FetchRun,
        account: Optional[dict[str, Any]] = None,
        **_: Any,
    ) -> list[dict[str, Any]]:
        chain = address.chain
        chain_config = self.config.chains[chain]
        account = account or {}
        signatures = [
            s["signature"] for s in account.get("signatures", []) if not s.get("failed")
        ][:chain_config.max_transactions]
        if not signatures:
            return []

        window = BlockRange.lookback(account["latest_block"], chain_config.lookback_blocks)
        logs = await self.call(
            chain, "fetch_logs", None, None, window, signatures=tuple(signatures),
        )
        return self._serialize_logs(logs)

    async def _fetch_token_accounts(self, address: Address, run: _FetchRun, **_: Any) -> list[dict[str, Any]]:
        accounts = await self.call(address.chain, "fetch_token_accounts", address)
        return sorted(accounts, key=lambda a: (a["mint"], a["amount"]))

    def _fetcher(self, chain: ChainId, kind: DataKind):
        if chain.is_evm:
            table = {
                DataKind.ACCOUNT: self._fetch_evm_account,
                DataKind.FIRST_ACTIVITY: self._fetch_first_activity,
                DataKind.PROTOCOL_LOGS: self._fetch_evm_protocol_logs,
                DataKind.TOKEN_TRANSFERS: self._fetch_token_transfers,
                DataKind.TOKEN_BALANCES: self._fetch_token_balances,
            }
        else:
            table = {
                DataKind.ACCOUNT: self._fetch_solana_account,
                DataKind.FIRST_ACTIVITY: self._fetch_first_activity,
                DataKind.PROTOCOL_LOGS: self._fetch_solana_protocol_logs,
                DataKind.TOKEN_ACCOUNTS: self._fetch_token_accounts,
            }
        return table[kind]

    # ─────────────────────────────────────────────────────────────
    # Units
    # ─────────────────────────────────────────────────────────────

    async def _fetch_kind(
        self,
        address: Address,
        kind: DataKind,
        run: _FetchRun,
        diagnostics: list[FetchDiagnostic],
        account: Optional[dict[str, Any]] = None,
    ) -> Optional[Any]:
        """One data kind through the cache; None (plus a diagnostic) on failure."""
        fetcher = self._fetcher(address.chain, kind)

        async def fetch() -> Any:
            return await fetcher(address, run, account=account)

        try:
            payload, _ = await self.cache.get_or_fetch(make_cache_key(address, kind), fetch)
            return payload
        except ProviderError as e:
            self._stats["failed_kinds"] += 1
            diagnostics.append(FetchDiagnostic(
                chain=address.chain,
                address=address.value,
                data_kind=kind.value,
                error_type=type(e).__name__,
                message=e.message,
                attempts=int(e.details.get("attempts", 1)),
            ))
            return None

    async def _fetch_unit(self, address: Address, run: _FetchRun) -> AddressFetchResult:
        chain = address.chain
        chain_config = self.config.get_chain_config(chain)
        if chain_config is None or not chain_config.enabled or not self.providers_for(chain):
            return AddressFetchResult.missing(address, (FetchDiagnostic(
                chain=chain,
                address=address.value,
                data_kind=DataKind.ACCOUNT.value,
                error_type="ChainDisabled",
                message=f"{chain.value} is not enabled",
                attempts=0,
            ),))

        async with self._chain_slots.hold(chain):
            diagnostics: list[FetchDiagnostic] = []
            kinds = data_kinds_for(chain)

            account = await self._fetch_kind(address, DataKind.ACCOUNT, run, diagnostics)
            if account is None:
                logger.warning(f"[{chain.value}] {address.value}: account data unavailable, chain MISSING")
                return AddressFetchResult.missing(address, tuple(diagnostics))

            payloads: dict[DataKind, Any] = {DataKind.ACCOUNT: account}
            rest = [k for k in kinds if k is not DataKind.ACCOUNT]
            fetched = await asyncio.gather(
                *(self._fetch_kind(address, k, run, diagnostics, account) for k in rest)
            )
            for kind, payload in zip(rest, fetched):
                if payload is not None:
                    payloads[kind] = payload

        status = ChainStatus.OK if len(payloads) == len(kinds) else ChainStatus.PARTIAL
        if status is ChainStatus.PARTIAL:
            logger.warning(
                f"[{chain.value}] {address.value}: PARTIAL, missing "
                f"{sorted(k.value for k in kinds if k not in payloads)}"
            )

        ordered = tuple(sorted(diagnostics, key=lambda d: d.data_kind))
        return self.detector.build_result(address, payloads, status, ordered)

    async def fetch(self, addresses: Iterable[Address]) -> list[AddressFetchResult]:
        """
        Collect and classify data for every address.

        Returns one result per distinct address, sorted by (chain, address).
        Never raises for provider failures.
        """
        units = sorted(set(addresses), key=lambda a: (a.chain.value, a.value))
        if not units:
            return []

        run = _FetchRun(self)
        tasks = {asyncio.create_task(self._fetch_unit(a, run)): a for a in units}
        timeout = self.config.fetch.overall_timeout_seconds
        done, pending = await asyncio.wait(tasks, timeout=timeout)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: list[AddressFetchResult] = []
        for task, address in tasks.items():
            if task in pending:
                self._stats["units_timed_out"] += 1
                logger.error(f"[{address.chain.value}] {address.value}: timed out after {timeout}s")
                results.append(AddressFetchResult.missing(address, (FetchDiagnostic(
                    chain=address.chain,
                    address=address.value,
                    data_kind="all",
                    error_type="Timeout",
                    message=f"Overall timeout of {timeout}s exceeded",
                    attempts=0,
                ),)))
                continue

            error = task.exception()
            if error is not None:
                logger.error(
                    f"[{address.chain.value}] {address.value}: unit failed: {error!r}",
                    exc_info=error,
                )
                results.append(AddressFetchResult.missing(address, (FetchDiagnostic(
                    chain=address.chain,
                    address=address.value,
                    data_kind="all",
                    error_type=type(error).__name__,
                    message=str(error),
                    attempts=0,
                ),)))
                continue

            self._stats["units_fetched"] += 1
            results.append(task.result())

        return results

    # ─────────────────────────────────────────────────────────────
    # Health, statistics, lifecycle
    # ─────────────────────────────────────────────────────────────

    def get_provider_health(self) -> dict[str, dict[str, Any]]:
        return {
            provider.name: provider.get_health().to_dict()
            for chain_providers in self._providers.values()
            for provider in chain_providers
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "peak_chains_in_flight": self._chain_slots.peak,
            **self.cache.get_stats(),
            "providers": [
                provider.get_stats()
                for chain_providers in self._providers.values()
                for provider in chain_providers
            ],
        }

    async def close(self) -> None:
        for chain_providers in self._providers.values():
            for provider in chain_providers:
                await provider.close()
