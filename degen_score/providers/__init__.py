"""
Chain Data Providers.

Closed set of chain families:
- EvmProvider: Ethereum, Arbitrum, Optimism, Blast
- SolanaProvider: Solana
"""

from typing import Optional

import aiohttp

from ..config import ChainConfig, EndpointConfig, FetchConfig
from .base import BaseChainProvider, BlockRange, CallHook, RawLog
from .evm import EvmProvider, address_topic, is_ens_name, topic_to_address
from .solana import SolanaProvider


def create_provider(
    chain_config: ChainConfig,
    endpoint: EndpointConfig,
    fetch_config: Optional[FetchConfig] = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> BaseChainProvider:
    """Build the provider variant for a chain and one of its endpoints."""
    fetch_config = fetch_config or FetchConfig()
    provider_cls = EvmProvider if chain_config.chain.is_evm else SolanaProvider
    return provider_cls(
        chain_config,
        endpoint,
        session=session,
        failure_threshold=fetch_config.failure_threshold,
        cooldown_seconds=fetch_config.cooldown_seconds,
    )


def create_providers(
    chain_config: ChainConfig,
    fetch_config: Optional[FetchConfig] = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> list[BaseChainProvider]:
    """One provider per configured endpoint, primary first."""
    return [
        create_provider(chain_config, endpoint, fetch_config, session)
        for endpoint in chain_config.endpoints
    ]


__all__ = [
    "BaseChainProvider",
    "BlockRange",
    "CallHook",
    "RawLog",
    "EvmProvider",
    "SolanaProvider",
    "address_topic",
    "is_ens_name",
    "topic_to_address",
    "create_provider",
    "create_providers",
]
