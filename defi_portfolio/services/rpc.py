"""Per-chain RPC clients with rate limiting.

This module owns one AsyncWeb3 instance per configured chain and exposes the
few raw RPC reads the engine needs outside of multicall batches: native
balances and network identification.
"""

import asyncio
import logging
import time
from typing import Dict

import aiohttp
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.eth import AsyncEth

from defi_portfolio.errors import TransportError
from defi_portfolio.networks import Chain, ChainRegistry

logger = logging.getLogger(__name__)


class RateLimiter:
    """Simple token bucket rate limiter."""

    def __init__(self, calls_per_second: float = 10):
        self.calls_per_second = calls_per_second
        self.min_interval = 1.0 / calls_per_second
        self.last_call_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait until a call is allowed."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_call_time
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self.last_call_time = time.monotonic()


class RpcClients:
    """
    Registry of AsyncWeb3 clients, one per chain.

    Web3 instances are created lazily and reused; every raw RPC read waits on
    the chain's rate limiter first.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        calls_per_second: float = 10,
        timeout_seconds: float = 10.0,
    ):
        self._registry = registry
        self._calls_per_second = calls_per_second
        self._timeout_seconds = timeout_seconds
        self._web3_instances: Dict[str, AsyncWeb3] = {}
        self._limiters: Dict[str, RateLimiter] = {}

    def web3(self, chain: Chain) -> AsyncWeb3:
        """Get or create the Web3 instance for a chain."""
        if chain.key not in self._web3_instances:
            self._web3_instances[chain.key] = AsyncWeb3(
                AsyncHTTPProvider(
                    chain.rpc_url,
                    request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._timeout_seconds)},
                ),
                modules={"eth": (AsyncEth,)},
            )
        return self._web3_instances[chain.key]

    def limiter(self, chain: Chain) -> RateLimiter:
        if chain.key not in self._limiters:
            self._limiters[chain.key] = RateLimiter(self._calls_per_second)
        return self._limiters[chain.key]

    async def get_native_balance(self, chain: Chain, wallet_address: str) -> int:
        """Native asset balance in wei, read directly from the chain."""
        await self.limiter(chain).acquire()
        checksum_address = AsyncWeb3.to_checksum_address(wallet_address)
        try:
            return int(await self.web3(chain).eth.get_balance(checksum_address))
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"{chain.key} RPC unreachable: {e}") from e

    async def get_chain_id(self, chain: Chain) -> int:
        await self.limiter(chain).acquire()
        try:
            return int(await self.web3(chain).eth.chain_id)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"{chain.key} RPC unreachable: {e}") from e

    async def verify_networks(self) -> Dict[str, bool]:
        """Check every configured endpoint reports the chain ID it is configured for.

        Returns:
            Dict mapping chain key -> whether the endpoint matched
        """
        results: Dict[str, bool] = {}
        chains = list(self._registry)
        reported = await asyncio.gather(
            *(self.get_chain_id(chain) for chain in chains),
            return_exceptions=True,
        )
        for chain, chain_id in zip(chains, reported):
            if isinstance(chain_id, Exception):
                logger.warning(f"Could not identify network for {chain.key}: {chain_id}")
                results[chain.key] = False
            elif chain_id != chain.chain_id:
                logger.error(
                    f"RPC for {chain.key} reports chain ID {chain_id}, "
                    f"expected {chain.chain_id}"
                )
                results[chain.key] = False
            else:
                results[chain.key] = True
        return results

    async def close(self):
        for web3 in self._web3_instances.values():
            provider = web3.provider
            if hasattr(provider, "disconnect"):
                await provider.disconnect()
        self._web3_instances.clear()
