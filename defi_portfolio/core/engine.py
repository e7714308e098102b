"""Position and balance aggregation engine.

For one wallet the engine fans out across chains and protocols in parallel:
protocol resolvers produce Positions, balance discovery produces TokenBalances,
and pricing values them. Every branch fails locally; a protocol or chain that
fails contributes an empty result plus an error, never an exception.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence, Tuple

import aiohttp
from web3 import AsyncWeb3

from defi_portfolio.config import Settings
from defi_portfolio.core.valuation import PortfolioReport, build_portfolio
from defi_portfolio.errors import (
    InvalidWalletAddress,
    UnsupportedChainOrProtocol,
    UnsupportedProtocolOnChain,
)
from defi_portfolio.networks import Chain, ChainRegistry, build_chain_registry
from defi_portfolio.protocols.aave_v3 import AaveV3Resolver
from defi_portfolio.protocols.base import Position, PositionResolver
from defi_portfolio.protocols.compound_v2 import CompoundV2Resolver
from defi_portfolio.protocols.lido import LidoResolver
from defi_portfolio.protocols.yearn import YearnResolver
from defi_portfolio.services.balances import BalanceService
from defi_portfolio.services.explorer import ExplorerClient
from defi_portfolio.services.fetch import ResilientFetcher
from defi_portfolio.services.metrics import record_resolver_error
from defi_portfolio.services.multicall import ChainReadBatcher
from defi_portfolio.services.price import CoinGeckoClient, PriceService
from defi_portfolio.services.rpc import RpcClients
from defi_portfolio.services.token_metadata import TokenMetadataService

logger = logging.getLogger(__name__)

PROTOCOLS = ("aave", "compound", "lido", "yearn")


def validate_wallet(wallet_address: Any) -> str:
    """Checksummed wallet address, or InvalidWalletAddress."""
    if not isinstance(wallet_address, str) or not AsyncWeb3.is_address(wallet_address.strip()):
        raise InvalidWalletAddress(f"Invalid wallet address: {wallet_address!r}")
    return AsyncWeb3.to_checksum_address(wallet_address.strip())


@dataclass
class ProtocolReport:
    protocol: str
    chain: str
    positions: List[Position] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "chain": self.chain,
            "positions": [p.to_dict() for p in self.positions],
            "error": self.error,
        }


@dataclass
class PositionsReport:
    wallet: str
    protocols: List[ProtocolReport] = field(default_factory=list)

    @property
    def positions(self) -> List[Position]:
        return [p for report in self.protocols for p in report.positions]

    @property
    def errors(self) -> Dict[str, str]:
        return {
            f"{r.protocol}:{r.chain}": r.error
            for r in self.protocols
            if r.error is not None
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "positions": [p.to_dict() for p in self.positions],
            "protocols": [r.to_dict() for r in self.protocols],
            "errors": self.errors,
        }


@dataclass
class WalletReport:
    wallet: str
    portfolio: PortfolioReport
    positions: PositionsReport

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "portfolio": self.portfolio.to_dict(),
            "positions": self.positions.to_dict(),
        }


class PortfolioEngine:
    """Fans a wallet query out to resolvers and balance discovery."""

    def __init__(
        self,
        registry: ChainRegistry,
        rpc: RpcClients,
        fetcher: ResilientFetcher,
        balances: BalanceService,
        prices: PriceService,
        metadata: TokenMetadataService,
        max_batch_size: int = 300,
        static_ttl_seconds: float = 300.0,
        balance_ttl_seconds: float = 30.0,
    ):
        self._registry = registry
        self._rpc = rpc
        self._fetcher = fetcher
        self._balances = balances
        self._prices = prices
        self._metadata = metadata
        self._max_batch_size = max_batch_size
        self._ttls = {
            "static_ttl_seconds": static_ttl_seconds,
            "balance_ttl_seconds": balance_ttl_seconds,
        }
        self._batchers: Dict[str, ChainReadBatcher] = {}
        self._resolvers: Dict[Tuple[str, str], PositionResolver] = {}
        self._sleep = asyncio.sleep

    @classmethod
    def create(cls, settings: Settings, session: aiohttp.ClientSession) -> "PortfolioEngine":
        """Wire the production object graph from settings."""
        registry = build_chain_registry(settings)
        fetcher = ResilientFetcher.from_settings(settings)
        rpc = RpcClients(
            registry,
            calls_per_second=settings.rpc_calls_per_second,
            timeout_seconds=settings.upstream_timeout_seconds,
        )
        metadata = TokenMetadataService(fetcher, ttl_seconds=settings.static_cache_ttl_seconds)
        explorer = ExplorerClient(
            session, settings.etherscan_api_key, timeout_seconds=settings.upstream_timeout_seconds
        )
        balances = BalanceService(
            fetcher,
            rpc,
            explorer,
            metadata,
            batch_size=settings.balance_batch_size,
            batch_pause_seconds=settings.balance_batch_pause_seconds,
            balance_ttl_seconds=settings.balance_cache_ttl_seconds,
            static_ttl_seconds=settings.static_cache_ttl_seconds,
        )
        coingecko = CoinGeckoClient(
            session,
            api_url=settings.coingecko_api_url,
            api_key=settings.coingecko_api_key,
            timeout_seconds=settings.upstream_timeout_seconds,
        )
        prices = PriceService(
            fetcher,
            coingecko,
            batch_size=settings.price_batch_size,
            ttl_seconds=settings.price_cache_ttl_seconds,
        )
        if not explorer.has_api_key:
            logger.warning("ETHERSCAN_API_KEY not set; token discovery limited to known tokens")
        return cls(
            registry,
            rpc,
            fetcher,
            balances,
            prices,
            metadata,
            max_batch_size=settings.multicall_max_batch_size,
            static_ttl_seconds=settings.static_cache_ttl_seconds,
            balance_ttl_seconds=settings.balance_cache_ttl_seconds,
        )

    @property
    def registry(self) -> ChainRegistry:
        return self._registry

    def batcher(self, chain: Chain) -> ChainReadBatcher:
        if chain.key not in self._batchers:
            self._batchers[chain.key] = ChainReadBatcher(
                self._rpc.web3(chain),
                chain,
                limiter=self._rpc.limiter(chain),
                max_batch_size=self._max_batch_size,
            )
        return self._batchers[chain.key]

    def resolver(self, protocol: str, chain: Chain) -> PositionResolver:
        key = (protocol, chain.key)
        if key not in self._resolvers:
            factories: Dict[str, Callable[[], PositionResolver]] = {
                "aave": lambda: AaveV3Resolver(chain, self.batcher(chain), self._fetcher, **self._ttls),
                "compound": lambda: CompoundV2Resolver(
                    chain, self.batcher(chain), self._fetcher, self._metadata, **self._ttls
                ),
                "lido": lambda: LidoResolver(chain, self.batcher(chain), self._fetcher, **self._ttls),
                "yearn": lambda: YearnResolver(chain, self.batcher(chain), self._fetcher, **self._ttls),
            }
            if protocol not in factories:
                raise UnsupportedChainOrProtocol(f"Unsupported protocol: {protocol}. Supported: {list(PROTOCOLS)}")
            self._resolvers[key] = factories[protocol]()
        return self._resolvers[key]

    def select_chains(self, chains: Sequence[str] | None) -> List[Chain]:
        """Resolve an optional chain filter; unknown keys are rejected."""
        if not chains:
            return list(self._registry)
        return [self._registry.get(key) for key in dict.fromkeys(k.strip().lower() for k in chains)]

    def select_protocols(self, protocols: Sequence[str] | None) -> List[str]:
        if not protocols:
            return list(PROTOCOLS)
        selected = []
        for protocol in dict.fromkeys(p.strip().lower() for p in protocols):
            if protocol not in PROTOCOLS:
                raise UnsupportedChainOrProtocol(
                    f"Unsupported protocol: {protocol}. Supported: {list(PROTOCOLS)}"
                )
            selected.append(protocol)
        return selected

    async def get_positions(
        self,
        wallet_address: str,
        chains: Sequence[str] | None = None,
        protocols: Sequence[str] | None = None,
    ) -> PositionsReport:
        """Positions across protocols and chains, with per-branch errors.

        Without a chain filter each protocol is only asked about the chains it
        is deployed on. With one, every requested pair is asked, so
        raise-policy protocols report an error for chains they lack.

        Raises:
            InvalidWalletAddress: malformed wallet, before any work
            UnsupportedChainOrProtocol: unknown chain or protocol in a filter
        """
        wallet = validate_wallet(wallet_address)
        selected_chains = self.select_chains(chains)
        selected_protocols = self.select_protocols(protocols)

        resolvers = [
            self.resolver(protocol, chain)
            for protocol in selected_protocols
            for chain in selected_chains
        ]
        if not chains:
            resolvers = [r for r in resolvers if r.is_supported]

        results = await asyncio.gather(
            *(r.get_positions(wallet) for r in resolvers),
            return_exceptions=True,
        )

        report = PositionsReport(wallet=wallet)
        for resolver, result in zip(resolvers, results):
            protocol_report = ProtocolReport(protocol=resolver.protocol, chain=resolver.chain.key)
            if isinstance(result, UnsupportedProtocolOnChain):
                logger.warning(f"{resolver.name}: {result}")
                protocol_report.error = str(result)
            elif isinstance(result, Exception):
                logger.error(f"{resolver.name} failed for {wallet}: {result}")
                record_resolver_error(resolver.protocol, resolver.chain.key)
                protocol_report.error = f"{type(result).__name__}: {result}"
            elif isinstance(result, BaseException):
                raise result
            else:
                protocol_report.positions = result
            report.protocols.append(protocol_report)
        return report

    async def get_balances(
        self,
        wallet_address: str,
        chains: Sequence[str] | None = None,
    ) -> PortfolioReport:
        """Valued token balances per chain, with chain and overall USD totals.

        Raises:
            InvalidWalletAddress: malformed wallet, before any work
            UnsupportedChainOrProtocol: unknown chain in the filter
        """
        wallet = validate_wallet(wallet_address)
        selected_chains = self.select_chains(chains)

        results = await asyncio.gather(
            *(
                self._balances.get_chain_balances(chain, wallet, self.batcher(chain))
                for chain in selected_chains
            ),
            return_exceptions=True,
        )

        chain_balances = []
        chain_errors: Dict[str, str] = {}
        for chain, result in zip(selected_chains, results):
            if isinstance(result, Exception):
                logger.error(f"Balances on {chain.key} failed for {wallet}: {result}")
                chain_errors[chain.key] = f"{type(result).__name__}: {result}"
            elif isinstance(result, BaseException):
                raise result
            else:
                chain_balances.append(result)

        tokens = [token for balances in chain_balances for token in balances.tokens]
        prices = await self._prices.quote(tokens, {chain.key: chain for chain in selected_chains})
        return build_portfolio(wallet, chain_balances, prices, chain_errors)

    async def get_report(
        self,
        wallet_address: str,
        chains: Sequence[str] | None = None,
        protocols: Sequence[str] | None = None,
    ) -> WalletReport:
        """Balances and positions for one wallet, resolved concurrently."""
        wallet = validate_wallet(wallet_address)
        # Filters are validated before either branch starts
        self.select_chains(chains)
        self.select_protocols(protocols)
        portfolio, positions = await asyncio.gather(
            self.get_balances(wallet, chains),
            self.get_positions(wallet, chains, protocols),
        )
        return WalletReport(wallet=wallet, portfolio=portfolio, positions=positions)

    async def verify_networks(self) -> Dict[str, bool]:
        return await self._rpc.verify_networks()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "chains": self._registry.keys(),
            "protocols": list(PROTOCOLS),
            "cache": self._fetcher.get_stats(),
        }

    async def run_cache_cleanup(self, interval_seconds: float):
        """Drop expired cache entries every ``interval_seconds`` until cancelled."""
        while True:
            await self._sleep(interval_seconds)
            removed = self._fetcher.cleanup()
            if removed:
                logger.debug(f"Dropped {removed} expired cache entries")

    async def close(self):
        await self._rpc.close()
