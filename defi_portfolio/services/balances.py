"""Wallet balance discovery.

Per chain: the native balance always comes from the chain RPC. ERC20 holdings
are discovered from the explorer's transfer history when an API key is
configured, otherwise the chain's static known-token list is read with one
multicall. Per-token failures become zero balances carrying an error; they
never fail the chain.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from defi_portfolio.errors import PortfolioError, TransportError, UpstreamRateLimited
from defi_portfolio.networks import Chain
from defi_portfolio.services.cache import make_key
from defi_portfolio.services.explorer import DiscoveredToken, ExplorerClient
from defi_portfolio.services.fetch import ResilientFetcher
from defi_portfolio.services.multicall import ChainReadBatcher, build_call
from defi_portfolio.services.rpc import RpcClients
from defi_portfolio.services.token_metadata import TokenMetadataService
from defi_portfolio.units import format_units

logger = logging.getLogger(__name__)

NATIVE_TOKEN = "native"

# Explorer application errors (bad key, bad address) are not worth retrying
EXPLORER_RETRY_ON = (TransportError, UpstreamRateLimited)


class TokenKind(Enum):
    NATIVE = "native"
    ERC20 = "erc20"


class DiscoverySource(Enum):
    EXPLORER = "explorer"
    STATIC = "static"


@dataclass(frozen=True)
class TokenBalance:
    chain: str
    token_address: str  # Checksum address, or NATIVE_TOKEN
    balance: int  # Raw integer amount
    decimals: int
    symbol: str | None
    name: str | None
    kind: TokenKind
    error: str | None = None

    @property
    def is_native(self) -> bool:
        return self.kind is TokenKind.NATIVE

    @property
    def formatted(self) -> str:
        return format_units(self.balance, self.decimals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "address": self.token_address,
            "balance": str(self.balance),
            "formatted": self.formatted,
            "decimals": self.decimals,
            "symbol": self.symbol,
            "name": self.name,
            "type": self.kind.value,
            "error": self.error,
        }


@dataclass
class ChainBalances:
    chain: str
    source: DiscoverySource
    tokens: List[TokenBalance] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def native(self) -> TokenBalance | None:
        return next((t for t in self.tokens if t.is_native), None)


class BalanceService:
    """Discovers and reads a wallet's native and ERC20 balances on one chain."""

    def __init__(
        self,
        fetcher: ResilientFetcher,
        rpc: RpcClients,
        explorer: ExplorerClient,
        metadata: TokenMetadataService,
        batch_size: int = 10,
        batch_pause_seconds: float = 0.5,
        balance_ttl_seconds: float = 30.0,
        static_ttl_seconds: float = 300.0,
    ):
        self._fetcher = fetcher
        self._rpc = rpc
        self._explorer = explorer
        self._metadata = metadata
        self._batch_size = batch_size
        self._batch_pause = batch_pause_seconds
        self._balance_ttl = balance_ttl_seconds
        self._static_ttl = static_ttl_seconds
        self._sleep = asyncio.sleep

    async def get_chain_balances(
        self,
        chain: Chain,
        wallet_address: str,
        batcher: ChainReadBatcher,
    ) -> ChainBalances:
        """Native plus non-zero ERC20 balances for one chain.

        Args:
            chain: Chain to read
            wallet_address: Checksummed wallet address
            batcher: Read-batcher for ``chain`` (static token path)
        """
        native, (source, tokens, warnings) = await asyncio.gather(
            self._native_balance(chain, wallet_address),
            self._erc20_balances(chain, wallet_address, batcher),
        )
        # Successful zero balances are noise; failed reads stay visible
        held = [t for t in tokens if t.balance > 0 or t.error is not None]
        return ChainBalances(chain=chain.key, source=source, tokens=[native, *held], warnings=warnings)

    async def _native_balance(self, chain: Chain, wallet_address: str) -> TokenBalance:
        native = chain.native_currency
        key = make_key("native_balance", chain.key, wallet_address)
        try:
            raw = await self._fetcher.fetch(
                key,
                lambda: self._rpc.get_native_balance(chain, wallet_address),
                ttl=self._balance_ttl,
            )
            error = None
        except PortfolioError as e:
            logger.error(f"Native balance on {chain.key} failed for {wallet_address}: {e}")
            raw, error = 0, str(e)

        return TokenBalance(
            chain=chain.key,
            token_address=NATIVE_TOKEN,
            balance=raw,
            decimals=native.decimals,
            symbol=native.symbol,
            name=native.name,
            kind=TokenKind.NATIVE,
            error=error,
        )

    async def _erc20_balances(self, chain: Chain, wallet_address: str, batcher: ChainReadBatcher):
        warnings: List[str] = []
        if self._explorer.supports(chain):
            key = make_key("token_list", chain.key, wallet_address)
            try:
                discovered = await self._fetcher.fetch(
                    key,
                    lambda: self._explorer.token_transfers(chain, wallet_address),
                    ttl=self._static_ttl,
                    retry_on=EXPLORER_RETRY_ON,
                )
            except PortfolioError as e:
                logger.warning(f"Token discovery on {chain.key} failed, using known tokens: {e}")
                warnings.append(f"Token discovery failed, using known tokens: {e}")
            else:
                tokens = await self._explorer_balances(chain, wallet_address, discovered)
                return DiscoverySource.EXPLORER, tokens, warnings
        else:
            logger.warning(f"Explorer API not configured for {chain.key}, using known tokens")
            warnings.append("Explorer API not configured, using known tokens")

        tokens = await self._static_balances(chain, wallet_address, batcher)
        return DiscoverySource.STATIC, tokens, warnings

    async def _explorer_balances(
        self,
        chain: Chain,
        wallet_address: str,
        discovered: List[DiscoveredToken],
    ) -> List[TokenBalance]:
        balances: List[TokenBalance] = []
        for start in range(0, len(discovered), self._batch_size):
            if start:
                await self._sleep(self._batch_pause)
            batch = discovered[start:start + self._batch_size]
            balances.extend(await asyncio.gather(
                *(self._explorer_token_balance(chain, wallet_address, token) for token in batch)
            ))
        return balances

    async def _explorer_token_balance(
        self,
        chain: Chain,
        wallet_address: str,
        token: DiscoveredToken,
    ) -> TokenBalance:
        key = make_key("balance", chain.key, wallet_address, token.address)
        try:
            raw = await self._fetcher.fetch(
                key,
                lambda: self._explorer.token_balance(chain, wallet_address, token.address),
                ttl=self._balance_ttl,
                retry_on=EXPLORER_RETRY_ON,
            )
        except PortfolioError as e:
            logger.warning(f"Balance of {token.address} on {chain.key} failed: {e}")
            return self._failed(chain, token.address, token.decimals, str(e))

        symbol, name = token.symbol, token.name
        if symbol is None:
            symbol, name = await self._describe(chain, token.address, name)

        return TokenBalance(
            chain=chain.key,
            token_address=token.address,
            balance=raw,
            decimals=token.decimals,
            symbol=symbol,
            name=name,
            kind=TokenKind.ERC20,
        )

    async def _describe(self, chain: Chain, token_address: str, name: str | None):
        """Fill a missing symbol from the explorer's token record."""
        key = make_key("token_info", chain.key, token_address)
        try:
            info = await self._fetcher.fetch(
                key,
                lambda: self._explorer.token_info(chain, token_address),
                ttl=self._static_ttl,
                retry_on=EXPLORER_RETRY_ON,
            )
        except PortfolioError as e:
            logger.warning(f"No token info for {token_address} on {chain.key}: {e}")
            return None, name
        if not info:
            return None, name
        return info.get("symbol") or None, info.get("tokenName") or name

    async def _static_balances(
        self,
        chain: Chain,
        wallet_address: str,
        batcher: ChainReadBatcher,
    ) -> List[TokenBalance]:
        known = self._metadata.known_tokens(chain.key)
        if not known:
            return []

        metadata = await self._metadata.get_metadata_batch(batcher, [t.address for t in known])
        calls = [build_call(t.address, "balanceOf(address)", [wallet_address]) for t in known]
        key = make_key("static_balances", chain.key, wallet_address)
        try:
            results = await self._fetcher.fetch(key, lambda: batcher.batch(calls), ttl=self._balance_ttl)
        except PortfolioError as e:
            logger.error(f"Known-token balances on {chain.key} failed: {e}")
            return [self._failed(chain, t.address, t.decimals, str(e)) for t in known]

        balances: List[TokenBalance] = []
        for token, result in zip(known, results):
            meta = metadata.get(token.address, token)
            if not result.success:
                balances.append(self._failed(chain, token.address, meta.decimals, result.error))
                continue
            balances.append(TokenBalance(
                chain=chain.key,
                token_address=token.address,
                balance=int(result.value),
                decimals=meta.decimals,
                symbol=meta.symbol,
                name=meta.name,
                kind=TokenKind.ERC20,
            ))
        return balances

    @staticmethod
    def _failed(chain: Chain, token_address: str, decimals: int, error: str | None) -> TokenBalance:
        return TokenBalance(
            chain=chain.key,
            token_address=token_address,
            balance=0,
            decimals=decimals,
            symbol=None,
            name=None,
            kind=TokenKind.ERC20,
            error=error or "read failed",
        )
