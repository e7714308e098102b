"""Compound V2 money-market resolver.

Markets come from the comptroller's getAllMarkets. Supplied amounts are cToken
balances converted with exchangeRateStored into underlying units; per-block
rates are compounded daily into an APY.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List

from web3 import AsyncWeb3

from defi_portfolio.errors import DecodeError
from defi_portfolio.networks import ZERO_ADDRESS, is_zero_address, require_address
from defi_portfolio.protocols.base import Position, PositionResolver, value_of
from defi_portfolio.services.multicall import build_call
from defi_portfolio.services.token_metadata import TokenMetadataService
from defi_portfolio.units import WAD, format_units, per_block_rate_to_apy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompoundMarket:
    comptroller: str
    native_market: str | None = None  # cToken for the chain's native asset (no underlying())
    blocks_per_day: int = 7200

    def __post_init__(self):
        object.__setattr__(self, "comptroller", require_address(self.comptroller, "compound.comptroller"))
        if self.native_market is not None:
            object.__setattr__(
                self, "native_market", require_address(self.native_market, "compound.native_market")
            )


COMPOUND_V2_MARKETS: Dict[str, CompoundMarket] = {
    "ethereum": CompoundMarket(
        comptroller="0x3d9819210A31b4961b30EF54bE2aeD79B9c9Cd3B",
        native_market="0x4Ddc2D193948926D02f9B1fE9e1daa0718270ED5",  # cETH
    ),
}


@dataclass(frozen=True)
class Market:
    ctoken: str
    symbol: str  # Underlying asset symbol
    underlying: str  # ZERO_ADDRESS for the native asset
    decimals: int  # Underlying asset decimals


class CompoundV2Resolver(PositionResolver):
    protocol = "compound"
    empty_when_unsupported = True

    def __init__(
        self,
        chain,
        batcher,
        fetcher,
        metadata: TokenMetadataService,
        markets: Dict[str, CompoundMarket] | None = None,
        **kwargs,
    ):
        super().__init__(chain, batcher, fetcher, **kwargs)
        self._metadata = metadata
        self._config = (markets if markets is not None else COMPOUND_V2_MARKETS).get(chain.key)

    @property
    def is_supported(self) -> bool:
        return self._config is not None

    async def get_markets(self) -> List[Market]:
        """Listed markets with their underlying asset (static TTL)."""
        listing = await self._read(
            "compound_markets",
            [build_call(
                self._config.comptroller,
                "getAllMarkets()",
                output_types=("address[]",),
                allow_failure=False,
            )],
            static=True,
        )
        if not listing[0].success:
            raise DecodeError(f"getAllMarkets on {self._chain.key}: {listing[0].error}")

        ctokens = [AsyncWeb3.to_checksum_address(address) for address in listing[0].value]
        erc20_markets = [c for c in ctokens if c != self._config.native_market]
        groups = [
            [
                build_call(ctoken, "symbol()", output_types=("string",)),
                build_call(ctoken, "underlying()", output_types=("address",)),
            ]
            for ctoken in erc20_markets
        ]
        details = await self._read_groups("compound_underlyings", groups, static=True)

        underlyings: Dict[str, tuple] = {}
        for ctoken, (symbol, underlying) in zip(erc20_markets, details):
            if not underlying.success or is_zero_address(underlying.value):
                logger.warning(f"Skipping Compound market {ctoken}: underlying() unreadable")
                continue
            ctoken_symbol = symbol.value if symbol.success else None
            underlyings[ctoken] = (ctoken_symbol, AsyncWeb3.to_checksum_address(underlying.value))

        metadata = await self._metadata.get_metadata_batch(
            self._batcher, [address for _, address in underlyings.values()]
        )

        native = self._chain.native_currency
        markets = []
        for ctoken in ctokens:
            if ctoken == self._config.native_market:
                markets.append(Market(ctoken, native.symbol, ZERO_ADDRESS, native.decimals))
                continue
            if ctoken not in underlyings:
                continue
            ctoken_symbol, underlying = underlyings[ctoken]
            meta = metadata.get(underlying)
            if meta is None:
                logger.warning(f"Skipping Compound market {ctoken}: no metadata for {underlying}")
                continue
            # cDAI -> DAI when the underlying's own symbol is unreadable
            fallback = ctoken_symbol[1:] if ctoken_symbol and ctoken_symbol.startswith("c") else ctoken_symbol
            markets.append(Market(ctoken, meta.symbol or fallback or "UNKNOWN", underlying, meta.decimals))
        return markets

    async def _resolve(self, wallet_address: str) -> List[Position]:
        markets = await self.get_markets()
        if not markets:
            return []

        groups = [
            [
                build_call(market.ctoken, "balanceOf(address)", [wallet_address]),
                build_call(market.ctoken, "borrowBalanceStored(address)", [wallet_address]),
                build_call(market.ctoken, "exchangeRateStored()"),
                build_call(market.ctoken, "supplyRatePerBlock()"),
                build_call(market.ctoken, "borrowRatePerBlock()"),
            ]
            for market in markets
        ]
        results = await self._read_groups("compound_balances", groups, wallet_address)
        blocks_per_day = self._config.blocks_per_day

        def build(item) -> Position | None:
            market, reads = item
            ctoken_balance = value_of(reads[0], "cToken balance")
            borrowed = value_of(reads[1], "borrow balance")
            if ctoken_balance == 0 and borrowed == 0:
                return None
            supplied = ctoken_balance * value_of(reads[2], "exchange rate") // WAD
            return Position(
                protocol=self.protocol,
                chain=self._chain.key,
                asset_symbol=market.symbol,
                asset_address=market.underlying,
                supplied=format_units(supplied, market.decimals),
                borrowed=format_units(borrowed, market.decimals),
                supply_apy=per_block_rate_to_apy(value_of(reads[3], "supply rate"), blocks_per_day),
                borrow_apy=per_block_rate_to_apy(value_of(reads[4], "borrow rate"), blocks_per_day),
            )

        return self._settle(
            zip(markets, results),
            build,
            describe=lambda item: f"market {item[0].symbol} ({item[0].ctoken})",
        )
