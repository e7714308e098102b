"""Aave V3 lending-market resolver.

Reserves are enumerated from the AaveProtocolDataProvider. Per reserve the
wallet's aToken and debt-token balances plus the current rates are read in one
batch; rates are ray-scaled (1e27) and reported as percentages.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List

from web3 import AsyncWeb3

from defi_portfolio.errors import DecodeError
from defi_portfolio.networks import is_zero_address, require_address
from defi_portfolio.protocols.base import Position, PositionResolver, value_of
from defi_portfolio.services.multicall import build_call
from defi_portfolio.units import format_units, ray_to_percent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AaveMarket:
    pool_addresses_provider: str
    pool_data_provider: str

    def __post_init__(self):
        for field_name in ("pool_addresses_provider", "pool_data_provider"):
            address = require_address(getattr(self, field_name), f"aave.{field_name}")
            object.__setattr__(self, field_name, address)


AAVE_V3_MARKETS: Dict[str, AaveMarket] = {
    "ethereum": AaveMarket(
        pool_addresses_provider="0x2f39d218133AFaB8F2B819B1066c7E434Ad94E9e",
        pool_data_provider="0x7B4EB56E7CD4b454BA8ff71E4518426369a138a3",
    ),
    "base": AaveMarket(
        pool_addresses_provider="0xe20fCBdBfFC4Dd138cE8b2E6FBb6CB49777ad64D",
        pool_data_provider="0x2d8A3C5677189723C4cB8873CfC9C8976FDF38Ac",
    ),
    "arbitrum": AaveMarket(
        pool_addresses_provider="0xa97684ead0e402dC232d5A977953DF7ECBaB3CDb",
        pool_data_provider="0x69FA688f1Dc47d4B5d8029D5a35FB7a548310654",
    ),
    "optimism": AaveMarket(
        pool_addresses_provider="0xa97684ead0e402dC232d5A977953DF7ECBaB3CDb",
        pool_data_provider="0x69FA688f1Dc47d4B5d8029D5a35FB7a548310654",
    ),
}

# getReserveData(address) on the data provider
RESERVE_DATA_OUTPUTS = ("uint256",) * 11 + ("uint40",)
LIQUIDITY_RATE_INDEX = 5
VARIABLE_BORROW_RATE_INDEX = 6

# getReserveConfigurationData(address): decimals first
RESERVE_CONFIG_OUTPUTS = ("uint256",) * 5 + ("bool",) * 5


@dataclass(frozen=True)
class Reserve:
    symbol: str
    asset: str
    decimals: int
    a_token: str
    variable_debt_token: str
    stable_debt_token: str | None = None


class AaveV3Resolver(PositionResolver):
    protocol = "aave"
    empty_when_unsupported = True

    def __init__(self, chain, batcher, fetcher, markets: Dict[str, AaveMarket] | None = None, **kwargs):
        super().__init__(chain, batcher, fetcher, **kwargs)
        self._market = (markets if markets is not None else AAVE_V3_MARKETS).get(chain.key)

    @property
    def is_supported(self) -> bool:
        return self._market is not None

    async def get_reserves(self) -> List[Reserve]:
        """All reserves with usable token addresses (static TTL)."""
        data_provider = self._market.pool_data_provider
        listing = await self._read(
            "aave_reserves",
            [build_call(
                data_provider,
                "getAllReservesTokens()",
                output_types=("(string,address)[]",),
                allow_failure=False,
            )],
            static=True,
        )
        if not listing[0].success:
            raise DecodeError(f"getAllReservesTokens on {self._chain.key}: {listing[0].error}")

        tokens = [
            (symbol, AsyncWeb3.to_checksum_address(asset))
            for symbol, asset in listing[0].value
            if not is_zero_address(asset)
        ]
        if not tokens:
            return []

        groups = [
            [
                build_call(
                    data_provider,
                    "getReserveTokensAddresses(address)",
                    [asset],
                    output_types=("address", "address", "address"),
                ),
                build_call(
                    data_provider,
                    "getReserveConfigurationData(address)",
                    [asset],
                    output_types=RESERVE_CONFIG_OUTPUTS,
                ),
            ]
            for _, asset in tokens
        ]
        details = await self._read_groups("aave_reserve_tokens", groups, static=True)

        reserves = []
        for (symbol, asset), (addresses, config) in zip(tokens, details):
            if not addresses.success or not config.success:
                logger.warning(f"Skipping Aave reserve {symbol} ({asset}): token addresses unreadable")
                continue
            a_token, stable_debt, variable_debt = addresses.value
            if is_zero_address(a_token) or is_zero_address(variable_debt):
                logger.warning(f"Skipping Aave reserve {symbol} ({asset}): placeholder token address")
                continue
            reserves.append(Reserve(
                symbol=symbol,
                asset=asset,
                decimals=int(config.value[0]),
                a_token=a_token,
                variable_debt_token=variable_debt,
                stable_debt_token=None if is_zero_address(stable_debt) else stable_debt,
            ))
        return reserves

    async def _resolve(self, wallet_address: str) -> List[Position]:
        reserves = await self.get_reserves()
        if not reserves:
            return []

        groups = []
        for reserve in reserves:
            group = [
                build_call(reserve.a_token, "balanceOf(address)", [wallet_address]),
                build_call(reserve.variable_debt_token, "balanceOf(address)", [wallet_address]),
                build_call(
                    self._market.pool_data_provider,
                    "getReserveData(address)",
                    [reserve.asset],
                    output_types=RESERVE_DATA_OUTPUTS,
                ),
            ]
            if reserve.stable_debt_token:
                group.append(build_call(reserve.stable_debt_token, "balanceOf(address)", [wallet_address]))
            groups.append(group)

        results = await self._read_groups("aave_balances", groups, wallet_address)

        def build(item) -> Position | None:
            reserve, reads = item
            supplied = value_of(reads[0], "aToken balance")
            variable_debt = value_of(reads[1], "variable debt balance")
            reserve_data = value_of(reads[2], "reserve data")
            stable_debt = value_of(reads[3], "stable debt balance") if len(reads) > 3 else 0
            borrowed = stable_debt + variable_debt
            if supplied == 0 and borrowed == 0:
                return None
            return Position(
                protocol=self.protocol,
                chain=self._chain.key,
                asset_symbol=reserve.symbol,
                asset_address=reserve.asset,
                supplied=format_units(supplied, reserve.decimals),
                borrowed=format_units(borrowed, reserve.decimals),
                supply_apy=ray_to_percent(reserve_data[LIQUIDITY_RATE_INDEX]),
                borrow_apy=ray_to_percent(reserve_data[VARIABLE_BORROW_RATE_INDEX]),
            )

        return self._settle(
            zip(reserves, results),
            build,
            describe=lambda item: f"reserve {item[0].symbol} ({item[0].asset})",
        )
