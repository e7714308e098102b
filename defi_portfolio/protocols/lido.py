"""Lido liquid-staking resolver (stETH and wstETH).

stETH balances are share-based: shares are converted to pooled ETH with
getPooledEthByShares. wstETH is reported in wrapped units only; its
conversion to ETH is not computed and ``underlying`` is "0".
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List

from defi_portfolio.errors import UpstreamError
from defi_portfolio.networks import require_address
from defi_portfolio.protocols.base import Position, PositionResolver, SkipObject, value_of
from defi_portfolio.services.multicall import CallResult, build_call
from defi_portfolio.units import format_units


@dataclass(frozen=True)
class LidoDeployment:
    steth: str
    wsteth: str

    def __post_init__(self):
        object.__setattr__(self, "steth", require_address(self.steth, "lido.steth"))
        object.__setattr__(self, "wsteth", require_address(self.wsteth, "lido.wsteth"))


LIDO_DEPLOYMENTS: Dict[str, LidoDeployment] = {
    "ethereum": LidoDeployment(
        steth="0xae7ab96520DE3A18E5e111B5EaAb095312D7fE84",
        wsteth="0x7f39C581F595B53c5cb19bD0b3f8dA6c935E2Ca0",
    ),
}


class LidoResolver(PositionResolver):
    protocol = "lido"
    empty_when_unsupported = False

    def __init__(self, chain, batcher, fetcher, deployments: Dict[str, LidoDeployment] | None = None, **kwargs):
        super().__init__(chain, batcher, fetcher, **kwargs)
        self._deployment = (deployments if deployments is not None else LIDO_DEPLOYMENTS).get(chain.key)

    @property
    def is_supported(self) -> bool:
        return self._deployment is not None

    async def _resolve(self, wallet_address: str) -> List[Position]:
        steth = self._deployment.steth
        wsteth = self._deployment.wsteth

        token_info, balances = await asyncio.gather(
            self._read_groups(
                "lido_tokens",
                [
                    [
                        build_call(token, "symbol()", output_types=("string",)),
                        build_call(token, "decimals()", output_types=("uint8",)),
                    ]
                    for token in (steth, wsteth)
                ],
                static=True,
            ),
            self._read(
                "lido_balances",
                [
                    build_call(steth, "sharesOf(address)", [wallet_address]),
                    build_call(wsteth, "balanceOf(address)", [wallet_address]),
                ],
                wallet_address,
            ),
        )

        # Shares -> pooled ETH needs the share count, so it is a second round trip
        pooled: CallResult | None = None
        if balances[0].success and balances[0].value > 0:
            try:
                conversion = await self._read(
                    "lido_pooled_eth",
                    [build_call(steth, "getPooledEthByShares(uint256)", [balances[0].value])],
                    wallet_address,
                )
                pooled = conversion[0]
            except UpstreamError as e:
                # Only stETH depends on this read; wstETH still settles
                pooled = CallResult(success=False, error=str(e))

        def build_steth(_) -> Position | None:
            shares = value_of(balances[0], "stETH shares")
            if shares == 0:
                return None
            if pooled is None:
                raise SkipObject("pooled ETH conversion missing")
            symbol = value_of(token_info[0][0], "stETH symbol")
            decimals = value_of(token_info[0][1], "stETH decimals")
            amount = format_units(value_of(pooled, "getPooledEthByShares"), decimals)
            return Position(
                protocol=self.protocol,
                chain=self._chain.key,
                asset_symbol=symbol,
                asset_address=steth,
                supplied=amount,
                underlying=amount,
                is_wrapped=False,
            )

        def build_wsteth(_) -> Position | None:
            balance = value_of(balances[1], "wstETH balance")
            if balance == 0:
                return None
            symbol = value_of(token_info[1][0], "wstETH symbol")
            decimals = value_of(token_info[1][1], "wstETH decimals")
            return Position(
                protocol=self.protocol,
                chain=self._chain.key,
                asset_symbol=symbol,
                asset_address=wsteth,
                supplied=format_units(balance, decimals),
                underlying="0",
                is_wrapped=True,
            )

        return (
            self._settle([steth], build_steth, describe=lambda _: "stETH")
            + self._settle([wsteth], build_wsteth, describe=lambda _: "wstETH")
        )
