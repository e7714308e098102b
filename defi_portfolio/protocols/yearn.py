"""Yearn V2 yield-vault resolver.

Vault shares convert to the underlying asset with
``balance * pricePerShare // 10**decimals``, in integer arithmetic.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from defi_portfolio.networks import require_address
from defi_portfolio.protocols.base import Position, PositionResolver, value_of
from defi_portfolio.services.multicall import build_call
from defi_portfolio.units import format_units


@dataclass(frozen=True)
class YearnDeployment:
    vaults: Dict[str, str] = field(default_factory=dict)  # vault name -> address

    def __post_init__(self):
        object.__setattr__(self, "vaults", {
            name: require_address(address, f"yearn.vaults.{name}")
            for name, address in self.vaults.items()
        })


YEARN_DEPLOYMENTS: Dict[str, YearnDeployment] = {
    "ethereum": YearnDeployment(vaults={
        "ethVault": "0x19D3364A399d251E894aC732651be8B0E4e85001",
        "usdcVault": "0xa354F35829Ae975e850e23e9615b11Da1B3dC4DE",
        "daiVault": "0xdA816459F1AB5631232FE5e97a05BBBb94970c95",
    }),
}


def underlying_amount(balance: int, price_per_share: int, decimals: int) -> int:
    return balance * price_per_share // 10**decimals


class YearnResolver(PositionResolver):
    protocol = "yearn"
    empty_when_unsupported = False

    def __init__(self, chain, batcher, fetcher, deployments: Dict[str, YearnDeployment] | None = None, **kwargs):
        super().__init__(chain, batcher, fetcher, **kwargs)
        self._deployment = (deployments if deployments is not None else YEARN_DEPLOYMENTS).get(chain.key)

    @property
    def is_supported(self) -> bool:
        return self._deployment is not None

    async def _resolve(self, wallet_address: str) -> List[Position]:
        vaults = list(self._deployment.vaults.items())
        if not vaults:
            return []

        groups = [
            [
                build_call(address, "balanceOf(address)", [wallet_address]),
                build_call(address, "pricePerShare()"),
                build_call(address, "decimals()", output_types=("uint8",)),
                build_call(address, "symbol()", output_types=("string",)),
            ]
            for _, address in vaults
        ]
        results = await self._read_groups("yearn_vaults", groups, wallet_address)

        def build(item) -> Position | None:
            (_, address), reads = item
            balance = value_of(reads[0], "vault balance")
            if balance == 0:
                return None
            price_per_share = value_of(reads[1], "pricePerShare")
            decimals = value_of(reads[2], "decimals")
            return Position(
                protocol=self.protocol,
                chain=self._chain.key,
                asset_symbol=value_of(reads[3], "symbol"),
                asset_address=address,
                supplied=format_units(balance, decimals),
                underlying=format_units(underlying_amount(balance, price_per_share, decimals), decimals),
            )

        return self._settle(
            zip(vaults, results),
            build,
            describe=lambda item: f"vault {item[0][0]} ({item[0][1]})",
        )
