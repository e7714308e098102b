"""Static chain table and the registry used to look chains up.

Chains are immutable and built once at startup from settings. The registry
enforces that keys and chain IDs are unique so lookups in either direction are
unambiguous.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List

from web3 import AsyncWeb3

from defi_portfolio.config import Settings
from defi_portfolio.errors import UnsupportedChainOrProtocol

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Multicall3 is deployed at the same address on all major EVM chains
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"


def require_address(value: str, field: str) -> str:
    """Validate and checksum a configured contract address."""
    # Format check only; tables mix checksummed and lower-case literals
    if not isinstance(value, str) or not AsyncWeb3.is_address(value.lower()):
        raise ValueError(f"{field}: invalid address {value!r}")
    checksum = AsyncWeb3.to_checksum_address(value)
    if checksum == ZERO_ADDRESS:
        raise ValueError(f"{field}: zero address is not a valid contract")
    return checksum


def is_zero_address(value: str | None) -> bool:
    return not value or value.lower() == ZERO_ADDRESS


@dataclass(frozen=True)
class NativeCurrency:
    name: str
    symbol: str
    decimals: int = 18
    price_id: str | None = None  # CoinGecko asset id


@dataclass(frozen=True)
class Chain:
    key: str
    name: str
    chain_id: int
    rpc_url: str
    native_currency: NativeCurrency
    explorer_api_url: str | None = None
    price_platform: str | None = None  # CoinGecko asset platform id
    multicall_address: str | None = MULTICALL3_ADDRESS

    def __post_init__(self):
        if self.chain_id <= 0:
            raise ValueError(f"{self.key}: chain_id must be positive")
        if not self.rpc_url:
            raise ValueError(f"{self.key}: rpc_url is required")
        if self.multicall_address is not None:
            object.__setattr__(
                self,
                "multicall_address",
                require_address(self.multicall_address, f"{self.key}.multicall_address"),
            )


class ChainRegistry:
    """Bidirectional lookup of chains by key and by numeric chain ID."""

    def __init__(self, chains: List[Chain]):
        self._by_key: Dict[str, Chain] = {}
        self._by_id: Dict[int, Chain] = {}
        for chain in chains:
            key = chain.key.lower()
            if key in self._by_key:
                raise ValueError(f"Duplicate chain key: {key}")
            if chain.chain_id in self._by_id:
                raise ValueError(
                    f"Chain ID {chain.chain_id} used by both "
                    f"{self._by_id[chain.chain_id].key} and {chain.key}"
                )
            self._by_key[key] = chain
            self._by_id[chain.chain_id] = chain

    def get(self, key: str) -> Chain:
        chain = self._by_key.get(key.lower())
        if chain is None:
            raise UnsupportedChainOrProtocol(
                f"Unsupported chain: {key}. Supported: {self.keys()}"
            )
        return chain

    def by_chain_id(self, chain_id: int) -> Chain:
        chain = self._by_id.get(chain_id)
        if chain is None:
            raise UnsupportedChainOrProtocol(f"No chain configured for chain ID: {chain_id}")
        return chain

    def keys(self) -> List[str]:
        return list(self._by_key.keys())

    def __iter__(self) -> Iterator[Chain]:
        return iter(self._by_key.values())

    def __len__(self) -> int:
        return len(self._by_key)


ETH = NativeCurrency(name="Ether", symbol="ETH", decimals=18, price_id="ethereum")


def build_chains(settings: Settings) -> List[Chain]:
    return [
        Chain(
            key="ethereum",
            name="Ethereum Mainnet",
            chain_id=1,
            rpc_url=settings.ethereum_rpc_url,
            native_currency=ETH,
            explorer_api_url=settings.explorer_api_url,
            price_platform="ethereum",
        ),
        Chain(
            key="base",
            name="Base",
            chain_id=8453,
            rpc_url=settings.base_rpc_url,
            native_currency=ETH,
            explorer_api_url=settings.explorer_api_url,
            price_platform="base",
        ),
        Chain(
            key="arbitrum",
            name="Arbitrum One",
            chain_id=42161,
            rpc_url=settings.arbitrum_rpc_url,
            native_currency=ETH,
            explorer_api_url=settings.explorer_api_url,
            price_platform="arbitrum-one",
        ),
        Chain(
            key="optimism",
            name="OP Mainnet",
            chain_id=10,
            rpc_url=settings.optimism_rpc_url,
            native_currency=ETH,
            explorer_api_url=settings.explorer_api_url,
            price_platform="optimistic-ethereum",
        ),
    ]


def build_chain_registry(settings: Settings) -> ChainRegistry:
    return ChainRegistry(build_chains(settings))
