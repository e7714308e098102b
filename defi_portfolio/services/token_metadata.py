"""Token metadata for ERC20 tokens.

Known tokens are served from a static per-chain table with no RPC. Anything
else is read in one batch (symbol, decimals, name per token) through the
resilient fetcher, so repeated lookups within the static TTL cost nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence

from web3 import AsyncWeb3

from defi_portfolio.services.cache import make_key
from defi_portfolio.services.fetch import ResilientFetcher
from defi_portfolio.services.multicall import ChainReadBatcher, ReadCall, build_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenMetadata:
    """ERC20 token metadata."""
    address: str
    symbol: str | None
    decimals: int
    name: str | None = None


def _table(rows) -> Dict[str, TokenMetadata]:
    return {
        AsyncWeb3.to_checksum_address(address): TokenMetadata(
            address=AsyncWeb3.to_checksum_address(address),
            symbol=symbol,
            decimals=decimals,
            name=name,
        )
        for address, symbol, decimals, name in rows
    }


# chain -> checksum address -> TokenMetadata
# Also the static token list used when explorer discovery is unavailable
KNOWN_TOKENS: Dict[str, Dict[str, TokenMetadata]] = {
    "ethereum": _table([
        ("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "USDC", 6, "USD Coin"),
        ("0xdAC17F958D2ee523a2206206994597C13D831ec7", "USDT", 6, "Tether USD"),
        ("0x6B175474E89094C44Da98b954EedeAC495271d0F", "DAI", 18, "Dai Stablecoin"),
        ("0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", "WETH", 18, "Wrapped Ether"),
        ("0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", "WBTC", 8, "Wrapped BTC"),
        ("0xae7ab96520DE3A18E5e111B5EaAb095312D7fE84", "stETH", 18, "Lido Staked Ether"),
        ("0x7f39C581F595B53c5cb19bD0b3f8dA6c935E2Ca0", "wstETH", 18, "Wrapped stETH"),
        ("0xae78736Cd615f374D3085123A210448E74Fc6393", "rETH", 18, "Rocket Pool ETH"),
        ("0x514910771AF9Ca656af840dff83E8264EcF986CA", "LINK", 18, "Chainlink"),
        ("0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984", "UNI", 18, "Uniswap"),
        ("0x7Fc66500c84A76Ad7e9c93437bFc5Ac33E2DDaE9", "AAVE", 18, "Aave"),
        ("0x9f8F72aA9304c8B593d555F12eF6589cC3A579A2", "MKR", 18, "Maker"),
        ("0xc00e94Cb662C3520282E6f5717214004A7f26888", "COMP", 18, "Compound"),
        ("0x95aD61b0a150d79219dCF64E1E6Cc01f0B64C4cE", "SHIB", 18, "Shiba Inu"),
    ]),
    "base": _table([
        ("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "USDC", 6, "USD Coin"),
        ("0x4200000000000000000000000000000000000006", "WETH", 18, "Wrapped Ether"),
        ("0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb", "DAI", 18, "Dai Stablecoin"),
        ("0xc1CBa3fCea344f92D9239c08C0568f6F2F0ee452", "wstETH", 18, "Wrapped stETH"),
        ("0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22", "cbETH", 18, "Coinbase Wrapped Staked ETH"),
    ]),
    "arbitrum": _table([
        ("0xaf88d065e77c8cC2239327C5EDb3A432268e5831", "USDC", 6, "USD Coin"),
        ("0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9", "USDT", 6, "Tether USD"),
        ("0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", "WETH", 18, "Wrapped Ether"),
        ("0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f", "WBTC", 8, "Wrapped BTC"),
        ("0x912CE59144191C1204E64559FE8253a0e49E6548", "ARB", 18, "Arbitrum"),
    ]),
    "optimism": _table([
        ("0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85", "USDC", 6, "USD Coin"),
        ("0x94b008aA00579c1307B0EF2c499aD98a8ce58e58", "USDT", 6, "Tether USD"),
        ("0x4200000000000000000000000000000000000006", "WETH", 18, "Wrapped Ether"),
        ("0x4200000000000000000000000000000000000042", "OP", 18, "Optimism"),
    ]),
}


def metadata_calls(address: str) -> List[ReadCall]:
    """symbol(), decimals(), name() for one token, in that order."""
    return [
        build_call(address, "symbol()", output_types=("string",)),
        build_call(address, "decimals()", output_types=("uint8",)),
        build_call(address, "name()", output_types=("string",)),
    ]


class TokenMetadataService:
    """Token symbol, decimals and name, from the static table or a batched read."""

    def __init__(
        self,
        fetcher: ResilientFetcher,
        known_tokens: Dict[str, Dict[str, TokenMetadata]] | None = None,
        ttl_seconds: float = 300.0,
    ):
        self._fetcher = fetcher
        self._known = known_tokens if known_tokens is not None else KNOWN_TOKENS
        self._ttl = ttl_seconds

    def known_tokens(self, chain: str) -> List[TokenMetadata]:
        return list(self._known.get(chain, {}).values())

    def get_known_token(self, address: str, chain: str) -> TokenMetadata | None:
        """Get metadata for a known token (no RPC call)."""
        checksum_address = AsyncWeb3.to_checksum_address(address)
        return self._known.get(chain, {}).get(checksum_address)

    async def get_metadata_batch(
        self,
        batcher: ChainReadBatcher,
        addresses: Sequence[str],
    ) -> Dict[str, TokenMetadata]:
        """Get metadata for multiple tokens on the batcher's chain.

        Tokens whose decimals cannot be read are left out of the result.

        Returns:
            Dict mapping checksum address -> TokenMetadata
        """
        chain = batcher.chain.key
        result: Dict[str, TokenMetadata] = {}
        unknown: List[str] = []
        for address in addresses:
            checksum_address = AsyncWeb3.to_checksum_address(address)
            known = self.get_known_token(checksum_address, chain)
            if known is not None:
                result[checksum_address] = known
            elif checksum_address not in unknown:
                unknown.append(checksum_address)

        if not unknown:
            return result

        key = make_key("token_metadata", chain, *sorted(unknown))
        fetched = await self._fetcher.fetch(
            key, lambda: self._read_metadata(batcher, unknown), ttl=self._ttl
        )
        result.update(fetched)
        return result

    async def _read_metadata(
        self,
        batcher: ChainReadBatcher,
        addresses: List[str],
    ) -> Dict[str, TokenMetadata]:
        calls = [call for address in addresses for call in metadata_calls(address)]
        results = await batcher.batch(calls)

        metadata: Dict[str, TokenMetadata] = {}
        for i, address in enumerate(addresses):
            symbol, decimals, name = results[i * 3:i * 3 + 3]
            if not decimals.success:
                logger.warning(
                    f"Skipping token {address} on {batcher.chain.key}: decimals() unreadable"
                )
                continue
            metadata[address] = TokenMetadata(
                address=address,
                symbol=symbol.value if symbol.success else None,
                decimals=int(decimals.value),
                name=name.value if name.success else None,
            )
        return metadata
