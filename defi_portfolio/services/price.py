"""USD pricing for wallet balances.

Prices come from CoinGecko with a fixed fallback order:
1. Native assets by price id (one simple/price request)
2. ERC20s by contract address per platform (simple/token_price, batched)
3. Well-known symbols by price id (one simple/price request)
4. Unavailable - the token is worth $0

A failed price request annotates every affected chain; it never raises.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import partial
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import aiohttp

from defi_portfolio.errors import (
    PortfolioError,
    TransportError,
    UpstreamRateLimited,
    UpstreamResponseError,
)
from defi_portfolio.networks import Chain
from defi_portfolio.services.balances import NATIVE_TOKEN, TokenBalance
from defi_portfolio.services.cache import make_key
from defi_portfolio.services.fetch import ResilientFetcher

logger = logging.getLogger(__name__)

COINGECKO_RETRY_ON = (TransportError, UpstreamRateLimited)

# Upper-cased token symbol -> CoinGecko id, used when the address lookup misses
SYMBOL_PRICE_IDS = {
    "ETH": "ethereum",
    "WETH": "weth",
    "USDC": "usd-coin",
    "USDC.E": "usd-coin",
    "USDBC": "usd-coin",
    "USDT": "tether",
    "DAI": "dai",
    "WBTC": "wrapped-bitcoin",
    "LINK": "chainlink",
    "UNI": "uniswap",
    "AAVE": "aave",
    "CRV": "curve-dao-token",
    "MKR": "maker",
    "COMP": "compound-governance-token",
    "YFI": "yearn-finance",
    "LDO": "lido-dao",
    "ARB": "arbitrum",
    "OP": "optimism",
    "SHIB": "shiba-inu",
    "CBETH": "coinbase-wrapped-staked-eth",
    "RETH": "rocket-pool-eth",
    "STETH": "staked-ether",
    "WSTETH": "wrapped-steth",
}


class PriceSource(Enum):
    NATIVE = "native"
    ADDRESS = "address"
    SYMBOL = "symbol"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class PriceQuote:
    chain: str
    token: str  # Checksum address, or NATIVE_TOKEN
    price_usd: Decimal | None
    source: PriceSource

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price_usd": str(self.price_usd) if self.price_usd is not None else None,
            "source": self.source.value,
        }


@dataclass
class PriceBook:
    """Quotes keyed by (chain, token) plus per-chain pricing errors."""
    quotes: Dict[Tuple[str, str], PriceQuote] = field(default_factory=dict)
    errors: Dict[str, List[str]] = field(default_factory=dict)

    def get(self, chain: str, token: str) -> PriceQuote:
        quote = self.quotes.get((chain, token.lower()))
        if quote is None:
            return PriceQuote(chain=chain, token=token, price_usd=None, source=PriceSource.UNAVAILABLE)
        return quote

    def add(self, quote: PriceQuote):
        self.quotes[(quote.chain, quote.token.lower())] = quote

    def annotate(self, chains: Iterable[str], message: str):
        for chain in chains:
            self.errors.setdefault(chain, []).append(message)


def _usd(entry: Any) -> Decimal | None:
    if not isinstance(entry, dict):
        return None
    value = entry.get("usd")
    if value is None:
        return None
    try:
        price = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        logger.warning(f"Ignoring malformed CoinGecko price: {value!r}")
        return None
    return price if price.is_finite() else None


class CoinGeckoClient:
    """Minimal CoinGecko v3 client for simple/price and simple/token_price."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_url: str = "https://api.coingecko.com/api/v3",
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
    ):
        self._session = session
        self._api_url = api_url.rstrip("/")
        self._headers = {"x-cg-demo-api-key": api_key} if api_key else {}
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _get(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        url = f"{self._api_url}/{path}"
        try:
            async with self._session.get(
                url, params=params, headers=self._headers, timeout=self._timeout
            ) as response:
                if response.status == 429:
                    raise UpstreamRateLimited(f"CoinGecko rate limited ({path})")
                if response.status >= 500:
                    raise TransportError(f"CoinGecko HTTP {response.status} ({path})")
                if response.status >= 400:
                    raise UpstreamResponseError(f"CoinGecko HTTP {response.status} ({path})")
                data = await response.json(
                    content_type=None, loads=partial(json.loads, parse_float=Decimal)
                )
        except aiohttp.ClientError as e:
            raise TransportError(f"CoinGecko unreachable ({path}): {e}") from e
        except ValueError as e:
            raise UpstreamResponseError(f"CoinGecko returned invalid JSON ({path})") from e

        if not isinstance(data, dict):
            raise UpstreamResponseError(f"Unexpected CoinGecko payload ({path})")
        return data

    async def simple_price(self, ids: Sequence[str]) -> Dict[str, Decimal]:
        """USD price per CoinGecko id; ids without a price are omitted."""
        data = await self._get("simple/price", {"ids": ",".join(ids), "vs_currencies": "usd"})
        prices = {}
        for price_id in ids:
            price = _usd(data.get(price_id))
            if price is not None:
                prices[price_id] = price
        return prices

    async def token_prices(self, platform: str, addresses: Sequence[str]) -> Dict[str, Decimal]:
        """USD price per lower-cased contract address on ``platform``."""
        data = await self._get(
            f"simple/token_price/{platform}",
            {"contract_addresses": ",".join(addresses), "vs_currencies": "usd"},
        )
        prices = {}
        for address, entry in data.items():
            price = _usd(entry)
            if price is not None:
                prices[address.lower()] = price
        return prices


class PriceService:
    """Quotes a set of balances in USD through the resilient fetcher."""

    def __init__(
        self,
        fetcher: ResilientFetcher,
        client: CoinGeckoClient,
        batch_size: int = 50,
        ttl_seconds: float = 60.0,
        symbol_ids: Dict[str, str] | None = None,
    ):
        self._fetcher = fetcher
        self._client = client
        self._batch_size = batch_size
        self._ttl = ttl_seconds
        self._symbol_ids = symbol_ids if symbol_ids is not None else SYMBOL_PRICE_IDS

    async def quote(self, balances: Sequence[TokenBalance], chains: Dict[str, Chain]) -> PriceBook:
        """Price every balance that was read successfully.

        Args:
            balances: Token balances across any number of chains
            chains: Chain key -> Chain for every chain in ``balances``

        Returns:
            PriceBook with one quote per priced token and per-chain errors
        """
        book = PriceBook()
        readable = [b for b in balances if b.error is None]
        natives = [b for b in readable if b.token_address == NATIVE_TOKEN]
        tokens = [b for b in readable if b.token_address != NATIVE_TOKEN]

        await asyncio.gather(
            self._quote_natives(natives, chains, book),
            self._quote_by_address(tokens, chains, book),
        )

        unresolved = [
            b for b in tokens
            if book.get(b.chain, b.token_address).source is PriceSource.UNAVAILABLE
        ]
        await self._quote_by_symbol(unresolved, book)
        return book

    async def _quote_natives(self, natives, chains: Dict[str, Chain], book: PriceBook):
        price_ids = {}
        for balance in natives:
            price_id = chains[balance.chain].native_currency.price_id
            if price_id:
                price_ids[balance.chain] = price_id
        if not price_ids:
            return

        ids = sorted(set(price_ids.values()))
        try:
            prices = await self._simple_price(ids)
        except PortfolioError as e:
            logger.error(f"Native price lookup failed: {e}")
            book.annotate(price_ids.keys(), f"Native price unavailable: {e}")
            return

        for chain, price_id in price_ids.items():
            if price_id in prices:
                book.add(PriceQuote(chain, NATIVE_TOKEN, prices[price_id], PriceSource.NATIVE))

    async def _quote_by_address(self, tokens, chains: Dict[str, Chain], book: PriceBook):
        jobs = []
        by_chain: Dict[str, List[str]] = {}
        for balance in tokens:
            addresses = by_chain.setdefault(balance.chain, [])
            address = balance.token_address.lower()
            if address not in addresses:
                addresses.append(address)

        for chain_key, addresses in by_chain.items():
            platform = chains[chain_key].price_platform
            if not platform:
                continue
            for start in range(0, len(addresses), self._batch_size):
                batch = addresses[start:start + self._batch_size]
                jobs.append(self._quote_address_batch(chain_key, platform, batch, book))

        await asyncio.gather(*jobs)

    async def _quote_address_batch(self, chain: str, platform: str, addresses: List[str], book: PriceBook):
        key = make_key("token_price", platform, *addresses)
        try:
            prices = await self._fetcher.fetch(
                key,
                lambda: self._client.token_prices(platform, addresses),
                ttl=self._ttl,
                retry_on=COINGECKO_RETRY_ON,
            )
        except PortfolioError as e:
            logger.error(f"Token price lookup on {chain} failed for {len(addresses)} tokens: {e}")
            book.annotate([chain], f"Token prices unavailable: {e}")
            return

        for address in addresses:
            if address in prices:
                book.add(PriceQuote(chain, address, prices[address], PriceSource.ADDRESS))

    async def _quote_by_symbol(self, unresolved: List[TokenBalance], book: PriceBook):
        wanted: Dict[TokenBalance, str] = {}
        for balance in unresolved:
            price_id = self._symbol_ids.get((balance.symbol or "").upper())
            if price_id:
                wanted[balance] = price_id
        if not wanted:
            return

        try:
            prices = await self._simple_price(sorted(set(wanted.values())))
        except PortfolioError as e:
            logger.error(f"Symbol price fallback failed: {e}")
            book.annotate(sorted({b.chain for b in wanted}), f"Symbol prices unavailable: {e}")
            return

        for balance, price_id in wanted.items():
            if price_id in prices:
                book.add(PriceQuote(balance.chain, balance.token_address, prices[price_id], PriceSource.SYMBOL))

    async def _simple_price(self, ids: List[str]) -> Dict[str, Decimal]:
        return await self._fetcher.fetch(
            make_key("price", *ids),
            lambda: self._client.simple_price(ids),
            ttl=self._ttl,
            retry_on=COINGECKO_RETRY_ON,
        )
