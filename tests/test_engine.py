import asyncio
from decimal import Decimal

import pytest
from unittest.mock import AsyncMock, MagicMock

from defi_portfolio.core.engine import PROTOCOLS, PortfolioEngine, validate_wallet
from defi_portfolio.errors import (
    InvalidWalletAddress,
    TransportError,
    UnsupportedChainOrProtocol,
    UnsupportedProtocolOnChain,
)
from defi_portfolio.protocols.base import Position
from defi_portfolio.services.balances import (
    NATIVE_TOKEN,
    ChainBalances,
    DiscoverySource,
    TokenBalance,
    TokenKind,
)
from defi_portfolio.services.price import PriceBook, PriceQuote, PriceSource

from conftest import WALLET

# Protocols deployed per chain in these tests
DEPLOYED = {
    ("aave", "ethereum"), ("aave", "base"),
    ("compound", "ethereum"),
    ("lido", "ethereum"),
    ("yearn", "ethereum"),
}


def position(protocol, chain, symbol="USDC"):
    return Position(
        protocol=protocol, chain=chain, asset_symbol=symbol,
        asset_address="0x2000000000000000000000000000000000000001", supplied="1.0",
    )


class FakeResolver:
    empty_policy = {"aave": True, "compound": True, "lido": False, "yearn": False}

    def __init__(self, protocol, chain):
        self.protocol = protocol
        self.chain = chain
        self.name = f"{protocol}:{chain.key}"
        self.is_supported = (protocol, chain.key) in DEPLOYED
        self.get_positions = AsyncMock(side_effect=self._positions)
        self.error = None

    async def _positions(self, wallet):
        if not self.is_supported:
            if self.empty_policy[self.protocol]:
                return []
            raise UnsupportedProtocolOnChain(self.protocol, self.chain.key)
        if self.error is not None:
            raise self.error
        return [position(self.protocol, self.chain.key)]


@pytest.fixture
def balances():
    balances = MagicMock()

    async def chain_balances(chain, wallet, batcher):
        return ChainBalances(chain.key, DiscoverySource.STATIC, [
            TokenBalance(chain.key, NATIVE_TOKEN, 10**18, 18, "ETH", "Ether", TokenKind.NATIVE),
        ])

    balances.get_chain_balances = AsyncMock(side_effect=chain_balances)
    return balances


@pytest.fixture
def prices():
    prices = MagicMock()

    async def quote(tokens, chains):
        book = PriceBook()
        for chain in chains:
            book.add(PriceQuote(chain, NATIVE_TOKEN, Decimal("2000"), PriceSource.NATIVE))
        return book

    prices.quote = AsyncMock(side_effect=quote)
    return prices


@pytest.fixture
def engine(registry, fetcher, balances, prices):
    engine = PortfolioEngine(registry, MagicMock(), fetcher, balances, prices, metadata=MagicMock())
    resolvers = {}

    def resolver(protocol, chain):
        key = (protocol, chain.key)
        if key not in resolvers:
            resolvers[key] = FakeResolver(protocol, chain)
        return resolvers[key]

    engine.resolver = resolver
    engine.fake_resolvers = resolvers
    return engine


class TestValidateWallet:
    def test_checksums(self):
        lower = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
        assert validate_wallet(lower) == "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"

    @pytest.mark.parametrize("wallet", ["", "0x123", "not-an-address", None, 42])
    def test_rejects_invalid(self, wallet):
        with pytest.raises(InvalidWalletAddress):
            validate_wallet(wallet)


class TestGetPositions:
    @pytest.mark.asyncio
    async def test_queries_only_deployed_pairs_without_filter(self, engine):
        report = await engine.get_positions(WALLET)
        pairs = {(r.protocol, r.chain) for r in report.protocols}
        assert pairs == DEPLOYED
        assert len(report.positions) == len(DEPLOYED)
        assert report.errors == {}

    @pytest.mark.asyncio
    async def test_failing_protocol_becomes_annotation(self, engine):
        await engine.get_positions(WALLET, protocols=["aave"])
        engine.fake_resolvers[("aave", "ethereum")].error = TransportError("rpc down")

        report = await engine.get_positions(WALLET)

        assert report.errors == {"aave:ethereum": "TransportError: rpc down"}
        # Siblings still resolve
        assert len(report.positions) == len(DEPLOYED) - 1

    @pytest.mark.asyncio
    async def test_raise_policy_protocol_on_filtered_chain(self, engine):
        report = await engine.get_positions(WALLET, chains=["base"], protocols=["lido", "compound"])
        by_protocol = {r.protocol: r for r in report.protocols}
        assert by_protocol["lido"].error == "lido is not supported on base"
        assert by_protocol["compound"].error is None
        assert by_protocol["compound"].positions == []

    @pytest.mark.asyncio
    async def test_protocol_filter_is_case_insensitive(self, engine):
        report = await engine.get_positions(WALLET, protocols=[" Yearn "])
        assert [(r.protocol, r.chain) for r in report.protocols] == [("yearn", "ethereum")]

    @pytest.mark.asyncio
    async def test_chain_filter_dedupes_case_variants(self, engine):
        report = await engine.get_positions(WALLET, chains=["ethereum", " ETHEREUM "], protocols=["aave"])
        assert [(r.protocol, r.chain) for r in report.protocols] == [("aave", "ethereum")]
        assert len(report.positions) == 1

    @pytest.mark.asyncio
    async def test_invalid_wallet_rejected_before_work(self, engine):
        with pytest.raises(InvalidWalletAddress):
            await engine.get_positions("0xnope")
        assert engine.fake_resolvers == {}

    @pytest.mark.asyncio
    async def test_unknown_filters_rejected(self, engine):
        with pytest.raises(UnsupportedChainOrProtocol):
            await engine.get_positions(WALLET, chains=["solana"])
        with pytest.raises(UnsupportedChainOrProtocol):
            await engine.get_positions(WALLET, protocols=["uniswap"])

    @pytest.mark.asyncio
    async def test_to_dict(self, engine):
        data = (await engine.get_positions(WALLET, protocols=["lido"])).to_dict()
        assert data["wallet"] == WALLET
        assert data["positions"][0]["protocol"] == "lido"
        assert data["protocols"][0]["error"] is None


class TestGetBalances:
    @pytest.mark.asyncio
    async def test_values_every_chain(self, engine, prices):
        report = await engine.get_balances(WALLET)
        assert report.total_usd == Decimal("4000.00")
        assert set(report.chains) == {"ethereum", "base"}
        chains_arg = prices.quote.await_args.args[1]
        assert set(chains_arg) == {"ethereum", "base"}

    @pytest.mark.asyncio
    async def test_failed_chain_is_annotated(self, engine, balances):
        working = balances.get_chain_balances.side_effect

        async def flaky(chain, wallet, batcher):
            if chain.key == "base":
                raise TransportError("base rpc down")
            return await working(chain, wallet, batcher)

        balances.get_chain_balances.side_effect = flaky
        report = await engine.get_balances(WALLET)

        assert report.chains["base"].total_usd == Decimal("0.00")
        assert report.chains["base"].errors == ["TransportError: base rpc down"]
        assert report.total_usd == Decimal("2000.00")

    @pytest.mark.asyncio
    async def test_chain_filter(self, engine, balances):
        report = await engine.get_balances(WALLET, chains=["BASE"])
        assert list(report.chains) == ["base"]
        assert balances.get_chain_balances.await_count == 1


class TestGetReport:
    @pytest.mark.asyncio
    async def test_combines_balances_and_positions(self, engine):
        report = await engine.get_report(WALLET, chains=["ethereum"], protocols=["aave"])
        data = report.to_dict()
        assert data["portfolio"]["total_usd"] == "2000.00"
        assert [p["protocol"] for p in data["positions"]["positions"]] == ["aave"]

    @pytest.mark.asyncio
    async def test_bad_protocol_rejected_before_any_fetch(self, engine, balances):
        with pytest.raises(UnsupportedChainOrProtocol):
            await engine.get_report(WALLET, protocols=["maker"])
        balances.get_chain_balances.assert_not_awaited()


class TestEngineStats:
    def test_stats(self, engine):
        stats = engine.get_stats()
        assert stats["chains"] == ["ethereum", "base"]
        assert stats["protocols"] == list(PROTOCOLS)
        assert "hit_rate_percent" in stats["cache"]


class TestCacheCleanup:
    @pytest.mark.asyncio
    async def test_drops_expired_entries_each_interval(self, engine, fetcher, clock):
        fetcher._cache.set("positions:ethereum:aave:0xabc", [], ttl_seconds=10)
        fetcher._cache.set("tokens:ethereum:static", [], ttl_seconds=600)
        clock.advance(60)
        engine._sleep = AsyncMock(side_effect=[None, asyncio.CancelledError()])

        with pytest.raises(asyncio.CancelledError):
            await engine.run_cache_cleanup(30)

        assert len(fetcher._cache) == 1
        assert engine._sleep.await_args_list[0].args == (30,)
