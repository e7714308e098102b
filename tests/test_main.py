import pytest
from unittest.mock import AsyncMock, MagicMock

from aiohttp import test_utils

from defi_portfolio.errors import InvalidWalletAddress, UnsupportedChainOrProtocol
from defi_portfolio.main import create_app, parse_list

from conftest import WALLET


def report(data):
    result = MagicMock()
    result.to_dict.return_value = data
    return result


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.get_balances = AsyncMock(return_value=report({"total_usd": "1.00"}))
    engine.get_positions = AsyncMock(return_value=report({"positions": []}))
    engine.get_report = AsyncMock(return_value=report({"wallet": WALLET}))
    engine.get_stats = MagicMock(return_value={"chains": ["ethereum"]})
    return engine


class TestParseList:
    def test_comma_separated(self):
        assert parse_list("ethereum, base,,") == ["ethereum", "base"]

    def test_empty_means_no_filter(self):
        assert parse_list(None) is None
        assert parse_list("") is None
        assert parse_list(" , ") is None


class TestHttpApi:
    @pytest.mark.asyncio
    async def test_tokens(self, engine):
        async with test_utils.TestClient(test_utils.TestServer(create_app(engine))) as client:
            response = await client.get("/tokens", params={"wallet": WALLET, "chains": "base"})
            assert response.status == 200
            assert await response.json() == {"total_usd": "1.00"}
        engine.get_balances.assert_awaited_once_with(WALLET, chains=["base"])

    @pytest.mark.asyncio
    async def test_positions_filters(self, engine):
        async with test_utils.TestClient(test_utils.TestServer(create_app(engine))) as client:
            response = await client.get(
                "/positions", params={"wallet": WALLET, "protocols": "aave,lido"}
            )
            assert response.status == 200
        engine.get_positions.assert_awaited_once_with(WALLET, chains=None, protocols=["aave", "lido"])

    @pytest.mark.asyncio
    async def test_report(self, engine):
        async with test_utils.TestClient(test_utils.TestServer(create_app(engine))) as client:
            response = await client.get("/report", params={"wallet": WALLET})
            assert (await response.json())["wallet"] == WALLET

    @pytest.mark.asyncio
    async def test_invalid_wallet_is_bad_request(self, engine):
        engine.get_positions.side_effect = InvalidWalletAddress("Invalid wallet address: 'x'")
        async with test_utils.TestClient(test_utils.TestServer(create_app(engine))) as client:
            response = await client.get("/positions", params={"wallet": "x"})
            assert response.status == 400
            assert "Invalid wallet" in (await response.json())["error"]

    @pytest.mark.asyncio
    async def test_unknown_chain_is_bad_request(self, engine):
        engine.get_balances.side_effect = UnsupportedChainOrProtocol("Unsupported chain: solana")
        async with test_utils.TestClient(test_utils.TestServer(create_app(engine))) as client:
            response = await client.get("/tokens", params={"wallet": WALLET, "chains": "solana"})
            assert response.status == 400

    @pytest.mark.asyncio
    async def test_health(self, engine):
        async with test_utils.TestClient(test_utils.TestServer(create_app(engine))) as client:
            response = await client.get("/health")
            assert await response.json() == {"status": "healthy", "chains": ["ethereum"]}

    @pytest.mark.asyncio
    async def test_metrics(self, engine):
        async with test_utils.TestClient(test_utils.TestServer(create_app(engine))) as client:
            response = await client.get("/metrics")
            assert response.status == 200
            assert "defi_portfolio" in await response.text()
