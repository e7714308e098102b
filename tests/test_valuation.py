from decimal import Decimal

from defi_portfolio.core.valuation import build_portfolio, token_value, value_chain
from defi_portfolio.services.balances import (
    NATIVE_TOKEN,
    ChainBalances,
    DiscoverySource,
    TokenBalance,
    TokenKind,
)
from defi_portfolio.services.price import PriceBook, PriceQuote, PriceSource

from conftest import WALLET

USDC = "0x2000000000000000000000000000000000000001"
DUST = "0x2000000000000000000000000000000000000002"


def balance(chain, address, raw, decimals, symbol="TKN"):
    kind = TokenKind.NATIVE if address == NATIVE_TOKEN else TokenKind.ERC20
    return TokenBalance(chain, address, raw, decimals, symbol, symbol, kind)


def quote(chain, token, price):
    return PriceQuote(chain, token, Decimal(price), PriceSource.ADDRESS)


class TestTokenValue:
    def test_six_decimal_token_at_one_dollar(self):
        usdc = balance("ethereum", USDC, 1_000_000, 6, "USDC")
        assert token_value(usdc, quote("ethereum", USDC, "1.00")) == Decimal("1.00")

    def test_unpriced_token_is_worth_zero(self):
        token = balance("ethereum", USDC, 10**24, 18)
        unpriced = PriceQuote("ethereum", USDC, None, PriceSource.UNAVAILABLE)
        assert token_value(token, unpriced) == 0

    def test_large_balance_is_exact(self):
        token = balance("ethereum", USDC, 2**200, 18)
        value = token_value(token, quote("ethereum", USDC, "0.000001"))
        assert value == Decimal(f"{2**200}E-24")


class TestBuildPortfolio:
    def prices(self):
        book = PriceBook()
        book.add(quote("ethereum", NATIVE_TOKEN, "2000"))
        book.add(quote("ethereum", USDC, "1"))
        book.add(quote("ethereum", DUST, "0.004"))
        book.add(quote("base", NATIVE_TOKEN, "2000"))
        return book

    def balances(self):
        return [
            ChainBalances("ethereum", DiscoverySource.EXPLORER, [
                balance("ethereum", NATIVE_TOKEN, 5 * 10**17, 18, "ETH"),
                balance("ethereum", USDC, 1_000_000, 6, "USDC"),
                balance("ethereum", DUST, 10**18, 18, "DUST"),
                balance("ethereum", DUST.replace("2", "3"), 10**18, 18, "NOPRICE"),
            ]),
            ChainBalances("base", DiscoverySource.STATIC, [
                balance("base", NATIVE_TOKEN, 10**15, 18, "ETH"),
            ], warnings=["Explorer API not configured, using known tokens"]),
        ]

    def test_chain_and_total_usd(self):
        report = build_portfolio(WALLET, self.balances(), self.prices())
        # 1000 + 1 + 0.004 on ethereum, 2 on base
        assert report.chains["ethereum"].total_usd == Decimal("1001.00")
        assert report.chains["base"].total_usd == Decimal("2.00")
        assert report.total_usd == Decimal("1003.00")

    def test_total_uses_exact_sums(self):
        book = PriceBook()
        balances = ChainBalances("ethereum", DiscoverySource.STATIC, [
            balance("ethereum", f"0x{i:040x}", 10**18, 18) for i in range(1, 4)
        ])
        for i in range(1, 4):
            book.add(quote("ethereum", f"0x{i:040x}", "0.004"))
        # 3 x 0.004 = 0.012, not 3 x 0.00
        assert value_chain(balances, book).total_usd == Decimal("0.01")

    def test_idempotent_and_order_independent(self):
        prices = self.prices()
        first = build_portfolio(WALLET, self.balances(), prices)
        shuffled = [
            ChainBalances(c.chain, c.source, list(reversed(c.tokens)), c.warnings)
            for c in reversed(self.balances())
        ]
        second = build_portfolio(WALLET, shuffled, prices)
        assert first.total_usd == second.total_usd
        assert first.to_dict()["value_by_chain_usd"] == second.to_dict()["value_by_chain_usd"]
        assert build_portfolio(WALLET, self.balances(), prices).to_dict() == first.to_dict()

    def test_failed_chain_contributes_zero_with_error(self):
        report = build_portfolio(
            WALLET,
            self.balances()[:1],
            self.prices(),
            chain_errors={"base": "TransportError: rpc down"},
        )
        assert report.chains["base"].total_usd == Decimal("0.00")
        assert report.chains["base"].errors == ["TransportError: rpc down"]
        assert report.total_usd == Decimal("1001.00")

    def test_to_dict_is_json_safe(self):
        data = build_portfolio(WALLET, self.balances(), self.prices()).to_dict()
        assert data["total_usd"] == "1003.00"
        assert data["value_by_chain_usd"] == {"base": "2.00", "ethereum": "1001.00"}
        ethereum = data["chains"]["ethereum"]
        assert ethereum["source"] == "explorer"
        usdc = next(t for t in ethereum["tokens"] if t["symbol"] == "USDC")
        assert usdc["value_usd"] == "1.00"
        assert usdc["price_usd"] == "1"
        unpriced = next(t for t in ethereum["tokens"] if t["symbol"] == "NOPRICE")
        assert unpriced["value_usd"] == "0.00"
        assert unpriced["source"] == "unavailable"
        assert data["chains"]["base"]["warnings"]
