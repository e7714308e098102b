"""USD valuation of balances against a price book.

All arithmetic is Decimal under a wide local context, so summation is exact
and totals do not depend on the order chains or tokens arrive in. Totals are
quantized to cents only at the end.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, localcontext
from typing import Any, Dict, Iterable, List

from defi_portfolio.services.balances import ChainBalances, TokenBalance
from defi_portfolio.services.price import PriceBook, PriceQuote
from defi_portfolio.units import DECIMAL_PRECISION, to_decimal, usd

ZERO = Decimal(0)


def token_value(balance: TokenBalance, quote: PriceQuote) -> Decimal:
    """Exact USD value; an unpriced token is worth exactly zero."""
    if quote.price_usd is None or balance.balance == 0:
        return ZERO
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return to_decimal(balance.balance, balance.decimals) * quote.price_usd


def exact_sum(values: Iterable[Decimal]) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return sum(values, ZERO)


@dataclass(frozen=True)
class ValuedToken:
    balance: TokenBalance
    quote: PriceQuote
    value_usd: Decimal  # Exact, not rounded

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.balance.to_dict(),
            **self.quote.to_dict(),
            "value_usd": str(usd(self.value_usd)),
        }


@dataclass
class ChainPortfolio:
    chain: str
    tokens: List[ValuedToken] = field(default_factory=list)
    source: str | None = None  # Token discovery source
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def exact_total(self) -> Decimal:
        return exact_sum(t.value_usd for t in self.tokens)

    @property
    def total_usd(self) -> Decimal:
        return usd(self.exact_total)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "total_usd": str(self.total_usd),
            "source": self.source,
            "tokens": [t.to_dict() for t in self.tokens],
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


@dataclass
class PortfolioReport:
    wallet: str
    chains: Dict[str, ChainPortfolio] = field(default_factory=dict)

    @property
    def total_usd(self) -> Decimal:
        return usd(exact_sum(c.exact_total for c in self.chains.values()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "total_usd": str(self.total_usd),
            "value_by_chain_usd": {key: str(c.total_usd) for key, c in sorted(self.chains.items())},
            "chains": {key: c.to_dict() for key, c in sorted(self.chains.items())},
        }


def value_chain(balances: ChainBalances, prices: PriceBook) -> ChainPortfolio:
    tokens = []
    for balance in balances.tokens:
        quote = prices.get(balance.chain, balance.token_address)
        tokens.append(ValuedToken(balance=balance, quote=quote, value_usd=token_value(balance, quote)))
    return ChainPortfolio(
        chain=balances.chain,
        tokens=tokens,
        source=balances.source.value,
        warnings=list(balances.warnings),
        errors=list(prices.errors.get(balances.chain, [])),
    )


def build_portfolio(
    wallet: str,
    balances: Iterable[ChainBalances],
    prices: PriceBook,
    chain_errors: Dict[str, str] | None = None,
) -> PortfolioReport:
    """Value every chain's balances; chains that failed outright are worth $0.

    Args:
        wallet: Checksummed wallet address
        balances: Per-chain balances that were read
        prices: Quotes for those balances
        chain_errors: Chain key -> error for chains whose balances failed entirely
    """
    report = PortfolioReport(wallet=wallet)
    for chain_balances in balances:
        report.chains[chain_balances.chain] = value_chain(chain_balances, prices)
    for chain, error in (chain_errors or {}).items():
        report.chains[chain] = ChainPortfolio(chain=chain, errors=[error])
    return report
