"""Base position resolver interface and the Position model.

A resolver turns raw on-chain reads for one (protocol, chain) pair into
Positions. Every read goes through the chain's read-batcher wrapped by the
resilient fetcher, so retries and caching are uniform across protocols.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Sequence, TypeVar

from web3 import AsyncWeb3

from defi_portfolio.errors import DecodeError, UnsupportedProtocolOnChain
from defi_portfolio.networks import Chain
from defi_portfolio.services.cache import make_key
from defi_portfolio.services.fetch import ResilientFetcher
from defi_portfolio.services.multicall import CallResult, ChainReadBatcher, ReadCall

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Position:
    """A wallet's position in one protocol object (reserve, market, vault, token).

    Amounts are decimal strings at full on-chain precision.
    """
    protocol: str
    chain: str
    asset_symbol: str
    asset_address: str
    supplied: str
    borrowed: str = "0"
    supply_apy: str | None = None  # Percent, 2 decimals
    borrow_apy: str | None = None
    underlying: str | None = None  # Amount in underlying-asset units
    is_wrapped: bool = False

    @property
    def is_active(self) -> bool:
        return Decimal(self.supplied) > 0 or Decimal(self.borrowed) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "chain": self.chain,
            "asset": self.asset_symbol,
            "asset_address": self.asset_address,
            "supplied": self.supplied,
            "borrowed": self.borrowed,
            "supply_apy": self.supply_apy,
            "borrow_apy": self.borrow_apy,
            "underlying": self.underlying,
            "is_wrapped": self.is_wrapped,
        }


class SkipObject(Exception):
    """An object's reads were missing or placeholder data; omit it."""


def value_of(result: CallResult, what: str) -> Any:
    """Unwrap a successful CallResult or raise SkipObject."""
    if not result.success:
        raise SkipObject(f"{what} failed: {result.error}")
    return result.value


class PositionResolver(ABC):
    """Strategy for resolving one protocol's positions on one chain.

    Subclasses set ``protocol`` and ``empty_when_unsupported`` and implement
    ``is_supported`` and ``_resolve``.
    """

    protocol: str = ""
    # False: callers are told, via UnsupportedProtocolOnChain, that the pair is unsupported
    empty_when_unsupported: bool = True

    def __init__(
        self,
        chain: Chain,
        batcher: ChainReadBatcher,
        fetcher: ResilientFetcher,
        static_ttl_seconds: float = 300.0,
        balance_ttl_seconds: float = 30.0,
    ):
        self._chain = chain
        self._batcher = batcher
        self._fetcher = fetcher
        self._static_ttl = static_ttl_seconds
        self._balance_ttl = balance_ttl_seconds

    @property
    def name(self) -> str:
        return f"{self.protocol}:{self._chain.key}"

    @property
    def chain(self) -> Chain:
        return self._chain

    @property
    @abstractmethod
    def is_supported(self) -> bool:
        """Whether the protocol has a deployment configured on this chain."""

    async def get_positions(self, wallet_address: str) -> List[Position]:
        """Positions with at least one strictly positive amount.

        Raises:
            UnsupportedProtocolOnChain: for raise-policy protocols on a chain
                without a deployment
            UpstreamError: protocol-level failure (e.g. registry unreachable)
        """
        if not self.is_supported:
            if self.empty_when_unsupported:
                logger.info(f"{self.protocol} not supported on {self._chain.key}")
                return []
            raise UnsupportedProtocolOnChain(self.protocol, self._chain.key)

        checksum_address = AsyncWeb3.to_checksum_address(wallet_address)
        positions = await self._resolve(checksum_address)
        return [p for p in positions if p.is_active]

    @abstractmethod
    async def _resolve(self, wallet_address: str) -> List[Position]:
        ...

    async def _read(
        self,
        operation: str,
        calls: Sequence[ReadCall],
        wallet_address: str | None = None,
        static: bool = False,
    ) -> List[CallResult]:
        """Batch ``calls`` through the fetcher under a (protocol, chain, wallet) key."""
        key = make_key(operation, self._chain.key, self.protocol, wallet_address, len(calls))
        ttl = self._static_ttl if static else self._balance_ttl
        return await self._fetcher.fetch(key, lambda: self._batcher.batch(calls), ttl=ttl)

    async def _read_groups(
        self,
        operation: str,
        groups: Sequence[Sequence[ReadCall]],
        wallet_address: str | None = None,
        static: bool = False,
    ) -> List[List[CallResult]]:
        """One batch for every object's call group; results regrouped per object."""
        flat = [call for group in groups for call in group]
        results = await self._read(operation, flat, wallet_address, static)
        grouped = []
        offset = 0
        for group in groups:
            grouped.append(results[offset:offset + len(group)])
            offset += len(group)
        return grouped

    def _settle(
        self,
        objects: Iterable[T],
        build: Callable[[T], Position | None],
        describe: Callable[[T], str] = str,
    ) -> List[Position]:
        """Build one Position per object; a failing object is logged and omitted."""
        positions = []
        for obj in objects:
            try:
                position = build(obj)
            except (SkipObject, DecodeError, ArithmeticError, ValueError, TypeError) as e:
                logger.warning(f"{self.name}: skipping {describe(obj)}: {e}")
                continue
            if position is not None:
                positions.append(position)
        return positions
