import random
from typing import Any, Dict, List, Tuple
from unittest.mock import AsyncMock

import pytest

from defi_portfolio.networks import ETH, Chain, ChainRegistry
from defi_portfolio.services.cache import TTLCache
from defi_portfolio.services.fetch import ResilientFetcher
from defi_portfolio.services.multicall import CallResult, ReadCall

WALLET = "0x1234567890123456789012345678901234567890"


def ok(value: Any) -> CallResult:
    return CallResult(success=True, value=value)


def failed(error: str = "execution reverted") -> CallResult:
    return CallResult(success=False, error=error)


def make_chain(key: str = "ethereum", chain_id: int = 1, **kwargs) -> Chain:
    defaults = dict(
        name=key.title(),
        rpc_url=f"http://{key}.rpc.test",
        native_currency=ETH,
        explorer_api_url="https://api.explorer.test/v2/api",
        price_platform=key,
    )
    defaults.update(kwargs)
    return Chain(key=key, chain_id=chain_id, **defaults)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeBatcher:
    """Stands in for ChainReadBatcher with canned results per (target, signature, args)."""

    def __init__(self, chain: Chain, responses: Dict[Tuple, CallResult] | None = None):
        self.chain = chain
        self.responses: Dict[Tuple, CallResult] = {}
        self.batches: List[List[ReadCall]] = []
        self.error: Exception | None = None
        for key, result in (responses or {}).items():
            self.set(*key, result=result)

    @staticmethod
    def _key(target: str, signature: str, args: Tuple = ()) -> Tuple:
        return (target.lower(), signature, tuple(str(a).lower() for a in args))

    def set(self, target: str, signature: str, args: Tuple = (), result: CallResult | None = None):
        self.responses[self._key(target, signature, args)] = result

    async def batch(self, calls):
        self.batches.append(list(calls))
        if self.error is not None:
            raise self.error
        return [
            self.responses.get(
                self._key(call.target, call.signature, call.args),
                failed(f"no fake response for {call.signature}"),
            )
            for call in calls
        ]

    @property
    def call_count(self) -> int:
        return sum(len(batch) for batch in self.batches)


@pytest.fixture
def chain() -> Chain:
    return make_chain()


@pytest.fixture
def registry() -> ChainRegistry:
    return ChainRegistry([
        make_chain("ethereum", 1),
        make_chain("base", 8453),
    ])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher(clock) -> ResilientFetcher:
    """Fetcher with a controllable clock and no real backoff sleeps."""
    fetcher = ResilientFetcher(
        cache=TTLCache(clock=clock),
        base_delay=1.0,
        timeout=None,
        rng=random.Random(7),
    )
    fetcher._sleep = AsyncMock()
    return fetcher


@pytest.fixture
def batcher(chain) -> FakeBatcher:
    return FakeBatcher(chain)
