"""Resilient fetch wrapper used by every upstream call.

``fetch(key, producer, ttl)`` returns a live cached value when there is one.
Otherwise it runs the producer under a retry policy with exponential backoff
and jitter, and caches the successful result. Concurrent misses for the same
key share a single producer run.
"""

from __future__ import annotations

import asyncio
import logging
import random
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Tuple, Type, TypeVar

from defi_portfolio.config import Settings
from defi_portfolio.errors import (
    DecodeError,
    InvalidWalletAddress,
    TransportError,
    UpstreamError,
)
from defi_portfolio.services.cache import MISSING, TTLCache
from defi_portfolio.services.metrics import (
    operation_of,
    record_cache_lookup,
    record_retry,
    record_upstream_attempt,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Producer = Callable[[], Awaitable[T]]

# Never retried, whatever retry_on says
NON_RETRYABLE: Tuple[Type[BaseException], ...] = (DecodeError, InvalidWalletAddress)


def backoff_delay(attempt: int, base_delay: float, rng: random.Random) -> float:
    """Delay before 1-indexed ``attempt`` (> 1): base * 2^(attempt-2) * U(0.5, 1.0)."""
    return base_delay * 2 ** (attempt - 2) * rng.uniform(0.5, 1.0)


class ResilientFetcher:
    """Retry, backoff and TTL cache policy shared by all upstream callers."""

    def __init__(
        self,
        cache: TTLCache | None = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        timeout: float | None = 10.0,
        default_ttl: float = 300.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        rng: random.Random | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._cache: TTLCache[Any] = (
            cache if cache is not None else TTLCache(default_ttl_seconds=default_ttl)
        )
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._timeout = timeout
        self._retry_on = retry_on
        self._random = rng or random.Random()
        self._sleep = asyncio.sleep
        self._inflight: Dict[str, asyncio.Future] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResilientFetcher":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            timeout=settings.upstream_timeout_seconds,
            default_ttl=settings.static_cache_ttl_seconds,
        )

    async def fetch(
        self,
        key: str,
        producer: Producer[T],
        ttl: float | None = None,
        retry_on: Tuple[Type[BaseException], ...] | None = None,
    ) -> T:
        """Return the cached value for ``key`` or produce, cache and return it.

        Args:
            key: Composite cache key (``operation:chain:wallet:token``)
            producer: Zero-argument coroutine factory doing the upstream call
            ttl: Seconds the result stays live (cache default if None)
            retry_on: Exception classes worth retrying (default: all)

        Raises:
            UpstreamError: after every attempt failed
        """
        cached = self._cache.get(key, MISSING)
        if cached is not MISSING:
            record_cache_lookup(hit=True)
            logger.debug(f"Cache hit for {key}")
            return cached
        record_cache_lookup(hit=False)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._produce(key, producer, ttl, retry_on))
            self._inflight[key] = task
            task.add_done_callback(partial(self._release, key))
        else:
            logger.debug(f"Joining in-flight fetch for {key}")

        # A cancelled caller must not cancel the run other callers are awaiting
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Marks the exception retrieved; every awaiting caller still re-raises it
            task.exception()

    async def _produce(
        self,
        key: str,
        producer: Producer[T],
        ttl: float | None,
        retry_on: Tuple[Type[BaseException], ...] | None,
    ) -> T:
        value = await self._call_with_retry(producer, operation_of(key), retry_on or self._retry_on)
        self._cache.set(key, value, ttl)
        return value

    async def _call_with_retry(
        self,
        producer: Producer[T],
        operation: str,
        retry_on: Tuple[Type[BaseException], ...],
    ) -> T:
        last_error: BaseException | None = None

        for attempt in range(1, self._max_attempts + 1):
            if attempt > 1:
                delay = backoff_delay(attempt, self._base_delay, self._random)
                record_retry(operation)
                logger.warning(
                    f"Retrying {operation} (attempt {attempt}/{self._max_attempts}) "
                    f"in {delay:.2f}s after error: {last_error}"
                )
                await self._sleep(delay)

            try:
                result = await asyncio.wait_for(producer(), timeout=self._timeout)
            except NON_RETRYABLE:
                record_upstream_attempt(operation, success=False)
                raise
            except asyncio.TimeoutError:
                last_error = TransportError(f"{operation} timed out after {self._timeout}s")
            except retry_on as e:
                last_error = e
            else:
                record_upstream_attempt(operation, success=True)
                return result

            record_upstream_attempt(operation, success=False)

        logger.error(f"{operation} failed after {self._max_attempts} attempts: {last_error}")
        if isinstance(last_error, UpstreamError):
            raise last_error
        raise UpstreamError(
            f"{operation} failed after {self._max_attempts} attempts: {last_error}"
        ) from last_error

    def invalidate(self, key: str) -> bool:
        return self._cache.delete(key)

    def cleanup(self) -> int:
        return self._cache.cleanup_expired()

    def get_stats(self) -> Dict[str, Any]:
        stats = self._cache.get_stats()
        stats["in_flight"] = len(self._inflight)
        return stats
