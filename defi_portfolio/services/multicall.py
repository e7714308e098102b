"""
Multicall utility for batching many contract reads into a single request.

Uses Multicall3's aggregate3, which is deployed at the same address on all
major EVM chains. Results always come back in call order, one per call; a
single reverted or undecodable call never fails its siblings.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import AsyncWeb3

from defi_portfolio.errors import BatchTransportError
from defi_portfolio.networks import Chain
from defi_portfolio.services.metrics import record_multicall
from defi_portfolio.services.rpc import RateLimiter

logger = logging.getLogger(__name__)

MULTICALL3_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"},
                ],
                "name": "calls",
                "type": "tuple[]",
            }
        ],
        "name": "aggregate3",
        "outputs": [
            {
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
                "name": "returnData",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "payable",
        "type": "function",
    }
]


@dataclass(frozen=True)
class ReadCall:
    """A single read-only contract call to be batched."""
    target: str  # Contract address (checksummed)
    signature: str  # e.g. "balanceOf(address)"
    args: Tuple[Any, ...]
    call_data: bytes  # Selector + ABI-encoded args
    output_types: Tuple[str, ...]
    allow_failure: bool = True  # Whether the batch continues if this call reverts


@dataclass(frozen=True)
class CallResult:
    """Result of a single call within a batch.

    ``value`` is the bare decoded value for single-output functions and a
    tuple for multi-output ones.
    """
    success: bool
    value: Any = None
    error: str | None = None


def parse_input_types(signature: str) -> List[str]:
    """Split ``fn(address,(uint256,bool))`` into its top-level argument types."""
    start = signature.index("(")
    inner = signature[start + 1:signature.rindex(")")]
    types: List[str] = []
    depth = 0
    current = ""
    for char in inner:
        if char == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        current += char
    if current:
        types.append(current)
    return types


def build_call(
    target: str,
    signature: str,
    args: Sequence[Any] = (),
    output_types: Sequence[str] = ("uint256",),
    allow_failure: bool = True,
) -> ReadCall:
    """
    Build a ReadCall for inclusion in a batch.

    Args:
        target: Contract address to call
        signature: Function signature (e.g., "balanceOf(address)")
        args: Argument values matching the signature's input types
        output_types: ABI types to decode the return data with
        allow_failure: Whether the batch continues if this call reverts

    Returns:
        ReadCall ready for batching
    """
    # Function selector is the first 4 bytes of keccak256(signature)
    selector = bytes(AsyncWeb3.keccak(text=signature)[:4])
    input_types = parse_input_types(signature)
    if len(input_types) != len(args):
        raise ValueError(f"{signature} expects {len(input_types)} args, got {len(args)}")
    call_data = selector + encode(input_types, list(args)) if input_types else selector

    return ReadCall(
        target=AsyncWeb3.to_checksum_address(target),
        signature=signature,
        args=tuple(args),
        call_data=call_data,
        output_types=tuple(output_types),
        allow_failure=allow_failure,
    )


def decode_result(call: ReadCall, success: bool, return_data: bytes) -> CallResult:
    """Decode one (success, returnData) pair against the call's output types."""
    if not success:
        return CallResult(success=False, error=f"{call.signature} reverted on {call.target}")

    try:
        decoded = decode(list(call.output_types), bytes(return_data))
    except (DecodingError, ValueError, OverflowError) as e:
        logger.warning(f"Failed to decode {call.signature} on {call.target}: {e}")
        return CallResult(success=False, error=f"DecodeError: {e}")

    value = decoded[0] if len(call.output_types) == 1 else tuple(decoded)
    return CallResult(success=True, value=value)


class ChainReadBatcher:
    """
    Batches read calls for one chain into as few RPC requests as possible.

    Example usage:
        batcher = ChainReadBatcher(web3, chain)
        calls = [
            build_call(token, "balanceOf(address)", [wallet])
            for token in tokens
        ]
        results = await batcher.batch(calls)
    """

    def __init__(
        self,
        web3: AsyncWeb3,
        chain: Chain,
        limiter: RateLimiter | None = None,
        max_batch_size: int = 300,
    ):
        self._web3 = web3
        self._chain = chain
        self._limiter = limiter
        self._max_batch_size = max_batch_size
        if chain.multicall_address:
            self._multicall_contract = web3.eth.contract(
                address=AsyncWeb3.to_checksum_address(chain.multicall_address),
                abi=MULTICALL3_ABI,
            )
        else:
            self._multicall_contract = None

    @property
    def chain(self) -> Chain:
        return self._chain

    async def batch(self, calls: Sequence[ReadCall]) -> List[CallResult]:
        """
        Execute read calls and return one CallResult per call, in call order.

        Raises:
            BatchTransportError: the batching call itself failed; callers must
                treat every call as failed
        """
        if not calls:
            return []

        if self._multicall_contract is None:
            return await self._execute_individually(calls)

        chunks = [
            calls[i:i + self._max_batch_size]
            for i in range(0, len(calls), self._max_batch_size)
        ]
        chunk_results = await asyncio.gather(*(self._execute_chunk(chunk) for chunk in chunks))
        return [result for chunk in chunk_results for result in chunk]

    async def _execute_chunk(self, calls: Sequence[ReadCall]) -> List[CallResult]:
        formatted_calls = [
            (call.target, call.allow_failure, call.call_data)
            for call in calls
        ]

        if self._limiter:
            await self._limiter.acquire()

        try:
            raw_results = await self._multicall_contract.functions.aggregate3(
                formatted_calls
            ).call()
        except Exception as e:
            record_multicall(self._chain.key, len(calls), failed=True)
            logger.error(f"Multicall on {self._chain.key} failed for {len(calls)} calls: {e}")
            raise BatchTransportError(f"Multicall on {self._chain.key} failed: {e}") from e

        if len(raw_results) != len(calls):
            record_multicall(self._chain.key, len(calls), failed=True)
            raise BatchTransportError(
                f"Multicall on {self._chain.key} returned {len(raw_results)} results "
                f"for {len(calls)} calls"
            )

        record_multicall(self._chain.key, len(calls))
        return [
            decode_result(call, result[0], result[1])
            for call, result in zip(calls, raw_results)
        ]

    async def _execute_individually(self, calls: Sequence[ReadCall]) -> List[CallResult]:
        """Per-call eth_call path for chains without a batching contract."""

        async def execute_one(call: ReadCall) -> CallResult:
            if self._limiter:
                await self._limiter.acquire()
            try:
                return_data = await self._web3.eth.call({"to": call.target, "data": call.call_data})
            except Exception as e:
                if not call.allow_failure:
                    raise BatchTransportError(
                        f"Required call {call.signature} on {call.target} failed: {e}"
                    ) from e
                return CallResult(success=False, error=f"{call.signature} failed: {e}")
            return decode_result(call, True, return_data)

        return list(await asyncio.gather(*(execute_one(call) for call in calls)))
