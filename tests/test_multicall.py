import pytest
from unittest.mock import AsyncMock, MagicMock

from eth_abi import encode

from defi_portfolio.errors import BatchTransportError
from defi_portfolio.services.multicall import (
    ChainReadBatcher,
    build_call,
    decode_result,
    parse_input_types,
)

from conftest import WALLET, make_chain

TOKEN = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


def uint(value: int) -> bytes:
    return encode(["uint256"], [value])


def make_batcher(raw_results=None, side_effect=None, chain=None, max_batch_size=300):
    web3 = MagicMock()
    aggregate3 = web3.eth.contract.return_value.functions.aggregate3
    aggregate3.return_value.call = AsyncMock(return_value=raw_results, side_effect=side_effect)
    batcher = ChainReadBatcher(web3, chain or make_chain(), max_batch_size=max_batch_size)
    return batcher, web3, aggregate3


def balance_calls(n: int):
    return [build_call(TOKEN, "balanceOf(address)", [WALLET]) for _ in range(n)]


class TestBuildCall:
    def test_balance_of_selector(self):
        call = build_call(TOKEN.lower(), "balanceOf(address)", [WALLET])
        assert call.call_data[:4].hex() == "70a08231"
        assert len(call.call_data) == 4 + 32
        assert call.target == TOKEN

    def test_no_args(self):
        call = build_call(TOKEN, "decimals()", output_types=("uint8",))
        assert call.call_data.hex() == "313ce567"

    def test_arg_count_mismatch(self):
        with pytest.raises(ValueError):
            build_call(TOKEN, "balanceOf(address)")

    def test_parse_nested_input_types(self):
        assert parse_input_types("f(address,(uint256,bool),bytes)") == [
            "address",
            "(uint256,bool)",
            "bytes",
        ]
        assert parse_input_types("g()") == []


class TestDecodeResult:
    def test_single_output_unwrapped(self):
        call = build_call(TOKEN, "totalSupply()")
        assert decode_result(call, True, uint(7)).value == 7

    def test_multiple_outputs_are_tuple(self):
        call = build_call(TOKEN, "f()", output_types=("uint256", "bool"))
        result = decode_result(call, True, encode(["uint256", "bool"], [3, True]))
        assert result.value == (3, True)

    def test_revert(self):
        call = build_call(TOKEN, "totalSupply()")
        result = decode_result(call, False, b"")
        assert not result.success
        assert "reverted" in result.error

    def test_undecodable_data_is_individual_failure(self):
        call = build_call(TOKEN, "symbol()", output_types=("string",))
        result = decode_result(call, True, b"\x01\x02")
        assert not result.success
        assert result.error.startswith("DecodeError")


class TestChainReadBatcher:
    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_request(self):
        batcher, _, aggregate3 = make_batcher([])
        assert await batcher.batch([]) == []
        aggregate3.assert_not_called()

    @pytest.mark.asyncio
    async def test_results_in_call_order(self):
        batcher, _, aggregate3 = make_batcher([(True, uint(i)) for i in range(4)])
        results = await batcher.batch(balance_calls(4))
        assert [r.value for r in results] == [0, 1, 2, 3]
        sent = aggregate3.call_args.args[0]
        assert len(sent) == 4
        assert sent[0] == (TOKEN, True, balance_calls(1)[0].call_data)

    @pytest.mark.asyncio
    async def test_one_revert_does_not_fail_siblings(self):
        raw = [(True, uint(1)), (True, uint(2)), (False, b""), (True, uint(4)), (True, uint(5))]
        batcher, _, _ = make_batcher(raw)
        results = await batcher.batch(balance_calls(5))
        assert [r.success for r in results] == [True, True, False, True, True]

    @pytest.mark.asyncio
    async def test_transport_failure_fails_whole_batch(self):
        batcher, _, _ = make_batcher(side_effect=ConnectionError("rpc down"))
        with pytest.raises(BatchTransportError):
            await batcher.batch(balance_calls(3))

    @pytest.mark.asyncio
    async def test_length_mismatch_fails_whole_batch(self):
        batcher, _, _ = make_batcher([(True, uint(1))])
        with pytest.raises(BatchTransportError):
            await batcher.batch(balance_calls(2))

    @pytest.mark.asyncio
    async def test_large_batches_are_chunked_in_order(self):
        web3 = MagicMock()
        aggregate3 = web3.eth.contract.return_value.functions.aggregate3

        def respond(calls):
            # Echo each call's position within its chunk
            call = MagicMock()
            call.call = AsyncMock(return_value=[(True, uint(i)) for i in range(len(calls))])
            return call

        aggregate3.side_effect = respond
        batcher = ChainReadBatcher(web3, make_chain(), max_batch_size=2)
        results = await batcher.batch(balance_calls(5))

        assert aggregate3.call_count == 3
        assert [r.value for r in results] == [0, 1, 0, 1, 0]

    @pytest.mark.asyncio
    async def test_without_multicall_falls_back_to_eth_call(self):
        web3 = MagicMock()
        web3.eth.call = AsyncMock(side_effect=[uint(9), ValueError("execution reverted")])
        batcher = ChainReadBatcher(web3, make_chain(multicall_address=None))

        results = await batcher.batch(balance_calls(2))

        assert results[0].value == 9
        assert not results[1].success
        web3.eth.contract.assert_not_called()

    @pytest.mark.asyncio
    async def test_fallback_required_call_failure_raises(self):
        web3 = MagicMock()
        web3.eth.call = AsyncMock(side_effect=ValueError("execution reverted"))
        batcher = ChainReadBatcher(web3, make_chain(multicall_address=None))
        call = build_call(TOKEN, "totalSupply()", allow_failure=False)

        with pytest.raises(BatchTransportError):
            await batcher.batch([call])

    @pytest.mark.asyncio
    async def test_limiter_gates_each_request(self):
        web3 = MagicMock()
        web3.eth.contract.return_value.functions.aggregate3.return_value.call = AsyncMock(
            return_value=[(True, uint(1))]
        )
        limiter = MagicMock()
        limiter.acquire = AsyncMock()
        batcher = ChainReadBatcher(web3, make_chain(), limiter=limiter)

        await batcher.batch(balance_calls(1))

        limiter.acquire.assert_awaited_once()
