"""Tests for the chain reader's retry, failover, chunking and caching."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from web3.exceptions import ContractLogicError

from haven_indexer.chain.reader import (
    ChainReader,
    MissingCapabilityError,
    RPCError,
    RPCTimeoutError,
)
from haven_indexer.ledger.balances import ZERO_ADDRESS

TOKEN = "0x" + "11" * 20


def _reader(**kwargs) -> ChainReader:
    kwargs.setdefault("retry_delay_seconds", 0.0)
    kwargs.setdefault("max_requests_per_second", 1_000)
    return ChainReader("http://127.0.0.1:8545", **kwargs)


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_errors(self) -> None:
        reader = _reader(max_retries=3)
        calls = 0

        async def flaky(w3):
            nonlocal calls
            calls += 1
            if calls < 3:
                raise OSError("connection reset")
            return 42

        assert await reader._execute_with_retry("flaky", flaky) == 42
        assert calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self) -> None:
        reader = _reader(max_retries=2)

        async def broken(w3):
            raise OSError("down")

        with pytest.raises(RPCError):
            await reader._execute_with_retry("broken", broken)

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self) -> None:
        reader = _reader(request_timeout_seconds=0.01)

        async def slow(w3):
            await asyncio.sleep(1)

        with pytest.raises(RPCTimeoutError):
            await reader._execute_with_retry("slow", slow)

    @pytest.mark.asyncio
    async def test_revert_is_missing_capability(self) -> None:
        reader = _reader()

        async def revert(w3):
            raise ContractLogicError("execution reverted")

        with pytest.raises(MissingCapabilityError):
            await reader._execute_with_retry("totalSupply", revert)

    @pytest.mark.asyncio
    async def test_fails_over_to_fallback(self) -> None:
        reader = _reader(fallback_rpc_url="http://127.0.0.1:8546", max_retries=1)

        async def primary_down(w3):
            if w3 is reader._w3:
                raise OSError("primary down")
            return "fallback"

        assert await reader._execute_with_retry("call", primary_down) == "fallback"


class TestGetLogs:
    @pytest.mark.asyncio
    async def test_splits_range_into_chunks(self) -> None:
        reader = _reader(logs_chunk_size_blocks=10_000)
        reader._get_logs_chunk = AsyncMock(
            side_effect=[
                [{"blockNumber": 5, "logIndex": 1}],
                [],
                [{"blockNumber": 20_001, "logIndex": 0}, {"blockNumber": 20_000, "logIndex": 3}],
            ]
        )

        logs = await reader.get_logs(address=TOKEN, topics=["0x00"], from_block=0, to_block=25_000)

        ranges = [(c.args[0]["fromBlock"], c.args[0]["toBlock"]) for c in reader._get_logs_chunk.await_args_list]
        assert ranges == [(0, 9_999), (10_000, 19_999), (20_000, 25_000)]
        assert [log["blockNumber"] for log in logs] == [5, 20_000, 20_001]

    @pytest.mark.asyncio
    async def test_empty_range(self) -> None:
        reader = _reader()
        reader._get_logs_chunk = AsyncMock()

        assert await reader.get_logs(address=TOKEN, topics=[], from_block=10, to_block=9) == []
        reader._get_logs_chunk.assert_not_awaited()


class TestBlockTimestamps:
    @pytest.mark.asyncio
    async def test_cached_after_first_fetch(self) -> None:
        reader = _reader()
        reader._execute_with_retry = AsyncMock(return_value={"timestamp": 1_700_000_000})

        first = await reader.get_block_timestamp(123)
        second = await reader.get_block_timestamp(123)

        assert first == second == 1_700_000_000
        reader._execute_with_retry.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self) -> None:
        reader = _reader(block_cache_size=2)
        reader._execute_with_retry = AsyncMock(return_value={"timestamp": 1})

        await reader.get_block_timestamps([1, 2, 3])

        assert len(reader.block_timestamp_cache) == 2
        assert 1 not in reader.block_timestamp_cache


class TestViews:
    @pytest.mark.asyncio
    async def test_creator_missing_accessor(self) -> None:
        reader = _reader()
        reader.call_view = AsyncMock(side_effect=MissingCapabilityError("no creator()"))

        assert await reader.creator(TOKEN) is None

    @pytest.mark.asyncio
    async def test_creator_zero_address(self) -> None:
        reader = _reader()
        reader.call_view = AsyncMock(return_value=ZERO_ADDRESS)

        assert await reader.creator(TOKEN) is None

    @pytest.mark.asyncio
    async def test_pair_token_order_cached(self) -> None:
        reader = _reader()
        reader.call_view = AsyncMock(side_effect=["0x" + "AA" * 20, "0x" + "BB" * 20])

        order = await reader.pair_token_order("0x" + "22" * 20)
        again = await reader.pair_token_order("0x" + "22" * 20)

        assert order is again
        assert order.token0 == "0x" + "aa" * 20
        assert reader.call_view.await_count == 2
