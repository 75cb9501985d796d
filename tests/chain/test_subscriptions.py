"""Tests for the new block subscription."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from haven_indexer.chain import subscriptions
from haven_indexer.chain.subscriptions import NewBlockSubscription, _block_number


class _FakeWeb3:
    """Async context manager standing in for an ``AsyncWeb3`` socket session."""

    def __init__(self, messages, error: Exception | None = None) -> None:
        self._messages = messages
        self._error = error
        self.eth = MagicMock()
        self.eth.subscribe = AsyncMock(return_value="0xsub")
        self.socket = MagicMock()
        self.socket.process_subscriptions = self._process
        self.exited = False

    async def _process(self):
        for message in self._messages:
            yield message
        if self._error is not None:
            raise self._error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        self.exited = True


@pytest.mark.parametrize(
    ("header", "expected"),
    [({"number": "0x10"}, 16), ({"number": 17}, 17), ({"number": "0x0"}, 0)],
)
def test_block_number(header, expected) -> None:
    assert _block_number(header) == expected


class TestNewBlockSubscription:
    @pytest.mark.asyncio
    async def test_yields_block_numbers(self) -> None:
        session = _FakeWeb3([{"result": {"number": "0x64"}}, {"result": {"number": "0x65"}}])
        provider = MagicMock()

        with (
            patch.object(subscriptions, "WebSocketProvider", provider),
            patch.object(subscriptions, "AsyncWeb3", return_value=session),
        ):
            stream = NewBlockSubscription("wss://bsc.example/ws").blocks()
            blocks = [await anext(stream), await anext(stream)]
            await stream.aclose()

        assert blocks == [100, 101]
        provider.assert_called_once_with("wss://bsc.example/ws")
        session.eth.subscribe.assert_awaited_once_with("newHeads")
        assert session.exited

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self) -> None:
        dropped = _FakeWeb3([{"result": {"number": "0x64"}}], error=ConnectionError("socket closed"))
        fresh = _FakeWeb3([{"result": {"number": 101}}])
        sleep = AsyncMock()

        with (
            patch.object(subscriptions, "WebSocketProvider"),
            patch.object(subscriptions, "AsyncWeb3", side_effect=[dropped, fresh]),
            patch.object(subscriptions.asyncio, "sleep", sleep),
        ):
            stream = NewBlockSubscription("wss://bsc.example/ws", reconnect_delay_seconds=2.5).blocks()
            blocks = [await anext(stream), await anext(stream)]
            await stream.aclose()

        assert blocks == [100, 101]
        sleep.assert_awaited_once_with(2.5)
        assert dropped.exited
