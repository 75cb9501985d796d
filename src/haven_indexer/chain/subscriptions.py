"""New block push subscription over a WebSocket connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from web3 import AsyncWeb3, WebSocketProvider

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY_SECONDS = 5.0


def _block_number(header: Any) -> int:
    number = header["number"]
    if isinstance(number, str):
        return int(number, 16)
    return int(number)


class NewBlockSubscription:
    """Yields block numbers from an ``eth_subscribe('newHeads')`` stream.

    The connection is re-established after a delay when it drops; callers
    see an uninterrupted stream of block numbers until they stop iterating.
    """

    def __init__(
        self,
        ws_url: str,
        *,
        reconnect_delay_seconds: float = DEFAULT_RECONNECT_DELAY_SECONDS,
    ) -> None:
        self._ws_url = ws_url
        self._reconnect_delay = reconnect_delay_seconds

    async def blocks(self) -> AsyncIterator[int]:
        while True:
            try:
                async with AsyncWeb3(WebSocketProvider(self._ws_url)) as w3:
                    subscription_id = await w3.eth.subscribe("newHeads")
                    logger.info("Subscribed to new blocks (subscription=%s)", subscription_id)
                    async for message in w3.socket.process_subscriptions():
                        yield _block_number(message["result"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "New block subscription dropped: %s (reconnecting in %.0fs)", e, self._reconnect_delay
                )
            await asyncio.sleep(self._reconnect_delay)
