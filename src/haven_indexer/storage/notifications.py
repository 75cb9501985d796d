"""LISTEN/NOTIFY listener for newly inserted tokens.

A trigger on ``tokens`` calls ``pg_notify(<channel>, contract_address)`` on
insert (see the initial alembic migration). The realtime indexer subscribes
through a dedicated asyncpg connection.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], Awaitable[None]]


def _asyncpg_dsn(database_url: str) -> str:
    return database_url.replace("postgresql+asyncpg://", "postgresql://", 1)


class TokenInsertListener:
    """Dispatches ``tokens`` insert notifications to an async callback."""

    def __init__(self, database_url: str, channel: str, callback: TokenCallback) -> None:
        self._dsn = _asyncpg_dsn(database_url)
        self._channel = channel
        self._callback = callback
        self._connection: asyncpg.Connection | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def is_listening(self) -> bool:
        return self._connection is not None and not self._connection.is_closed()

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        address = payload.strip().lower()
        if not address:
            return
        logger.info("New token notification on %s: %s", channel, address)
        task = asyncio.get_running_loop().create_task(self._dispatch(address))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, address: str) -> None:
        try:
            await self._callback(address)
        except Exception:
            logger.exception("New token handler failed for %s", address)

    async def start(self) -> None:
        if self.is_listening:
            return
        self._connection = await asyncpg.connect(self._dsn)
        await self._connection.add_listener(self._channel, self._on_notification)
        logger.info("Listening for new tokens on channel %s", self._channel)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._connection is not None:
            try:
                await self._connection.remove_listener(self._channel, self._on_notification)
            finally:
                await self._connection.close()
            self._connection = None
        logger.info("Stopped new token listener")
