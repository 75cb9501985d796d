"""Long-running realtime indexer.

On startup every tracked token catches up over the last few blocks (or
from its persisted watermark). After that each new block pushed by the
node triggers an incremental pass over ``(watermark, head]`` per token.
Two background loops run alongside: the creator-fee sweep, advancing its
own watermark by a bounded number of blocks per tick, and the token list
refresh. Newly inserted tokens announced through LISTEN/NOTIFY are
processed immediately, out of band.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from haven_indexer.chain.reader import ChainReader, RPCTimeoutError
from haven_indexer.indexer.processor import TokenProcessor, TokenRunResult
from haven_indexer.indexer.scheduler import BlockRange, WatermarkScheduler
from haven_indexer.storage.database import DatabaseManager
from haven_indexer.storage.repos import CursorRepository, TokenDTO, TokenRepository

logger = logging.getLogger(__name__)

TOKEN_CURSOR_PREFIX = "realtime:"
FEE_CURSOR = "fee_check"

BlockSource = Callable[[], AsyncIterator[int]]
TokenCallback = Callable[[str], Awaitable[None]]


class TokenListener(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...


ListenerFactory = Callable[[TokenCallback], TokenListener]


def token_cursor(address: str) -> str:
    return f"{TOKEN_CURSOR_PREFIX}{address.lower()}"


class RealtimeState(str, Enum):
    """Realtime indexer lifecycle states."""

    STOPPED = "stopped"
    STARTUP_BACKFILL = "startup_backfill"
    LISTENING = "listening"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class RealtimeStats:
    """Statistics for the realtime indexer."""

    started_at: datetime | None = None
    tracked_tokens: int = 0
    blocks_seen: int = 0
    last_block: int | None = None
    ranges_processed: int = 0
    transfers: int = 0
    swaps: int = 0
    timeouts: int = 0
    errors: int = 0
    failed_batches: int = 0
    fee_checks: int = 0
    fee_collections: int = 0
    new_tokens: int = 0
    last_error: str | None = None


class RealtimeIndexer:
    """Block-driven incremental indexer.

    Example:
        ```python
        indexer = RealtimeIndexer(
            reader=reader,
            db=db,
            processor=processor,
            block_source=NewBlockSubscription(settings.chain.ws_url).blocks,
        )
        await indexer.run()  # until stop() is called
        ```
    """

    def __init__(
        self,
        *,
        reader: ChainReader,
        db: DatabaseManager,
        processor: TokenProcessor,
        block_source: BlockSource,
        listener_factory: ListenerFactory | None = None,
    ) -> None:
        self._reader = reader
        self._db = db
        self._processor = processor
        self._settings = processor.settings
        self._block_source = block_source
        self._listener_factory = listener_factory

        self._state = RealtimeState.STOPPED
        self._stats = RealtimeStats()

        self._tokens: dict[str, TokenDTO] = {}
        self._schedulers: dict[str, WatermarkScheduler] = {}
        self._fee_scheduler: WatermarkScheduler | None = None
        self._listener: TokenListener | None = None

        self._stop_event: asyncio.Event | None = None
        self._block_task: asyncio.Task[None] | None = None
        self._fee_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> RealtimeState:
        return self._state

    @property
    def stats(self) -> RealtimeStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == RealtimeState.LISTENING

    @property
    def tokens(self) -> dict[str, TokenDTO]:
        return self._tokens

    def watermark(self, address: str) -> int | None:
        scheduler = self._schedulers.get(address.lower())
        return scheduler.watermark if scheduler else None

    @property
    def fee_watermark(self) -> int | None:
        return self._fee_scheduler.watermark if self._fee_scheduler else None

    # ------------------------------------------------------------------
    # Token registry and watermarks
    # ------------------------------------------------------------------

    async def refresh_tokens(self) -> int:
        """Reload the tracked token list; returns how many tokens are new."""
        async with self._db.get_async_session() as session:
            tokens = await TokenRepository(session).list_all()
        added = 0
        for token in tokens:
            if token.contract_address not in self._tokens:
                added += 1
            self._tokens[token.contract_address] = token
        self._stats.tracked_tokens = len(self._tokens)
        if added:
            logger.info("Tracking %d tokens (%d new)", len(self._tokens), added)
        return added

    async def _load_watermarks(self) -> None:
        async with self._db.get_async_session() as session:
            cursors = CursorRepository(session)
            stored = await cursors.get_many(TOKEN_CURSOR_PREFIX)
            fee_watermark = await cursors.get(FEE_CURSOR)
        for name, block_number in stored.items():
            address = name[len(TOKEN_CURSOR_PREFIX) :]
            self._schedulers[address] = WatermarkScheduler(
                max_advance_blocks=self._settings.realtime_max_range_blocks, watermark=block_number
            )
        self._fee_scheduler = WatermarkScheduler(
            max_advance_blocks=self._settings.fee_check_max_blocks, watermark=fee_watermark
        )

    def _scheduler_for(self, token: TokenDTO, current_block: int, *, from_deploy: bool = False) -> WatermarkScheduler:
        scheduler = self._schedulers.get(token.contract_address)
        if scheduler is None:
            if from_deploy and token.deployed_block is not None:
                watermark = token.deployed_block - 1
            else:
                watermark = current_block - self._settings.startup_backfill_blocks
            scheduler = WatermarkScheduler(
                max_advance_blocks=self._settings.realtime_max_range_blocks, watermark=max(watermark, -1)
            )
            self._schedulers[token.contract_address] = scheduler
        return scheduler

    async def _save_watermark(self, name: str, block_number: int) -> None:
        async with self._db.get_async_session() as session:
            await CursorRepository(session).set(name, block_number)

    # ------------------------------------------------------------------
    # Per-token processing
    # ------------------------------------------------------------------

    async def process_token(
        self, token: TokenDTO, current_block: int, *, from_deploy: bool = False
    ) -> TokenRunResult | None:
        """Process the next pending range of one token.

        Returns None when the token is up to date or its range failed; a
        failed range, or one with batches that failed to write, leaves the
        watermark where it was.
        """
        scheduler = self._scheduler_for(token, current_block, from_deploy=from_deploy)
        block_range = scheduler.plan(current_block)
        if block_range is None:
            return None

        try:
            result = await asyncio.wait_for(
                self._processor.process_range(token, block_range, current_block=current_block),
                timeout=self._settings.token_timeout_seconds,
            )
        except (TimeoutError, RPCTimeoutError) as e:
            self._stats.timeouts += 1
            logger.warning(
                "%s: blocks %d-%d timed out (%s), retrying next cycle",
                token.contract_address,
                block_range.start,
                block_range.end,
                str(e) or "wall-clock limit",
            )
            return None
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.exception(
                "%s: failed to process blocks %d-%d", token.contract_address, block_range.start, block_range.end
            )
            return None

        if result.failed_batches:
            self._stats.failed_batches += result.failed_batches
            logger.warning(
                "%s: %d batches failed to write in blocks %d-%d, retrying next cycle",
                token.contract_address,
                result.failed_batches,
                block_range.start,
                block_range.end,
            )
            return result

        scheduler.commit(block_range)
        await self._save_watermark(token_cursor(token.contract_address), block_range.end)
        self._stats.ranges_processed += 1
        self._stats.transfers += result.transfers
        self._stats.swaps += result.swaps
        if result.transfers or result.swaps:
            logger.info(
                "%s: %d transfers, %d swaps in blocks %d-%d",
                token.ticker or token.contract_address,
                result.transfers,
                result.swaps,
                block_range.start,
                block_range.end,
            )
        return result

    async def on_new_block(self, block_number: int) -> None:
        """Bring every tracked token up to ``block_number``, one token at a time."""
        self._stats.blocks_seen += 1
        if self._stats.last_block is not None and block_number < self._stats.last_block:
            logger.debug("Ignoring stale block %d", block_number)
            return
        self._stats.last_block = block_number
        for token in list(self._tokens.values()):
            await self.process_token(token, block_number)

    async def startup_backfill(self, current_block: int) -> None:
        logger.info(
            "Startup backfill of %d tokens up to block %d (last %d blocks or stored watermark)",
            len(self._tokens),
            current_block,
            self._settings.startup_backfill_blocks,
        )
        for token in list(self._tokens.values()):
            await self.process_token(token, current_block)
        self._stats.last_block = current_block

    async def on_new_token(self, address: str) -> None:
        """Start tracking a freshly inserted token from its deployment block."""
        async with self._db.get_async_session() as session:
            token = await TokenRepository(session).get(address)
        if token is None:
            logger.warning("Notified token %s not found in registry", address)
            return
        is_new = token.contract_address not in self._tokens
        self._tokens[token.contract_address] = token
        self._stats.tracked_tokens = len(self._tokens)
        if is_new:
            self._stats.new_tokens += 1
        current_block = await self._reader.get_block_number()
        logger.info("Processing new token %s from block %s", token.contract_address, token.deployed_block)
        await self.process_token(token, current_block, from_deploy=True)

    # ------------------------------------------------------------------
    # Creator fee sweep
    # ------------------------------------------------------------------

    async def run_fee_check(self, current_block: int | None = None) -> BlockRange | None:
        """Scan one bounded range for creator fee transfers and advance the watermark."""
        if self._fee_scheduler is None:
            self._fee_scheduler = WatermarkScheduler(max_advance_blocks=self._settings.fee_check_max_blocks)
        if current_block is None:
            current_block = await self._reader.get_block_number()
        block_range = self._fee_scheduler.plan(current_block)
        if block_range is None:
            return None

        lag = self._fee_scheduler.lag(current_block)
        collections = await self._processor.fetch_haven_fee_transfers(list(self._tokens.values()), block_range)
        failed = await self._processor.store_fee_collections(collections)
        if failed:
            self._stats.failed_batches += failed
            logger.warning(
                "Fee check blocks %d-%d: %d batches failed to write, retrying next tick",
                block_range.start,
                block_range.end,
                failed,
            )
            return None
        self._fee_scheduler.commit(block_range)
        await self._save_watermark(FEE_CURSOR, block_range.end)

        self._stats.fee_checks += 1
        self._stats.fee_collections += len(collections)
        logger.info(
            "Fee check blocks %d-%d: %d collections (lag was %d blocks)",
            block_range.start,
            block_range.end,
            len(collections),
            lag,
        )
        return block_range

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Catch up, then start listening for blocks and new tokens.

        Raises:
            RuntimeError: If the indexer is already running.
        """
        if self._state != RealtimeState.STOPPED:
            raise RuntimeError(f"Cannot start realtime indexer in state {self._state}")

        self._state = RealtimeState.STARTUP_BACKFILL
        self._stop_event = asyncio.Event()
        self._stats = RealtimeStats(started_at=datetime.now(UTC))
        logger.info("Starting realtime indexer...")

        try:
            await self.refresh_tokens()
            await self._load_watermarks()
            current_block = await self._reader.get_block_number()
            await self.startup_backfill(current_block)

            if self._listener_factory is not None:
                self._listener = self._listener_factory(self.on_new_token)
                await self._listener.start()

            self._block_task = asyncio.create_task(self._run_block_loop())
            self._fee_task = asyncio.create_task(self._run_fee_loop())
            self._refresh_task = asyncio.create_task(self._run_refresh_loop())
            self._state = RealtimeState.LISTENING
            logger.info("Realtime indexer listening for new blocks")
        except Exception as e:
            self._state = RealtimeState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start realtime indexer: %s", e)
            await self._stop_background_tasks()
            raise

    async def stop(self) -> None:
        """Stop the indexer gracefully."""
        if self._state in (RealtimeState.STOPPED, RealtimeState.STOPPING):
            return

        self._state = RealtimeState.STOPPING
        logger.info("Stopping realtime indexer...")
        if self._stop_event:
            self._stop_event.set()
        await self._stop_background_tasks()
        self._state = RealtimeState.STOPPED
        logger.info("Realtime indexer stopped")

    def request_stop(self) -> None:
        """Make a pending ``run()`` return; safe to call from a signal handler."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def _stop_background_tasks(self) -> None:
        if self._listener is not None:
            try:
                await self._listener.stop()
            except Exception as e:
                logger.warning("Failed to stop token listener: %s", e)
            self._listener = None

        for task in (self._block_task, self._fee_task, self._refresh_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._block_task = None
        self._fee_task = None
        self._refresh_task = None

    async def _wait_or_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True when a stop was requested."""
        if self._stop_event is None:
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    async def _run_block_loop(self) -> None:
        try:
            async for block_number in self._block_source():
                if self._stop_event is not None and self._stop_event.is_set():
                    break
                await self.on_new_block(block_number)
        except asyncio.CancelledError:
            logger.debug("Block loop cancelled")
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.exception("Block loop failed")

    async def _run_fee_loop(self) -> None:
        interval = self._settings.fee_check_interval_seconds
        while not await self._wait_or_stop(interval):
            try:
                await self.run_fee_check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.warning("Fee check failed: %s", e)

    async def _run_refresh_loop(self) -> None:
        interval = self._settings.token_refresh_interval_seconds
        while not await self._wait_or_stop(interval):
            try:
                await self.refresh_tokens()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Token list refresh failed: %s", e)

    async def run(self) -> None:
        """Start the indexer and run until ``stop()`` is called."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> RealtimeIndexer:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
