"""One-shot historical backfill.

Every registered token walks the same fixed sequence of steps. A failure
anywhere in one token's run is logged with its stack trace and the driver
moves on to the next token; re-running the backfill is always safe because
every write is an idempotent upsert.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TypeVar

from haven_indexer.chain.reader import ChainReader, MissingCapabilityError
from haven_indexer.detector.wallets import WalletClassifier, find_insiders
from haven_indexer.indexer.processor import TokenProcessor, TokenRunResult
from haven_indexer.ledger.normalizer import SwapRecord
from haven_indexer.storage.database import DatabaseManager
from haven_indexer.storage.repos import (
    HolderBalanceRepository,
    TokenDTO,
    TokenRepository,
    WalletFlagRepository,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class BackfillState(str, Enum):
    """Per-token backfill steps, in execution order."""

    IDLE = "idle"
    FETCH_TRANSFERS = "fetch_transfers"
    STORE_TRANSFERS = "store_transfers"
    FETCH_TOTAL_SUPPLY = "fetch_total_supply"
    COMPUTE_HOLDER_STATS = "compute_holder_stats"
    SAVE_HOLDER_BALANCES = "save_holder_balances"
    CLASSIFY_WALLETS = "classify_wallets"
    FETCH_SWAPS = "fetch_swaps"
    FETCH_FEE_COLLECTIONS = "fetch_fee_collections"
    CHECK_GRADUATION_EVENT = "check_graduation_event"
    PERSIST_AGGREGATES = "persist_aggregates"
    DONE = "done"


@dataclass
class BackfillStats:
    """Counters for one backfill run."""

    started_at: datetime | None = None
    finished_at: datetime | None = None
    current_block: int | None = None
    tokens_total: int = 0
    tokens_indexed: int = 0
    tokens_failed: int = 0
    transfers: int = 0
    swaps: int = 0
    fee_collections: int = 0
    graduated: int = 0
    insiders_flagged: int = 0
    failed_batches: int = 0
    last_error: str | None = None


class BackfillIndexer:
    """Scans each token's history into the ledger tables and aggregates.

    Example:
        ```python
        indexer = BackfillIndexer(reader=reader, db=db, processor=processor)
        stats = await indexer.run()
        print(stats.tokens_indexed, stats.tokens_failed)
        ```
    """

    def __init__(
        self,
        *,
        reader: ChainReader,
        db: DatabaseManager,
        processor: TokenProcessor,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._reader = reader
        self._db = db
        self._processor = processor
        self._settings = processor.settings
        self._sleep = sleep

        self._state = BackfillState.IDLE
        self._stats = BackfillStats()

    @property
    def state(self) -> BackfillState:
        return self._state

    @property
    def stats(self) -> BackfillStats:
        return self._stats

    def _enter(self, token: TokenDTO, state: BackfillState) -> None:
        self._state = state
        logger.debug("%s: %s", token.contract_address, state.value)

    async def _optional(
        self, token: TokenDTO, result: TokenRunResult, step: Awaitable[T], default: T
    ) -> T:
        """Await a step the token's contracts may not support."""
        try:
            return await step
        except MissingCapabilityError as e:
            logger.warning("%s: skipping %s (%s)", token.contract_address, self._state.value, e)
            result.skipped_steps.append(self._state.value)
            return default

    async def index_token(self, token: TokenDTO, current_block: int) -> TokenRunResult:
        """Run every backfill step for one token up to ``current_block``."""
        settings = self._settings
        result = TokenRunResult(token_address=token.contract_address)
        if token.deployed_block is not None:
            from_block = token.deployed_block
        else:
            from_block = max(current_block - settings.backfill_lookback_blocks, 0)

        self._enter(token, BackfillState.FETCH_TRANSFERS)
        transfers = await self._processor.fetch_transfers(token, from_block, current_block)
        result.transfers = len(transfers)

        self._enter(token, BackfillState.STORE_TRANSFERS)
        result.failed_batches += await self._processor.store_transfers(transfers)

        self._enter(token, BackfillState.FETCH_TOTAL_SUPPLY)
        supply = await self._optional(
            token, result, self._processor.fetch_total_supply(token), token.total_supply or 0
        )

        self._enter(token, BackfillState.COMPUTE_HOLDER_STATS)
        ledger_transfers = await self._processor.load_transfers(token)
        stats = self._processor.compute_holder_stats(token, ledger_transfers, supply)
        result.holder_stats = stats

        self._enter(token, BackfillState.SAVE_HOLDER_BALANCES)
        result.failed_batches += await self._processor.save_holder_balances(token, stats)

        self._enter(token, BackfillState.CLASSIFY_WALLETS)
        classification = await self._processor.classify_wallets(token, stats, ledger_transfers, result)
        result.classification = classification

        self._enter(token, BackfillState.FETCH_SWAPS)
        records = await self._optional(token, result, self._fetch_trades(token, current_block), [])
        result.failed_batches += await self._processor.store_swaps(records)
        result.swaps = len(records)

        self._enter(token, BackfillState.FETCH_FEE_COLLECTIONS)
        collections = await self._optional(
            token, result, self._processor.fetch_fee_collections(token, from_block, current_block), []
        )
        result.failed_batches += await self._processor.store_fee_collections(collections)
        result.fee_collections = len(collections)

        self._enter(token, BackfillState.CHECK_GRADUATION_EVENT)
        if token.deployed_block is not None:
            graduation_start = token.deployed_block
        else:
            graduation_start = max(current_block - settings.graduation_lookback_blocks, 0)
        result.graduated = await self._optional(
            token,
            result,
            self._processor.check_graduation(token, graduation_start, current_block),
            token.is_graduated,
        )

        self._enter(token, BackfillState.PERSIST_AGGREGATES)
        result.aggregates = await self._processor.persist_aggregates(
            token,
            stats=stats,
            classification=classification,
            current_block=current_block,
        )

        self._enter(token, BackfillState.DONE)
        return result

    async def _fetch_trades(self, token: TokenDTO, current_block: int) -> list[SwapRecord]:
        """DEX swaps for graduated tokens, bonding-curve trades otherwise."""
        settings = self._settings
        if token.is_graduated:
            if not token.pair_address:
                await self._processor.discover_pair(token)
            start = max(current_block - settings.swaps_lookback_blocks, 0)
            return await self._processor.fetch_pair_swaps(token, start, current_block)

        start = max(current_block - settings.bonding_events_lookback_blocks, 0)
        _, records = await self._processor.fetch_bonding_trades(token, start, current_block)
        if records:
            await self._processor.reconcile_legacy_trades(records)
        return records

    async def detect_insiders(self) -> int:
        """Flag wallets holding two or more tokens of the same creator."""
        async with self._db.get_async_session() as session:
            creators = await TokenRepository(session).creators_by_token()
            holders = await HolderBalanceRepository(session).holders_by_token(creators.keys())
        connections = find_insiders(holders, creators)
        updates = WalletClassifier.insider_updates(connections)
        if updates:
            async with self._db.get_async_session() as session:
                self._stats.failed_batches += await WalletFlagRepository(session).merge(updates)
        logger.info("Insider detection: %d wallets flagged", len(updates))
        return len(updates)

    async def run(self, addresses: Sequence[str] | None = None) -> BackfillStats:
        """Backfill every registered token, or only ``addresses`` when given."""
        self._stats = BackfillStats(started_at=datetime.now(UTC))
        current_block = await self._reader.get_block_number()
        self._stats.current_block = current_block

        async with self._db.get_async_session() as session:
            tokens = await TokenRepository(session).list_all()
        if addresses:
            wanted = {a.lower() for a in addresses}
            tokens = [
                t for t in tokens if t.contract_address in wanted or t.bonding_address.lower() in wanted
            ]
        self._stats.tokens_total = len(tokens)
        logger.info("Backfilling %d tokens up to block %d", len(tokens), current_block)

        for index, token in enumerate(tokens):
            logger.info("[%d/%d] Indexing %s", index + 1, len(tokens), token.ticker or token.contract_address)
            try:
                result = await self.index_token(token, current_block)
            except Exception as e:
                self._stats.tokens_failed += 1
                self._stats.last_error = str(e)
                logger.exception("Failed to index %s in state %s", token.contract_address, self._state.value)
            else:
                self._stats.tokens_indexed += 1
                self._stats.transfers += result.transfers
                self._stats.swaps += result.swaps
                self._stats.fee_collections += result.fee_collections
                self._stats.graduated += int(result.graduated)
                self._stats.failed_batches += result.failed_batches
                if result.failed_batches:
                    logger.warning(
                        "%s: %d batches failed to write, re-run the backfill to retry them",
                        token.contract_address,
                        result.failed_batches,
                    )
            self._state = BackfillState.IDLE
            if index < len(tokens) - 1 and self._settings.token_delay_seconds > 0:
                await self._sleep(self._settings.token_delay_seconds)

        try:
            self._stats.insiders_flagged = await self.detect_insiders()
        except Exception as e:
            self._stats.last_error = str(e)
            logger.exception("Insider detection failed")

        self._stats.finished_at = datetime.now(UTC)
        logger.info(
            "Backfill complete: %d indexed, %d failed, %d transfers, %d swaps, %d failed batches",
            self._stats.tokens_indexed,
            self._stats.tokens_failed,
            self._stats.transfers,
            self._stats.swaps,
            self._stats.failed_batches,
        )
        return self._stats
