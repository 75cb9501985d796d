"""Per-token indexing steps shared by the backfill and realtime drivers.

Each step opens its own database session so a failed write only loses that
step. Aggregates are always recomputed from the stored ledger and written
as a whole.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from haven_indexer.chain.events import (
    BUY_TOPIC,
    CREATOR_FEES_COLLECTED_TOPIC,
    GRADUATED_TOPIC,
    SELL_TOPIC,
    SWAP_TOPIC,
    TRANSFER_TOPIC,
    decode_bonding_buy,
    decode_bonding_sell,
    decode_creator_fees,
    decode_graduated,
    decode_pair_swap,
    decode_transfer,
    pad_topic_address,
)
from haven_indexer.chain.reader import ChainReader, ChainReaderError, MissingCapabilityError
from haven_indexer.config import IndexerSettings
from haven_indexer.detector.wallets import WalletClassification, WalletClassifier
from haven_indexer.indexer.scheduler import BlockRange, IntervalThrottle
from haven_indexer.ledger.balances import BalanceLedger, HolderStats, compute_holder_stats
from haven_indexer.ledger.metrics import (
    BLOCKS_PER_DAY,
    NET_BUY_SHORT_WINDOW,
    TRADING_WINDOW,
    PriceChanges,
    SwapWindowSummary,
    Valuation,
    bonding_curve_valuation,
    compute_price_changes,
    count_recent_transfers,
    pair_valuation,
    summarize_swaps,
    to_whole_units,
)
from haven_indexer.ledger.normalizer import (
    BondingBuy,
    BondingSell,
    SwapRecord,
    normalize,
    normalize_legacy_trade,
)
from haven_indexer.pricing.oracle import PriceOracle
from haven_indexer.storage.database import DatabaseManager
from haven_indexer.storage.repos import (
    CreatorFeeDTO,
    CreatorFeeRepository,
    HolderBalanceRepository,
    LegacyTradeRepository,
    PriceSnapshotRepository,
    SwapDTO,
    SwapRepository,
    TokenAggregates,
    TokenDTO,
    TokenRepository,
    TransferDTO,
    TransferRepository,
    WalletFlagRepository,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _from_unix(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=UTC)


@dataclass
class TokenRunResult:
    """What one pipeline run over a token observed and wrote."""

    token_address: str
    transfers: int = 0
    swaps: int = 0
    fee_collections: int = 0
    graduated: bool = False
    holder_stats: HolderStats | None = None
    classification: WalletClassification | None = None
    aggregates: TokenAggregates | None = None
    skipped_steps: list[str] = field(default_factory=list)
    failed_batches: int = 0


class TokenProcessor:
    """Runs the indexing steps for one token at a time.

    Example:
        ```python
        processor = TokenProcessor(reader=reader, db=db, oracle=oracle, settings=settings.indexer)
        result = await processor.process_range(token, BlockRange(start, end), current_block=end)
        print(result.aggregates)
        ```
    """

    def __init__(
        self,
        *,
        reader: ChainReader,
        db: DatabaseManager,
        oracle: PriceOracle,
        settings: IndexerSettings,
        classifier: WalletClassifier | None = None,
        clock: Clock = _utcnow,
        reference_throttle: IntervalThrottle | None = None,
    ) -> None:
        self._reader = reader
        self._db = db
        self._oracle = oracle
        self._settings = settings
        self._classifier = classifier or WalletClassifier(sniper_window_blocks=settings.sniper_window_blocks)
        self._clock = clock
        self._reference_throttle = reference_throttle or IntervalThrottle(
            settings.reference_snapshot_interval_seconds
        )

    @property
    def settings(self) -> IndexerSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def fetch_transfers(self, token: TokenDTO, from_block: int, to_block: int) -> list[TransferDTO]:
        logs = await self._reader.get_logs(
            address=token.contract_address,
            topics=[TRANSFER_TOPIC],
            from_block=from_block,
            to_block=to_block,
        )
        decoded_logs = [decode_transfer(log, token_address=token.contract_address) for log in logs]
        timestamps = await self._timestamps([d.block_number for d in decoded_logs]) if decoded_logs else {}
        transfers = []
        for decoded in decoded_logs:
            transfers.append(
                TransferDTO(
                    token_address=decoded.token_address,
                    from_address=decoded.from_address,
                    to_address=decoded.to_address,
                    amount=decoded.amount,
                    tx_hash=decoded.tx_hash,
                    log_index=decoded.log_index,
                    block_number=decoded.block_number,
                    timestamp=timestamps.get(decoded.block_number),
                )
            )
        logger.debug("%s: %d transfers in blocks %d-%d", token.contract_address, len(transfers), from_block, to_block)
        return transfers

    async def store_transfers(self, transfers: Sequence[TransferDTO]) -> int:
        """Store transfers; returns the number of batches that failed to write."""
        if not transfers:
            return 0
        async with self._db.get_async_session() as session:
            return await TransferRepository(session, batch_size=self._settings.store_batch_size).insert_many(transfers)

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def _timestamps(self, block_numbers: Sequence[int]) -> dict[int, datetime]:
        raw = await self._reader.get_block_timestamps(block_numbers)
        return {number: _from_unix(ts) for number, ts in raw.items()}

    async def fetch_bonding_trades(
        self, token: TokenDTO, from_block: int, to_block: int
    ) -> tuple[list[BondingBuy | BondingSell], list[SwapRecord]]:
        """Bonding-curve Buy/Sell events as raw events and canonical swaps."""
        bonding = token.bonding_address
        buy_logs = await self._reader.get_logs(
            address=bonding, topics=[BUY_TOPIC], from_block=from_block, to_block=to_block
        )
        sell_logs = await self._reader.get_logs(
            address=bonding, topics=[SELL_TOPIC], from_block=from_block, to_block=to_block
        )
        events: list[BondingBuy | BondingSell] = [decode_bonding_buy(log) for log in buy_logs]
        events.extend(decode_bonding_sell(log) for log in sell_logs)
        if not events:
            return [], []

        counter_price = await self._oracle.reference_price_usd()
        timestamps = await self._timestamps([e.block_number for e in events])
        records = []
        for event in events:
            record = normalize(
                event,
                token_address=token.contract_address,
                counter_price_usd=counter_price,
                timestamp=timestamps.get(event.block_number),
            )
            if record is not None:
                records.append(record)
        return events, records

    async def fetch_pair_swaps(self, token: TokenDTO, from_block: int, to_block: int) -> list[SwapRecord]:
        """DEX pair swaps normalized against the tracked token's slot."""
        if not token.pair_address:
            return []
        logs = await self._reader.get_logs(
            address=token.pair_address, topics=[SWAP_TOPIC], from_block=from_block, to_block=to_block
        )
        if not logs:
            return []
        order = await self._reader.pair_token_order(token.pair_address)
        counter_token = order.counter_token(token.contract_address)
        if counter_token is None:
            logger.warning("Pair %s does not contain token %s", token.pair_address, token.contract_address)
            return []
        counter_price = await self._oracle.unit_price_usd(counter_token)
        events = [decode_pair_swap(log, pair_address=token.pair_address) for log in logs]
        timestamps = await self._timestamps([e.block_number for e in events])
        records = []
        for event in events:
            record = normalize(
                event,
                token_address=token.contract_address,
                counter_price_usd=counter_price,
                timestamp=timestamps.get(event.block_number),
                pair_order=order,
            )
            if record is None:
                logger.debug("Discarded swap %s:%d for %s", event.tx_hash, event.log_index, token.contract_address)
                continue
            records.append(record)
        return records

    async def reconcile_legacy_trades(self, records: Sequence[SwapRecord]) -> int:
        """Attach tx hashes to web-app trade rows matching bonding-curve events."""
        matched = 0
        async with self._db.get_async_session() as session:
            repo = LegacyTradeRepository(session)
            for record in records:
                if record.timestamp is None or record.block_number is None:
                    continue
                if await repo.reconcile(
                    contract_address=record.pair_address,
                    user=record.trader,
                    side="buy" if record.is_buy else "sell",
                    timestamp=record.timestamp,
                    tx_hash=record.tx_hash,
                    block_number=record.block_number,
                    token_amount=record.token_amount,
                    counter_amount=record.counter_amount,
                ):
                    matched += 1
        if matched:
            logger.info("Reconciled %d legacy trades", matched)
        return matched

    async def store_swaps(self, records: Sequence[SwapRecord]) -> int:
        if not records:
            return 0
        async with self._db.get_async_session() as session:
            return await SwapRepository(session, batch_size=self._settings.store_batch_size).insert_many(records)

    # ------------------------------------------------------------------
    # Holders and classification
    # ------------------------------------------------------------------

    async def fetch_total_supply(self, token: TokenDTO) -> int:
        supply = await self._reader.total_supply(token.contract_address)
        if supply != token.total_supply:
            async with self._db.get_async_session() as session:
                await TokenRepository(session).set_total_supply(token.contract_address, supply)
            token.total_supply = supply
        return supply

    async def current_total_supply(self, token: TokenDTO, result: TokenRunResult) -> int:
        """On-chain supply, or the stored one when the token has no ``totalSupply()`` view."""
        try:
            return await self.fetch_total_supply(token)
        except MissingCapabilityError as e:
            logger.warning("%s: using stored total supply (%s)", token.contract_address, e)
            result.skipped_steps.append("fetch_total_supply")
            return token.total_supply or 0

    async def load_transfers(self, token: TokenDTO) -> list[TransferDTO]:
        async with self._db.get_async_session() as session:
            return await TransferRepository(session).list_for_token(token.contract_address)

    def compute_holder_stats(
        self, token: TokenDTO, transfers: Sequence[TransferDTO], total_supply: int
    ) -> HolderStats:
        ledger = BalanceLedger.from_transfers(transfers)
        stats = compute_holder_stats(
            ledger,
            total_supply=total_supply,
            token_address=token.contract_address,
            pair_address=token.pair_address,
            bonding_address=token.bonding_contract_address,
            creator_address=token.creator_address,
        )
        if stats.negative_balances:
            logger.warning(
                "%s: %d addresses with negative balances (missing transfers): %s",
                token.contract_address,
                len(stats.negative_balances),
                ", ".join(sorted(stats.negative_balances)[:5]),
            )
        return stats

    async def save_holder_balances(self, token: TokenDTO, stats: HolderStats) -> int:
        async with self._db.get_async_session() as session:
            return await HolderBalanceRepository(session, batch_size=self._settings.store_batch_size).replace(
                token.contract_address, stats.balance_map()
            )

    async def classify_wallets(
        self,
        token: TokenDTO,
        stats: HolderStats,
        transfers: Sequence[TransferDTO],
        result: TokenRunResult | None = None,
    ) -> WalletClassification:
        """Classify current holders and merge phishing/sniper flags into the registry.

        Flag batches that fail to write are counted on ``result`` when given.
        """
        async with self._db.get_async_session() as session:
            swaps: list[SwapDTO | SwapRecord] = list(await SwapRepository(session).list_for_token(token.contract_address))
            legacy = await LegacyTradeRepository(session).list_with_tx(
                [token.contract_address, token.bonding_address]
            )
            known_insiders = await WalletFlagRepository(session).insiders(h.address for h in stats.holders)

        for trade in legacy:
            record = normalize_legacy_trade(trade, token_address=token.contract_address, counter_price_usd=Decimal(0))
            if record is not None:
                swaps.append(record)

        # Tokens leaving the pair are DEX buys even before their Swap rows are stored.
        sale_addresses = [token.contract_address, token.bonding_address]
        if token.pair_address:
            sale_addresses.append(token.pair_address)
        classification = self._classifier.classify(
            holder_stats=stats,
            transfers=transfers,
            swaps=swaps,
            sale_addresses=sale_addresses,
            known_insiders=known_insiders,
        )
        updates = self._classifier.flag_updates(classification)
        if updates:
            async with self._db.get_async_session() as session:
                failed = await WalletFlagRepository(session).merge(updates)
            if result is not None:
                result.failed_batches += failed
        return classification

    # ------------------------------------------------------------------
    # Fees and graduation
    # ------------------------------------------------------------------

    async def fetch_fee_collections(self, token: TokenDTO, from_block: int, to_block: int) -> list[CreatorFeeDTO]:
        """``CreatorFeesCollected`` events emitted by the token's bonding contract."""
        if not token.creator_address:
            creator = await self._reader.creator(token.contract_address)
            if creator is None:
                logger.debug("%s: no creator, skipping fee collections", token.contract_address)
                return []
            token.creator_address = creator
            async with self._db.get_async_session() as session:
                await TokenRepository(session).set_creator(token.contract_address, creator)

        logs = await self._reader.get_logs(
            address=token.bonding_address,
            topics=[CREATOR_FEES_COLLECTED_TOPIC],
            from_block=from_block,
            to_block=to_block,
        )
        if not logs:
            return []
        events = [decode_creator_fees(log) for log in logs]
        timestamps = await self._timestamps([e.block_number for e in events])
        collections = []
        for event in events:
            amount_usd = await self._oracle.convert_to_usd(to_whole_units(event.amount), self._oracle.wbnb_address)
            collections.append(
                CreatorFeeDTO(
                    token_address=token.contract_address,
                    creator_address=event.creator,
                    amount=event.amount,
                    amount_usd=amount_usd,
                    tx_hash=event.tx_hash,
                    block_number=event.block_number,
                    timestamp=timestamps.get(event.block_number),
                )
            )
        return collections

    async def fetch_haven_fee_transfers(
        self, tokens: Sequence[TokenDTO], block_range: BlockRange
    ) -> list[CreatorFeeDTO]:
        """HAVEN transfers from bonding contracts to their creators over one sweep range.

        A token that fails (no ``creator()``, RPC error) is skipped for this
        range only.
        """
        collections: list[CreatorFeeDTO] = []
        haven = self._oracle.haven_address
        for token in tokens:
            try:
                creator = token.creator_address or await self._reader.creator(token.contract_address)
                if creator is None:
                    continue
                logs = await self._reader.get_logs(
                    address=haven,
                    topics=[
                        TRANSFER_TOPIC,
                        pad_topic_address(token.bonding_address),
                        pad_topic_address(creator),
                    ],
                    from_block=block_range.start,
                    to_block=block_range.end,
                )
                if not logs:
                    continue
                transfers = [decode_transfer(log, token_address=haven) for log in logs]
                timestamps = await self._timestamps([t.block_number for t in transfers])
            except ChainReaderError as e:
                logger.warning("Fee check failed for %s: %s", token.contract_address, e)
                continue
            for transfer in transfers:
                amount_usd = await self._oracle.convert_to_usd(to_whole_units(transfer.amount), haven)
                collections.append(
                    CreatorFeeDTO(
                        token_address=token.contract_address,
                        creator_address=transfer.to_address,
                        amount=transfer.amount,
                        amount_usd=amount_usd,
                        tx_hash=transfer.tx_hash,
                        block_number=transfer.block_number,
                        timestamp=timestamps.get(transfer.block_number),
                    )
                )
        return collections

    async def store_fee_collections(self, collections: Sequence[CreatorFeeDTO]) -> int:
        if not collections:
            return 0
        async with self._db.get_async_session() as session:
            return await CreatorFeeRepository(session).insert_many(collections)

    async def check_graduation(self, token: TokenDTO, from_block: int, to_block: int) -> bool:
        """Detect a ``Graduated`` event and mark the token; resolve its pair once graduated."""
        if not token.is_graduated:
            log = await self._reader.find_first_log(
                address=token.bonding_address,
                topics=[GRADUATED_TOPIC],
                from_block=max(from_block, 0),
                to_block=to_block,
            )
            if log is None:
                return False
            event = decode_graduated(log)
            graduated_at = _from_unix(await self._reader.get_block_timestamp(event.block_number))
            try:
                supply = await self._reader.total_supply(token.contract_address)
            except MissingCapabilityError:
                supply = None
            async with self._db.get_async_session() as session:
                await TokenRepository(session).mark_graduated(
                    token.contract_address, graduated_at=graduated_at, total_supply=supply
                )
            token.is_graduated = True
            token.graduated_at = graduated_at
            if supply is not None:
                token.total_supply = supply
            logger.info("%s graduated at block %d", token.contract_address, event.block_number)

        if token.is_graduated and not token.pair_address:
            await self.discover_pair(token)
        return token.is_graduated

    async def discover_pair(self, token: TokenDTO) -> str | None:
        pair = await self._reader.get_pair(
            self._oracle.factory_address, token.contract_address, self._oracle.haven_address
        )
        if pair is None:
            logger.warning("%s: no DEX pair found", token.contract_address)
            return None
        async with self._db.get_async_session() as session:
            await TokenRepository(session).set_pair_address(token.contract_address, pair)
        token.pair_address = pair
        return pair

    # ------------------------------------------------------------------
    # Market metrics and aggregates
    # ------------------------------------------------------------------

    async def compute_valuation(self, token: TokenDTO, total_supply: int) -> Valuation:
        if token.is_graduated and token.pair_address:
            async with self._db.get_async_session() as session:
                latest = await SwapRepository(session).latest(token.contract_address)
            order = await self._reader.pair_token_order(token.pair_address)
            reserve0, reserve1 = await self._reader.get_reserves(token.pair_address)
            slot = order.slot_of(token.contract_address)
            counter = order.counter_token(token.contract_address)
            if slot is None or counter is None:
                return Valuation()
            token_reserve, counter_reserve = (reserve0, reserve1) if slot == 0 else (reserve1, reserve0)
            return pair_valuation(
                token_reserve=token_reserve,
                counter_reserve=counter_reserve,
                counter_price_usd=await self._oracle.unit_price_usd(counter),
                total_supply=total_supply,
                last_trade_price_usd=latest.price_usd if latest else None,
            )

        try:
            curve = await self._reader.bonding_curve(token.bonding_address)
            market_cap = await self._reader.market_cap_reference(token.bonding_address)
        except MissingCapabilityError:
            logger.debug("%s: no bonding curve views", token.bonding_address)
            return Valuation()
        return bonding_curve_valuation(
            current_price=curve.current_price,
            market_cap_reference=market_cap,
            real_reserve=curve.real_reserve,
            reference_price_usd=await self._oracle.reference_price_usd(),
        )

    async def summarize_trading(self, token: TokenDTO, now: datetime) -> SwapWindowSummary:
        async with self._db.get_async_session() as session:
            swaps = await SwapRepository(session).list_for_token(token.contract_address, since=now - TRADING_WINDOW)
        return summarize_swaps(swaps, now=now, window=TRADING_WINDOW, short_window=NET_BUY_SHORT_WINDOW)

    async def record_prices(self, token: TokenDTO, price: Decimal, now: datetime) -> PriceChanges:
        """Append price snapshots and derive percentage changes from history."""
        async with self._db.get_async_session() as session:
            repo = PriceSnapshotRepository(session)
            history = await repo.list_since(token.contract_address, now - timedelta(hours=24))
            if price > 0:
                await repo.append(token.contract_address, price, timestamp=now)
            if self._reference_throttle.try_acquire():
                await repo.append(self._oracle.haven_address, await self._oracle.haven_price_usd(), timestamp=now)
                await repo.append(self._oracle.wbnb_address, await self._oracle.bnb_price_usd(), timestamp=now)
        return compute_price_changes(price, history, now=now)

    async def txns_24h(self, token: TokenDTO, current_block: int) -> int:
        async with self._db.get_async_session() as session:
            blocks = await TransferRepository(session).block_numbers(token.contract_address)
        return count_recent_transfers(
            blocks,
            current_block=current_block,
            day_blocks=BLOCKS_PER_DAY,
            recent_token_blocks=self._settings.backfill_lookback_blocks,
        )

    async def persist_aggregates(
        self,
        token: TokenDTO,
        *,
        stats: HolderStats,
        classification: WalletClassification,
        current_block: int,
    ) -> TokenAggregates:
        now = self._clock()
        valuation = await self.compute_valuation(token, stats.total_supply)
        trading = await self.summarize_trading(token, now)
        changes = await self.record_prices(token, valuation.price_usd, now)
        aggregates = TokenAggregates(
            holders_count=stats.holders_count,
            txns_24h=await self.txns_24h(token, current_block),
            price_usd=valuation.price_usd,
            market_cap_usd=valuation.market_cap_usd,
            liquidity_usd=valuation.liquidity_usd,
            volume_24h_usd=trading.volume_usd,
            price_change_5m=changes.change_5m,
            price_change_1h=changes.change_1h,
            price_change_6h=changes.change_6h,
            price_change_24h=changes.change_24h,
            buys_24h=trading.buys,
            sells_24h=trading.sells,
            buy_volume_24h_usd=trading.buy_volume_usd,
            sell_volume_24h_usd=trading.sell_volume_usd,
            net_buy_1m_usd=trading.net_buy_short_usd,
            net_buy_24h_usd=trading.net_buy_usd,
            dev_holds_pct=stats.dev_pct,
            top10_holds_pct=stats.top10_pct,
            snipers_holds_pct=classification.snipers_pct,
            insiders_holds_pct=classification.insiders_pct,
            phishing_holds_pct=classification.phishing_pct,
        )
        async with self._db.get_async_session() as session:
            await TokenRepository(session).update_aggregates(token.contract_address, aggregates, indexed_at=now)
        logger.info(
            "%s: %d holders, %d txs, mc $%.0f, price $%.8f",
            token.contract_address,
            aggregates.holders_count,
            aggregates.txns_24h,
            aggregates.market_cap_usd,
            aggregates.price_usd,
        )
        return aggregates

    async def refresh_holders_and_aggregates(
        self, token: TokenDTO, *, current_block: int, result: TokenRunResult
    ) -> None:
        """Recompute holders, classification and aggregates from the stored ledger."""
        supply = await self.current_total_supply(token, result)
        transfers = await self.load_transfers(token)
        stats = self.compute_holder_stats(token, transfers, supply)
        result.failed_batches += await self.save_holder_balances(token, stats)
        classification = await self.classify_wallets(token, stats, transfers, result)
        result.holder_stats = stats
        result.classification = classification
        result.aggregates = await self.persist_aggregates(
            token, stats=stats, classification=classification, current_block=current_block
        )

    # ------------------------------------------------------------------
    # Incremental range processing (realtime)
    # ------------------------------------------------------------------

    async def process_range(self, token: TokenDTO, block_range: BlockRange, *, current_block: int) -> TokenRunResult:
        """Ingest one new block range for a token and refresh its aggregates.

        Aggregates are only recomputed when the range contained transfers or
        trades. Replaying a processed range stores nothing new and yields the
        same holder aggregates.
        """
        result = TokenRunResult(token_address=token.contract_address)

        transfers = await self.fetch_transfers(token, block_range.start, block_range.end)
        result.failed_batches += await self.store_transfers(transfers)
        result.transfers = len(transfers)

        records: list[SwapRecord] = []
        if not token.is_graduated:
            _, records = await self.fetch_bonding_trades(token, block_range.start, block_range.end)
            if records:
                await self.reconcile_legacy_trades(records)
        elif token.pair_address:
            records = await self.fetch_pair_swaps(token, block_range.start, block_range.end)
        result.failed_batches += await self.store_swaps(records)
        result.swaps = len(records)

        if transfers or records:
            await self.refresh_holders_and_aggregates(token, current_block=current_block, result=result)
            graduation_start = max(block_range.end - self._settings.realtime_graduation_lookback_blocks, 0)
            try:
                result.graduated = await self.check_graduation(token, graduation_start, block_range.end)
            except MissingCapabilityError as e:
                logger.warning("%s: skipping graduation check (%s)", token.contract_address, e)
                result.skipped_steps.append("check_graduation_event")
                result.graduated = token.is_graduated
        return result
