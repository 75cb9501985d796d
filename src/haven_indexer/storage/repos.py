"""Repository pattern implementations for data access.

Every write here is idempotent: event tables insert with ``ON CONFLICT DO
NOTHING`` on their natural key, current-state tables upsert on theirs, and
aggregates are overwritten wholesale. The insert dialect (PostgreSQL or
SQLite) follows the session's bind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, fields
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from haven_indexer.detector.wallets import WalletFlagUpdate
from haven_indexer.ledger.normalizer import LegacyTrade, SwapRecord
from haven_indexer.storage.models import (
    CreatorFeeCollectionModel,
    HolderBalanceModel,
    IndexerCursorModel,
    LegacyTradeModel,
    PriceSnapshotModel,
    SwapModel,
    TokenModel,
    TransferModel,
    WalletFlagModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

LEGACY_MATCH_TOLERANCE = timedelta(seconds=1)


class StorageError(Exception):
    """A batch write failed; carries the batch's identifying info."""

    def __init__(self, table: str, first_key: Any, last_key: Any, count: int) -> None:
        self.table = table
        self.first_key = first_key
        self.last_key = last_key
        self.count = count
        super().__init__(f"Failed to write {count} rows to {table} (keys {first_key!r}..{last_key!r})")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _insert_for(session: AsyncSession) -> Any:
    bind = session.bind
    if bind is not None and bind.dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


def _chunks(rows: Sequence[dict[str, Any]], size: int) -> Iterable[Sequence[dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


async def _execute_batches(
    session: AsyncSession,
    table: str,
    rows: Sequence[dict[str, Any]],
    *,
    batch_size: int,
    statement: Callable[[list[dict[str, Any]]], Any],
    key: Callable[[dict[str, Any]], Any],
) -> int:
    """Write ``rows`` one batch per savepoint and return the number of failed batches.

    A failed batch is rolled back to its savepoint and logged with its first
    and last natural keys; the batches before and after it are kept.
    """
    failed = 0
    for batch in _chunks(rows, batch_size):
        try:
            async with session.begin_nested():
                await session.execute(statement(list(batch)))
        except SQLAlchemyError as e:
            failed += 1
            error = StorageError(table, key(batch[0]), key(batch[-1]), len(batch))
            logger.warning("%s: %s", error, e)
    return failed


DEFAULT_BATCH_SIZE = 1000


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@dataclass
class TokenDTO:
    """Data transfer object for token registry rows."""

    contract_address: str
    bonding_contract_address: str | None = None
    creator_address: str | None = None
    name: str | None = None
    ticker: str | None = None
    deployed_block: int | None = None
    total_supply: int | None = None
    is_graduated: bool = False
    graduated_at: datetime | None = None
    pair_address: str | None = None
    last_indexed_at: datetime | None = None

    @property
    def bonding_address(self) -> str:
        """Contract emitting bonding-curve events (the token itself when not split)."""
        return self.bonding_contract_address or self.contract_address

    @classmethod
    def from_model(cls, model: TokenModel) -> TokenDTO:
        return cls(
            contract_address=model.contract_address,
            bonding_contract_address=model.bonding_contract_address,
            creator_address=model.creator_address,
            name=model.name,
            ticker=model.ticker,
            deployed_block=model.deployed_block,
            total_supply=model.total_supply,
            is_graduated=bool(model.is_graduated),
            graduated_at=_as_utc(model.graduated_at),
            pair_address=model.pair_address,
            last_indexed_at=_as_utc(model.last_indexed_at),
        )


@dataclass
class TokenAggregates:
    """Derived per-token metrics; always written as a whole."""

    holders_count: int = 0
    txns_24h: int = 0
    price_usd: Decimal = Decimal(0)
    market_cap_usd: Decimal = Decimal(0)
    liquidity_usd: Decimal = Decimal(0)
    volume_24h_usd: Decimal = Decimal(0)
    price_change_5m: Decimal = Decimal(0)
    price_change_1h: Decimal = Decimal(0)
    price_change_6h: Decimal = Decimal(0)
    price_change_24h: Decimal = Decimal(0)
    buys_24h: int = 0
    sells_24h: int = 0
    buy_volume_24h_usd: Decimal = Decimal(0)
    sell_volume_24h_usd: Decimal = Decimal(0)
    net_buy_1m_usd: Decimal = Decimal(0)
    net_buy_24h_usd: Decimal = Decimal(0)
    dev_holds_pct: int = 0
    top10_holds_pct: int = 0
    snipers_holds_pct: int = 0
    insiders_holds_pct: int = 0
    phishing_holds_pct: int = 0

    def as_values(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_model(cls, model: TokenModel) -> TokenAggregates:
        return cls(**{f.name: getattr(model, f.name) for f in fields(cls)})


class TokenRepository:
    """Repository for the token registry and its cached aggregates."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, address: str) -> TokenDTO | None:
        """Resolve a token by its contract or its bonding contract address."""
        addr = address.lower()
        result = await self.session.execute(
            select(TokenModel)
            .where(or_(TokenModel.contract_address == addr, TokenModel.bonding_contract_address == addr))
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return TokenDTO.from_model(model) if model else None

    async def get_aggregates(self, address: str) -> TokenAggregates | None:
        result = await self.session.execute(
            select(TokenModel).where(TokenModel.contract_address == address.lower())
        )
        model = result.scalar_one_or_none()
        return TokenAggregates.from_model(model) if model else None

    async def list_all(self) -> list[TokenDTO]:
        result = await self.session.execute(select(TokenModel).order_by(TokenModel.created_at.asc()))
        return [TokenDTO.from_model(m) for m in result.scalars().all()]

    async def upsert(self, dto: TokenDTO) -> None:
        """Register a token; existing registry fields are only filled, never cleared."""
        values = {
            "contract_address": dto.contract_address.lower(),
            "bonding_contract_address": dto.bonding_contract_address.lower() if dto.bonding_contract_address else None,
            "creator_address": dto.creator_address.lower() if dto.creator_address else None,
            "name": dto.name,
            "ticker": dto.ticker,
            "deployed_block": dto.deployed_block,
            "total_supply": dto.total_supply,
            "is_graduated": dto.is_graduated,
            "graduated_at": dto.graduated_at,
            "pair_address": dto.pair_address.lower() if dto.pair_address else None,
        }
        now = datetime.now(UTC)
        stmt = _insert_for(self.session)(TokenModel).values(**values, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["contract_address"],
            set_={
                col: func.coalesce(getattr(stmt.excluded, col), getattr(TokenModel, col))
                for col in (
                    "bonding_contract_address",
                    "creator_address",
                    "name",
                    "ticker",
                    "deployed_block",
                    "total_supply",
                    "graduated_at",
                    "pair_address",
                )
            }
            | {"is_graduated": or_(TokenModel.is_graduated, stmt.excluded.is_graduated), "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def _update(self, address: str, **values: Any) -> None:
        await self.session.execute(
            update(TokenModel)
            .where(TokenModel.contract_address == address.lower())
            .values(**values, updated_at=datetime.now(UTC))
        )
        await self.session.flush()

    async def update_aggregates(self, address: str, aggregates: TokenAggregates, *, indexed_at: datetime) -> None:
        """Overwrite every aggregate field and stamp ``last_indexed_at``."""
        await self._update(address, **aggregates.as_values(), last_indexed_at=indexed_at)

    async def set_total_supply(self, address: str, total_supply: int) -> None:
        await self._update(address, total_supply=total_supply)

    async def set_creator(self, address: str, creator_address: str) -> None:
        await self._update(address, creator_address=creator_address.lower())

    async def set_pair_address(self, address: str, pair_address: str) -> None:
        await self._update(address, pair_address=pair_address.lower())

    async def mark_graduated(self, address: str, *, graduated_at: datetime | None, total_supply: int | None) -> None:
        values: dict[str, Any] = {"is_graduated": True, "graduated_at": graduated_at}
        if total_supply is not None:
            values["total_supply"] = total_supply
        await self._update(address, **values)

    async def creators_by_token(self) -> dict[str, str | None]:
        result = await self.session.execute(select(TokenModel.contract_address, TokenModel.creator_address))
        return {row[0]: row[1] for row in result.all()}


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


@dataclass
class TransferDTO:
    """Data transfer object for ERC-20 transfers."""

    token_address: str
    from_address: str
    to_address: str
    amount: int
    tx_hash: str
    log_index: int
    block_number: int
    timestamp: datetime | None = None

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            token_address=model.token_address,
            from_address=model.from_address,
            to_address=model.to_address,
            amount=model.amount,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            timestamp=_as_utc(model.timestamp),
        )


class TransferRepository:
    """Repository for immutable transfer events."""

    def __init__(self, session: AsyncSession, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.session = session
        self.batch_size = batch_size

    async def insert_many(self, transfers: Sequence[TransferDTO]) -> int:
        """Insert transfers, ignoring rows already stored under (tx hash, token, log index).

        Returns the number of batches that failed to write.
        """
        rows = [
            {
                "token_address": t.token_address.lower(),
                "from_address": t.from_address.lower(),
                "to_address": t.to_address.lower(),
                "amount": t.amount,
                "tx_hash": t.tx_hash.lower(),
                "log_index": t.log_index,
                "block_number": t.block_number,
                "timestamp": t.timestamp,
            }
            for t in transfers
        ]
        insert = _insert_for(self.session)
        failed = await _execute_batches(
            self.session,
            "transfers",
            rows,
            batch_size=self.batch_size,
            statement=lambda batch: insert(TransferModel)
            .values(batch)
            .on_conflict_do_nothing(index_elements=["tx_hash", "token_address", "log_index"]),
            key=lambda row: (row["tx_hash"], row["log_index"]),
        )
        await self.session.flush()
        return failed

    async def list_for_token(self, token_address: str) -> list[TransferDTO]:
        result = await self.session.execute(
            select(TransferModel)
            .where(TransferModel.token_address == token_address.lower())
            .order_by(TransferModel.block_number.asc(), TransferModel.log_index.asc())
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]

    async def block_numbers(self, token_address: str) -> list[int]:
        result = await self.session.execute(
            select(TransferModel.block_number).where(TransferModel.token_address == token_address.lower())
        )
        return [int(row[0]) for row in result.all()]


# ---------------------------------------------------------------------------
# Swaps
# ---------------------------------------------------------------------------


@dataclass
class SwapDTO:
    """Data transfer object for canonical swaps."""

    token_address: str
    pair_address: str
    trader: str
    is_buy: bool
    token_amount: int
    counter_amount: int
    price_usd: Decimal
    tx_hash: str
    log_index: int
    block_number: int | None
    timestamp: datetime | None
    source: str

    @classmethod
    def from_record(cls, record: SwapRecord) -> SwapDTO:
        return cls(
            token_address=record.token_address,
            pair_address=record.pair_address,
            trader=record.trader,
            is_buy=record.is_buy,
            token_amount=record.token_amount,
            counter_amount=record.counter_amount,
            price_usd=record.price_usd,
            tx_hash=record.tx_hash,
            log_index=record.log_index,
            block_number=record.block_number,
            timestamp=record.timestamp,
            source=record.source.value,
        )

    @classmethod
    def from_model(cls, model: SwapModel) -> SwapDTO:
        return cls(
            token_address=model.token_address,
            pair_address=model.pair_address,
            trader=model.trader,
            is_buy=bool(model.is_buy),
            token_amount=model.token_amount,
            counter_amount=model.counter_amount,
            price_usd=Decimal(model.price_usd),
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            timestamp=_as_utc(model.timestamp),
            source=model.source,
        )


class SwapRepository:
    """Repository for canonical swaps."""

    def __init__(self, session: AsyncSession, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.session = session
        self.batch_size = batch_size

    async def insert_many(self, swaps: Sequence[SwapRecord | SwapDTO]) -> int:
        """Insert swaps, ignoring rows already stored under (tx hash, log index).

        Returns the number of batches that failed to write.
        """
        rows = []
        for swap in swaps:
            dto = SwapDTO.from_record(swap) if isinstance(swap, SwapRecord) else swap
            rows.append(
                {
                    "token_address": dto.token_address.lower(),
                    "pair_address": dto.pair_address.lower(),
                    "trader": dto.trader.lower(),
                    "is_buy": dto.is_buy,
                    "token_amount": dto.token_amount,
                    "counter_amount": dto.counter_amount,
                    "price_usd": dto.price_usd,
                    "tx_hash": dto.tx_hash.lower(),
                    "log_index": dto.log_index,
                    "block_number": dto.block_number,
                    "timestamp": dto.timestamp,
                    "source": dto.source,
                }
            )
        insert = _insert_for(self.session)
        failed = await _execute_batches(
            self.session,
            "swaps",
            rows,
            batch_size=self.batch_size,
            statement=lambda batch: insert(SwapModel)
            .values(batch)
            .on_conflict_do_nothing(index_elements=["tx_hash", "log_index"]),
            key=lambda row: (row["tx_hash"], row["log_index"]),
        )
        await self.session.flush()
        return failed

    async def list_for_token(self, token_address: str, *, since: datetime | None = None) -> list[SwapDTO]:
        stmt = select(SwapModel).where(SwapModel.token_address == token_address.lower())
        if since is not None:
            stmt = stmt.where(SwapModel.timestamp >= since)
        result = await self.session.execute(stmt.order_by(SwapModel.timestamp.asc(), SwapModel.log_index.asc()))
        return [SwapDTO.from_model(m) for m in result.scalars().all()]

    async def latest(self, token_address: str) -> SwapDTO | None:
        result = await self.session.execute(
            select(SwapModel)
            .where(SwapModel.token_address == token_address.lower())
            .order_by(SwapModel.timestamp.desc(), SwapModel.log_index.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return SwapDTO.from_model(model) if model else None


# ---------------------------------------------------------------------------
# Legacy trades
# ---------------------------------------------------------------------------


class LegacyTradeRepository:
    """Repository for web-app trade rows awaiting on-chain reconciliation."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, trade: LegacyTrade) -> None:
        self.session.add(
            LegacyTradeModel(
                contract_address=trade.contract_address.lower(),
                user_address=trade.user.lower(),
                side=trade.side.lower(),
                token_amount=trade.token_amount,
                counter_amount=trade.counter_amount,
                timestamp=trade.timestamp,
                tx_hash=trade.tx_hash.lower() if trade.tx_hash else None,
                block_number=trade.block_number,
            )
        )
        await self.session.flush()

    async def reconcile(
        self,
        *,
        contract_address: str,
        user: str,
        side: str,
        timestamp: datetime,
        tx_hash: str,
        block_number: int,
        token_amount: int,
        counter_amount: int,
    ) -> bool:
        """Attach an on-chain transaction to the matching unreconciled trade row.

        A row matches on contract, user and side with a timestamp within one
        second and no tx hash yet. Returns True when a row was updated.
        """
        result = await self.session.execute(
            select(LegacyTradeModel.id)
            .where(
                (LegacyTradeModel.contract_address == contract_address.lower())
                & (LegacyTradeModel.user_address == user.lower())
                & (LegacyTradeModel.side == side.lower())
                & (LegacyTradeModel.tx_hash.is_(None))
                & (LegacyTradeModel.timestamp >= timestamp - LEGACY_MATCH_TOLERANCE)
                & (LegacyTradeModel.timestamp <= timestamp + LEGACY_MATCH_TOLERANCE)
            )
            .order_by(LegacyTradeModel.timestamp.asc())
            .limit(1)
        )
        row_id = result.scalar_one_or_none()
        if row_id is None:
            return False
        await self.session.execute(
            update(LegacyTradeModel)
            .where(LegacyTradeModel.id == row_id)
            .values(
                tx_hash=tx_hash.lower(),
                block_number=block_number,
                token_amount=token_amount,
                counter_amount=counter_amount,
            )
        )
        await self.session.flush()
        return True

    async def list_with_tx(self, contract_addresses: Iterable[str]) -> list[LegacyTrade]:
        addresses = [a.lower() for a in contract_addresses if a]
        if not addresses:
            return []
        result = await self.session.execute(
            select(LegacyTradeModel).where(
                LegacyTradeModel.contract_address.in_(addresses) & LegacyTradeModel.tx_hash.is_not(None)
            )
        )
        return [
            LegacyTrade(
                contract_address=m.contract_address,
                user=m.user_address,
                side=m.side,
                token_amount=m.token_amount,
                counter_amount=m.counter_amount,
                tx_hash=m.tx_hash,
                block_number=m.block_number,
                timestamp=_as_utc(m.timestamp) or datetime.now(UTC),
            )
            for m in result.scalars().all()
        ]


# ---------------------------------------------------------------------------
# Holder balances
# ---------------------------------------------------------------------------


class HolderBalanceRepository:
    """Repository for the materialized holder balance table."""

    def __init__(self, session: AsyncSession, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.session = session
        self.batch_size = batch_size

    async def replace(self, token_address: str, balances: Mapping[str, int]) -> int:
        """Make the stored holders of a token equal ``balances``.

        Positive balances are upserted on (token, holder); rows for addresses
        no longer holding are deleted. Returns the number of failed batches.
        """
        token = token_address.lower()
        now = datetime.now(UTC)
        rows = [
            {"token_address": token, "holder_address": holder.lower(), "balance": balance, "updated_at": now}
            for holder, balance in balances.items()
            if balance > 0
        ]
        insert = _insert_for(self.session)

        def upsert(batch: list[dict[str, Any]]) -> Any:
            stmt = insert(HolderBalanceModel).values(batch)
            return stmt.on_conflict_do_update(
                index_elements=["token_address", "holder_address"],
                set_={"balance": stmt.excluded.balance, "updated_at": stmt.excluded.updated_at},
            )

        failed = await _execute_batches(
            self.session,
            "holder_balances",
            rows,
            batch_size=self.batch_size,
            statement=upsert,
            key=lambda row: (token, row["holder_address"]),
        )

        # Rows of a failed batch keep their previous balance rather than being deleted.
        current = {row["holder_address"] for row in rows}
        existing = await self.session.execute(
            select(HolderBalanceModel.holder_address).where(HolderBalanceModel.token_address == token)
        )
        stale = [row[0] for row in existing.all() if row[0] not in current]
        if stale:
            await self.session.execute(
                delete(HolderBalanceModel).where(
                    (HolderBalanceModel.token_address == token) & HolderBalanceModel.holder_address.in_(stale)
                )
            )
        await self.session.flush()
        return failed

    async def list_for_token(self, token_address: str) -> dict[str, int]:
        result = await self.session.execute(
            select(HolderBalanceModel.holder_address, HolderBalanceModel.balance).where(
                HolderBalanceModel.token_address == token_address.lower()
            )
        )
        return {row[0]: int(row[1]) for row in result.all() if int(row[1]) > 0}

    async def holders_by_token(self, token_addresses: Iterable[str]) -> dict[str, set[str]]:
        tokens = [t.lower() for t in token_addresses]
        if not tokens:
            return {}
        result = await self.session.execute(
            select(HolderBalanceModel.token_address, HolderBalanceModel.holder_address).where(
                HolderBalanceModel.token_address.in_(tokens)
            )
        )
        holders: dict[str, set[str]] = {t: set() for t in tokens}
        for token, holder in result.all():
            holders.setdefault(token, set()).add(holder)
        return holders


# ---------------------------------------------------------------------------
# Creator fee collections
# ---------------------------------------------------------------------------


@dataclass
class CreatorFeeDTO:
    token_address: str
    creator_address: str
    amount: int
    amount_usd: Decimal
    tx_hash: str
    block_number: int
    timestamp: datetime | None = None

    @classmethod
    def from_model(cls, model: CreatorFeeCollectionModel) -> CreatorFeeDTO:
        return cls(
            token_address=model.token_address,
            creator_address=model.creator_address,
            amount=model.amount,
            amount_usd=Decimal(model.amount_usd),
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            timestamp=_as_utc(model.timestamp),
        )


@dataclass(frozen=True)
class CreatorFeeTotals:
    total_amount: int = 0
    total_usd: Decimal = Decimal(0)
    collections: int = 0


class CreatorFeeRepository:
    """Repository for creator fee collections (natural key: tx hash)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, collections: Sequence[CreatorFeeDTO]) -> int:
        if not collections:
            return 0
        rows = [
            {
                "token_address": c.token_address.lower(),
                "creator_address": c.creator_address.lower(),
                "amount": c.amount,
                "amount_usd": c.amount_usd,
                "tx_hash": c.tx_hash.lower(),
                "block_number": c.block_number,
                "timestamp": c.timestamp,
            }
            for c in collections
        ]
        insert = _insert_for(self.session)
        failed = await _execute_batches(
            self.session,
            "creator_fee_collections",
            rows,
            batch_size=DEFAULT_BATCH_SIZE,
            statement=lambda batch: insert(CreatorFeeCollectionModel)
            .values(batch)
            .on_conflict_do_nothing(index_elements=["tx_hash"]),
            key=lambda row: row["tx_hash"],
        )
        await self.session.flush()
        return failed

    async def list_for_token(self, token_address: str) -> list[CreatorFeeDTO]:
        result = await self.session.execute(
            select(CreatorFeeCollectionModel)
            .where(CreatorFeeCollectionModel.token_address == token_address.lower())
            .order_by(CreatorFeeCollectionModel.block_number.asc())
        )
        return [CreatorFeeDTO.from_model(m) for m in result.scalars().all()]

    async def totals(self, token_address: str) -> CreatorFeeTotals:
        # Amounts are summed in Python; TokenAmount is a string column on SQLite.
        rows = await self.list_for_token(token_address)
        return CreatorFeeTotals(
            total_amount=sum(r.amount for r in rows),
            total_usd=sum((r.amount_usd for r in rows), Decimal(0)),
            collections=len(rows),
        )


# ---------------------------------------------------------------------------
# Wallet flags
# ---------------------------------------------------------------------------


@dataclass
class WalletFlagDTO:
    wallet_address: str
    is_phishing: bool
    is_sniper: bool
    is_insider: bool
    sniper_score: int
    insider_connections: int
    phishing_reports: int
    notes: str | None
    first_flagged_at: datetime | None
    last_updated_at: datetime | None

    @classmethod
    def from_model(cls, model: WalletFlagModel) -> WalletFlagDTO:
        return cls(
            wallet_address=model.wallet_address,
            is_phishing=bool(model.is_phishing),
            is_sniper=bool(model.is_sniper),
            is_insider=bool(model.is_insider),
            sniper_score=model.sniper_score,
            insider_connections=model.insider_connections,
            phishing_reports=model.phishing_reports,
            notes=model.notes,
            first_flagged_at=_as_utc(model.first_flagged_at),
            last_updated_at=_as_utc(model.last_updated_at),
        )


class WalletFlagRepository:
    """Repository for the global wallet flag registry.

    Merges are additive: a flag once set stays set until ``clear`` is called,
    counters only grow when a wallet becomes newly flagged, and the insider
    connection count keeps its maximum. Replaying the same update is a no-op.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def merge(self, updates: Sequence[WalletFlagUpdate]) -> int:
        """Merge flag updates additively; returns the number of failed batches."""
        merged: dict[str, WalletFlagUpdate] = {}
        for u in updates:
            addr = u.wallet_address.lower()
            prev = merged.get(addr)
            if prev is None:
                merged[addr] = u
                continue
            merged[addr] = WalletFlagUpdate(
                wallet_address=addr,
                is_phishing=prev.is_phishing or u.is_phishing,
                is_sniper=prev.is_sniper or u.is_sniper,
                is_insider=prev.is_insider or u.is_insider,
                sniper_score=max(prev.sniper_score, u.sniper_score),
                insider_connections=max(prev.insider_connections, u.insider_connections),
                phishing_reports=max(prev.phishing_reports, u.phishing_reports),
                notes=u.notes or prev.notes,
            )
        if not merged:
            return 0

        now = datetime.now(UTC)
        rows = [
            {
                "wallet_address": addr,
                "is_phishing": u.is_phishing,
                "is_sniper": u.is_sniper,
                "is_insider": u.is_insider,
                "sniper_score": u.sniper_score,
                "insider_connections": u.insider_connections,
                "phishing_reports": u.phishing_reports,
                "notes": u.notes,
                "first_flagged_at": now,
                "last_updated_at": now,
            }
            for addr, u in sorted(merged.items())
        ]
        insert = _insert_for(self.session)
        table = WalletFlagModel

        def upsert(batch: list[dict[str, Any]]) -> Any:
            stmt = insert(WalletFlagModel).values(batch)
            excluded = stmt.excluded
            return stmt.on_conflict_do_update(
                index_elements=["wallet_address"],
                set_={
                    "phishing_reports": sa.case(
                        (sa.and_(excluded.is_phishing, sa.not_(table.is_phishing)), table.phishing_reports + excluded.phishing_reports),
                        else_=table.phishing_reports,
                    ),
                    "sniper_score": sa.case(
                        (sa.and_(excluded.is_sniper, sa.not_(table.is_sniper)), table.sniper_score + excluded.sniper_score),
                        else_=table.sniper_score,
                    ),
                    "insider_connections": sa.case(
                        (excluded.insider_connections > table.insider_connections, excluded.insider_connections),
                        else_=table.insider_connections,
                    ),
                    "is_phishing": or_(table.is_phishing, excluded.is_phishing),
                    "is_sniper": or_(table.is_sniper, excluded.is_sniper),
                    "is_insider": or_(table.is_insider, excluded.is_insider),
                    "notes": func.coalesce(excluded.notes, table.notes),
                    "last_updated_at": excluded.last_updated_at,
                },
            )

        failed = await _execute_batches(
            self.session,
            "wallet_flags",
            rows,
            batch_size=DEFAULT_BATCH_SIZE,
            statement=upsert,
            key=lambda row: row["wallet_address"],
        )
        await self.session.flush()
        return failed

    async def get(self, wallet_address: str) -> WalletFlagDTO | None:
        result = await self.session.execute(
            select(WalletFlagModel).where(WalletFlagModel.wallet_address == wallet_address.lower())
        )
        model = result.scalar_one_or_none()
        return WalletFlagDTO.from_model(model) if model else None

    async def get_many(self, wallet_addresses: Iterable[str]) -> dict[str, WalletFlagDTO]:
        addresses = sorted({a.lower() for a in wallet_addresses})
        flags: dict[str, WalletFlagDTO] = {}
        for start in range(0, len(addresses), DEFAULT_BATCH_SIZE):
            batch = addresses[start : start + DEFAULT_BATCH_SIZE]
            result = await self.session.execute(
                select(WalletFlagModel).where(WalletFlagModel.wallet_address.in_(batch))
            )
            for model in result.scalars().all():
                flags[model.wallet_address] = WalletFlagDTO.from_model(model)
        return flags

    async def insiders(self, wallet_addresses: Iterable[str]) -> set[str]:
        flags = await self.get_many(wallet_addresses)
        return {addr for addr, flag in flags.items() if flag.is_insider}

    async def clear(
        self,
        wallet_address: str,
        *,
        phishing: bool = False,
        sniper: bool = False,
        insider: bool = False,
    ) -> None:
        """Explicitly clear flags (the only way a flag is ever unset)."""
        values: dict[str, Any] = {}
        if phishing:
            values.update(is_phishing=False, phishing_reports=0)
        if sniper:
            values.update(is_sniper=False, sniper_score=0)
        if insider:
            values.update(is_insider=False, insider_connections=0)
        if not values:
            return
        await self.session.execute(
            update(WalletFlagModel)
            .where(WalletFlagModel.wallet_address == wallet_address.lower())
            .values(**values, last_updated_at=datetime.now(UTC))
        )
        await self.session.flush()


# ---------------------------------------------------------------------------
# Price snapshots
# ---------------------------------------------------------------------------


class PriceSnapshotRepository:
    """Append-only price history."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, token_address: str, price_usd: Decimal, *, timestamp: datetime) -> None:
        self.session.add(PriceSnapshotModel(token_address=token_address.lower(), price_usd=price_usd, timestamp=timestamp))
        await self.session.flush()

    async def list_since(self, token_address: str, since: datetime) -> list[tuple[datetime, Decimal]]:
        result = await self.session.execute(
            select(PriceSnapshotModel.timestamp, PriceSnapshotModel.price_usd)
            .where((PriceSnapshotModel.token_address == token_address.lower()) & (PriceSnapshotModel.timestamp >= since))
            .order_by(PriceSnapshotModel.timestamp.asc())
        )
        return [(_as_utc(row[0]), Decimal(row[1])) for row in result.all()]


# ---------------------------------------------------------------------------
# Indexer cursors
# ---------------------------------------------------------------------------


class CursorRepository:
    """Named block watermarks."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, name: str) -> int | None:
        result = await self.session.execute(
            select(IndexerCursorModel.block_number).where(IndexerCursorModel.name == name)
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def get_many(self, prefix: str) -> dict[str, int]:
        result = await self.session.execute(
            select(IndexerCursorModel.name, IndexerCursorModel.block_number).where(
                IndexerCursorModel.name.startswith(prefix)
            )
        )
        return {row[0]: int(row[1]) for row in result.all()}

    async def set(self, name: str, block_number: int) -> None:
        now = datetime.now(UTC)
        stmt = _insert_for(self.session)(IndexerCursorModel).values(name=name, block_number=block_number, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={"block_number": stmt.excluded.block_number, "updated_at": stmt.excluded.updated_at},
        )
        await self.session.execute(stmt)
        await self.session.flush()
