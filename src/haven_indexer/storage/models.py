"""SQLAlchemy models for persistent storage.

This module defines the schema written by the indexers and read by the API:
the token registry with its cached aggregates, immutable event tables keyed
by natural keys, the materialized holder balances, the global wallet flag
registry, price snapshots and indexer watermarks.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from haven_indexer.storage.types import TokenAmount


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TokenModel(Base):
    """Token registry row plus the aggregates the indexers overwrite each run."""

    __tablename__ = "tokens"

    contract_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    bonding_contract_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    creator_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ticker: Mapped[str | None] = mapped_column(String(32), nullable=True)
    deployed_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    total_supply: Mapped[int | None] = mapped_column(TokenAmount, nullable=True)

    is_graduated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    graduated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pair_address: Mapped[str | None] = mapped_column(String(42), nullable=True)

    holders_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    txns_24h: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_usd: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, default=Decimal(0))
    market_cap_usd: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    liquidity_usd: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    volume_24h_usd: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    price_change_5m: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    price_change_1h: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    price_change_6h: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    price_change_24h: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    buys_24h: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sells_24h: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    buy_volume_24h_usd: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    sell_volume_24h_usd: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    net_buy_1m_usd: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    net_buy_24h_usd: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))

    dev_holds_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    top10_holds_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    snipers_holds_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    insiders_holds_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    phishing_holds_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_indexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_tokens_bonding_contract", "bonding_contract_address"),
        Index("idx_tokens_creator", "creator_address"),
    )


class TransferModel(Base):
    """ERC-20 Transfer events; immutable once stored."""

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "token_address", "log_index", name="uq_transfers_event"),
        Index("idx_transfers_token_block", "token_address", "block_number"),
        Index("idx_transfers_to", "to_address"),
    )


class SwapModel(Base):
    """Canonical swaps from bonding-curve, DEX pair and legacy trades."""

    __tablename__ = "swaps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    pair_address: Mapped[str] = mapped_column(String(42), nullable=False)
    trader: Mapped[str] = mapped_column(String(42), nullable=False)
    is_buy: Mapped[bool] = mapped_column(Boolean, nullable=False)
    token_amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    counter_amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_swaps_event"),
        Index("idx_swaps_token_ts", "token_address", "timestamp"),
        Index("idx_swaps_trader", "trader"),
    )


class LegacyTradeModel(Base):
    """Trades recorded by the web app; reconciled with on-chain events later."""

    __tablename__ = "legacy_trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    token_amount: Mapped[int] = mapped_column(TokenAmount, nullable=False, default=0)
    counter_amount: Mapped[int] = mapped_column(TokenAmount, nullable=False, default=0)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_legacy_trades_contract_user", "contract_address", "user_address"),)


class HolderBalanceModel(Base):
    """Materialized current balance per token and holder."""

    __tablename__ = "holder_balances"

    token_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    holder_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    balance: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_holder_balances_holder", "holder_address"),)


class CreatorFeeCollectionModel(Base):
    """Creator fee withdrawals; one row per transaction."""

    __tablename__ = "creator_fee_collections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    creator_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal(0))
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", name="uq_creator_fee_collections_tx"),
        Index("idx_creator_fee_collections_token", "token_address"),
    )


class WalletFlagModel(Base):
    """Global wallet risk flags, shared across tokens."""

    __tablename__ = "wallet_flags"

    wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    is_phishing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_sniper: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_insider: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sniper_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    insider_connections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    phishing_reports: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_flagged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class PriceSnapshotModel(Base):
    """Append-only USD price observations."""

    __tablename__ = "price_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_price_snapshots_token_ts", "token_address", "timestamp"),)


class IndexerCursorModel(Base):
    """Named block watermark (per-token realtime cursor, fee sweep cursor)."""

    __tablename__ = "indexer_cursors"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
