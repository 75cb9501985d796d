"""Initial schema: token registry, event ledger, holder balances, flags and cursors.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TOKEN_CHANNEL = "haven_token_inserted"

_AMOUNT = sa.Numeric(78, 0)
_USD = sa.Numeric(38, 6)
_PRICE = sa.Numeric(38, 18)


def _zero(type_: sa.types.TypeEngine, name: str) -> sa.Column:
    return sa.Column(name, type_, nullable=False, server_default="0")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Token rows are inserted by the web app, so every indexer-owned column has a server default.
    op.create_table(
        "tokens",
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("bonding_contract_address", sa.String(42), nullable=True),
        sa.Column("creator_address", sa.String(42), nullable=True),
        sa.Column("name", sa.String(128), nullable=True),
        sa.Column("ticker", sa.String(32), nullable=True),
        sa.Column("deployed_block", sa.BigInteger(), nullable=True),
        sa.Column("total_supply", _AMOUNT, nullable=True),
        sa.Column("is_graduated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("graduated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pair_address", sa.String(42), nullable=True),
        _zero(sa.Integer(), "holders_count"),
        _zero(sa.Integer(), "txns_24h"),
        _zero(_PRICE, "price_usd"),
        _zero(_USD, "market_cap_usd"),
        _zero(_USD, "liquidity_usd"),
        _zero(_USD, "volume_24h_usd"),
        _zero(_USD, "price_change_5m"),
        _zero(_USD, "price_change_1h"),
        _zero(_USD, "price_change_6h"),
        _zero(_USD, "price_change_24h"),
        _zero(sa.Integer(), "buys_24h"),
        _zero(sa.Integer(), "sells_24h"),
        _zero(_USD, "buy_volume_24h_usd"),
        _zero(_USD, "sell_volume_24h_usd"),
        _zero(_USD, "net_buy_1m_usd"),
        _zero(_USD, "net_buy_24h_usd"),
        _zero(sa.Integer(), "dev_holds_pct"),
        _zero(sa.Integer(), "top10_holds_pct"),
        _zero(sa.Integer(), "snipers_holds_pct"),
        _zero(sa.Integer(), "insiders_holds_pct"),
        _zero(sa.Integer(), "phishing_holds_pct"),
        sa.Column("last_indexed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("contract_address"),
    )
    op.create_index("idx_tokens_bonding_contract", "tokens", ["bonding_contract_address"])
    op.create_index("idx_tokens_creator", "tokens", ["creator_address"])

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("amount", _AMOUNT, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "token_address", "log_index", name="uq_transfers_event"),
    )
    op.create_index("idx_transfers_token_block", "transfers", ["token_address", "block_number"])
    op.create_index("idx_transfers_to", "transfers", ["to_address"])

    op.create_table(
        "swaps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("pair_address", sa.String(42), nullable=False),
        sa.Column("trader", sa.String(42), nullable=False),
        sa.Column("is_buy", sa.Boolean(), nullable=False),
        sa.Column("token_amount", _AMOUNT, nullable=False),
        sa.Column("counter_amount", _AMOUNT, nullable=False),
        sa.Column("price_usd", _PRICE, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_swaps_event"),
    )
    op.create_index("idx_swaps_token_ts", "swaps", ["token_address", "timestamp"])
    op.create_index("idx_swaps_trader", "swaps", ["trader"])

    op.create_table(
        "legacy_trades",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("side", sa.String(8), nullable=False),
        _zero(_AMOUNT, "token_amount"),
        _zero(_AMOUNT, "counter_amount"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_legacy_trades_contract_user", "legacy_trades", ["contract_address", "user_address"])

    op.create_table(
        "holder_balances",
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("holder_address", sa.String(42), nullable=False),
        sa.Column("balance", _AMOUNT, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("token_address", "holder_address"),
    )
    op.create_index("idx_holder_balances_holder", "holder_balances", ["holder_address"])

    op.create_table(
        "creator_fee_collections",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("creator_address", sa.String(42), nullable=False),
        sa.Column("amount", _AMOUNT, nullable=False),
        _zero(_USD, "amount_usd"),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", name="uq_creator_fee_collections_tx"),
    )
    op.create_index("idx_creator_fee_collections_token", "creator_fee_collections", ["token_address"])

    op.create_table(
        "wallet_flags",
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("is_phishing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_sniper", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_insider", sa.Boolean(), nullable=False, server_default=sa.false()),
        _zero(sa.Integer(), "sniper_score"),
        _zero(sa.Integer(), "insider_connections"),
        _zero(sa.Integer(), "phishing_reports"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("first_flagged_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("wallet_address"),
    )

    op.create_table(
        "price_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("price_usd", _PRICE, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_price_snapshots_token_ts", "price_snapshots", ["token_address", "timestamp"])

    op.create_table(
        "indexer_cursors",
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("name"),
    )

    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION notify_token_inserted() RETURNS trigger AS $$
        BEGIN
            PERFORM pg_notify('{TOKEN_CHANNEL}', lower(NEW.contract_address));
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER tokens_notify_insert
        AFTER INSERT ON tokens
        FOR EACH ROW EXECUTE FUNCTION notify_token_inserted();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS tokens_notify_insert ON tokens")
    op.execute("DROP FUNCTION IF EXISTS notify_token_inserted()")

    op.drop_table("indexer_cursors")

    op.drop_index("idx_price_snapshots_token_ts", table_name="price_snapshots")
    op.drop_table("price_snapshots")

    op.drop_table("wallet_flags")

    op.drop_index("idx_creator_fee_collections_token", table_name="creator_fee_collections")
    op.drop_table("creator_fee_collections")

    op.drop_index("idx_holder_balances_holder", table_name="holder_balances")
    op.drop_table("holder_balances")

    op.drop_index("idx_legacy_trades_contract_user", table_name="legacy_trades")
    op.drop_table("legacy_trades")

    op.drop_index("idx_swaps_trader", table_name="swaps")
    op.drop_index("idx_swaps_token_ts", table_name="swaps")
    op.drop_table("swaps")

    op.drop_index("idx_transfers_to", table_name="transfers")
    op.drop_index("idx_transfers_token_block", table_name="transfers")
    op.drop_table("transfers")

    op.drop_index("idx_tokens_creator", table_name="tokens")
    op.drop_index("idx_tokens_bonding_contract", table_name="tokens")
    op.drop_table("tokens")
