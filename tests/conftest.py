"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from haven_indexer.chain.events import (
    BUY_TOPIC,
    CREATOR_FEES_COLLECTED_TOPIC,
    GRADUATED_TOPIC,
    SELL_TOPIC,
    SWAP_TOPIC,
    TRANSFER_TOPIC,
    pad_topic_address,
)
from haven_indexer.chain.reader import BondingCurveState, MissingCapabilityError, RPCError
from haven_indexer.config import HAVEN_ADDRESS, PANCAKE_FACTORY_ADDRESS, USDT_ADDRESS, WBNB_ADDRESS, IndexerSettings
from haven_indexer.indexer.processor import TokenProcessor
from haven_indexer.ledger.balances import ZERO_ADDRESS
from haven_indexer.ledger.normalizer import PairTokenOrder
from haven_indexer.storage.database import DatabaseManager
from haven_indexer.storage.models import Base
from haven_indexer.storage.repos import TokenDTO, TokenRepository

ONE = 10**18
HEAD = 1_000
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
BLOCK_SECONDS = 3

TOKEN = "0x" + "11" * 20
BONDING = "0x" + "12" * 20
PAIR = "0x" + "13" * 20
CREATOR = "0x" + "c0" * 20
ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
CAROL = "0x" + "cc" * 20


def _word(value: int) -> str:
    return f"{value:064x}"


def block_time(block_number: int) -> int:
    """Unix time of a fake block; HEAD is mined at NOW."""
    return int(NOW.timestamp()) - (HEAD - block_number) * BLOCK_SECONDS


class FakeChain:
    """In-memory chain reader: a log store plus canned contract views."""

    def __init__(self) -> None:
        self.head = HEAD
        self.logs: list[dict[str, Any]] = []
        self.supplies: dict[str, int] = {}
        self.creators: dict[str, str] = {}
        self.curves: dict[str, BondingCurveState] = {}
        self.pairs: dict[frozenset[str], str] = {}
        self.pair_orders: dict[str, PairTokenOrder] = {}
        self.reserves: dict[str, tuple[int, int]] = {}
        self.missing_views: set[str] = set()
        self.failing_addresses: set[str] = set()
        self.get_logs_calls: list[tuple[str, int, int]] = []
        self._tx = 0

    # -- log builders -------------------------------------------------

    def _next_tx(self) -> str:
        self._tx += 1
        return "0x" + f"{self._tx:064x}"

    def _add(self, address: str, topics: list[str], data: str, block: int, log_index: int, tx_hash: str | None) -> str:
        tx = tx_hash or self._next_tx()
        self.logs.append(
            {
                "address": address.lower(),
                "topics": [t.lower() for t in topics],
                "data": "0x" + data,
                "blockNumber": block,
                "transactionHash": tx,
                "logIndex": log_index,
            }
        )
        return tx

    def add_transfer(
        self, token: str, sender: str, recipient: str, amount: int, block: int, *, log_index: int = 0, tx_hash: str | None = None
    ) -> str:
        return self._add(
            token,
            [TRANSFER_TOPIC, pad_topic_address(sender), pad_topic_address(recipient)],
            _word(amount),
            block,
            log_index,
            tx_hash,
        )

    def add_mint(self, token: str, recipient: str, amount: int, block: int) -> str:
        return self.add_transfer(token, ZERO_ADDRESS, recipient, amount, block)

    def add_buy(self, bonding: str, user: str, asset_in: int, tokens_out: int, block: int, *, tx_hash: str | None = None) -> str:
        return self._add(
            bonding, [BUY_TOPIC, pad_topic_address(user)], _word(asset_in) + _word(tokens_out) + _word(0), block, 1, tx_hash
        )

    def add_sell(self, bonding: str, user: str, tokens_in: int, asset_out: int, block: int, *, tx_hash: str | None = None) -> str:
        return self._add(
            bonding, [SELL_TOPIC, pad_topic_address(user)], _word(tokens_in) + _word(asset_out) + _word(0), block, 1, tx_hash
        )

    def add_pair_swap(
        self, pair: str, to: str, amounts: tuple[int, int, int, int], block: int, *, tx_hash: str | None = None
    ) -> str:
        return self._add(
            pair,
            [SWAP_TOPIC, pad_topic_address(PAIR), pad_topic_address(to)],
            "".join(_word(a) for a in amounts),
            block,
            2,
            tx_hash,
        )

    def add_creator_fees(self, bonding: str, creator: str, amount: int, block: int) -> str:
        return self._add(bonding, [CREATOR_FEES_COLLECTED_TOPIC, pad_topic_address(creator)], _word(amount), block, 0, None)

    def add_graduation(self, bonding: str, token: str, block: int) -> str:
        return self._add(
            bonding,
            [GRADUATED_TOPIC, pad_topic_address(token)],
            _word(100 * ONE) + _word(block_time(block)) + _word(1),
            block,
            0,
            None,
        )

    # -- reader interface ---------------------------------------------

    async def get_block_number(self) -> int:
        return self.head

    async def get_block_timestamp(self, block_number: int) -> int:
        return block_time(block_number)

    async def get_block_timestamps(self, block_numbers: Sequence[int]) -> dict[int, int]:
        return {b: block_time(b) for b in set(block_numbers)}

    def _matches(self, log: dict[str, Any], addresses: set[str], topics: Sequence[Any], lo: int, hi: int) -> bool:
        if log["address"] not in addresses or not lo <= log["blockNumber"] <= hi:
            return False
        for i, wanted in enumerate(topics):
            if wanted is None:
                continue
            options = [wanted] if isinstance(wanted, str) else list(wanted)
            if i >= len(log["topics"]) or log["topics"][i] not in {o.lower() for o in options}:
                return False
        return True

    async def get_logs(
        self, *, address: str | Sequence[str], topics: Sequence[Any], from_block: int, to_block: int
    ) -> list[dict[str, Any]]:
        addresses = {address.lower()} if isinstance(address, str) else {a.lower() for a in address}
        if addresses & self.failing_addresses:
            raise RPCError(f"get_logs failed for {sorted(addresses)}")
        self.get_logs_calls.append((",".join(sorted(addresses)), from_block, to_block))
        found = [dict(log) for log in self.logs if self._matches(log, addresses, topics, from_block, to_block)]
        return sorted(found, key=lambda log: (log["blockNumber"], log["logIndex"]))

    async def find_first_log(
        self, *, address: str, topics: Sequence[Any], from_block: int, to_block: int
    ) -> dict[str, Any] | None:
        logs = await self.get_logs(address=address, topics=topics, from_block=from_block, to_block=to_block)
        return logs[0] if logs else None

    def _view(self, name: str) -> None:
        if name in self.missing_views:
            raise MissingCapabilityError(f"{name} is not supported")

    async def total_supply(self, token_address: str) -> int:
        self._view("total_supply")
        return self.supplies[token_address.lower()]

    async def creator(self, token_address: str) -> str | None:
        return self.creators.get(token_address.lower())

    async def bonding_curve(self, contract_address: str) -> BondingCurveState:
        self._view("bonding_curve")
        return self.curves[contract_address.lower()]

    async def market_cap_reference(self, contract_address: str) -> int:
        self._view("bonding_curve")
        return 50 * ONE

    async def get_pair(self, factory_address: str, token_a: str, token_b: str) -> str | None:
        return self.pairs.get(frozenset({token_a.lower(), token_b.lower()}))

    async def pair_token_order(self, pair_address: str) -> PairTokenOrder:
        return self.pair_orders[pair_address.lower()]

    async def get_reserves(self, pair_address: str) -> tuple[int, int]:
        return self.reserves[pair_address.lower()]


class FakeOracle:
    """Fixed USD prices: BNB $600, HAVEN $0.06, USDT $1."""

    def __init__(self) -> None:
        self.wbnb_address = WBNB_ADDRESS.lower()
        self.haven_address = HAVEN_ADDRESS.lower()
        self.usdt_address = USDT_ADDRESS.lower()
        self.factory_address = PANCAKE_FACTORY_ADDRESS.lower()
        self.prices = {
            self.wbnb_address: Decimal("600"),
            self.haven_address: Decimal("0.06"),
            self.usdt_address: Decimal("1"),
        }

    async def bnb_price_usd(self) -> Decimal:
        return self.prices[self.wbnb_address]

    async def haven_price_usd(self) -> Decimal:
        return self.prices[self.haven_address]

    async def reference_price_usd(self) -> Decimal:
        return await self.haven_price_usd()

    async def unit_price_usd(self, pair_token: str) -> Decimal:
        return self.prices.get(pair_token.lower(), Decimal(0))

    async def convert_to_usd(self, amount: Decimal, pair_token: str) -> Decimal:
        return Decimal(amount) * await self.unit_price_usd(pair_token)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    """File-backed SQLite database shared by every session a component opens."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'haven.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def indexer_settings() -> IndexerSettings:
    return IndexerSettings().model_copy(
        update={
            "token_delay_seconds": 0.0,
            "startup_backfill_blocks": 100,
            "realtime_max_range_blocks": 5_000,
            "token_timeout_seconds": 5.0,
        }
    )


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def processor(chain: FakeChain, db: DatabaseManager, oracle: FakeOracle, indexer_settings: IndexerSettings) -> TokenProcessor:
    return TokenProcessor(reader=chain, db=db, oracle=oracle, settings=indexer_settings, clock=lambda: NOW)


@pytest.fixture
def bonding_token(chain: FakeChain) -> TokenDTO:
    """A bonding-curve token with two buyers, an early sniper and a phishing recipient.

    Holders after the history below: Alice 90,000, Bob 50,000, Carol 10,000
    out of a 1,000,000 supply.
    """
    chain.supplies[TOKEN] = 1_000_000 * ONE
    chain.creators[TOKEN] = CREATOR
    chain.curves[BONDING] = BondingCurveState(
        current_price=ONE // 1000,
        virtual_reserve=30 * ONE,
        real_reserve=10 * ONE,
        token_supply=850_000 * ONE,
        graduation_threshold=100 * ONE,
        progress=10,
    )
    chain.add_mint(TOKEN, BONDING, 1_000_000 * ONE, 100)
    tx = chain.add_transfer(TOKEN, BONDING, ALICE, 100_000 * ONE, 102)
    chain.add_buy(BONDING, ALICE, 6 * ONE, 100_000 * ONE, 102, tx_hash=tx)
    tx = chain.add_transfer(TOKEN, BONDING, BOB, 50_000 * ONE, 300)
    chain.add_buy(BONDING, BOB, 3 * ONE, 50_000 * ONE, 300, tx_hash=tx)
    chain.add_transfer(TOKEN, ALICE, CAROL, 10_000 * ONE, 400)
    return TokenDTO(
        contract_address=TOKEN,
        bonding_contract_address=BONDING,
        creator_address=CREATOR,
        name="Test Token",
        ticker="TEST",
        deployed_block=100,
    )


@pytest.fixture
async def registered_token(db: DatabaseManager, bonding_token: TokenDTO) -> TokenDTO:
    async with db.get_async_session() as session:
        await TokenRepository(session).upsert(bonding_token)
    return bonding_token
