"""Tests for the repository layer."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from haven_indexer.detector.wallets import WalletFlagUpdate
from haven_indexer.ledger.normalizer import LegacyTrade
from haven_indexer.storage.database import DatabaseManager
from haven_indexer.storage.repos import (
    CreatorFeeDTO,
    CreatorFeeRepository,
    CursorRepository,
    HolderBalanceRepository,
    LegacyTradeRepository,
    PriceSnapshotRepository,
    StorageError,
    SwapDTO,
    SwapRepository,
    TokenAggregates,
    TokenDTO,
    TokenRepository,
    TransferDTO,
    TransferRepository,
    WalletFlagRepository,
)

TOKEN = "0x" + "11" * 20
BONDING = "0x" + "12" * 20
CREATOR = "0x" + "c0" * 20
ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _fail_nth_execute(monkeypatch, session: AsyncSession, n: int) -> None:
    """Make the ``n``-th statement executed on ``session`` raise a database error."""
    execute = session.execute
    calls = 0

    async def flaky_execute(statement, *args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == n:
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        return await execute(statement, *args, **kwargs)

    monkeypatch.setattr(session, "execute", flaky_execute)


def _transfer(log_index: int, *, tx_hash: str = "0x" + "ab" * 32, amount: int = 100, block: int = 10) -> TransferDTO:
    return TransferDTO(
        token_address=TOKEN,
        from_address=BONDING,
        to_address=ALICE,
        amount=amount,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block,
    )


def _swap(log_index: int, *, timestamp: datetime = NOW, price: str = "0.5") -> SwapDTO:
    return SwapDTO(
        token_address=TOKEN,
        pair_address=BONDING,
        trader=ALICE,
        is_buy=True,
        token_amount=10**18,
        counter_amount=5 * 10**17,
        price_usd=Decimal(price),
        tx_hash="0x" + "cd" * 32,
        log_index=log_index,
        block_number=20,
        timestamp=timestamp,
        source="bonding_curve",
    )


class TestTokenRepository:
    """Tests for TokenRepository."""

    @pytest.mark.asyncio
    async def test_upsert_and_get_by_either_address(self, async_session: AsyncSession) -> None:
        repo = TokenRepository(async_session)
        await repo.upsert(
            TokenDTO(contract_address=TOKEN.upper().replace("0X", "0x"), bonding_contract_address=BONDING, ticker="T")
        )

        by_contract = await repo.get(TOKEN)
        by_bonding = await repo.get(BONDING)

        assert by_contract is not None
        assert by_contract.contract_address == TOKEN
        assert by_bonding == by_contract
        assert by_contract.bonding_address == BONDING

    @pytest.mark.asyncio
    async def test_upsert_fills_but_never_clears(self, async_session: AsyncSession) -> None:
        repo = TokenRepository(async_session)
        await repo.upsert(TokenDTO(contract_address=TOKEN, name="Haven Test", deployed_block=100))
        await repo.upsert(TokenDTO(contract_address=TOKEN, creator_address=CREATOR))

        token = await repo.get(TOKEN)
        assert token is not None
        assert token.name == "Haven Test"
        assert token.deployed_block == 100
        assert token.creator_address == CREATOR

    def test_bonding_address_falls_back_to_contract(self) -> None:
        assert TokenDTO(contract_address=TOKEN).bonding_address == TOKEN

    @pytest.mark.asyncio
    async def test_update_aggregates_overwrites_everything(self, async_session: AsyncSession) -> None:
        repo = TokenRepository(async_session)
        await repo.upsert(TokenDTO(contract_address=TOKEN))
        await repo.update_aggregates(
            TOKEN, TokenAggregates(holders_count=5, top10_holds_pct=40, buys_24h=3), indexed_at=NOW
        )
        await repo.update_aggregates(TOKEN, TokenAggregates(holders_count=2), indexed_at=NOW)

        aggregates = await repo.get_aggregates(TOKEN)
        token = await repo.get(TOKEN)
        assert aggregates is not None
        assert aggregates.holders_count == 2
        assert aggregates.top10_holds_pct == 0
        assert aggregates.buys_24h == 0
        assert token is not None
        assert token.last_indexed_at == NOW

    @pytest.mark.asyncio
    async def test_supply_survives_as_big_int(self, async_session: AsyncSession) -> None:
        repo = TokenRepository(async_session)
        await repo.upsert(TokenDTO(contract_address=TOKEN))
        supply = 10**9 * 10**18 + 1
        await repo.set_total_supply(TOKEN, supply)

        token = await repo.get(TOKEN)
        assert token is not None
        assert token.total_supply == supply

    @pytest.mark.asyncio
    async def test_mark_graduated_and_pair(self, async_session: AsyncSession) -> None:
        repo = TokenRepository(async_session)
        await repo.upsert(TokenDTO(contract_address=TOKEN))
        await repo.mark_graduated(TOKEN, graduated_at=NOW, total_supply=None)
        await repo.set_pair_address(TOKEN, "0x" + "AB" * 20)

        token = await repo.get(TOKEN)
        assert token is not None
        assert token.is_graduated is True
        assert token.graduated_at == NOW
        assert token.pair_address == "0x" + "ab" * 20

    @pytest.mark.asyncio
    async def test_creators_by_token(self, async_session: AsyncSession) -> None:
        repo = TokenRepository(async_session)
        await repo.upsert(TokenDTO(contract_address=TOKEN, creator_address=CREATOR))
        await repo.upsert(TokenDTO(contract_address=BONDING))

        assert await repo.creators_by_token() == {TOKEN: CREATOR, BONDING: None}

    @pytest.mark.asyncio
    async def test_get_missing(self, async_session: AsyncSession) -> None:
        repo = TokenRepository(async_session)
        assert await repo.get(TOKEN) is None
        assert await repo.get_aggregates(TOKEN) is None


class TestTransferRepository:
    """Tests for TransferRepository."""

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, async_session: AsyncSession) -> None:
        repo = TransferRepository(async_session)
        batch = [_transfer(0), _transfer(1)]

        await repo.insert_many(batch)
        await repo.insert_many(batch)

        assert len(await repo.list_for_token(TOKEN)) == 2

    @pytest.mark.asyncio
    async def test_same_tx_different_log_index_are_distinct(self, async_session: AsyncSession) -> None:
        repo = TransferRepository(async_session)
        await repo.insert_many([_transfer(0), _transfer(3)])
        await repo.insert_many([_transfer(0, tx_hash="0x" + "ef" * 32)])

        assert len(await repo.list_for_token(TOKEN)) == 3

    @pytest.mark.asyncio
    async def test_list_is_ordered_and_keeps_amounts(self, async_session: AsyncSession) -> None:
        repo = TransferRepository(async_session, batch_size=1)
        big = 123_456_789 * 10**18
        await repo.insert_many(
            [
                _transfer(2, block=12),
                _transfer(1, block=11, amount=big),
                _transfer(0, block=12),
            ]
        )

        transfers = await repo.list_for_token(TOKEN.upper().replace("0X", "0x"))

        assert [(t.block_number, t.log_index) for t in transfers] == [(11, 1), (12, 0), (12, 2)]
        assert transfers[0].amount == big
        assert sorted(await repo.block_numbers(TOKEN)) == [11, 12, 12]

    @pytest.mark.asyncio
    async def test_failed_batch_keeps_the_other_batches(self, db: DatabaseManager, monkeypatch, caplog) -> None:
        transfers = [_transfer(i) for i in range(6)]

        async with db.get_async_session() as session:
            _fail_nth_execute(monkeypatch, session, 2)
            failed = await TransferRepository(session, batch_size=2).insert_many(transfers)

        async with db.get_async_session() as session:
            stored = await TransferRepository(session).list_for_token(TOKEN)

        assert failed == 1
        assert [t.log_index for t in stored] == [0, 1, 4, 5]
        assert "Failed to write 2 rows to transfers" in caplog.text

    @pytest.mark.asyncio
    async def test_insert_without_failures_reports_zero(self, async_session: AsyncSession) -> None:
        repo = TransferRepository(async_session, batch_size=2)
        assert await repo.insert_many([_transfer(i) for i in range(5)]) == 0
        assert await repo.insert_many([]) == 0


class TestSwapRepository:
    """Tests for SwapRepository."""

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, async_session: AsyncSession) -> None:
        repo = SwapRepository(async_session)
        await repo.insert_many([_swap(0), _swap(1)])
        await repo.insert_many([_swap(1)])

        assert len(await repo.list_for_token(TOKEN)) == 2

    @pytest.mark.asyncio
    async def test_since_filter_and_latest(self, async_session: AsyncSession) -> None:
        repo = SwapRepository(async_session)
        await repo.insert_many(
            [
                _swap(0, timestamp=NOW - timedelta(hours=30), price="0.1"),
                _swap(1, timestamp=NOW - timedelta(hours=1), price="0.2"),
                _swap(2, timestamp=NOW, price="0.3"),
            ]
        )

        recent = await repo.list_for_token(TOKEN, since=NOW - timedelta(hours=24))
        latest = await repo.latest(TOKEN)

        assert [s.log_index for s in recent] == [1, 2]
        assert recent[0].timestamp == NOW - timedelta(hours=1)
        assert latest is not None
        assert latest.log_index == 2
        assert float(latest.price_usd) == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_latest_without_swaps(self, async_session: AsyncSession) -> None:
        assert await SwapRepository(async_session).latest(TOKEN) is None


class TestLegacyTradeRepository:
    """Tests for LegacyTradeRepository."""

    @staticmethod
    def _trade(timestamp: datetime, side: str = "buy") -> LegacyTrade:
        return LegacyTrade(
            contract_address=BONDING,
            user=ALICE,
            side=side,
            token_amount=0,
            counter_amount=0,
            tx_hash=None,
            block_number=None,
            timestamp=timestamp,
        )

    async def _reconcile(self, repo: LegacyTradeRepository, timestamp: datetime, side: str = "buy") -> bool:
        return await repo.reconcile(
            contract_address=BONDING,
            user=ALICE,
            side=side,
            timestamp=timestamp,
            tx_hash="0x" + "AA" * 32,
            block_number=42,
            token_amount=1000,
            counter_amount=50,
        )

    @pytest.mark.asyncio
    async def test_reconcile_within_one_second(self, async_session: AsyncSession) -> None:
        repo = LegacyTradeRepository(async_session)
        await repo.insert(self._trade(NOW))

        assert await self._reconcile(repo, NOW + timedelta(milliseconds=800)) is True

        trades = await repo.list_with_tx([BONDING])
        assert len(trades) == 1
        assert trades[0].tx_hash == "0x" + "aa" * 32
        assert trades[0].block_number == 42
        assert trades[0].token_amount == 1000

    @pytest.mark.asyncio
    async def test_reconcile_outside_window_or_wrong_side(self, async_session: AsyncSession) -> None:
        repo = LegacyTradeRepository(async_session)
        await repo.insert(self._trade(NOW))

        assert await self._reconcile(repo, NOW + timedelta(seconds=5)) is False
        assert await self._reconcile(repo, NOW, side="sell") is False
        assert await repo.list_with_tx([BONDING]) == []

    @pytest.mark.asyncio
    async def test_reconciled_rows_are_not_matched_twice(self, async_session: AsyncSession) -> None:
        repo = LegacyTradeRepository(async_session)
        await repo.insert(self._trade(NOW))

        assert await self._reconcile(repo, NOW) is True
        assert await self._reconcile(repo, NOW) is False

    @pytest.mark.asyncio
    async def test_list_with_tx_ignores_empty_addresses(self, async_session: AsyncSession) -> None:
        assert await LegacyTradeRepository(async_session).list_with_tx(["", None]) == []


class TestHolderBalanceRepository:
    """Tests for HolderBalanceRepository."""

    @pytest.mark.asyncio
    async def test_replace_removes_stale_holders(self, async_session: AsyncSession) -> None:
        repo = HolderBalanceRepository(async_session)
        await repo.replace(TOKEN, {ALICE: 100, BOB: 50})
        await repo.replace(TOKEN, {ALICE: 70, BOB: 0})

        assert await repo.list_for_token(TOKEN) == {ALICE: 70}

    @pytest.mark.asyncio
    async def test_failed_batch_keeps_previous_balances(self, async_session: AsyncSession, monkeypatch) -> None:
        repo = HolderBalanceRepository(async_session, batch_size=1)
        await repo.replace(TOKEN, {ALICE: 100, BOB: 50})

        _fail_nth_execute(monkeypatch, async_session, 2)
        failed = await repo.replace(TOKEN, {ALICE: 70, BOB: 20, CREATOR: 5})

        assert failed == 1
        assert await repo.list_for_token(TOKEN) == {ALICE: 70, BOB: 50, CREATOR: 5}

    @pytest.mark.asyncio
    async def test_replace_with_nothing_clears_token(self, async_session: AsyncSession) -> None:
        repo = HolderBalanceRepository(async_session)
        await repo.replace(TOKEN, {ALICE: 100})
        await repo.replace(BONDING, {ALICE: 5})
        await repo.replace(TOKEN, {})

        assert await repo.list_for_token(TOKEN) == {}
        assert await repo.list_for_token(BONDING) == {ALICE: 5}

    @pytest.mark.asyncio
    async def test_holders_by_token(self, async_session: AsyncSession) -> None:
        repo = HolderBalanceRepository(async_session)
        await repo.replace(TOKEN, {ALICE: 1, BOB: 2})
        await repo.replace(BONDING, {ALICE: 3})

        holders = await repo.holders_by_token([TOKEN, BONDING, CREATOR])

        assert holders == {TOKEN: {ALICE, BOB}, BONDING: {ALICE}, CREATOR: set()}


class TestCreatorFeeRepository:
    """Tests for CreatorFeeRepository."""

    @staticmethod
    def _fee(tx: str, amount: int, usd: str) -> CreatorFeeDTO:
        return CreatorFeeDTO(
            token_address=TOKEN,
            creator_address=CREATOR,
            amount=amount,
            amount_usd=Decimal(usd),
            tx_hash=tx,
            block_number=50,
            timestamp=NOW,
        )

    @pytest.mark.asyncio
    async def test_tx_hash_is_the_natural_key(self, async_session: AsyncSession) -> None:
        repo = CreatorFeeRepository(async_session)
        first = self._fee("0x" + "01" * 32, 2 * 10**18, "1200")
        await repo.insert_many([first, self._fee("0x" + "02" * 32, 10**18, "600")])
        await repo.insert_many([first])

        totals = await repo.totals(TOKEN)

        assert totals.collections == 2
        assert totals.total_amount == 3 * 10**18
        assert float(totals.total_usd) == pytest.approx(1800)

    @pytest.mark.asyncio
    async def test_totals_without_collections(self, async_session: AsyncSession) -> None:
        totals = await CreatorFeeRepository(async_session).totals(TOKEN)
        assert totals.collections == 0
        assert totals.total_amount == 0


class TestWalletFlagRepository:
    """Tests for the additive wallet flag registry."""

    @pytest.mark.asyncio
    async def test_replaying_an_update_does_not_grow_counters(self, async_session: AsyncSession) -> None:
        repo = WalletFlagRepository(async_session)
        update = WalletFlagUpdate(wallet_address=ALICE, is_phishing=True, phishing_reports=1)

        await repo.merge([update])
        await repo.merge([update])

        flag = await repo.get(ALICE)
        assert flag is not None
        assert flag.is_phishing is True
        assert flag.phishing_reports == 1

    @pytest.mark.asyncio
    async def test_flags_are_never_unset_by_merge(self, async_session: AsyncSession) -> None:
        repo = WalletFlagRepository(async_session)
        await repo.merge([WalletFlagUpdate(wallet_address=ALICE, is_sniper=True, sniper_score=1)])
        await repo.merge([WalletFlagUpdate(wallet_address=ALICE, is_phishing=True, phishing_reports=1)])

        flag = await repo.get(ALICE)
        assert flag is not None
        assert flag.is_sniper is True
        assert flag.sniper_score == 1
        assert flag.is_phishing is True

    @pytest.mark.asyncio
    async def test_insider_connections_keep_the_maximum(self, async_session: AsyncSession) -> None:
        repo = WalletFlagRepository(async_session)
        await repo.merge([WalletFlagUpdate(wallet_address=BOB, is_insider=True, insider_connections=3)])
        await repo.merge([WalletFlagUpdate(wallet_address=BOB, is_insider=True, insider_connections=2)])

        flag = await repo.get(BOB)
        assert flag is not None
        assert flag.insider_connections == 3
        assert await repo.insiders([ALICE, BOB]) == {BOB}

    @pytest.mark.asyncio
    async def test_clear_is_explicit(self, async_session: AsyncSession) -> None:
        repo = WalletFlagRepository(async_session)
        await repo.merge([WalletFlagUpdate(wallet_address=ALICE, is_phishing=True, is_sniper=True, phishing_reports=1)])
        await repo.clear(ALICE, phishing=True)

        flag = await repo.get(ALICE)
        assert flag is not None
        assert flag.is_phishing is False
        assert flag.phishing_reports == 0
        assert flag.is_sniper is True

    @pytest.mark.asyncio
    async def test_get_many(self, async_session: AsyncSession) -> None:
        repo = WalletFlagRepository(async_session)
        await repo.merge(
            [
                WalletFlagUpdate(wallet_address=ALICE.upper().replace("0X", "0x"), is_sniper=True),
                WalletFlagUpdate(wallet_address=BOB, is_phishing=True),
            ]
        )

        flags = await repo.get_many([ALICE, BOB, CREATOR])

        assert set(flags) == {ALICE, BOB}
        assert flags[ALICE].is_sniper is True


class TestPriceSnapshotRepository:
    """Tests for PriceSnapshotRepository."""

    @pytest.mark.asyncio
    async def test_list_since(self, async_session: AsyncSession) -> None:
        repo = PriceSnapshotRepository(async_session)
        await repo.append(TOKEN, Decimal("1.5"), timestamp=NOW - timedelta(hours=2))
        await repo.append(TOKEN, Decimal("2"), timestamp=NOW - timedelta(minutes=5))
        await repo.append(BONDING, Decimal("9"), timestamp=NOW)

        history = await repo.list_since(TOKEN, NOW - timedelta(hours=1))

        assert len(history) == 1
        assert history[0][0] == NOW - timedelta(minutes=5)
        assert history[0][1] == Decimal("2")


class TestCursorRepository:
    """Tests for CursorRepository."""

    @pytest.mark.asyncio
    async def test_set_get_and_prefix(self, async_session: AsyncSession) -> None:
        repo = CursorRepository(async_session)
        await repo.set("realtime:" + TOKEN, 100)
        await repo.set("realtime:" + TOKEN, 150)
        await repo.set("fee_check", 90)

        assert await repo.get("realtime:" + TOKEN) == 150
        assert await repo.get("missing") is None
        assert await repo.get_many("realtime:") == {"realtime:" + TOKEN: 150}


class TestStorageError:
    def test_message_carries_batch_keys(self) -> None:
        error = StorageError("transfers", ("0xa", 0), ("0xb", 4), 5)
        assert "5 rows" in str(error)
        assert error.table == "transfers"
        assert error.first_key == ("0xa", 0)
