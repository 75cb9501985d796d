"""Tests for the holder analysis service."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from haven_indexer.api.wallet_analysis import TokenAnalysis, WalletAnalysisService, is_valid_address
from haven_indexer.detector.wallets import WalletFlagUpdate
from haven_indexer.storage.repos import (
    CreatorFeeDTO,
    CreatorFeeRepository,
    HolderBalanceRepository,
    SwapDTO,
    SwapRepository,
    TokenAggregates,
    TokenDTO,
    TokenRepository,
    TransferDTO,
    TransferRepository,
    WalletFlagRepository,
)

ONE = 10**18
TOKEN = "0x" + "4a" * 20
BONDING = "0x" + "4b" * 20
CREATOR = "0x" + "c4" * 20
ALICE = "0x" + "aa" * 20
CAROL = "0x" + "cc" * 20
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def service(db, clock) -> WalletAnalysisService:
    return WalletAnalysisService(db, cache_ttl_seconds=300, clock=clock, now=lambda: NOW)


async def _register(db, **fields) -> None:
    async with db.get_async_session() as session:
        await TokenRepository(session).upsert(
            TokenDTO(contract_address=TOKEN, bonding_contract_address=BONDING, creator_address=CREATOR, **fields)
        )


async def _store_history(db) -> None:
    """Alice buys 600 from the curve, then sends 100 to Carol."""
    async with db.get_async_session() as session:
        await TransferRepository(session).insert_many(
            [
                TransferDTO(TOKEN, "0x" + "00" * 20, BONDING, 1_000 * ONE, "0x" + "01" * 32, 0, 10),
                TransferDTO(TOKEN, BONDING, ALICE, 600 * ONE, "0x" + "02" * 32, 0, 11),
                TransferDTO(TOKEN, ALICE, CAROL, 100 * ONE, "0x" + "03" * 32, 0, 12),
            ]
        )
        await WalletFlagRepository(session).merge([WalletFlagUpdate(wallet_address=CAROL, is_phishing=True)])
        await WalletFlagRepository(session).merge([WalletFlagUpdate(wallet_address=ALICE, is_sniper=True)])
        await SwapRepository(session).insert_many(
            [
                SwapDTO(
                    token_address=TOKEN,
                    pair_address=BONDING,
                    trader=ALICE,
                    is_buy=True,
                    token_amount=600 * ONE,
                    counter_amount=30 * ONE,
                    price_usd=Decimal("0.5"),
                    tx_hash="0x" + "02" * 32,
                    log_index=1,
                    block_number=11,
                    timestamp=NOW - timedelta(seconds=30),
                    source="bonding_curve",
                )
            ]
        )


class TestIsValidAddress:
    @pytest.mark.parametrize(
        ("address", "expected"),
        [
            (TOKEN, True),
            (TOKEN.upper().replace("0X", "0x"), True),
            ("0x" + "00" * 20, False),
            ("0x1234", False),
            ("41" * 21, False),
            ("", False),
            (None, False),
        ],
    )
    def test_addresses(self, address, expected) -> None:
        assert is_valid_address(address) is expected


class TestWalletAnalysisService:
    """Tests for WalletAnalysisService."""

    @pytest.mark.asyncio
    async def test_invalid_address_is_empty(self, service) -> None:
        assert await service.analyze_token("not-an-address") == TokenAnalysis.empty()

    @pytest.mark.asyncio
    async def test_unknown_token_is_empty(self, service) -> None:
        analysis = await service.analyze_token(TOKEN)
        assert analysis.source == "empty"
        assert analysis.holders_count == 0

    @pytest.mark.asyncio
    async def test_indexed_aggregates_are_returned_as_is(self, db, service) -> None:
        await _register(db, total_supply=1_000 * ONE)
        async with db.get_async_session() as session:
            await TokenRepository(session).update_aggregates(
                TOKEN,
                TokenAggregates(
                    holders_count=42,
                    txns_24h=7,
                    dev_holds_pct=3,
                    top10_holds_pct=55,
                    snipers_holds_pct=12,
                    insiders_holds_pct=4,
                    phishing_holds_pct=1,
                    net_buy_24h_usd=Decimal("250.5"),
                ),
                indexed_at=NOW,
            )

        analysis = await service.analyze_token(BONDING)

        assert analysis.source == "indexed"
        assert analysis.holders_count == 42
        assert analysis.txns_24h == 7
        assert analysis.dev_holds == 3
        assert analysis.top10_holds == 55
        assert analysis.snipers_hold == 12
        assert analysis.insiders_hold == 4
        assert analysis.phishing_holds == 1
        assert float(analysis.net_buy_24h_usd) == pytest.approx(250.5)
        assert analysis.last_indexed_at == NOW

    @pytest.mark.asyncio
    async def test_unindexed_token_is_recomputed_from_transfers(self, db, service) -> None:
        await _register(db, total_supply=1_000 * ONE)
        await _store_history(db)

        analysis = await service.analyze_token(TOKEN)

        assert analysis.source == "recomputed"
        assert analysis.holders_count == 2
        assert analysis.top10_holds == 60
        assert analysis.dev_holds == 0
        assert analysis.phishing_holds == 10
        assert analysis.snipers_hold == 50
        assert analysis.insiders_hold == 0
        assert analysis.txns_24h == 3
        assert float(analysis.net_buy_1m_usd) == pytest.approx(300)
        assert float(analysis.net_buy_24h_usd) == pytest.approx(300)
        assert analysis.last_indexed_at is None

    @pytest.mark.asyncio
    async def test_recompute_prefers_stored_balances(self, db, service) -> None:
        await _register(db, total_supply=1_000 * ONE)
        async with db.get_async_session() as session:
            await HolderBalanceRepository(session).replace(TOKEN, {ALICE: 250 * ONE, CREATOR: 50 * ONE})

        analysis = await service.analyze_token(TOKEN)

        assert analysis.source == "recomputed"
        assert analysis.holders_count == 2
        assert analysis.top10_holds == 30
        assert analysis.dev_holds == 5
        assert analysis.txns_24h == 0

    @pytest.mark.asyncio
    async def test_results_are_cached_until_ttl(self, db, service, clock) -> None:
        await _register(db, total_supply=1_000 * ONE)
        first = await service.analyze_token(TOKEN)
        await _store_history(db)

        clock.now = 299.0
        assert await service.analyze_token(TOKEN) == first

        clock.now = 301.0
        refreshed = await service.analyze_token(TOKEN)
        assert refreshed.holders_count == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self, db, service) -> None:
        await _register(db, total_supply=1_000 * ONE)
        assert (await service.analyze_token(TOKEN)).holders_count == 0
        await _store_history(db)

        service.clear_cache(TOKEN.upper().replace("0X", "0x"))
        assert (await service.analyze_token(TOKEN)).holders_count == 2

        async with db.get_async_session() as session:
            await HolderBalanceRepository(session).replace(TOKEN, {ALICE: 1})
        service.clear_all_cache()
        assert (await service.analyze_token(TOKEN)).holders_count == 1

    @pytest.mark.asyncio
    async def test_failures_degrade_to_empty(self, clock) -> None:
        db = MagicMock()
        db.get_async_session.side_effect = RuntimeError("database is down")
        service = WalletAnalysisService(db, clock=clock)

        assert await service.analyze_token(TOKEN) == TokenAnalysis.empty()
        totals = await service.creator_fees(TOKEN)
        assert totals.collections == 0

    @pytest.mark.asyncio
    async def test_batch_deduplicates_addresses(self, db, service) -> None:
        await _register(db, total_supply=1_000 * ONE)
        await _store_history(db)

        results = await service.analyze_batch([TOKEN, TOKEN.upper().replace("0X", "0x"), "", "0xbad"])

        assert list(results) == [TOKEN, "0xbad"]
        assert results[TOKEN].holders_count == 2
        assert results["0xbad"].source == "empty"

    @pytest.mark.asyncio
    async def test_creator_fees(self, db, service) -> None:
        await _register(db)
        async with db.get_async_session() as session:
            await CreatorFeeRepository(session).insert_many(
                [
                    CreatorFeeDTO(TOKEN, CREATOR, 2 * ONE, Decimal("1200"), "0x" + "f1" * 32, 20, NOW),
                    CreatorFeeDTO(TOKEN, CREATOR, ONE, Decimal("600"), "0x" + "f2" * 32, 21, NOW),
                ]
            )

        totals = await service.creator_fees(BONDING)

        assert totals.collections == 2
        assert totals.total_amount == 3 * ONE
        assert float(totals.total_usd) == pytest.approx(1800)
        assert (await service.creator_fees("0x" + "99" * 20)).collections == 0
        assert (await service.creator_fees("nope")).collections == 0
