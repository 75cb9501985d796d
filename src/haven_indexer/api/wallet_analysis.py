"""Holder analysis served to the UI.

Indexer-computed aggregates are returned as-is once a token has been
indexed. Tokens the indexer has not reached yet are recomputed on the fly
from the raw ledger rows and the global wallet flag registry. Any failure
degrades to an all-zero result; callers never see an error.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from haven_indexer.cache import TTLCache
from haven_indexer.ledger.balances import (
    ZERO_ADDRESS,
    BalanceLedger,
    compute_holder_stats,
    percent_of_supply,
)
from haven_indexer.ledger.metrics import BLOCKS_PER_DAY, BLOCKS_PER_WEEK, count_recent_transfers, summarize_swaps
from haven_indexer.storage.database import DatabaseManager
from haven_indexer.storage.repos import (
    CreatorFeeRepository,
    CreatorFeeTotals,
    HolderBalanceRepository,
    SwapRepository,
    TokenDTO,
    TokenRepository,
    TransferRepository,
    WalletFlagRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300.0

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_address(address: str | None) -> bool:
    return bool(address) and bool(_ADDRESS_RE.match(address or "")) and address.lower() != ZERO_ADDRESS


@dataclass(frozen=True)
class TokenAnalysis:
    """Holder concentration and flow figures for one token."""

    dev_holds: int = 0
    top10_holds: int = 0
    phishing_holds: int = 0
    snipers_hold: int = 0
    insiders_hold: int = 0
    holders_count: int = 0
    txns_24h: int = 0
    net_buy_1m_usd: Decimal = Decimal(0)
    net_buy_24h_usd: Decimal = Decimal(0)
    last_indexed_at: datetime | None = None
    source: str = "empty"

    @classmethod
    def empty(cls) -> TokenAnalysis:
        return cls()


class WalletAnalysisService:
    """Per-token holder analysis with a short-lived in-process cache."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        recent_token_blocks: int = BLOCKS_PER_WEEK,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self._cache: TTLCache[str, TokenAnalysis] = TTLCache(cache_ttl_seconds, clock=clock)
        self._recent_token_blocks = recent_token_blocks
        self._now = now

    async def analyze_token(self, address: str) -> TokenAnalysis:
        """Analysis for a token given its contract or bonding contract address."""
        if not is_valid_address(address):
            return TokenAnalysis.empty()
        key = address.lower()
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            analysis = await self._analyze(key)
        except Exception:
            logger.exception("Failed to analyze token %s", key)
            return TokenAnalysis.empty()

        self._cache.put(key, analysis)
        return analysis

    async def _analyze(self, address: str) -> TokenAnalysis:
        async with self._db.get_async_session() as session:
            token = await TokenRepository(session).get(address)
            if token is None:
                return TokenAnalysis.empty()
            if token.last_indexed_at is not None:
                aggregates = await TokenRepository(session).get_aggregates(token.contract_address)
                if aggregates is not None:
                    return TokenAnalysis(
                        dev_holds=aggregates.dev_holds_pct,
                        top10_holds=aggregates.top10_holds_pct,
                        phishing_holds=aggregates.phishing_holds_pct,
                        snipers_hold=aggregates.snipers_holds_pct,
                        insiders_hold=aggregates.insiders_holds_pct,
                        holders_count=aggregates.holders_count,
                        txns_24h=aggregates.txns_24h,
                        net_buy_1m_usd=Decimal(aggregates.net_buy_1m_usd),
                        net_buy_24h_usd=Decimal(aggregates.net_buy_24h_usd),
                        last_indexed_at=token.last_indexed_at,
                        source="indexed",
                    )
            return await self._recompute(session, token)

    async def _recompute(self, session: AsyncSession, token: TokenDTO) -> TokenAnalysis:
        """Rebuild the analysis from stored balances (or transfers) and wallet flags."""
        balances = await HolderBalanceRepository(session).list_for_token(token.contract_address)
        transfers = await TransferRepository(session).list_for_token(token.contract_address)
        if balances:
            ledger = BalanceLedger.from_balances(balances)
        else:
            ledger = BalanceLedger.from_transfers(transfers)

        supply = token.total_supply or 0
        stats = compute_holder_stats(
            ledger,
            total_supply=supply,
            token_address=token.contract_address,
            pair_address=token.pair_address,
            bonding_address=token.bonding_contract_address,
            creator_address=token.creator_address,
        )
        flags = await WalletFlagRepository(session).get_many(h.address for h in stats.holders)
        phishing = sniper = insider = 0
        for holder in stats.holders:
            flag = flags.get(holder.address)
            if flag is None:
                continue
            if flag.is_phishing:
                phishing += holder.balance
            if flag.is_sniper:
                sniper += holder.balance
            if flag.is_insider:
                insider += holder.balance

        now = self._now()
        swaps = await SwapRepository(session).list_for_token(token.contract_address)
        trading = summarize_swaps(swaps, now=now)
        blocks = [t.block_number for t in transfers]
        txns = 0
        if blocks:
            txns = count_recent_transfers(
                blocks,
                current_block=max(blocks),
                day_blocks=BLOCKS_PER_DAY,
                recent_token_blocks=self._recent_token_blocks,
            )

        return TokenAnalysis(
            dev_holds=stats.dev_pct,
            top10_holds=stats.top10_pct,
            phishing_holds=percent_of_supply(phishing, supply),
            snipers_hold=percent_of_supply(sniper, supply),
            insiders_hold=percent_of_supply(insider, supply),
            holders_count=stats.holders_count,
            txns_24h=txns,
            net_buy_1m_usd=trading.net_buy_short_usd,
            net_buy_24h_usd=trading.net_buy_usd,
            last_indexed_at=None,
            source="recomputed",
        )

    async def analyze_batch(self, addresses: Iterable[str]) -> dict[str, TokenAnalysis]:
        unique = list(dict.fromkeys(a.lower() for a in addresses if a))
        results = await asyncio.gather(*(self.analyze_token(a) for a in unique))
        return dict(zip(unique, results, strict=True))

    async def creator_fees(self, address: str) -> CreatorFeeTotals:
        """Sum of stored creator fee collections, zero for unknown tokens."""
        if not is_valid_address(address):
            return CreatorFeeTotals()
        try:
            async with self._db.get_async_session() as session:
                token = await TokenRepository(session).get(address)
                if token is None:
                    return CreatorFeeTotals()
                return await CreatorFeeRepository(session).totals(token.contract_address)
        except Exception:
            logger.exception("Failed to load creator fees for %s", address)
            return CreatorFeeTotals()

    def clear_cache(self, address: str) -> None:
        self._cache.invalidate(address.lower())

    def clear_all_cache(self) -> None:
        self._cache.clear()
