"""Trading metrics derived from stored swaps, reserves and price snapshots."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol

from haven_indexer.ledger.normalizer import WEI_PER_TOKEN

BLOCKS_PER_DAY = 28_800
BLOCKS_PER_WEEK = 201_600

NET_BUY_SHORT_WINDOW = timedelta(minutes=1)
TRADING_WINDOW = timedelta(hours=24)

PRICE_CHANGE_WINDOWS: dict[str, timedelta] = {
    "5m": timedelta(minutes=5),
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
}

ZERO = Decimal(0)


class SwapLike(Protocol):
    is_buy: bool
    token_amount: int
    price_usd: Decimal
    timestamp: datetime | None


def to_whole_units(raw: int) -> Decimal:
    return Decimal(raw) / WEI_PER_TOKEN


def swap_value_usd(swap: SwapLike) -> Decimal:
    return Decimal(swap.price_usd) * to_whole_units(int(swap.token_amount))


@dataclass(frozen=True)
class SwapWindowSummary:
    """Buy/sell activity over the trading window."""

    buys: int = 0
    sells: int = 0
    buy_volume_usd: Decimal = ZERO
    sell_volume_usd: Decimal = ZERO
    net_buy_short_usd: Decimal = ZERO
    net_buy_usd: Decimal = ZERO

    @property
    def volume_usd(self) -> Decimal:
        return self.buy_volume_usd + self.sell_volume_usd


def summarize_swaps(
    swaps: Iterable[SwapLike],
    *,
    now: datetime,
    window: timedelta = TRADING_WINDOW,
    short_window: timedelta = NET_BUY_SHORT_WINDOW,
) -> SwapWindowSummary:
    """Count and value buys and sells inside ``window`` before ``now``.

    Net buy is buy volume minus sell volume; the short variant only uses
    swaps inside ``short_window``.
    """
    window_start = now - window
    short_start = now - short_window
    buys = sells = 0
    buy_volume = sell_volume = net_short = ZERO
    for swap in swaps:
        if swap.timestamp is None or swap.timestamp < window_start:
            continue
        value = swap_value_usd(swap)
        signed = value if swap.is_buy else -value
        if swap.is_buy:
            buys += 1
            buy_volume += value
        else:
            sells += 1
            sell_volume += value
        if swap.timestamp >= short_start:
            net_short += signed
    return SwapWindowSummary(
        buys=buys,
        sells=sells,
        buy_volume_usd=buy_volume,
        sell_volume_usd=sell_volume,
        net_buy_short_usd=net_short,
        net_buy_usd=buy_volume - sell_volume,
    )


def count_recent_transfers(
    block_numbers: Sequence[int],
    *,
    current_block: int,
    day_blocks: int = BLOCKS_PER_DAY,
    recent_token_blocks: int = BLOCKS_PER_WEEK,
) -> int:
    """24h transaction count.

    A token whose first transfer is younger than ``recent_token_blocks`` counts
    every transfer; older tokens count only the last ``day_blocks`` blocks.
    """
    if not block_numbers:
        return 0
    if min(block_numbers) >= current_block - recent_token_blocks:
        return len(block_numbers)
    cutoff = current_block - day_blocks
    return sum(1 for b in block_numbers if b >= cutoff)


@dataclass(frozen=True)
class Valuation:
    price_usd: Decimal = ZERO
    market_cap_usd: Decimal = ZERO
    liquidity_usd: Decimal = ZERO


def bonding_curve_valuation(
    *,
    current_price: int,
    market_cap_reference: int,
    real_reserve: int,
    reference_price_usd: Decimal,
) -> Valuation:
    """Value a bonding-curve token from its on-chain views (reference-token denominated)."""
    return Valuation(
        price_usd=to_whole_units(current_price) * reference_price_usd,
        market_cap_usd=to_whole_units(market_cap_reference) * reference_price_usd,
        liquidity_usd=to_whole_units(real_reserve) * reference_price_usd,
    )


def pair_valuation(
    *,
    token_reserve: int,
    counter_reserve: int,
    counter_price_usd: Decimal,
    total_supply: int,
    last_trade_price_usd: Decimal | None = None,
) -> Valuation:
    """Value a graduated token from its DEX pair.

    The most recent trade price wins; reserve pricing is only used when no
    trade has been recorded yet.
    """
    if last_trade_price_usd is not None and last_trade_price_usd > 0:
        price = Decimal(last_trade_price_usd)
    elif token_reserve > 0:
        price = Decimal(counter_reserve) / Decimal(token_reserve) * counter_price_usd
    else:
        price = ZERO
    return Valuation(
        price_usd=price,
        market_cap_usd=price * to_whole_units(total_supply),
        liquidity_usd=to_whole_units(counter_reserve) * counter_price_usd * 2,
    )


@dataclass(frozen=True)
class PriceChanges:
    change_5m: Decimal = ZERO
    change_1h: Decimal = ZERO
    change_6h: Decimal = ZERO
    change_24h: Decimal = ZERO


def nearest_price(snapshots: Sequence[tuple[datetime, Decimal]], target: datetime) -> Decimal | None:
    best: tuple[datetime, Decimal] | None = None
    best_diff: float | None = None
    for ts, price in snapshots:
        diff = abs((ts - target).total_seconds())
        if best_diff is None or diff < best_diff:
            best, best_diff = (ts, price), diff
    return best[1] if best is not None else None


def percent_change(current: Decimal, previous: Decimal | None) -> Decimal:
    if previous is None or previous == 0:
        return ZERO
    return (current - previous) / previous * 100


def compute_price_changes(
    current_price: Decimal,
    snapshots: Sequence[tuple[datetime, Decimal]],
    *,
    now: datetime,
) -> PriceChanges:
    """Percentage change against the snapshot nearest to each lookback target."""
    if current_price == 0 or not snapshots:
        return PriceChanges()
    changes = {
        label: percent_change(current_price, nearest_price(snapshots, now - delta))
        for label, delta in PRICE_CHANGE_WINDOWS.items()
    }
    return PriceChanges(
        change_5m=changes["5m"],
        change_1h=changes["1h"],
        change_6h=changes["6h"],
        change_24h=changes["24h"],
    )
