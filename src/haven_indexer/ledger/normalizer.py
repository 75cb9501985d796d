"""Trade and swap normalization.

Three on-chain/off-chain trade shapes converge into one canonical
``SwapRecord``:

- ``BondingBuy`` / ``BondingSell``: bonding-curve contract events.
- ``PairSwap``: a DEX pair ``Swap`` event, interpreted relative to the
  tracked token's slot in the pair.
- ``LegacyTrade``: rows written into the legacy trades table by the web app.

Each variant has its own pure mapping function; ``normalize`` dispatches on
the variant type. Swap events that do not resolve to a buy or a sell of the
tracked token are discarded (``None``), never recorded as zero-value trades.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TypeAlias

WEI_PER_TOKEN = Decimal(10) ** 18


class TradeSource(str, Enum):
    """Where a canonical swap record came from."""

    BONDING = "bonding"
    DEX = "dex"
    LEGACY = "legacy"


@dataclass(frozen=True)
class BondingBuy:
    """Bonding-curve ``Buy(user, assetIn, tokensOut, fee)``."""

    contract_address: str
    user: str
    asset_in: int
    tokens_out: int
    fee: int
    tx_hash: str
    log_index: int
    block_number: int


@dataclass(frozen=True)
class BondingSell:
    """Bonding-curve ``Sell(user, tokensIn, assetOut, fee)``."""

    contract_address: str
    user: str
    tokens_in: int
    asset_out: int
    fee: int
    tx_hash: str
    log_index: int
    block_number: int


@dataclass(frozen=True)
class PairSwap:
    """DEX pair ``Swap(sender, amount0In, amount1In, amount0Out, amount1Out, to)``."""

    pair_address: str
    sender: str
    amount0_in: int
    amount1_in: int
    amount0_out: int
    amount1_out: int
    to: str
    tx_hash: str
    log_index: int
    block_number: int


@dataclass(frozen=True)
class LegacyTrade:
    """A trade row recorded by the web app before on-chain indexing existed."""

    contract_address: str
    user: str
    side: str
    token_amount: int
    counter_amount: int
    tx_hash: str | None
    block_number: int | None
    timestamp: datetime
    log_index: int = 0


TradeEvent: TypeAlias = BondingBuy | BondingSell | PairSwap | LegacyTrade


@dataclass(frozen=True)
class PairTokenOrder:
    """Token order of a DEX pair, as returned by ``token0()``/``token1()``."""

    token0: str
    token1: str

    def slot_of(self, token_address: str) -> int | None:
        token = token_address.lower()
        if self.token0.lower() == token:
            return 0
        if self.token1.lower() == token:
            return 1
        return None

    def counter_token(self, token_address: str) -> str | None:
        slot = self.slot_of(token_address)
        if slot is None:
            return None
        return self.token1 if slot == 0 else self.token0


@dataclass(frozen=True)
class SwapRecord:
    """Canonical swap record persisted in the swaps table."""

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
    source: TradeSource

    @property
    def counter_value_usd(self) -> Decimal:
        """USD value of the whole trade (token amount times per-token price)."""
        return self.price_usd * Decimal(self.token_amount) / WEI_PER_TOKEN


def trade_price_usd(*, counter_amount: int, token_amount: int, counter_price_usd: Decimal) -> Decimal:
    """USD price of one tracked token implied by a single trade.

    Both legs are 18-decimal raw amounts, so the ratio of raw amounts is the
    ratio of whole-token amounts.
    """
    if token_amount <= 0:
        return Decimal(0)
    return Decimal(counter_amount) * counter_price_usd / Decimal(token_amount)


def normalize_bonding_buy(
    event: BondingBuy,
    *,
    token_address: str,
    counter_price_usd: Decimal,
    timestamp: datetime | None,
) -> SwapRecord | None:
    if event.tokens_out <= 0 or event.asset_in <= 0:
        return None
    return SwapRecord(
        token_address=token_address.lower(),
        pair_address=event.contract_address.lower(),
        trader=event.user.lower(),
        is_buy=True,
        token_amount=event.tokens_out,
        counter_amount=event.asset_in,
        price_usd=trade_price_usd(
            counter_amount=event.asset_in,
            token_amount=event.tokens_out,
            counter_price_usd=counter_price_usd,
        ),
        tx_hash=event.tx_hash.lower(),
        log_index=event.log_index,
        block_number=event.block_number,
        timestamp=timestamp,
        source=TradeSource.BONDING,
    )


def normalize_bonding_sell(
    event: BondingSell,
    *,
    token_address: str,
    counter_price_usd: Decimal,
    timestamp: datetime | None,
) -> SwapRecord | None:
    if event.tokens_in <= 0 or event.asset_out <= 0:
        return None
    return SwapRecord(
        token_address=token_address.lower(),
        pair_address=event.contract_address.lower(),
        trader=event.user.lower(),
        is_buy=False,
        token_amount=event.tokens_in,
        counter_amount=event.asset_out,
        price_usd=trade_price_usd(
            counter_amount=event.asset_out,
            token_amount=event.tokens_in,
            counter_price_usd=counter_price_usd,
        ),
        tx_hash=event.tx_hash.lower(),
        log_index=event.log_index,
        block_number=event.block_number,
        timestamp=timestamp,
        source=TradeSource.BONDING,
    )


def normalize_pair_swap(
    event: PairSwap,
    *,
    token_address: str,
    pair_order: PairTokenOrder,
    counter_price_usd: Decimal,
    timestamp: datetime | None,
) -> SwapRecord | None:
    """Map a pair ``Swap`` onto the tracked token.

    A buy is counter asset in and tracked token out; a sell is tracked token
    in and counter asset out. Anything else (zero legs, both directions at
    once, a pair that does not contain the token) is discarded.
    """
    slot = pair_order.slot_of(token_address)
    if slot is None:
        return None

    if slot == 0:
        token_in, token_out = event.amount0_in, event.amount0_out
        counter_in, counter_out = event.amount1_in, event.amount1_out
    else:
        token_in, token_out = event.amount1_in, event.amount1_out
        counter_in, counter_out = event.amount0_in, event.amount0_out

    is_buy = counter_in > 0 and token_out > 0
    is_sell = token_in > 0 and counter_out > 0
    if is_buy == is_sell:
        return None

    token_amount = token_out if is_buy else token_in
    counter_amount = counter_in if is_buy else counter_out
    return SwapRecord(
        token_address=token_address.lower(),
        pair_address=event.pair_address.lower(),
        trader=event.to.lower(),
        is_buy=is_buy,
        token_amount=token_amount,
        counter_amount=counter_amount,
        price_usd=trade_price_usd(
            counter_amount=counter_amount,
            token_amount=token_amount,
            counter_price_usd=counter_price_usd,
        ),
        tx_hash=event.tx_hash.lower(),
        log_index=event.log_index,
        block_number=event.block_number,
        timestamp=timestamp,
        source=TradeSource.DEX,
    )


def normalize_legacy_trade(
    trade: LegacyTrade,
    *,
    token_address: str,
    counter_price_usd: Decimal,
) -> SwapRecord | None:
    side = trade.side.lower()
    if side not in ("buy", "sell") or not trade.tx_hash:
        return None
    if trade.token_amount <= 0 or trade.counter_amount <= 0:
        return None
    return SwapRecord(
        token_address=token_address.lower(),
        pair_address=trade.contract_address.lower(),
        trader=trade.user.lower(),
        is_buy=side == "buy",
        token_amount=trade.token_amount,
        counter_amount=trade.counter_amount,
        price_usd=trade_price_usd(
            counter_amount=trade.counter_amount,
            token_amount=trade.token_amount,
            counter_price_usd=counter_price_usd,
        ),
        tx_hash=trade.tx_hash.lower(),
        log_index=trade.log_index,
        block_number=trade.block_number,
        timestamp=trade.timestamp,
        source=TradeSource.LEGACY,
    )


def normalize(
    event: TradeEvent,
    *,
    token_address: str,
    counter_price_usd: Decimal,
    timestamp: datetime | None = None,
    pair_order: PairTokenOrder | None = None,
) -> SwapRecord | None:
    """Normalize any trade variant into a canonical ``SwapRecord``.

    Args:
        event: One of the trade variants.
        token_address: The tracked token.
        counter_price_usd: USD price of one whole unit of the counter asset.
        timestamp: Block time of the event (ignored for legacy rows).
        pair_order: Token order of the pair; required for ``PairSwap``.

    Returns:
        The canonical record, or None when the event is not a valid trade of
        the tracked token.
    """
    if isinstance(event, BondingBuy):
        return normalize_bonding_buy(
            event, token_address=token_address, counter_price_usd=counter_price_usd, timestamp=timestamp
        )
    if isinstance(event, BondingSell):
        return normalize_bonding_sell(
            event, token_address=token_address, counter_price_usd=counter_price_usd, timestamp=timestamp
        )
    if isinstance(event, PairSwap):
        if pair_order is None:
            raise ValueError("pair_order is required to normalize a pair swap")
        return normalize_pair_swap(
            event,
            token_address=token_address,
            pair_order=pair_order,
            counter_price_usd=counter_price_usd,
            timestamp=timestamp,
        )
    if isinstance(event, LegacyTrade):
        return normalize_legacy_trade(event, token_address=token_address, counter_price_usd=counter_price_usd)
    raise TypeError(f"Unsupported trade event: {type(event).__name__}")
