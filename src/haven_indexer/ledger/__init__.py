"""Pure ledger computations: balances, trade normalization and trading metrics."""

from haven_indexer.ledger.balances import (
    ZERO_ADDRESS,
    BalanceLedger,
    Holder,
    HolderStats,
    compute_holder_stats,
    excluded_addresses,
    percent_of_supply,
)
from haven_indexer.ledger.normalizer import (
    BondingBuy,
    BondingSell,
    LegacyTrade,
    PairSwap,
    PairTokenOrder,
    SwapRecord,
    TradeEvent,
    TradeSource,
    normalize,
)

__all__ = [
    "ZERO_ADDRESS",
    "BalanceLedger",
    "BondingBuy",
    "BondingSell",
    "Holder",
    "HolderStats",
    "LegacyTrade",
    "PairSwap",
    "PairTokenOrder",
    "SwapRecord",
    "TradeEvent",
    "TradeSource",
    "compute_holder_stats",
    "excluded_addresses",
    "normalize",
    "percent_of_supply",
]
