"""Holder risk detection."""

from haven_indexer.detector.wallets import (
    WalletClassification,
    WalletClassifier,
    WalletFlagUpdate,
    build_buyer_set,
    find_insiders,
    find_snipers,
)

__all__ = [
    "WalletClassification",
    "WalletClassifier",
    "WalletFlagUpdate",
    "build_buyer_set",
    "find_insiders",
    "find_snipers",
]
