"""Wallet classification for token holders.

Labels holders of a token as:
- phishing: holds a positive balance but never bought (only received transfers)
- sniper: bought within the first ``sniper_window_blocks`` blocks after the
  token's first observed transfer
- insider: flagged in the global registry for holding two or more tokens
  created by the same creator

Percentages follow the holder rules of the balance ledger: the token
contract, its bonding contract and its pair are never holders, and the full
total supply is the denominator.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from haven_indexer.ledger.balances import HolderStats, percent_of_supply

logger = logging.getLogger(__name__)

DEFAULT_SNIPER_WINDOW_BLOCKS = 10
MIN_INSIDER_TOKENS = 2


class BlockTransfer(Protocol):
    from_address: str
    to_address: str
    block_number: int


class BuyRecord(Protocol):
    trader: str
    is_buy: bool


@dataclass(frozen=True)
class WalletClassification:
    """Classification of one token's current holders."""

    buyers: frozenset[str]
    phishing: frozenset[str]
    snipers: frozenset[str]
    insiders: frozenset[str]
    phishing_balance: int
    sniper_balance: int
    insider_balance: int
    phishing_pct: int
    snipers_pct: int
    insiders_pct: int

    @classmethod
    def empty(cls) -> WalletClassification:
        return cls(
            buyers=frozenset(),
            phishing=frozenset(),
            snipers=frozenset(),
            insiders=frozenset(),
            phishing_balance=0,
            sniper_balance=0,
            insider_balance=0,
            phishing_pct=0,
            snipers_pct=0,
            insiders_pct=0,
        )


@dataclass(frozen=True)
class WalletFlagUpdate:
    """Additive update for the global wallet flag registry."""

    wallet_address: str
    is_phishing: bool = False
    is_sniper: bool = False
    is_insider: bool = False
    sniper_score: int = 0
    insider_connections: int = 0
    phishing_reports: int = 0
    notes: str | None = None


def build_buyer_set(
    *,
    transfers: Iterable[BlockTransfer],
    swaps: Iterable[BuyRecord],
    sale_addresses: Iterable[str],
) -> set[str]:
    """Addresses that purchased the token.

    A purchase is either a transfer out of the token/bonding contract or a
    normalized swap with ``is_buy`` set.
    """
    sellers = {a.lower() for a in sale_addresses if a}
    buyers = {t.to_address.lower() for t in transfers if t.from_address.lower() in sellers}
    buyers.update(s.trader.lower() for s in swaps if s.is_buy)
    return buyers


def find_snipers(
    transfers: Iterable[BlockTransfer],
    buyers: set[str],
    *,
    window_blocks: int = DEFAULT_SNIPER_WINDOW_BLOCKS,
) -> set[str]:
    """Buyers that received tokens within ``window_blocks`` of the first transfer (inclusive)."""
    ordered = list(transfers)
    if not ordered:
        return set()
    window_end = min(t.block_number for t in ordered) + window_blocks
    return {
        t.to_address.lower()
        for t in ordered
        if t.block_number <= window_end and t.to_address.lower() in buyers
    }


def find_insiders(
    holders_by_token: Mapping[str, Iterable[str]],
    creator_by_token: Mapping[str, str | None],
) -> dict[str, int]:
    """Wallets holding at least two tokens of the same creator.

    Args:
        holders_by_token: Current holder addresses per token.
        creator_by_token: Creator address per token.

    Returns:
        Wallet address mapped to the largest number of same-creator tokens it holds.
    """
    tokens_by_creator: dict[str, set[str]] = defaultdict(set)
    for token, creator in creator_by_token.items():
        if creator:
            tokens_by_creator[creator.lower()].add(token.lower())

    normalized_holders = {token.lower(): {h.lower() for h in holders} for token, holders in holders_by_token.items()}

    connections: dict[str, int] = {}
    for creator, tokens in tokens_by_creator.items():
        if len(tokens) < MIN_INSIDER_TOKENS:
            continue
        held: dict[str, int] = defaultdict(int)
        for token in tokens:
            for wallet in normalized_holders.get(token, ()):
                held[wallet] += 1
        for wallet, count in held.items():
            if count >= MIN_INSIDER_TOKENS and wallet != creator:
                connections[wallet] = max(connections.get(wallet, 0), count)
    return connections


class WalletClassifier:
    """Classifies a token's holders from its ledger, buys and the flag registry."""

    def __init__(self, *, sniper_window_blocks: int = DEFAULT_SNIPER_WINDOW_BLOCKS) -> None:
        if sniper_window_blocks < 0:
            raise ValueError("sniper_window_blocks must be >= 0")
        self._sniper_window_blocks = sniper_window_blocks

    def classify(
        self,
        *,
        holder_stats: HolderStats,
        transfers: Iterable[BlockTransfer],
        swaps: Iterable[BuyRecord],
        sale_addresses: Iterable[str],
        known_insiders: Iterable[str] = (),
    ) -> WalletClassification:
        transfer_list = list(transfers)
        buyers = build_buyer_set(transfers=transfer_list, swaps=swaps, sale_addresses=sale_addresses)
        sniper_candidates = find_snipers(transfer_list, buyers, window_blocks=self._sniper_window_blocks)
        insider_registry = {a.lower() for a in known_insiders}

        phishing: set[str] = set()
        snipers: set[str] = set()
        insiders: set[str] = set()
        phishing_balance = sniper_balance = insider_balance = 0
        for holder in holder_stats.holders:
            if holder.address not in buyers:
                phishing.add(holder.address)
                phishing_balance += holder.balance
            if holder.address in sniper_candidates:
                snipers.add(holder.address)
                sniper_balance += holder.balance
            if holder.address in insider_registry:
                insiders.add(holder.address)
                insider_balance += holder.balance

        supply = holder_stats.total_supply
        return WalletClassification(
            buyers=frozenset(buyers),
            phishing=frozenset(phishing),
            snipers=frozenset(snipers),
            insiders=frozenset(insiders),
            phishing_balance=phishing_balance,
            sniper_balance=sniper_balance,
            insider_balance=insider_balance,
            phishing_pct=percent_of_supply(phishing_balance, supply),
            snipers_pct=percent_of_supply(sniper_balance, supply),
            insiders_pct=percent_of_supply(insider_balance, supply),
        )

    @staticmethod
    def flag_updates(classification: WalletClassification) -> list[WalletFlagUpdate]:
        """Registry updates for the phishing and sniper holders of one token."""
        updates: list[WalletFlagUpdate] = []
        for wallet in sorted(classification.phishing):
            updates.append(
                WalletFlagUpdate(
                    wallet_address=wallet,
                    is_phishing=True,
                    phishing_reports=1,
                    notes="Holds tokens without buy transaction (received via transfer)",
                )
            )
        for wallet in sorted(classification.snipers):
            updates.append(WalletFlagUpdate(wallet_address=wallet, is_sniper=True, sniper_score=1))
        return updates

    @staticmethod
    def insider_updates(connections: Mapping[str, int]) -> list[WalletFlagUpdate]:
        return [
            WalletFlagUpdate(
                wallet_address=wallet,
                is_insider=True,
                insider_connections=count,
                notes="Holds multiple tokens from same creator",
            )
            for wallet, count in sorted(connections.items())
        ]
