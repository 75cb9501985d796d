"""Balance ledger built from ERC-20 Transfer events.

The ledger folds transfers into a signed balance per address using plain
Python integers (raw amounts exceed 2**53). The zero address is the mint
source and burn sink, so it never gets an entry. A negative balance means
transfers are missing from the input; it is reported, never clamped.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

TOP_HOLDERS_COUNT = 10


class TransferLike(Protocol):
    from_address: str
    to_address: str
    amount: int


@dataclass(frozen=True)
class Holder:
    address: str
    balance: int


def percent_of_supply(amount: int, total_supply: int) -> int:
    """Whole-number percentage of total supply.

    Computed on basis points with integer division, then rounded half up:
    ``round_half_up((amount * 10000 // supply) / 100)``. Returns 0 when the
    supply is unknown.
    """
    if total_supply <= 0:
        return 0
    basis_points = amount * 10_000 // total_supply
    return int((Decimal(basis_points) / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def excluded_addresses(*addresses: str | None) -> frozenset[str]:
    """Lower-cased set of non-holder addresses (token contract, bonding contract, pair)."""
    return frozenset(a.lower() for a in addresses if a)


class BalanceLedger:
    """Signed-integer balance map folded from transfers."""

    def __init__(self) -> None:
        self._balances: dict[str, int] = {}
        self._minted = 0
        self._burned = 0
        self._transfer_count = 0

    @classmethod
    def from_transfers(cls, transfers: Iterable[TransferLike]) -> BalanceLedger:
        ledger = cls()
        ledger.apply_all(transfers)
        return ledger

    @classmethod
    def from_balances(cls, balances: Mapping[str, int]) -> BalanceLedger:
        """Ledger seeded with already materialized balances."""
        ledger = cls()
        ledger._balances = {address.lower(): int(balance) for address, balance in balances.items()}
        return ledger

    def apply(self, from_address: str, to_address: str, amount: int) -> None:
        sender = from_address.lower()
        recipient = to_address.lower()
        if sender == ZERO_ADDRESS:
            self._minted += amount
        else:
            self._balances[sender] = self._balances.get(sender, 0) - amount
        if recipient == ZERO_ADDRESS:
            self._burned += amount
        else:
            self._balances[recipient] = self._balances.get(recipient, 0) + amount
        self._transfer_count += 1

    def apply_all(self, transfers: Iterable[TransferLike]) -> None:
        for transfer in transfers:
            self.apply(transfer.from_address, transfer.to_address, int(transfer.amount))

    def balance_of(self, address: str | None) -> int:
        if not address:
            return 0
        return self._balances.get(address.lower(), 0)

    @property
    def balances(self) -> dict[str, int]:
        return dict(self._balances)

    @property
    def minted(self) -> int:
        return self._minted

    @property
    def burned(self) -> int:
        return self._burned

    @property
    def transfer_count(self) -> int:
        return self._transfer_count

    @property
    def negative_balances(self) -> dict[str, int]:
        return {address: balance for address, balance in self._balances.items() if balance < 0}

    def holders(self, *, exclude: Iterable[str] = ()) -> list[Holder]:
        """Addresses with a positive balance, largest first.

        Ties keep first-seen order (``sorted`` is stable).
        """
        skip = {a.lower() for a in exclude}
        positive = [
            Holder(address=address, balance=balance)
            for address, balance in self._balances.items()
            if balance > 0 and address not in skip
        ]
        return sorted(positive, key=lambda h: h.balance, reverse=True)


@dataclass(frozen=True)
class HolderStats:
    """Holder list and supply concentration for one token."""

    total_supply: int
    holders: list[Holder]
    top10_balance: int
    top10_pct: int
    dev_balance: int
    dev_pct: int
    negative_balances: dict[str, int] = field(default_factory=dict)

    @property
    def holders_count(self) -> int:
        return len(self.holders)

    def balance_map(self) -> dict[str, int]:
        return {h.address: h.balance for h in self.holders}


def compute_holder_stats(
    ledger: BalanceLedger,
    *,
    total_supply: int,
    token_address: str,
    pair_address: str | None = None,
    bonding_address: str | None = None,
    creator_address: str | None = None,
) -> HolderStats:
    """Derive holder list and concentration metrics.

    Holders exclude the token contract, its bonding contract and its pair;
    percentages always use the full total supply as the denominator. The
    creator's balance is read before exclusion since the creator is a normal
    holder.
    """
    exclude = excluded_addresses(token_address, pair_address, bonding_address)
    holders = ledger.holders(exclude=exclude)
    top10_balance = sum(h.balance for h in holders[:TOP_HOLDERS_COUNT])
    dev_balance = max(ledger.balance_of(creator_address), 0)
    return HolderStats(
        total_supply=total_supply,
        holders=holders,
        top10_balance=top10_balance,
        top10_pct=percent_of_supply(top10_balance, total_supply),
        dev_balance=dev_balance,
        dev_pct=percent_of_supply(dev_balance, total_supply),
        negative_balances=ledger.negative_balances,
    )
