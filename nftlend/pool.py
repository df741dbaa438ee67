"""
pool.py - Liquidity Pool Ledger

Per-provider deposit balances, the depositor roster and pro-rata interest
shares. This module only keeps the books; LendingProtocol moves the funds.

Invariants:
    total_deposits == sum(deposits.values())
    set(depositors) == {p for p, bal in deposits.items() if bal > 0}, no duplicates

Interest shares are floored:

    share(p) = floor(deposits[p] * interest / total_deposits)

The remainder (interest minus the sum of shares) is not distributed. It stays
with the pool and is counted in retained_dust.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, List

from .core import InsufficientBalance


class LiquidityPool:
    """Deposit book for one fungible asset."""

    def __init__(self):
        self.total_deposits: Decimal = Decimal("0")
        self.total_interest_paid: Decimal = Decimal("0")
        self.retained_dust: Decimal = Decimal("0")
        self._deposits: Dict[str, Decimal] = {}
        # Roster order is arbitrary: removal swaps the last entry into the gap.
        self._depositors: List[str] = []
        self._roster_index: Dict[str, int] = {}

    def balance_of(self, provider: str) -> Decimal:
        return self._deposits.get(provider, Decimal("0"))

    @property
    def depositors(self) -> List[str]:
        return list(self._depositors)

    @property
    def deposits(self) -> Dict[str, Decimal]:
        return {p: self._deposits[p] for p in self._depositors}

    def credit(self, provider: str, amount: Decimal) -> Decimal:
        """
        Add to a provider's balance, joining the roster on zero -> positive.

        Returns:
            The provider's new balance.
        """
        if amount <= 0:
            raise ValueError(f"Deposit amount must be positive, got {amount}")
        previous = self.balance_of(provider)
        if previous == 0:
            self._roster_index[provider] = len(self._depositors)
            self._depositors.append(provider)
        self._deposits[provider] = previous + amount
        self.total_deposits += amount
        return self._deposits[provider]

    def debit(self, provider: str, amount: Decimal) -> Decimal:
        """
        Subtract from a provider's balance, leaving the roster at zero.

        Returns:
            The provider's new balance.

        Raises:
            InsufficientBalance: If the provider holds less than amount
        """
        if amount <= 0:
            raise ValueError(f"Withdrawal amount must be positive, got {amount}")
        previous = self.balance_of(provider)
        if previous < amount:
            raise InsufficientBalance(
                f"{provider} has {previous} deposited, cannot withdraw {amount}"
            )
        remaining = previous - amount
        self.total_deposits -= amount
        if remaining == 0:
            del self._deposits[provider]
            self._remove_from_roster(provider)
        else:
            self._deposits[provider] = remaining
        return remaining

    def _remove_from_roster(self, provider: str) -> None:
        position = self._roster_index.pop(provider)
        last = self._depositors.pop()
        if last != provider:
            self._depositors[position] = last
            self._roster_index[last] = position

    def interest_shares(self, interest: Decimal) -> Dict[str, Decimal]:
        """
        Floored pro-rata share of `interest` for every depositor.

        Returns an empty dict when nothing is deposited.
        """
        if self.total_deposits == 0:
            return {}
        return {
            provider: (self._deposits[provider] * interest) // self.total_deposits
            for provider in sorted(self._depositors)
        }

    def record_distribution(self, interest: Decimal, paid: Decimal) -> Decimal:
        """
        Book a completed distribution.

        Returns:
            The dust retained from this distribution.
        """
        dust = interest - paid
        self.total_interest_paid += paid
        self.retained_dust += dust
        return dust
