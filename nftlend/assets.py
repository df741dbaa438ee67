"""
assets.py - Fungible and Non-Fungible Asset Capabilities

The lending protocol never touches balances directly. It talks to two
capability sets:

    FungibleAsset     balance_of, transfer, transfer_from
    NonFungibleAsset  owner_of, transfer_from, approve

Because accounts are plain strings rather than message senders, every
mutating call names its caller explicitly.

LedgerToken and LedgerNFTCollection implement the capability sets on top of a
Ledger. Each call becomes one PendingTransaction (moves plus any allowance or
approval change), so it either fully applies or raises without effect, and a
protocol operation built from several calls can be rolled back as a whole
through Ledger.checkpoint()/rollback().
"""

from __future__ import annotations
from decimal import Decimal
from itertools import count
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .core import (
    Move, PendingTransaction, UnitStateChange, TransactionOrigin, OriginType,
    ExecuteResult, LedgerError, UnitNotRegistered,
    NotOwner, Unauthorized, InsufficientBalance, InsufficientAllowance,
    SYSTEM_WALLET,
    build_transaction, fungible_token, non_fungible_item, nft_symbol, to_amount,
)
from .ledger import Ledger


# ============================================================================
# CAPABILITY SETS
# ============================================================================

@runtime_checkable
class FungibleAsset(Protocol):
    """Capability set the protocol needs from a fungible asset ledger."""

    symbol: str

    def balance_of(self, account: str) -> Decimal:
        ...

    def transfer(self, caller: str, to: str, amount: Decimal) -> bool:
        ...

    def transfer_from(self, caller: str, owner: str, to: str, amount: Decimal) -> bool:
        ...


@runtime_checkable
class NonFungibleAsset(Protocol):
    """Capability set the protocol needs from a non-fungible asset registry."""

    address: str

    def owner_of(self, asset_id: int) -> Optional[str]:
        ...

    def transfer_from(self, caller: str, owner: str, to: str, asset_id: int) -> None:
        ...

    def approve(self, caller: str, operator: Optional[str], asset_id: int) -> None:
        ...


# ============================================================================
# SHARED LEDGER PLUMBING
# ============================================================================

class _LedgerBacked:
    """Common plumbing for adapters that record every call on a Ledger."""

    def __init__(self, ledger: Ledger, address: str):
        self.ledger = ledger
        self.address = address
        self._nonce = count()

    def _contract_id(self, action: str) -> str:
        # Unique per call so two identical transfers keep distinct intent ids.
        return f"{self.address}:{action}:{next(self._nonce)}"

    def _ensure_wallet(self, account: str) -> None:
        if not self.ledger.is_registered(account):
            self.ledger.register_wallet(account)

    def _origin(self, caller: str, unit_symbol: str, action: str) -> TransactionOrigin:
        # The call id keeps repeated approvals with equal before/after state distinct.
        origin_type = OriginType.SYSTEM if caller == SYSTEM_WALLET else OriginType.USER_ACTION
        return TransactionOrigin(origin_type, caller, unit_symbol, self._contract_id(action))

    def _submit(
        self,
        caller: str,
        unit_symbol: str,
        action: str,
        moves: List[Move],
        state_changes: Optional[List[UnitStateChange]] = None,
        units_to_create=None,
    ) -> None:
        pending: PendingTransaction = build_transaction(
            self.ledger,
            moves,
            state_changes,
            origin=self._origin(caller, unit_symbol, action),
            units_to_create=units_to_create,
        )
        result = self.ledger.execute(pending)
        if result != ExecuteResult.APPLIED:
            raise LedgerError(
                f"{action} on {unit_symbol} by {caller} {result.value}: {self.ledger.last_rejection}"
            )


# ============================================================================
# FUNGIBLE TOKEN
# ============================================================================

class LedgerToken(_LedgerBacked):
    """
    Fungible token whose balances live in a Ledger.

    Amounts are whole base units. Allowances are kept in the token unit's
    state as {owner: {spender: amount}} and change in the same transaction as
    the transfer they authorize.

    Example:
        usdc = LedgerToken(ledger, "USDC", "USD Coin")
        usdc.mint("alice", 1_000)
        usdc.approve("alice", "protocol", 500)
        usdc.transfer_from("protocol", "alice", "protocol", 500)
    """

    def __init__(self, ledger: Ledger, symbol: str, name: Optional[str] = None):
        super().__init__(ledger, symbol)
        self.symbol = symbol
        if symbol not in ledger.units:
            ledger.register_unit(fungible_token(symbol, name or symbol))

    def balance_of(self, account: str) -> Decimal:
        if not self.ledger.is_registered(account):
            return Decimal("0")
        return self.ledger.get_balance(account, self.symbol)

    def allowance(self, owner: str, spender: str) -> Decimal:
        allowances = self.ledger.get_unit_state(self.symbol).get('allowances', {})
        return allowances.get(owner, {}).get(spender, Decimal("0"))

    def total_issued(self) -> Decimal:
        """Units minted so far (the negated SYSTEM_WALLET balance)."""
        return -self.ledger.get_balance(SYSTEM_WALLET, self.symbol)

    def approve(self, owner: str, spender: str, amount: Any) -> bool:
        """Set (not add to) the amount spender may move out of owner's balance."""
        amount = to_amount(amount)
        if amount < 0:
            raise ValueError(f"Allowance cannot be negative, got {amount}")
        self._ensure_wallet(owner)
        old_state = self.ledger.get_unit_state(self.symbol)
        new_state = dict(old_state)
        allowances = {k: dict(v) for k, v in old_state.get('allowances', {}).items()}
        allowances.setdefault(owner, {})[spender] = amount
        new_state['allowances'] = allowances
        self._submit(
            owner, self.symbol, "approve", [],
            [UnitStateChange(self.symbol, old_state, new_state)],
        )
        return True

    def mint(self, to: str, amount: Any) -> None:
        """Issue new units to an account out of SYSTEM_WALLET."""
        amount = to_amount(amount)
        if amount <= 0:
            raise ValueError(f"Mint amount must be positive, got {amount}")
        self._ensure_wallet(to)
        self._submit(SYSTEM_WALLET, self.symbol, "mint", [
            Move(amount, self.symbol, SYSTEM_WALLET, to, self._contract_id("mint"))
        ])

    def transfer(self, caller: str, to: str, amount: Any) -> bool:
        """
        Move amount from caller to another account.

        Raises:
            InsufficientBalance: If caller holds less than amount
        """
        amount = to_amount(amount)
        if amount < 0:
            raise ValueError(f"Transfer amount cannot be negative, got {amount}")
        if amount == 0 or caller == to:
            return True
        balance = self.balance_of(caller)
        if balance < amount:
            raise InsufficientBalance(
                f"{caller} holds {balance} {self.symbol}, needs {amount}"
            )
        self._ensure_wallet(to)
        self._submit(caller, self.symbol, "transfer", [
            Move(amount, self.symbol, caller, to, self._contract_id("transfer"))
        ])
        return True

    def transfer_from(self, caller: str, owner: str, to: str, amount: Any) -> bool:
        """
        Move amount out of owner's balance on caller's behalf.

        A caller moving its own funds needs no allowance. Otherwise the
        allowance is reduced in the same transaction as the move.

        Raises:
            InsufficientAllowance: If owner approved caller for less than amount
            InsufficientBalance: If owner holds less than amount
        """
        amount = to_amount(amount)
        if amount < 0:
            raise ValueError(f"Transfer amount cannot be negative, got {amount}")
        if amount == 0:
            return True

        state_changes: List[UnitStateChange] = []
        if caller != owner:
            allowed = self.allowance(owner, caller)
            if allowed < amount:
                raise InsufficientAllowance(
                    f"{caller} may move {allowed} {self.symbol} for {owner}, needs {amount}"
                )
            old_state = self.ledger.get_unit_state(self.symbol)
            new_state = dict(old_state)
            allowances = {k: dict(v) for k, v in old_state.get('allowances', {}).items()}
            allowances[owner][caller] = allowed - amount
            new_state['allowances'] = allowances
            state_changes.append(UnitStateChange(self.symbol, old_state, new_state))

        balance = self.balance_of(owner)
        if balance < amount:
            raise InsufficientBalance(
                f"{owner} holds {balance} {self.symbol}, needs {amount}"
            )
        if owner == to:
            if state_changes:
                self._submit(caller, self.symbol, "transfer_from", [], state_changes)
            return True

        self._ensure_wallet(to)
        self._submit(caller, self.symbol, "transfer_from", [
            Move(amount, self.symbol, owner, to, self._contract_id("transfer_from"))
        ], state_changes)
        return True


# ============================================================================
# NON-FUNGIBLE COLLECTION
# ============================================================================

class LedgerNFTCollection(_LedgerBacked):
    """
    Non-fungible collection whose items are single-supply Ledger units.

    Item `7` of collection `punks` is the unit "punks#7"; its owner is the only
    wallet with a positive balance. Single-item approvals live in the item's
    unit state and are cleared by every transfer.

    Example:
        punks = LedgerNFTCollection(ledger, "punks")
        punks.mint("alice", 7)
        punks.approve("alice", "protocol", 7)
        punks.transfer_from("protocol", "alice", "protocol", 7)
    """

    def __init__(self, ledger: Ledger, address: str, name: Optional[str] = None):
        super().__init__(ledger, address)
        self.name = name or address

    def symbol_of(self, asset_id: int) -> str:
        return nft_symbol(self.address, asset_id)

    def exists(self, asset_id: int) -> bool:
        return self.symbol_of(asset_id) in self.ledger.units

    def owner_of(self, asset_id: int) -> Optional[str]:
        """Current holder of an item, or None if it was never minted."""
        holders = [
            wallet for wallet, qty in self.ledger.get_positions(self.symbol_of(asset_id)).items()
            if qty > 0
        ]
        return holders[0] if holders else None

    def get_approved(self, asset_id: int) -> Optional[str]:
        return self._item_state(asset_id).get('approved')

    def _item_state(self, asset_id: int) -> Dict[str, Any]:
        symbol = self.symbol_of(asset_id)
        if symbol not in self.ledger.units:
            raise UnitNotRegistered(f"{symbol} has not been minted")
        return self.ledger.get_unit_state(symbol)

    def mint(self, to: str, asset_id: int) -> None:
        """
        Create an item and hand it to an account.

        Raises:
            ValueError: If the item already exists
        """
        if self.exists(asset_id):
            raise ValueError(f"{self.symbol_of(asset_id)} already minted")
        self._ensure_wallet(to)
        item = non_fungible_item(self.address, asset_id, f"{self.name} #{asset_id}")
        self._submit(
            SYSTEM_WALLET, item.symbol, "mint",
            [Move(Decimal("1"), item.symbol, SYSTEM_WALLET, to, self._contract_id("mint"))],
            units_to_create=(item,),
        )

    def approve(self, caller: str, operator: Optional[str], asset_id: int) -> None:
        """
        Let operator move one item on the owner's behalf (None clears it).

        Raises:
            NotOwner: If caller does not hold the item
        """
        if self.owner_of(asset_id) != caller:
            raise NotOwner(f"{caller} does not own {self.symbol_of(asset_id)}")
        old_state = self._item_state(asset_id)
        new_state = {**old_state, 'approved': operator}
        symbol = self.symbol_of(asset_id)
        self._submit(caller, symbol, "approve", [], [UnitStateChange(symbol, old_state, new_state)])

    def transfer_from(self, caller: str, owner: str, to: str, asset_id: int) -> None:
        """
        Move an item from owner to another account.

        Raises:
            NotOwner: If owner does not hold the item
            Unauthorized: If caller is neither the owner nor its approved operator
        """
        symbol = self.symbol_of(asset_id)
        if self.owner_of(asset_id) != owner:
            raise NotOwner(f"{owner} does not own {symbol}")
        old_state = self._item_state(asset_id)
        if caller != owner and old_state.get('approved') != caller:
            raise Unauthorized(f"{caller} is not approved to move {symbol}")
        if owner == to:
            return
        self._ensure_wallet(to)
        new_state = {**old_state, 'approved': None}
        self._submit(
            caller, symbol, "transfer_from",
            [Move(Decimal("1"), symbol, owner, to, self._contract_id("transfer_from"))],
            [UnitStateChange(symbol, old_state, new_state)],
        )
