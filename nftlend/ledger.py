"""
ledger.py - Double-Entry Asset Ledger

The Ledger holds every fungible and non-fungible balance the lending protocol
touches. It is the only module that mutates balances, so custody is always
auditable.

Key responsibilities:
    - Implements LedgerView for read-only access by transfer rules and adapters
    - Executes transactions atomically (all moves succeed or all fail)
    - Keeps the logical clock the protocol reads once per operation
    - Supports checkpoint()/rollback() so a multi-transfer protocol operation
      can be undone as a unit when any later step fails
    - Always validates and always logs
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any
import copy
from decimal import Decimal

from .core import (
    # Types
    Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState, BalanceMap,
    # Constants
    QUANTITY_EPSILON, SYSTEM_WALLET,
    # Exceptions
    LedgerError, TransferRuleViolation, UnitNotRegistered, WalletNotRegistered,
    # Helper functions
    _freeze_state,
)


class Ledger:
    """
    Double-entry ledger with full validation and an audit trail.

    Design Principles:
        - Always validates: balance limits, transfer rules and timestamps are
          checked for every transaction before anything is applied.
        - Always logs: every applied transaction is appended to
          transaction_log, which drives rollback() and replay().

    Thread Safety:
        Not thread-safe. The protocol's execution model is single-threaded.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(fungible_token("USDC", "USD Coin"))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")

        tx = build_transaction(ledger, [
            Move(Decimal("100"), "USDC", "alice", "bob", "USDC:transfer:1")
        ])
        result = ledger.execute(tx)
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print applied transactions and rejections (default: True)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._next_sequence: int = 0
        # unit -> {wallet -> quantity}
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        self.last_rejection: Optional[str] = None

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's metadata.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        state = self.units[unit_symbol].state
        return copy.deepcopy(state) if state else {}

    def get_positions(self, unit_symbol: str) -> Positions:
        """All non-zero positions for a unit, from the inverted index."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """Get all balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Sum of a unit's balances across all wallets, SYSTEM_WALLET included.

        Always zero for a conserved unit, since issuance debits SYSTEM_WALLET.
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def verify_double_entry(self) -> Dict[str, Any]:
        """
        Check that every unit's balances still sum to zero.

        Returns:
            Dict with keys:
            - 'valid': bool
            - 'supplies': {unit: total across wallets}
            - 'discrepancies': units whose total is not zero
        """
        supplies = {symbol: self.total_supply(symbol) for symbol in self.units}
        discrepancies = [
            {'unit': symbol, 'actual': total}
            for symbol, total in supplies.items()
            if abs(total) > self.POSITION_EPSILON
        ]
        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the logical clock. Time only moves forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            rule_str = f", rule={unit.transfer_rule.__name__}" if unit.transfer_rule else ""
            print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]{rule_str}")

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def _reject(self, reason: str) -> ExecuteResult:
        self.last_rejection = reason
        if self.verbose:
            print(f"REJECTED: {reason}")
        return ExecuteResult.REJECTED

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Validation covers unit and wallet registration, transfer rules,
        min/max balances and timestamps. Nothing is applied unless all of it
        passes. A repeated intent_id is reported as ALREADY_APPLIED.

        Returns:
            ExecuteResult.APPLIED, ALREADY_APPLIED or REJECTED. On REJECTED the
            reason is kept in last_rejection.
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        # Units minted by this transaction are registered for validation and
        # removed again if validation fails.
        newly_registered_units: List[str] = []
        for unit in pending.units_to_create:
            if unit.symbol not in self.units:
                self.units[unit.symbol] = unit
                newly_registered_units.append(unit.symbol)

        valid, reason = self._validate_pending(pending)
        if not valid:
            for sym in newly_registered_units:
                del self.units[sym]
            return self._reject(reason)

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        self._execute_moves(tx.moves)
        for sc in tx.state_changes:
            self._set_unit_state(sc.unit, sc.new_state)

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)
        self.last_rejection = None

        if self.verbose:
            print(repr(tx))
        return ExecuteResult.APPLIED

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate a pending transaction against every constraint.

        Returns:
            (True, "") on success, otherwise (False, reason).
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return False, f"unit not registered: {sc.unit}"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"

            unit = self.units[move.unit_symbol]
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return False, str(e)

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            current = self.balances[wallet][unit_sym]
            unit = self.units[unit_sym]
            proposed = unit.round(current + delta)
            if proposed < unit.min_balance:
                return False, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep the unit -> {wallet -> quantity} index in step with a balance."""
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _apply_move(self, wallet_id: str, unit_symbol: str, delta: Decimal) -> None:
        unit = self.units[unit_symbol]
        new_balance = unit.round(self.balances[wallet_id][unit_symbol] + delta)
        self.balances[wallet_id][unit_symbol] = new_balance
        self._update_position_index(wallet_id, unit_symbol, new_balance)

    def _execute_moves(self, moves) -> None:
        """Debit each move's source and credit its destination."""
        for move in moves:
            self._apply_move(move.source, move.unit_symbol, -move.quantity)
            self._apply_move(move.dest, move.unit_symbol, move.quantity)

    def _set_unit_state(self, unit_symbol: str, state: Any) -> None:
        # Unit is frozen, so a new instance carries the new state.
        new_state = copy.deepcopy(state if isinstance(state, dict) else {})
        self.units[unit_symbol] = replace(
            self.units[unit_symbol], _frozen_state=_freeze_state(new_state)
        )

    # ========================================================================
    # CHECKPOINT / ROLLBACK
    # ========================================================================

    def checkpoint(self) -> int:
        """
        Mark the current end of the transaction log.

        Returns:
            A token for rollback(): the number of logged transactions.
        """
        return len(self.transaction_log)

    def rollback(self, checkpoint: int) -> List[Transaction]:
        """
        Undo, in place, every transaction applied after a checkpoint.

        Transactions are unwound newest first: moves are reversed, unit state
        is restored from old_state, and units minted after the checkpoint are
        removed. Their intent ids are forgotten so the same intent can be
        executed again later.

        Args:
            checkpoint: Value previously returned by checkpoint()

        Returns:
            The transactions that were undone, oldest first.

        Raises:
            ValueError: If the checkpoint is ahead of the log
        """
        if checkpoint > len(self.transaction_log):
            raise ValueError(
                f"Checkpoint {checkpoint} is ahead of the log ({len(self.transaction_log)})"
            )

        undone = self.transaction_log[checkpoint:]
        for tx in reversed(undone):
            for move in tx.moves:
                if move.unit_symbol not in self.units:
                    raise LedgerError(f"Cannot unwind: unit {move.unit_symbol} not found")
                self._apply_move(move.source, move.unit_symbol, move.quantity)
                self._apply_move(move.dest, move.unit_symbol, -move.quantity)

            for sc in tx.state_changes:
                if sc.unit in self.units:
                    self._set_unit_state(sc.unit, sc.old_state)

            for unit in tx.units_to_create:
                self.units.pop(unit.symbol, None)
                for wallet in self.registered_wallets:
                    self.balances[wallet].pop(unit.symbol, None)
                self._positions_by_unit.pop(unit.symbol, None)

            self.seen_intent_ids.discard(tx.intent_id)

        del self.transaction_log[checkpoint:]
        self._next_sequence = checkpoint
        if self.verbose and undone:
            print(f"ROLLED BACK: {len(undone)} transaction(s) to checkpoint {checkpoint}")
        return undone

    def replay(self, from_tx: int = 0) -> Ledger:
        """
        Build a new ledger by re-executing the transaction log.

        Units minted inside logged transactions are recreated by
        those transactions; other units start from the state they had before
        their first logged change.

        Raises:
            LedgerError: If a logged transaction is rejected on replay
        """
        new_ledger = Ledger(
            name=f"{self.name}_replayed",
            initial_time=datetime(1970, 1, 1),
            verbose=self.verbose,
        )

        created_in_log = {
            unit.symbol
            for tx in self.transaction_log[from_tx:]
            for unit in tx.units_to_create
        }

        for symbol, unit in self.units.items():
            if symbol in created_in_log:
                continue
            initial_state = unit.state
            for tx in self.transaction_log[from_tx:]:
                first = next((sc for sc in tx.state_changes if sc.unit == symbol), None)
                if first is not None:
                    initial_state = first.old_state if isinstance(first.old_state, dict) else {}
                    break
            new_ledger.units[symbol] = replace(unit, _frozen_state=_freeze_state(initial_state))

        for wallet in self.registered_wallets:
            if wallet != SYSTEM_WALLET:
                new_ledger.register_wallet(wallet)

        for tx in self.transaction_log[from_tx:]:
            if tx.timestamp > new_ledger._current_time:
                new_ledger.advance_time(tx.timestamp)

            pending = PendingTransaction(
                moves=tx.moves,
                state_changes=tx.state_changes,
                origin=tx.origin,
                timestamp=tx.timestamp,
                units_to_create=tx.units_to_create,
            )
            result = new_ledger.execute(pending)
            if result == ExecuteResult.REJECTED:
                raise LedgerError(f"Replay failed at tx {tx.exec_id}: {new_ledger.last_rejection}")

        if self._current_time > new_ledger._current_time:
            new_ledger.advance_time(self._current_time)
        return new_ledger
