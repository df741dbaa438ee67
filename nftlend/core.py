"""
Core types and pure functions for the lending protocol's asset ledger.

This module provides the foundational data structures shared by every layer:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError, plus the LendingError taxonomy raised by the protocol
4. Type aliases: Positions, BalanceMap, UnitState
5. Transfer rules: pure validation functions for moves
6. Unit factories: fungible tokens and single non-fungible items

Functions here only ever read through a LedgerView; nothing in this module
mutates ledger state.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
import hashlib
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Amounts are whole base units held as Decimal. A wide global context keeps
# products such as principal * rate_bps * elapsed exact before flooring.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 78
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for minting. Exempt from balance validation.
SYSTEM_WALLET = "system"

UNIT_TYPE_FUNGIBLE = "FUNGIBLE"
UNIT_TYPE_NON_FUNGIBLE = "NON_FUNGIBLE"

# Quantities below this are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

# Separator between collection address and item id in a unit symbol.
NFT_SYMBOL_SEPARATOR = "#"


# ============================================================================
# TYPE ALIASES
# ============================================================================

# wallet_id -> quantity held, for one unit
Positions = Dict[str, Decimal]

# unit_symbol -> quantity held, for one wallet
BalanceMap = Dict[str, Decimal]

# Per-unit metadata (allowances, approvals, collection address, ...)
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Transfer rules and asset adapters accept a LedgerView to declare that they
    only read. The Ledger class implements it alongside its mutation methods;
    tests use FakeView, which has no mutation methods at all.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a unit in a wallet."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's metadata."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: validated and applied.
    ALREADY_APPLIED: the intent_id was seen before; nothing changed.
    REJECTED: failed validation; nothing changed.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    USER_ACTION = "user_action"           # Direct token/NFT call by an account
    SYSTEM = "system"                     # Minting and initial setup


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a move would cause a wallet balance to fall below the unit's minimum."""
    pass


class BalanceConstraintViolation(LedgerError):
    """Raised when a move would cause a wallet balance to violate the unit's min/max constraints."""
    pass


class TransferRuleViolation(LedgerError):
    """Raised when a move violates the unit's transfer rule."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on a unit that has not been registered."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered."""
    pass


class LendingError(LedgerError):
    """
    Base class for protocol precondition failures.

    Every LendingError aborts the whole operation: no balance, custody,
    offer, listing or pool change survives it.
    """
    pass


class NotOwner(LendingError):
    """Caller does not hold the asset they claim to list, accept against or move."""
    pass


class InvalidTerms(LendingError):
    """Zero, negative or fractional rate, duration or amount."""
    pass


class NotListed(LendingError):
    """The asset is not currently listed as eligible collateral."""
    pass


class InsufficientBalance(LendingError):
    """Caller lacks funds for principal, repayment or withdrawal."""
    pass


class InvalidState(LendingError):
    """The offer is unknown, closed, or in the wrong lifecycle state for the call."""
    pass


class Unauthorized(LendingError):
    """Caller is not the recorded party for an operation requiring that role."""
    pass


class InsufficientAllowance(Unauthorized):
    """A spender tried to move more fungible units than the owner approved."""
    pass


class ReentrancyDetected(LendingError):
    """A guarded operation was entered while another one was still running."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: USER_ACTION or SYSTEM
        source_id: Account or protocol address that caused the transaction
        unit_symbol: Unit the transaction is about (if applicable)
        event_type: Call identifier naming the operation (e.g., "USDC:approve:3")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Before/after snapshot of one unit's metadata.

    Keeping both sides lets the ledger apply the change forward and restore
    old_state when a checkpoint is rolled back.
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Return {field: (old, new)} for every field that differs."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        return {
            key: (old.get(key), new.get(key))
            for key in set(old) | set(new)
            if old.get(key) != new.get(key)
        }


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: Amount to transfer (finite, non-zero Decimal).
        unit_symbol: Unit being transferred (a token symbol or an NFT symbol).
        source: Wallet debited.
        dest: Wallet credited.
        contract_id: Identifier of the call that generated this move. Asset
            adapters make it unique per call so that two identical transfers
            are never collapsed by intent-based idempotency.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}->{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """Canonical string for a Decimal: Decimal("1.00") and Decimal("1") match."""
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Deterministic serialization of state values for hashing.

    Independent of dict insertion order and Decimal representation.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[UnitStateChange, ...],
    origin: TransactionOrigin,
    units_to_create: Tuple['Unit', ...] = ()
) -> str:
    """
    Content hash of a transaction's intent, used for idempotency.

    Depends only on the semantic content (moves, state changes, origin, units
    created), never on execution time.
    """
    sorted_moves = sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id)
    )

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.unit_symbol:
        content_parts.append(f"unit:{origin.unit_symbol}")
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")

    for unit in sorted(units_to_create, key=lambda u: u.symbol):
        content_parts.append(f"unit_create:{unit.symbol}|{unit.unit_type}")

    for m in sorted_moves:
        content_parts.append(
            f"move:{_normalize_decimal(m.quantity)}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}"
        )

    for sc in sorted(state_changes, key=lambda s: s.unit):
        content_parts.append(
            f"state_change:{sc.unit}|{_canonicalize(sc.old_state)}|{_canonicalize(sc.new_state)}"
        )

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction before execution - represents INTENT.

    Built by the asset adapters and handed to Ledger.execute(), which either
    applies every move and state change or none of them.

    Attributes:
        moves: Value transfers between wallets
        state_changes: Unit metadata changes (old and new state)
        origin: Who/what created this transaction and why
        timestamp: Ledger time when the transaction was built
        units_to_create: Units registered as part of this transaction (minting)
        intent_id: Content hash, auto-computed
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            computed_id = _compute_intent_id(
                self.moves, self.state_changes, self.origin, self.units_to_create
            )
            object.__setattr__(self, 'intent_id', computed_id)

    def is_empty(self) -> bool:
        """True if there are no moves, no state changes and no units to create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction stamped with the view's current time.

    State snapshots are deep-copied so later mutation of the caller's dicts
    cannot leak into the transaction.

    Example:
        tx = build_transaction(ledger, [
            Move(Decimal("100"), "USDC", "alice", "bob", "USDC:transfer:7")
        ])
        ledger.execute(tx)
    """
    import copy

    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.USER_ACTION,
            source_id="direct",
        )

    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Value transfers applied
        state_changes: Unit metadata changes applied
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was built
        intent_id: Content hash (from PendingTransaction)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Position in the ledger's log
        units_to_create: Units registered by this transaction
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        lines = [
            f"Transaction {self.exec_id}",
            f"  intent_id : {self.intent_id}",
            f"  origin    : {self.origin}",
            f"  executed  : {self.execution_time}",
        ]
        for unit in self.units_to_create:
            lines.append(f"  + unit {unit.symbol} ({unit.name})")
        for i, move in enumerate(self.moves):
            lines.append(f"  [{i}] {move.quantity} {move.unit_symbol}: {move.source} -> {move.dest}")
        for sc in self.state_changes:
            for field_name, (old_val, new_val) in sc.changed_fields().items():
                lines.append(f"  {sc.unit}.{field_name}: {old_val!r} -> {new_val!r}")
        return "\n".join(lines)


# Transfer rules validate moves and raise TransferRuleViolation if invalid.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a state dict into a sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Inverse of _freeze_state."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a transferable unit in the ledger.

    A fungible token is one unit held in arbitrary quantities. Each
    non-fungible item is its own unit with a total supply of exactly one.

    Attributes:
        symbol: Unique identifier ("USDC", "punks#7").
        name: Human-readable name.
        unit_type: UNIT_TYPE_FUNGIBLE or UNIT_TYPE_NON_FUNGIBLE.
        min_balance: Minimum allowed balance in any non-system wallet.
        max_balance: Maximum allowed balance in any non-system wallet.
        decimal_places: Rounding precision for balances (None = no rounding).
        transfer_rule: Optional function validating moves of this unit.
        _frozen_state: Frozen metadata (allowances, approvals, ...).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """A fresh dict of the unit's metadata on every access."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal) -> Decimal:
        """Quantize to decimal_places, truncating toward zero. No-op if unset."""
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        return value.quantize(quantizer, rounding=ROUND_DOWN)


# ============================================================================
# TRANSFER RULES
# ============================================================================

def non_fungible_transfer_rule(view: LedgerView, move: Move) -> None:
    """
    Enforce that a non-fungible item always moves whole and from its holder.

    Raises:
        TransferRuleViolation: If the quantity is not exactly one, or the
                               source does not currently hold the item.
    """
    if move.quantity != Decimal("1"):
        raise TransferRuleViolation(
            f"Non-fungible {move.unit_symbol} must move as a single item, got {move.quantity}"
        )
    holders = {w for w, qty in view.get_positions(move.unit_symbol).items() if qty > 0}
    if holders and move.source not in holders:
        raise TransferRuleViolation(
            f"Non-fungible {move.unit_symbol}: {move.source} is not the holder"
        )


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def nft_symbol(collection: str, asset_id: int) -> str:
    """Ledger symbol of one item in a collection, e.g. nft_symbol("punks", 7) == "punks#7"."""
    return f"{collection}{NFT_SYMBOL_SEPARATOR}{asset_id}"


def fungible_token(symbol: str, name: str) -> Unit:
    """
    Create a fungible token counted in whole base units.

    Balances may never go negative (except in SYSTEM_WALLET, which issues
    supply). Allowances live in the unit state as {owner: {spender: amount}}.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_FUNGIBLE,
        decimal_places=0,
        min_balance=Decimal("0"),
        _frozen_state=_freeze_state({'allowances': {}}),
    )


def non_fungible_item(collection: str, asset_id: int, name: Optional[str] = None) -> Unit:
    """
    Create the unit for a single non-fungible item.

    Args:
        collection: Address of the collection contract.
        asset_id: Item identifier within the collection.
        name: Optional display name (defaults to the symbol).

    Returns:
        A unit whose balance in any wallet is either 0 or 1.
    """
    symbol = nft_symbol(collection, asset_id)
    return Unit(
        symbol=symbol,
        name=name or symbol,
        unit_type=UNIT_TYPE_NON_FUNGIBLE,
        decimal_places=0,
        min_balance=Decimal("0"),
        max_balance=Decimal("1"),
        transfer_rule=non_fungible_transfer_rule,
        _frozen_state=_freeze_state({
            'collection': collection,
            'asset_id': asset_id,
            'approved': None,
        }),
    )


def to_amount(value: Any) -> Decimal:
    """
    Convert an int, str or Decimal to a Decimal count of base units.

    Raises:
        ValueError: If the value is not finite or not a whole number.
    """
    if isinstance(value, float):
        value = Decimal(str(value))
    elif not isinstance(value, Decimal):
        value = Decimal(value)
    if not value.is_finite():
        raise ValueError(f"Amount must be finite, got {value}")
    if value != value.to_integral_value():
        raise ValueError(f"Amount must be a whole number of base units, got {value}")
    return value
