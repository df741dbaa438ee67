"""
test_core_types.py - Unit tests for core data structures

Tests:
- Move: creation, validation, immutability
- PendingTransaction: intent ids, snapshot isolation
- Unit: rounding, factories
- non_fungible_transfer_rule
- to_amount
- Error hierarchy
"""

import pytest
from dataclasses import FrozenInstanceError
from datetime import datetime
from decimal import Decimal

from nftlend import (
    Move, Unit, UnitStateChange, TransactionOrigin, OriginType,
    LedgerError, LendingError, NotOwner, InvalidTerms, NotListed,
    InsufficientBalance, InvalidState, Unauthorized, InsufficientAllowance,
    ReentrancyDetected, TransferRuleViolation,
    UNIT_TYPE_FUNGIBLE, UNIT_TYPE_NON_FUNGIBLE, SYSTEM_WALLET,
    build_transaction, fungible_token, non_fungible_item, non_fungible_transfer_rule,
    nft_symbol, to_amount,
)

from tests.fake_view import FakeView


def _test_origin() -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id="test",
    )


class TestMoveCreation:
    """Tests for Move creation and validation."""

    def test_create_valid_move(self):
        move = Move(Decimal("100"), "USDC", "alice", "bob", "tx_001")
        assert move.source == "alice"
        assert move.dest == "bob"
        assert move.unit_symbol == "USDC"
        assert move.quantity == Decimal("100")
        assert move.contract_id == "tx_001"

    def test_move_is_immutable(self):
        move = Move(Decimal("1"), "USDC", "alice", "bob", "tx_001")
        with pytest.raises(FrozenInstanceError):
            move.quantity = Decimal("2")

    def test_move_large_quantity(self):
        """Moves carry 18-decimal base unit amounts exactly."""
        amount = Decimal(10 ** 27)
        move = Move(amount, "USDC", "alice", "bob", "tx_001")
        assert move.quantity == amount


class TestMoveValidation:
    """Tests for Move input validation."""

    def test_zero_quantity_raises(self):
        with pytest.raises(ValueError, match="effectively zero"):
            Move(Decimal("0"), "USDC", "alice", "bob", "tx_001")

    def test_float_quantity_raises(self):
        with pytest.raises(ValueError, match="must be Decimal"):
            Move(100.0, "USDC", "alice", "bob", "tx_001")

    def test_infinite_quantity_raises(self):
        with pytest.raises(ValueError, match="finite"):
            Move(Decimal("Infinity"), "USDC", "alice", "bob", "tx_001")

    def test_same_source_and_dest_raises(self):
        with pytest.raises(ValueError, match="must be different"):
            Move(Decimal("1"), "USDC", "alice", "alice", "tx_001")

    @pytest.mark.parametrize("field", ["source", "dest", "unit_symbol", "contract_id"])
    def test_empty_fields_raise(self, field):
        kwargs = dict(
            quantity=Decimal("1"), unit_symbol="USDC", source="alice",
            dest="bob", contract_id="tx_001",
        )
        kwargs[field] = "  "
        with pytest.raises(ValueError, match="cannot be empty"):
            Move(**kwargs)


class TestPendingTransaction:
    """Tests for build_transaction and intent ids."""

    def test_intent_id_ignores_move_order(self):
        view = FakeView(balances={})
        a = Move(Decimal("1"), "USDC", "alice", "bob", "c1")
        b = Move(Decimal("2"), "USDC", "bob", "carol", "c2")
        tx1 = build_transaction(view, [a, b], origin=_test_origin())
        tx2 = build_transaction(view, [b, a], origin=_test_origin())
        assert tx1.intent_id == tx2.intent_id

    def test_intent_id_ignores_decimal_representation(self):
        view = FakeView(balances={})
        tx1 = build_transaction(view, [Move(Decimal("1.00"), "USDC", "alice", "bob", "c")])
        tx2 = build_transaction(view, [Move(Decimal("1"), "USDC", "alice", "bob", "c")])
        assert tx1.intent_id == tx2.intent_id

    def test_contract_id_distinguishes_intents(self):
        view = FakeView(balances={})
        tx1 = build_transaction(view, [Move(Decimal("1"), "USDC", "alice", "bob", "c:1")])
        tx2 = build_transaction(view, [Move(Decimal("1"), "USDC", "alice", "bob", "c:2")])
        assert tx1.intent_id != tx2.intent_id

    def test_state_snapshots_are_copied(self):
        """Mutating the caller's dicts after building does not leak in."""
        view = FakeView(balances={})
        old = {'allowances': {}}
        new = {'allowances': {'alice': {'bob': Decimal("5")}}}
        tx = build_transaction(view, [], [UnitStateChange("USDC", old, new)])
        new['allowances']['alice']['bob'] = Decimal("500")
        assert tx.state_changes[0].new_state['allowances']['alice']['bob'] == Decimal("5")

    def test_timestamp_comes_from_view(self):
        view = FakeView(balances={}, time=datetime(2025, 6, 1))
        tx = build_transaction(view, [Move(Decimal("1"), "USDC", "alice", "bob", "c")])
        assert tx.timestamp == datetime(2025, 6, 1)

    def test_empty_pending(self):
        tx = build_transaction(FakeView(balances={}), [])
        assert tx.is_empty()


class TestUnitStateChange:

    def test_changed_fields(self):
        sc = UnitStateChange(
            "punks#1",
            {'approved': None, 'asset_id': 1},
            {'approved': 'nftlend:USDC', 'asset_id': 1},
        )
        assert sc.changed_fields() == {'approved': (None, 'nftlend:USDC')}


class TestUnitFactories:
    """Tests for fungible_token and non_fungible_item."""

    def test_fungible_token(self):
        unit = fungible_token("USDC", "USD Coin")
        assert unit.unit_type == UNIT_TYPE_FUNGIBLE
        assert unit.min_balance == Decimal("0")
        assert unit.decimal_places == 0
        assert unit.state == {'allowances': {}}

    def test_fungible_rounds_down_to_base_units(self):
        unit = fungible_token("USDC", "USD Coin")
        assert unit.round(Decimal("10.9")) == Decimal("10")

    def test_non_fungible_item(self):
        unit = non_fungible_item("punks", 7)
        assert unit.symbol == "punks#7"
        assert unit.unit_type == UNIT_TYPE_NON_FUNGIBLE
        assert unit.max_balance == Decimal("1")
        assert unit.state == {'collection': 'punks', 'asset_id': 7, 'approved': None}

    def test_state_is_fresh_copy(self):
        unit = non_fungible_item("punks", 7)
        state = unit.state
        state['approved'] = 'mallory'
        assert unit.state['approved'] is None

    def test_unit_is_immutable(self):
        unit = fungible_token("USDC", "USD Coin")
        with pytest.raises(FrozenInstanceError):
            unit.name = "Other"

    def test_nft_symbol(self):
        assert nft_symbol("punks", 7) == "punks#7"


class TestNonFungibleTransferRule:
    """Transfer rule for single-supply items."""

    def test_holder_can_move_item(self):
        view = FakeView(balances={'alice': {'punks#1': 1}, SYSTEM_WALLET: {'punks#1': -1}})
        non_fungible_transfer_rule(view, Move(Decimal("1"), "punks#1", "alice", "bob", "c"))

    def test_non_holder_cannot_move_item(self):
        view = FakeView(balances={'alice': {'punks#1': 1}, SYSTEM_WALLET: {'punks#1': -1}})
        with pytest.raises(TransferRuleViolation, match="not the holder"):
            non_fungible_transfer_rule(view, Move(Decimal("1"), "punks#1", "bob", "carol", "c"))

    def test_item_moves_whole(self):
        view = FakeView(balances={'alice': {'punks#1': 1}})
        with pytest.raises(TransferRuleViolation, match="single item"):
            non_fungible_transfer_rule(view, Move(Decimal("2"), "punks#1", "alice", "bob", "c"))

    def test_mint_from_system_allowed_when_unheld(self):
        view = FakeView(balances={})
        non_fungible_transfer_rule(view, Move(Decimal("1"), "punks#1", SYSTEM_WALLET, "alice", "c"))


class TestToAmount:

    @pytest.mark.parametrize("value,expected", [
        (5, Decimal("5")),
        ("1000000000000000000", Decimal(10 ** 18)),
        (Decimal("7"), Decimal("7")),
        (3.0, Decimal("3")),
    ])
    def test_whole_values(self, value, expected):
        assert to_amount(value) == expected

    def test_fraction_raises(self):
        with pytest.raises(ValueError, match="whole number"):
            to_amount(Decimal("1.5"))

    def test_nan_raises(self):
        with pytest.raises(ValueError, match="finite"):
            to_amount(Decimal("NaN"))


class TestErrorHierarchy:
    """Every protocol error is a LendingError and a LedgerError."""

    @pytest.mark.parametrize("error", [
        NotOwner, InvalidTerms, NotListed, InsufficientBalance,
        InvalidState, Unauthorized, ReentrancyDetected,
    ])
    def test_lending_errors(self, error):
        assert issubclass(error, LendingError)
        assert issubclass(error, LedgerError)

    def test_allowance_is_authorization_failure(self):
        assert issubclass(InsufficientAllowance, Unauthorized)
