"""
Protocol Atomicity Conformance Tests

INVARIANT: Every protocol operation is all-or-nothing.

    ∀ operation O:
        O raises ⟹ balances, unit state, listings, offers, pool and the
                    event log are exactly as before O
        O nested inside O' ⟹ ReentrancyDetected, and O' aborts as a whole

The reentrancy guard is released on every exit path.
"""

import pytest
from decimal import Decimal

from nftlend import (
    Ledger, LedgerToken, LedgerNFTCollection, LendingProtocol,
    ReentrancyDetected, InsufficientAllowance, NotOwner, OfferStatus,
)

from tests.helpers import WAD, T0, DAY, list_item, make_offer, snapshot


class ReentrantToken(LedgerToken):
    """Token that runs a callback the next time it moves funds."""

    def __init__(self, ledger, symbol):
        super().__init__(ledger, symbol)
        self.on_transfer = None

    def _fire(self):
        callback, self.on_transfer = self.on_transfer, None
        if callback is not None:
            callback()

    def transfer(self, caller, to, amount):
        self._fire()
        return super().transfer(caller, to, amount)

    def transfer_from(self, caller, owner, to, amount):
        self._fire()
        return super().transfer_from(caller, owner, to, amount)


class BrokenCollection(LedgerNFTCollection):
    """Collection whose transfers fail while armed."""

    def __init__(self, ledger, address):
        super().__init__(ledger, address)
        self.armed = False

    def transfer_from(self, caller, owner, to, asset_id):
        if self.armed:
            raise RuntimeError("collection contract reverted")
        return super().transfer_from(caller, owner, to, asset_id)


@pytest.fixture
def hostile():
    """Protocol over a reentrant token and a breakable collection."""
    ledger = Ledger("hostile", T0, verbose=False)
    token = ReentrantToken(ledger, "EVIL")
    collection = BrokenCollection(ledger, "punks")
    collection.mint("alice", 1)
    collection.mint("alice", 2)
    for account in ("alice", "bob", "dave"):
        token.mint(account, 1_000 * WAD)
    protocol = LendingProtocol(ledger, token)
    return ledger, token, collection, protocol


class TestReentrancy:
    """Callbacks into the protocol from inside an asset transfer."""

    def test_reentrant_withdraw_aborts_outer_withdraw(self, hostile):
        ledger, token, collection, protocol = hostile
        token.approve("bob", protocol.address, 100)
        protocol.deposit(100, "bob")
        before = snapshot(ledger, protocol)

        token.on_transfer = lambda: protocol.withdraw(100, "bob")
        with pytest.raises(ReentrancyDetected, match="withdraw entered while withdraw"):
            protocol.withdraw(100, "bob")

        assert snapshot(ledger, protocol) == before
        assert protocol.deposit_of("bob") == Decimal("100")
        assert not protocol.guard.locked

    def test_reentrant_cancel_during_accept(self, hostile):
        ledger, token, collection, protocol = hostile
        list_item(protocol, collection, 1, "alice")
        offer_id = make_offer(protocol, "bob", "punks", 1)
        before = snapshot(ledger, protocol)

        token.on_transfer = lambda: protocol.cancel_offer(offer_id, "bob")
        with pytest.raises(ReentrancyDetected):
            protocol.accept_offer(offer_id, "alice")

        assert snapshot(ledger, protocol) == before
        offer = protocol.get_offer(offer_id)
        assert offer.status == OfferStatus.CREATED
        assert protocol.is_listed("punks", 1)
        assert protocol.verify_custody()['valid']

        # The guard was released; the same call now succeeds
        protocol.accept_offer(offer_id, "alice")
        assert token.balance_of("alice") == 1_010 * WAD

    def test_reentrant_create_during_deposit(self, hostile):
        ledger, token, collection, protocol = hostile
        list_item(protocol, collection, 1, "alice")
        token.approve("dave", protocol.address, 10 * WAD)
        token.approve("bob", protocol.address, 50)
        before = snapshot(ledger, protocol)

        token.on_transfer = lambda: protocol.create_offer("punks", 1, 500, 86_400, 10 * WAD, "dave")
        with pytest.raises(ReentrancyDetected, match="create_offer entered while deposit"):
            protocol.deposit(50, "bob")

        assert snapshot(ledger, protocol) == before
        assert protocol.offer_count == 0
        assert protocol.depositors() == []

    def test_reentrant_read_is_allowed(self, hostile):
        """Reads hold no guard and see the books as they were before the operation."""
        ledger, token, collection, protocol = hostile
        token.approve("bob", protocol.address, 100)
        seen = []
        token.on_transfer = lambda: seen.append(protocol.total_deposits)
        protocol.deposit(100, "bob")
        assert seen == [Decimal("0")]
        assert protocol.total_deposits == Decimal("100")


class TestPartialFailureRollsBack:
    """An asset failing halfway through leaves nothing behind."""

    def test_repay_with_failing_collateral_return(self, hostile):
        ledger, token, collection, protocol = hostile
        list_item(protocol, collection, 1, "alice")
        offer_id = make_offer(protocol, "bob", "punks", 1)
        protocol.accept_offer(offer_id, "alice")
        ledger.advance_time(T0 + 10 * DAY)
        owed = 10 * WAD + protocol.get_interest(offer_id)
        token.approve("alice", protocol.address, owed)
        before = snapshot(ledger, protocol)
        log_length = len(ledger.transaction_log)

        collection.armed = True
        with pytest.raises(RuntimeError, match="reverted"):
            protocol.repay_lend(offer_id, "alice")

        # The lender payment already applied on the ledger was unwound
        assert snapshot(ledger, protocol) == before
        assert len(ledger.transaction_log) == log_length
        assert token.balance_of("bob") == 990 * WAD
        assert token.allowance("alice", protocol.address) == owed
        assert protocol.get_offer(offer_id).status == OfferStatus.ACCEPTED

        collection.armed = False
        protocol.repay_lend(offer_id, "alice")
        assert collection.owner_of(1) == "alice"

    def test_failed_listing_leaves_registry_untouched(self, hostile):
        ledger, token, collection, protocol = hostile
        collection.approve("alice", protocol.address, 2)
        collection.armed = True
        with pytest.raises(RuntimeError):
            protocol.list_asset(collection, 2, "alice")
        assert protocol.get_listed() == []
        assert collection.owner_of(2) == "alice"
        assert protocol.events == []

    def test_failed_listing_does_not_bind_collection_address(self, hostile):
        """Only a committed listing ties an address to a collection object."""
        ledger, token, collection, protocol = hostile
        apes = BrokenCollection(ledger, "apes")
        apes.mint("alice", 1)
        apes.approve("alice", protocol.address, 1)

        with pytest.raises(NotOwner):
            protocol.list_asset(apes, 1, "bob")
        apes.armed = True
        with pytest.raises(RuntimeError):
            protocol.list_asset(apes, 1, "alice")

        # A second handle on the same address is accepted, so nothing was bound
        other = LedgerNFTCollection(ledger, "apes")
        protocol.list_asset(other, 1, "alice")
        assert other.owner_of(1) == protocol.address
        assert protocol.is_listed("apes", 1)

    def test_failed_create_keeps_ids_dense(self, hostile):
        ledger, token, collection, protocol = hostile
        list_item(protocol, collection, 1, "alice")
        with pytest.raises(InsufficientAllowance):
            protocol.create_offer("punks", 1, 500, 86_400, 10 * WAD, "bob")
        assert make_offer(protocol, "bob", "punks", 1) == 0

    def test_events_of_aborted_operation_are_dropped(self, hostile):
        ledger, token, collection, protocol = hostile
        list_item(protocol, collection, 1, "alice")
        count = len(protocol.events)

        def explode():
            raise RuntimeError("boom")

        token.on_transfer = explode
        token.approve("bob", protocol.address, 10 * WAD)
        with pytest.raises(RuntimeError, match="boom"):
            protocol.create_offer("punks", 1, 500, 86_400, 10 * WAD, "bob")
        assert len(protocol.events) == count
        assert protocol.offer_count == 0
