"""
protocol.py - Offer Lifecycle State Machine and Liquidity Pool Entry Points

LendingProtocol is the single coordinating owner of the listing registry, the
offer book and the liquidity pool. Every mutation funnels through one of its
public operations.

STATE MACHINE:
==============

    CREATED --accept--> ACCEPTED --repay (now <= end_time)--> REPAID
       |                    |
       |                    +-----redeem (now > end_time)---> REDEEMED
       |
       +--cancel (lender, before acceptance)--> CANCELLED

Closed states are terminal. A second terminal call raises InvalidState.

CUSTODY:
========

    item        listed  -> protocol (free escrow, depositor recorded)
                accept  -> protocol (secures the loan)
                repay   -> borrower
                redeem  -> lender
                reclaim -> depositor (only while in free escrow)

    principal   create  -> protocol
                accept  -> borrower
                cancel  -> lender
                repay   -> lender (principal + interest, pulled from borrower)

ATOMICITY:
==========

Each operation holds the reentrancy guard, takes a ledger checkpoint and a
deep copy of the books, and then runs its checks and transfers. Any exception
rolls the ledger back to the checkpoint, restores the books, drops the
buffered events and re-raises. Events are published only after the guard is
released, so subscribers may call back into the protocol. A subscriber that
raises is recorded in subscriber_failures; the others still receive the event.

Account identity is explicit: every mutating call names its caller, and the
protocol acts under its own `address`. Transfers out of a caller therefore
need the caller's prior approval of that address on the asset.
"""

from __future__ import annotations
import copy
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .core import (
    NotOwner, InvalidTerms, NotListed, InsufficientBalance, InvalidState,
    Unauthorized, to_amount,
)
from .assets import FungibleAsset, NonFungibleAsset
from .events import (
    ProtocolEvent, EventHandler, make_event,
    OFFER_CREATED, NFT_LISTED, OFFER_ACCEPTED, LEND_REPAID, NFT_CLAIMED,
    OFFER_CANCELLED, DEPOSIT_MADE, WITHDRAWAL_MADE, NFT_RECLAIMED,
    INTEREST_DISTRIBUTED,
)
from .guard import ReentrancyGuard
from .interest import calculate_interest, elapsed_seconds, as_seconds
from .ledger import Ledger
from .listings import ListingRegistry, ListedAsset
from .offers import Offer, OfferBook, OfferStatus
from .pool import LiquidityPool


class LendingProtocol:
    """
    Peer-to-peer lending against non-fungible collateral, for one fungible token.

    Example:
        protocol = LendingProtocol(ledger, usdc)
        punks.approve("alice", protocol.address, 7)
        protocol.list_asset(punks, 7, "alice")

        usdc.approve("bob", protocol.address, 10 * WAD)
        offer_id = protocol.create_offer("punks", 7, 500, 100 * SECONDS_PER_DAY, 10 * WAD, "bob")

        protocol.accept_offer(offer_id, "alice")     # alice receives 10 * WAD
    """

    def __init__(
        self,
        ledger: Ledger,
        token: FungibleAsset,
        address: Optional[str] = None,
        verbose: Optional[bool] = None,
    ):
        """
        Args:
            ledger: Ledger providing the clock and checkpoint/rollback
            token: The fungible asset lent and deposited
            address: Account the protocol holds custody under
                     (default: "nftlend:<token symbol>")
            verbose: Print published events (default: follow ledger.verbose)
        """
        self.ledger = ledger
        self.token = token
        self.address = address or f"nftlend:{token.symbol}"
        self.verbose = ledger.verbose if verbose is None else verbose
        if not ledger.is_registered(self.address):
            ledger.register_wallet(self.address)

        self._guard = ReentrancyGuard()
        self._listings = ListingRegistry()
        self._offers = OfferBook()
        self._pool = LiquidityPool()
        self._collections: Dict[str, NonFungibleAsset] = {}

        self._events: List[ProtocolEvent] = []
        self._pending_events: List[ProtocolEvent] = []
        self._subscribers: List[EventHandler] = []
        self.subscriber_failures: List[Tuple[ProtocolEvent, EventHandler, Exception]] = []
        self._now: Optional[datetime] = None

    # ========================================================================
    # OPERATION SCOPE
    # ========================================================================

    @contextmanager
    def _operation(self, name: str) -> Iterator[datetime]:
        with self._guard.hold(name):
            checkpoint = self.ledger.checkpoint()
            snapshot = copy.deepcopy((self._listings, self._offers, self._pool))
            collections = dict(self._collections)
            self._now = self.ledger.current_time
            self._pending_events = []
            try:
                yield self._now
            except Exception:
                self.ledger.rollback(checkpoint)
                self._listings, self._offers, self._pool = snapshot
                self._collections = collections
                self._pending_events = []
                raise
            committed = self._pending_events
            self._pending_events = []
        self._publish(committed)

    def _emit(self, name: str, **params: Any) -> None:
        sequence = len(self._events) + len(self._pending_events)
        self._pending_events.append(make_event(sequence, name, self._now, **params))

    def _publish(self, events: List[ProtocolEvent]) -> None:
        # Log first: a subscriber may start another operation.
        self._events.extend(events)
        for event in events:
            if self.verbose:
                details = ", ".join(f"{k}={v}" for k, v in event.params)
                print(f"EVENT #{event.sequence} {event.name}: {details}")
            for handler in list(self._subscribers):
                try:
                    handler(event)
                except Exception as exc:
                    # The operation has committed; every subscriber still gets the event.
                    self.subscriber_failures.append((event, handler, exc))
                    if self.verbose:
                        print(f"SUBSCRIBER FAILED on {event.event_id}: {type(exc).__name__}: {exc}")

    def subscribe(self, handler: EventHandler) -> None:
        """
        Call handler with every event published from now on.

        Events are delivered after the operation commits. An exception raised
        by a handler is recorded in subscriber_failures and never reaches the
        caller of the operation.
        """
        self._subscribers.append(handler)

    @property
    def events(self) -> List[ProtocolEvent]:
        """Every published event, in order."""
        return list(self._events)

    @property
    def guard(self) -> ReentrancyGuard:
        return self._guard

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _register_collection(self, collection: NonFungibleAsset) -> None:
        known = self._collections.get(collection.address)
        if known is not None and known is not collection:
            raise ValueError(f"A different collection is already registered at {collection.address}")
        self._collections[collection.address] = collection

    def _collection(self, asset_contract: str) -> NonFungibleAsset:
        collection = self._collections.get(asset_contract)
        if collection is None:
            raise NotListed(f"No item of {asset_contract} has ever been listed")
        return collection

    def _delist_for(self, offer: Offer) -> None:
        # A later listing of the same item is left alone.
        self._listings.delist_position(offer.asset_contract, offer.asset_id, offer.listing_id)

    @staticmethod
    def _require_terms(rate_bps: int, duration: Union[int, timedelta], amount: Any) -> Tuple[int, Decimal]:
        """Validate offer terms and return (duration in seconds, principal)."""
        try:
            duration = as_seconds(duration)
            amount = to_amount(amount)
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise InvalidTerms(str(exc)) from exc
        for label, value in (("Interest rate", rate_bps), ("Duration", duration)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidTerms(f"{label} must be a whole number, got {value!r}")
        if rate_bps <= 0:
            raise InvalidTerms(f"Interest rate must be positive, got {rate_bps} bps")
        if duration <= 0:
            raise InvalidTerms(f"Duration must be positive, got {duration}s")
        if amount <= 0:
            raise InvalidTerms(f"Principal must be positive, got {amount}")
        return duration, amount

    def _require_funds(self, account: str, amount: Decimal) -> None:
        balance = self.token.balance_of(account)
        if balance < amount:
            raise InsufficientBalance(
                f"{account} holds {balance} {self.token.symbol}, needs {amount}"
            )

    # ========================================================================
    # LISTING REGISTRY
    # ========================================================================

    def list_asset(self, collection: NonFungibleAsset, asset_id: int, caller: str) -> ListedAsset:
        """
        Pledge an item as collateral and move it into protocol custody.

        The caller must have approved the protocol address for the item.

        Raises:
            NotOwner: If caller does not currently own the item
            InvalidState: If the item is already listed
        """
        with self._operation("list_asset") as now:
            asset_contract = collection.address
            if collection.owner_of(asset_id) != caller:
                raise NotOwner(f"{caller} does not own {asset_contract}#{asset_id}")
            if self._listings.is_listed(asset_contract, asset_id):
                raise InvalidState(f"{asset_contract}#{asset_id} is already listed")
            self._register_collection(collection)

            listing = self._listings.record(asset_contract, asset_id, caller, now)
            collection.transfer_from(self.address, caller, self.address, asset_id)
            self._emit(
                NFT_LISTED,
                asset_contract=asset_contract,
                asset_id=asset_id,
                owner=caller,
                listing_id=self._listings.live_position(asset_contract, asset_id),
            )
        return listing

    def reclaim_asset(self, asset_contract: str, asset_id: int, caller: str) -> None:
        """
        Return an escrowed item that is not securing a loan to its depositor.

        A still-live listing is cleared first, which leaves any open offers
        on it un-acceptable.

        Raises:
            InvalidState: If the item is not in free escrow
            NotOwner: If caller is not the depositor
        """
        with self._operation("reclaim_asset"):
            depositor = self._listings.depositor(asset_contract, asset_id)
            if depositor is None:
                raise InvalidState(f"{asset_contract}#{asset_id} is not held in escrow")
            if depositor != caller:
                raise NotOwner(f"{caller} did not deposit {asset_contract}#{asset_id}")

            self._listings.delist(asset_contract, asset_id)
            self._listings.release(asset_contract, asset_id)
            self._collection(asset_contract).transfer_from(
                self.address, self.address, caller, asset_id
            )
            self._emit(NFT_RECLAIMED, asset_contract=asset_contract, asset_id=asset_id, owner=caller)

    def get_listed(self) -> List[ListedAsset]:
        """Every listing ever made, including delisted ones (is_listed=False)."""
        return self._listings.history()

    def is_listed(self, asset_contract: str, asset_id: int) -> bool:
        return self._listings.is_listed(asset_contract, asset_id)

    # ========================================================================
    # OFFER LIFECYCLE
    # ========================================================================

    def create_offer(
        self,
        asset_contract: str,
        asset_id: int,
        rate_bps: int,
        duration: Union[int, timedelta],
        amount: Any,
        caller: str,
    ) -> int:
        """
        Offer to lend `amount` against a listed item and escrow the principal.

        Args:
            asset_contract: Collection address of the listed item
            asset_id: Item id within the collection
            rate_bps: Interest over the whole duration, in basis points
            duration: Planned loan length (seconds or timedelta)
            amount: Principal in base units
            caller: The lender

        Returns:
            The new offer id.

        Raises:
            InvalidTerms: If rate, duration or amount is not a positive whole number
            NotListed: If the item is not currently listed
            InsufficientBalance: If caller holds less than amount
        """
        with self._operation("create_offer") as now:
            duration, amount = self._require_terms(rate_bps, duration, amount)
            listing_id = self._listings.live_position(asset_contract, asset_id)
            if listing_id is None:
                raise NotListed(f"{asset_contract}#{asset_id} is not listed")
            self._require_funds(caller, amount)

            offer = self._offers.add(
                asset_contract, asset_id, listing_id, caller,
                rate_bps, duration, amount, now,
            )
            self.token.transfer_from(self.address, caller, self.address, amount)
            self._emit(
                OFFER_CREATED,
                offer_id=offer.offer_id,
                asset_contract=asset_contract,
                asset_id=asset_id,
                listing_id=listing_id,
                lender=caller,
                interest_rate_bps=rate_bps,
                planned_duration=duration,
                principal=amount,
            )
        return offer.offer_id

    def accept_offer(self, offer_id: int, caller: str) -> None:
        """
        Take an offer: the escrowed item starts securing the loan and the
        principal is paid to the caller.

        Raises:
            InvalidState: If the offer is missing, closed or already accepted
            NotListed: If the listing the offer was made against has ended
            NotOwner: If caller did not deposit the item
        """
        with self._operation("accept_offer") as now:
            offer = self._offers.require(offer_id)
            if not offer.active:
                raise InvalidState(f"Offer {offer_id} is {offer.status.value}")
            if offer.accepted:
                raise InvalidState(f"Offer {offer_id} was already accepted by {offer.borrower}")
            live = self._listings.live_position(offer.asset_contract, offer.asset_id)
            if live is None or live != offer.listing_id:
                raise NotListed(
                    f"{offer.asset_contract}#{offer.asset_id} is no longer listed for offer {offer_id}"
                )
            if self._listings.depositor(offer.asset_contract, offer.asset_id) != caller:
                raise NotOwner(f"{caller} does not own {offer.asset_contract}#{offer.asset_id}")
            collection = self._collection(offer.asset_contract)
            if collection.owner_of(offer.asset_id) != self.address:
                raise InvalidState(
                    f"{offer.asset_contract}#{offer.asset_id} is not in protocol custody"
                )

            offer.borrower = caller
            offer.start_time = now
            offer.end_time = now + timedelta(seconds=offer.planned_duration)
            offer.status = OfferStatus.ACCEPTED
            self._listings.delist(offer.asset_contract, offer.asset_id)
            self._listings.release(offer.asset_contract, offer.asset_id)

            self.token.transfer(self.address, caller, offer.principal)
            self._emit(
                OFFER_ACCEPTED,
                offer_id=offer_id,
                asset_contract=offer.asset_contract,
                asset_id=offer.asset_id,
                borrower=caller,
                principal=offer.principal,
                start_time=offer.start_time,
                end_time=offer.end_time,
            )

    def repay_lend(self, offer_id: int, caller: str) -> Decimal:
        """
        Repay an accepted offer on time and take the collateral back.

        Principal plus interest is pulled from the borrower straight to the
        lender, so the borrower must have approved the protocol address for
        that total. Repaying exactly at end_time is on time.

        Returns:
            The interest charged.

        Raises:
            InvalidState: If the offer is closed, unaccepted or past end_time
            Unauthorized: If caller is not the borrower
            InsufficientBalance: If caller cannot cover principal + interest
        """
        with self._operation("repay_lend") as now:
            offer = self._offers.require(offer_id)
            if not offer.active or not offer.accepted:
                raise InvalidState(f"Offer {offer_id} is {offer.status.value}, not an open loan")
            if caller != offer.borrower:
                raise Unauthorized(f"{caller} is not the borrower of offer {offer_id}")
            if offer.is_expired(now):
                raise InvalidState(f"Offer {offer_id} expired at {offer.end_time}")

            interest = calculate_interest(
                offer.principal,
                offer.interest_rate_bps,
                offer.planned_duration,
                elapsed_seconds(offer.start_time, now),
            )
            owed = offer.principal + interest
            self._require_funds(caller, owed)

            self._offers.close(offer, OfferStatus.REPAID)
            self._delist_for(offer)
            self.token.transfer_from(self.address, caller, offer.lender, owed)
            self._collection(offer.asset_contract).transfer_from(
                self.address, self.address, caller, offer.asset_id
            )
            self._emit(
                LEND_REPAID,
                offer_id=offer_id,
                asset_contract=offer.asset_contract,
                asset_id=offer.asset_id,
                borrower=caller,
                lender=offer.lender,
                principal=offer.principal,
                interest=interest,
            )
        return interest

    def redeem_collateral(self, offer_id: int, caller: str) -> None:
        """
        Default path: after end_time the lender takes the collateral.

        Raises:
            InvalidState: If the offer is closed, unaccepted or not yet expired
            Unauthorized: If caller is not the lender
        """
        with self._operation("redeem_collateral") as now:
            offer = self._offers.require(offer_id)
            if not offer.active or not offer.accepted:
                raise InvalidState(f"Offer {offer_id} is {offer.status.value}, not an open loan")
            if caller != offer.lender:
                raise Unauthorized(f"{caller} is not the lender of offer {offer_id}")
            if not offer.is_expired(now):
                raise InvalidState(f"Offer {offer_id} runs until {offer.end_time}")

            self._offers.close(offer, OfferStatus.REDEEMED)
            self._delist_for(offer)
            self._collection(offer.asset_contract).transfer_from(
                self.address, self.address, caller, offer.asset_id
            )
            self._emit(
                NFT_CLAIMED,
                offer_id=offer_id,
                asset_contract=offer.asset_contract,
                asset_id=offer.asset_id,
                lender=caller,
            )

    def cancel_offer(self, offer_id: int, caller: str) -> None:
        """
        Withdraw an unaccepted offer and return its principal to the lender.

        The listing the offer was made against is cleared; the item stays in
        escrow until its depositor reclaims it.

        Raises:
            InvalidState: If the offer is closed or already accepted
            Unauthorized: If caller is not the lender
        """
        with self._operation("cancel_offer"):
            offer = self._offers.require(offer_id)
            if not offer.active:
                raise InvalidState(f"Offer {offer_id} is {offer.status.value}")
            if caller != offer.lender:
                raise Unauthorized(f"{caller} is not the lender of offer {offer_id}")
            if offer.accepted:
                raise InvalidState(f"Offer {offer_id} was accepted and can no longer be cancelled")

            self._offers.close(offer, OfferStatus.CANCELLED)
            self._delist_for(offer)
            self.token.transfer(self.address, caller, offer.principal)
            self._emit(
                OFFER_CANCELLED,
                offer_id=offer_id,
                asset_contract=offer.asset_contract,
                asset_id=offer.asset_id,
                lender=caller,
                principal=offer.principal,
            )

    def get_offer(self, offer_id: int) -> Offer:
        """
        A copy of the current offer record.

        Raises:
            InvalidState: If no offer has that id
        """
        return copy.copy(self._offers.require(offer_id))

    def get_offer_history(self, asset_contract: str, asset_id: int) -> List[Offer]:
        """Creation-time snapshots of every offer made on an item."""
        return self._offers.history(asset_contract, asset_id)

    def get_interest(self, offer_id: int, elapsed: Union[int, timedelta, None] = None) -> Decimal:
        """
        Preview the interest an offer accrues over `elapsed`.

        Uses exactly the arithmetic repay_lend charges with. With no elapsed
        given, quotes the time since acceptance (zero if unaccepted).
        """
        offer = self._offers.require(offer_id)
        if elapsed is None:
            if offer.start_time is None:
                return Decimal("0")
            seconds = elapsed_seconds(offer.start_time, self.ledger.current_time)
        else:
            seconds = as_seconds(elapsed)
        return calculate_interest(
            offer.principal, offer.interest_rate_bps, offer.planned_duration, seconds
        )

    @property
    def offer_count(self) -> int:
        return len(self._offers)

    # ========================================================================
    # LIQUIDITY POOL
    # ========================================================================

    def deposit(self, amount: Any, caller: str) -> Decimal:
        """
        Add funds to the pool.

        Returns:
            The caller's new pool balance.

        Raises:
            InvalidTerms: If amount is not positive
            InsufficientBalance: If caller holds less than amount
        """
        amount = to_amount(amount)
        with self._operation("deposit"):
            if amount <= 0:
                raise InvalidTerms(f"Deposit must be positive, got {amount}")
            self._require_funds(caller, amount)
            self.token.transfer_from(self.address, caller, self.address, amount)
            balance = self._pool.credit(caller, amount)
            self._emit(DEPOSIT_MADE, provider=caller, amount=amount, balance=balance)
        return balance

    def withdraw(self, amount: Any, caller: str) -> Decimal:
        """
        Take funds out of the pool.

        Returns:
            The caller's remaining pool balance.

        Raises:
            InvalidTerms: If amount is not positive
            InsufficientBalance: If caller has less than amount deposited
        """
        amount = to_amount(amount)
        with self._operation("withdraw"):
            if amount <= 0:
                raise InvalidTerms(f"Withdrawal must be positive, got {amount}")
            balance = self._pool.debit(caller, amount)
            self.token.transfer(self.address, caller, amount)
            self._emit(WITHDRAWAL_MADE, provider=caller, amount=amount, balance=balance)
        return balance

    def pay_pool_interest(self, amount: Any, caller: str) -> Dict[str, Decimal]:
        """
        Pull `amount` from caller and distribute it pro-rata to depositors.

        Does nothing, and pulls nothing, while the pool is empty.

        Returns:
            {provider: share paid}; empty if the pool is empty.

        Raises:
            InvalidTerms: If amount is not positive
            InsufficientBalance: If caller holds less than amount
        """
        amount = to_amount(amount)
        with self._operation("pay_pool_interest"):
            if amount <= 0:
                raise InvalidTerms(f"Interest must be positive, got {amount}")
            if self._pool.total_deposits == 0:
                return {}
            self._require_funds(caller, amount)
            self.token.transfer_from(self.address, caller, self.address, amount)
            shares = self._distribute_interest(amount)
        return shares

    def _distribute_interest(self, amount: Decimal) -> Dict[str, Decimal]:
        shares = self._pool.interest_shares(amount)
        if not shares:
            return {}
        paid = Decimal("0")
        for provider, share in shares.items():
            if share > 0:
                self.token.transfer(self.address, provider, share)
            paid += share
        dust = self._pool.record_distribution(amount, paid)
        self._emit(
            INTEREST_DISTRIBUTED,
            amount=amount,
            paid=paid,
            dust=dust,
            payouts=tuple(shares.items()),
        )
        return shares

    def deposit_of(self, provider: str) -> Decimal:
        return self._pool.balance_of(provider)

    def depositors(self) -> List[str]:
        """Providers with a nonzero balance. Order is not meaningful."""
        return self._pool.depositors

    @property
    def total_deposits(self) -> Decimal:
        return self._pool.total_deposits

    @property
    def total_interest_paid(self) -> Decimal:
        return self._pool.total_interest_paid

    @property
    def retained_dust(self) -> Decimal:
        return self._pool.retained_dust

    # ========================================================================
    # CUSTODY CHECK
    # ========================================================================

    def verify_custody(self) -> Dict[str, Any]:
        """
        Check that protocol holdings match the books.

        Expected token balance is the principal of every open unaccepted
        offer plus pool deposits plus retained dust. Every escrowed item and
        every item securing an open loan must be held by the protocol.

        Returns:
            Dict with keys:
            - 'valid': bool
            - 'expected_balance': what the books say the protocol holds
            - 'actual_balance': what the token says it holds
            - 'missing_items': items the protocol should hold but does not
        """
        open_offers = [o for o in self._offers.all() if o.active]
        escrowed_principal = sum(
            (o.principal for o in open_offers if not o.accepted), Decimal("0")
        )
        expected = escrowed_principal + self._pool.total_deposits + self._pool.retained_dust
        actual = self.token.balance_of(self.address)

        held = {
            (entry.asset_contract, entry.asset_id)
            for entry in self._listings.history()
            if self._listings.depositor(entry.asset_contract, entry.asset_id) is not None
        }
        held.update((o.asset_contract, o.asset_id) for o in open_offers if o.accepted)
        missing = sorted(
            key for key in held
            if self._collection(key[0]).owner_of(key[1]) != self.address
        )
        return {
            'valid': expected == actual and not missing,
            'expected_balance': expected,
            'actual_balance': actual,
            'missing_items': missing,
        }
