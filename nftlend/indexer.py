"""
indexer.py - Event Replay Indexer

Rebuilds listings, offers and pool balances from the published event stream
alone, the way an off-line indexer would. A LendingProtocol's books and the
state replayed from its events must always agree; diff_state() reports where
they do not.

Handlers are plain functions in a dict keyed by event name:

    handler(event, state) -> None
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from .events import (
    ProtocolEvent,
    OFFER_CREATED, NFT_LISTED, OFFER_ACCEPTED, LEND_REPAID, NFT_CLAIMED,
    OFFER_CANCELLED, DEPOSIT_MADE, WITHDRAWAL_MADE, NFT_RECLAIMED,
    INTEREST_DISTRIBUTED,
)
from .listings import ListingRegistry
from .offers import OfferBook, OfferStatus
from .pool import LiquidityPool


@dataclass
class IndexedState:
    """Books rebuilt from events."""
    listings: ListingRegistry = field(default_factory=ListingRegistry)
    offers: OfferBook = field(default_factory=OfferBook)
    pool: LiquidityPool = field(default_factory=LiquidityPool)
    last_sequence: int = -1


Handler = Callable[[ProtocolEvent, IndexedState], None]


# ============================================================================
# HANDLER FUNCTIONS
# ============================================================================

def handle_listed(event: ProtocolEvent, state: IndexedState) -> None:
    p = event.params_dict
    state.listings.record(p["asset_contract"], p["asset_id"], p["owner"], event.timestamp)
    position = state.listings.live_position(p["asset_contract"], p["asset_id"])
    if position != p["listing_id"]:
        raise ValueError(
            f"Event {event.event_id} names listing {p['listing_id']}, replay produced {position}"
        )


def handle_offer_created(event: ProtocolEvent, state: IndexedState) -> None:
    p = event.params_dict
    offer = state.offers.add(
        p["asset_contract"], p["asset_id"], p["listing_id"], p["lender"],
        p["interest_rate_bps"], p["planned_duration"], p["principal"], event.timestamp,
    )
    if offer.offer_id != p["offer_id"]:
        raise ValueError(
            f"Event {event.event_id} names offer {p['offer_id']}, replay produced {offer.offer_id}"
        )


def handle_offer_accepted(event: ProtocolEvent, state: IndexedState) -> None:
    p = event.params_dict
    offer = state.offers.require(p["offer_id"])
    offer.borrower = p["borrower"]
    offer.start_time = p["start_time"]
    offer.end_time = p["start_time"] + timedelta(seconds=offer.planned_duration)
    offer.status = OfferStatus.ACCEPTED
    state.listings.delist(offer.asset_contract, offer.asset_id)
    state.listings.release(offer.asset_contract, offer.asset_id)


def _closer(status: OfferStatus) -> Handler:
    def handle(event: ProtocolEvent, state: IndexedState) -> None:
        offer = state.offers.require(event["offer_id"])
        state.offers.close(offer, status)
        state.listings.delist_position(offer.asset_contract, offer.asset_id, offer.listing_id)
    handle.__name__ = f"handle_{status.value}"
    return handle


handle_repaid = _closer(OfferStatus.REPAID)
handle_claimed = _closer(OfferStatus.REDEEMED)
handle_cancelled = _closer(OfferStatus.CANCELLED)


def handle_reclaimed(event: ProtocolEvent, state: IndexedState) -> None:
    state.listings.delist(event["asset_contract"], event["asset_id"])
    state.listings.release(event["asset_contract"], event["asset_id"])


def handle_deposit(event: ProtocolEvent, state: IndexedState) -> None:
    state.pool.credit(event["provider"], event["amount"])


def handle_withdrawal(event: ProtocolEvent, state: IndexedState) -> None:
    state.pool.debit(event["provider"], event["amount"])


def handle_interest(event: ProtocolEvent, state: IndexedState) -> None:
    state.pool.record_distribution(event["amount"], event["paid"])


# ============================================================================
# HANDLER REGISTRY
# ============================================================================

DEFAULT_HANDLERS: Dict[str, Handler] = {
    NFT_LISTED: handle_listed,
    OFFER_CREATED: handle_offer_created,
    OFFER_ACCEPTED: handle_offer_accepted,
    LEND_REPAID: handle_repaid,
    NFT_CLAIMED: handle_claimed,
    OFFER_CANCELLED: handle_cancelled,
    NFT_RECLAIMED: handle_reclaimed,
    DEPOSIT_MADE: handle_deposit,
    WITHDRAWAL_MADE: handle_withdrawal,
    INTEREST_DISTRIBUTED: handle_interest,
}


def replay_events(
    events: Iterable[ProtocolEvent],
    handlers: Optional[Dict[str, Handler]] = None,
    state: Optional[IndexedState] = None,
) -> IndexedState:
    """
    Apply events in order to a fresh (or given) IndexedState.

    Raises:
        ValueError: If the sequence has a gap or an event has no handler
    """
    handlers = DEFAULT_HANDLERS if handlers is None else handlers
    state = IndexedState() if state is None else state
    for event in events:
        if event.sequence != state.last_sequence + 1:
            raise ValueError(
                f"Expected event #{state.last_sequence + 1}, got #{event.sequence}"
            )
        handler = handlers.get(event.name)
        if handler is None:
            raise ValueError(f"No handler registered for '{event.name}'")
        handler(event, state)
        state.last_sequence = event.sequence
    return state


def diff_state(state: IndexedState, protocol: Any) -> List[str]:
    """
    Compare replayed books with a live LendingProtocol.

    Returns:
        Human-readable differences; empty when they agree.
    """
    differences: List[str] = []

    if state.listings.history() != protocol.get_listed():
        differences.append("listing history differs")

    live = {o.offer_id: o for o in state.offers.all()}
    for offer_id in range(max(protocol.offer_count, len(live))):
        replayed = live.get(offer_id)
        actual = protocol.get_offer(offer_id) if offer_id < protocol.offer_count else None
        if replayed != actual:
            differences.append(f"offer {offer_id}: replayed {replayed}, actual {actual}")

    if state.pool.deposits != {p: protocol.deposit_of(p) for p in protocol.depositors()}:
        differences.append("pool deposits differ")
    if state.pool.total_deposits != protocol.total_deposits:
        differences.append(
            f"total_deposits: replayed {state.pool.total_deposits}, actual {protocol.total_deposits}"
        )
    if state.pool.total_interest_paid != protocol.total_interest_paid:
        differences.append("total_interest_paid differs")
    if state.pool.retained_dust != protocol.retained_dust:
        differences.append("retained_dust differs")

    return differences
