"""
offers.py - Offer Ledger

Canonical offer records keyed by a strictly increasing id, plus a per-asset
history log.

The history log stores a snapshot copied at creation time. It is a record of
what was offered, not a live view: accepting or closing an offer updates the
canonical record only, so history entries keep borrower=None and
status=CREATED forever. Use get() for current state.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .core import InvalidState


class OfferStatus(Enum):
    """Lifecycle state of an offer. REPAID, REDEEMED and CANCELLED are terminal."""
    CREATED = "created"
    ACCEPTED = "accepted"
    REPAID = "repaid"
    REDEEMED = "redeemed"
    CANCELLED = "cancelled"

    @property
    def is_closed(self) -> bool:
        return self in (OfferStatus.REPAID, OfferStatus.REDEEMED, OfferStatus.CANCELLED)


@dataclass(slots=True)
class Offer:
    """
    A lender's proposal to lend `principal` against one listed item.

    listing_id is the position of the listing the offer was made against.
    Once that listing ends, relisting the same item does not revive the
    offer. start_time and end_time stay None until acceptance; an
    unaccepted offer has no expiry.
    """
    offer_id: int
    asset_contract: str
    asset_id: int
    listing_id: int
    lender: str
    interest_rate_bps: int
    planned_duration: int
    principal: Decimal
    created_at: datetime
    borrower: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    active: bool = True
    status: OfferStatus = OfferStatus.CREATED

    @property
    def accepted(self) -> bool:
        return self.borrower is not None

    def is_expired(self, now: datetime) -> bool:
        """True once now is strictly past end_time. Never true before acceptance."""
        return self.end_time is not None and now > self.end_time


class OfferBook:
    """Owns every Offer; ids start at zero and are never reused."""

    def __init__(self):
        self._offers: Dict[int, Offer] = {}
        self._history: Dict[Tuple[str, int], List[Offer]] = {}
        self._next_id: int = 0

    @property
    def next_id(self) -> int:
        return self._next_id

    def __len__(self) -> int:
        return len(self._offers)

    def add(
        self,
        asset_contract: str,
        asset_id: int,
        listing_id: int,
        lender: str,
        interest_rate_bps: int,
        planned_duration: int,
        principal: Decimal,
        now: datetime,
    ) -> Offer:
        """Store a new CREATED offer and log its snapshot under the asset."""
        offer = Offer(
            offer_id=self._next_id,
            asset_contract=asset_contract,
            asset_id=asset_id,
            listing_id=listing_id,
            lender=lender,
            interest_rate_bps=interest_rate_bps,
            planned_duration=planned_duration,
            principal=principal,
            created_at=now,
        )
        self._next_id += 1
        self._offers[offer.offer_id] = offer
        self._history.setdefault((asset_contract, asset_id), []).append(replace(offer))
        return offer

    def require(self, offer_id: int) -> Offer:
        """
        The live record for an id.

        Raises:
            InvalidState: If no offer has that id
        """
        offer = self._offers.get(offer_id)
        if offer is None:
            raise InvalidState(f"Offer {offer_id} does not exist")
        return offer

    def get(self, offer_id: int) -> Optional[Offer]:
        """A copy of the current record, or None."""
        offer = self._offers.get(offer_id)
        return None if offer is None else replace(offer)

    def close(self, offer: Offer, status: OfferStatus) -> None:
        """
        Terminate an active offer.

        Raises:
            InvalidState: If the offer is already closed
        """
        if not offer.active:
            raise InvalidState(f"Offer {offer.offer_id} is already {offer.status.value}")
        offer.active = False
        offer.status = status

    def history(self, asset_contract: str, asset_id: int) -> List[Offer]:
        """Creation-time snapshots of every offer made on an item."""
        return [replace(o) for o in self._history.get((asset_contract, asset_id), [])]

    def all(self) -> List[Offer]:
        return [replace(self._offers[i]) for i in sorted(self._offers)]
