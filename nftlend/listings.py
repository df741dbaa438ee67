"""
listings.py - Listing Registry

Tracks which (collection, asset id) pairs are pledged as eligible collateral
and who deposited each escrowed item.

The listing history is append-only: delisting clears is_listed on the record
but never removes it, so observers replaying history see every listing ever
made. A (collection, id) -> position index makes delisting O(1).

Custody bookkeeping is separate from listing status. An item enters escrow
when listed and leaves escrow when it starts securing an accepted loan or
is reclaimed by its depositor. A delisted item can therefore still be in
escrow (after a cancellation), waiting for its depositor to reclaim it.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

AssetKey = Tuple[str, int]


@dataclass(slots=True)
class ListedAsset:
    """One listing of one item. Only is_listed ever changes after creation."""
    asset_contract: str
    asset_id: int
    owner: str
    listed_at: datetime
    is_listed: bool = True


class ListingRegistry:
    """Append-only listing history plus the live-listing and escrow indexes."""

    def __init__(self):
        self._history: List[ListedAsset] = []
        self._live: Dict[AssetKey, int] = {}
        self._escrow: Dict[AssetKey, str] = {}

    def record(self, asset_contract: str, asset_id: int, owner: str, now: datetime) -> ListedAsset:
        """
        Append a live listing and put the item in escrow under owner.

        Raises:
            ValueError: If the item is already listed
        """
        key = (asset_contract, asset_id)
        if key in self._live:
            raise ValueError(f"{asset_contract}#{asset_id} is already listed")
        entry = ListedAsset(asset_contract, asset_id, owner, now)
        self._live[key] = len(self._history)
        self._history.append(entry)
        self._escrow[key] = owner
        return replace(entry)

    def delist(self, asset_contract: str, asset_id: int) -> bool:
        """
        Clear the live listing of an item.

        Returns:
            True if a live listing was cleared, False if none existed.
        """
        position = self._live.pop((asset_contract, asset_id), None)
        if position is None:
            return False
        self._history[position].is_listed = False
        return True

    def delist_position(self, asset_contract: str, asset_id: int, position: int) -> bool:
        """Delist the item only if its live listing is the one at position."""
        if self._live.get((asset_contract, asset_id)) != position:
            return False
        return self.delist(asset_contract, asset_id)

    def is_listed(self, asset_contract: str, asset_id: int) -> bool:
        return (asset_contract, asset_id) in self._live

    def live_position(self, asset_contract: str, asset_id: int) -> Optional[int]:
        """Index in the history of the item's live listing, or None."""
        return self._live.get((asset_contract, asset_id))

    def live_listing(self, asset_contract: str, asset_id: int) -> Optional[ListedAsset]:
        position = self._live.get((asset_contract, asset_id))
        return None if position is None else replace(self._history[position])

    def depositor(self, asset_contract: str, asset_id: int) -> Optional[str]:
        """Who may accept offers on, or reclaim, an escrowed item."""
        return self._escrow.get((asset_contract, asset_id))

    def release(self, asset_contract: str, asset_id: int) -> str:
        """
        Take an item out of free escrow.

        Raises:
            KeyError: If the item is not in free escrow
        """
        return self._escrow.pop((asset_contract, asset_id))

    def history(self) -> List[ListedAsset]:
        """Every listing ever made, oldest first, as copies."""
        return [replace(entry) for entry in self._history]
