"""
events.py - Protocol Events

Events are just data. Each committed protocol operation publishes one or
more ProtocolEvent records; together they form the audit trail an off-line
indexer can replay to rebuild listings, offers and pool balances (see
indexer.py). Events raised inside an operation that later aborts are
discarded and never published.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict

OFFER_CREATED = "offer_created"
NFT_LISTED = "nft_listed"
OFFER_ACCEPTED = "offer_accepted"
LEND_REPAID = "lend_repaid"
NFT_CLAIMED = "nft_claimed"
OFFER_CANCELLED = "offer_cancelled"
DEPOSIT_MADE = "deposit_made"
WITHDRAWAL_MADE = "withdrawal_made"
NFT_RECLAIMED = "nft_reclaimed"
INTEREST_DISTRIBUTED = "interest_distributed"

EVENT_NAMES = frozenset({
    OFFER_CREATED, NFT_LISTED, OFFER_ACCEPTED, LEND_REPAID, NFT_CLAIMED,
    OFFER_CANCELLED, DEPOSIT_MADE, WITHDRAWAL_MADE, NFT_RECLAIMED,
    INTEREST_DISTRIBUTED,
})


@dataclass(frozen=True, slots=True)
class ProtocolEvent:
    """
    Immutable record of one committed state change.

    Attributes:
        sequence: Position in the protocol's event log (0-based, gapless)
        name: One of EVENT_NAMES
        timestamp: Ledger time of the operation that emitted it
        params: Frozen tuple of (key, value) pairs, sorted by key
    """
    sequence: int
    name: str
    timestamp: datetime
    params: tuple = ()

    def __post_init__(self):
        if self.name not in EVENT_NAMES:
            raise ValueError(f"Unknown event name '{self.name}'")

    @property
    def params_dict(self) -> Dict[str, Any]:
        return dict(self.params)

    def __getitem__(self, key: str) -> Any:
        return self.params_dict[key]

    @property
    def event_id(self) -> str:
        return f"{self.name}:{self.sequence}"


def make_event(sequence: int, name: str, timestamp: datetime, **params) -> ProtocolEvent:
    return ProtocolEvent(sequence, name, timestamp, tuple(sorted(params.items())))


# Subscribers receive each event after its operation commits.
EventHandler = Callable[[ProtocolEvent], None]
