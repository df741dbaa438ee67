"""
conftest.py - Shared pytest fixtures for nftlend tests

Provides common fixtures used across unit, functional and conformance tests:
- Ledgers (empty, with a token and a collection)
- A LendingProtocol with funded lenders and a listed item
- Helpers live in tests/helpers.py
"""

import pytest

from nftlend import (
    Ledger,
    LedgerToken,
    LedgerNFTCollection,
    LendingProtocol,
)

from tests.helpers import WAD, T0, list_item, make_offer


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("test", T0, verbose=False)


@pytest.fixture
def usdc(empty_ledger):
    """18-decimal style token on the test ledger."""
    return LedgerToken(empty_ledger, "USDC", "USD Coin")


@pytest.fixture
def punks(empty_ledger):
    """Collection with items 1-3 minted to alice and 4 minted to carol."""
    collection = LedgerNFTCollection(empty_ledger, "punks", "Punks")
    for asset_id in (1, 2, 3):
        collection.mint("alice", asset_id)
    collection.mint("carol", 4)
    return collection


# =============================================================================
# PROTOCOL FIXTURES
# =============================================================================

@pytest.fixture
def protocol(empty_ledger, usdc, punks):
    """Protocol with bob and dave funded with 1,000 tokens each."""
    for lender in ("bob", "dave"):
        usdc.mint(lender, 1_000 * WAD)
    usdc.mint("alice", 100 * WAD)
    return LendingProtocol(empty_ledger, usdc)


@pytest.fixture
def listed(protocol, punks):
    """Protocol with alice's item 1 listed."""
    list_item(protocol, punks, 1, "alice")
    return protocol


@pytest.fixture
def accepted(listed):
    """Offer 0 (bob, 10 tokens, 500 bps, 100 days) accepted by alice at T0."""
    offer_id = make_offer(listed, "bob", "punks", 1)
    listed.accept_offer(offer_id, "alice")
    return listed, offer_id
