"""
helpers.py - Shared constants and helpers for nftlend tests

Imported by conftest.py and by test modules directly.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Tuple

from nftlend import Ledger, LedgerNFTCollection, LendingProtocol, SECONDS_PER_DAY


# 18-decimal token: one whole token in base units
WAD = 10 ** 18

T0 = datetime(2025, 1, 1)
DAY = timedelta(days=1)


def list_item(protocol: LendingProtocol, collection: LedgerNFTCollection, asset_id: int, owner: str):
    """Approve the protocol for one item and list it."""
    collection.approve(owner, protocol.address, asset_id)
    return protocol.list_asset(collection, asset_id, owner)


def make_offer(
    protocol: LendingProtocol,
    lender: str,
    asset_contract: str,
    asset_id: int,
    principal: Any = 10 * WAD,
    rate_bps: int = 500,
    days: int = 100,
) -> int:
    """Approve the principal and create an offer."""
    protocol.token.approve(lender, protocol.address, principal)
    return protocol.create_offer(
        asset_contract, asset_id, rate_bps, days * SECONDS_PER_DAY, principal, lender
    )


def snapshot(ledger: Ledger, protocol: LendingProtocol) -> Tuple[Dict, Dict, list, list, int]:
    """Everything an aborted operation must leave unchanged."""
    # Zero entries and wallets registered along the way do not count.
    balances = {}
    for wallet in sorted(ledger.list_wallets()):
        held = {u: q for u, q in ledger.get_wallet_balances(wallet).items() if q != 0}
        if held:
            balances[wallet] = held
    states = {symbol: ledger.get_unit_state(symbol) for symbol in ledger.list_units()}
    offers = [protocol.get_offer(i) for i in range(protocol.offer_count)]
    return balances, states, protocol.get_listed(), offers, len(protocol.events)


def verify_conservation(ledger: Ledger) -> bool:
    """Every unit still sums to zero across wallets."""
    return ledger.verify_double_entry()['valid']
