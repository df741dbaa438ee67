#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Learn the Lending Protocol Step by Step

This is a pedagogical demonstration of NFT-collateralized peer-to-peer
lending on top of the double-entry ledger. Each step builds on the previous
one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:   Foundation  - The ledger, a token, a collection, approvals
  4-6:   Lending     - Listing, offers, acceptance
  7-9:   Settlement  - Interest quotes, repayment, default and redemption
  10-11: Pool        - Deposits and pro-rata interest with retained dust
  12-13: Guarantees  - Atomic aborts, event replay and custody checks

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from nftlend import (
    Ledger, LedgerToken, LedgerNFTCollection, LendingProtocol,
    SECONDS_PER_DAY, LendingError, Unauthorized,
    replay_events, diff_state,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

WAD = 10 ** 18


@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)

    # Initial funding, in whole tokens
    alice_tokens: int = 100
    bob_tokens: int = 1_000
    dave_tokens: int = 1_000

    # Loan terms
    principal_tokens: int = 10
    rate_bps: int = 500
    duration_days: int = 100
    repay_after_days: int = 50

    # Pool
    bob_deposit: int = 60
    dave_deposit: int = 40
    pool_interest: int = 7


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    print(f"\n--- {text} ---\n")


def tokens(amount: Decimal) -> str:
    """Format base units as whole tokens with 18 decimals."""
    return f"{Decimal(amount) / WAD:,.6f}"


def show_balances(token: LedgerToken, accounts):
    for account in accounts:
        print(f"  {account:<16} {tokens(token.balance_of(account)):>16} {token.symbol}")


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-3)
# ============================================================================

def step_01_ledger_and_assets():
    step_header(1, "The Ledger and Its Assets",
        "Tokens and collectibles are both units on one double-entry ledger.")

    print("""
    Every balance lives on a Ledger. A fungible token is one unit; each
    item of a collection is its own unit with a balance of exactly 1 in
    the wallet that owns it. Minting moves value out of the SYSTEM wallet.
    """)
    wait_for_enter()

    ledger = Ledger("lending-tutorial", initial_time=CONFIG.start_time, verbose=False)
    usdc = LedgerToken(ledger, "USDC", "USD Coin")
    punks = LedgerNFTCollection(ledger, "punks", "Punks")

    usdc.mint("alice", CONFIG.alice_tokens * WAD)
    usdc.mint("bob", CONFIG.bob_tokens * WAD)
    usdc.mint("dave", CONFIG.dave_tokens * WAD)
    punks.mint("alice", 1)
    punks.mint("alice", 2)

    section_header("Balances")
    show_balances(usdc, ["alice", "bob", "dave"])
    print(f"\n  punks #1 owner: {punks.owner_of(1)}")
    print(f"  punks #2 owner: {punks.owner_of(2)}")

    section_header("Key Insight")
    check = ledger.verify_double_entry()
    print(f"    Double entry holds: {check['valid']} (every unit sums to zero across wallets)")
    return ledger, usdc, punks


def step_02_protocol(ledger: Ledger, usdc: LedgerToken):
    step_header(2, "The Protocol Account",
        "The protocol holds custody under its own address.")

    protocol = LendingProtocol(ledger, usdc, verbose=True)
    print(f"    Protocol address: {protocol.address}")
    print(f"    Lending token:    {usdc.symbol}")
    print("""
    The protocol can only move what users have approved it to move, just
    like a contract calling transfer_from on a token.
    """)
    return protocol


def step_03_approvals(protocol: LendingProtocol, usdc: LedgerToken, punks: LedgerNFTCollection):
    step_header(3, "Approvals",
        "A transfer out of a caller needs that caller's prior approval.")

    section_header("Without approval")
    try:
        protocol.list_asset(punks, 1, "alice")
    except Unauthorized as exc:
        print(f"    Rejected: {type(exc).__name__}: {exc}")

    section_header("With approval")
    punks.approve("alice", protocol.address, 1)
    punks.approve("alice", protocol.address, 2)
    print(f"    punks #1 approved for: {punks.get_approved(1)}")
    wait_for_enter()


# ============================================================================
# PHASE 2: LENDING (Steps 4-6)
# ============================================================================

def step_04_listing(protocol: LendingProtocol, punks: LedgerNFTCollection):
    step_header(4, "Listing Collateral",
        "Listing escrows the item and records who deposited it.")

    protocol.list_asset(punks, 1, "alice")
    protocol.list_asset(punks, 2, "alice")

    section_header("Listing history")
    for listing in protocol.get_listed():
        print(f"    {listing.asset_contract} #{listing.asset_id} by {listing.owner} at {listing.listed_at}")
    print(f"\n    punks #1 is now held by: {punks.owner_of(1)}")
    wait_for_enter()


def step_05_offers(protocol: LendingProtocol, usdc: LedgerToken):
    step_header(5, "Making Offers",
        "Lenders escrow principal with the protocol when they make an offer.")

    principal = CONFIG.principal_tokens * WAD
    duration = CONFIG.duration_days * SECONDS_PER_DAY

    usdc.approve("bob", protocol.address, principal)
    loan = protocol.create_offer("punks", 1, CONFIG.rate_bps, duration, principal, "bob")

    usdc.approve("dave", protocol.address, principal)
    rival = protocol.create_offer("punks", 1, CONFIG.rate_bps * 2, duration, principal, "dave")

    usdc.approve("dave", protocol.address, principal)
    default = protocol.create_offer("punks", 2, CONFIG.rate_bps, duration, principal, "dave")

    section_header("Offer history for punks #1")
    for offer in protocol.get_offer_history("punks", 1):
        print(f"    #{offer.offer_id}: {offer.lender} lends {tokens(offer.principal)} "
              f"at {offer.interest_rate_bps} bps over {offer.planned_duration // SECONDS_PER_DAY} days")

    section_header("Escrowed principal")
    show_balances(usdc, ["bob", "dave", protocol.address])
    wait_for_enter()
    return loan, rival, default


def step_06_accept(protocol: LendingProtocol, usdc: LedgerToken, loan: int, rival: int, default: int):
    step_header(6, "Accepting an Offer",
        "The depositor accepts one offer; the principal goes to the borrower.")

    protocol.accept_offer(loan, "alice")
    protocol.accept_offer(default, "alice")

    offer = protocol.get_offer(loan)
    print(f"\n    Offer #{loan}: {offer.status.value}, borrower {offer.borrower}")
    print(f"    Term: {offer.start_time} -> {offer.end_time}")
    print(f"    punks #1 still listed: {protocol.is_listed('punks', 1)}")

    section_header("The losing offer")
    print("    The rival lender takes the principal back by cancelling.")
    protocol.cancel_offer(rival, "dave")
    show_balances(usdc, ["alice", "bob", "dave"])
    wait_for_enter()


# ============================================================================
# PHASE 3: SETTLEMENT (Steps 7-9)
# ============================================================================

def step_07_interest(protocol: LendingProtocol, loan: int):
    step_header(7, "Interest Quotes",
        "Interest accrues linearly and both divisions floor.")

    print("""
    per_second = floor(principal * rate_bps / planned_duration)
    interest   = floor(elapsed * per_second / 10000)
    """)
    for days in (1, 25, CONFIG.repay_after_days, CONFIG.duration_days):
        quote = protocol.get_interest(loan, timedelta(days=days))
        print(f"    after {days:>3} days: {tokens(quote)} USDC ({quote} base units)")
    wait_for_enter()


def step_08_repay(ledger: Ledger, protocol: LendingProtocol, usdc: LedgerToken,
                  punks: LedgerNFTCollection, loan: int):
    step_header(8, "Repayment",
        "The borrower pays principal plus interest straight to the lender.")

    ledger.advance_time(CONFIG.start_time + timedelta(days=CONFIG.repay_after_days))
    owed = protocol.get_offer(loan).principal + protocol.get_interest(loan)
    print(f"    Now {ledger.current_time}; alice owes {tokens(owed)} USDC")

    usdc.approve("alice", protocol.address, owed)
    interest = protocol.repay_lend(loan, "alice")

    section_header("After repayment")
    print(f"    Interest paid: {tokens(interest)} USDC")
    print(f"    punks #1 owner: {punks.owner_of(1)}")
    show_balances(usdc, ["alice", "bob"])
    wait_for_enter()


def step_09_redeem(ledger: Ledger, protocol: LendingProtocol, punks: LedgerNFTCollection, default: int):
    step_header(9, "Default and Redemption",
        "After end_time the lender may take the collateral.")

    end_time = protocol.get_offer(default).end_time
    section_header("Too early")
    try:
        protocol.redeem_collateral(default, "dave")
    except LendingError as exc:
        print(f"    Rejected: {type(exc).__name__}: {exc}")

    ledger.advance_time(end_time + timedelta(seconds=1))
    protocol.redeem_collateral(default, "dave")
    print(f"\n    punks #2 owner: {punks.owner_of(2)}")
    print(f"    Offer #{default}: {protocol.get_offer(default).status.value}")
    wait_for_enter()


# ============================================================================
# PHASE 4: POOL (Steps 10-11)
# ============================================================================

def step_10_deposits(protocol: LendingProtocol, usdc: LedgerToken):
    step_header(10, "Liquidity Pool Deposits",
        "Providers deposit tokens and are tracked on a roster.")

    usdc.approve("bob", protocol.address, CONFIG.bob_deposit)
    protocol.deposit(CONFIG.bob_deposit, "bob")
    usdc.approve("dave", protocol.address, CONFIG.dave_deposit)
    protocol.deposit(CONFIG.dave_deposit, "dave")

    for provider in protocol.depositors():
        print(f"    {provider}: {protocol.deposit_of(provider)} base units")
    print(f"    Total deposits: {protocol.total_deposits}")
    wait_for_enter()


def step_11_distribution(protocol: LendingProtocol, usdc: LedgerToken):
    step_header(11, "Pro-Rata Interest",
        "Each share is floored; the remainder stays in the pool as dust.")

    usdc.approve("alice", protocol.address, CONFIG.pool_interest)
    payouts = protocol.pay_pool_interest(CONFIG.pool_interest, "alice")
    for provider, share in payouts.items():
        print(f"    {provider} receives {share}")
    print(f"    Retained dust: {protocol.retained_dust}")
    wait_for_enter()


# ============================================================================
# PHASE 5: GUARANTEES (Steps 12-13)
# ============================================================================

def step_12_atomicity(protocol: LendingProtocol, usdc: LedgerToken):
    step_header(12, "All or Nothing",
        "A failed operation leaves balances, books and events untouched.")

    usdc.mint("carol", WAD)
    before = (usdc.balance_of("carol"), protocol.total_deposits, len(protocol.events))
    try:
        usdc.approve("carol", protocol.address, 5 * WAD)
        protocol.deposit(5 * WAD, "carol")
    except LendingError as exc:
        print(f"    Rejected: {type(exc).__name__}: {exc}")
    after = (usdc.balance_of("carol"), protocol.total_deposits, len(protocol.events))
    print(f"    (balance, deposits, events) before: {before}")
    print(f"    (balance, deposits, events) after:  {after}")
    wait_for_enter()


def step_13_audit(ledger: Ledger, protocol: LendingProtocol):
    step_header(13, "Audit",
        "The event stream rebuilds the books; custody matches the ledger.")

    state = replay_events(protocol.events)
    print(f"    Events published:   {len(protocol.events)}")
    print(f"    Replay differences: {diff_state(state, protocol) or 'none'}")
    custody = protocol.verify_custody()
    print(f"    Custody valid:      {custody['valid']} "
          f"(expected {custody['expected_balance']}, held {custody['actual_balance']})")
    print(f"    Double entry valid: {ledger.verify_double_entry()['valid']}")


def main():
    print("=" * 70)
    print("       NFT-COLLATERALIZED LENDING: AN INTERACTIVE TUTORIAL")
    print("=" * 70)

    ledger, usdc, punks = step_01_ledger_and_assets()
    wait_for_enter()
    protocol = step_02_protocol(ledger, usdc)
    step_03_approvals(protocol, usdc, punks)

    step_04_listing(protocol, punks)
    loan, rival, default = step_05_offers(protocol, usdc)
    step_06_accept(protocol, usdc, loan, rival, default)

    step_07_interest(protocol, loan)
    step_08_repay(ledger, protocol, usdc, punks, loan)
    step_09_redeem(ledger, protocol, punks, default)

    step_10_deposits(protocol, usdc)
    step_11_distribution(protocol, usdc)

    step_12_atomicity(protocol, usdc)
    step_13_audit(ledger, protocol)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See nftlend/protocol.py for the state machine
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
