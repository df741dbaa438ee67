"""
nftlend - Peer-to-Peer Lending Against Non-Fungible Collateral

Holders of unique items pledge them as collateral and borrow a fungible token
on terms proposed by lenders. Balances live in a double-entry Ledger.

Usage:
    from nftlend import Ledger, LedgerToken, LedgerNFTCollection, LendingProtocol

    ledger = Ledger("main", verbose=False)
    usdc = LedgerToken(ledger, "USDC", "USD Coin")
    punks = LedgerNFTCollection(ledger, "punks")
    protocol = LendingProtocol(ledger, usdc)

    punks.mint("alice", 7)
    usdc.mint("bob", 1_000)

    # alice pledges item 7
    punks.approve("alice", protocol.address, 7)
    protocol.list_asset(punks, 7, "alice")

    # bob offers 100 at 500 bps over 30 days
    usdc.approve("bob", protocol.address, 100)
    offer_id = protocol.create_offer("punks", 7, 500, 30 * SECONDS_PER_DAY, 100, "bob")

    # alice borrows, later repays principal + interest
    protocol.accept_offer(offer_id, "alice")
    usdc.approve("alice", protocol.address, 105)
    protocol.repay_lend(offer_id, "alice")
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    LendingError,
    NotOwner,
    InvalidTerms,
    NotListed,
    InsufficientBalance,
    InvalidState,
    Unauthorized,
    InsufficientAllowance,
    ReentrancyDetected,
    SYSTEM_WALLET,
    UNIT_TYPE_FUNGIBLE,
    UNIT_TYPE_NON_FUNGIBLE,
    fungible_token,
    non_fungible_item,
    non_fungible_transfer_rule,
    nft_symbol,
    to_amount,
)

# Ledger
from .ledger import Ledger

# Asset capability sets
from .assets import (
    FungibleAsset,
    NonFungibleAsset,
    LedgerToken,
    LedgerNFTCollection,
)

# Books
from .listings import ListedAsset, ListingRegistry
from .offers import Offer, OfferBook, OfferStatus
from .pool import LiquidityPool

# Interest
from .interest import (
    BPS_SCALE,
    SECONDS_PER_DAY,
    calculate_interest,
    elapsed_seconds,
)

# Guard, events, protocol
from .guard import ReentrancyGuard
from .events import ProtocolEvent, EVENT_NAMES, make_event
from .protocol import LendingProtocol
from .indexer import IndexedState, replay_events, diff_state, DEFAULT_HANDLERS


__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction', 'TransactionOrigin', 'OriginType',
    'build_transaction', 'Unit', 'UnitStateChange',
    'ExecuteResult', 'LedgerError', 'InsufficientFunds', 'BalanceConstraintViolation',
    'TransferRuleViolation', 'UnitNotRegistered', 'WalletNotRegistered',
    'LendingError', 'NotOwner', 'InvalidTerms', 'NotListed', 'InsufficientBalance',
    'InvalidState', 'Unauthorized', 'InsufficientAllowance', 'ReentrancyDetected',
    'SYSTEM_WALLET', 'UNIT_TYPE_FUNGIBLE', 'UNIT_TYPE_NON_FUNGIBLE',
    'fungible_token', 'non_fungible_item', 'non_fungible_transfer_rule', 'nft_symbol', 'to_amount',
    # Ledger
    'Ledger',
    # Assets
    'FungibleAsset', 'NonFungibleAsset', 'LedgerToken', 'LedgerNFTCollection',
    # Books
    'ListedAsset', 'ListingRegistry', 'Offer', 'OfferBook', 'OfferStatus', 'LiquidityPool',
    # Interest
    'BPS_SCALE', 'SECONDS_PER_DAY', 'calculate_interest', 'elapsed_seconds',
    # Protocol
    'ReentrancyGuard', 'ProtocolEvent', 'EVENT_NAMES', 'make_event', 'LendingProtocol',
    'IndexedState', 'replay_events', 'diff_state', 'DEFAULT_HANDLERS',
]
