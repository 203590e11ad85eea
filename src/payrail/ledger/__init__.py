"""Ledger module for transaction records, wallets and custodial balances."""

from payrail.ledger.database import close_db, get_db, init_db
from payrail.ledger.models import (
    WITHDRAWAL_KINDS,
    CustodialBalance,
    EntryStatus,
    Rail,
    TransactionLedgerEntry,
    TransferKind,
    WalletRecord,
)
from payrail.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "TransactionLedgerEntry",
    "WalletRecord",
    "CustodialBalance",
    # Enums
    "EntryStatus",
    "Rail",
    "TransferKind",
    "WITHDRAWAL_KINDS",
    # Database
    "get_db",
    "init_db",
    "close_db",
    "LedgerRepository",
]
