"""SQLAlchemy models for the ledger."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Numeric, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from payrail.utils.amounts import format_sol


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TransferKind(str, Enum):
    """Kind of value movement recorded in the ledger."""

    CUSTODIAL_WITHDRAWAL = "custodial_withdrawal"
    SELF_CUSTODY_WITHDRAWAL = "self_custody_withdrawal"
    RAIL_TRANSFER = "rail_transfer"
    DEPOSIT = "deposit"


# Kinds that draw from the shared daily cap
WITHDRAWAL_KINDS = (
    TransferKind.CUSTODIAL_WITHDRAWAL,
    TransferKind.SELF_CUSTODY_WITHDRAWAL,
    TransferKind.RAIL_TRANSFER,
)


class EntryStatus(str, Enum):
    """Status of a ledger entry."""

    PENDING = "pending"                          # Accepted, not yet submitted by us
    PROCESSING = "processing"                    # Submitted / being confirmed
    COMPLETED = "completed"                      # Confirmed on chain and booked
    FAILED = "failed"                            # Rejected or timed out
    VERIFICATION_FAILED = "verification_failed"  # Outcome unknown
    CANCELLED = "cancelled"                      # Abandoned before submission

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        EntryStatus.COMPLETED,
        EntryStatus.FAILED,
        EntryStatus.VERIFICATION_FAILED,
        EntryStatus.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: dict[EntryStatus, frozenset[EntryStatus]] = {
    EntryStatus.PENDING: frozenset({EntryStatus.PROCESSING, EntryStatus.CANCELLED}),
    EntryStatus.PROCESSING: frozenset(
        {EntryStatus.COMPLETED, EntryStatus.FAILED, EntryStatus.VERIFICATION_FAILED}
    ),
}


class Rail(str, Enum):
    """Custody path of user funds."""

    CUSTODIAL = "custodial"
    SELF_CUSTODY = "self_custody"


class TransactionLedgerEntry(Base):
    """One attempted value movement. Never deleted."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_user_status_created", "user_id", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    source_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    destination_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    external_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), default=EntryStatus.PENDING.value)
    meta: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "kind": self.kind,
            "amount": format_sol(self.amount),
            "sourceAddress": self.source_address,
            "destinationAddress": self.destination_address,
            "transactionId": self.external_ref,
            "status": self.status,
            "metadata": self.meta or {},
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class WalletRecord(Base):
    """Wallet metadata per (user, rail).

    `balance` and `daily_transfer_used` are advisory caches for display.
    """

    __tablename__ = "wallet_records"
    __table_args__ = (Index("ix_wallet_records_user_rail", "user_id", "rail", unique=True),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    rail: Mapped[str] = mapped_column(String(32), default=Rail.SELF_CUSTODY.value)
    address: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    last_balance_sync: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    daily_transfer_used: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    daily_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "rail": self.rail,
            "address": self.address,
            "balance": format_sol(self.balance),
            "dailyTransferUsed": format_sol(self.daily_transfer_used),
            "lastBalanceSync": (
                self.last_balance_sync.isoformat() if self.last_balance_sync else None
            ),
            "lastUsed": self.last_used.isoformat() if self.last_used else None,
        }


class CustodialBalance(Base):
    """Bookkeeping balance a user holds in the house pool."""

    __tablename__ = "custodial_balances"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    total_deposited: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    total_withdrawn: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
