"""Repository for ledger operations."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payrail.errors import InsufficientFundsError, InvalidTransitionError, NotFoundError
from payrail.ledger.models import (
    ALLOWED_TRANSITIONS,
    WITHDRAWAL_KINDS,
    CustodialBalance,
    EntryStatus,
    Rail,
    TransactionLedgerEntry,
    TransferKind,
    WalletRecord,
    utcnow,
)
from payrail.utils.amounts import quantize_sol


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _for_update(self, stmt):
        """Add FOR UPDATE on PostgreSQL. SQLite uses implicit locking."""
        dialect = self.session.bind.dialect.name if self.session.bind else "sqlite"
        if dialect == "postgresql":
            return stmt.with_for_update()
        return stmt

    # Ledger entry operations
    async def create_entry(
        self,
        user_id: str,
        kind: TransferKind,
        amount: Decimal,
        status: EntryStatus = EntryStatus.PENDING,
        source_address: Optional[str] = None,
        destination_address: Optional[str] = None,
        external_ref: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> TransactionLedgerEntry:
        """Append a ledger entry. Any initial status is allowed."""
        now = utcnow()
        entry = TransactionLedgerEntry(
            user_id=user_id,
            kind=TransferKind(kind).value,
            amount=quantize_sol(amount),
            source_address=source_address,
            destination_address=destination_address,
            external_ref=external_ref,
            status=EntryStatus(status).value,
            meta=dict(meta) if meta else {},
            created_at=now,
            updated_at=now,
            completed_at=now if status == EntryStatus.COMPLETED else None,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_entry(self, entry_id: int) -> Optional[TransactionLedgerEntry]:
        """Get ledger entry by ID."""
        stmt = select(TransactionLedgerEntry).where(TransactionLedgerEntry.id == entry_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition_entry(
        self,
        entry_id: int,
        status: EntryStatus,
        external_ref: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> TransactionLedgerEntry:
        """Move an entry to a new status.

        Raises InvalidTransitionError when the move is not allowed by the
        status state machine. `meta` is merged into the existing metadata.
        """
        entry = await self.get_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Ledger entry {entry_id} not found")

        current = EntryStatus(entry.status)
        target = EntryStatus(status)
        if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(
                f"Ledger entry {entry_id} cannot move from {current.value} to {target.value}"
            )

        entry.status = target.value
        if external_ref:
            entry.external_ref = external_ref
        if meta:
            # Reassign so the JSON column is flagged dirty
            entry.meta = {**(entry.meta or {}), **meta}
        if target == EntryStatus.COMPLETED:
            entry.completed_at = utcnow()

        await self.session.flush()
        return entry

    async def set_external_ref(self, entry_id: int, external_ref: str) -> TransactionLedgerEntry:
        """Record the settlement reference of an in-flight entry."""
        entry = await self.get_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Ledger entry {entry_id} not found")
        entry.external_ref = external_ref
        await self.session.flush()
        return entry

    async def get_entry_by_ref(self, external_ref: str) -> Optional[TransactionLedgerEntry]:
        """Get the most recent entry carrying a settlement reference."""
        stmt = (
            select(TransactionLedgerEntry)
            .where(TransactionLedgerEntry.external_ref == external_ref)
            .order_by(TransactionLedgerEntry.created_at.desc(), TransactionLedgerEntry.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_completed_entry_by_ref(
        self, external_ref: str
    ) -> Optional[TransactionLedgerEntry]:
        """Get the completed entry for a settlement reference, if any."""
        stmt = (
            select(TransactionLedgerEntry)
            .where(
                TransactionLedgerEntry.external_ref == external_ref,
                TransactionLedgerEntry.status == EntryStatus.COMPLETED.value,
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_pending_match(
        self,
        user_id: str,
        amount: Decimal,
        destination_address: str,
        kinds: Sequence[TransferKind] = WITHDRAWAL_KINDS,
    ) -> Optional[TransactionLedgerEntry]:
        """Find the most recent pending entry matching user, amount and destination."""
        stmt = (
            select(TransactionLedgerEntry)
            .where(
                TransactionLedgerEntry.user_id == user_id,
                TransactionLedgerEntry.status == EntryStatus.PENDING.value,
                TransactionLedgerEntry.destination_address == destination_address,
                TransactionLedgerEntry.kind.in_([TransferKind(k).value for k in kinds]),
            )
            .order_by(TransactionLedgerEntry.created_at.desc(), TransactionLedgerEntry.id.desc())
        )
        result = await self.session.execute(stmt)
        target = quantize_sol(amount)
        # Compare in Python: SQLite stores Numeric as REAL
        for entry in result.scalars():
            if quantize_sol(entry.amount) == target:
                return entry
        return None

    async def sum_completed_withdrawals(
        self, user_id: str, start: datetime, end: datetime
    ) -> Decimal:
        """Sum completed withdrawal-kind entries with start <= created_at < end."""
        stmt = select(func.coalesce(func.sum(TransactionLedgerEntry.amount), 0)).where(
            TransactionLedgerEntry.user_id == user_id,
            TransactionLedgerEntry.status == EntryStatus.COMPLETED.value,
            TransactionLedgerEntry.kind.in_([k.value for k in WITHDRAWAL_KINDS]),
            TransactionLedgerEntry.created_at >= start,
            TransactionLedgerEntry.created_at < end,
        )
        result = await self.session.execute(stmt)
        return quantize_sol(result.scalar_one())

    async def get_user_entries(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[TransactionLedgerEntry]:
        """Get a user's ledger entries, newest first."""
        stmt = (
            select(TransactionLedgerEntry)
            .where(TransactionLedgerEntry.user_id == user_id)
            .order_by(TransactionLedgerEntry.created_at.desc(), TransactionLedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_entries_by_status(
        self, statuses: Sequence[EntryStatus], limit: int = 100
    ) -> list[TransactionLedgerEntry]:
        """Get entries in the given statuses, oldest first."""
        stmt = (
            select(TransactionLedgerEntry)
            .where(TransactionLedgerEntry.status.in_([EntryStatus(s).value for s in statuses]))
            .order_by(TransactionLedgerEntry.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_entries(self, user_id: Optional[str] = None) -> int:
        """Count ledger entries, optionally for one user."""
        stmt = select(func.count(TransactionLedgerEntry.id))
        if user_id is not None:
            stmt = stmt.where(TransactionLedgerEntry.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    # Wallet operations
    async def get_wallet(
        self, user_id: str, rail: Rail = Rail.SELF_CUSTODY
    ) -> Optional[WalletRecord]:
        """Get a user's wallet record for a rail."""
        stmt = select(WalletRecord).where(
            WalletRecord.user_id == user_id, WalletRecord.rail == Rail(rail).value
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_wallet(
        self, user_id: str, address: str, rail: Rail = Rail.SELF_CUSTODY
    ) -> WalletRecord:
        """Bind an address to a user's rail, creating the record on first use."""
        wallet = await self.get_wallet(user_id, rail)
        if wallet is None:
            wallet = WalletRecord(
                user_id=user_id,
                rail=Rail(rail).value,
                address=address,
                balance=Decimal("0"),
                daily_transfer_used=Decimal("0"),
            )
            self.session.add(wallet)
        else:
            wallet.address = address
        await self.session.flush()
        return wallet

    async def touch_wallet_balance(
        self, user_id: str, balance: Decimal, rail: Rail = Rail.SELF_CUSTODY
    ) -> WalletRecord:
        """Store the last known network balance of a wallet."""
        wallet = await self.get_wallet(user_id, rail)
        if wallet is None:
            raise NotFoundError(f"No {Rail(rail).value} wallet registered for user {user_id}")
        wallet.balance = quantize_sol(balance)
        wallet.last_balance_sync = utcnow()
        await self.session.flush()
        return wallet

    async def record_daily_usage(
        self, user_id: str, used: Decimal, rail: Rail = Rail.SELF_CUSTODY
    ) -> Optional[WalletRecord]:
        """Mirror the derived daily usage onto the wallet record for display."""
        wallet = await self.get_wallet(user_id, rail)
        if wallet is None:
            return None
        now = utcnow()
        wallet.daily_transfer_used = quantize_sol(used)
        wallet.daily_reset_at = now.replace(hour=0, minute=0, second=0, microsecond=0)
        wallet.last_used = now
        await self.session.flush()
        return wallet

    # Custodial balance operations
    async def get_custodial_balance(self, user_id: str) -> Optional[CustodialBalance]:
        """Get a user's custodial bookkeeping balance."""
        stmt = self._for_update(
            select(CustodialBalance).where(CustodialBalance.user_id == user_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_custodial_balance(self, user_id: str) -> CustodialBalance:
        """Get or create a custodial balance record."""
        balance = await self.get_custodial_balance(user_id)
        if balance is None:
            balance = CustodialBalance(
                user_id=user_id,
                amount=Decimal("0"),
                total_deposited=Decimal("0"),
                total_withdrawn=Decimal("0"),
            )
            self.session.add(balance)
            await self.session.flush()
        return balance

    async def credit_custodial(self, user_id: str, amount: Decimal) -> CustodialBalance:
        """Add amount to a user's custodial balance."""
        balance = await self.get_or_create_custodial_balance(user_id)
        balance.amount = quantize_sol(balance.amount + amount)
        balance.total_deposited = quantize_sol(balance.total_deposited + amount)
        await self.session.flush()
        return balance

    async def debit_custodial(self, user_id: str, amount: Decimal) -> CustodialBalance:
        """Subtract amount from a user's custodial balance.

        Raises InsufficientFundsError if the balance does not cover it.
        """
        balance = await self.get_or_create_custodial_balance(user_id)
        if quantize_sol(balance.amount) < amount:
            raise InsufficientFundsError(
                f"Insufficient custodial balance: have {quantize_sol(balance.amount)}, need {amount}"
            )
        balance.amount = quantize_sol(balance.amount - amount)
        balance.total_withdrawn = quantize_sol(balance.total_withdrawn + amount)
        await self.session.flush()
        return balance
