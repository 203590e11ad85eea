"""Confirmation of client-submitted transactions.

Used by flows where the client signs and submits on its own, then asks
the server to finalize bookkeeping. The network is the source of truth:
a verified transaction always ends with exactly one `completed` entry,
even when the original `pending` entry was lost.
"""

import logging
from decimal import Decimal
from typing import Optional

from payrail.errors import CriticalBookkeepingError, SettlementError, ValidationError
from payrail.ledger.models import EntryStatus, TransactionLedgerEntry, TransferKind
from payrail.rails.base import RailContext
from payrail.settlement.base import OnChainTransaction
from payrail.utils.amounts import sol_to_lamports

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Verifies external references and repairs ledger state."""

    def __init__(self, ctx: RailContext):
        self.ctx = ctx

    def _healed_kind(self, destination: str) -> TransferKind:
        if destination == self.ctx.house_address:
            return TransferKind.RAIL_TRANSFER
        return TransferKind.SELF_CUSTODY_WITHDRAWAL

    async def _verify(
        self, source: str, external_ref: str, amount: Decimal, destination: str
    ) -> tuple[Optional[OnChainTransaction], Optional[str]]:
        """Return (transaction, error). `error` is set when the outcome is unknown."""
        try:
            tx = await self.ctx.network.get_transaction(external_ref)
        except SettlementError as e:
            return None, e.message

        if not tx.found:
            return tx, "Transaction not found on the settlement network"

        if tx.source is None or tx.destination is None or tx.lamports is None:
            return None, "On-chain transaction carries no System transfer"

        mismatches = []
        if tx.destination != destination:
            mismatches.append("destination")
        if tx.lamports != sol_to_lamports(amount):
            mismatches.append("amount")
        if tx.source != source:
            mismatches.append("source")
        if mismatches:
            return None, f"On-chain transfer does not match request: {', '.join(mismatches)}"
        return tx, None

    async def _settle(
        self,
        entry: Optional[TransactionLedgerEntry],
        status: EntryStatus,
        user_id: str,
        kind: TransferKind,
        amount: Decimal,
        destination: str,
        external_ref: str,
        meta: dict,
    ) -> TransactionLedgerEntry:
        """Finalize the pending entry, or insert a new one in `status`."""
        repo = self.ctx.repo
        if entry is not None:
            await repo.transition_entry(entry.id, EntryStatus.PROCESSING, external_ref=external_ref)
            return await repo.transition_entry(entry.id, status, meta=meta)

        wallet = await repo.get_wallet(user_id)
        return await repo.create_entry(
            user_id=user_id,
            kind=kind,
            amount=amount,
            status=status,
            source_address=wallet.address if wallet else None,
            destination_address=destination,
            external_ref=external_ref,
            meta={**meta, "healed": True},
        )

    async def confirm(
        self,
        user_id: str,
        external_ref: str,
        amount: Decimal,
        destination: str,
    ) -> dict:
        """Verify a transaction on chain and converge the ledger to it."""
        ctx = self.ctx
        repo = ctx.repo
        ctx.require_address(destination, "destinationAddress")
        wallet = await ctx.reconciler.get_wallet(user_id)

        existing = await repo.get_completed_entry_by_ref(external_ref)
        if existing is not None:
            if existing.user_id != user_id:
                logger.warning(
                    f"User {user_id} tried to confirm {external_ref}, booked for {existing.user_id}"
                )
                raise ValidationError(
                    "Transaction already booked for another user",
                    details={"transactionId": external_ref},
                )
            logger.info(f"Transaction {external_ref} already booked, nothing to do")
            return {
                "confirmed": True,
                "databaseUpdated": False,
                "transactionId": external_ref,
                "status": EntryStatus.COMPLETED.value,
            }

        pending = await repo.find_pending_match(user_id, amount, destination)
        kind = TransferKind(pending.kind) if pending else self._healed_kind(destination)
        tx, error = await self._verify(wallet.address, external_ref, amount, destination)

        if error is None and tx.succeeded:
            status = EntryStatus.COMPLETED
            meta = {"confirmedVia": "confirm", "slot": tx.slot}
        elif error is None:
            status = EntryStatus.FAILED
            meta = {"error": f"Transaction failed on chain: {tx.err}"}
        else:
            status = EntryStatus.VERIFICATION_FAILED
            meta = {"error": error}
            prior = await repo.get_entry_by_ref(external_ref)
            if (
                prior is not None
                and prior.user_id == user_id
                and prior.status == status.value
                and pending is None
            ):
                return {
                    "confirmed": False,
                    "databaseUpdated": False,
                    "transactionId": external_ref,
                    "status": status.value,
                    "error": error,
                }

        if status != EntryStatus.COMPLETED:
            entry = await self._settle(
                pending, status, user_id, kind, amount, destination, external_ref, meta
            )
            await ctx.commit()
            logger.warning(f"Confirm {external_ref} for user {user_id}: {status.value} ({meta['error']})")
            return {
                "confirmed": False,
                "databaseUpdated": True,
                "transactionId": external_ref,
                "status": status.value,
                "entryId": entry.id,
                "error": meta["error"],
            }

        try:
            entry = await self._settle(
                pending, status, user_id, kind, amount, destination, external_ref, meta
            )
            if kind == TransferKind.RAIL_TRANSFER and destination == ctx.house_address:
                await repo.credit_custodial(user_id, amount)
            await ctx.commit()
        except Exception as e:
            await ctx.session.rollback()
            logger.critical(
                f"CRITICAL: {external_ref} verified on chain but not booked for user {user_id}: {e}"
            )
            raise CriticalBookkeepingError(
                "Transaction confirmed but ledger update failed. Please contact support.",
                transaction_id=external_ref,
                details=str(e),
            )

        healed = pending is None
        logger.info(
            f"Confirmed {external_ref} for user {user_id}: {amount} SOL "
            f"({'healed' if healed else f'pending #{entry.id}'})"
        )

        limits = await ctx.tracker.check_limit(user_id)
        await repo.record_daily_usage(user_id, limits.used)
        await ctx.commit()
        await ctx.notifier.notify(user_id, kind.value, amount, external_ref)
        return {
            "confirmed": True,
            "databaseUpdated": True,
            "transactionId": external_ref,
            "status": status.value,
            "entryId": entry.id,
            "healed": healed,
            "dailyLimits": limits.to_dict(),
        }
