"""Single-phase payouts from the house pool.

The service holds the pool key, so validation, signing, submission and
confirmation happen in one request. Once the network confirms the
transfer the bookkeeping debit must be recorded; if that write fails,
funds have left the pool without being booked and the error is surfaced
as critical.
"""

import logging
from decimal import Decimal

from payrail.errors import (
    ConfirmationTimeoutError,
    CriticalBookkeepingError,
    InsufficientFundsError,
    SettlementError,
    SubmissionError,
    ValidationError,
)
from payrail.ledger.models import EntryStatus, TransferKind
from payrail.rails.base import RailContext, TransferOutcome, make_memo
from payrail.settlement.transaction import build_unsigned_transfer
from payrail.signing.base import SigningError
from payrail.signing.factory import get_house_signer
from payrail.utils.amounts import format_sol, quantize_sol, sol_to_lamports

logger = logging.getLogger(__name__)


class CustodialPayoutExecutor:
    """Pays out from the house pool against a user's bookkeeping balance."""

    def __init__(self, ctx: RailContext):
        self.ctx = ctx

    async def payout(
        self,
        user_id: str,
        amount: Decimal,
        destination: str,
        kind: TransferKind = TransferKind.CUSTODIAL_WITHDRAWAL,
    ) -> TransferOutcome:
        """Validate, sign, submit and confirm a pool payout, then book it."""
        ctx = self.ctx
        ctx.require_address(destination, "destinationAddress")

        try:
            signer = get_house_signer()
        except SigningError as e:
            logger.error(f"House wallet signer unavailable: {e}")
            raise SettlementError("Withdrawal service not available", details=str(e))
        house_address = signer.address
        if destination == house_address:
            raise ValidationError("Destination must not be the house wallet")

        await ctx.tracker.enforce(user_id, amount)

        custodial = await ctx.repo.get_custodial_balance(user_id)
        custodial_amount = quantize_sol(custodial.amount) if custodial else Decimal("0")
        if custodial_amount < amount:
            raise InsufficientFundsError(
                f"Insufficient custodial balance. Available: {format_sol(custodial_amount)} SOL",
                details={"available": format_sol(custodial_amount), "required": format_sol(amount)},
            )

        await ctx.reconciler.require_funds(
            house_address,
            amount,
            buffer=ctx.settings.house_fee_buffer + ctx.settings.house_wallet_reserve,
            label="house wallet",
        )

        memo = make_memo(kind, user_id)
        entry = await ctx.repo.create_entry(
            user_id=user_id,
            kind=kind,
            amount=amount,
            status=EntryStatus.PROCESSING,
            source_address=house_address,
            destination_address=destination,
            meta={"memo": memo, "rail": "custodial"},
        )
        await ctx.commit()

        stage = "submit"
        try:
            checkpoint = await ctx.network.get_latest_blockhash()
            tx_bytes = build_unsigned_transfer(
                source=house_address,
                destination=destination,
                lamports=sol_to_lamports(amount),
                recent_blockhash=checkpoint.blockhash,
                memo=memo,
            )
            try:
                signed = await signer.sign_transaction(tx_bytes)
            except SigningError as e:
                raise SubmissionError(f"House wallet signing failed: {e}")
            signature = await ctx.network.send_raw_transaction(signed)
            await ctx.repo.set_external_ref(entry.id, signature)
            await ctx.commit()

            stage = "confirm"
            await ctx.network.confirm_transaction(signature, ctx.settings.confirmation_timeout)
        except ConfirmationTimeoutError as e:
            # Sent but unconfirmed: the transfer may still land
            await ctx.repo.transition_entry(
                entry.id,
                EntryStatus.VERIFICATION_FAILED,
                meta={"error": e.message, "stage": stage},
            )
            await ctx.commit()
            logger.error(f"Payout #{entry.id} for user {user_id} unconfirmed: {e.message}")
            raise
        except SettlementError as e:
            await ctx.repo.transition_entry(
                entry.id,
                EntryStatus.FAILED,
                meta={"error": e.message, "stage": stage},
            )
            await ctx.commit()
            logger.warning(f"Payout #{entry.id} for user {user_id} failed at {stage}: {e.message}")
            raise

        try:
            balance = await ctx.repo.debit_custodial(user_id, amount)
            await ctx.repo.transition_entry(entry.id, EntryStatus.COMPLETED, external_ref=signature)
            await ctx.commit()
        except Exception as e:
            await ctx.session.rollback()
            logger.critical(
                f"CRITICAL: payout {signature} confirmed on chain but debit failed "
                f"for user {user_id} ({amount} SOL): {e}"
            )
            raise CriticalBookkeepingError(
                "Withdrawal completed but balance update failed. Please contact support.",
                transaction_id=signature,
                details=str(e),
            )

        new_balance = quantize_sol(balance.amount)
        logger.info(f"Payout #{entry.id} completed for user {user_id}: {amount} SOL, tx {signature}")

        limits = await ctx.tracker.check_limit(user_id)
        await ctx.repo.record_daily_usage(user_id, limits.used)
        await ctx.commit()
        await ctx.notifier.notify(user_id, kind.value, amount, signature)
        return TransferOutcome(
            transaction_id=signature,
            new_balance=new_balance,
            limits=limits,
            entry_id=entry.id,
        )
