"""Two-phase transfers from user-held self-custody wallets.

The service never holds the user's key. Phase 1 returns an unsigned
transaction and writes nothing to the ledger (unless the client asked to
sign and submit on its own, in which case a `pending` entry is kept for
later confirmation). Phase 2 accepts the signed transaction, re-validates,
submits and waits for confirmation with a bounded timeout.
"""

import logging
from decimal import Decimal
from typing import Optional

from payrail.errors import (
    CriticalBookkeepingError,
    PayrailError,
    SettlementError,
    ValidationError,
)
from payrail.ledger.models import EntryStatus, TransferKind, WalletRecord
from payrail.rails.base import Quote, RailContext, TransferOutcome, make_memo
from payrail.services.daily_limits import LimitCheck
from payrail.settlement.transaction import (
    build_unsigned_transfer,
    decode_transaction,
    decode_transfer,
    encode_transaction,
    verify_signatures,
)
from payrail.utils.amounts import sol_to_lamports

logger = logging.getLogger(__name__)


class SelfCustodyCoordinator:
    """Coordinates quote and submit phases for client-signed transfers."""

    def __init__(self, ctx: RailContext):
        self.ctx = ctx

    async def _validate(
        self,
        user_id: str,
        amount: Decimal,
        destination: str,
        wallet_address: Optional[str],
    ) -> tuple[WalletRecord, LimitCheck, Decimal]:
        """Validate wallet, destination, daily limit and network balance."""
        ctx = self.ctx
        ctx.require_address(destination, "destinationAddress")
        if wallet_address is not None:
            ctx.require_address(wallet_address, "walletAddress")

        wallet = await ctx.reconciler.get_wallet(user_id)
        if wallet_address is not None and wallet_address != wallet.address:
            raise ValidationError(
                "Wallet address does not match the registered wallet",
                details={"registered": wallet.address, "provided": wallet_address},
            )
        if destination == wallet.address:
            raise ValidationError("Destination must differ from the source wallet")

        limits = await ctx.tracker.enforce(user_id, amount)
        balance = await ctx.reconciler.require_funds(wallet.address, amount)
        return wallet, limits, balance

    async def quote(
        self,
        user_id: str,
        amount: Decimal,
        destination: str,
        wallet_address: Optional[str] = None,
        kind: TransferKind = TransferKind.SELF_CUSTODY_WITHDRAWAL,
        record_pending: bool = False,
    ) -> Quote:
        """Phase 1: build an unsigned transfer for the client to sign."""
        ctx = self.ctx
        wallet, limits, balance = await self._validate(user_id, amount, destination, wallet_address)
        await ctx.repo.touch_wallet_balance(user_id, balance)

        checkpoint = await ctx.network.get_latest_blockhash()
        memo = make_memo(kind, user_id)
        tx_bytes = build_unsigned_transfer(
            source=wallet.address,
            destination=destination,
            lamports=sol_to_lamports(amount),
            recent_blockhash=checkpoint.blockhash,
            memo=memo,
        )
        unsigned = encode_transaction(tx_bytes)

        entry_id = None
        if record_pending:
            entry = await ctx.repo.create_entry(
                user_id=user_id,
                kind=kind,
                amount=amount,
                status=EntryStatus.PENDING,
                source_address=wallet.address,
                destination_address=destination,
                meta={
                    "memo": memo,
                    "blockhash": checkpoint.blockhash,
                    "lastValidBlockHeight": checkpoint.last_valid_block_height,
                    "unsignedTransaction": unsigned,
                    "autoSign": True,
                },
            )
            entry_id = entry.id
            logger.info(f"Recorded pending {kind.value} #{entry.id} for user {user_id}: {amount} SOL")

        logger.info(f"Quoted {kind.value} for user {user_id}: {amount} SOL -> {destination}")
        return Quote(
            unsigned_transaction=unsigned,
            source=wallet.address,
            destination=destination,
            amount=amount,
            current_balance=balance,
            estimated_fee=ctx.settings.fee_buffer,
            memo=memo,
            blockhash=checkpoint.blockhash,
            last_valid_block_height=checkpoint.last_valid_block_height,
            limits=limits,
            entry_id=entry_id,
        )

    def _check_signed(
        self,
        tx_bytes: bytes,
        wallet: WalletRecord,
        destination: str,
        amount: Decimal,
        kind: TransferKind,
        user_id: str,
    ):
        """The signed transaction must be the transfer that was quoted."""
        transfer = decode_transfer(tx_bytes)
        mismatches = []
        if transfer.fee_payer != wallet.address or transfer.source != wallet.address:
            mismatches.append("source")
        if transfer.destination != destination:
            mismatches.append("destination")
        if transfer.lamports != sol_to_lamports(amount):
            mismatches.append("amount")
        if not transfer.memo or not transfer.memo.startswith(f"{kind.value}-{user_id}-"):
            mismatches.append("memo")
        if mismatches:
            raise ValidationError(
                "Signed transaction does not match the requested transfer",
                details={"mismatched": mismatches},
            )
        if not transfer.is_signed or not verify_signatures(tx_bytes):
            raise ValidationError("Signed transaction has a missing or invalid signature")
        return transfer

    async def submit(
        self,
        user_id: str,
        amount: Decimal,
        destination: str,
        signed_transaction: str,
        wallet_address: Optional[str] = None,
        kind: TransferKind = TransferKind.SELF_CUSTODY_WITHDRAWAL,
        credit_custodial: bool = False,
    ) -> TransferOutcome:
        """Phase 2: re-validate, submit and confirm a client-signed transfer.

        Every attempt that reaches submission leaves a ledger entry:
        `completed` on confirmation, `failed` with the error otherwise.
        """
        ctx = self.ctx
        wallet, _, _ = await self._validate(user_id, amount, destination, wallet_address)

        tx_bytes = decode_transaction(signed_transaction)
        transfer = self._check_signed(tx_bytes, wallet, destination, amount, kind, user_id)
        if await ctx.repo.get_completed_entry_by_ref(transfer.signature):
            raise ValidationError(
                "Transaction already processed", details={"transactionId": transfer.signature}
            )

        entry = await ctx.repo.create_entry(
            user_id=user_id,
            kind=kind,
            amount=amount,
            status=EntryStatus.PROCESSING,
            source_address=wallet.address,
            destination_address=destination,
            meta={"memo": transfer.memo, "blockhash": transfer.recent_blockhash},
        )
        await ctx.commit()

        stage = "submit"
        try:
            signature = await ctx.network.send_raw_transaction(tx_bytes)
            await ctx.repo.set_external_ref(entry.id, signature)
            await ctx.commit()
            stage = "confirm"
            await ctx.network.confirm_transaction(signature, ctx.settings.confirmation_timeout)
        except SettlementError as e:
            await ctx.repo.transition_entry(
                entry.id,
                EntryStatus.FAILED,
                meta={"error": e.message, "stage": stage},
            )
            await ctx.commit()
            logger.warning(f"{kind.value} #{entry.id} for user {user_id} failed at {stage}: {e.message}")
            raise

        try:
            await ctx.repo.transition_entry(entry.id, EntryStatus.COMPLETED, external_ref=signature)
            if credit_custodial:
                await ctx.repo.credit_custodial(user_id, amount)
            await ctx.commit()
        except Exception as e:
            await ctx.session.rollback()
            logger.critical(
                f"CRITICAL: {kind.value} {signature} confirmed on chain but not booked "
                f"for user {user_id} ({amount} SOL): {e}"
            )
            raise CriticalBookkeepingError(
                "Transfer completed but balance update failed. Please contact support.",
                transaction_id=signature,
                details=str(e),
            )

        logger.info(f"{kind.value} #{entry.id} completed for user {user_id}: {amount} SOL, tx {signature}")
        return await self._finish(user_id, amount, signature, entry.id, kind)

    async def _finish(
        self, user_id: str, amount: Decimal, signature: str, entry_id: int, kind: TransferKind
    ) -> TransferOutcome:
        """Refresh advisory caches after a booked transfer."""
        ctx = self.ctx
        try:
            new_balance = await ctx.reconciler.refresh_cached_balance(user_id)
        except PayrailError as e:
            logger.warning(f"Balance refresh after {signature} failed: {e.message}")
            wallet = await ctx.repo.get_wallet(user_id)
            new_balance = wallet.balance if wallet else Decimal("0")

        limits = await ctx.tracker.check_limit(user_id)
        await ctx.repo.record_daily_usage(user_id, limits.used)
        await ctx.commit()
        await ctx.notifier.notify(user_id, kind.value, amount, signature)
        return TransferOutcome(
            transaction_id=signature,
            new_balance=new_balance,
            limits=limits,
            entry_id=entry_id,
        )
