"""Multi-rail router.

Selects the executor for a request by its declared kind. Amount bounds are
checked before any executor runs, and every outbound path runs under the
per-user transfer lock so the daily cap check and the ledger write of one
request cannot interleave with another of the same user.
"""

import logging
from decimal import Decimal
from typing import Optional, Union

from payrail.errors import NotFoundError, SettlementError, ValidationError
from payrail.ledger.models import EntryStatus, Rail, TransferKind
from payrail.rails.base import (
    Quote,
    RailContext,
    TransferDirection,
    TransferOutcome,
    TransferRequest,
    check_bounds,
)
from payrail.rails.custodial import CustodialPayoutExecutor
from payrail.rails.self_custody import SelfCustodyCoordinator
from payrail.services.daily_limits import LimitCheck
from payrail.services.reconciliation import ReconciliationService
from payrail.utils.amounts import format_sol, quantize_sol, sol_to_lamports
from payrail.utils.locks import user_transfer_lock

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 200


class RailRouter:
    """Entry point for every balance, limit and transfer operation."""

    def __init__(self, ctx: RailContext):
        self.ctx = ctx
        self.self_custody = SelfCustodyCoordinator(ctx)
        self.custodial = CustodialPayoutExecutor(ctx)
        self.reconciliation = ReconciliationService(ctx)

    def _lock(self, user_id: str, operation: str):
        return user_transfer_lock(user_id, timeout=self.ctx.settings.lock_timeout, operation=operation)

    # Transfers
    async def dispatch(self, request: TransferRequest) -> Union[Quote, TransferOutcome]:
        """Route a withdrawal or transfer to its executor."""
        kind = TransferKind(request.kind)
        if kind == TransferKind.DEPOSIT:
            raise ValidationError("Deposits are credited from the settlement network, not requested")

        check_bounds(request.amount, request.bounds_key, self.ctx.settings)

        async with self._lock(request.user_id, request.bounds_key):
            if kind == TransferKind.SELF_CUSTODY_WITHDRAWAL:
                return await self._two_phase(request, request.destination_address, kind)

            if kind == TransferKind.CUSTODIAL_WITHDRAWAL:
                return await self.custodial.payout(
                    request.user_id, request.amount, request.destination_address, kind
                )

            # Rail-to-rail
            if request.direction == TransferDirection.TO_CUSTODIAL:
                return await self._two_phase(
                    request, self.ctx.house_address, kind, credit_custodial=True
                )

            wallet = await self.ctx.reconciler.get_wallet(request.user_id)
            return await self.custodial.payout(request.user_id, request.amount, wallet.address, kind)

    async def _two_phase(
        self,
        request: TransferRequest,
        destination: Optional[str],
        kind: TransferKind,
        credit_custodial: bool = False,
    ) -> Union[Quote, TransferOutcome]:
        if request.signed_transaction is None:
            return await self.self_custody.quote(
                request.user_id,
                request.amount,
                destination,
                wallet_address=request.wallet_address,
                kind=kind,
                record_pending=request.auto_sign,
            )
        return await self.self_custody.submit(
            request.user_id,
            request.amount,
            destination,
            request.signed_transaction,
            wallet_address=request.wallet_address,
            kind=kind,
            credit_custodial=credit_custodial,
        )

    async def confirm(
        self, user_id: str, external_ref: str, amount: Decimal, destination: str
    ) -> dict:
        """Finalize a client-submitted transaction."""
        async with self._lock(user_id, "confirm"):
            return await self.reconciliation.confirm(user_id, external_ref, amount, destination)

    # Limits, wallets and history
    async def limits(self, user_id: str, amount: Decimal = Decimal("0")) -> LimitCheck:
        return await self.ctx.tracker.check_limit(user_id, amount)

    async def register(self, user_id: str, address: str) -> dict:
        """Bind a self-custody address to a user."""
        self.ctx.require_address(address, "walletAddress")
        if address == self.ctx.house_address:
            raise ValidationError("The house wallet cannot be registered as a user wallet")

        wallet = await self.ctx.repo.upsert_wallet(user_id, address)
        try:
            balance = await self.ctx.reconciler.get_authoritative_balance(address)
            wallet = await self.ctx.repo.touch_wallet_balance(user_id, balance)
        except SettlementError as e:
            logger.warning(f"Initial balance sync for {address} failed: {e.message}")
        logger.info(f"Registered wallet {address} for user {user_id}")
        return wallet.to_dict()

    async def balance(self, user_id: str) -> dict:
        """Authoritative wallet balance plus today's limits."""
        balance = await self.ctx.reconciler.refresh_cached_balance(user_id)
        wallet = await self.ctx.repo.get_wallet(user_id)
        limits = await self.ctx.tracker.check_limit(user_id)
        await self.ctx.repo.record_daily_usage(user_id, limits.used)
        return {
            "balance": format_sol(balance),
            "wallet": wallet.to_dict(),
            "dailyLimits": limits.to_dict(),
        }

    async def history(self, user_id: str, limit: int = 50) -> dict:
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        entries = await self.ctx.repo.get_user_entries(user_id, limit=limit)
        return {"transactions": [entry.to_dict() for entry in entries], "count": len(entries)}

    # Custodial pool
    async def custodial_balance(self, user_id: str) -> dict:
        record = await self.ctx.repo.get_custodial_balance(user_id)
        if record is None:
            return {"balance": "0", "walletExists": False, "lastUpdated": None}
        return {
            "balance": format_sol(record.amount),
            "walletExists": True,
            "lastUpdated": record.updated_at.isoformat() if record.updated_at else None,
        }

    def deposit_info(self) -> dict:
        settings = self.ctx.settings
        return {
            "depositAddress": self.ctx.house_address,
            "minDeposit": format_sol(settings.min_deposit),
            "maxDeposit": format_sol(settings.max_deposit),
            "network": "Solana",
            "mode": Rail.CUSTODIAL.value,
        }

    async def credit_deposit(self, user_id: str, external_ref: str, amount: Decimal) -> dict:
        """Credit a verified deposit into the house pool. Idempotent by reference."""
        ctx = self.ctx
        repo = ctx.repo
        amount = quantize_sol(amount)
        if amount <= 0:
            raise ValidationError("Deposit amount must be positive")

        async with self._lock(user_id, "deposit"):
            existing = await repo.get_completed_entry_by_ref(external_ref)
            if existing is not None:
                if existing.kind != TransferKind.DEPOSIT.value or existing.user_id != user_id:
                    raise ValidationError(
                        "Transaction already booked for another movement",
                        details={"transactionId": external_ref},
                    )
                record = await repo.get_custodial_balance(user_id)
                return {
                    "credited": False,
                    "transactionId": external_ref,
                    "balance": format_sol(record.amount if record else None),
                }

            tx = await ctx.network.get_transaction(external_ref)
            if not tx.succeeded:
                raise NotFoundError(
                    "Deposit transaction not found or failed on chain",
                    details={"transactionId": external_ref, "err": tx.err},
                )
            if tx.destination is None or tx.lamports is None:
                raise ValidationError("Deposit transaction carries no System transfer")
            if tx.destination != ctx.house_address:
                raise ValidationError("Deposit was not sent to the house wallet")
            if tx.lamports != sol_to_lamports(amount):
                raise ValidationError("Deposit amount does not match the on-chain transfer")

            await repo.create_entry(
                user_id=user_id,
                kind=TransferKind.DEPOSIT,
                amount=amount,
                status=EntryStatus.COMPLETED,
                source_address=tx.source,
                destination_address=ctx.house_address,
                external_ref=external_ref,
                meta={"slot": tx.slot},
            )
            record = await repo.credit_custodial(user_id, amount)
            await ctx.commit()

        logger.info(f"Deposit {external_ref} credited to user {user_id}: {amount} SOL")
        await ctx.notifier.notify(user_id, TransferKind.DEPOSIT.value, amount, external_ref)
        return {
            "credited": True,
            "transactionId": external_ref,
            "balance": format_sol(record.amount),
        }
