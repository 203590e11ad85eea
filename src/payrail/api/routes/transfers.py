"""Withdrawal, rail-to-rail transfer and confirmation endpoints."""

import logging

from fastapi import APIRouter

from payrail.api.contracts import (
    ConfirmRequest,
    CustodialWithdrawRequest,
    RailTransferRequest,
    WithdrawRequest,
)
from payrail.ledger.database import get_db
from payrail.ledger.models import TransferKind
from payrail.rails.base import RailContext, TransferRequest
from payrail.rails.router import RailRouter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/withdraw")
async def withdraw(request: WithdrawRequest):
    """Self-custody withdrawal.

    Without `signedTransaction` returns an unsigned transaction to sign.
    With it, submits and confirms the signed transaction.
    """
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        result = await rails.dispatch(
            TransferRequest(
                user_id=request.user_id,
                kind=TransferKind.SELF_CUSTODY_WITHDRAWAL,
                amount=request.amount,
                destination_address=request.destination_address,
                wallet_address=request.wallet_address,
                signed_transaction=request.signed_transaction,
                auto_sign=request.auto_sign,
            )
        )
        return result.to_dict()


@router.post("/withdraw/custodial")
async def withdraw_custodial(request: CustodialWithdrawRequest):
    """Payout from the house pool against the user's custodial balance."""
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        result = await rails.dispatch(
            TransferRequest(
                user_id=request.user_id,
                kind=TransferKind.CUSTODIAL_WITHDRAWAL,
                amount=request.amount,
                destination_address=request.destination_address,
            )
        )
        return result.to_dict()


@router.post("/transfer/rail-to-rail")
async def rail_to_rail(request: RailTransferRequest):
    """Move value between the self-custody wallet and the custodial pool."""
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        result = await rails.dispatch(
            TransferRequest(
                user_id=request.user_id,
                kind=TransferKind.RAIL_TRANSFER,
                amount=request.amount,
                signed_transaction=request.signed_transaction,
                auto_sign=request.auto_sign,
                direction=request.direction,
            )
        )
        body = result.to_dict()
        body["direction"] = request.direction.value
        return body


@router.post("/confirm")
async def confirm(request: ConfirmRequest):
    """Verify a client-submitted transaction and finalize its ledger entry."""
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        return await rails.confirm(
            request.user_id,
            request.transaction_id,
            request.amount,
            request.destination_address,
        )
