"""Custodial pool endpoints: balance, deposit info and deposit crediting."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException

from payrail.api.contracts import DepositInfoRequest, DepositRequest, UserRequest
from payrail.config import get_settings
from payrail.ledger.database import get_db
from payrail.rails.base import RailContext
from payrail.rails.router import RailRouter

logger = logging.getLogger(__name__)

router = APIRouter()


async def require_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Verify admin token. Operator endpoints are closed when no token is configured."""
    settings = get_settings()
    if not settings.admin_token or x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")
    return True


@router.post("/custodial/balance")
async def custodial_balance(request: UserRequest):
    """Bookkeeping balance the user holds in the house pool."""
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        return await rails.custodial_balance(request.user_id)


@router.post("/custodial/deposit-info")
async def deposit_info(request: DepositInfoRequest):
    """Where to send SOL to fund the custodial balance."""
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        return rails.deposit_info()


@router.post("/deposit", dependencies=[Depends(require_admin_token)])
async def credit_deposit(request: DepositRequest):
    """Credit a deposit after verifying it on the settlement network."""
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        return await rails.credit_deposit(request.user_id, request.transaction_id, request.amount)
