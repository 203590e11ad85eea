"""Wallet registration, balance and history endpoints."""

import logging

from fastapi import APIRouter

from payrail.api.contracts import HistoryRequest, RegisterRequest, UserRequest
from payrail.ledger.database import get_db
from payrail.rails.base import RailContext
from payrail.rails.router import RailRouter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/register")
async def register_wallet(request: RegisterRequest):
    """Bind a self-custody wallet address to a user."""
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        wallet = await rails.register(request.user_id, request.wallet_address)
        return {"success": True, "wallet": wallet}


@router.post("/balance")
async def get_balance(request: UserRequest):
    """Network balance of the user's self-custody wallet."""
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        return await rails.balance(request.user_id)


@router.post("/history")
async def get_history(request: HistoryRequest):
    """Ledger entries of a user, newest first."""
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        return await rails.history(request.user_id, request.limit)
