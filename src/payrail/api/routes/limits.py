"""Daily limit endpoint."""

from decimal import Decimal

from fastapi import APIRouter

from payrail.api.contracts import LimitsRequest
from payrail.ledger.database import get_db
from payrail.rails.base import RailContext
from payrail.rails.router import RailRouter

router = APIRouter()


@router.post("/limits")
async def check_limits(request: LimitsRequest):
    """Used and remaining capacity for today (UTC).

    `allowed` tells whether `amount` (default 0) would fit.
    """
    async with get_db() as session:
        rails = RailRouter(RailContext(session))
        check = await rails.limits(request.user_id, request.amount or Decimal("0"))
        return check.to_dict()
