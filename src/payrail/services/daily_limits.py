"""Daily transfer cap shared by every withdrawal rail.

Usage is always derived from completed ledger entries for the current UTC
calendar day. Nothing is cached between requests, so replicas cannot
diverge. The window resets at UTC midnight.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from payrail.errors import LimitExceededError
from payrail.ledger.repository import LedgerRepository
from payrail.utils.amounts import format_sol, quantize_sol

logger = logging.getLogger(__name__)


@dataclass
class LimitCheck:
    """Outcome of a daily limit check."""
    allowed: bool
    used: Decimal
    remaining: Decimal
    limit: Decimal

    def to_dict(self) -> dict:
        return {
            "used": format_sol(self.used),
            "remaining": format_sol(self.remaining),
            "limit": format_sol(self.limit),
            "allowed": self.allowed,
        }


def day_window(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Return [start, end) of the UTC calendar day containing `now`."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class DailyLimitTracker:
    """Computes used and remaining daily capacity for a user."""

    def __init__(self, repo: LedgerRepository, daily_cap: Decimal):
        self.repo = repo
        self.daily_cap = quantize_sol(daily_cap)

    async def get_used_today(self, user_id: str, now: Optional[datetime] = None) -> Decimal:
        start, end = day_window(now)
        return await self.repo.sum_completed_withdrawals(user_id, start, end)

    async def check_limit(
        self,
        user_id: str,
        amount: Decimal = Decimal("0"),
        now: Optional[datetime] = None,
    ) -> LimitCheck:
        """Check whether `amount` fits in today's remaining capacity.

        Fails closed: if the aggregate cannot be computed the check reports
        the cap as fully used.
        """
        try:
            used = await self.get_used_today(user_id, now)
        except SQLAlchemyError as e:
            logger.error(f"Daily limit query failed for user {user_id}: {e}")
            return LimitCheck(
                allowed=False,
                used=self.daily_cap,
                remaining=Decimal("0"),
                limit=self.daily_cap,
            )

        remaining = max(Decimal("0"), self.daily_cap - used)
        allowed = used + quantize_sol(amount) <= self.daily_cap
        return LimitCheck(allowed=allowed, used=used, remaining=remaining, limit=self.daily_cap)

    async def enforce(self, user_id: str, amount: Decimal) -> LimitCheck:
        """Check the limit and raise LimitExceededError when not allowed."""
        check = await self.check_limit(user_id, amount)
        if not check.allowed:
            logger.warning(
                f"Daily limit exceeded for user {user_id}: used={check.used} "
                f"requested={amount} cap={check.limit}"
            )
            raise LimitExceededError(
                f"Daily withdrawal limit exceeded. Remaining today: {format_sol(check.remaining)} SOL",
                details={"dailyLimits": check.to_dict()},
            )
        return check
