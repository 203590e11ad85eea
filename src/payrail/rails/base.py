"""Shared types for the transfer rails.

Transfer flow (self-custody rail, two phases):
1. Quote: validate, build an unsigned transaction, hand it to the client
2. Client signs with its own key
3. Submit: re-validate, record `processing`, submit, confirm
4. Record `completed` or `failed`

Transfer flow (house pool, single phase):
1. Validate user bookkeeping balance and pool balance
2. Record `processing`, build, sign with the house key, submit, confirm
3. Debit the bookkeeping balance and record `completed` in one commit
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payrail.config import Settings, get_settings
from payrail.errors import ValidationError
from payrail.ledger.models import TransferKind
from payrail.ledger.repository import LedgerRepository
from payrail.notifications.game_server import GameServerNotifier, get_notifier
from payrail.services.balance_sync import BalanceReconciler
from payrail.services.daily_limits import DailyLimitTracker, LimitCheck
from payrail.settlement.base import SettlementNetwork
from payrail.settlement.factory import get_settlement_network
from payrail.signing.factory import get_house_address
from payrail.utils.amounts import format_sol, quantize_sol

logger = logging.getLogger(__name__)


class TransferDirection(str, Enum):
    """Direction of a rail-to-rail transfer."""
    TO_CUSTODIAL = "to_custodial"          # self-custody wallet -> house pool
    TO_SELF_CUSTODY = "to_self_custody"    # house pool -> self-custody wallet


@dataclass
class TransferRequest:
    """A withdrawal or transfer request entering the router."""
    user_id: str
    kind: TransferKind
    amount: Decimal
    destination_address: Optional[str] = None
    wallet_address: Optional[str] = None
    signed_transaction: Optional[str] = None
    auto_sign: bool = False
    direction: TransferDirection = TransferDirection.TO_CUSTODIAL

    @property
    def bounds_key(self) -> str:
        if self.kind == TransferKind.RAIL_TRANSFER:
            return self.direction.value
        return self.kind.value


@dataclass
class Quote:
    """Phase-1 result: unsigned transaction awaiting the client's signature."""
    unsigned_transaction: str
    source: str
    destination: str
    amount: Decimal
    current_balance: Decimal
    estimated_fee: Decimal
    memo: str
    blockhash: str
    last_valid_block_height: int
    limits: LimitCheck
    entry_id: Optional[int] = None

    def to_dict(self) -> dict:
        body = {
            "action": "signature_required",
            "unsignedTransaction": self.unsigned_transaction,
            "withdrawalDetails": {
                "from": self.source,
                "to": self.destination,
                "amount": format_sol(self.amount),
                "currentBalance": format_sol(self.current_balance),
                "estimatedFee": format_sol(self.estimated_fee),
                "memo": self.memo,
                "blockhash": self.blockhash,
                "lastValidBlockHeight": self.last_valid_block_height,
            },
            "dailyLimits": self.limits.to_dict(),
        }
        if self.entry_id is not None:
            body["entryId"] = self.entry_id
        return body


@dataclass
class TransferOutcome:
    """Result of a confirmed transfer."""
    transaction_id: str
    new_balance: Decimal
    limits: LimitCheck
    entry_id: int
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "transactionId": self.transaction_id,
            "newBalance": format_sol(self.new_balance),
            "dailyLimits": self.limits.to_dict(),
            "entryId": self.entry_id,
            **self.extra,
        }


def make_memo(kind: TransferKind, user_id: str, now_ms: Optional[int] = None) -> str:
    """Idempotency memo stamped on every built transaction."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{TransferKind(kind).value}-{user_id}-{now_ms}"


def check_bounds(amount: Decimal, bounds_key: str, settings: Settings) -> None:
    """Reject amounts outside the rail's per-transaction bounds."""
    minimum, maximum = settings.rail_bounds(bounds_key)
    if amount < minimum or amount > maximum:
        raise ValidationError(
            f"Invalid amount. Must be between {format_sol(minimum)} and {format_sol(maximum)} SOL",
            details={"minAmount": format_sol(minimum), "maxAmount": format_sol(maximum)},
        )
    if quantize_sol(amount) != amount:
        raise ValidationError("Amount has more than 9 decimal places")


class RailContext:
    """Collaborators shared by every rail within one request."""

    def __init__(
        self,
        session: AsyncSession,
        network: Optional[SettlementNetwork] = None,
        settings: Optional[Settings] = None,
        notifier: Optional[GameServerNotifier] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.network = network or get_settlement_network()
        self.notifier = notifier or get_notifier()
        self.repo = LedgerRepository(session)
        self.tracker = DailyLimitTracker(self.repo, self.settings.daily_withdrawal_limit)
        self.reconciler = BalanceReconciler(self.repo, self.network, self.settings.fee_buffer)

    @property
    def house_address(self) -> str:
        return get_house_address()

    def require_address(self, address: Optional[str], field_name: str) -> str:
        if not address or not self.network.validate_address(address):
            raise ValidationError(
                f"Invalid {field_name}", details={"field": field_name, "value": address}
            )
        return address

    async def commit(self) -> None:
        await self.session.commit()
