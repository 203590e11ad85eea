"""Balance reconciliation against the settlement network.

Approval decisions always use the network balance. The balance cached on
the wallet record is refreshed as a side effect and is only for display.
"""

import logging
from decimal import Decimal
from typing import Optional

from payrail.errors import InsufficientFundsError, NotFoundError
from payrail.ledger.models import Rail, WalletRecord
from payrail.ledger.repository import LedgerRepository
from payrail.settlement.base import SettlementNetwork
from payrail.utils.amounts import format_sol

logger = logging.getLogger(__name__)


class BalanceReconciler:
    """Reads authoritative balances and refreshes cached wallet metadata."""

    def __init__(self, repo: LedgerRepository, network: SettlementNetwork, fee_buffer: Decimal):
        self.repo = repo
        self.network = network
        self.fee_buffer = fee_buffer

    async def get_authoritative_balance(self, address: str) -> Decimal:
        """Query the settlement network for the balance of an address."""
        balance = await self.network.get_balance(address)
        logger.debug(f"Network balance for {address}: {balance}")
        return balance

    async def get_wallet(self, user_id: str, rail: Rail = Rail.SELF_CUSTODY) -> WalletRecord:
        wallet = await self.repo.get_wallet(user_id, rail)
        if wallet is None:
            raise NotFoundError(
                f"No wallet registered for user {user_id}",
                details={"userId": user_id, "rail": Rail(rail).value},
            )
        return wallet

    async def refresh_cached_balance(self, user_id: str) -> Decimal:
        """Fetch the network balance of the user's wallet and cache it."""
        wallet = await self.get_wallet(user_id)
        balance = await self.get_authoritative_balance(wallet.address)
        await self.repo.touch_wallet_balance(user_id, balance)
        return balance

    async def require_funds(
        self,
        address: str,
        amount: Decimal,
        buffer: Optional[Decimal] = None,
        label: str = "wallet",
    ) -> Decimal:
        """Require `balance >= amount + buffer` and return the balance.

        Raises InsufficientFundsError otherwise.
        """
        buffer = self.fee_buffer if buffer is None else buffer
        balance = await self.get_authoritative_balance(address)
        required = amount + buffer
        if balance < required:
            logger.warning(
                f"Insufficient {label} balance for {address}: have {balance}, need {required}"
            )
            raise InsufficientFundsError(
                f"Insufficient {label} balance. Available: {format_sol(balance)} SOL, "
                f"Required: {format_sol(required)} SOL (including fees)",
                details={"available": format_sol(balance), "required": format_sol(required)},
            )
        return balance
