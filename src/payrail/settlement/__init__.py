"""Settlement network access: balances, submission and confirmation."""

from payrail.settlement.base import (
    BlockhashInfo,
    OnChainTransaction,
    SettlementNetwork,
    SimulatedSettlementNetwork,
)
from payrail.settlement.factory import (
    close_settlement_network,
    get_settlement_network,
    reset_settlement_network,
    set_settlement_network,
)

__all__ = [
    "BlockhashInfo",
    "OnChainTransaction",
    "SettlementNetwork",
    "SimulatedSettlementNetwork",
    "get_settlement_network",
    "set_settlement_network",
    "close_settlement_network",
    "reset_settlement_network",
]
