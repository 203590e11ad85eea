"""Factory for the settlement network client.

Dry-run mode uses the in-memory simulated network; otherwise the Solana
JSON-RPC client is used. The instance is cached so connection pools are
shared between requests.
"""

import logging
from typing import Optional

from payrail.config import get_settings
from payrail.settlement.base import SettlementNetwork, SimulatedSettlementNetwork

logger = logging.getLogger(__name__)

# Cached network instance
_network: Optional[SettlementNetwork] = None


def get_settlement_network() -> SettlementNetwork:
    """Get the configured settlement network client."""
    global _network
    if _network is not None:
        return _network

    settings = get_settings()
    if settings.dry_run:
        logger.info("Dry-run mode: using simulated settlement network")
        _network = SimulatedSettlementNetwork()
    else:
        from payrail.settlement.solana import SolanaRPCClient

        _network = SolanaRPCClient(
            rpc_url=settings.solana_rpc_url,
            commitment=settings.solana_commitment,
            poll_interval=settings.confirmation_poll_interval,
        )
        logger.info(f"Using Solana RPC at {settings.solana_rpc_url}")
    return _network


def set_settlement_network(network: SettlementNetwork) -> None:
    """Install a specific network client (tests, custom deployments)."""
    global _network
    _network = network


async def close_settlement_network() -> None:
    """Close the cached client (call on shutdown)."""
    global _network
    if _network is not None:
        await _network.close()
        _network = None


def reset_settlement_network() -> None:
    """Clear cached network (useful for testing)."""
    global _network
    _network = None
