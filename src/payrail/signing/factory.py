"""Factory for the house wallet signer."""

import logging
from typing import Optional

from payrail.config import get_settings
from payrail.signing.base import SignerBackend
from payrail.signing.local import LocalSigner

logger = logging.getLogger(__name__)

# Cached signer instance
_signer: Optional[SignerBackend] = None


def get_house_signer() -> SignerBackend:
    """Get the signer for the custodial pool.

    Raises:
        KeyNotFoundError: outside dry-run mode when no key is configured
        SigningError: when the key does not match HOUSE_WALLET_ADDRESS
    """
    global _signer
    if _signer is not None:
        return _signer

    settings = get_settings()
    if settings.has_house_key:
        _signer = LocalSigner.from_secret(
            settings.house_wallet_private_key, settings.house_wallet_address
        )
    elif settings.dry_run:
        _signer = LocalSigner.ephemeral()
    else:
        _signer = LocalSigner.from_secret(None)
    return _signer


def get_house_address() -> str:
    """Public address of the custodial pool."""
    settings = get_settings()
    if settings.house_wallet_address:
        return settings.house_wallet_address
    return get_house_signer().address


def set_house_signer(signer: SignerBackend) -> None:
    """Install a specific signer (tests, custom deployments)."""
    global _signer
    _signer = signer


def reset_house_signer() -> None:
    """Clear cached signer (useful for testing)."""
    global _signer
    _signer = None
