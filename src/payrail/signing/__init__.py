"""House wallet signing backends."""

from payrail.signing.base import KeyNotFoundError, SignerBackend, SignerType, SigningError
from payrail.signing.factory import (
    get_house_address,
    get_house_signer,
    reset_house_signer,
    set_house_signer,
)
from payrail.signing.local import LocalSigner

__all__ = [
    "SignerBackend",
    "SignerType",
    "SigningError",
    "KeyNotFoundError",
    "LocalSigner",
    "get_house_signer",
    "get_house_address",
    "set_house_signer",
    "reset_house_signer",
]
