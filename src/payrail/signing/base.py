"""Base interfaces for house wallet signing.

Signing flow:
1. Build unsigned transaction
2. Hand the serialized transaction to the signer
3. Signer fills the fee payer signature slot (raw keys never leave it)
4. Broadcast signed transaction
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum

logger = logging.getLogger(__name__)


class SignerType(str, Enum):
    """Type of signing backend."""
    LOCAL = "local"           # Private key in memory (hot wallet)


class SignerBackend(ABC):
    """Abstract base class for signing backends.

    Implementations should NEVER expose raw private keys.
    """

    def __init__(self, signer_type: SignerType):
        self.signer_type = signer_type

    @property
    @abstractmethod
    def address(self) -> str:
        """Public address controlled by this signer."""
        pass

    @abstractmethod
    async def sign_transaction(self, tx_bytes: bytes) -> bytes:
        """Sign a serialized transaction whose fee payer is `address`.

        Returns:
            Serialized transaction with the signature applied

        Raises:
            SigningError: if the transaction cannot be signed
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.signer_type.value}, address={self.address})"


class SigningError(Exception):
    """Exception raised when signing fails."""
    pass


class KeyNotFoundError(SigningError):
    """Exception raised when signing key is not configured."""
    pass
