"""Local signing backend for the house wallet.

The key is read from HOUSE_WALLET_PRIVATE_KEY as a base58 encoded 64-byte
secret (32-byte seed followed by the public key), the format Solana
wallets export.

WARNING: The private key is held in memory. Keep the house pool small.
"""

import hashlib
import logging
from typing import Optional

import base58
from nacl.signing import SigningKey

from payrail.errors import ValidationError
from payrail.settlement.transaction import sign_transaction
from payrail.signing.base import KeyNotFoundError, SignerBackend, SignerType, SigningError

logger = logging.getLogger(__name__)

DRY_RUN_SEED = b"payrail-dry-run-house-wallet"


def load_signing_key(secret: str) -> SigningKey:
    """Parse a base58 64-byte (or 32-byte seed) secret key."""
    try:
        raw = base58.b58decode(secret.strip())
    except ValueError as e:
        raise SigningError(f"House wallet key is not valid base58: {e}")

    if len(raw) == 64:
        key = SigningKey(raw[:32])
        if bytes(key.verify_key) != raw[32:]:
            raise SigningError("House wallet key: embedded public key does not match seed")
        return key
    if len(raw) == 32:
        return SigningKey(raw)
    raise SigningError(f"House wallet key must be 32 or 64 bytes, got {len(raw)}")


class LocalSigner(SignerBackend):
    """Local signing backend using an in-memory ed25519 key."""

    def __init__(self, signing_key: SigningKey, expected_address: Optional[str] = None):
        super().__init__(SignerType.LOCAL)
        self._key = signing_key
        self._address = base58.b58encode(bytes(signing_key.verify_key)).decode()
        if expected_address and expected_address != self._address:
            raise SigningError(
                f"House wallet key derives {self._address}, expected {expected_address}"
            )

    @classmethod
    def from_secret(cls, secret: Optional[str], expected_address: Optional[str] = None) -> "LocalSigner":
        if not secret:
            raise KeyNotFoundError("HOUSE_WALLET_PRIVATE_KEY is not configured")
        signer = cls(load_signing_key(secret), expected_address)
        logger.info(f"Loaded house wallet key for {signer.address}")
        return signer

    @classmethod
    def ephemeral(cls) -> "LocalSigner":
        """Deterministic key for dry-run mode. Never holds real funds."""
        signer = cls(SigningKey(hashlib.sha256(DRY_RUN_SEED).digest()))
        logger.warning(f"[DRY RUN] Using ephemeral house wallet {signer.address}")
        return signer

    @property
    def address(self) -> str:
        return self._address

    async def sign_transaction(self, tx_bytes: bytes) -> bytes:
        try:
            return sign_transaction(tx_bytes, self._key)
        except ValidationError as e:
            logger.error(f"House wallet signing failed: {e.message}")
            raise SigningError(e.message)
