"""Base interfaces for the settlement network.

The settlement network is the authoritative source of balances and the
place where transfers are finalized. Everything here is I/O bound; every
wait is bounded by a timeout.
"""

import asyncio
import hashlib
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import base58

from payrail.errors import (
    ConfirmationTimeoutError,
    SettlementError,
    SubmissionError,
    ValidationError,
)
from payrail.settlement.transaction import decode_transfer, is_valid_address, verify_signatures
from payrail.utils.amounts import LAMPORTS_PER_SOL, lamports_to_sol, sol_to_lamports

logger = logging.getLogger(__name__)

# Lamports charged per signature
SIGNATURE_FEE_LAMPORTS = 5000


@dataclass
class BlockhashInfo:
    """Recent blockhash used as the transaction checkpoint."""
    blockhash: str
    last_valid_block_height: int


@dataclass
class OnChainTransaction:
    """Result of looking a transaction up on the network."""
    signature: str
    found: bool
    err: Optional[Any] = None
    slot: Optional[int] = None
    source: Optional[str] = None
    destination: Optional[str] = None
    lamports: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.found and self.err is None


class SettlementNetwork(ABC):
    """Abstract settlement network client."""

    name = "settlement"

    def validate_address(self, address: str) -> bool:
        """Validate an address format."""
        return is_valid_address(address)

    @abstractmethod
    async def get_balance(self, address: str) -> Decimal:
        """Get the authoritative balance of an address in SOL.

        Raises SettlementError when the network cannot be queried.
        """
        pass

    @abstractmethod
    async def get_latest_blockhash(self) -> BlockhashInfo:
        """Fetch a fresh blockhash for a new transaction."""
        pass

    @abstractmethod
    async def send_raw_transaction(self, tx_bytes: bytes) -> str:
        """Submit a signed transaction.

        Returns:
            Transaction signature

        Raises:
            SubmissionError: if the network rejects the transaction
        """
        pass

    @abstractmethod
    async def confirm_transaction(self, signature: str, timeout: float) -> None:
        """Wait until the transaction is confirmed.

        Raises:
            ConfirmationTimeoutError: if not confirmed within `timeout` seconds
            SubmissionError: if the transaction landed with an error
        """
        pass

    @abstractmethod
    async def get_transaction(self, signature: str) -> OnChainTransaction:
        """Look a transaction up by signature."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"


@dataclass
class _SimulatedTx:
    signature: str
    source: str
    destination: str
    lamports: int
    err: Optional[Any] = None
    landed: bool = True
    slot: int = 0


class SimulatedSettlementNetwork(SettlementNetwork):
    """In-memory settlement network for dry-run mode and tests.

    Transfers are applied to in-memory balances on submission. Switches
    allow simulating rejected submissions, transactions that never
    confirm, transactions that land with an error, and RPC outages.
    """

    name = "simulated"

    def __init__(self, poll_interval: float = 0.01):
        self.poll_interval = poll_interval
        self.balances: dict[str, int] = {}
        self.transactions: dict[str, _SimulatedTx] = {}
        self.block_height = 1000
        self.reject_submissions: Optional[str] = None
        self.never_confirm = False
        self.land_with_error: Optional[Any] = None
        self.rpc_error: Optional[str] = None
        self.submitted: list[str] = []

    def set_balance(self, address: str, amount: Decimal) -> None:
        self.balances[address] = sol_to_lamports(amount)

    def _check_rpc(self) -> None:
        if self.rpc_error:
            raise SettlementError(f"RPC unavailable: {self.rpc_error}")

    async def get_balance(self, address: str) -> Decimal:
        self._check_rpc()
        return lamports_to_sol(self.balances.get(address, 0))

    async def get_latest_blockhash(self) -> BlockhashInfo:
        self._check_rpc()
        self.block_height += 1
        digest = hashlib.sha256(f"simulated-block-{self.block_height}".encode()).digest()
        return BlockhashInfo(
            blockhash=base58.b58encode(digest).decode(),
            last_valid_block_height=self.block_height + 150,
        )

    async def send_raw_transaction(self, tx_bytes: bytes) -> str:
        self._check_rpc()
        try:
            transfer = decode_transfer(tx_bytes)
        except ValidationError as e:
            raise SubmissionError(f"Transaction rejected: {e.message}")

        if not transfer.is_signed or not verify_signatures(tx_bytes):
            raise SubmissionError("Transaction rejected: signature verification failed")
        if self.reject_submissions:
            raise SubmissionError(f"Transaction rejected: {self.reject_submissions}")

        signature = transfer.signature
        if signature in self.transactions:
            return signature

        available = self.balances.get(transfer.source, 0)
        required = transfer.lamports + SIGNATURE_FEE_LAMPORTS
        if available < required:
            raise SubmissionError(
                "Transaction rejected: insufficient funds "
                f"({available / LAMPORTS_PER_SOL} < {required / LAMPORTS_PER_SOL})"
            )

        tx = _SimulatedTx(
            signature=signature,
            source=transfer.source,
            destination=transfer.destination,
            lamports=transfer.lamports,
            slot=self.block_height,
        )
        if self.never_confirm:
            tx.landed = False
        elif self.land_with_error is not None:
            tx.err = self.land_with_error
            self.balances[transfer.source] = available - SIGNATURE_FEE_LAMPORTS
        else:
            self.balances[transfer.source] = available - required
            self.balances[transfer.destination] = (
                self.balances.get(transfer.destination, 0) + transfer.lamports
            )

        self.transactions[signature] = tx
        self.submitted.append(signature)
        logger.info(f"[SIMULATED] Submitted {transfer.lamports} lamports -> {transfer.destination}")
        return signature

    async def confirm_transaction(self, signature: str, timeout: float) -> None:
        async def _poll() -> None:
            while True:
                tx = self.transactions.get(signature)
                if tx is not None and tx.landed:
                    if tx.err is not None:
                        raise SubmissionError(f"Transaction failed on chain: {tx.err}")
                    return
                await asyncio.sleep(self.poll_interval)

        try:
            await asyncio.wait_for(_poll(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ConfirmationTimeoutError(
                f"Transaction confirmation timed out after {timeout:g}s",
                details={"transactionId": signature},
            )

    async def get_transaction(self, signature: str) -> OnChainTransaction:
        self._check_rpc()
        tx = self.transactions.get(signature)
        if tx is None or not tx.landed:
            return OnChainTransaction(signature=signature, found=False)
        return OnChainTransaction(
            signature=signature,
            found=True,
            err=tx.err,
            slot=tx.slot,
            source=tx.source,
            destination=tx.destination,
            lamports=tx.lamports,
        )

    def inject_transaction(
        self,
        source: str,
        destination: str,
        amount: Decimal,
        err: Optional[Any] = None,
        signature: Optional[str] = None,
    ) -> str:
        """Record a transaction submitted outside this service."""
        signature = signature or base58.b58encode(secrets.token_bytes(64)).decode()
        lamports = sol_to_lamports(amount)
        self.transactions[signature] = _SimulatedTx(
            signature=signature,
            source=source,
            destination=destination,
            lamports=lamports,
            err=err,
            slot=self.block_height,
        )
        if err is None:
            self.balances[source] = self.balances.get(source, 0) - lamports
            self.balances[destination] = self.balances.get(destination, 0) + lamports
        return signature
