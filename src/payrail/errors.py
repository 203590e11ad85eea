"""Error taxonomy shared by the rails, services and HTTP layer.

Every error carries the HTTP status it is surfaced with. Validation and
limit errors are raised before any ledger write; submission, timeout and
bookkeeping errors are raised after the outcome is recorded.
"""

from typing import Any, Optional


class PayrailError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(PayrailError):
    """Bad address, amount out of bounds or missing field."""

    status_code = 400


class NotFoundError(PayrailError):
    """Unknown user, wallet or ledger entry."""

    status_code = 404


class LimitExceededError(PayrailError):
    """Daily transfer cap would be exceeded."""

    status_code = 400


class InsufficientFundsError(PayrailError):
    """Balance (wallet, custodial ledger or pool) does not cover the amount."""

    status_code = 400


class SettlementError(PayrailError):
    """Settlement network could not be reached or returned garbage."""

    status_code = 500


class SubmissionError(SettlementError):
    """Settlement network rejected the transaction."""


class ConfirmationTimeoutError(SettlementError):
    """Transaction was not confirmed within the bounded wait."""


class CriticalBookkeepingError(PayrailError):
    """Funds moved on chain but the ledger could not record it.

    Needs manual support. Never retried automatically.
    """

    status_code = 500

    def __init__(self, message: str, transaction_id: str, details: Optional[Any] = None):
        super().__init__(message, details)
        self.transaction_id = transaction_id

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["critical"] = True
        body["transactionId"] = self.transaction_id
        return body


class InvalidTransitionError(ValueError):
    """Ledger entry status change would violate the status state machine."""
