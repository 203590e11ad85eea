"""Request contracts for the HTTP API.

One model per endpoint. Unknown fields are rejected and amounts are
parsed as Decimal. Field names follow the client's camelCase.
"""

from decimal import Decimal
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from payrail.rails.base import TransferDirection


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)

    user_id: str = Field(..., alias="userId", min_length=1, max_length=128, description="User identifier")


def _positive(value: Decimal) -> Decimal:
    if not value.is_finite() or value <= 0:
        raise ValueError("amount must be a positive number")
    return value


PositiveAmount = Annotated[Decimal, AfterValidator(_positive)]


class LimitsRequest(_Request):
    """Daily limit check."""

    amount: Optional[Decimal] = Field(default=None, description="Proposed amount in SOL")

    @field_validator("amount")
    @classmethod
    def check_amount(cls, v):
        if v is not None and (not v.is_finite() or v < 0):
            raise ValueError("amount must not be negative")
        return v


class RegisterRequest(_Request):
    """Bind a self-custody wallet address to a user."""

    wallet_address: str = Field(..., alias="walletAddress", min_length=1)


class WithdrawRequest(_Request):
    """Self-custody withdrawal. Without `signedTransaction` a quote is returned."""

    wallet_address: str = Field(..., alias="walletAddress", min_length=1)
    amount: PositiveAmount
    destination_address: str = Field(..., alias="destinationAddress", min_length=1)
    signed_transaction: Optional[str] = Field(default=None, alias="signedTransaction")
    auto_sign: bool = Field(default=False, alias="autoSign")


class CustodialWithdrawRequest(_Request):
    """Payout from the house pool to an external address."""

    amount: PositiveAmount
    destination_address: str = Field(..., alias="destinationAddress", min_length=1)


class RailTransferRequest(_Request):
    """Move value between the custodial and self-custody rails."""

    amount: PositiveAmount
    direction: TransferDirection = TransferDirection.TO_CUSTODIAL
    signed_transaction: Optional[str] = Field(default=None, alias="signedTransaction")
    auto_sign: bool = Field(default=False, alias="autoSign")


class ConfirmRequest(_Request):
    """Confirm a transaction the client submitted itself."""

    transaction_id: str = Field(..., alias="transactionId", min_length=32, max_length=128)
    amount: PositiveAmount
    destination_address: str = Field(..., alias="destinationAddress", min_length=1)


class UserRequest(_Request):
    """Request carrying only the user identifier."""


class HistoryRequest(_Request):
    """Transaction history."""

    limit: int = Field(default=50, ge=1, le=200)


class DepositInfoRequest(BaseModel):
    """Where to send custodial deposits."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")


class DepositRequest(_Request):
    """Operator credit of a verified deposit."""

    transaction_id: str = Field(..., alias="transactionId", min_length=32, max_length=128)
    amount: PositiveAmount
