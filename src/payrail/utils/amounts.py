"""Amount helpers for SOL denominated values."""

from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Decimal
from typing import Union

LAMPORTS_PER_SOL = 1_000_000_000
LAMPORT = Decimal("0.000000001")


def quantize_sol(amount: Union[Decimal, int, float, str, None]) -> Decimal:
    """Round an amount to lamport precision.

    Aggregates read back from SQLite come through a float; this removes the noise.
    """
    if amount is None:
        return Decimal("0")
    return Decimal(str(amount)).quantize(LAMPORT, rounding=ROUND_HALF_EVEN)


def sol_to_lamports(amount: Decimal) -> int:
    return int((Decimal(amount) * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))


def lamports_to_sol(lamports: int) -> Decimal:
    return quantize_sol(Decimal(lamports) / LAMPORTS_PER_SOL)


def format_sol(amount: Union[Decimal, None]) -> str:
    """Render an amount as a plain decimal string without trailing zeros."""
    value = quantize_sol(amount).normalize()
    # normalize() turns 20.0 into 2E+1
    return f"{value:f}"
