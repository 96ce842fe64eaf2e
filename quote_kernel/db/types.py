"""
Module: quote_kernel.db.types
Responsibility: Annotated type aliases and utility functions for money-grade
    column types.  Centralizes precision and rounding so that every model,
    domain calculator and service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/ and
    services/.  MUST NOT import from any of those layers.
Invariants enforced:
    - round_money() is the ONLY sanctioned rounding function for monetary
      values and percentages; round_rate() for stored tax rates.
    - No floats in the kernel.  to_decimal() converts external numeric input
      (JSON payloads, YAML config) into Decimal via its string form.
Failure modes:
    - ValidationError on non-numeric input passed to to_decimal().
Audit relevance:
    Every amount written to a snapshot, invoice or payment has passed through
    round_money(), so stored figures are reproducible from their inputs.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any

from sqlalchemy import BigInteger, Numeric, String

from quote_kernel.exceptions import ValidationError

# Monetary amount with high precision
Money = Annotated[Decimal, Numeric(38, 9)]

# Monotonic sequence number for ordering
Sequence = Annotated[int, BigInteger]

# SHA-256 hash as hex string (64 characters)
Sha256Hex = Annotated[str, String(64)]

# Short identifier strings (statuses, codes, document numbers)
ShortCode = Annotated[str, String(50)]

MONEY_DECIMAL_PLACES = 2
RATE_DECIMAL_PLACES = 4
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """
    Convert external numeric input to Decimal.

    Floats are converted through ``repr`` so ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion.

    Raises:
        ValidationError: If value is None, a bool, or not numeric.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError("Invalid number", [f"{field} must be a number"])
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValidationError(
                "Invalid number", [f"{field} must be a number"]
            ) from exc
    else:
        raise ValidationError("Invalid number", [f"{field} must be a number"])

    if not result.is_finite():
        raise ValidationError("Invalid number", [f"{field} must be finite"])
    return result


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to specified decimal places.

    This is the ONLY sanctioned rounding function for monetary values and
    percentages in the entire system.

    Preconditions: value is a finite Decimal.
    Postconditions: Returns value quantized to the specified decimal places
        using the specified rounding mode.
    """
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def round_rate(value: Decimal) -> Decimal:
    """Round a stored tax rate (fraction, e.g. 0.0825) to 4 places."""
    return round_money(value, RATE_DECIMAL_PLACES)


def percent_to_fraction(percent: Decimal) -> Decimal:
    """Convert a percentage (8.25) into a fraction (0.0825)."""
    return percent / HUNDRED
