"""Decimal money helpers.

Bridge sends amounts as decimal strings (occasionally as JSON numbers).
Everything inside the service is ``Decimal``; floats never touch a balance.
"""

from decimal import Decimal, InvalidOperation
from typing import Any


class MoneyError(ValueError):
    """Raised when an amount cannot be interpreted."""


class NegativeAmountError(MoneyError):
    """Raised when a positive amount was required."""


def parse_amount(value: Any, *, default: Decimal | None = None) -> Decimal:
    """Parse a provider amount into ``Decimal``.

    Floats are routed through ``str`` so ``0.1`` stays ``Decimal("0.1")``.

    Raises:
        MoneyError: If ``value`` is missing (and no default) or not numeric.
    """
    if value is None or value == "":
        if default is not None:
            return default
        raise MoneyError("Amount is required")

    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise MoneyError(f"Invalid amount: {value!r}") from exc

    if not result.is_finite():
        raise MoneyError(f"Invalid amount: {value!r}")
    return result


def parse_positive_amount(value: Any) -> Decimal:
    """Parse an amount that must be strictly greater than zero."""
    amount = parse_amount(value)
    if amount <= 0:
        raise NegativeAmountError(f"Amount must be positive, got {amount}")
    return amount


def format_amount(amount: Decimal) -> str:
    """Render an amount the way Bridge expects it on the wire (plain string)."""
    normalized = amount.normalize()
    # normalize() can produce exponent form for round numbers (1E+3)
    return format(normalized, "f")
