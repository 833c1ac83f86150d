"""Utility functions and helpers."""

from kalypso_api.utils.logging import JSONFormatter, configure_json_logging
from kalypso_api.utils.money import (
    MoneyError,
    NegativeAmountError,
    format_amount,
    parse_amount,
    parse_positive_amount,
)
from kalypso_api.utils.time import ensure_utc, utc_now

__all__ = [
    "MoneyError",
    "NegativeAmountError",
    "format_amount",
    "parse_amount",
    "parse_positive_amount",
    "ensure_utc",
    "utc_now",
    "JSONFormatter",
    "configure_json_logging",
]
