from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

_INVOICE_NUMBER = re.compile(r"[A-Za-z0-9][A-Za-z0-9._/-]{0,39}")


def validate_invoice_number(value: Any) -> str:
    """Validate a business invoice number: 1-40 chars, alphanumeric plus ``._/-``."""
    if not isinstance(value, str):
        raise ValueError(f"Invoice number must be text: {value!r}")
    value = value.strip()
    if not _INVOICE_NUMBER.fullmatch(value):
        raise ValueError(f"Invalid invoice number: '{value}'")
    return value


def to_minor_units(value: Any) -> int:
    """Convert an amount to integer minor units.

    Integers are taken as minor units already. Decimal strings and numbers
    are major units with at most 2 decimal places ("19.99" -> 1999).
    Raises ValueError for invalid or non-positive values.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, int):
        minor = value
    else:
        try:
            d = Decimal(str(value).strip())
            if not d.is_finite():
                raise InvalidOperation
        except InvalidOperation:
            raise ValueError(f"Invalid amount: '{value}'") from None
        cents = d * 100
        if cents != cents.to_integral_value():
            raise ValueError(f"Amount has more than 2 decimal places: '{value}'")
        minor = int(cents)
    if minor <= 0:
        raise ValueError(f"Amount must be positive: '{value}'")
    return minor


def parse_invoice_document(data: Any) -> tuple[str, int]:
    """Extract (number, amount_minor) from a parsed inbox document."""
    if not isinstance(data, dict):
        raise ValueError("Invoice document must be a mapping")
    missing = [k for k in ("number", "amount") if k not in data]
    if missing:
        raise ValueError(f"Missing field(s): {', '.join(missing)}")
    return validate_invoice_number(data["number"]), to_minor_units(data["amount"])
