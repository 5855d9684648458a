from __future__ import annotations

from decimal import Decimal


def format_amount(minor: int) -> str:
    """Format integer minor units as X,XXX.XX."""
    d = Decimal(minor).scaleb(-2)
    return f"{d:,.2f}"


def format_timestamp(iso: str | None) -> str:
    """Trim an ISO timestamp to seconds for console output."""
    if not iso:
        return "-"
    return iso.replace("T", " ")[:19]
