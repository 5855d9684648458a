from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

OPEN = "open"
CLOSED = "closed"


@dataclass(frozen=True)
class FiscalDay:
    """Accounting period during which invoices may be signed and sent."""

    state: str = CLOSED
    number: int = 0  # incremented on every open
    opened_at: str | None = None
    closed_at: str | None = None

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    @property
    def current_number(self) -> int:
        """Day that newly ingested invoices belong to.

        While closed, invoices are assigned to the next day to be opened.
        """
        return self.number if self.is_open else self.number + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> FiscalDay:
        return cls(
            state=d.get("state", CLOSED),
            number=int(d.get("number", 0)),
            opened_at=d.get("opened_at"),
            closed_at=d.get("closed_at"),
        )
