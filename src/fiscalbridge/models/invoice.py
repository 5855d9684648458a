from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

PENDING = "pending"
SIGNED = "signed"
SENT = "sent"
EXCLUDED = "excluded"

STATUSES = (PENDING, SIGNED, SENT, EXCLUDED)

# Forward-only lifecycle; excluded is reachable from any non-terminal status.
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({SIGNED, EXCLUDED}),
    SIGNED: frozenset({SENT, EXCLUDED}),
    SENT: frozenset(),
    EXCLUDED: frozenset(),
}

TERMINAL = frozenset({SENT, EXCLUDED})

# Journal markers for backend calls whose outcome is not yet recorded
SIGNING = "signing"
SENDING = "sending"


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class Invoice:
    """A fiscal invoice and its lifecycle state.

    ``amount`` is expressed in integer minor units (cents).
    """

    id: str
    number: str
    amount: int
    created_at: str  # ISO datetime, UTC
    seq: int
    fiscal_day: int
    status: str = PENDING
    retry_count: int = 0
    last_error: str | None = None
    confirmation_id: str | None = None
    signed_payload: str | None = None
    in_flight: str | None = None
    source: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def order_key(self) -> tuple[str, int]:
        """Ingestion order: timestamp first, store sequence as tiebreaker."""
        return (self.created_at, self.seq)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> Invoice:
        """Create an Invoice from a persisted dict."""
        status = d.get("status", PENDING)
        if status not in STATUSES:
            raise ValueError(f"Unknown invoice status: {status!r}")
        return cls(
            id=d["id"],
            number=d["number"],
            amount=int(d["amount"]),
            created_at=d["created_at"],
            seq=int(d["seq"]),
            fiscal_day=int(d.get("fiscal_day", 0)),
            status=status,
            retry_count=int(d.get("retry_count", 0)),
            last_error=d.get("last_error"),
            confirmation_id=d.get("confirmation_id"),
            signed_payload=d.get("signed_payload"),
            in_flight=d.get("in_flight"),
            source=d.get("source", ""),
        )
