from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

INFO = "info"
SUCCESS = "success"
ERROR = "error"

SEVERITIES = (INFO, SUCCESS, ERROR)


@dataclass(frozen=True)
class ActivityLogEntry:
    id: str
    timestamp: str  # ISO datetime, UTC
    severity: str
    message: str
    invoice_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
