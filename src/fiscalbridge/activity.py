"""Bounded, append-only activity log with push subscribers.

Every entry is also mirrored to the ``fiscalbridge.activity`` logger so the
process log keeps the full history after the ring buffer evicts it.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime

from fiscalbridge.models.activity import ERROR, INFO, SEVERITIES, SUCCESS, ActivityLogEntry

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50

Subscriber = Callable[[ActivityLogEntry], object]

_LEVELS = {INFO: logging.INFO, SUCCESS: logging.INFO, ERROR: logging.ERROR}


class ActivityLog:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: deque[ActivityLogEntry] = deque(maxlen=capacity)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def append(
        self, severity: str, message: str, invoice_id: str | None = None
    ) -> ActivityLogEntry:
        """Append an entry and push it to every subscriber.

        Subscribers run outside the lock, in append order per caller.
        """
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity!r}")
        entry = ActivityLogEntry(
            id=uuid.uuid4().hex,
            timestamp=datetime.now(UTC).isoformat(),
            severity=severity,
            message=message,
            invoice_id=invoice_id,
        )
        with self._lock:
            self._entries.append(entry)
            subscribers = list(self._subscribers)

        logger.log(_LEVELS[severity], "[%s] %s", severity, message)
        for callback in subscribers:
            try:
                callback(entry)
            except Exception:
                logger.warning("Activity subscriber %r failed", callback, exc_info=True)
        return entry

    def info(self, message: str, invoice_id: str | None = None) -> ActivityLogEntry:
        return self.append(INFO, message, invoice_id)

    def success(self, message: str, invoice_id: str | None = None) -> ActivityLogEntry:
        return self.append(SUCCESS, message, invoice_id)

    def error(self, message: str, invoice_id: str | None = None) -> ActivityLogEntry:
        return self.append(ERROR, message, invoice_id)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for push delivery. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def snapshot(self, limit: int | None = None) -> list[ActivityLogEntry]:
        """Return entries in append order; with *limit*, only the last *limit*."""
        with self._lock:
            entries = list(self._entries)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
