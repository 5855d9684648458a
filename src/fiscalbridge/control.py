"""Operator commands: open-day, close-day, force-sync, get-status, get-config.

Commands never raise for expected conditions. Redundant calls succeed with
``already=True``; backend failures come back as ``ok=False`` with a message.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from fiscalbridge.activity import ActivityLog
from fiscalbridge.config import Settings
from fiscalbridge.engine import SyncEngine
from fiscalbridge.models.invoice import EXCLUDED
from fiscalbridge.services.exceptions import FiscalBridgeError
from fiscalbridge.store import InvoiceStore
from fiscalbridge.watcher import FileWatcher

logger = logging.getLogger(__name__)

RECENT_ACTIVITY = 10


@dataclass(frozen=True)
class CommandResult:
    command: str
    ok: bool
    state: dict[str, Any] = field(default_factory=dict)
    already: bool = False
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ControlAPI:
    def __init__(
        self,
        engine: SyncEngine,
        store: InvoiceStore,
        activity: ActivityLog,
        settings: Settings,
        watcher: FileWatcher | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.activity = activity
        self.settings = settings
        self.watcher = watcher

    def _day_command(self, command: str, action) -> CommandResult:
        try:
            day, already = action()
        except FiscalBridgeError as exc:
            self.activity.error(f"{command} failed: {exc}")
            return CommandResult(
                command=command,
                ok=False,
                state=self.store.fiscal_day.to_dict(),
                message=str(exc),
            )
        return CommandResult(command=command, ok=True, state=day.to_dict(), already=already)

    def open_day(self) -> CommandResult:
        return self._day_command("open-day", self.engine.open_day)

    def close_day(self) -> CommandResult:
        return self._day_command("close-day", self.engine.close_day)

    def force_sync(self) -> CommandResult:
        requeued = self.engine.force_sync()
        status = self.get_status().state
        return CommandResult(
            command="force-sync",
            ok=True,
            state={**status, "requeued": requeued},
            message=f"{requeued} receipts re-queued",
        )

    def get_status(self) -> CommandResult:
        engine = self.engine.status()
        excluded = [
            {"id": inv.id, "number": inv.number, "last_error": inv.last_error}
            for inv in self.store.list_by_status(EXCLUDED)
        ]
        state = {
            "backend": "online" if engine.online else "offline",
            "offline_since": engine.offline_since,
            "probe_failures": engine.probe_failures,
            "alert": engine.alert or bool(excluded),
            "fiscal_day": self.store.fiscal_day.to_dict(),
            "engine_running": engine.running,
            "watcher_running": self.watcher.running if self.watcher else False,
            "queue_length": engine.queue_length,
            "in_flight": engine.in_flight,
            "parked": engine.parked,
            "counts": self.store.counts(),
            "excluded": excluded,
            "recent_activity": [e.to_dict() for e in self.activity.snapshot(RECENT_ACTIVITY)],
        }
        return CommandResult(command="get-status", ok=True, state=state)

    def get_config(self) -> CommandResult:
        backend: dict[str, Any] | None
        message = ""
        try:
            backend = self.engine.client.get_config()
        except FiscalBridgeError as exc:
            logger.warning("Backend config unavailable: %s", exc)
            backend = None
            message = str(exc)
        state = {"local": self.settings.to_dict(), "backend": backend}
        return CommandResult(command="get-config", ok=True, state=state, message=message)

    def dispatch(self, command: str) -> CommandResult:
        """Run a command by its name (``open-day``, ``status``, ...)."""
        handlers = {
            "open-day": self.open_day,
            "close-day": self.close_day,
            "force-sync": self.force_sync,
            "get-status": self.get_status,
            "status": self.get_status,
            "get-config": self.get_config,
            "config": self.get_config,
        }
        handler = handlers.get(command.strip().lower())
        if handler is None:
            raise KeyError(command)
        return handler()
