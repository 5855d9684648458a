"""Inbox watcher: turns invoice files dropped into a directory into pending invoices.

The directory is polled; a file is only read once its size and mtime have
stayed unchanged for the debounce window, so a writer still copying the file
is never read half-way.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from fiscalbridge.activity import ActivityLog
from fiscalbridge.models.invoice import Invoice
from fiscalbridge.services.exceptions import DuplicateError, ValidationError
from fiscalbridge.utils.formatters import format_amount
from fiscalbridge.utils.validators import parse_invoice_document

logger = logging.getLogger(__name__)

SUFFIXES = frozenset({".json", ".yaml", ".yml"})
PROCESSED_DIR = "processed"

Ingest = Callable[[str, int, str], Invoice]
Lookup = Callable[[str], Invoice | None]


@dataclass
class _Candidate:
    signature: tuple[int, int]  # (size, mtime_ns)
    stable_since: float


def load_invoice_file(path: Path) -> tuple[str, int]:
    """Parse an inbox file into (number, amount_minor).

    JSON floats are parsed as Decimal so amounts never pass through binary
    floating point. Raises ValueError for unreadable or invalid documents.
    """
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data: Any = json.loads(text, parse_float=Decimal)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValueError(f"Malformed {path.suffix[1:].upper()}: {exc}") from None
    return parse_invoice_document(data)


class FileWatcher:
    def __init__(
        self,
        inbox: Path,
        ingest: Ingest,
        activity: ActivityLog,
        *,
        lookup: Lookup | None = None,
        debounce: float = 0.5,
        poll_interval: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.inbox = Path(inbox)
        self.processed_dir = self.inbox / PROCESSED_DIR
        self._ingest = ingest
        self._lookup = lookup
        self.activity = activity
        self.debounce = debounce
        self.poll_interval = poll_interval
        self._clock = clock

        self._candidates: dict[str, _Candidate] = {}
        # Files already handled (rejected) at this signature; retried only if they change
        self._handled: dict[str, tuple[int, int]] = {}
        self._lock = threading.Lock()
        self._accepting = True
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.inbox.mkdir(parents=True, exist_ok=True)
        self.processed_dir.mkdir(parents=True, exist_ok=True)
        self._stop.clear()
        with self._lock:
            self._accepting = True
        self._thread = threading.Thread(target=self._run, name="inbox-watcher", daemon=True)
        self._thread.start()
        self.activity.info(f"Watching {self.inbox} for invoices")

    def stop(self) -> None:
        """Stop polling. No invoice is enqueued after this returns."""
        was_running = self.running
        with self._lock:
            self._accepting = False
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self._candidates.clear()
        if was_running:
            self.activity.info("Inbox watcher stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.scan()
            except OSError:
                logger.warning("Inbox scan failed", exc_info=True)
            self._stop.wait(self.poll_interval)

    def _signature(self, path: Path) -> tuple[int, int] | None:
        try:
            st = path.stat()
        except FileNotFoundError:
            return None
        return (st.st_size, st.st_mtime_ns)

    def scan(self) -> list[Invoice]:
        """Run one polling pass; returns the invoices ingested during it."""
        now = self._clock()
        seen: set[str] = set()
        ready: list[Path] = []

        for path in sorted(self.inbox.iterdir()) if self.inbox.is_dir() else []:
            if not path.is_file() or path.suffix.lower() not in SUFFIXES:
                continue
            if path.name.startswith("."):
                continue
            sig = self._signature(path)
            if sig is None:
                continue
            seen.add(path.name)
            if self._handled.get(path.name) == sig:
                continue
            cand = self._candidates.get(path.name)
            if cand is None or cand.signature != sig:
                self._candidates[path.name] = _Candidate(signature=sig, stable_since=now)
                continue
            if now - cand.stable_since >= self.debounce:
                ready.append(path)

        for name in list(self._candidates):
            if name not in seen:
                del self._candidates[name]
        for name in list(self._handled):
            if name not in seen:
                del self._handled[name]

        ingested = []
        for path in ready:
            inv = self._process(path)
            if inv is not None:
                ingested.append(inv)
        return ingested

    def _process(self, path: Path) -> Invoice | None:
        cand = self._candidates.pop(path.name, None)
        signature = cand.signature if cand else self._signature(path)

        try:
            number, amount = load_invoice_file(path)
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            self._reject(path, signature, f"Cannot parse {path.name}: {exc}")
            return None

        with self._lock:
            if not self._accepting:
                return None
            try:
                inv = self._ingest(number, amount, path.name)
            except DuplicateError as exc:
                if self._is_redelivery(path.name, number, amount):
                    self._archive(path)
                    return None
                self._reject(path, signature, f"Rejected {path.name}: {exc}")
                return None
            except ValidationError as exc:
                self._reject(path, signature, f"Rejected {path.name}: {exc}")
                return None

        self._archive(path)
        logger.info("Ingested %s as %s (%s)", path.name, inv.number, format_amount(inv.amount))
        return inv

    def _is_redelivery(self, name: str, number: str, amount: int) -> bool:
        """True when the stored invoice came from this very file (crash before archiving)."""
        if self._lookup is None:
            return False
        existing = self._lookup(number)
        return existing is not None and existing.source == name and existing.amount == amount

    def _reject(self, path: Path, signature: tuple[int, int] | None, message: str) -> None:
        if signature is not None:
            self._handled[path.name] = signature
        self.activity.error(message)

    def _archive(self, path: Path) -> None:
        self.processed_dir.mkdir(parents=True, exist_ok=True)
        target = self.processed_dir / path.name
        if target.exists():
            target = self.processed_dir / f"{path.stem}.{time.time_ns()}{path.suffix}"
        try:
            os.replace(path, target)
        except OSError:
            logger.warning("Failed to archive %s", path, exc_info=True)
