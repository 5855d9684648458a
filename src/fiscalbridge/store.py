"""Durable invoice store, the single source of truth for invoices and the fiscal day.

State lives in one JSON document (``state.json`` in the data dir), rewritten
atomically on every mutation under a file lock, so a second process cannot
interleave writes and a crash never leaves a half-written file.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock

from fiscalbridge.activity import ActivityLog
from fiscalbridge.models.fiscal_day import CLOSED, OPEN, FiscalDay
from fiscalbridge.models.invoice import (
    EXCLUDED,
    PENDING,
    SENDING,
    SENT,
    SIGNED,
    SIGNING,
    STATUSES,
    Invoice,
    can_transition,
)
from fiscalbridge.services.exceptions import (
    DuplicateError,
    InvalidTransition,
    NotFoundError,
    PolicyError,
    ValidationError,
)
from fiscalbridge.utils.formatters import format_amount

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s → %s", path, backup)
    return backup


class InvoiceStore:
    def __init__(self, path: Path, activity: ActivityLog, max_retries: int = 3) -> None:
        self.path = Path(path)
        self.activity = activity
        self.max_retries = max_retries
        self._lock = threading.RLock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file_lock = FileLock(self.path.with_suffix(".lock"))
        self._invoices: dict[str, Invoice] = {}
        self._day = FiscalDay()
        self._next_seq = 1
        self._load()

    # --- persistence ---

    def _load(self) -> None:
        with self._file_lock:
            if not self.path.exists():
                return
            try:
                data = json.loads(self.path.read_text())
                invoices = [Invoice.from_dict(d) for d in data.get("invoices", [])]
                day = FiscalDay.from_dict(data.get("fiscal_day", {}))
                next_seq = int(data.get("next_seq", 1))
            except (json.JSONDecodeError, ValueError, KeyError, TypeError, AttributeError):
                _backup_corrupt(self.path)
                return
        self._invoices = {inv.id: inv for inv in invoices}
        self._day = day
        self._next_seq = max(
            [next_seq] + [inv.seq + 1 for inv in invoices],
        )

    def _save(self, invoices: dict[str, Invoice], day: FiscalDay, next_seq: int) -> None:
        data: dict[str, Any] = {
            "fiscal_day": day.to_dict(),
            "next_seq": next_seq,
            "invoices": [inv.to_dict() for inv in invoices.values()],
        }
        with self._file_lock:
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
            os.replace(tmp, self.path)

    def _require(self, invoice_id: str) -> Invoice:
        inv = self._invoices.get(invoice_id)
        if inv is None:
            raise NotFoundError(f"Invoice not found: {invoice_id}")
        return inv

    def _commit(
        self,
        inv: Invoice | None = None,
        *,
        day: FiscalDay | None = None,
        next_seq: int | None = None,
    ) -> None:
        """Persist the new state, then adopt it. A failed write leaves memory unchanged."""
        invoices = self._invoices if inv is None else {**self._invoices, inv.id: inv}
        day = day or self._day
        next_seq = next_seq or self._next_seq
        self._save(invoices, day, next_seq)
        self._invoices, self._day, self._next_seq = invoices, day, next_seq

    def _put(self, inv: Invoice, **kwargs: Any) -> Invoice:
        self._commit(inv, **kwargs)
        return inv

    # --- fiscal day ---

    @property
    def fiscal_day(self) -> FiscalDay:
        with self._lock:
            return self._day

    def open_day(self) -> tuple[FiscalDay, bool]:
        """Open the fiscal day. Returns (day, already_open); redundant calls only log."""
        with self._lock:
            if self._day.is_open:
                day = self._day
                already = True
            else:
                day = FiscalDay(
                    state=OPEN,
                    number=self._day.number + 1,
                    opened_at=_now(),
                    closed_at=None,
                )
                self._commit(day=day)
                already = False
        if already:
            self.activity.info(f"Fiscal day {day.number} already open")
        else:
            self.activity.success(f"Fiscal day {day.number} opened")
        return day, already

    def close_day(self) -> tuple[FiscalDay, bool]:
        """Close the fiscal day. Returns (day, already_closed); redundant calls only log."""
        with self._lock:
            if not self._day.is_open:
                day = self._day
                already = True
            else:
                day = replace(self._day, state=CLOSED, closed_at=_now())
                self._commit(day=day)
                already = False
        if already:
            self.activity.info("Fiscal day already closed")
        else:
            self.activity.success(f"Fiscal day {day.number} closed")
        return day, already

    # --- invoices ---

    def create(self, number: str, amount: int, *, source: str = "") -> Invoice:
        """Record a new pending invoice.

        Raises DuplicateError if a live invoice with the same number exists for
        the current fiscal day.
        """
        number = (number or "").strip()
        if not number:
            raise ValidationError("Invoice number is required")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Amount must be a positive integer of minor units: {amount!r}")

        with self._lock:
            day_no = self._day.current_number
            for existing in self._invoices.values():
                if (
                    existing.number == number
                    and existing.fiscal_day == day_no
                    and existing.status != EXCLUDED
                ):
                    raise DuplicateError(
                        f"Invoice {number} already exists for fiscal day {day_no}",
                        response={"id": existing.id},
                    )
            inv = Invoice(
                id=uuid.uuid4().hex,
                number=number,
                amount=amount,
                created_at=_now(),
                seq=self._next_seq,
                fiscal_day=day_no,
                source=source,
            )
            self._put(inv, next_seq=self._next_seq + 1)
        self.activity.info(f"Invoice {number} received ({format_amount(amount)})", inv.id)
        return inv

    def transition(
        self,
        invoice_id: str,
        new_status: str,
        *,
        confirmation_id: str | None = None,
        signed_payload: str | None = None,
        error: str | None = None,
    ) -> Invoice:
        """Move an invoice forward in its lifecycle.

        Raises InvalidTransition for moves the lifecycle does not allow and
        PolicyError for signing/sending while the fiscal day is closed.
        """
        if new_status not in STATUSES:
            raise InvalidTransition(f"Unknown status: {new_status!r}")

        with self._lock:
            inv = self._require(invoice_id)
            if not can_transition(inv.status, new_status):
                raise InvalidTransition(
                    f"Invoice {inv.number}: {inv.status} → {new_status} not allowed"
                )
            if new_status in (SIGNED, SENT) and not self._day.is_open:
                raise PolicyError(f"Fiscal day closed: cannot mark {inv.number} {new_status}")

            changes: dict[str, Any] = {"status": new_status, "in_flight": None}
            if new_status == SIGNED:
                changes["signed_payload"] = signed_payload
            elif new_status == SENT:
                if not confirmation_id:
                    raise InvalidTransition(f"Invoice {inv.number}: sent requires a confirmation id")
                changes["confirmation_id"] = confirmation_id
                changes["last_error"] = None
            elif new_status == EXCLUDED:
                changes["last_error"] = error or inv.last_error or "excluded"
            inv = self._put(replace(inv, **changes))

        if new_status == SIGNED:
            self.activity.info(f"Invoice {inv.number} signed", inv.id)
        elif new_status == SENT:
            self.activity.success(
                f"Invoice {inv.number} processed and sent to fiscal backend "
                f"(confirmation {inv.confirmation_id})",
                inv.id,
            )
        else:
            self.activity.error(f"Invoice {inv.number} excluded: {inv.last_error}", inv.id)
        return inv

    def record_failure(self, invoice_id: str, error: str, *, keep_marker: bool = False) -> Invoice:
        """Count a failed attempt and remember its reason.

        With *keep_marker* the in-flight marker survives, so a send whose
        outcome is still unknown is verified before it is attempted again.
        """
        with self._lock:
            inv = self._require(invoice_id)
            if inv.is_terminal:
                raise InvalidTransition(f"Invoice {inv.number} is already {inv.status}")
            inv = self._put(
                replace(
                    inv,
                    retry_count=inv.retry_count + 1,
                    last_error=error,
                    in_flight=inv.in_flight if keep_marker else None,
                )
            )
        self.activity.error(
            f"Attempt {inv.retry_count}/{self.max_retries} failed for invoice {inv.number}: {error}",
            inv.id,
        )
        return inv

    def begin(self, invoice_id: str, phase: str) -> Invoice:
        """Durably mark a backend call as started. Not a lifecycle change; not logged."""
        if phase not in (SIGNING, SENDING):
            raise ValueError(f"Unknown phase: {phase!r}")
        with self._lock:
            inv = self._require(invoice_id)
            if inv.is_terminal:
                raise InvalidTransition(f"Invoice {inv.number} is already {inv.status}")
            return self._put(replace(inv, in_flight=phase))

    def clear_in_flight(self, invoice_id: str) -> Invoice:
        with self._lock:
            inv = self._require(invoice_id)
            if inv.in_flight is None:
                return inv
            return self._put(replace(inv, in_flight=None))

    def recover(self, invoice_id: str) -> Invoice:
        """Return an invoice with an unconfirmed send outcome to pending.

        The signature is discarded so the invoice is signed again before the
        next send. Only invoices carrying an in-flight marker can be recovered.
        """
        with self._lock:
            inv = self._require(invoice_id)
            if inv.in_flight is None or inv.status not in (PENDING, SIGNED):
                raise InvalidTransition(f"Invoice {inv.number} has nothing to recover")
            inv = self._put(replace(inv, status=PENDING, signed_payload=None, in_flight=None))
        self.activity.info(
            f"Invoice {inv.number} returned to pending: send outcome not confirmed", inv.id
        )
        return inv

    # --- queries ---

    def get(self, invoice_id: str) -> Invoice:
        with self._lock:
            return self._require(invoice_id)

    def find_by_number(self, number: str, fiscal_day: int | None = None) -> Invoice | None:
        """Most recent invoice with *number*, optionally restricted to a fiscal day."""
        with self._lock:
            matches = [
                inv
                for inv in self._invoices.values()
                if inv.number == number and (fiscal_day is None or inv.fiscal_day == fiscal_day)
            ]
        if not matches:
            return None
        return max(matches, key=lambda inv: inv.order_key)

    def list_by_status(self, status: str | None = None) -> list[Invoice]:
        """Invoices with *status* (all when None), newest first."""
        with self._lock:
            items = [inv for inv in self._invoices.values() if status in (None, inv.status)]
        return sorted(items, key=lambda inv: inv.order_key, reverse=True)

    def list_unfinished(self) -> list[Invoice]:
        """Pending and signed invoices in ingestion order."""
        with self._lock:
            items = [inv for inv in self._invoices.values() if inv.status in (PENDING, SIGNED)]
        return sorted(items, key=lambda inv: inv.order_key)

    def list_in_flight(self) -> list[Invoice]:
        with self._lock:
            items = [inv for inv in self._invoices.values() if inv.in_flight is not None]
        return sorted(items, key=lambda inv: inv.order_key)

    def counts(self) -> dict[str, int]:
        result = dict.fromkeys(STATUSES, 0)
        with self._lock:
            for inv in self._invoices.values():
                result[inv.status] += 1
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._invoices)
