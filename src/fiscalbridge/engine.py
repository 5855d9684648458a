"""Sync engine: moves invoices from pending to sent, one at a time, in order.

A single worker thread owns the queue head and is the only caller of
``sign``/``send``; ingestion and control commands only enqueue work and wake
it. The queue holds invoice ids; the store is the source of truth for state.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime

from fiscalbridge.activity import ActivityLog
from fiscalbridge.models.fiscal_day import FiscalDay
from fiscalbridge.models.invoice import EXCLUDED, PENDING, SENDING, SENT, SIGNED, SIGNING, Invoice
from fiscalbridge.services.exceptions import (
    FiscalBridgeError,
    NotFoundError,
    PolicyError,
    TransientBackendError,
    UnreachableError,
    ValidationError,
)
from fiscalbridge.services.fiscal_client import FiscalClient, SignedInvoice
from fiscalbridge.services.retry import PROBE_BACKOFF, RetryPolicy, calc_delay, linear_delay
from fiscalbridge.store import InvoiceStore

logger = logging.getLogger(__name__)

WAITING_FOR_DAY = "Waiting for fiscal day to open"


@dataclass(frozen=True)
class EngineStatus:
    running: bool
    online: bool
    offline_since: str | None
    probe_failures: int
    alert: bool
    queue_length: int
    in_flight: str | None
    parked: str | None


class SyncEngine:
    def __init__(
        self,
        store: InvoiceStore,
        client: FiscalClient,
        activity: ActivityLog,
        *,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        probe_policy: RetryPolicy = PROBE_BACKOFF,
        alert_threshold: int = 5,
    ) -> None:
        self.store = store
        self.client = client
        self.activity = activity
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.probe_policy = probe_policy
        self.alert_threshold = alert_threshold

        self._cond = threading.Condition(threading.RLock())
        # Held for the whole of an invoice step and for day open/close
        self._step_lock = threading.Lock()
        self._queue: deque[str] = deque()
        self._in_flight: str | None = None
        self._online = True
        self._offline_since: str | None = None
        self._probe_failures = 0
        self._alerted = False
        self._parked: str | None = None
        self._blocked: str | None = None
        self._dirty = False
        self._force = False
        self._stopping = False
        self._thread: threading.Thread | None = None

    # --- queue ---

    def _order_key(self, invoice_id: str) -> tuple[str, int]:
        try:
            return self.store.get(invoice_id).order_key
        except NotFoundError:
            return ("", 0)

    def _wake(self, *, force: bool = False) -> None:
        with self._cond:
            self._dirty = True
            if force:
                self._force = True
            self._cond.notify_all()

    def _finish(self, invoice_id: str) -> None:
        """Drop a terminal invoice from the queue."""
        with self._cond:
            try:
                self._queue.remove(invoice_id)
            except ValueError:
                pass

    def ingest(self, number: str, amount: int, source: str = "") -> Invoice:
        """Record a new invoice and enqueue it in ingestion order.

        Raises ValidationError or DuplicateError from the store; nothing is
        enqueued in that case.
        """
        inv = self.store.create(number, amount, source=source)
        with self._cond:
            idx = len(self._queue)
            while idx > 0:
                prev = self._queue[idx - 1]
                if prev == self._in_flight or self._order_key(prev) <= inv.order_key:
                    break
                idx -= 1
            self._queue.insert(idx, inv.id)
        self._wake()
        return inv

    def rebuild_queue(self) -> None:
        """Reload the queue from every pending/signed invoice in the store."""
        with self._cond:
            self._queue = deque(inv.id for inv in self.store.list_unfinished())

    @property
    def queue(self) -> list[str]:
        with self._cond:
            return list(self._queue)

    # --- recovery ---

    def recover(self) -> None:
        """Resolve in-flight markers left by a previous run, then rebuild the queue.

        A ``sending`` marker means the send outcome is unknown: the backend is
        asked whether it registered the invoice. Confirmed invoices become
        sent; unconfirmed ones go back to pending. If the backend cannot be
        asked, the marker stays and the head step verifies it later.
        """
        with self._step_lock:
            for inv in self.store.list_in_flight():
                if inv.in_flight == SIGNING:
                    self.store.clear_in_flight(inv.id)
                    continue
                try:
                    self._reconcile(inv)
                except (UnreachableError, TransientBackendError, PolicyError) as exc:
                    logger.warning("Cannot verify %s yet: %s", inv.number, exc)
            self.rebuild_queue()

    def _reconcile(self, inv: Invoice) -> Invoice:
        confirmation = self.client.verify(inv)
        if confirmation:
            return self.store.transition(inv.id, SENT, confirmation_id=confirmation)
        return self.store.recover(inv.id)

    # --- processing ---

    def process_next(self) -> float | None:
        """Run one processing step.

        Returns the seconds to wait before the next step: ``0`` to continue
        immediately, ``None`` when there is nothing to do until woken.
        """
        with self._cond:
            online = self._online
        if not online:
            # Probes touch no invoice and run outside the step lock
            return self._probe()

        with self._step_lock:
            with self._cond:
                if not self._online:
                    return 0
                self._force = False
                if not self._queue or self._blocked:
                    return None
                invoice_id = self._queue[0]

            if not self.store.fiscal_day.is_open:
                self._park(WAITING_FOR_DAY)
                return None

            try:
                inv = self.store.get(invoice_id)
            except NotFoundError:
                self._finish(invoice_id)
                return 0
            if inv.is_terminal:
                self._finish(invoice_id)
                return 0

            with self._cond:
                self._parked = None
                self._in_flight = invoice_id
            try:
                return self._advance(inv)
            finally:
                with self._cond:
                    self._in_flight = None

    def _advance(self, inv: Invoice) -> float | None:
        try:
            if inv.in_flight == SENDING:
                inv = self._reconcile(inv)
                if inv.status == SENT:
                    self._finish(inv.id)
                    return 0

            if inv.status == PENDING:
                self.store.begin(inv.id, SIGNING)
                signed = self.client.sign(inv)
                inv = self.store.transition(inv.id, SIGNED, signed_payload=signed.payload)
            else:
                signed = SignedInvoice(
                    invoice_id=inv.id,
                    number=inv.number,
                    fiscal_day=inv.fiscal_day,
                    payload=inv.signed_payload or "",
                )

            self.store.begin(inv.id, SENDING)
            confirmation = self.client.send(signed)
            self.store.transition(inv.id, SENT, confirmation_id=confirmation)
            self._finish(inv.id)
            return 0
        except UnreachableError as exc:
            self._clear_signing(inv.id)
            return self._go_offline(str(exc))
        except ValidationError as exc:
            self.store.transition(inv.id, EXCLUDED, error=str(exc))
            self._finish(inv.id)
            return 0
        except TransientBackendError as exc:
            sending = self.store.get(inv.id).in_flight == SENDING
            failed = self.store.record_failure(inv.id, str(exc), keep_marker=sending)
            if failed.retry_count >= self.max_retries:
                self.store.transition(
                    inv.id, EXCLUDED, error=f"Retries exhausted: {failed.last_error}"
                )
                self._finish(inv.id)
                return 0
            return linear_delay(failed.retry_count, self.retry_delay)
        except PolicyError as exc:
            self._clear_signing(inv.id)
            with self._cond:
                self._blocked = str(exc)
            self.activity.info(f"Invoice {inv.number} parked: {exc}", inv.id)
            return None

    def _clear_signing(self, invoice_id: str) -> None:
        """Drop a signing marker after a failure.

        A sending marker is left alone: until the backend answers a verify,
        the outcome of that send is unknown and it must not be sent blindly.
        """
        if self.store.get(invoice_id).in_flight == SIGNING:
            self.store.clear_in_flight(invoice_id)

    def _park(self, reason: str) -> None:
        with self._cond:
            if self._parked == reason:
                return
            self._parked = reason
            queued = len(self._queue)
        self.activity.info(f"{reason} ({queued} invoice(s) queued)")

    # --- offline mode ---

    def _go_offline(self, reason: str) -> float:
        with self._cond:
            was_online = self._online
            self._online = False
            if was_online:
                self._offline_since = datetime.now(UTC).isoformat()
                self._probe_failures = 0
        if was_online:
            self.activity.error(f"Fiscal backend unreachable, entering offline mode: {reason}")
        return calc_delay(0, self.probe_policy)

    def _probe(self) -> float:
        with self._cond:
            self._force = False
        try:
            self.client.get_status()
        except FiscalBridgeError as exc:
            with self._cond:
                self._probe_failures += 1
                failures = self._probe_failures
                raise_alert = failures >= self.alert_threshold and not self._alerted
                if raise_alert:
                    self._alerted = True
            logger.warning("Reachability probe %d failed: %s", failures, exc)
            if raise_alert:
                self.activity.error(
                    f"Fiscal backend still unreachable after {failures} consecutive probes"
                )
            return calc_delay(failures, self.probe_policy)

        with self._cond:
            self._online = True
            self._offline_since = None
            self._probe_failures = 0
            self._alerted = False
            queued = len(self._queue)
        self.activity.success(
            f"Fiscal backend reachable again; resuming {queued} queued invoice(s)"
        )
        return 0

    @property
    def online(self) -> bool:
        with self._cond:
            return self._online

    # --- commands ---

    def open_day(self) -> tuple[FiscalDay, bool]:
        """Open the fiscal day at the backend, then locally. Redundant calls only log."""
        with self._step_lock:
            if self.store.fiscal_day.is_open:
                return self.store.open_day()
            try:
                self.client.open_day()
            except UnreachableError as exc:
                self._go_offline(str(exc))
                raise
            result = self.store.open_day()
            with self._cond:
                self._parked = None
                self._blocked = None
        self._wake(force=True)
        return result

    def close_day(self) -> tuple[FiscalDay, bool]:
        """Close the fiscal day once no step is in progress. Redundant calls only log."""
        with self._step_lock:
            if not self.store.fiscal_day.is_open:
                return self.store.close_day()
            try:
                self.client.close_day()
            except UnreachableError as exc:
                self._go_offline(str(exc))
                raise
            result = self.store.close_day()
        self._wake()
        return result

    def force_sync(self) -> int:
        """Probe now and re-enqueue every unfinished invoice not already queued.

        The in-flight head keeps its place; everything else is stably
        re-sorted by ingestion order. Returns how many invoices were added.
        """
        self.activity.info("Force sync initiated - checking for failed receipts")
        with self._cond:
            self._blocked = None
            queued = set(self._queue)
            added = [
                inv.id
                for inv in self.store.list_unfinished()
                if inv.id not in queued and inv.id != self._in_flight
            ]
            ids = list(self._queue) + added
            pinned = ids[:1] if ids and ids[0] == self._in_flight else []
            rest = sorted(ids[len(pinned):], key=self._order_key)
            self._queue = deque(pinned + rest)
        self._wake(force=True)
        self.activity.success(f"Force sync completed - {len(added)} receipts re-queued")
        return len(added)

    def status(self) -> EngineStatus:
        with self._cond:
            return EngineStatus(
                running=self.running,
                online=self._online,
                offline_since=self._offline_since,
                probe_failures=self._probe_failures,
                alert=self._alerted,
                queue_length=len(self._queue),
                in_flight=self._in_flight,
                parked=self._blocked or self._parked,
            )

    # --- worker ---

    def drain(self, max_steps: int = 1000) -> int:
        """Run steps synchronously, ignoring delays, until idle. Returns steps taken."""
        for step in range(max_steps):
            if self.process_next() is None:
                return step + 1
        return max_steps

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.recover()
        with self._cond:
            self._stopping = False
        self._thread = threading.Thread(target=self._run, name="sync-engine", daemon=True)
        self._thread.start()

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop the worker after its current step; that step always completes."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while True:
            with self._cond:
                if self._stopping:
                    return
                self._dirty = False
            try:
                delay = self.process_next()
            except Exception:
                logger.exception("Sync engine step failed")
                delay = self.retry_delay
            if delay == 0:
                continue
            deadline = None if delay is None else time.monotonic() + delay
            with self._cond:
                while not self._stopping and not self._force:
                    if deadline is None:
                        if self._dirty:
                            break
                        self._cond.wait()
                        continue
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)
