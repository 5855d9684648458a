from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from fiscalbridge.activity import ActivityLog
from fiscalbridge.config import (
    Settings,
    get_cert_password,
    get_cert_path,
    get_store_path,
    load_settings,
)
from fiscalbridge.control import ControlAPI
from fiscalbridge.engine import SyncEngine
from fiscalbridge.services.fiscal_client import FiscalClient, HttpFiscalClient
from fiscalbridge.services.retry import probe_policy
from fiscalbridge.store import InvoiceStore
from fiscalbridge.watcher import FileWatcher

logger = logging.getLogger(__name__)


@dataclass
class Bridge:
    """All running parts of the agent, wired together."""

    settings: Settings
    activity: ActivityLog
    store: InvoiceStore
    client: FiscalClient
    engine: SyncEngine
    watcher: FileWatcher
    control: ControlAPI

    def start(self) -> None:
        self.engine.start()
        self.watcher.start()

    def stop(self) -> None:
        """Stop ingestion first, then let the engine finish its current step."""
        self.watcher.stop()
        self.engine.shutdown()


def create_client(settings: Settings) -> HttpFiscalClient:
    """Build the HTTP client from settings and the certificate env/keyring.

    Raises KeyError if the certificate path or password is not configured.
    """
    return HttpFiscalClient(
        settings.base_url,
        pfx_path=get_cert_path(),
        pfx_password=get_cert_password(),
        timeout=settings.request_timeout,
    )


def create_bridge(
    settings: Settings | None = None,
    client: FiscalClient | None = None,
    store_path: Path | None = None,
) -> Bridge:
    settings = settings or load_settings()
    activity = ActivityLog(settings.log_capacity)
    store = InvoiceStore(store_path or get_store_path(), activity, settings.max_retries)
    client = client or create_client(settings)
    engine = SyncEngine(
        store,
        client,
        activity,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
        probe_policy=probe_policy(settings.probe_base_delay, settings.probe_max_delay),
        alert_threshold=settings.alert_threshold,
    )
    watcher = FileWatcher(
        settings.inbox_path,
        engine.ingest,
        activity,
        lookup=store.find_by_number,
        debounce=settings.debounce,
        poll_interval=settings.poll_interval,
    )
    control = ControlAPI(engine, store, activity, settings, watcher)
    return Bridge(
        settings=settings,
        activity=activity,
        store=store,
        client=client,
        engine=engine,
        watcher=watcher,
        control=control,
    )
