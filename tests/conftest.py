from __future__ import annotations

import threading
from collections import deque
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from fiscalbridge.activity import ActivityLog
from fiscalbridge.engine import SyncEngine
from fiscalbridge.models.invoice import Invoice
from fiscalbridge.services.exceptions import UnreachableError
from fiscalbridge.services.fiscal_client import BackendStatus, FiscalClient, SignedInvoice
from fiscalbridge.store import InvoiceStore


class ScriptedClient(FiscalClient):
    """In-memory backend. Queue exceptions on ``*_errors`` to script failures."""

    def __init__(self) -> None:
        self.sign_errors: deque[Exception] = deque()
        self.send_errors: deque[Exception] = deque()
        self.probe_errors: deque[Exception] = deque()
        self.verify_errors: deque[Exception] = deque()
        self.day_errors: deque[Exception] = deque()
        self.registered: dict[str, str] = {}
        self.sent: list[str] = []
        self.calls: list[tuple[str, str | None]] = []
        self.send_hook = None
        self.max_concurrent_sends: dict[str, int] = {}
        self._active: dict[str, int] = {}
        self._lock = threading.Lock()

    def _fail(self, errors: deque[Exception]) -> None:
        if errors:
            raise errors.popleft()

    def open_day(self) -> dict:
        self.calls.append(("open_day", None))
        self._fail(self.day_errors)
        return {"state": "open"}

    def close_day(self) -> dict:
        self.calls.append(("close_day", None))
        self._fail(self.day_errors)
        return {"state": "closed"}

    def sign(self, invoice: Invoice) -> SignedInvoice:
        self.calls.append(("sign", invoice.number))
        self._fail(self.sign_errors)
        return SignedInvoice(
            invoice_id=invoice.id,
            number=invoice.number,
            fiscal_day=invoice.fiscal_day,
            payload=f"signed:{invoice.number}",
        )

    def send(self, signed: SignedInvoice) -> str:
        with self._lock:
            self.calls.append(("send", signed.number))
            active = self._active.get(signed.invoice_id, 0) + 1
            self._active[signed.invoice_id] = active
            peak = self.max_concurrent_sends.get(signed.invoice_id, 0)
            self.max_concurrent_sends[signed.invoice_id] = max(peak, active)
        try:
            if self.send_hook is not None:
                self.send_hook(signed)
            self._fail(self.send_errors)
            confirmation = f"CONF-{signed.number}"
            self.registered[signed.number] = confirmation
            self.sent.append(signed.number)
            return confirmation
        finally:
            with self._lock:
                self._active[signed.invoice_id] -= 1

    def verify(self, invoice: Invoice) -> str | None:
        self.calls.append(("verify", invoice.number))
        self._fail(self.verify_errors)
        return self.registered.get(invoice.number)

    def get_status(self) -> BackendStatus:
        self.calls.append(("status", None))
        self._fail(self.probe_errors)
        return BackendStatus(online=True)

    def get_config(self) -> dict:
        self.calls.append(("config", None))
        self._fail(self.probe_errors)
        return {"protocol": "test"}

    def go_down(self, probes: int) -> None:
        """Make the next send fail as unreachable and the next *probes* probes fail."""
        self.send_errors.append(UnreachableError("connection refused"))
        self.probe_errors.extend(UnreachableError("connection refused") for _ in range(probes))


def messages(activity: ActivityLog, severity: str | None = None) -> list[str]:
    return [e.message for e in activity.snapshot() if severity in (None, e.severity)]


# --- core fixtures ---


@pytest.fixture
def activity() -> ActivityLog:
    return ActivityLog()


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "data" / "state.json"


@pytest.fixture
def store(store_path, activity) -> InvoiceStore:
    return InvoiceStore(store_path, activity, max_retries=3)


@pytest.fixture
def open_store(store) -> InvoiceStore:
    store.open_day()
    return store


@pytest.fixture
def client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture
def engine(store, client, activity) -> SyncEngine:
    return SyncEngine(store, client, activity, max_retries=3, retry_delay=5.0)


# --- Certificate / PFX fixtures ---


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "Test POS Terminal"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Shop"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


@pytest.fixture
def test_pfx(tmp_path, test_key_and_cert):
    key, cert = test_key_and_cert
    password = b"testpass"
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_data)
    return str(pfx_path), "testpass"
