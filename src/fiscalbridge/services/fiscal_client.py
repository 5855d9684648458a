"""Fiscal backend contract and its HTTP implementation.

Every backend interaction goes through :class:`FiscalClient`. Implementations
either return a value or raise one of the errors in
:mod:`fiscalbridge.services.exceptions`; transport exceptions never cross this
boundary, so the sync engine can apply its offline policy uniformly.
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import requests.exceptions
from requests_pkcs12 import get, post

from fiscalbridge.models.invoice import Invoice
from fiscalbridge.services.exceptions import (
    PolicyError,
    TransientBackendError,
    UnreachableError,
    ValidationError,
)
from fiscalbridge.services.invoice_xml import build_invoice_xml, encode_xml
from fiscalbridge.services.retry import BACKEND_READ, retry_call
from fiscalbridge.services.xml_signer import sign_invoice_xml
from fiscalbridge.utils.certificate import CertificateBundle, load_certificate

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class SignedInvoice:
    invoice_id: str
    number: str
    fiscal_day: int
    payload: str  # gzip + base64 signed XML


@dataclass(frozen=True)
class BackendStatus:
    online: bool
    fiscal_day_open: bool | None = None
    message: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


class FiscalClient(abc.ABC):
    """Contract the sync engine and control API rely on."""

    @abc.abstractmethod
    def open_day(self) -> dict[str, Any]: ...

    @abc.abstractmethod
    def close_day(self) -> dict[str, Any]: ...

    @abc.abstractmethod
    def sign(self, invoice: Invoice) -> SignedInvoice: ...

    @abc.abstractmethod
    def send(self, signed: SignedInvoice) -> str:
        """Register a signed invoice; returns the backend confirmation id."""

    @abc.abstractmethod
    def verify(self, invoice: Invoice) -> str | None:
        """Return the confirmation id if the backend already registered *invoice*."""

    @abc.abstractmethod
    def get_status(self) -> BackendStatus: ...

    @abc.abstractmethod
    def get_config(self) -> dict[str, Any]: ...


def _format_errors(errors: object) -> str:
    """Format an ``errors`` field value as a human-readable string."""
    if isinstance(errors, list):
        return "; ".join(str(e) for e in errors)
    return str(errors)


def _check_error_payload(data: dict) -> None:
    """Raise ValidationError if a 2xx body still reports a rejection."""
    errors = data.get("errors")
    if errors:
        raise ValidationError(_format_errors(errors), response=data)

    if data.get("accepted") is False:
        reason = data.get("message") or json.dumps(data, ensure_ascii=False)[:200]
        raise ValidationError(str(reason), response=data)


def _decode(resp: Any, action: str) -> dict[str, Any]:
    """Map an HTTP response onto a dict body or a taxonomy error."""
    if not resp.ok:
        body = resp.text[:500] if resp.text else ""
        message = f"Backend {action} error ({resp.status_code}): {body}"
        if resp.status_code == 408:
            raise UnreachableError(message)
        if resp.status_code in RETRYABLE_STATUS_CODES or resp.status_code >= 500:
            raise TransientBackendError(message)
        if resp.status_code == 409:
            raise PolicyError(message)
        raise ValidationError(message)
    try:
        data = resp.json()
    except ValueError:
        raise TransientBackendError(f"Backend {action} returned a non-JSON body") from None
    if not isinstance(data, dict):
        raise TransientBackendError(f"Backend {action} returned an unexpected body")
    return data


class HttpFiscalClient(FiscalClient):
    """JSON-over-mTLS backend client. Signing happens locally with the same certificate."""

    def __init__(
        self,
        base_url: str,
        pfx_path: str,
        pfx_password: str,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.pfx_path = pfx_path
        self.pfx_password = pfx_password
        self.timeout = timeout
        self._certificate: CertificateBundle | None = None

    # --- transport ---

    def _call(
        self,
        method: str,
        path: str,
        action: str,
        *,
        payload: dict | None = None,
        params: dict | None = None,
        idempotent: bool = False,
    ) -> Any:
        url = f"{self.base_url}{path}"
        func = post if method == "POST" else get
        kwargs: dict[str, Any] = {
            "pkcs12_filename": self.pfx_path,
            "pkcs12_password": self.pfx_password,
            "timeout": self.timeout,
        }
        if payload is not None:
            kwargs["json"] = payload
        if params is not None:
            kwargs["params"] = params

        def _do():
            return func(url, **kwargs)

        try:
            if idempotent:
                return retry_call(_do, BACKEND_READ)
            return _do()
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise UnreachableError(f"Backend {action} unreachable: {type(exc).__name__}") from exc
        except requests.exceptions.RequestException as exc:
            raise TransientBackendError(f"Backend {action} failed: {exc}") from exc
        except (OSError, ValueError) as exc:
            # requests_pkcs12 raises these for an unreadable or wrong-password .pfx
            raise PolicyError(f"Client certificate unusable: {exc}") from exc

    def _get_certificate(self) -> CertificateBundle:
        if self._certificate is None:
            try:
                self._certificate = load_certificate(self.pfx_path, self.pfx_password)
            except (OSError, ValueError) as exc:
                raise PolicyError(f"Signing certificate unusable: {exc}") from exc
        return self._certificate

    # --- contract ---

    def open_day(self) -> dict[str, Any]:
        resp = self._call("POST", "/fiscal-days/open", "open_day", payload={})
        data = _decode(resp, "open_day")
        _check_error_payload(data)
        return data

    def close_day(self) -> dict[str, Any]:
        resp = self._call("POST", "/fiscal-days/close", "close_day", payload={})
        data = _decode(resp, "close_day")
        _check_error_payload(data)
        return data

    def sign(self, invoice: Invoice) -> SignedInvoice:
        cert = self._get_certificate()
        try:
            signed = sign_invoice_xml(build_invoice_xml(invoice), cert.key_pem, cert.cert_pem)
        except ValueError as exc:
            raise ValidationError(f"Invoice {invoice.number} cannot be signed: {exc}") from exc
        return SignedInvoice(
            invoice_id=invoice.id,
            number=invoice.number,
            fiscal_day=invoice.fiscal_day,
            payload=encode_xml(signed),
        )

    def send(self, signed: SignedInvoice) -> str:
        payload = {
            "number": signed.number,
            "fiscalDay": signed.fiscal_day,
            "invoiceXmlGZipB64": signed.payload,
        }
        data = _decode(self._call("POST", "/invoices", "send", payload=payload), "send")
        _check_error_payload(data)

        confirmation = data.get("confirmationId")
        if not confirmation or not str(confirmation).strip():
            # Accepted but unconfirmed: the outcome is settled by verify
            raise TransientBackendError(
                f"Response without confirmation id for {signed.number}", response=data
            )
        return str(confirmation)

    def verify(self, invoice: Invoice) -> str | None:
        resp = self._call(
            "GET",
            f"/invoices/{quote(invoice.number, safe='')}",
            "verify",
            params={"fiscalDay": invoice.fiscal_day},
            idempotent=True,
        )
        if resp.status_code == 404:
            return None
        data = _decode(resp, "verify")
        confirmation = data.get("confirmationId")
        return str(confirmation) if confirmation else None

    def get_status(self) -> BackendStatus:
        """Single reachability check; callers own the backoff between checks."""
        data = _decode(self._call("GET", "/status", "status"), "status")
        day_open = data.get("fiscalDayOpen")
        return BackendStatus(
            online=True,
            fiscal_day_open=bool(day_open) if day_open is not None else None,
            message=str(data.get("message", "")),
            raw=data,
        )

    def get_config(self) -> dict[str, Any]:
        return _decode(self._call("GET", "/config", "config", idempotent=True), "config")
