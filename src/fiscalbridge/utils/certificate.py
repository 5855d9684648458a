from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509 import Certificate


@dataclass(frozen=True)
class CertificateBundle:
    """Key material from a .pfx/.p12 file, PEM-encoded for signing."""

    path: str
    password: str = field(repr=False)
    key_pem: bytes = field(repr=False)
    cert_pem: bytes
    chain: list[Certificate] = field(default_factory=list)


def _read_pfx(pfx_path: str, password: str):
    pfx_data = Path(pfx_path).read_bytes()
    return pkcs12.load_key_and_certificates(pfx_data, password.encode())


def load_certificate(pfx_path: str, password: str) -> CertificateBundle:
    """Load a .pfx/.p12 certificate for signing and mTLS.

    Raises ValueError for a wrong password or a file without key/certificate.
    """
    private_key, certificate, chain = _read_pfx(pfx_path, password)

    if private_key is None or certificate is None:
        raise ValueError("Certificate or private key not found in .pfx file")

    key_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )
    return CertificateBundle(
        path=pfx_path,
        password=password,
        key_pem=key_pem,
        cert_pem=certificate.public_bytes(Encoding.PEM),
        chain=list(chain) if chain else [],
    )


def validate_certificate(pfx_path: str, password: str) -> dict:
    """Validate certificate and return subject, issuer, validity window and serial."""
    _, certificate, _ = _read_pfx(pfx_path, password)

    if certificate is None:
        raise ValueError("No certificate found in .pfx file")

    now = datetime.now(UTC)
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": certificate.not_valid_after_utc,
        "valid": certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc,
        "serial": certificate.serial_number,
    }
