from __future__ import annotations


class FiscalBridgeError(Exception):
    """Base class for every error raised by the bridge."""

    def __init__(self, message: str, response: dict | None = None) -> None:
        super().__init__(message)
        self.response = response or {}


class ValidationError(FiscalBridgeError):
    """Invoice data is malformed or was rejected by the backend. Never retried."""


class PolicyError(FiscalBridgeError):
    """Operation not allowed in the current state (e.g. fiscal day closed)."""


class TransientBackendError(FiscalBridgeError):
    """Backend failed in a way that is safe to retry (5xx, 429, garbled body)."""


class UnreachableError(FiscalBridgeError):
    """Backend could not be reached or did not answer within the timeout."""


class DuplicateError(FiscalBridgeError):
    """Invoice number already exists for the fiscal day."""


class InvalidTransition(FiscalBridgeError):
    """Requested status change is not allowed by the invoice lifecycle."""


class NotFoundError(FiscalBridgeError):
    """No invoice with the given id."""
