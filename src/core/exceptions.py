"""
Error taxonomy for the invoice pipeline.

Every failure raised by the services carries an ErrorKind. The API layer
maps the kind to an HTTP status and renders the error envelope:

    {"ok": false, "error": "...", "kind": "...", "status": 401, "body": "..."}

Hierarchy:
    InvoiceScannerError
    ├── ExtractionError      (OCR + inference server)
    ├── AccountingError      (Exact Online API)
    │   ├── NotConnected
    │   └── TokenExchangeFailed
    └── ValidationError      (caller-supplied input)
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_REJECTED = "upstream_rejected"
    MALFORMED_RESPONSE = "malformed_response"
    VALIDATION = "validation_error"
    NOT_CONNECTED = "not_connected"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    NOT_CONFIGURED = "not_configured"
    INTERNAL = "internal"


HTTP_STATUS_BY_KIND = {
    ErrorKind.UPSTREAM_UNAVAILABLE: 502,
    ErrorKind.UPSTREAM_REJECTED: 502,
    ErrorKind.MALFORMED_RESPONSE: 500,
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_CONNECTED: 401,
    ErrorKind.TOKEN_EXCHANGE_FAILED: 502,
    ErrorKind.NOT_CONFIGURED: 500,
    ErrorKind.INTERNAL: 500,
}


class InvoiceScannerError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        kind: Failure class, drives the HTTP status.
        message: Human-readable error message.
        upstream_status: Status code returned by the upstream service, if any.
        body: Raw upstream response body, surfaced verbatim for debugging.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        upstream_status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.upstream_status = upstream_status
        self.body = body

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND.get(self.kind, 500)

    def to_dict(self) -> dict:
        result = {"ok": False, "error": self.message, "kind": self.kind.value}
        if self.upstream_status is not None:
            result["status"] = self.upstream_status
        if self.body is not None:
            result["body"] = self.body
        return result

    def __str__(self) -> str:
        if self.upstream_status is not None:
            return f"{self.message} (upstream status {self.upstream_status})"
        return self.message


class ExtractionError(InvoiceScannerError):
    """Raised by the OCR wrapper and the structured extraction client."""


class AccountingError(InvoiceScannerError):
    """Raised by the Exact Online client and the token vault."""


class NotConnected(AccountingError):
    def __init__(self, message: str = "Not connected to Exact Online"):
        super().__init__(ErrorKind.NOT_CONNECTED, message)


class TokenExchangeFailed(AccountingError):
    def __init__(self, upstream_status: int, body: str, message: str = "Token exchange failed"):
        super().__init__(ErrorKind.TOKEN_EXCHANGE_FAILED, message, upstream_status, body)


class ValidationError(InvoiceScannerError):
    """Caller input is missing or invalid; raised before any network call."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.VALIDATION, message)
