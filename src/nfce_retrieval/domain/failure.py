"""
Failure track — error codes, failure descriptors and the typed exceptions
adapters raise internally before converting to Result at their boundary.

Codes are grouped by blast radius:
  - Session-fatal (checked once before any key): CERTIFICATE_ERROR,
    MALFORMED_CREDENTIAL, EXPIRED_CREDENTIAL, SOURCE_UNAVAILABLE
  - Per-key terminal: everything raised by the SOAP / Portal clients
  - Infrastructure: STORAGE_ERROR, DATABASE_ERROR
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique


@unique
class ErrorCode(Enum):
    """Structured error codes for the failure track."""

    # --- Session preconditions ---
    CERTIFICATE_ERROR = "CERTIFICATE_ERROR"
    """Wrong password, unreadable container or missing key material."""

    MALFORMED_CREDENTIAL = "MALFORMED_CREDENTIAL"
    """Bearer token is not three base64url segments with a readable payload."""

    EXPIRED_CREDENTIAL = "EXPIRED_CREDENTIAL"
    """Bearer token `exp` claim is in the past."""

    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    """The key list or certificate could not be read from storage."""

    # --- Per-key outcomes ---
    INVALID_ACCESS_KEY = "INVALID_ACCESS_KEY"
    """Access key is not exactly 44 digits."""

    SOAP_TRANSPORT_ERROR = "SOAP_TRANSPORT_ERROR"
    """TLS handshake failure, timeout or connection reset on the authority channel."""

    PROTOCOL_NUMBER_MISSING = "PROTOCOL_NUMBER_MISSING"
    """SOAP response carried neither a protocol number nor embedded XML."""

    CREDENTIAL_REJECTED = "CREDENTIAL_REJECTED"
    """Portal answered 401, or the credential failed pre-flight validation."""

    DOCUMENT_NOT_FOUND = "DOCUMENT_NOT_FOUND"
    """Portal answered 404."""

    UNEXPECTED_STATUS = "UNEXPECTED_STATUS"
    """Portal answered a non-2xx status other than 401/404."""

    INVALID_RESPONSE_SHAPE = "INVALID_RESPONSE_SHAPE"
    """Portal answered 200 with a body that is not an NF-e XML document."""

    RESPONSE_PARSE_ERROR = "RESPONSE_PARSE_ERROR"
    """Portal search answered with malformed JSON."""

    PORTAL_TRANSPORT_ERROR = "PORTAL_TRANSPORT_ERROR"
    """Timeout or connection failure on the Portal channel."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Invalid request arguments (e.g. inverted or too wide date range)."""

    # --- Infrastructure ---
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    """No download session is stored under the requested id."""

    SESSION_ALREADY_EXISTS = "SESSION_ALREADY_EXISTS"
    """A download session with the requested id was already started."""

    STORAGE_ERROR = "STORAGE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.DOCUMENT_NOT_FOUND, "XML not found (404)")
    >>> desc.code
    <ErrorCode.DOCUMENT_NOT_FOUND: 'DOCUMENT_NOT_FOUND'>
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def full_stack_trace(self) -> str:
        """Message followed by the formatted exception chain, if any."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(type(self.exception), self.exception, self.exception.__traceback__)
        )
        return f"{self.message}\n{tb}"

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


# ─────────────────────── Typed exceptions ───────────────────────


class RetrievalError(Exception):
    """
    Base for exceptions raised inside adapters.

    Each subclass pins its ErrorCode so Result.from_computation can keep the
    precise code instead of the adapter's generic fallback.
    """

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR


class CertificateError(RetrievalError):
    code = ErrorCode.CERTIFICATE_ERROR


class MalformedCredential(RetrievalError):
    code = ErrorCode.MALFORMED_CREDENTIAL


class ExpiredCredential(RetrievalError):
    code = ErrorCode.EXPIRED_CREDENTIAL


class InvalidAccessKey(RetrievalError):
    code = ErrorCode.INVALID_ACCESS_KEY


class SoapTransportError(RetrievalError):
    code = ErrorCode.SOAP_TRANSPORT_ERROR


class ProtocolNumberMissing(RetrievalError):
    code = ErrorCode.PROTOCOL_NUMBER_MISSING


class CredentialRejected(RetrievalError):
    code = ErrorCode.CREDENTIAL_REJECTED


class DocumentNotFound(RetrievalError):
    code = ErrorCode.DOCUMENT_NOT_FOUND


class UnexpectedStatus(RetrievalError):
    code = ErrorCode.UNEXPECTED_STATUS

    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"Unexpected HTTP status {status_code}")


class InvalidResponseShape(RetrievalError):
    code = ErrorCode.INVALID_RESPONSE_SHAPE


class ResponseParseError(RetrievalError):
    code = ErrorCode.RESPONSE_PARSE_ERROR


class PortalTransportError(RetrievalError):
    code = ErrorCode.PORTAL_TRANSPORT_ERROR


class SessionNotFound(RetrievalError):
    code = ErrorCode.SESSION_NOT_FOUND


class SessionAlreadyExists(RetrievalError):
    code = ErrorCode.SESSION_ALREADY_EXISTS
