"""
Failure descriptions — what travels on the failure track of a Result.

Every adapter in domain-tracker turns its exceptions into a FailureDescription
carrying an ErrorCode. The code decides two things downstream:

  - the refresh cycles use it to tell a stale-and-continue failure
    (resolution, TLS, transport) from a cycle-aborting one (storage read)
  - the HTTP layer maps it to a status code via ErrorCode.http_status
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique


@unique
class ErrorCode(Enum):
    """Error taxonomy shared by adapters, refresh cycles and the API."""

    # --- Client-side (4xx) ---
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"

    # --- Upstream data sources (502) ---
    RESOLUTION_ERROR = "RESOLUTION_ERROR"
    """Every registration source failed for a domain."""

    PARSE_ERROR = "PARSE_ERROR"
    """Upstream answered but the payload is unusable (e.g. no expiration event)."""

    CONNECTION_ERROR = "CONNECTION_ERROR"
    """DNS, TCP or timeout failure talking to an upstream host."""

    TLS_ERROR = "TLS_ERROR"
    """TLS handshake or certificate verification failed."""

    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    """Outbound mail delivery failed."""

    # --- Server-side (5xx) ---
    STORAGE_ERROR = "STORAGE_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    TECHNICAL_ERROR = "TECHNICAL_ERROR"

    @property
    def http_status(self) -> int:
        """HTTP status the API layer answers with for this code."""
        return _HTTP_STATUS.get(self, 500)


_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.AUTHENTICATION_ERROR: 401,
    ErrorCode.AUTHORIZATION_ERROR: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.RESOLUTION_ERROR: 502,
    ErrorCode.PARSE_ERROR: 502,
    ErrorCode.CONNECTION_ERROR: 502,
    ErrorCode.TLS_ERROR: 502,
    ErrorCode.TRANSPORT_ERROR: 502,
}


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure: code, human message, optional cause and a UTC timestamp.

    >>> FailureDescription(ErrorCode.NOT_FOUND, "domain 7 does not exist").code
    <ErrorCode.NOT_FOUND: 'NOT_FOUND'>
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def describe(self) -> str:
        """Message plus the cause's text, suitable for a single log field."""
        if self.exception is None:
            return self.message
        return f"{self.message}: {self.exception}"

    def full_stack_trace(self) -> str:
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(type(self.exception), self.exception, self.exception.__traceback__)
        )
        return f"{self.message}\n{tb}"

    def __str__(self) -> str:
        return f"{self.code.value}: {self.describe()}"
