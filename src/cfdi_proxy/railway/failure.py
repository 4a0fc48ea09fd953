"""
Failure description — what travels on the failure track.

`ErrorCode` is the closed error taxonomy of the proxy. Each code has exactly
one default HTTP status (see `http_support.HttpStatusMapper`); endpoints may
override a status where the public contract demands it (the bulk endpoints
answer validation errors with 400 instead of 422).

Non-error outcomes are deliberately absent: a rejected or expired bulk
request is a `BulkStatus`, and a single failed resource download is an
`ItemFailure` record collected next to the successful files.
"""

from __future__ import annotations

import traceback
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum, unique
from types import MappingProxyType


@unique
class ErrorCode(Enum):
    """Error codes of the proxy, grouped by the stage that produces them."""

    # --- Credential validation (→ 401) ---
    INVALID_CREDENTIAL_FORMAT = "INVALID_CREDENTIAL_FORMAT"
    """Certificate, key or passphrase could not be decoded into a key pair."""

    WRONG_CREDENTIAL_CLASS = "WRONG_CREDENTIAL_CLASS"
    """Structurally valid certificate that is not a FIEL (e.g. a CSD)."""

    CREDENTIAL_EXPIRED = "CREDENTIAL_EXPIRED"
    """Current time is outside the certificate validity window."""

    # --- Session establishment (→ 401) ---
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    """The remote service refused the signed login."""

    # --- Request input (→ 422, 400 on bulk endpoints) ---
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Malformed or missing request fields."""

    # --- Retrieval (→ 400) ---
    QUERY_FAILED = "QUERY_FAILED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    BULK_REQUEST_FAILED = "BULK_REQUEST_FAILED"

    # --- Throttling (→ 429) ---
    RATE_LIMITED = "RATE_LIMITED"
    """The caller spent its request budget."""

    # --- Infrastructure (→ 5xx) ---
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    """Connection errors or 5xx responses after transport retries ran out."""

    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    """The overall call deadline elapsed."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"


_NO_FIELD_ERRORS: Mapping[str, tuple[str, ...]] = MappingProxyType({})


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor.

    `field_errors` carries field-keyed messages for validation failures
    (`{"end_date": ("must be at least 2 seconds after start_date",)}`);
    every other failure leaves it empty and is reported under "general".

    >>> desc = FailureDescription(ErrorCode.QUERY_FAILED, "Query error: timeout")
    >>> desc.code
    <ErrorCode.QUERY_FAILED: 'QUERY_FAILED'>
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    field_errors: Mapping[str, tuple[str, ...]] = field(default=_NO_FIELD_ERRORS)
    notes: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def validation(field_errors: Mapping[str, list[str] | tuple[str, ...]]) -> FailureDescription:
        """Build a VALIDATION_ERROR from a field → messages mapping."""
        frozen = {name: tuple(messages) for name, messages in field_errors.items()}
        summary = "; ".join(f"{name}: {', '.join(msgs)}" for name, msgs in frozen.items())
        return FailureDescription(
            code=ErrorCode.VALIDATION_ERROR,
            message=summary or "Invalid request",
            field_errors=MappingProxyType(frozen),
        )

    def with_notes(self, notes: tuple[str, ...] | list[str]) -> FailureDescription:
        """Attach informational messages gathered before the failure happened."""
        return replace(self, notes=tuple(notes) + self.notes)

    def full_stack_trace(self) -> str:
        """Message plus the formatted exception chain, for debug responses."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(
                type(self.exception), self.exception, self.exception.__traceback__
            )
        )
        return f"{self.message}\n{tb}"
