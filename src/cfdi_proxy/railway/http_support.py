"""
HTTP integration — ErrorCode → status mapping and the JSON envelope.

Every endpoint answers with the same envelope:

    {"success": true,  "data": {...}, "messages": [...], "errors"?: {...}}
    {"success": false, "errors": {"general" | field | package_id: [...]}, "messages"?: [...]}

A success may still carry `errors` (per-package fetch failures, the failed
half of a `download_type=ambos` bulk submit). Unexpected failures are
reduced to a generic message unless debug output is enabled.

Usage (FastAPI):
    return build_fastapi_response(result, status_overrides=BULK_STATUS_OVERRIDES)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from fastapi.responses import JSONResponse

from cfdi_proxy.railway.failure import ErrorCode, FailureDescription
from cfdi_proxy.railway.result import Result

GENERIC_ERROR_MESSAGE = "An error occurred. Please try again."


class ReplyLike(Protocol):
    """Shape of a success value the envelope builder can render."""

    @property
    def data(self) -> Mapping[str, Any]: ...

    @property
    def messages(self) -> tuple[str, ...]: ...

    @property
    def errors(self) -> Mapping[str, tuple[str, ...]]: ...


# ──────────────────────── Error Code → HTTP Status Mapping ────────────────────────


class HttpStatusMapper:
    """Maps ErrorCode values to HTTP status codes."""

    _CODE_TO_STATUS: dict[ErrorCode, int] = {
        ErrorCode.INVALID_CREDENTIAL_FORMAT: 401,
        ErrorCode.WRONG_CREDENTIAL_CLASS: 401,
        ErrorCode.CREDENTIAL_EXPIRED: 401,
        ErrorCode.AUTHENTICATION_FAILED: 401,
        ErrorCode.VALIDATION_ERROR: 422,
        ErrorCode.QUERY_FAILED: 400,
        ErrorCode.DOWNLOAD_FAILED: 400,
        ErrorCode.VERIFICATION_FAILED: 400,
        ErrorCode.BULK_REQUEST_FAILED: 400,
        ErrorCode.RATE_LIMITED: 429,
        ErrorCode.UPSTREAM_UNAVAILABLE: 503,
        ErrorCode.TIMEOUT_ERROR: 504,
        ErrorCode.UNKNOWN_ERROR: 500,
    }

    @classmethod
    def map_error_code(
        cls,
        code: ErrorCode,
        overrides: Mapping[ErrorCode, int] | None = None,
    ) -> int:
        if overrides and code in overrides:
            return overrides[code]
        return cls._CODE_TO_STATUS.get(code, 500)


# ──────────────────────── Envelope bodies ────────────────────────


def _listify(errors: Mapping[str, tuple[str, ...]]) -> dict[str, list[str]]:
    return {key: list(messages) for key, messages in errors.items()}


def success_body(reply: ReplyLike) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": True,
        "data": dict(reply.data),
        "messages": list(reply.messages),
    }
    if reply.errors:
        body["errors"] = _listify(reply.errors)
    return body


def failure_body(failure: FailureDescription, expose_detail: bool = False) -> dict[str, Any]:
    """
    Render a failure. UNKNOWN_ERROR hides its message (it may carry internal
    exception text) unless `expose_detail` is set.
    """
    if failure.code is ErrorCode.UNKNOWN_ERROR and not expose_detail:
        errors: dict[str, list[str]] = {"general": [GENERIC_ERROR_MESSAGE]}
    elif failure.field_errors:
        errors = _listify(failure.field_errors)
    else:
        errors = {"general": [failure.message]}

    body: dict[str, Any] = {"success": False, "errors": errors}
    if failure.notes:
        body["messages"] = list(failure.notes)
    if expose_detail and failure.exception is not None:
        body["debug"] = {"code": failure.code.value, "trace": failure.full_stack_trace()}
    return body


# ──────────────────────── FastAPI Adapter ────────────────────────


def build_fastapi_response(
    result: Result[Any],
    status_overrides: Mapping[ErrorCode, int] | None = None,
    expose_detail: bool = False,
) -> JSONResponse:
    """Build a JSONResponse from a Result[ReplyLike]."""
    return result.either(
        on_success=lambda reply: JSONResponse(content=success_body(reply), status_code=200),
        on_failure=lambda error: JSONResponse(
            content=failure_body(error, expose_detail),
            status_code=HttpStatusMapper.map_error_code(error.code, status_overrides),
        ),
    )
