"""
Railway-oriented error handling for the proxy.

Every stage returns a Result; failures short-circuit through `.flat_map`
and are rendered once, at the HTTP boundary, by `http_support`.

    from cfdi_proxy.railway import ErrorCode, Result

    def require_uuids(raw: str) -> Result[list[str]]:
        uuids = [u.strip() for u in raw.split(",") if u.strip()]
        if not uuids:
            return Result.failure(ErrorCode.VALIDATION_ERROR, "uuids is required")
        return Result.success(uuids)
"""

from cfdi_proxy.railway.assertions import ResultAssertions
from cfdi_proxy.railway.execution import LoggingExecutionContext
from cfdi_proxy.railway.failure import ErrorCode, FailureDescription
from cfdi_proxy.railway.result import Failure, Result, Success

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "LoggingExecutionContext",
    "ResultAssertions",
]
