"""
Execution context — times a Result-returning computation and logs the outcome.

Used around scheduled work (the bulk poller, job-queue consumers) where no
HTTP boundary exists to turn an unexpected exception into a response.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

import structlog

from cfdi_proxy.railway.failure import ErrorCode, FailureDescription
from cfdi_proxy.railway.result import Failure, Result

T = TypeVar("T")
log = structlog.get_logger()


class LoggingExecutionContext:
    """
    Log start, duration and final track of a computation.

        ctx = LoggingExecutionContext(operation="BulkPoll")
        result = ctx.execute(lambda: poll_once(request))
    """

    def __init__(self, operation: str = "unknown") -> None:
        self._operation = operation

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        log.info("execution.started", operation=self._operation)
        start = time.monotonic()

        try:
            result = computation()
        except Exception as e:
            log.error(
                "execution.crashed",
                operation=self._operation,
                elapsed_seconds=round(time.monotonic() - start, 3),
                error=str(e),
            )
            return Failure(
                FailureDescription(ErrorCode.UNKNOWN_ERROR, f"Execution failed: {e}", e)
            )

        log.info(
            "execution.completed",
            operation=self._operation,
            elapsed_seconds=round(time.monotonic() - start, 3),
            state="SUCCESS" if result.is_success() else "FAILURE",
        )
        return result
