"""
Outbound HTTP transport for the SAT hosts — httpx client factory and retry policy.

Adapter layer — shared by the portal and bulk adapters.

Transport rules:
  - Extended timeouts: the portal can take minutes to answer a search,
    so the default is connect 60s / total 600s.
  - Legacy TLS: some SAT hosts still negotiate ciphers that OpenSSL's
    default security level refuses. When enabled, the context drops to
    SECLEVEL=1 while keeping TLS 1.2 as the floor. The context is only
    ever handed to clients talking to SAT.
  - Retry (tenacity): exponential backoff, only for connection errors,
    timeouts and 5xx answers. 4xx answers and application-level refusals
    are never retried. Only session establishment uses it.
"""

from __future__ import annotations

import ssl
from collections.abc import Callable
from typing import TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from cfdi_proxy.railway import ErrorCode, FailureDescription

T = TypeVar("T")
log = structlog.get_logger()

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


class UpstreamServerError(Exception):
    """A SAT host answered with a 5xx status."""

    def __init__(self, status_code: int, url: str) -> None:
        super().__init__(f"SAT answered HTTP {status_code} for {url}")
        self.status_code = status_code


def raise_for_server_error(response: httpx.Response) -> httpx.Response:
    """Raise UpstreamServerError for 5xx so the retry policy can see it."""
    if response.status_code >= 500:
        raise UpstreamServerError(response.status_code, str(response.request.url))
    return response


def is_transient(exc: BaseException) -> bool:
    """Connection failures, timeouts and 5xx answers are worth retrying."""
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, UpstreamServerError))


def build_ssl_context(legacy: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if legacy:
        context.set_ciphers("DEFAULT@SECLEVEL=1")
        context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


def create_client(
    timeout_seconds: float,
    connect_timeout_seconds: float,
    legacy_tls: bool = False,
) -> httpx.Client:
    """Cookie-keeping client for one call chain against SAT."""
    return httpx.Client(
        timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
        verify=build_ssl_context(legacy_tls),
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    )


def _log_retry(state: RetryCallState) -> None:
    outcome = state.outcome
    log.warning(
        "transport.retrying",
        attempt=state.attempt_number,
        error=str(outcome.exception()) if outcome is not None else None,
    )


def call_with_retry(
    operation: Callable[[], T],
    attempts: int = 3,
    backoff_seconds: float = 1.0,
) -> T:
    """
    Run `operation`, retrying transient failures with exponential backoff
    (backoff_seconds, 2×, 4×, … capped at 30s). The last exception is re-raised.
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff_seconds, max=30),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(operation)


def as_upstream_unavailable(failure: FailureDescription) -> FailureDescription:
    """
    Re-label a failure caused by an exhausted transient error as
    UPSTREAM_UNAVAILABLE; anything else passes through unchanged.
    """
    if failure.exception is not None and is_transient(failure.exception):
        return FailureDescription(
            code=ErrorCode.UPSTREAM_UNAVAILABLE,
            message=f"SAT is unavailable: {failure.exception}",
            exception=failure.exception,
            notes=failure.notes,
        )
    return failure
