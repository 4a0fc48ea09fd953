"""
FastAPI + Uvicorn ASGI application — the HTTP surface of the proxy.

Every operation is a multipart POST carrying the FIEL (`certificate`,
`private_key`, `passphrase`) plus its own fields, and answers with the
JSON envelope built by `railway.http_support`:

  POST /api/v1/cfdis/query             metadata for a period (scraping)
  POST /api/v1/cfdis/download          files for a period (scraping)
  POST /api/v1/cfdis/download-by-uuid  files for explicit UUIDs (scraping)
  POST /api/v1/ws/solicitar            submit a bulk request
  POST /api/v1/ws/verificar            verify a bulk request
  POST /api/v1/ws/descargar            fetch bulk packages
  GET  /api/v1/health                  liveness (also served at /health)

Handlers parse the fields, then run the blocking proxy call in a worker
thread (`asyncio.to_thread`) so the event loop keeps serving.

Uploaded files, passphrase and key material are never bound to a log
event; the request log carries method, path, status, duration, client IP
and user agent only.

Every route except health draws on one per-IP budget (slowapi,
API__RATE_LIMIT, default 60/minute). Past it the answer is 429 in the same
envelope with `retry_after` seconds.

Entry point for production: uvicorn cfdi_proxy.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from cfdi_proxy.config import AppSettings
from cfdi_proxy.domain.models import Reply, SigningCredential
from cfdi_proxy.forms import (
    BulkFetchForm,
    BulkSubmitForm,
    BulkVerifyForm,
    DateRangeDownloadForm,
    DateRangeQueryForm,
    FormT,
    UuidDownloadForm,
    parse_request,
)
from cfdi_proxy.main import build_proxy, configure_structlog
from cfdi_proxy.proxy import CfdiProxy
from cfdi_proxy.railway import ErrorCode, FailureDescription, Result
from cfdi_proxy.railway.http_support import (
    HttpStatusMapper,
    build_fastapi_response,
    failure_body,
)

SERVICE_NAME = "SAT CFDI Proxy"
VERSION = "0.1.0"

# The bulk endpoints answer malformed input with 400 instead of 422.
BULK_STATUS_OVERRIDES = {ErrorCode.VALIDATION_ERROR: 400}

# ─────────────────────── Global State ───────────────────────
# Set during app creation / startup.

_settings: AppSettings | None = None
_proxy: CfdiProxy | None = None
log = structlog.get_logger()

type Operation[F] = Callable[[CfdiProxy, SigningCredential, F], Result[Reply]]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup: configure logging and build the proxy from settings.
    Shutdown: drop the proxy (it holds no open resources between calls).
    """
    global _proxy

    settings = _settings or AppSettings()
    configure_structlog(settings.log_level)
    log.info(
        "asgi.startup",
        version=VERSION,
        log_level=settings.log_level,
        debug=settings.api.debug,
        cors_origins=settings.api.cors_origins,
    )

    try:
        _proxy = build_proxy(settings)
    except Exception as e:
        log.error("asgi.init_error", error=str(e))
        raise

    log.info("asgi.startup_complete")

    yield

    log.info("asgi.shutdown", reason="SIGTERM or server stop")
    _proxy = None


# ─────────────────────── Request plumbing ───────────────────────


@dataclass(frozen=True, slots=True)
class CredentialParts:
    """Raw FIEL parts as uploaded; any of them may be missing."""

    certificate: bytes | None = field(default=None, repr=False)
    private_key: bytes | None = field(default=None, repr=False)
    passphrase: str | None = field(default=None, repr=False)


async def credential_parts(
    certificate: UploadFile | None = File(None),
    private_key: UploadFile | None = File(None),
    passphrase: str | None = Form(None),
) -> CredentialParts:
    return CredentialParts(
        certificate=await certificate.read() if certificate is not None else None,
        private_key=await private_key.read() if private_key is not None else None,
        passphrase=passphrase,
    )


def _expose_detail() -> bool:
    return _settings is not None and _settings.api.debug


async def _respond(
    form_cls: type[FormT],
    raw: Mapping[str, Any],
    parts: CredentialParts,
    operation: Operation[FormT],
    status_overrides: Mapping[ErrorCode, int] | None = None,
) -> JSONResponse:
    """Validate, run the proxy call off the event loop, render the envelope."""
    proxy = _proxy
    if proxy is None:
        return JSONResponse(
            status_code=503,
            content={"success": False, "errors": {"general": ["Service not initialized"]}},
        )

    parsed = parse_request(form_cls, raw, parts.certificate, parts.private_key, parts.passphrase)
    if parsed.is_failure():
        return build_fastapi_response(parsed, status_overrides, _expose_detail())

    credential, form = parsed.value()
    try:
        result = await asyncio.to_thread(operation, proxy, credential, form)
    except Exception as e:
        log.error("http.operation_crashed", form=form_cls.__name__, error=str(e))
        result = Result.failure(ErrorCode.UNKNOWN_ERROR, f"Unexpected error: {e}", e)

    if result.is_failure():
        log.warning(
            "http.operation_failed", form=form_cls.__name__, code=result.error().code.value
        )
    return build_fastapi_response(result, status_overrides, _expose_detail())


async def log_requests(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """One `http.request` event per call plus an X-Response-Time header."""
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Response-Time"] = f"{duration_ms}ms"
    log.info(
        "http.request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=duration_ms,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "form")]
        errors.setdefault(location[-1] if location else "general", []).append(
            str(error.get("msg", "Invalid value"))
        )
    failure = FailureDescription.validation(errors)
    status = 400 if request.url.path.startswith("/api/v1/ws/") else 422
    return JSONResponse(status_code=status, content=failure_body(failure))


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.error("http.unhandled_exception", path=request.url.path, error=str(exc))
    failure = FailureDescription(ErrorCode.UNKNOWN_ERROR, f"Unexpected error: {exc}", exc)
    return JSONResponse(status_code=500, content=failure_body(failure, _expose_detail()))


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    429 in the usual envelope plus `retry_after` seconds.

    Must stay sync: SlowAPIMiddleware replaces coroutine handlers with its
    own default.
    """
    limiter: Limiter = request.app.state.limiter
    current = request.state.view_rate_limit
    reset_at, _ = limiter.limiter.get_window_stats(current[0], *current[1])
    retry_after = max(1, int(1 + reset_at - time.time()))
    log.warning(
        "http.rate_limited",
        path=request.url.path,
        ip=request.client.host if request.client else None,
        limit=str(exc.detail),
    )
    failure = FailureDescription(ErrorCode.RATE_LIMITED, f"Rate limit exceeded: {exc.detail}")
    content = failure_body(failure)
    content["retry_after"] = retry_after
    return JSONResponse(
        status_code=HttpStatusMapper.map_error_code(ErrorCode.RATE_LIMITED),
        content=content,
        headers={"Retry-After": str(retry_after)},
    )


# ─────────────────────── Scraping path ───────────────────────

router = APIRouter(prefix="/api/v1")


@router.post("/cfdis/query")
async def query_cfdis(
    parts: CredentialParts = Depends(credential_parts),
    start_date: str | None = Form(None),
    end_date: str | None = Form(None),
    download_type: str | None = Form(None),
    state_voucher: str | None = Form(None),
) -> JSONResponse:
    """List CFDI metadata for a period."""
    return await _respond(
        DateRangeQueryForm,
        {
            "start_date": start_date,
            "end_date": end_date,
            "download_type": download_type,
            "state_voucher": state_voucher,
        },
        parts,
        lambda proxy, credential, form: proxy.query(credential, form.to_spec()),
    )


@router.post("/cfdis/download")
async def download_cfdis(
    parts: CredentialParts = Depends(credential_parts),
    start_date: str | None = Form(None),
    end_date: str | None = Form(None),
    download_type: str | None = Form(None),
    state_voucher: str | None = Form(None),
    resource_types: str | None = Form(None),
    max_results: str | None = Form(None),
) -> JSONResponse:
    """Download the artifacts of the first `max_results` CFDIs of a period."""
    return await _respond(
        DateRangeDownloadForm,
        {
            "start_date": start_date,
            "end_date": end_date,
            "download_type": download_type,
            "state_voucher": state_voucher,
            "resource_types": resource_types,
            "max_results": max_results,
        },
        parts,
        lambda proxy, credential, form: proxy.download(
            credential, form.to_spec(), form.resource_types, form.max_results
        ),
    )


@router.post("/cfdis/download-by-uuid")
async def download_cfdis_by_uuid(
    parts: CredentialParts = Depends(credential_parts),
    uuids: str | None = Form(None),
    download_type: str | None = Form(None),
    resource_types: str | None = Form(None),
) -> JSONResponse:
    """Download the artifacts of explicit UUIDs."""
    return await _respond(
        UuidDownloadForm,
        {"uuids": uuids, "download_type": download_type, "resource_types": resource_types},
        parts,
        lambda proxy, credential, form: proxy.download_by_uuids(
            credential, form.uuids, form.download_type, form.resource_types
        ),
    )


# ─────────────────────── Bulk path ───────────────────────


@router.post("/ws/solicitar")
async def bulk_submit(
    parts: CredentialParts = Depends(credential_parts),
    start_date: str | None = Form(None),
    end_date: str | None = Form(None),
    download_type: str | None = Form(None),
    request_type: str | None = Form(None),
    service_type: str | None = Form(None),
    document_status: str | None = Form(None),
    document_type: str | None = Form(None),
    complemento: str | None = Form(None),
    rfc_match: str | None = Form(None),
) -> JSONResponse:
    """Submit a bulk download request (both directions for `ambos`)."""
    return await _respond(
        BulkSubmitForm,
        {
            "start_date": start_date,
            "end_date": end_date,
            "download_type": download_type,
            "request_type": request_type,
            "service_type": service_type,
            "document_status": document_status,
            "document_type": document_type,
            "complemento": complemento,
            "rfc_match": rfc_match,
        },
        parts,
        lambda proxy, credential, form: proxy.bulk_submit(
            credential, form.to_spec(), form.service_type
        ),
        BULK_STATUS_OVERRIDES,
    )


@router.post("/ws/verificar")
async def bulk_verify(
    parts: CredentialParts = Depends(credential_parts),
    request_id: str | None = Form(None),
    service_type: str | None = Form(None),
) -> JSONResponse:
    """Report the state of a bulk request."""
    return await _respond(
        BulkVerifyForm,
        {"request_id": request_id, "service_type": service_type},
        parts,
        lambda proxy, credential, form: proxy.bulk_verify(
            credential, form.request_id, form.service_type
        ),
        BULK_STATUS_OVERRIDES,
    )


@router.post("/ws/descargar")
async def bulk_fetch(
    parts: CredentialParts = Depends(credential_parts),
    package_ids: str | None = Form(None),
    service_type: str | None = Form(None),
) -> JSONResponse:
    """Download the packages of a finished bulk request."""
    return await _respond(
        BulkFetchForm,
        {"package_ids": package_ids, "service_type": service_type},
        parts,
        lambda proxy, credential, form: proxy.bulk_fetch(
            credential, form.package_ids, form.service_type
        ),
        BULK_STATUS_OVERRIDES,
    )


# ─────────────────────── Health ───────────────────────


async def health() -> dict[str, Any]:
    """Liveness check; the proxy keeps no state that could be unhealthy."""
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "methods": {"scraping": "/api/v1/cfdis", "webservice": "/api/v1/ws"},
        "timestamp": datetime.now(UTC).isoformat(),
    }


router.add_api_route("/health", health, methods=["GET"])


# ─────────────────────── FastAPI Application ───────────────────────


def create_app(settings: AppSettings | None = None) -> FastAPI:
    """Build the application; settings are loaded from the environment by default."""
    global _settings
    _settings = settings or AppSettings()

    application = FastAPI(
        title=SERVICE_NAME,
        description="Stateless proxy to the SAT CFDI portal and the Descarga Masiva service",
        version=VERSION,
        lifespan=lifespan,
    )
    limiter = Limiter(key_func=get_remote_address, application_limits=[_settings.api.rate_limit])
    limiter.exempt(health)
    application.state.limiter = limiter
    application.add_middleware(SlowAPIMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.api.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Authorization", "X-Requested-With"],
        expose_headers=["X-Response-Time", "Retry-After"],
        max_age=86400,
    )
    application.middleware("http")(log_requests)
    application.add_exception_handler(RequestValidationError, validation_error_handler)
    application.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    application.add_exception_handler(Exception, unexpected_error_handler)
    application.include_router(router)
    application.add_api_route("/health", health, methods=["GET"])
    return application


app = create_app()


if __name__ == "__main__":
    # For local testing: python -m uvicorn cfdi_proxy.asgi:app --reload
    import uvicorn

    uvicorn.run(
        "cfdi_proxy.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
