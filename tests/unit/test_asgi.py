"""
Unit tests for the FastAPI ASGI application — REST endpoints.

Tests the scraping (/api/v1/cfdis/*) and bulk (/api/v1/ws/*) routes, the
health check, the error envelope and the request middleware.

Uses FastAPI's TestClient with a mocked proxy; the lifespan never runs.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from cfdi_proxy import asgi
from cfdi_proxy.config import ApiSettings, AppSettings
from cfdi_proxy.domain.models import (
    DownloadType,
    Reply,
    ResourceType,
    ServiceType,
    SigningCredential,
)
from cfdi_proxy.railway import ErrorCode, FailureDescription, Result

FILES = {
    "certificate": ("fiel.cer", b"certificate-bytes", "application/octet-stream"),
    "private_key": ("fiel.key", b"key-bytes", "application/octet-stream"),
}
CREDENTIAL = SigningCredential(
    certificate=b"certificate-bytes", private_key=b"key-bytes", passphrase="12345678a"
)


@pytest.fixture(autouse=True)
def _reset_asgi_state() -> Iterator[None]:
    """Reset ASGI module-level state around each test."""
    settings = asgi._settings
    asgi._proxy = None
    asgi.app.state.limiter.reset()
    yield
    asgi._proxy = None
    asgi._settings = settings


@pytest.fixture()
def client() -> TestClient:
    """Create a TestClient without running the lifespan (no real startup)."""
    return TestClient(asgi.app, raise_server_exceptions=False)


@pytest.fixture()
def proxy() -> MagicMock:
    mock = MagicMock()
    asgi._proxy = mock
    return mock


def _form(**fields: str) -> dict[str, str]:
    return {"passphrase": "12345678a", **fields}


# ─────────────────────── Scraping path ───────────────────────


class TestQueryEndpoint:
    def test_returns_503_when_proxy_not_initialized(self, client: TestClient) -> None:
        """
        GIVEN the application has not completed startup
        WHEN an operation is called
        THEN it returns 503 with the error envelope.
        """
        response = client.post(
            "/api/v1/cfdis/query",
            files=FILES,
            data=_form(start_date="2024-01-01", end_date="2024-01-31"),
        )

        assert response.status_code == 503
        assert response.json() == {
            "success": False,
            "errors": {"general": ["Service not initialized"]},
        }

    def test_success_envelope(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.query.return_value = Result.success(
            Reply(
                data={"count": 0, "cfdis": []},
                messages=("FIEL authentication successful", "Found 0 CFDIs"),
            )
        )

        response = client.post(
            "/api/v1/cfdis/query",
            files=FILES,
            data=_form(start_date="2024-01-01", end_date="2024-01-31", download_type="recibidos"),
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "data": {"count": 0, "cfdis": []},
            "messages": ["FIEL authentication successful", "Found 0 CFDIs"],
        }
        credential, spec = proxy.query.call_args.args
        assert credential == CREDENTIAL
        assert spec.direction is DownloadType.RECEIVED
        assert spec.start == datetime(2024, 1, 1)
        assert response.headers["X-Response-Time"].endswith("ms")

    def test_missing_credential_is_422(self, client: TestClient, proxy: MagicMock) -> None:
        """
        GIVEN a request without certificate, key or passphrase
        WHEN POST /api/v1/cfdis/query is called
        THEN it returns 422 with one entry per missing part and SAT is not contacted.
        """
        response = client.post(
            "/api/v1/cfdis/query", data={"start_date": "2024-01-01", "end_date": "2024-01-31"}
        )

        assert response.status_code == 422
        errors = response.json()["errors"]
        assert set(errors) == {"certificate", "private_key", "passphrase"}
        proxy.query.assert_not_called()

    def test_expired_credential_is_401(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.query.return_value = Result.failure(
            ErrorCode.CREDENTIAL_EXPIRED, "The FIEL certificate has expired"
        )

        response = client.post(
            "/api/v1/cfdis/query",
            files=FILES,
            data=_form(start_date="2024-01-01", end_date="2024-01-31"),
        )

        assert response.status_code == 401
        assert response.json()["errors"] == {"general": ["The FIEL certificate has expired"]}

    def test_crash_hides_detail(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.query.side_effect = RuntimeError("secret internal state")

        response = client.post(
            "/api/v1/cfdis/query",
            files=FILES,
            data=_form(start_date="2024-01-01", end_date="2024-01-31"),
        )

        assert response.status_code == 500
        body = response.json()
        assert body["errors"] == {"general": ["An error occurred. Please try again."]}
        assert "debug" not in body

    def test_debug_mode_exposes_the_trace(self, proxy: MagicMock) -> None:
        application = asgi.create_app(AppSettings(api=ApiSettings(debug=True)))
        asgi._proxy = proxy
        proxy.query.side_effect = RuntimeError("secret internal state")

        response = TestClient(application, raise_server_exceptions=False).post(
            "/api/v1/cfdis/query",
            files=FILES,
            data=_form(start_date="2024-01-01", end_date="2024-01-31"),
        )

        assert response.status_code == 500
        assert "secret internal state" in response.json()["debug"]["trace"]


class TestDownloadEndpoints:
    def test_download_passes_form_values(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.download.return_value = Result.success(Reply(data={"count": 0, "files": []}))

        response = client.post(
            "/api/v1/cfdis/download",
            files=FILES,
            data=_form(
                start_date="2024-01-01",
                end_date="2024-01-02",
                resource_types="xml,pdf",
                max_results="10",
            ),
        )

        assert response.status_code == 200
        _, spec, resource_types, max_results = proxy.download.call_args.args
        assert spec.direction is DownloadType.ISSUED
        assert resource_types == (ResourceType.XML, ResourceType.PDF)
        assert max_results == 10

    def test_download_by_uuid(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.download_by_uuids.return_value = Result.success(
            Reply(data={"count": 0, "files": []}, messages=("No CFDIs found for the provided UUIDs",))
        )

        response = client.post(
            "/api/v1/cfdis/download-by-uuid",
            files=FILES,
            data=_form(uuids="abc-1,def-2", download_type="emitidos"),
        )

        assert response.status_code == 200
        _, uuids, direction, resource_types = proxy.download_by_uuids.call_args.args
        assert uuids == ("ABC-1", "DEF-2")
        assert direction is DownloadType.ISSUED
        assert resource_types == (ResourceType.XML,)

    def test_query_failure_is_400(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.download.return_value = Result.failure_from(
            FailureDescription(
                ErrorCode.QUERY_FAILED,
                "Query error: timeout",
                notes=("FIEL authentication successful",),
            )
        )

        response = client.post(
            "/api/v1/cfdis/download",
            files=FILES,
            data=_form(start_date="2024-01-01", end_date="2024-01-02"),
        )

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "errors": {"general": ["Query error: timeout"]},
            "messages": ["FIEL authentication successful"],
        }


# ─────────────────────── Bulk path ───────────────────────


class TestBulkEndpoints:
    def test_invalid_period_is_400(self, client: TestClient, proxy: MagicMock) -> None:
        """
        GIVEN a bulk request whose period is one second long
        WHEN POST /api/v1/ws/solicitar is called
        THEN it returns 400 (not 422) keyed by end_date.
        """
        response = client.post(
            "/api/v1/ws/solicitar",
            files=FILES,
            data=_form(start_date="2024-01-01 00:00:00", end_date="2024-01-01 00:00:01"),
        )

        assert response.status_code == 400
        assert "end_date" in response.json()["errors"]
        proxy.bulk_submit.assert_not_called()

    def test_submit(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.bulk_submit.return_value = Result.success(
            Reply(data={"request_id": "REQ-1", "status": "accepted", "message": ""})
        )

        response = client.post(
            "/api/v1/ws/solicitar",
            files=FILES,
            data=_form(
                start_date="2024-01-01 00:00:00",
                end_date="2024-01-31 23:59:59",
                service_type="retenciones",
            ),
        )

        assert response.status_code == 200
        _, spec, service_type = proxy.bulk_submit.call_args.args
        assert spec.direction is DownloadType.RECEIVED
        assert service_type is ServiceType.RETENCIONES

    def test_verify_refused_is_401(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.bulk_verify.return_value = Result.failure(
            ErrorCode.AUTHENTICATION_FAILED, "Verification failed: 305"
        )

        response = client.post("/api/v1/ws/verificar", files=FILES, data=_form(request_id="REQ-1"))

        assert response.status_code == 401
        proxy.bulk_verify.assert_called_once_with(CREDENTIAL, "REQ-1", ServiceType.CFDI)

    def test_fetch_partial_success_keeps_errors(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.bulk_fetch.return_value = Result.success(
            Reply(
                data={"count": 1, "packages": []},
                messages=("FIEL authenticated for cfdi service",),
                errors={"P-2": ("Failed to download package P-2: 5007",)},
            )
        )

        response = client.post(
            "/api/v1/ws/descargar", files=FILES, data=_form(package_ids="P-1,P-2")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["errors"] == {"P-2": ["Failed to download package P-2: 5007"]}
        assert proxy.bulk_fetch.call_args.args[1] == ("P-1", "P-2")

    def test_sat_unavailable_is_503(self, client: TestClient, proxy: MagicMock) -> None:
        proxy.bulk_fetch.return_value = Result.failure(
            ErrorCode.UPSTREAM_UNAVAILABLE, "SAT is unavailable: refused"
        )

        response = client.post("/api/v1/ws/descargar", files=FILES, data=_form(package_ids="P-1"))

        assert response.status_code == 503


# ─────────────────────── Health & CORS ───────────────────────


class TestHealth:
    @pytest.mark.parametrize("path", ["/api/v1/health", "/health"])
    def test_health(self, client: TestClient, path: str) -> None:
        response = client.get(path)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["service"] == "SAT CFDI Proxy"
        assert body["methods"] == {"scraping": "/api/v1/cfdis", "webservice": "/api/v1/ws"}

    def test_cors_preflight(self, client: TestClient) -> None:
        response = client.options(
            "/api/v1/cfdis/query",
            headers={
                "Origin": "https://app.example.com",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"


# ─────────────────────── Rate limit ───────────────────────


class TestRateLimit:
    def test_call_past_the_budget_is_429(self) -> None:
        """
        GIVEN the default budget of 60 calls per minute
        WHEN one client makes 61 calls
        THEN the first 60 reach the handler and the 61st answers 429 with retry_after.
        """
        client = TestClient(asgi.create_app(AppSettings()), raise_server_exceptions=False)

        def verify() -> httpx.Response:
            return client.post("/api/v1/ws/verificar", files=FILES, data=_form(request_id="REQ-1"))

        statuses = [verify().status_code for _ in range(60)]
        response = verify()

        assert statuses == [503] * 60
        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert body["errors"]["general"][0].startswith("Rate limit exceeded")
        assert 1 <= body["retry_after"] <= 60
        assert response.headers["Retry-After"] == str(body["retry_after"])

    def test_budget_is_shared_across_routes(self) -> None:
        application = asgi.create_app(AppSettings(api=ApiSettings(rate_limit="2/minute")))
        client = TestClient(application, raise_server_exceptions=False)

        client.post("/api/v1/cfdis/query", files=FILES, data=_form())
        client.post("/api/v1/ws/solicitar", files=FILES, data=_form())
        response = client.post("/api/v1/ws/descargar", files=FILES, data=_form())

        assert response.status_code == 429
        assert response.json()["retry_after"] >= 1

    def test_health_is_never_limited(self) -> None:
        application = asgi.create_app(AppSettings(api=ApiSettings(rate_limit="1/minute")))
        client = TestClient(application, raise_server_exceptions=False)

        client.post("/api/v1/ws/verificar", files=FILES, data=_form(request_id="REQ-1"))
        limited = client.post("/api/v1/ws/verificar", files=FILES, data=_form(request_id="REQ-1"))

        assert limited.status_code == 429
        assert [client.get("/health").status_code for _ in range(3)] == [200, 200, 200]
        assert client.get("/api/v1/health").status_code == 200
