"""
Unit tests for the proxy orchestrator.

Every port is a MagicMock, so these tests pin the composition rules:
short-circuiting, partial success of `ambos`, truncation, messages and
session cleanup.
"""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from cfdi_proxy.domain.models import (
    BulkStatus,
    BulkSubmission,
    BulkVerification,
    DocumentMetadata,
    DownloadBatch,
    DownloadType,
    FetchOutcome,
    ItemFailure,
    Package,
    QuerySpec,
    ResourceFile,
    ResourceType,
    ServiceType,
    SigningCredential,
)
from cfdi_proxy.proxy import (
    BOTH_SUBMITTED,
    NO_UUID_MATCHES,
    PORTAL_AUTHENTICATED,
    CfdiProxy,
    bulk_authenticated,
)
from cfdi_proxy.railway import ErrorCode, FailureDescription, Result, ResultAssertions

CREDENTIAL = SigningCredential(certificate=b"cer", private_key=b"key", passphrase="secret")
START = datetime(2024, 1, 1)
END = datetime(2024, 1, 31)
AUTH_CFDI = bulk_authenticated(ServiceType.CFDI)


def _item(uuid: str) -> DocumentMetadata:
    return DocumentMetadata(
        uuid=uuid, resource_urls={ResourceType.XML: f"https://portal.test/x/{uuid}"}
    )


def _file(uuid: str, kind: ResourceType = ResourceType.XML) -> ResourceFile:
    return ResourceFile(uuid=uuid, resource_type=kind, content=b"<cfdi/>")


class Ports:
    """The five ports of the proxy, wired for a happy path."""

    def __init__(self) -> None:
        self.identity = MagicMock(name="identity")
        self.validator = MagicMock()
        self.validator.validate.return_value = Result.success(self.identity)

        self.portal_session = MagicMock(name="portal_session")
        self.portal = MagicMock()
        self.portal.establish.return_value = Result.success(self.portal_session)

        self.engine = MagicMock()
        self.downloader = MagicMock()

        self.bulk_sessions: list[MagicMock] = []
        self.bulk = MagicMock()
        self.bulk.establish.side_effect = self._bulk_session
        self.submit = MagicMock()
        self.verify = MagicMock()
        self.fetch = MagicMock()

    def _bulk_session(self, identity, service_type):
        session = MagicMock(name=f"bulk_session_{len(self.bulk_sessions)}")
        session.submit.side_effect = self.submit
        session.verify.side_effect = self.verify
        session.fetch.side_effect = self.fetch
        self.bulk_sessions.append(session)
        return Result.success(session)

    def proxy(self) -> CfdiProxy:
        return CfdiProxy(self.validator, self.portal, self.engine, self.downloader, self.bulk)


@pytest.fixture()
def ports() -> Ports:
    return Ports()


# ─────────────────────── Scraping path ───────────────────────


class TestQuery:
    def test_lists_documents(self, ports: Ports) -> None:
        ports.engine.by_date_range.return_value = Result.success([_item("U-1"), _item("U-2")])

        result = ports.proxy().query(CREDENTIAL, QuerySpec(DownloadType.ISSUED, START, END))

        reply = ResultAssertions.assert_success(result)
        assert reply.data["count"] == 2
        assert [row["uuid"] for row in reply.data["cfdis"]] == ["U-1", "U-2"]
        assert reply.messages == (PORTAL_AUTHENTICATED, "Found 2 CFDIs")
        assert not reply.errors
        ports.portal.establish.assert_called_once_with(ports.identity)
        ports.portal_session.close.assert_called_once()

    def test_both_tolerates_one_failed_direction(self, ports: Ports) -> None:
        """
        GIVEN `ambos` where the received sub-query fails
        WHEN queried
        THEN the issued rows are returned and the failure is keyed by direction.
        """

        def by_date_range(session, spec):
            if spec.direction is DownloadType.RECEIVED:
                return Result.failure(ErrorCode.QUERY_FAILED, "Query error: portal timeout")
            return Result.success([_item("U-1"), _item("U-1")])

        ports.engine.by_date_range.side_effect = by_date_range

        result = ports.proxy().query(CREDENTIAL, QuerySpec(DownloadType.BOTH, START, END))

        reply = ResultAssertions.assert_success(result)
        assert reply.data["count"] == 1
        assert dict(reply.errors) == {"recibidos": ("Query error: portal timeout",)}
        directions = [c.args[1].direction for c in ports.engine.by_date_range.call_args_list]
        assert directions == [DownloadType.ISSUED, DownloadType.RECEIVED]

    def test_both_failed_directions_fail_the_call(self, ports: Ports) -> None:
        ports.engine.by_date_range.return_value = Result.failure(
            ErrorCode.QUERY_FAILED, "Query error: down"
        )

        result = ports.proxy().query(CREDENTIAL, QuerySpec(DownloadType.BOTH, START, END))

        error = ResultAssertions.assert_failure(result, ErrorCode.QUERY_FAILED)
        assert dict(error.field_errors) == {
            "emitidos": ("Query error: down",),
            "recibidos": ("Query error: down",),
        }
        assert error.notes == (PORTAL_AUTHENTICATED,)
        ports.portal_session.close.assert_called_once()

    def test_invalid_credential_stops_before_sat(self, ports: Ports) -> None:
        ports.validator.validate.return_value = Result.failure(
            ErrorCode.CREDENTIAL_EXPIRED, "The FIEL certificate has expired"
        )

        result = ports.proxy().query(CREDENTIAL, QuerySpec(DownloadType.ISSUED, START, END))

        ResultAssertions.assert_failure(result, ErrorCode.CREDENTIAL_EXPIRED)
        ports.portal.establish.assert_not_called()

    def test_refused_login_carries_no_authenticated_note(self, ports: Ports) -> None:
        ports.portal.establish.return_value = Result.failure(
            ErrorCode.AUTHENTICATION_FAILED, "Authentication error: rejected"
        )

        result = ports.proxy().query(CREDENTIAL, QuerySpec(DownloadType.ISSUED, START, END))

        error = ResultAssertions.assert_failure(result, ErrorCode.AUTHENTICATION_FAILED)
        assert error.notes == ()
        ports.engine.by_date_range.assert_not_called()


class TestDownload:
    def test_truncates_before_downloading(self, ports: Ports) -> None:
        items = [_item(f"U-{i}") for i in range(5)]
        ports.engine.by_date_range.return_value = Result.success(items)
        ports.downloader.download.return_value = Result.success(
            DownloadBatch(
                files=(_file("U-0"),),
                failures=(ItemFailure("U-1", "SAT returned an empty document", ResourceType.XML),),
            )
        )

        result = ports.proxy().download(
            CREDENTIAL, QuerySpec(DownloadType.ISSUED, START, END), [ResourceType.XML], 2
        )

        reply = ResultAssertions.assert_success(result)
        _, listed, kinds = ports.downloader.download.call_args.args
        assert [item.uuid for item in listed] == ["U-0", "U-1"]
        assert kinds == [ResourceType.XML]
        assert reply.data["count"] == 1
        assert reply.data["files"][0]["uuid"] == "U-0"
        assert reply.messages == (
            PORTAL_AUTHENTICATED,
            "Downloaded 1 files",
            "Failed to download xml for U-1: SAT returned an empty document",
        )
        ports.portal_session.close.assert_called_once()

    def test_empty_period_downloads_nothing(self, ports: Ports) -> None:
        ports.engine.by_date_range.return_value = Result.success([])

        result = ports.proxy().download(
            CREDENTIAL, QuerySpec(DownloadType.ISSUED, START, END), [ResourceType.XML], 100
        )

        reply = ResultAssertions.assert_success(result)
        assert reply.data == {"count": 0, "files": []}
        assert reply.messages == (PORTAL_AUTHENTICATED, "Downloaded 0 files")
        ports.downloader.download.assert_not_called()

    def test_dead_session_is_a_download_failure(self, ports: Ports) -> None:
        ports.engine.by_date_range.return_value = Result.success([_item("U-1")])
        ports.downloader.download.return_value = Result.failure(
            ErrorCode.DOWNLOAD_FAILED, "The portal session is no longer authenticated; log in again"
        )

        result = ports.proxy().download(
            CREDENTIAL, QuerySpec(DownloadType.ISSUED, START, END), [ResourceType.XML], 100
        )

        error = ResultAssertions.assert_failure(result, ErrorCode.DOWNLOAD_FAILED)
        assert error.notes == (PORTAL_AUTHENTICATED,)

    def test_collect_returns_domain_objects(self, ports: Ports) -> None:
        ports.engine.by_date_range.return_value = Result.success([_item("U-1")])
        ports.downloader.download.return_value = Result.success(
            DownloadBatch(files=(_file("U-1"),))
        )

        collection = ResultAssertions.assert_success(
            ports.proxy().collect(
                CREDENTIAL, QuerySpec(DownloadType.ISSUED, START, END), [ResourceType.XML]
            )
        )

        assert [item.uuid for item in collection.listing.items] == ["U-1"]
        assert collection.batch.files[0].uuid == "U-1"


class TestDownloadByUuids:
    def test_no_match_is_success_without_files(self, ports: Ports) -> None:
        ports.engine.by_uuids.return_value = Result.success([])

        result = ports.proxy().download_by_uuids(
            CREDENTIAL, ["U-9"], DownloadType.RECEIVED, [ResourceType.XML]
        )

        reply = ResultAssertions.assert_success(result)
        assert reply.data == {"count": 0, "files": []}
        assert reply.messages == (PORTAL_AUTHENTICATED, NO_UUID_MATCHES)
        ports.downloader.download.assert_not_called()

    def test_matches_are_downloaded(self, ports: Ports) -> None:
        ports.engine.by_uuids.return_value = Result.success([_item("U-1")])
        ports.downloader.download.return_value = Result.success(
            DownloadBatch(files=(_file("U-1"), _file("U-1", ResourceType.PDF)))
        )

        result = ports.proxy().download_by_uuids(
            CREDENTIAL, ["U-1"], DownloadType.ISSUED, [ResourceType.XML, ResourceType.PDF]
        )

        reply = ResultAssertions.assert_success(result)
        assert reply.data["count"] == 2
        ports.engine.by_uuids.assert_called_once_with(
            ports.portal_session, ["U-1"], DownloadType.ISSUED
        )


# ─────────────────────── Bulk path ───────────────────────


class TestBulkSubmit:
    def test_single_direction(self, ports: Ports) -> None:
        ports.submit.return_value = Result.success(
            BulkSubmission(
                "REQ-1",
                DownloadType.RECEIVED,
                "Solicitud Aceptada",
                notes=("Note: Forcing active status for received XML (SAT requirement)",),
            )
        )

        result = ports.proxy().bulk_submit(
            CREDENTIAL, QuerySpec(DownloadType.RECEIVED, START, END), ServiceType.CFDI
        )

        reply = ResultAssertions.assert_success(result)
        assert reply.data == {
            "request_id": "REQ-1",
            "status": "accepted",
            "message": "Solicitud Aceptada",
        }
        assert reply.messages == (
            AUTH_CFDI,
            "Note: Forcing active status for received XML (SAT requirement)",
            "Request accepted with ID: REQ-1",
        )
        ports.bulk.establish.assert_called_once_with(ports.identity, ServiceType.CFDI)
        ports.bulk_sessions[0].close.assert_called_once()

    def test_short_period_is_rejected_before_anything(self, ports: Ports) -> None:
        result = ports.proxy().bulk_submit(
            CREDENTIAL,
            QuerySpec(DownloadType.ISSUED, START, datetime(2024, 1, 1, 0, 0, 1)),
            ServiceType.CFDI,
        )

        error = ResultAssertions.assert_failure(result, ErrorCode.VALIDATION_ERROR)
        assert "end_date" in error.field_errors
        ports.validator.validate.assert_not_called()

    def test_both_uses_two_sessions_and_tolerates_one_refusal(self, ports: Ports) -> None:
        """
        GIVEN `ambos` where SAT refuses the received request
        WHEN submitted
        THEN the issued id is returned, the refusal is keyed by direction
             and each direction had its own closed session.
        """

        def submit(spec: QuerySpec):
            if spec.direction is DownloadType.RECEIVED:
                return Result.failure(ErrorCode.BULK_REQUEST_FAILED, "SAT rejected request: 5005")
            return Result.success(BulkSubmission("REQ-E", DownloadType.ISSUED, "Solicitud Aceptada"))

        ports.submit.side_effect = submit

        result = ports.proxy().bulk_submit(
            CREDENTIAL, QuerySpec(DownloadType.BOTH, START, END), ServiceType.CFDI
        )

        reply = ResultAssertions.assert_success(result)
        assert reply.data == {
            "request_ids": {"emitidos": "REQ-E", "recibidos": None},
            "status": "accepted",
            "message": BOTH_SUBMITTED,
        }
        assert dict(reply.errors) == {"recibidos": ("SAT rejected request: 5005",)}
        assert reply.messages == (AUTH_CFDI, "Request accepted with ID: REQ-E")
        assert len(ports.bulk_sessions) == 2
        for session in ports.bulk_sessions:
            session.close.assert_called_once()

    def test_both_refused_keeps_the_shared_code(self, ports: Ports) -> None:
        ports.bulk.establish.side_effect = None
        ports.bulk.establish.return_value = Result.failure(
            ErrorCode.AUTHENTICATION_FAILED, "Authentication error: rejected"
        )

        result = ports.proxy().bulk_submit(
            CREDENTIAL, QuerySpec(DownloadType.BOTH, START, END), ServiceType.CFDI
        )

        error = ResultAssertions.assert_failure(result, ErrorCode.AUTHENTICATION_FAILED)
        assert set(error.field_errors) == {"emitidos", "recibidos"}

    def test_both_refused_with_different_codes(self, ports: Ports) -> None:
        def submit(spec: QuerySpec):
            if spec.direction is DownloadType.RECEIVED:
                return Result.failure(ErrorCode.BULK_REQUEST_FAILED, "SAT rejected request")
            return Result.failure(ErrorCode.UPSTREAM_UNAVAILABLE, "SAT is unavailable")

        ports.submit.side_effect = submit

        result = ports.proxy().bulk_submit(
            CREDENTIAL, QuerySpec(DownloadType.BOTH, START, END), ServiceType.CFDI
        )

        error = ResultAssertions.assert_failure(result, ErrorCode.BULK_REQUEST_FAILED)
        assert error.notes == (AUTH_CFDI,)


class TestBulkVerify:
    def test_finished_request(self, ports: Ports) -> None:
        ports.verify.return_value = Result.success(
            BulkVerification(BulkStatus.FINISHED, "Solicitud Aceptada", ("P-1", "P-2"), 40)
        )

        result = ports.proxy().bulk_verify(CREDENTIAL, "REQ-1", ServiceType.RETENCIONES)

        reply = ResultAssertions.assert_success(result)
        assert reply.data["status"] == "finished"
        assert reply.data["package_ids"] == ["P-1", "P-2"]
        assert reply.messages == (
            bulk_authenticated(ServiceType.RETENCIONES),
            "Request finished with 2 packages",
        )
        ports.bulk.establish.assert_called_once_with(ports.identity, ServiceType.RETENCIONES)

    def test_pending_request(self, ports: Ports) -> None:
        ports.verify.return_value = Result.success(BulkVerification(BulkStatus.IN_PROGRESS))

        reply = ResultAssertions.assert_success(
            ports.proxy().bulk_verify(CREDENTIAL, "REQ-1", ServiceType.CFDI)
        )

        assert reply.messages[-1] == "Request status: in_progress"
        ports.bulk_sessions[0].close.assert_called_once()

    def test_refused_verification_notes_the_authentication(self, ports: Ports) -> None:
        ports.verify.return_value = Result.failure_from(
            FailureDescription(ErrorCode.VERIFICATION_FAILED, "Verification failed: 301")
        )

        result = ports.proxy().bulk_verify(CREDENTIAL, "REQ-1", ServiceType.CFDI)

        error = ResultAssertions.assert_failure(result, ErrorCode.VERIFICATION_FAILED)
        assert error.notes == (AUTH_CFDI,)


class TestBulkFetch:
    def test_partial_failure_is_reported_per_package(self, ports: Ports) -> None:
        ports.fetch.return_value = FetchOutcome(
            packages=(Package("P-1", b"PK\x03\x04"),),
            failures=(ItemFailure("P-2", "Failed to download package P-2: 5007"),),
        )

        result = ports.proxy().bulk_fetch(CREDENTIAL, ["P-1", "P-2"], ServiceType.CFDI)

        reply = ResultAssertions.assert_success(result)
        assert reply.data["count"] == 1
        assert reply.data["packages"][0]["content_base64"] == "UEsDBA=="
        assert reply.messages == (AUTH_CFDI, "Downloaded package P-1 (4 bytes)")
        assert dict(reply.errors) == {"P-2": ("Failed to download package P-2: 5007",)}

    def test_nothing_downloaded_fails(self, ports: Ports) -> None:
        ports.fetch.return_value = FetchOutcome(
            packages=(),
            failures=(ItemFailure("P-1", "boom"), ItemFailure("P-2", "bang")),
        )

        result = ports.proxy().bulk_fetch(CREDENTIAL, ["P-1", "P-2"], ServiceType.CFDI)

        error = ResultAssertions.assert_failure(result, ErrorCode.DOWNLOAD_FAILED)
        assert error.message == "No package could be downloaded"
        assert dict(error.field_errors) == {"P-1": ("boom",), "P-2": ("bang",)}
        assert error.notes == (AUTH_CFDI,)
        ports.bulk_sessions[0].close.assert_called_once()
