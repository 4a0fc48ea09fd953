"""
Job-queue consumer mode — the same retrieval primitives, files on disk.

An alternate deployment of the proxy: instead of answering an HTTP call
with Base64 content, a job runs a download (or polls a bulk request) and
writes every artifact under a job-scoped directory:

    {storage_dir}/{client_id}/{job_id}/{uuid}.xml
    {storage_dir}/{client_id}/{job_id}/{uuid}.pdf
    {storage_dir}/{client_id}/{job_id}/{uuid}-cancel-request.pdf
    {storage_dir}/{client_id}/{job_id}/{uuid}-cancel-voucher.pdf
    {storage_dir}/{client_id}/{job_id}/{package_id}.zip

Where jobs come from (a queue, a database table, the CLI) is up to the
caller. The credential still travels with each job and is never written.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType

import structlog

from cfdi_proxy.domain.models import (
    BulkStatus,
    BulkVerification,
    ItemFailure,
    Package,
    QuerySpec,
    ResourceFile,
    ResourceType,
    ServiceType,
    SigningCredential,
)
from cfdi_proxy.proxy import CfdiProxy, Collection
from cfdi_proxy.railway import ErrorCode, Result

log = structlog.get_logger()

FILE_SUFFIXES: Mapping[ResourceType, str] = MappingProxyType(
    {
        ResourceType.XML: ".xml",
        ResourceType.PDF: ".pdf",
        ResourceType.CANCEL_REQUEST: "-cancel-request.pdf",
        ResourceType.CANCEL_VOUCHER: "-cancel-voucher.pdf",
    }
)


# ─────────────────────── Records ───────────────────────


@dataclass(frozen=True, slots=True)
class DownloadJob:
    """A scraping download to execute and persist."""

    job_id: str
    client_id: str
    credential: SigningCredential = field(repr=False)
    spec: QuerySpec
    resource_types: tuple[ResourceType, ...] = (ResourceType.XML,)
    max_results: int | None = None


@dataclass(frozen=True, slots=True)
class JobReport:
    """Outcome of one DownloadJob."""

    job_id: str
    query_count: int
    written: tuple[Path, ...]
    failures: tuple[ItemFailure, ...] = ()
    errors: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True, slots=True)
class BulkPollTarget:
    """A submitted bulk request whose packages should land in a job directory."""

    job_id: str
    client_id: str
    request_id: str
    credential: SigningCredential = field(repr=False)
    service_type: ServiceType = ServiceType.CFDI


@dataclass(frozen=True, slots=True)
class PollReport:
    """One poll tick: the request state and, once finished, what was stored."""

    verification: BulkVerification
    written: tuple[Path, ...] = ()
    failures: tuple[ItemFailure, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.verification.status.is_terminal


# ─────────────────────── Storage ───────────────────────


class JobStorage:
    """Writes artifacts below `{root}/{client_id}/{job_id}/`."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def job_dir(self, client_id: str, job_id: str) -> Path:
        return self._root / _segment(client_id) / _segment(job_id)

    def write_file(self, client_id: str, job_id: str, file: ResourceFile) -> Path:
        name = f"{_segment(file.uuid)}{FILE_SUFFIXES[file.resource_type]}"
        return self._write(self.job_dir(client_id, job_id) / name, file.content)

    def write_package(self, client_id: str, job_id: str, package: Package) -> Path:
        name = f"{_segment(package.package_id)}.{package.format}"
        return self._write(self.job_dir(client_id, job_id) / name, package.content)

    @staticmethod
    def _write(path: Path, content: bytes) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path


def _segment(value: str) -> str:
    """Reject identifiers that would escape the job directory."""
    if not value or value in {".", ".."} or "/" in value or "\\" in value:
        raise ValueError(f"Unsafe path segment: {value!r}")
    return value


# ─────────────────────── Runners ───────────────────────


class DownloadJobRunner:
    """
    Execute a DownloadJob with the proxy's query + download primitives.

        runner = DownloadJobRunner(proxy, JobStorage(settings.jobs.storage_dir))
        result = runner.run(job)
    """

    def __init__(self, proxy: CfdiProxy, storage: JobStorage) -> None:
        self._proxy = proxy
        self._storage = storage

    def run(self, job: DownloadJob) -> Result[JobReport]:
        log.info("job.download_started", job_id=job.job_id, client_id=job.client_id)
        return (
            self._proxy.collect(job.credential, job.spec, job.resource_types, job.max_results)
            .flat_map(lambda collection: self._store(job, collection))
            .peek(
                lambda report: log.info(
                    "job.download_completed",
                    job_id=report.job_id,
                    query_count=report.query_count,
                    written=len(report.written),
                    failed=len(report.failures),
                )
            )
            .peek_failure(
                lambda failure: log.error(
                    "job.download_failed", job_id=job.job_id, code=failure.code.value
                )
            )
        )

    def _store(self, job: DownloadJob, collection: Collection) -> Result[JobReport]:
        return Result.from_computation(
            lambda: JobReport(
                job_id=job.job_id,
                query_count=len(collection.listing.items),
                written=tuple(
                    self._storage.write_file(job.client_id, job.job_id, file)
                    for file in collection.batch.files
                ),
                failures=collection.batch.failures,
                errors=collection.listing.errors,
            ),
            ErrorCode.UNKNOWN_ERROR,
            "Could not store the downloaded files",
        )


class BulkPoller:
    """
    One poll tick for a tracked bulk request.

    Verifies the request; once it is finished, fetches every package and
    stores it. Non-finished states (including rejected or expired) are
    reported as they are, the caller decides whether to keep polling.
    """

    def __init__(self, proxy: CfdiProxy, storage: JobStorage) -> None:
        self._proxy = proxy
        self._storage = storage

    def poll_once(self, target: BulkPollTarget) -> Result[PollReport]:
        return (
            self._proxy.verify_request(target.credential, target.request_id, target.service_type)
            .peek(
                lambda verification: log.info(
                    "job.bulk_polled",
                    job_id=target.job_id,
                    request_id=target.request_id,
                    status=verification.status.value,
                    checked_at=datetime.now(UTC).isoformat(),
                )
            )
            .flat_map(
                lambda verification: self._collect(target, verification)
                if verification.status is BulkStatus.FINISHED
                else Result.success(PollReport(verification=verification))
            )
        )

    def _collect(
        self, target: BulkPollTarget, verification: BulkVerification
    ) -> Result[PollReport]:
        return self._proxy.fetch_packages(
            target.credential, verification.package_ids, target.service_type
        ).flat_map(
            lambda outcome: Result.from_computation(
                lambda: PollReport(
                    verification=verification,
                    written=tuple(
                        self._storage.write_package(target.client_id, target.job_id, package)
                        for package in outcome.packages
                    ),
                    failures=outcome.failures,
                ),
                ErrorCode.UNKNOWN_ERROR,
                "Could not store the downloaded packages",
            )
        )
