"""
Concurrent resource downloader — artifacts of listed CFDIs, fetched in parallel.

Adapter layer — implements the ResourceDownloader port over a
PortalSession with a bounded ThreadPoolExecutor.

Rules:
  - The session is re-checked before anything is fetched; a dead session
    fails the whole call with DOWNLOAD_FAILED (re-authenticate), which is
    distinct from an expired credential.
  - One fan-out per resource kind, `concurrency` fetches in flight.
  - Per-item outcomes are independent. A failed fetch becomes an
    ItemFailure (logged with UUID, kind and the remote diagnostic) and the
    file is simply absent from the batch.
  - Files of one kind are collected in completion order.
  - The whole call is bounded by `deadline_seconds`; items still pending
    when it elapses are recorded as failures and not awaited.

Workers only return values; results are merged by the calling thread, so
no collection is shared between threads.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError

import structlog

from cfdi_proxy.domain.models import (
    DocumentMetadata,
    DownloadBatch,
    ItemFailure,
    ResourceFile,
    ResourceType,
)
from cfdi_proxy.domain.ports import PortalSession
from cfdi_proxy.railway import ErrorCode, Result

log = structlog.get_logger()

DEADLINE_EXCEEDED = "deadline exceeded"


class ConcurrentResourceDownloader:
    """
    Fetch XML, PDF and cancellation artifacts for a metadata set.

    Implements the ResourceDownloader port.
    """

    def __init__(self, concurrency: int = 10, deadline_seconds: float = 600.0) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._concurrency = concurrency
        self._deadline_seconds = deadline_seconds

    def download(
        self,
        session: PortalSession,
        metadata: Sequence[DocumentMetadata],
        resource_types: Sequence[ResourceType],
    ) -> Result[DownloadBatch]:
        """
        Download every requested kind for every row that offers it.

        Returns Failure(DOWNLOAD_FAILED) only when the session is no longer
        authenticated; otherwise Success(DownloadBatch) with the files and
        the per-item failures.
        """
        if not metadata:
            return Result.success(DownloadBatch(files=()))
        if not session.is_alive():
            return Result.failure(
                ErrorCode.DOWNLOAD_FAILED,
                "The portal session is no longer authenticated; log in again",
            )
        return Result.from_computation(
            lambda: self._do_download(session, metadata, resource_types),
            ErrorCode.DOWNLOAD_FAILED,
            "Download error",
        )

    def _do_download(
        self,
        session: PortalSession,
        metadata: Sequence[DocumentMetadata],
        resource_types: Sequence[ResourceType],
    ) -> DownloadBatch:
        deadline = time.monotonic() + self._deadline_seconds
        files: list[ResourceFile] = []
        failures: list[ItemFailure] = []
        for resource in dict.fromkeys(resource_types):
            candidates = [item for item in metadata if item.has_resource(resource)]
            if not candidates:
                continue
            kind_files, kind_failures = self._fan_out(session, candidates, resource, deadline)
            files.extend(kind_files)
            failures.extend(kind_failures)
            log.info(
                "download.kind_completed",
                resource_type=resource.value,
                requested=len(candidates),
                downloaded=len(kind_files),
                failed=len(kind_failures),
            )
        return DownloadBatch(files=tuple(files), failures=tuple(failures))

    def _fan_out(
        self,
        session: PortalSession,
        candidates: Sequence[DocumentMetadata],
        resource: ResourceType,
        deadline: float,
    ) -> tuple[list[ResourceFile], list[ItemFailure]]:
        files: list[ResourceFile] = []
        failures: list[ItemFailure] = []
        executor = ThreadPoolExecutor(
            max_workers=min(self._concurrency, len(candidates)),
            thread_name_prefix=f"download-{resource.value}",
        )
        pending: dict[Future[bytes], DocumentMetadata] = {
            executor.submit(session.fetch, item.resource_url(resource) or ""): item
            for item in candidates
        }
        try:
            for future in as_completed(pending, timeout=max(deadline - time.monotonic(), 0)):
                item = pending.pop(future)
                error = future.exception()
                if error is None:
                    files.append(
                        ResourceFile(
                            uuid=item.uuid,
                            resource_type=resource,
                            content=future.result(),
                            metadata=item,
                        )
                    )
                else:
                    reason = str(error) or type(error).__name__
                    failures.append(_item_failed(item, resource, reason))
        except FuturesTimeoutError:
            log.warning(
                "download.deadline_exceeded", resource_type=resource.value, pending=len(pending)
            )
            failures.extend(
                _item_failed(item, resource, DEADLINE_EXCEEDED) for item in pending.values()
            )
        finally:
            executor.shutdown(wait=not pending, cancel_futures=True)
        return files, failures


def _item_failed(item: DocumentMetadata, resource: ResourceType, message: str) -> ItemFailure:
    log.warning(
        "download.item_failed", uuid=item.uuid, resource_type=resource.value, error=message
    )
    return ItemFailure(item_id=item.uuid, message=message, resource_type=resource)
