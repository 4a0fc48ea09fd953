"""
Proxy orchestrator — one method per public operation.

Domain layer — composes the ports; holds no state between calls and never
touches the network itself.

Scraping path:

  validate credential
    → establish portal session
      → query (per direction, merged by UUID)
        → [truncate to max_results]
          → download artifacts (bounded fan-out)
            → Reply

Bulk path:

  validate credential
    → establish bulk session (per direction for `ambos`, in parallel)
      → submit | verify | fetch
        → Reply

Every stage returns a Result; the first failure short-circuits the rest.
Sessions are closed when the operation ends, whatever its outcome. The
uploaded credential only ever lives in the arguments of these calls.

Informational messages and non-fatal errors are returned in the Reply
value rather than accumulated on the instance, so one proxy serves
concurrent requests.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import TypeVar

import structlog

from cfdi_proxy.domain.models import (
    BulkStatus,
    BulkSubmission,
    BulkVerification,
    DocumentMetadata,
    DownloadBatch,
    DownloadType,
    FetchOutcome,
    FielIdentity,
    ItemFailure,
    Listing,
    QuerySpec,
    Reply,
    ResourceType,
    ServiceType,
    SigningCredential,
)
from cfdi_proxy.domain.ports import (
    BulkConnector,
    BulkSession,
    CredentialValidator,
    PortalConnector,
    PortalSession,
    QueryEngine,
    ResourceDownloader,
)
from cfdi_proxy.railway import ErrorCode, FailureDescription, Result

T = TypeVar("T")
log = structlog.get_logger()

PORTAL_AUTHENTICATED = "FIEL authentication successful"
NO_UUID_MATCHES = "No CFDIs found for the provided UUIDs"
BOTH_SUBMITTED = "Both requests submitted (emitidos + recibidos)"


def bulk_authenticated(service_type: ServiceType) -> str:
    return f"FIEL authenticated for {service_type.value} service"


@dataclass(frozen=True, slots=True)
class Collection:
    """What a scraping download gathered: the listing and the artifacts."""

    listing: Listing
    batch: DownloadBatch


class CfdiProxy:
    """
    Stateless orchestrator behind the HTTP routes (and the job consumer).

        proxy = CfdiProxy(validator, portal, engine, downloader, bulk)
        result = proxy.query(credential, form.to_spec())
    """

    def __init__(
        self,
        validator: CredentialValidator,
        portal_connector: PortalConnector,
        query_engine: QueryEngine,
        downloader: ResourceDownloader,
        bulk_connector: BulkConnector,
    ) -> None:
        self._validator = validator
        self._portal_connector = portal_connector
        self._query_engine = query_engine
        self._downloader = downloader
        self._bulk_connector = bulk_connector

    # ─────────────────────── Scraping path ───────────────────────

    def query(self, credential: SigningCredential, spec: QuerySpec) -> Result[Reply]:
        """List metadata for a period. `ambos` tolerates one failed direction."""
        return self._validator.validate(credential).flat_map(
            lambda identity: self._on_portal(
                identity, lambda session: self.list_documents(session, spec)
            )
        ).map(_listing_reply)

    def download(
        self,
        credential: SigningCredential,
        spec: QuerySpec,
        resource_types: Sequence[ResourceType],
        max_results: int,
    ) -> Result[Reply]:
        """Query a period, keep the first `max_results` rows and download them."""
        return self.collect(credential, spec, resource_types, max_results).map(_download_reply)

    def collect(
        self,
        credential: SigningCredential,
        spec: QuerySpec,
        resource_types: Sequence[ResourceType],
        max_results: int | None = None,
    ) -> Result[Collection]:
        """
        Listing plus downloaded artifacts for a period, as domain objects.

        Shared by `download` and the job consumer, which writes the files
        instead of returning them.
        """
        return self._validator.validate(credential).flat_map(
            lambda identity: self._on_portal(
                identity,
                lambda session: self.list_documents(session, spec).flat_map(
                    lambda listing: self._download_listing(
                        session,
                        listing.limited(max_results) if max_results else listing,
                        resource_types,
                    )
                ),
            )
        )

    def download_by_uuids(
        self,
        credential: SigningCredential,
        uuids: Sequence[str],
        direction: DownloadType,
        resource_types: Sequence[ResourceType],
    ) -> Result[Reply]:
        """
        Download explicit UUIDs. No match is a success with no files; any
        UUID missing from the files was either not found or failed (logged).
        """
        return self._validator.validate(credential).flat_map(
            lambda identity: self._on_portal(
                identity,
                lambda session: self._query_engine.by_uuids(session, uuids, direction).flat_map(
                    lambda items: self._download_listing(
                        session, Listing(items=tuple(items)), resource_types
                    )
                ),
            )
        ).map(lambda collection: _download_reply(collection, NO_UUID_MATCHES))

    def list_documents(self, session: PortalSession, spec: QuerySpec) -> Result[Listing]:
        """
        Query every direction of `spec` independently and merge by UUID.

        Fails only when every direction failed; otherwise the failed
        directions are reported in Listing.errors.
        """
        outcomes = {
            direction: self._query_engine.by_date_range(session, spec.for_direction(direction))
            for direction in spec.direction.directions()
        }
        failures = {
            direction.value: result.error()
            for direction, result in outcomes.items()
            if result.is_failure()
        }
        if len(failures) == len(outcomes):
            return Result.failure_from(_combined_failure(failures, ErrorCode.QUERY_FAILED))

        merged: dict[str, DocumentMetadata] = {}
        for result in outcomes.values():
            for item in result.get_or_else([]):
                merged.setdefault(item.uuid, item)
        return Result.success(
            Listing(
                items=tuple(merged.values()),
                errors=MappingProxyType(
                    {key: (failure.message,) for key, failure in failures.items()}
                ),
            )
        )

    def _on_portal(
        self, identity: FielIdentity, work: Callable[[PortalSession], Result[T]]
    ) -> Result[T]:
        established = self._portal_connector.establish(identity)
        if established.is_failure():
            return Result.failure_from(established.error())
        session = established.value()
        try:
            return work(session).map_failure(
                lambda failure: failure.with_notes((PORTAL_AUTHENTICATED,))
            )
        finally:
            session.close()

    def _download_listing(
        self,
        session: PortalSession,
        listing: Listing,
        resource_types: Sequence[ResourceType],
    ) -> Result[Collection]:
        if not listing.items:
            return Result.success(Collection(listing=listing, batch=DownloadBatch(files=())))
        return self._downloader.download(session, listing.items, resource_types).map(
            lambda batch: Collection(listing=listing, batch=batch)
        )

    # ─────────────────────── Bulk path ───────────────────────

    def bulk_submit(
        self, credential: SigningCredential, spec: QuerySpec, service_type: ServiceType
    ) -> Result[Reply]:
        """
        Submit a bulk request. `ambos` submits both directions through two
        independent sessions in parallel and succeeds if either is accepted.
        """
        problem = spec.bulk_period_problem()
        if problem is not None:
            return Result.failure_from(FailureDescription.validation({"end_date": [problem]}))
        return self._validator.validate(credential).flat_map(
            lambda identity: self._submit_both(identity, spec, service_type)
            if spec.direction is DownloadType.BOTH
            else self._submit_one(identity, spec, service_type).map(
                lambda submission: _submission_reply(submission, service_type)
            )
        )

    def _submit_one(
        self, identity: FielIdentity, spec: QuerySpec, service_type: ServiceType
    ) -> Result[BulkSubmission]:
        return self._on_bulk(identity, service_type, lambda session: session.submit(spec))

    def _submit_both(
        self, identity: FielIdentity, spec: QuerySpec, service_type: ServiceType
    ) -> Result[Reply]:
        directions = DownloadType.BOTH.directions()
        with ThreadPoolExecutor(max_workers=len(directions), thread_name_prefix="bulk-submit") as pool:
            futures = {
                direction: pool.submit(
                    self._submit_one, identity, spec.for_direction(direction), service_type
                )
                for direction in directions
            }
            outcomes = {direction: future.result() for direction, future in futures.items()}

        failures = {
            direction.value: result.error()
            for direction, result in outcomes.items()
            if result.is_failure()
        }
        if len(failures) == len(outcomes):
            return Result.failure_from(_combined_failure(failures, ErrorCode.BULK_REQUEST_FAILED))

        messages: list[str] = [bulk_authenticated(service_type)]
        request_ids: dict[str, str | None] = {}
        for direction, result in outcomes.items():
            submission = result.get_or_else(None)
            request_ids[direction.value] = submission.request_id if submission else None
            if submission is not None:
                messages.extend(submission.notes)
                messages.append(f"Request accepted with ID: {submission.request_id}")
        for failure in failures.values():
            messages.extend(note for note in failure.notes if note not in messages)
        return Result.success(
            Reply(
                data={"request_ids": request_ids, "status": "accepted", "message": BOTH_SUBMITTED},
                messages=tuple(messages),
                errors=MappingProxyType(
                    {key: (failure.message,) for key, failure in failures.items()}
                ),
            )
        )

    def bulk_verify(
        self, credential: SigningCredential, request_id: str, service_type: ServiceType
    ) -> Result[Reply]:
        """Read the state of a bulk request; package ids only once finished."""
        return self.verify_request(credential, request_id, service_type).map(
            lambda verification: _verification_reply(verification, service_type)
        )

    def verify_request(
        self, credential: SigningCredential, request_id: str, service_type: ServiceType
    ) -> Result[BulkVerification]:
        return self._validator.validate(credential).flat_map(
            lambda identity: self._on_bulk(
                identity, service_type, lambda session: session.verify(request_id)
            )
        )

    def bulk_fetch(
        self,
        credential: SigningCredential,
        package_ids: Sequence[str],
        service_type: ServiceType,
    ) -> Result[Reply]:
        """
        Download packages independently. Fails only when no package could
        be downloaded; otherwise failed ones are listed under their id.
        """
        return self.fetch_packages(credential, package_ids, service_type).flat_map(
            lambda outcome: _fetch_reply(outcome, service_type)
        )

    def fetch_packages(
        self,
        credential: SigningCredential,
        package_ids: Sequence[str],
        service_type: ServiceType,
    ) -> Result[FetchOutcome]:
        return self._validator.validate(credential).flat_map(
            lambda identity: self._on_bulk(
                identity,
                service_type,
                lambda session: Result.success(session.fetch(package_ids)),
            )
        )

    def _on_bulk(
        self,
        identity: FielIdentity,
        service_type: ServiceType,
        work: Callable[[BulkSession], Result[T]],
    ) -> Result[T]:
        established = self._bulk_connector.establish(identity, service_type)
        if established.is_failure():
            return Result.failure_from(established.error())
        session = established.value()
        try:
            return work(session).map_failure(
                lambda failure: failure.with_notes((bulk_authenticated(service_type),))
            )
        finally:
            session.close()


# ─────────────────────── Replies ───────────────────────


def _combined_failure(
    failures: dict[str, FailureDescription], fallback: ErrorCode
) -> FailureDescription:
    """
    One failure for several failed directions: kept as-is when only one
    direction ran, otherwise keyed by direction.
    """
    if len(failures) == 1:
        return next(iter(failures.values()))
    codes = {failure.code for failure in failures.values()}
    code = codes.pop() if len(codes) == 1 else fallback
    notes: list[str] = []
    for failure in failures.values():
        notes.extend(note for note in failure.notes if note not in notes)
    return FailureDescription(
        code=code,
        message="; ".join(f"{key}: {failure.message}" for key, failure in failures.items()),
        field_errors=MappingProxyType(
            {key: (failure.message,) for key, failure in failures.items()}
        ),
        notes=tuple(notes),
    )


def _listing_reply(listing: Listing) -> Reply:
    return Reply(
        data={"count": len(listing.items), "cfdis": [item.to_dict() for item in listing.items]},
        messages=(PORTAL_AUTHENTICATED, f"Found {len(listing.items)} CFDIs"),
        errors=listing.errors,
    )


def _failure_message(failure: ItemFailure) -> str:
    kind = failure.resource_type.value if failure.resource_type else "resource"
    return f"Failed to download {kind} for {failure.item_id}: {failure.message}"


def _download_reply(collection: Collection, empty_message: str | None = None) -> Reply:
    listing, batch = collection.listing, collection.batch
    if not listing.items and empty_message:
        return Reply(
            data={"count": 0, "files": []},
            messages=(PORTAL_AUTHENTICATED, empty_message),
            errors=listing.errors,
        )
    log.info(
        "proxy.download_completed",
        listed=len(listing.items),
        downloaded=len(batch.files),
        failed=len(batch.failures),
    )
    return Reply(
        data={"count": len(batch.files), "files": [file.to_dict() for file in batch.files]},
        messages=(
            PORTAL_AUTHENTICATED,
            f"Downloaded {len(batch.files)} files",
            *(_failure_message(failure) for failure in batch.failures),
        ),
        errors=listing.errors,
    )


def _submission_reply(submission: BulkSubmission, service_type: ServiceType) -> Reply:
    return Reply(
        data={
            "request_id": submission.request_id,
            "status": "accepted",
            "message": submission.message,
        },
        messages=(
            bulk_authenticated(service_type),
            *submission.notes,
            f"Request accepted with ID: {submission.request_id}",
        ),
    )


def _verification_reply(verification: BulkVerification, service_type: ServiceType) -> Reply:
    return Reply(
        data=verification.to_dict(),
        messages=(
            bulk_authenticated(service_type),
            f"Request finished with {verification.count} packages"
            if verification.status is BulkStatus.FINISHED
            else f"Request status: {verification.status.value}",
        ),
    )


def _fetch_reply(outcome: FetchOutcome, service_type: ServiceType) -> Result[Reply]:
    failures = MappingProxyType(
        {failure.item_id: (failure.message,) for failure in outcome.failures}
    )
    if outcome.failures and not outcome.packages:
        return Result.failure_from(
            FailureDescription(
                code=ErrorCode.DOWNLOAD_FAILED,
                message="No package could be downloaded",
                field_errors=failures,
                notes=(bulk_authenticated(service_type),),
            )
        )
    return Result.success(
        Reply(
            data={
                "count": len(outcome.packages),
                "packages": [package.to_dict() for package in outcome.packages],
            },
            messages=(
                bulk_authenticated(service_type),
                *(
                    f"Downloaded package {package.package_id} ({package.size} bytes)"
                    for package in outcome.packages
                ),
            ),
            errors=failures,
        )
    )
