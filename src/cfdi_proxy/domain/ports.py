"""
Ports — Protocol interfaces the orchestrator depends on.

    Proxy ← Ports (protocols) ← Adapters (httpx / lxml / cryptography)

Two session families exist and never mix:

  - PortalSession: the interactive portal (scraping path). Established by
    a PortalConnector, queried by a QueryEngine, drained by a
    ResourceDownloader.
  - BulkSession: the "Descarga Masiva" web service. Established by a
    BulkConnector per endpoint family; submits, verifies and fetches.

Sessions are single-use per call chain and are closed by whoever
established them.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from cfdi_proxy.domain.models import (
    BulkSubmission,
    BulkVerification,
    DocumentMetadata,
    DownloadBatch,
    DownloadType,
    FetchOutcome,
    FielIdentity,
    Package,
    QuerySpec,
    ResourceType,
    ServiceType,
    SigningCredential,
)
from cfdi_proxy.railway.result import Result


@runtime_checkable
class CredentialValidator(Protocol):
    """
    Port: decode uploaded FIEL material into a verified identity.

    Fails with INVALID_CREDENTIAL_FORMAT, WRONG_CREDENTIAL_CLASS or
    CREDENTIAL_EXPIRED. Must never log the passphrase or key material.
    """

    def validate(self, credential: SigningCredential) -> Result[FielIdentity]: ...


@runtime_checkable
class PortalSession(Protocol):
    """An authenticated portal session (cookies held by the transport)."""

    @property
    def rfc(self) -> str: ...

    def get_page(self, url: str) -> str: ...

    def post_form(self, url: str, fields: dict[str, str], async_postback: bool = False) -> str: ...

    def fetch(self, url: str) -> bytes: ...

    def is_alive(self) -> bool: ...

    def close(self) -> None: ...


@runtime_checkable
class PortalConnector(Protocol):
    """Port: FIEL login against the portal. AUTHENTICATION_FAILED on refusal."""

    def establish(self, identity: FielIdentity) -> Result[PortalSession]: ...


@runtime_checkable
class QueryEngine(Protocol):
    """Port: list CFDI metadata through an established portal session."""

    def by_date_range(
        self, session: PortalSession, spec: QuerySpec
    ) -> Result[list[DocumentMetadata]]: ...

    def by_uuids(
        self, session: PortalSession, uuids: Sequence[str], direction: DownloadType
    ) -> Result[list[DocumentMetadata]]: ...


@runtime_checkable
class ResourceDownloader(Protocol):
    """
    Port: fetch artifacts for a metadata set with bounded concurrency.

    Individual failures land in DownloadBatch.failures; the Result only
    fails as a whole when the session is dead.
    """

    def download(
        self,
        session: PortalSession,
        metadata: Sequence[DocumentMetadata],
        resource_types: Sequence[ResourceType],
    ) -> Result[DownloadBatch]: ...


@runtime_checkable
class BulkSession(Protocol):
    """An authenticated bulk web-service client bound to one endpoint family."""

    def submit(self, spec: QuerySpec) -> Result[BulkSubmission]: ...

    def verify(self, request_id: str) -> Result[BulkVerification]: ...

    def download(self, package_id: str) -> Result[Package]: ...

    def fetch(self, package_ids: Sequence[str]) -> FetchOutcome: ...

    def close(self) -> None: ...


@runtime_checkable
class BulkConnector(Protocol):
    """Port: authenticate against the bulk service of one endpoint family."""

    def establish(
        self, identity: FielIdentity, service_type: ServiceType
    ) -> Result[BulkSession]: ...
