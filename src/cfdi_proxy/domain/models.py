"""
Domain models — vocabularies and immutable value objects of the CFDI proxy.

Closed enumerations replace the free-form strings the public API accepts.
Their `value` is the external (API) spelling; translation to SAT protocol
constants lives next to the adapter that speaks that protocol, in explicit
mapping tables, so an unknown kind can never reach the wire.

All records are frozen dataclasses. Secret-bearing fields (certificate and
key bytes, passphrase, downloaded content) are excluded from `repr` so a
stray log call cannot print them.
"""

from __future__ import annotations

import base64
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum, unique
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
    from cryptography.x509 import Certificate

# SAT rejects bulk periods shorter than this.
MIN_BULK_PERIOD = timedelta(seconds=2)

_EMPTY: Mapping[str, Any] = MappingProxyType({})


# ─────────────────────── Vocabularies ───────────────────────


@unique
class DownloadType(Enum):
    """Direction of the documents relative to the authenticated taxpayer."""

    ISSUED = "emitidos"
    RECEIVED = "recibidos"
    BOTH = "ambos"

    def directions(self) -> tuple[DownloadType, ...]:
        """Single directions a query in this mode expands into."""
        if self is DownloadType.BOTH:
            return (DownloadType.ISSUED, DownloadType.RECEIVED)
        return (self,)


@unique
class StateVoucher(Enum):
    """Status filter of the portal (scraping) queries."""

    ALL = "todos"
    ACTIVE = "vigentes"
    CANCELLED = "cancelados"


@unique
class ResourceType(Enum):
    """Downloadable artifacts attached to a listed CFDI."""

    XML = "xml"
    PDF = "pdf"
    CANCEL_REQUEST = "cancel_request"
    CANCEL_VOUCHER = "cancel_voucher"


@unique
class ServiceType(Enum):
    """Bulk endpoint family: regular CFDI or withholding certificates."""

    CFDI = "cfdi"
    RETENCIONES = "retenciones"


@unique
class RequestType(Enum):
    """Content of a bulk request: full XML documents or metadata only."""

    CFDI = "cfdi"
    METADATA = "metadata"


@unique
class DocumentStatus(Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, raw: str) -> DocumentStatus:
        """Accept both the English values and the Spanish plural aliases."""
        aliases = {"vigentes": cls.ACTIVE, "cancelados": cls.CANCELLED}
        normalized = raw.strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


@unique
class DocumentType(Enum):
    INGRESO = "ingreso"
    EGRESO = "egreso"
    TRASLADO = "traslado"
    NOMINA = "nomina"
    PAGO = "pago"


@unique
class Complemento(Enum):
    """Complements a bulk request can be filtered by."""

    PAGOS10 = "pagos10"
    PAGOS20 = "pagos20"
    AEROLINEAS10 = "aerolineas10"
    CARTAPORTE10 = "cartaporte10"
    CARTAPORTE20 = "cartaporte20"
    CARTAPORTE30 = "cartaporte30"
    CARTAPORTE31 = "cartaporte31"
    COMERCIOEXTERIOR10 = "comercioexterior10"
    COMERCIOEXTERIOR11 = "comercioexterior11"
    COMERCIOEXTERIOR20 = "comercioexterior20"
    DONAT10 = "donat10"
    DONAT11 = "donat11"
    GASTOSHIDROCARBUROS10 = "gastoshidrocarburos10"
    INE11 = "ine11"
    INGRESOSHIDROCARBUROS10 = "ingresoshidrocarburos10"
    LEYENDASFISC10 = "leyendasfisc10"
    NOMINA11 = "nomina11"
    NOMINA12 = "nomina12"
    NOTARIOSPUBLICOS10 = "notariospublicos10"
    OBRAIMP10 = "obraimp10"
    PFIC10 = "pfic10"
    RENOVYVEHSAM10 = "renovyvehsam10"
    SERVICIOPARCIALDECONSTRUCCION10 = "servicioparcialdeconstruccion10"
    TURISTA10 = "turista10"
    VENTA10 = "venta10"


@unique
class BulkStatus(Enum):
    """
    Lifecycle of a bulk request, as reported by SAT.

    accepted → in_progress → finished, or accepted → failure | rejected | expired.
    """

    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    FAILURE = "failure"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {BulkStatus.FINISHED, BulkStatus.FAILURE, BulkStatus.REJECTED, BulkStatus.EXPIRED}
)


# ─────────────────────── Credentials ───────────────────────


@dataclass(frozen=True, slots=True)
class SigningCredential:
    """Uploaded FIEL material. Lives only for the duration of one call."""

    certificate: bytes = field(repr=False)
    private_key: bytes = field(repr=False)
    passphrase: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class FielIdentity:
    """
    A verified FIEL: the decoded certificate plus the matching private key.

    `certificate_number` is SAT's 20-digit certificate number (the X.509
    serial read as ASCII), which is what SAT login tokens carry.
    """

    rfc: str
    legal_name: str
    certificate_number: str
    serial_number: int
    issuer_name: str
    valid_from: datetime
    valid_until: datetime
    certificate_der: bytes = field(repr=False)
    certificate: Certificate = field(repr=False)
    private_key: RSAPrivateKey = field(repr=False)


# ─────────────────────── Queries ───────────────────────


@dataclass(frozen=True, slots=True)
class QuerySpec:
    """
    What to look for: a period or an explicit UUID list, plus filters.

    The portal (scraping) path reads `state_voucher`; the bulk path reads
    `request_type`, `document_status`, `document_type`, `complemento` and
    `rfc_match`.
    """

    direction: DownloadType
    start: datetime | None = None
    end: datetime | None = None
    uuids: tuple[str, ...] = ()
    state_voucher: StateVoucher = StateVoucher.ALL
    request_type: RequestType = RequestType.CFDI
    document_status: DocumentStatus | None = None
    document_type: DocumentType | None = None
    complemento: Complemento | None = None
    rfc_match: str | None = None

    def for_direction(self, direction: DownloadType) -> QuerySpec:
        return replace(self, direction=direction)

    def with_document_status(self, status: DocumentStatus) -> QuerySpec:
        return replace(self, document_status=status)

    def end_of_day(self) -> QuerySpec:
        """Stretch `end` to 23:59:59 of its calendar day."""
        if self.end is None:
            return self
        return replace(self, end=self.end.replace(hour=23, minute=59, second=59, microsecond=0))

    def bulk_period_problem(self) -> str | None:
        """Reason the period is unusable for a bulk request, or None."""
        if self.start is None or self.end is None:
            return "A start and end date are required"
        if self.end - self.start < MIN_BULK_PERIOD:
            return "The end date must be at least 2 seconds after the start date"
        return None


@dataclass(frozen=True, slots=True)
class DocumentMetadata:
    """
    One row of the portal results table.

    `resource_urls` holds the absolute portal URL of every artifact the row
    offers; an artifact with no URL cannot be downloaded.
    """

    uuid: str
    issuer_rfc: str = ""
    issuer_name: str = ""
    receiver_rfc: str = ""
    receiver_name: str = ""
    issued_at: str = ""
    certified_at: str = ""
    pac_rfc: str = ""
    total: str = ""
    effect: str = ""
    status: str = ""
    cancellation_status: str = ""
    cancelled_at: str = ""
    resource_urls: Mapping[ResourceType, str] = field(default=_EMPTY, repr=False)

    def resource_url(self, resource: ResourceType) -> str | None:
        return self.resource_urls.get(resource)

    def has_resource(self, resource: ResourceType) -> bool:
        return bool(self.resource_urls.get(resource))

    def to_dict(self) -> dict[str, Any]:
        return {
            "uuid": self.uuid,
            "rfc_emisor": self.issuer_rfc,
            "nombre_emisor": self.issuer_name,
            "rfc_receptor": self.receiver_rfc,
            "nombre_receptor": self.receiver_name,
            "fecha_emision": self.issued_at,
            "fecha_certificacion": self.certified_at,
            "total": self.total,
            "efecto_comprobante": self.effect,
            "estado_comprobante": self.status,
            "has_xml": self.has_resource(ResourceType.XML),
            "has_pdf": self.has_resource(ResourceType.PDF),
            "has_cancel_request": self.has_resource(ResourceType.CANCEL_REQUEST),
            "has_cancel_voucher": self.has_resource(ResourceType.CANCEL_VOUCHER),
        }


@dataclass(frozen=True, slots=True)
class Listing:
    """
    Metadata gathered for one call, possibly from several directions.

    `errors` is keyed by the direction whose sub-query failed.
    """

    items: tuple[DocumentMetadata, ...]
    errors: Mapping[str, tuple[str, ...]] = field(default=_EMPTY)

    def limited(self, max_results: int) -> Listing:
        return replace(self, items=self.items[:max_results])


# ─────────────────────── Downloads ───────────────────────


@dataclass(frozen=True, slots=True)
class ResourceFile:
    """A downloaded artifact, paired with the row it came from."""

    uuid: str
    resource_type: ResourceType
    content: bytes = field(repr=False)
    metadata: DocumentMetadata | None = field(default=None, repr=False)

    @property
    def size(self) -> int:
        return len(self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uuid": self.uuid,
            "type": self.resource_type.value,
            "content": base64.b64encode(self.content).decode("ascii"),
            "size": self.size,
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


@dataclass(frozen=True, slots=True)
class ItemFailure:
    """A single artifact (or package) that could not be retrieved."""

    item_id: str
    message: str
    resource_type: ResourceType | None = None


@dataclass(frozen=True, slots=True)
class DownloadBatch:
    files: tuple[ResourceFile, ...]
    failures: tuple[ItemFailure, ...] = ()


# ─────────────────────── Bulk protocol ───────────────────────


@dataclass(frozen=True, slots=True)
class BulkSubmission:
    """SAT's answer to an accepted bulk request."""

    request_id: str
    direction: DownloadType
    message: str = ""
    notes: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BulkVerification:
    """
    Verification snapshot of a bulk request.

    `package_ids` is only ever populated when `status` is FINISHED.
    """

    status: BulkStatus
    message: str = ""
    package_ids: tuple[str, ...] = ()
    cfdi_count: int = 0
    code: str = ""

    @property
    def count(self) -> int:
        return len(self.package_ids)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
            "package_ids": list(self.package_ids),
            "count": self.count,
            "cfdi_count": self.cfdi_count,
        }
        if self.code:
            data["code"] = self.code
        return data


@dataclass(frozen=True, slots=True)
class Package:
    """A ZIP archive of documents produced by a finished bulk request."""

    package_id: str
    content: bytes = field(repr=False)
    format: str = "zip"

    @property
    def size(self) -> int:
        return len(self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "package_id": self.package_id,
            "content_base64": base64.b64encode(self.content).decode("ascii"),
            "size": self.size,
            "format": self.format,
        }


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    packages: tuple[Package, ...]
    failures: tuple[ItemFailure, ...] = ()


# ─────────────────────── Replies ───────────────────────


@dataclass(frozen=True, slots=True)
class Reply:
    """
    Success payload of one proxy operation.

    `messages` are informational notes gathered along the call; `errors`
    holds non-fatal problems (a failed package, the failed half of `ambos`).
    """

    data: Mapping[str, Any]
    messages: tuple[str, ...] = ()
    errors: Mapping[str, tuple[str, ...]] = field(default=_EMPTY)
