"""
Bulk download client — SAT "Descarga Masiva" web service (SOAP 1.1).

Adapter layer — implements the BulkConnector and BulkSession ports on top
of `satcfdi`, which builds, signs and parses every SOAP call. httpx only
carries the payloads, so transport errors and timeouts follow the same
rules as the portal path.

Protocol (one family of satcfdi requests per ServiceType):

    Autenticacion ──▶ WRAP token (signed WS-Security timestamp)
    SolicitaDescarga{Emitidos|Recibidos} ──▶ IdSolicitud
    VerificaSolicitudDescarga ──▶ EstadoSolicitud + IdsPaquetes
    Descargar ──▶ Paquete (base64 ZIP)

A call is accepted when its CodEstatus is 5000. Nothing here is retried:
a refused or failed call surfaces as a Failure (or, for packages, as an
ItemFailure) and the caller decides what to do next.

A session holds one signer and one token for the duration of a single
proxy operation.
"""

from __future__ import annotations

import base64
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat
from lxml import etree
from satcfdi.models import Signer
from satcfdi.pacs.sat import (
    CodigoEstadoSolicitud,
    EstadoComprobante,
    EstadoSolicitud,
    TipoDescargaMasivaTerceros,
    _CFDIAutenticacion,
    _CFDIDescargaMasiva,
    _CFDISolicitaDescargaEmitidos,
    _CFDISolicitaDescargaRecibidos,
    _CFDIVerificaSolicitudDescarga,
    _RetenAutenticacion,
    _RetenDescargaMasiva,
    _RetenSolicitaDescargaEmitidos,
    _RetenSolicitaDescargaRecibidos,
    _RetenVerificaSolicitudDescarga,
    _SATRequest,
)

from cfdi_proxy.adapters.transport import (
    as_upstream_unavailable,
    create_client,
    raise_for_server_error,
)
from cfdi_proxy.config import BulkSettings
from cfdi_proxy.domain.models import (
    BulkStatus,
    BulkSubmission,
    BulkVerification,
    DocumentStatus,
    DocumentType,
    DownloadType,
    FetchOutcome,
    FielIdentity,
    ItemFailure,
    Package,
    QuerySpec,
    RequestType,
    ServiceType,
)
from cfdi_proxy.railway import ErrorCode, FailureDescription, Result

log = structlog.get_logger()

ACCEPTED = CodigoEstadoSolicitud.EXITO.value
FORCED_STATUS_NOTE = "Note: Forcing active status for received XML (SAT requirement)"

type ClientFactory = Callable[[BulkSettings], httpx.Client]

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)


# ─────────────────────── Wire vocabularies ───────────────────────


@dataclass(frozen=True, slots=True)
class ServiceRequests:
    """The satcfdi request classes of one endpoint family."""

    authenticate: type[_CFDIAutenticacion]
    issued: type[_SATRequest]
    received: type[_SATRequest]
    verify: type[_SATRequest]
    download: type[_SATRequest]

    def query(self, direction: DownloadType) -> type[_SATRequest]:
        return self.issued if direction is DownloadType.ISSUED else self.received


SERVICES: dict[ServiceType, ServiceRequests] = {
    ServiceType.CFDI: ServiceRequests(
        authenticate=_CFDIAutenticacion,
        issued=_CFDISolicitaDescargaEmitidos,
        received=_CFDISolicitaDescargaRecibidos,
        verify=_CFDIVerificaSolicitudDescarga,
        download=_CFDIDescargaMasiva,
    ),
    ServiceType.RETENCIONES: ServiceRequests(
        authenticate=_RetenAutenticacion,
        issued=_RetenSolicitaDescargaEmitidos,
        received=_RetenSolicitaDescargaRecibidos,
        verify=_RetenVerificaSolicitudDescarga,
        download=_RetenDescargaMasiva,
    ),
}

REQUEST_TYPES: dict[RequestType, TipoDescargaMasivaTerceros] = {
    RequestType.CFDI: TipoDescargaMasivaTerceros.CFDI,
    RequestType.METADATA: TipoDescargaMasivaTerceros.METADATA,
}

DOCUMENT_STATUSES: dict[DocumentStatus, EstadoComprobante] = {
    DocumentStatus.ACTIVE: EstadoComprobante.VIGENTE,
    DocumentStatus.CANCELLED: EstadoComprobante.CANCELADO,
}

DOCUMENT_TYPE_CODES: dict[DocumentType, str] = {
    DocumentType.INGRESO: "I",
    DocumentType.EGRESO: "E",
    DocumentType.TRASLADO: "T",
    DocumentType.NOMINA: "N",
    DocumentType.PAGO: "P",
}

REQUEST_STATUSES: dict[EstadoSolicitud, BulkStatus] = {
    EstadoSolicitud.ACEPTADA: BulkStatus.ACCEPTED,
    EstadoSolicitud.EN_PROCESO: BulkStatus.IN_PROGRESS,
    EstadoSolicitud.TERMINADA: BulkStatus.FINISHED,
    EstadoSolicitud.ERROR: BulkStatus.FAILURE,
    EstadoSolicitud.RECHAZADA: BulkStatus.REJECTED,
    EstadoSolicitud.VENCIDA: BulkStatus.EXPIRED,
}

# CodigoEstadoSolicitud other than 5000
REQUEST_CODE_MESSAGES: dict[str, str] = {
    "5002": "Se agotó las solicitudes de por vida",
    "5003": "Tope máximo de elementos de la consulta",
    "5004": "No se encontró la información",
    "5005": "Solicitud duplicada",
    "5011": "Límite de descargas por folio por día",
    "404": "Error no controlado",
}

# CodEstatus values meaning the caller is not allowed to ask.
AUTHENTICATION_CODES = frozenset({"300", "303", "304", "305"})


class SoapFault(Exception):
    """The web service answered with a SOAP fault or an unreadable body."""


def _default_client(settings: BulkSettings) -> httpx.Client:
    return create_client(
        timeout_seconds=settings.timeout_seconds,
        connect_timeout_seconds=min(60.0, settings.timeout_seconds),
    )


def load_signer(identity: FielIdentity) -> Signer:
    """satcfdi signer over the already verified certificate and key."""
    key = identity.private_key.private_bytes(Encoding.DER, PrivateFormat.PKCS8, NoEncryption())
    return Signer.load(certificate=identity.certificate_der, key=key)


# ─────────────────────── Query rules ───────────────────────


def prepare_bulk_query(spec: QuerySpec) -> tuple[QuerySpec, tuple[str, ...]]:
    """
    Apply SAT's request rules to `spec`.

    SAT silently refuses full-document requests for received CFDIs that do
    not filter by status, so those are sent as active-only and a note is
    returned. An explicit status from the caller is never replaced.
    """
    if (
        spec.direction is DownloadType.RECEIVED
        and spec.request_type is RequestType.CFDI
        and spec.document_status is None
    ):
        return spec.with_document_status(DocumentStatus.ACTIVE), (FORCED_STATUS_NOTE,)
    return spec, ()


def solicitation_arguments(
    rfc: str, spec: QuerySpec, service_type: ServiceType = ServiceType.CFDI
) -> dict[str, Any]:
    """
    Attributes of the `solicitud` element for one direction of `spec`.

    None values are left out of the request by satcfdi. The retenciones
    service has no TipoComprobante filter.
    """
    if spec.start is None or spec.end is None:
        raise ValueError("A start and end date are required")
    arguments: dict[str, Any] = {
        "FechaInicial": spec.start,
        "FechaFinal": spec.end,
        "RfcSolicitante": rfc,
        "TipoSolicitud": REQUEST_TYPES[spec.request_type],
        "EstadoComprobante": DOCUMENT_STATUSES.get(spec.document_status),
        "Complemento": spec.complemento.value if spec.complemento else None,
    }
    if service_type is ServiceType.CFDI:
        arguments["TipoComprobante"] = DOCUMENT_TYPE_CODES.get(spec.document_type)

    if spec.direction is DownloadType.ISSUED:
        arguments["RfcEmisor"] = rfc
        arguments["RfcReceptores"] = [("RfcReceptor", spec.rfc_match)] if spec.rfc_match else None
    else:
        arguments["RfcReceptor"] = rfc
        arguments["RfcEmisor"] = spec.rfc_match
    return arguments


# ─────────────────────── Exchange ───────────────────────


def _parse(response: httpx.Response) -> etree._Element | None:
    if not response.content.strip():
        return None
    try:
        return etree.fromstring(response.content, parser=_PARSER)
    except etree.XMLSyntaxError as e:
        log.warning("bulk.unreadable_answer", status=response.status_code, error=str(e))
        return None


def _fault_message(document: etree._Element) -> str | None:
    fault = document.find("{*}Body/{*}Fault")
    if fault is None:
        return None
    text = (fault.findtext("faultstring") or fault.findtext("{*}faultstring") or "").strip()
    return text or "SOAP fault"


def read_answer(response: httpx.Response) -> etree._Element:
    """
    Parse a SOAP answer.

    SAT sends SOAP faults with HTTP 500, so a readable fault wins over the
    status code. Any other 5xx raises UpstreamServerError and any other
    non-2xx raises from httpx.
    """
    document = _parse(response)
    if document is not None:
        fault = _fault_message(document)
        if fault is not None:
            raise SoapFault(fault)
    raise_for_server_error(response)
    response.raise_for_status()
    if document is None:
        raise SoapFault("The web service returned an unreadable answer")
    return document


def exchange(client: httpx.Client, request: _SATRequest, token: str | None = None) -> Any:
    """POST a satcfdi request and return what its `process_response` reads."""
    headers = {
        "Content-Type": 'text/xml;charset="utf-8"',
        "Accept": "text/xml",
        "Cache-Control": "no-cache",
        "SOAPAction": request.soap_action,
    }
    if token is not None:
        headers["Authorization"] = f'WRAP access_token="{token}"'
    response = client.post(request.soap_url, content=request.get_payload(), headers=headers)
    document = read_answer(response)
    try:
        return request.process_response(document)
    except (AttributeError, KeyError, ValueError) as e:
        raise SoapFault(f"Unexpected answer from {request.soap_url}") from e


# ─────────────────────── Session ───────────────────────


class SatBulkSession:
    """
    Authenticated client for one endpoint family.

    Implements the BulkSession port.
    """

    def __init__(
        self,
        client: httpx.Client,
        signer: Signer,
        rfc: str,
        service_type: ServiceType,
        token: str,
    ) -> None:
        self._client = client
        self._signer = signer
        self._rfc = rfc
        self._service_type = service_type
        self._requests = SERVICES[service_type]
        self._token = token

    # ── submit ──

    def submit(self, spec: QuerySpec) -> Result[BulkSubmission]:
        """
        Submit a request for one direction.

        VALIDATION_ERROR when the period is shorter than two seconds or the
        direction is not a single one; BULK_REQUEST_FAILED when SAT refuses.
        """
        problem = spec.bulk_period_problem()
        if problem is not None:
            return Result.failure_from(FailureDescription.validation({"end_date": [problem]}))
        if spec.direction is DownloadType.BOTH:
            return Result.failure_from(
                FailureDescription.validation(
                    {"download_type": ["A single bulk request covers one direction"]}
                )
            )
        prepared, notes = prepare_bulk_query(spec)
        return (
            Result.from_computation(
                lambda: self._call(
                    self._requests.query(prepared.direction),
                    solicitation_arguments(self._rfc, prepared, self._service_type),
                ),
                ErrorCode.BULK_REQUEST_FAILED,
                "Request error",
            )
            .map_failure(as_upstream_unavailable)
            .flat_map(lambda answer: _accepted_submission(answer, prepared.direction, notes))
            .map_failure(lambda failure: failure.with_notes(notes))
        )

    # ── verify ──

    def verify(self, request_id: str) -> Result[BulkVerification]:
        """
        Read the state of a request.

        A rejected request is a successful verification with status
        `rejected`; only a refused verify call is a Failure.
        """
        return (
            Result.from_computation(
                lambda: self._call(
                    self._requests.verify,
                    {"RfcSolicitante": self._rfc, "IdSolicitud": request_id},
                ),
                ErrorCode.VERIFICATION_FAILED,
                "Verification error",
            )
            .map_failure(as_upstream_unavailable)
            .flat_map(_interpret_verification)
            .peek(
                lambda verification: log.info(
                    "bulk.verified",
                    request_id=request_id,
                    status=verification.status.value,
                    packages=verification.count,
                )
            )
        )

    # ── download ──

    def download(self, package_id: str) -> Result[Package]:
        return (
            Result.from_computation(
                lambda: self._call(
                    self._requests.download,
                    {"RfcSolicitante": self._rfc, "IdPaquete": package_id},
                ),
                ErrorCode.DOWNLOAD_FAILED,
                f"Failed to download package {package_id}",
            )
            .map_failure(as_upstream_unavailable)
            .flat_map(lambda answer: _package(package_id, *answer))
        )

    def fetch(self, package_ids: Sequence[str]) -> FetchOutcome:
        """Download every package; one failure never stops the others."""
        packages: list[Package] = []
        failures: list[ItemFailure] = []
        for package_id in package_ids:
            result = self.download(package_id)
            if result.is_success():
                package = result.value()
                packages.append(package)
                log.info("bulk.package_downloaded", package_id=package_id, size=package.size)
            else:
                error = result.error()
                failures.append(ItemFailure(item_id=package_id, message=error.message))
                log.warning("bulk.package_failed", package_id=package_id, error=error.message)
        return FetchOutcome(packages=tuple(packages), failures=tuple(failures))

    def close(self) -> None:
        self._client.close()

    def _call(self, request_cls: type[_SATRequest], arguments: dict[str, Any]) -> Any:
        request = request_cls(signer=self._signer, arguments=arguments)
        return exchange(self._client, request, self._token)


def _accepted_submission(
    answer: dict[str, str], direction: DownloadType, notes: tuple[str, ...]
) -> Result[BulkSubmission]:
    code = answer.get("CodEstatus", "")
    message = answer.get("Mensaje", "")
    request_id = answer.get("IdSolicitud", "")
    if code != ACCEPTED or not request_id:
        log.warning("bulk.submit_rejected", direction=direction.value, code=code)
        return Result.failure(
            ErrorCode.BULK_REQUEST_FAILED,
            f"SAT rejected request: {message or code or 'no message'}",
        )
    log.info("bulk.submit_accepted", direction=direction.value, request_id=request_id)
    return Result.success(
        BulkSubmission(request_id=request_id, direction=direction, message=message, notes=notes)
    )


def _interpret_verification(answer: dict[str, Any]) -> Result[BulkVerification]:
    code = answer.get("CodEstatus", "")
    message = answer.get("Mensaje", "")
    if code != ACCEPTED:
        error_code = (
            ErrorCode.AUTHENTICATION_FAILED
            if code in AUTHENTICATION_CODES
            else ErrorCode.VERIFICATION_FAILED
        )
        return Result.failure(error_code, f"Verification failed: {message or code}")

    request_code = answer.get("CodigoEstadoSolicitud", ACCEPTED)
    if request_code != ACCEPTED:
        return Result.success(
            BulkVerification(
                status=BulkStatus.REJECTED,
                message=REQUEST_CODE_MESSAGES.get(request_code, message),
                code=request_code,
            )
        )

    raw_state = answer.get("EstadoSolicitud")
    state = REQUEST_STATUSES.get(raw_state)
    if state is None:
        return Result.failure(
            ErrorCode.VERIFICATION_FAILED, f"SAT reported an unknown request state: {raw_state}"
        )
    return Result.success(
        BulkVerification(
            status=state,
            message=message,
            package_ids=tuple(answer.get("IdsPaquetes", ())) if state is BulkStatus.FINISHED else (),
            cfdi_count=answer.get("NumeroCFDIs", 0),
        )
    )


def _package(package_id: str, header: dict[str, str], payload: str | None) -> Result[Package]:
    code = header.get("CodEstatus", "")
    if code != ACCEPTED:
        return Result.failure(
            ErrorCode.DOWNLOAD_FAILED,
            f"Failed to download package {package_id}: {header.get('Mensaje') or code}",
        )
    content = base64.b64decode(payload.strip()) if payload and payload.strip() else b""
    if not content:
        return Result.failure(
            ErrorCode.DOWNLOAD_FAILED, f"Failed to download package {package_id}: empty package"
        )
    return Result.success(Package(package_id=package_id, content=content))


# ─────────────────────── Connector ───────────────────────


class FielBulkConnector:
    """
    Authenticate against the bulk service with a verified FIEL.

    Implements the BulkConnector port. Every establish() opens its own
    client and token, so two sessions never share state.
    """

    def __init__(
        self,
        settings: BulkSettings,
        client_factory: ClientFactory = _default_client,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory

    def establish(
        self, identity: FielIdentity, service_type: ServiceType
    ) -> Result[SatBulkSession]:
        client = self._client_factory(self._settings)
        result = (
            Result.from_computation(
                lambda: self._authenticate(client, identity, service_type),
                ErrorCode.AUTHENTICATION_FAILED,
                "Authentication error",
            )
            .map_failure(as_upstream_unavailable)
            .peek(
                lambda _: log.info(
                    "bulk.authenticated", rfc=identity.rfc, service_type=service_type.value
                )
            )
        )
        if result.is_failure():
            client.close()
            log.warning(
                "bulk.authentication_failed",
                rfc=identity.rfc,
                service_type=service_type.value,
                reason=result.error().message,
            )
        return result

    def _authenticate(
        self, client: httpx.Client, identity: FielIdentity, service_type: ServiceType
    ) -> SatBulkSession:
        signer = load_signer(identity)
        request = SERVICES[service_type].authenticate(
            signer=signer, arguments={"seconds": self._settings.token_ttl_seconds}
        )
        answer = exchange(client, request)
        token = (answer.get("AutenticaResult") or "").strip()
        if not token:
            raise SoapFault("SAT did not return an access token")
        return SatBulkSession(client, signer, identity.rfc, service_type, token)
