"""
Portal query engine — CFDI metadata through an authenticated portal session.

Adapter layer — implements the QueryEngine port with lxml over the
portal's ASP.NET search pages:

    ConsultaEmisor.aspx   → issued documents (date + time range, any span)
    ConsultaReceptor.aspx → received documents (one calendar day + time range)

Searching is a two-step async postback: select the filter mode
(dates or folio fiscal), then post the filters with the search button.
The answer is a delta whose update panels hold the results table.

The portal never lists more than 500 rows per search and gives no
pagination. The period is therefore cut into per-day windows and any
window that comes back full is halved, down to a single second, until
every window is below the limit. Rows are de-duplicated by UUID.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urljoin

import lxml.html
import structlog

from cfdi_proxy.adapters.portal_forms import (
    apply_hidden_fields,
    form_fields,
    panels_html,
    parse_delta,
)
from cfdi_proxy.adapters.transport import as_upstream_unavailable
from cfdi_proxy.domain.models import (
    DocumentMetadata,
    DownloadType,
    QuerySpec,
    ResourceType,
    StateVoucher,
)
from cfdi_proxy.domain.ports import PortalSession
from cfdi_proxy.railway import ErrorCode, Result

log = structlog.get_logger()

_PREFIX = "ctl00$MainContent$"
_RESULTS_TABLE_ID = "ctl00_MainContent_tblResult"
_ONE_SECOND = timedelta(seconds=1)

QUERY_PAGES: dict[DownloadType, str] = {
    DownloadType.ISSUED: "ConsultaEmisor.aspx",
    DownloadType.RECEIVED: "ConsultaReceptor.aspx",
}

STATE_VOUCHER_CODES: dict[StateVoucher, str] = {
    StateVoucher.ALL: "-1",
    StateVoucher.ACTIVE: "1",
    StateVoucher.CANCELLED: "0",
}

# Resource links live in onclick handlers of the row action buttons.
RESOURCE_LINKS: dict[ResourceType, tuple[re.Pattern[str], str]] = {
    ResourceType.XML: (
        re.compile(r"RecuperaCfdi\.aspx\?Datos=([^'\"&]+)"),
        "RecuperaCfdi.aspx?Datos={}",
    ),
    ResourceType.PDF: (
        re.compile(r"recuperaRepresentacionImpresa\('([^']+)'"),
        "RepresentacionImpresa.aspx?Datos={}",
    ),
    ResourceType.CANCEL_REQUEST: (
        re.compile(r"AcuseSolicitudCancelacion\.aspx\?Datos=([^'\"&]+)"),
        "AcuseSolicitudCancelacion.aspx?Datos={}",
    ),
    ResourceType.CANCEL_VOUCHER: (
        re.compile(r"AcuseCancelacion\.aspx\?Datos=([^'\"&]+)"),
        "AcuseCancelacion.aspx?Datos={}",
    ),
}

# Normalized header text → DocumentMetadata field.
_COLUMNS: dict[str, str] = {
    "folio fiscal": "uuid",
    "rfc emisor": "issuer_rfc",
    "nombre o razon social del emisor": "issuer_name",
    "rfc receptor": "receiver_rfc",
    "nombre o razon social del receptor": "receiver_name",
    "fecha de emision": "issued_at",
    "fecha de certificacion": "certified_at",
    "pac que certifico": "pac_rfc",
    "total": "total",
    "efecto del comprobante": "effect",
    "estado del comprobante": "status",
    "estatus de cancelacion": "cancellation_status",
    "fecha de proceso de cancelacion": "cancelled_at",
}


class PortalQueryError(Exception):
    """The portal answered a search with something other than results."""


@dataclass(frozen=True, slots=True)
class Window:
    start: datetime
    end: datetime

    @property
    def splittable(self) -> bool:
        return self.end - self.start >= _ONE_SECOND

    def halves(self) -> tuple[Window, Window]:
        middle = self.start + (self.end - self.start) / 2
        middle = middle.replace(microsecond=0)
        return Window(self.start, middle), Window(middle + _ONE_SECOND, self.end)


def day_windows(start: datetime, end: datetime) -> list[Window]:
    """Cut [start, end] at midnight; each window stays within one calendar day."""
    windows: list[Window] = []
    cursor = start.replace(microsecond=0)
    while cursor <= end:
        day_end = cursor.replace(hour=23, minute=59, second=59)
        windows.append(Window(cursor, min(day_end, end)))
        cursor = day_end + _ONE_SECOND
    return windows


# ─────────────────────── Search form ───────────────────────


class _SearchForm:
    """One query page with its evolving hidden state."""

    def __init__(self, session: PortalSession, url: str, filter_mode: str) -> None:
        self._session = session
        self._url = url
        self._fields = form_fields(session.get_page(url))
        self._fields = self._postback(
            {
                "ctl00$ScriptManager1": f"ctl00$MainContent$UpnlBusqueda|{_PREFIX}{filter_mode}",
                "__EVENTTARGET": f"{_PREFIX}{filter_mode}",
                "__EVENTARGUMENT": "",
                f"{_PREFIX}FiltroCentral": filter_mode,
            }
        )[0]

    def _postback(self, overrides: dict[str, str]) -> tuple[dict[str, str], str]:
        fields = {**self._fields, **overrides, "__ASYNCPOST": "true"}
        body = self._session.post_form(self._url, fields, async_postback=True)
        records = parse_delta(body)
        for record in records:
            if record.kind == "pageRedirect":
                raise PortalQueryError("The portal session expired")
            if record.kind == "error":
                raise PortalQueryError(record.content or "The portal rejected the search")
        return apply_hidden_fields(fields, records), panels_html(records)

    def search(self, filters: dict[str, str]) -> str:
        self._fields, html = self._postback(
            {
                "ctl00$ScriptManager1": f"ctl00$MainContent$UpnlBusqueda|{_PREFIX}BtnBusqueda",
                "__EVENTTARGET": "",
                "__EVENTARGUMENT": "",
                f"{_PREFIX}BtnBusqueda": "Buscar CFDI",
                f"{_PREFIX}ddlComplementos": "-1",
                **filters,
            }
        )
        return html


def _issued_filters(window: Window, state: StateVoucher) -> dict[str, str]:
    fields = {f"{_PREFIX}DdlEstadoComprobante": STATE_VOUCHER_CODES[state]}
    for calendar, moment in (("CldFechaInicial2", window.start), ("CldFechaFinal2", window.end)):
        fields[f"{_PREFIX}{calendar}$Calendario_text"] = moment.strftime("%d/%m/%Y")
        fields[f"{_PREFIX}{calendar}$DdlHora"] = str(moment.hour)
        fields[f"{_PREFIX}{calendar}$DdlMinuto"] = str(moment.minute)
        fields[f"{_PREFIX}{calendar}$DdlSegundo"] = str(moment.second)
    return fields


def _received_filters(window: Window, state: StateVoucher) -> dict[str, str]:
    calendar = f"{_PREFIX}CldFecha$"
    return {
        f"{_PREFIX}DdlEstadoComprobante": STATE_VOUCHER_CODES[state],
        f"{calendar}DdlAnio": str(window.start.year),
        f"{calendar}DdlMes": str(window.start.month),
        f"{calendar}DdlDia": f"{window.start.day:02d}",
        f"{calendar}DdlHora": str(window.start.hour),
        f"{calendar}DdlMinuto": str(window.start.minute),
        f"{calendar}DdlSegundo": str(window.start.second),
        f"{calendar}DdlHoraFin": str(window.end.hour),
        f"{calendar}DdlMinutoFin": str(window.end.minute),
        f"{calendar}DdlSegundoFin": str(window.end.second),
    }


# ─────────────────────── Results table ───────────────────────


def _normalize_header(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    plain = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(plain.lower().split())


def _resource_urls(row: lxml.html.HtmlElement, base_url: str) -> dict[ResourceType, str]:
    handlers = " ".join(element.get("onclick") or "" for element in row.xpath(".//*[@onclick]"))
    urls: dict[ResourceType, str] = {}
    for resource, (pattern, template) in RESOURCE_LINKS.items():
        match = pattern.search(handlers)
        if match:
            urls[resource] = urljoin(base_url, template.format(match.group(1)))
    return urls


def parse_results(html: str, base_url: str) -> list[DocumentMetadata]:
    """Read the portal results table; a page without it has no results."""
    if not html.strip():
        return []
    document = lxml.html.fromstring(html)
    tables = document.xpath(f"//table[@id='{_RESULTS_TABLE_ID}']")
    if not tables:
        return []
    rows = tables[0].xpath("./tr | ./tbody/tr")
    if not rows:
        return []

    headers = [_normalize_header(cell.text_content()) for cell in rows[0].xpath("./th | ./td")]
    columns = {index: _COLUMNS[name] for index, name in enumerate(headers) if name in _COLUMNS}

    items: list[DocumentMetadata] = []
    for row in rows[1:]:
        cells = row.xpath("./td")
        values = {
            attribute: " ".join(cells[index].text_content().split())
            for index, attribute in columns.items()
            if index < len(cells)
        }
        uuid = values.pop("uuid", "").upper()
        if not uuid:
            continue
        items.append(
            DocumentMetadata(uuid=uuid, resource_urls=_resource_urls(row, base_url), **values)
        )
    return items


# ─────────────────────── Engine ───────────────────────


class PortalQueryEngine:
    """
    List CFDI metadata from the portal search pages.

    Implements the QueryEngine port.
    """

    def __init__(self, base_url: str, result_limit: int = 500) -> None:
        self._base_url = base_url
        self._result_limit = result_limit

    def by_date_range(
        self, session: PortalSession, spec: QuerySpec
    ) -> Result[list[DocumentMetadata]]:
        """
        Search every direction of `spec` over its period.

        The end of the period is stretched to 23:59:59 of its day, so a
        one-day range covers the whole day.
        """
        return Result.from_computation(
            lambda: self._do_date_range(session, spec.end_of_day()),
            ErrorCode.QUERY_FAILED,
            "Query error",
        ).map_failure(as_upstream_unavailable)

    def by_uuids(
        self, session: PortalSession, uuids: Sequence[str], direction: DownloadType
    ) -> Result[list[DocumentMetadata]]:
        return Result.from_computation(
            lambda: self._do_uuids(session, uuids, direction),
            ErrorCode.QUERY_FAILED,
            "Query error",
        ).map_failure(as_upstream_unavailable)

    def _page_url(self, direction: DownloadType) -> str:
        return urljoin(self._base_url, QUERY_PAGES[direction])

    def _do_date_range(self, session: PortalSession, spec: QuerySpec) -> list[DocumentMetadata]:
        if spec.start is None or spec.end is None:
            raise ValueError("A start and end date are required")
        found: dict[str, DocumentMetadata] = {}
        for direction in spec.direction.directions():
            form = _SearchForm(session, self._page_url(direction), "RdoFechas")
            filters = _issued_filters if direction is DownloadType.ISSUED else _received_filters
            pending = day_windows(spec.start, spec.end)
            while pending:
                window = pending.pop(0)
                rows = parse_results(form.search(filters(window, spec.state_voucher)), self._base_url)
                if len(rows) >= self._result_limit and window.splittable:
                    log.debug(
                        "query.window_split",
                        start=window.start.isoformat(),
                        end=window.end.isoformat(),
                    )
                    pending[:0] = window.halves()
                    continue
                if len(rows) >= self._result_limit:
                    log.warning(
                        "query.result_limit_reached",
                        start=window.start.isoformat(),
                        limit=self._result_limit,
                    )
                for row in rows:
                    found.setdefault(row.uuid, row)
            log.info(
                "query.direction_completed",
                rfc=session.rfc,
                direction=direction.value,
                total=len(found),
            )
        return list(found.values())

    def _do_uuids(
        self, session: PortalSession, uuids: Sequence[str], direction: DownloadType
    ) -> list[DocumentMetadata]:
        found: dict[str, DocumentMetadata] = {}
        for single in direction.directions():
            form = _SearchForm(session, self._page_url(single), "RdoFolioFiscal")
            for uuid in uuids:
                html = form.search({f"{_PREFIX}TxtUUID": uuid.strip().upper()})
                for row in parse_results(html, self._base_url):
                    found.setdefault(row.uuid, row)
        log.info("query.uuids_completed", requested=len(uuids), found=len(found))
        return list(found.values())
