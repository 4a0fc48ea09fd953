"""
HTML form helpers for the SAT portals (lxml).

The portal is an ASP.NET WebForms application. Two formats matter:

  - Full pages: every request must echo back the hidden state fields
    (__VIEWSTATE, __EVENTVALIDATION, …) found in the page form.
  - Async postbacks (`__ASYNCPOST=true`): the answer is a "delta", a flat
    sequence of `length|type|id|content|` records. `updatePanel` records
    carry HTML fragments; `hiddenField` records carry the refreshed state
    fields that must be sent with the next postback.
"""

from __future__ import annotations

from dataclasses import dataclass

import lxml.html

_IGNORED_INPUT_TYPES = frozenset({"submit", "button", "image", "reset", "file"})


@dataclass(frozen=True, slots=True)
class HtmlForm:
    action: str
    method: str
    fields: dict[str, str]


@dataclass(frozen=True, slots=True)
class DeltaRecord:
    kind: str
    id: str
    content: str


class DeltaFormatError(ValueError):
    """The async postback answer is not a well-formed delta."""


def first_form(html: str) -> HtmlForm | None:
    """Return the first <form> of the page with its submittable fields."""
    if not html.strip():
        return None
    document = lxml.html.fromstring(html)
    forms = document.xpath("//form")
    if not forms:
        return None
    form = forms[0]
    return HtmlForm(
        action=form.get("action") or "",
        method=(form.get("method") or "get").lower(),
        fields=_form_fields(form),
    )


def form_fields(html: str) -> dict[str, str]:
    form = first_form(html)
    return dict(form.fields) if form else {}


def _form_fields(form: lxml.html.HtmlElement) -> dict[str, str]:
    fields: dict[str, str] = {}
    for element in form.xpath(".//input[@name]"):
        input_type = (element.get("type") or "text").lower()
        if input_type in _IGNORED_INPUT_TYPES:
            continue
        if input_type in ("checkbox", "radio") and element.get("checked") is None:
            continue
        fields[element.get("name")] = element.get("value") or ""
    for select in form.xpath(".//select[@name]"):
        selected = select.xpath(".//option[@selected]") or select.xpath(".//option")
        if selected:
            option = selected[0]
            value = option.get("value")
            fields[select.get("name")] = value if value is not None else option.text_content()
    return fields


def parse_delta(body: str) -> list[DeltaRecord]:
    """
    Split an ASP.NET async postback answer into records.

        "9|updatePanel|ctl00_Upnl|<p>hi</p>|4|hiddenField|__VIEWSTATE|AAA=|"
    """
    records: list[DeltaRecord] = []
    position = 0
    size = len(body)
    while position < size:
        length_end = body.find("|", position)
        if length_end < 0:
            break
        length_text = body[position:length_end]
        if not length_text.isdigit():
            raise DeltaFormatError(f"Unexpected delta length {length_text[:20]!r} at {position}")
        length = int(length_text)
        kind_end = body.find("|", length_end + 1)
        id_end = body.find("|", kind_end + 1) if kind_end >= 0 else -1
        if kind_end < 0 or id_end < 0:
            raise DeltaFormatError(f"Truncated delta record at {position}")
        content_start = id_end + 1
        content_end = content_start + length
        if body[content_end : content_end + 1] != "|":
            raise DeltaFormatError(f"Delta content length mismatch at {position}")
        records.append(
            DeltaRecord(
                kind=body[length_end + 1 : kind_end],
                id=body[kind_end + 1 : id_end],
                content=body[content_start:content_end],
            )
        )
        position = content_end + 1
    return records


def apply_hidden_fields(fields: dict[str, str], records: list[DeltaRecord]) -> dict[str, str]:
    """Return `fields` updated with every hiddenField record of a delta."""
    updated = dict(fields)
    for record in records:
        if record.kind == "hiddenField":
            updated[record.id] = record.content
    return updated


def panels_html(records: list[DeltaRecord]) -> str:
    """Concatenate the HTML of every updatePanel record."""
    return "".join(record.content for record in records if record.kind == "updatePanel")
