"""
Request forms — multipart fields → typed, validated commands.

Every public operation receives the same three credential parts
(`certificate`, `private_key`, `passphrase`) plus operation fields as
plain strings. pydantic models turn the operation fields into domain
vocabularies; `parse_request` merges their errors with the credential
checks into one field-keyed VALIDATION_ERROR:

    {"end_date": ["The end date must be a date after or equal to start date"],
     "certificate": ["The certificate field is required"]}

Blank strings count as absent, so optional fields fall back to their
defaults. CSV fields (`resource_types`, `uuids`, `package_ids`) are split
and trimmed.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime, time
from typing import Any, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from cfdi_proxy.domain.models import (
    Complemento,
    DocumentStatus,
    DocumentType,
    DownloadType,
    QuerySpec,
    RequestType,
    ResourceType,
    ServiceType,
    SigningCredential,
    StateVoucher,
)
from cfdi_proxy.railway import FailureDescription, Result

BULK_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_RESULTS = 100
MAX_RESULTS_LIMIT = 500

FormT = TypeVar("FormT", bound="ProxyForm")


def split_csv(value: Any) -> Any:
    """'a, b,,c' → ('a', 'b', 'c'); non-strings pass through."""
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return value


class ProxyForm(BaseModel):
    """Base of every operation form: immutable, whitespace-stripped."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="ignore")


# ─────────────────────── Scraping path ───────────────────────


def _calendar_date(value: Any) -> Any:
    """'2025-01-01' and '2025-01-01 10:00:00' both read as 2025-01-01."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip()).date()
        except ValueError:
            return value
    return value


class DateRangeQueryForm(ProxyForm):
    start_date: date
    end_date: date
    download_type: DownloadType = DownloadType.ISSUED
    state_voucher: StateVoucher = StateVoucher.ALL

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def date_part(cls, value: Any) -> Any:
        return _calendar_date(value)

    @field_validator("end_date")
    @classmethod
    def end_not_before_start(cls, value: date, info: ValidationInfo) -> date:
        start = info.data.get("start_date")
        if start is not None and value < start:
            raise ValueError("The end date must be a date after or equal to start date")
        return value

    def to_spec(self) -> QuerySpec:
        """Both boundaries at midnight; the query engine stretches the end."""
        return QuerySpec(
            direction=self.download_type,
            start=datetime.combine(self.start_date, time.min),
            end=datetime.combine(self.end_date, time.min),
            state_voucher=self.state_voucher,
        )


class DateRangeDownloadForm(DateRangeQueryForm):
    resource_types: tuple[ResourceType, ...] = Field(default=(ResourceType.XML,), min_length=1)
    max_results: int = Field(default=DEFAULT_MAX_RESULTS, ge=1, le=MAX_RESULTS_LIMIT)

    @field_validator("resource_types", mode="before")
    @classmethod
    def split_resource_types(cls, value: Any) -> Any:
        return split_csv(value)


class UuidDownloadForm(ProxyForm):
    uuids: tuple[str, ...] = Field(min_length=1)
    download_type: DownloadType
    resource_types: tuple[ResourceType, ...] = Field(default=(ResourceType.XML,), min_length=1)

    @field_validator("uuids", "resource_types", mode="before")
    @classmethod
    def split_lists(cls, value: Any) -> Any:
        return split_csv(value)

    @field_validator("download_type")
    @classmethod
    def single_direction(cls, value: DownloadType) -> DownloadType:
        if value is DownloadType.BOTH:
            raise ValueError("download_type must be emitidos or recibidos for UUID downloads")
        return value

    @field_validator("uuids")
    @classmethod
    def upper_uuids(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(uuid.upper() for uuid in value))


# ─────────────────────── Bulk path ───────────────────────


def _strict_datetime(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), BULK_DATETIME_FORMAT)
        except ValueError:
            raise ValueError("The date does not match the format Y-m-d H:i:s") from None
    return value


class BulkSubmitForm(ProxyForm):
    start_date: datetime
    end_date: datetime
    download_type: DownloadType = DownloadType.RECEIVED
    request_type: RequestType = RequestType.CFDI
    service_type: ServiceType = ServiceType.CFDI
    document_status: DocumentStatus | None = None
    document_type: DocumentType | None = None
    complemento: Complemento | None = None
    rfc_match: str | None = Field(default=None, min_length=12, max_length=13)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def strict_format(cls, value: Any) -> Any:
        return _strict_datetime(value)

    @field_validator("document_status", mode="before")
    @classmethod
    def status_aliases(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return DocumentStatus.parse(value)
            except ValueError:
                raise ValueError(
                    "document_status must be one of vigentes, cancelados, active, cancelled"
                ) from None
        return value

    @field_validator("complemento", "document_type", mode="before")
    @classmethod
    def lower_case(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("rfc_match")
    @classmethod
    def upper_rfc(cls, value: str | None) -> str | None:
        return value.upper() if value else value

    @field_validator("end_date")
    @classmethod
    def period_long_enough(cls, value: datetime, info: ValidationInfo) -> datetime:
        start = info.data.get("start_date")
        if start is not None:
            problem = QuerySpec(DownloadType.RECEIVED, start, value).bulk_period_problem()
            if problem is not None:
                raise ValueError(problem)
        return value

    def to_spec(self) -> QuerySpec:
        return QuerySpec(
            direction=self.download_type,
            start=self.start_date,
            end=self.end_date,
            request_type=self.request_type,
            document_status=self.document_status,
            document_type=self.document_type,
            complemento=self.complemento,
            rfc_match=self.rfc_match,
        )


class BulkVerifyForm(ProxyForm):
    request_id: str = Field(min_length=1)
    service_type: ServiceType = ServiceType.CFDI


class BulkFetchForm(ProxyForm):
    package_ids: tuple[str, ...] = Field(min_length=1)
    service_type: ServiceType = ServiceType.CFDI

    @field_validator("package_ids", mode="before")
    @classmethod
    def split_package_ids(cls, value: Any) -> Any:
        return split_csv(value)


# ─────────────────────── Parsing ───────────────────────


def _message(error: Mapping[str, Any]) -> str:
    text = str(error.get("msg", "Invalid value"))
    return text.removeprefix("Value error, ")


def parse_request(
    form_cls: type[FormT],
    raw: Mapping[str, Any],
    certificate: bytes | None,
    private_key: bytes | None,
    passphrase: str | None,
) -> Result[tuple[SigningCredential, FormT]]:
    """
    Validate the credential parts and the operation fields together.

    Returns Success((credential, form)) or Failure(VALIDATION_ERROR) whose
    field_errors hold every problem found, not only the first one.
    """
    errors: dict[str, list[str]] = {}
    for name, value in (
        ("certificate", certificate),
        ("private_key", private_key),
        ("passphrase", passphrase),
    ):
        if not value:
            errors.setdefault(name, []).append(f"The {name} field is required")

    fields = {key: value for key, value in raw.items() if value is not None and value != ""}
    form: FormT | None = None
    try:
        form = form_cls.model_validate(fields)
    except ValidationError as e:
        for error in e.errors():
            location = error.get("loc") or ("general",)
            errors.setdefault(str(location[0]), []).append(_message(error))

    if errors or form is None:
        return Result.failure_from(FailureDescription.validation(errors))
    credential = SigningCredential(
        certificate=certificate or b"",
        private_key=private_key or b"",
        passphrase=passphrase or "",
    )
    return Result.success((credential, form))
