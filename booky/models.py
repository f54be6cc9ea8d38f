"""Domain records, settings and payload shapes used by the filing workflow."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

REPORTABLE = "reportable"
DIRECTION_DEBIT = "debit"
DIRECTION_CREDIT = "credit"
NIL_UUID = UUID(int=0)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class NotFoundError(LookupError):
    """A requested record does not exist."""


class FilingKind(str, Enum):
    OSS_UNION = "oss_union"
    PERIODIC_SUMMARY = "periodic_summary"


class ReviewState(str, Enum):
    READY = "ready"
    REVIEW = "review"


class FilingPeriodStatus(str, Enum):
    PENDING = "pending"
    UNCHANGED = "unchanged"
    EXPORTED = "exported"
    NO_DATA_REMINDER = "no_data_reminder"
    EVALUATION_FAILED = "evaluation_failed"


_HOUR_MINUTE = re.compile(r"(\d{1,2}):(\d{2})")


def _parse_hour_minute(value: str, label: str) -> tuple[int, int]:
    match = _HOUR_MINUTE.fullmatch(value.strip())
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour < 24 and minute < 60:
            return hour, minute
    raise ValueError(f"invalid {label} {value!r}: expected HH:MM")


@dataclass
class MarketAccount:
    vat_rate_percent: float = 0.0
    account: int = 0


@dataclass
class OSSUnionSettings:
    enabled: bool = False
    identifier_number: str = ""
    origin_country: str = ""


@dataclass
class PeriodicSummarySettings:
    enabled: bool = False
    reporting_vat_number: str = ""
    responsible_name: str = ""
    responsible_phone: str = ""
    responsible_email: str = ""


@dataclass
class FilingsSettings:
    enabled: bool = False
    lead_time_days: int = 0
    send_time_local: str = "09:00"
    email_to: list[str] = field(default_factory=list)
    oss_union: OSSUnionSettings = field(default_factory=OSSUnionSettings)
    periodic_summary: PeriodicSummarySettings = field(default_factory=PeriodicSummarySettings)


@dataclass
class Settings:
    timezone: str = ""
    company_id: UUID = NIL_UUID
    filings: FilingsSettings = field(default_factory=FilingsSettings)
    sales_by_market: dict[str, MarketAccount] = field(default_factory=dict)
    other_countries_default: MarketAccount | None = None
    admin_enabled: bool = False
    admin_bearer_token: str = ""
    scheduler_enabled: bool = False
    cutoff_time: str = ""
    scheduler_interval_seconds: float = 300.0

    def location(self) -> tzinfo:
        """Return the configured time zone; an empty name means UTC."""
        name = self.timezone.strip()
        if not name or name == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as err:
            raise ValueError(f"load timezone {name!r}: {err}") from err

    def filings_send_hour_minute(self) -> tuple[int, int]:
        return _parse_hour_minute(self.filings.send_time_local, "filings send time")

    def cutoff_hour_minute(self) -> tuple[int, int]:
        return _parse_hour_minute(self.cutoff_time, "cutoff time")

    def scheduler_interval(self) -> timedelta:
        if self.scheduler_interval_seconds <= 0:
            return timedelta(minutes=5)
        return timedelta(seconds=self.scheduler_interval_seconds)


@dataclass
class AccountingFact:
    id: UUID = NIL_UUID
    source_group_id: str = ""
    source_object_type: str = ""
    source_object_id: str = ""
    stripe_event_id: str | None = None
    stripe_balance_transaction_id: str | None = None
    fact_type: str = ""
    posting_date: datetime = EPOCH
    source_currency: str | None = None
    source_amount_minor: int | None = None
    amount_sek_ore: int = 0
    bokio_account: int = 0
    direction: str = ""
    market_code: str | None = None
    vat_treatment: str | None = None
    review_reason: str | None = None
    tax_case_id: UUID | None = None
    payload: bytes = b""
    created_at: datetime = EPOCH


@dataclass
class TaxCase:
    id: UUID = NIL_UUID
    root_object_type: str = ""
    root_object_id: str = ""
    reportability_state: str = ""
    tax_status: str | None = None
    country: str | None = None
    country_source: str | None = None
    sale_type: str | None = None
    buyer_vat_number: str | None = None
    buyer_vat_verified: bool = False
    invoice_pdf_url: str | None = None
    review_reason: str | None = None
    source_currency: str | None = None
    source_amount_minor: int | None = None


@dataclass
class OSSUnionEntry:
    id: UUID = NIL_UUID
    bokio_company_id: UUID = NIL_UUID
    tax_case_id: UUID | None = None
    source_group_id: str = ""
    source_object_type: str = ""
    source_object_id: str = ""
    stripe_event_id: str | None = None
    original_supply_period: str = ""
    filing_period: str = ""
    consumption_country: str = ""
    origin_country: str = ""
    origin_identifier: str = ""
    sale_type: str = ""
    vat_rate_basis_points: int = 0
    taxable_amount_eur_cents: int = 0
    vat_amount_eur_cents: int = 0
    correction_target_period: str | None = None
    review_state: str = ""
    review_reason: str | None = None
    payload: bytes = b""


@dataclass
class PeriodicSummaryEntry:
    id: UUID = NIL_UUID
    bokio_company_id: UUID = NIL_UUID
    tax_case_id: UUID | None = None
    source_group_id: str = ""
    source_object_type: str = ""
    source_object_id: str = ""
    stripe_event_id: str | None = None
    filing_period: str = ""
    buyer_vat_number: str = ""
    row_type: str = ""
    amount_sek_ore: int = 0
    exported_amount_sek: int = 0
    review_state: str = ""
    review_reason: str | None = None
    payload: bytes = b""


@dataclass
class FilingPeriod:
    kind: str = ""
    period: str = ""
    bokio_company_id: UUID = NIL_UUID
    deadline_date: datetime | None = None
    first_send_at: datetime | None = None
    last_evaluation_status: str = FilingPeriodStatus.PENDING
    last_evaluated_at: datetime | None = None
    zero_reminder_sent_at: datetime | None = None
    submitted_at: datetime | None = None


@dataclass
class FilingExport:
    id: UUID = NIL_UUID
    kind: str = ""
    period: str = ""
    bokio_company_id: UUID = NIL_UUID
    version: int = 0
    checksum: str = ""
    filename: str | None = None
    content: bytes = b""
    summary: dict[str, Any] = field(default_factory=dict)
    emailed_at: datetime | None = None
    superseded_by: UUID | None = None


def _known_fields(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    names = {item.name for item in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


def _string(value: Any) -> str:
    return "" if value is None else str(value)


def _metadata(value: Any) -> dict[str, str]:
    return {str(key): _string(item) for key, item in (value or {}).items()}


def _address(value: Any) -> Address | None:
    if value is None or isinstance(value, Address):
        return value
    return Address(country=_string(value.get("country")))


def _wrapped_address(value: Any) -> Address | None:
    """Read an object of the form {"address": {...}} as its address."""
    if value is None or isinstance(value, Address):
        return value
    return _address(value.get("address")) or Address()


@dataclass
class Address:
    country: str = ""

    def __post_init__(self) -> None:
        self.country = _string(self.country)


@dataclass
class RefundPayload:
    id: str = ""
    amount: int = 0
    currency: str = ""
    created: int = 0
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = _string(self.id)
        self.currency = _string(self.currency)
        self.amount = int(self.amount or 0)
        self.created = int(self.created or 0)
        self.metadata = _metadata(self.metadata)


def _refunds(value: Any) -> list[RefundPayload]:
    if isinstance(value, Mapping):
        value = value.get("data")
    return [
        item if isinstance(item, RefundPayload) else RefundPayload(**_known_fields(RefundPayload, item))
        for item in value or []
    ]


@dataclass
class ChargePayload:
    id: str = ""
    amount: int = 0
    currency: str = ""
    created: int = 0
    customer: str = ""
    invoice: str = ""
    customer_tax_exempt: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    billing_details: Address = field(default_factory=Address)
    customer_details: Address | None = None
    refunds: list[RefundPayload] = field(default_factory=list)

    def __post_init__(self) -> None:
        for name in ("id", "currency", "customer", "invoice", "customer_tax_exempt"):
            setattr(self, name, _string(getattr(self, name)))
        self.amount = int(self.amount or 0)
        self.created = int(self.created or 0)
        self.metadata = _metadata(self.metadata)
        self.billing_details = _wrapped_address(self.billing_details) or Address()
        self.customer_details = _wrapped_address(self.customer_details)
        self.refunds = _refunds(self.refunds)


@dataclass
class InvoiceTaxID:
    type: str = ""
    value: str = ""

    def __post_init__(self) -> None:
        self.type = _string(self.type)
        self.value = _string(self.value)


@dataclass
class InvoicePayload:
    id: str = ""
    customer: str = ""
    customer_tax_exempt: str = ""
    customer_address: Address | None = None
    customer_shipping: Address | None = None
    customer_tax_ids: list[InvoiceTaxID] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("id", "customer", "customer_tax_exempt"):
            setattr(self, name, _string(getattr(self, name)))
        self.customer_address = _address(self.customer_address)
        self.customer_shipping = _wrapped_address(self.customer_shipping)
        self.customer_tax_ids = [
            item if isinstance(item, InvoiceTaxID) else InvoiceTaxID(**_known_fields(InvoiceTaxID, item))
            for item in self.customer_tax_ids or []
        ]
        self.metadata = _metadata(self.metadata)


@dataclass
class CustomerPayload:
    id: str = ""
    address: Address | None = None
    shipping: Address | None = None
    tax_exempt: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = _string(self.id)
        self.tax_exempt = _string(self.tax_exempt)
        self.address = _address(self.address)
        self.shipping = _wrapped_address(self.shipping)
        self.metadata = _metadata(self.metadata)


@dataclass
class FilingFacts:
    representative: AccountingFact
    market_code: str = ""
    vat_treatment: str = ""
    gross_sek_ore: int = 0
    revenue_sek_ore: int = 0
    vat_sek_ore: int = 0
    source_currency: str = ""
    source_amount: int = 0
    has_source_minor: bool = False
    review_reason: str = ""


@dataclass
class FilingContext:
    tax_case_id: UUID | None = None
    tax_status: str = ""
    reportability_state: str = ""
    group_id: str = ""
    source_object_type: str = ""
    source_object_id: str = ""
    stripe_event_id: str | None = None
    posting_date: datetime | None = None
    original_supply_date: datetime | None = None
    market_code: str = ""
    vat_treatment: str = ""
    sale_category: str = ""
    buyer_vat_number: str = ""
    country: str = ""
    review_reason: str = ""
    amount_sek_ore: int = 0
    revenue_sek_ore: int = 0
    vat_sek_ore: int = 0
    source_currency: str = ""
    source_amount_minor: int = 0
    has_source_amount: bool = False
    sale_type: str = ""
    shipping_evidence: bool = False
    charge: ChargePayload | None = None
    refund: RefundPayload | None = None
    invoice: InvoicePayload | None = None
    customer: CustomerPayload | None = None
    all_metadata: dict[str, str] = field(default_factory=dict)