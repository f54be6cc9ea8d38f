"""Classification, decoding, VAT-rate and filtering helpers for filing entries."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import fields
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar

from booky.models import (
    REPORTABLE,
    AccountingFact,
    ChargePayload,
    CustomerPayload,
    FilingContext,
    FilingKind,
    FilingPeriod,
    InvoicePayload,
    OSSUnionEntry,
    PeriodicSummaryEntry,
    RefundPayload,
    Settings,
)

_Payload = TypeVar("_Payload")


def _kind_text(kind: Any) -> str:
    return getattr(kind, "value", kind)


def _round_half_away(value: float) -> int:
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def is_oss_candidate(ctx: FilingContext) -> bool:
    """An EU B2C sale belongs in the OSS union return."""
    status = ctx.tax_status.strip()
    return status.startswith("EU_") and status.endswith("_B2C")


def is_ps_candidate(ctx: FilingContext) -> bool:
    """An EU B2B sale with a buyer VAT number belongs in the periodic summary."""
    status = ctx.tax_status.strip()
    return status.startswith("EU_") and status.endswith("_B2B") and ctx.buyer_vat_number.strip() != ""


def filing_unsupported_reason(ctx: FilingContext) -> str:
    """Return why a context cannot be filed as is, or an empty string."""
    if ctx.reportability_state != REPORTABLE:
        if ctx.review_reason.strip():
            return ctx.review_reason
        return "tax case is not reportable"
    if is_ps_candidate(ctx) and not ctx.buyer_vat_number.strip():
        return "EU B2B sale is missing buyer VAT ID for periodic summary"
    return ""


def map_ps_sale_type(sale_type: str) -> str:
    return {"GOODS": "goods", "SERVICES": "services"}.get(sale_type, "")


def snapshot_key(object_type: str, object_id: str) -> str:
    return f"{object_type}:{object_id}"


def _decode(cls: type[_Payload], raw: Any, label: str) -> _Payload:
    try:
        data = json.loads(raw)
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise TypeError(f"cannot unmarshal {type(data).__name__} into {label}")
        names = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in names})
    except (ValueError, TypeError, AttributeError) as err:
        raise ValueError(f"decode {label} payload: {err}") from err


def decode_charge(raw: Any) -> ChargePayload:
    return _decode(ChargePayload, raw, "charge")


def decode_refund(raw: Any) -> RefundPayload:
    return _decode(RefundPayload, raw, "refund")


def decode_invoice(raw: Any) -> InvoicePayload:
    return _decode(InvoicePayload, raw, "invoice")


def decode_customer(raw: Any) -> CustomerPayload:
    return _decode(CustomerPayload, raw, "customer")


def normalize_vat_mode(mode: str) -> str:
    """Map the accepted spellings of a VAT mode onto its canonical name."""
    cleaned = mode.strip().lower()
    aliases = {
        "oss": "eu_oss",
        "eu_oss": "eu_oss",
        "eu_b2c": "eu_b2c",
        "eu_b2b": "eu_reverse_charge",
        "eu_reverse_charge": "eu_reverse_charge",
        "reverse_charge": "eu_reverse_charge",
        "ioss": "import_oss",
        "import_oss": "import_oss",
    }
    return aliases.get(cleaned, cleaned)


def vat_rate_basis_points(revenue_sek_ore: int, vat_sek_ore: int) -> int:
    """Derive the VAT rate in basis points from booked revenue and VAT."""
    if revenue_sek_ore == 0 or vat_sek_ore == 0:
        return 0
    return _round_half_away((vat_sek_ore / revenue_sek_ore) * 10000)


def configured_vat_rate_basis_points(settings: Settings, market_code: str) -> int | None:
    """Return the configured VAT rate for a market in basis points, if any."""
    code = market_code.strip().upper()
    if not code:
        return None
    account = settings.sales_by_market.get(code)
    if (
        account is None
        and settings.other_countries_default is not None
        and should_use_other_countries_default(code)
    ):
        account = settings.other_countries_default
    if account is None or account.vat_rate_percent <= 0:
        return None
    return _round_half_away(account.vat_rate_percent * 100)


def should_use_other_countries_default(market_code: str) -> bool:
    if market_code in ("SE", "EU_B2B", "EXPORT"):
        return False
    return len(market_code) == 2


def filing_source_groups(facts: Iterable[AccountingFact]) -> list[str]:
    """Return the sorted, distinct source groups that feed filings."""
    return sorted({fact.source_group_id for fact in facts if is_filing_source_group(fact.source_group_id)})


def is_filing_source_group(source_group_id: str) -> bool:
    return source_group_id.startswith("refund:") or source_group_id.endswith(":sale")


def filter_oss_period_entries(entries: Iterable[OSSUnionEntry], kind: str, period: str) -> list[OSSUnionEntry]:
    if kind != FilingKind.OSS_UNION:
        return []
    return [entry for entry in entries if entry.filing_period == period]


def filter_ps_period_entries(
    entries: Iterable[PeriodicSummaryEntry], kind: str, period: str
) -> list[PeriodicSummaryEntry]:
    if kind != FilingKind.PERIODIC_SUMMARY:
        return []
    return [entry for entry in entries if entry.filing_period == period]


def filter_periods(periods: Iterable[FilingPeriod], kind: str, period: str) -> list[FilingPeriod]:
    return [item for item in periods if item.kind == kind and item.period == period]


def period_key(kind: str, period: str) -> str:
    return f"{_kind_text(kind)}:{period}"