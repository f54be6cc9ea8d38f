"""Building OSS union and periodic summary entries from accounting facts."""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Protocol
from uuid import UUID, uuid4

from booky.helpers import (
    configured_vat_rate_basis_points,
    decode_charge,
    decode_refund,
    filing_unsupported_reason,
    is_filing_source_group,
    is_oss_candidate,
    is_ps_candidate,
    map_ps_sale_type,
    period_key,
    vat_rate_basis_points,
)
from booky.models import (
    AccountingFact,
    FilingContext,
    FilingFacts,
    FilingKind,
    FilingPeriod,
    FilingPeriodStatus,
    NotFoundError,
    OSSUnionEntry,
    PeriodicSummaryEntry,
    ReviewState,
    Settings,
    TaxCase,
)
from booky.periods import filing_deadline, filing_first_send_at, month_period, quarter_period

_RECEIVABLE_FACTS = {"sale_receivable", "sale_review_receivable", "refund_receivable", "refund_review_receivable"}
_REVENUE_FACTS = {"sale_revenue", "refund_revenue"}
_VAT_FACTS = {"sale_output_vat", "refund_output_vat"}


class EntrySource(Protocol):
    """Where tax cases referenced by accounting facts are looked up."""

    def tax_case(self, tax_case_id: UUID) -> TaxCase:
        """Return the tax case or raise NotFoundError."""


class MemorySource:
    """Tax cases held in memory, as delivered with a webhook."""

    def __init__(self, tax_cases: Iterable[TaxCase]) -> None:
        self._tax_cases = {case.id: case for case in tax_cases}

    def tax_case(self, tax_case_id: UUID) -> TaxCase:
        try:
            return self._tax_cases[tax_case_id]
        except KeyError:
            raise NotFoundError(f"tax case {tax_case_id} not found") from None


class RepositorySource:
    """Tax cases read from a repository offering get_tax_case(tax_case_id)."""

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    def tax_case(self, tax_case_id: UUID) -> TaxCase:
        return self._repository.get_tax_case(tax_case_id)


def _location(settings: Settings) -> tzinfo:
    try:
        return settings.location()
    except ValueError:
        return timezone.utc


def _kind_text(kind: Any) -> str:
    return getattr(kind, "value", kind)


def _review(reason: str) -> tuple[str, str | None]:
    reason = reason.strip()
    if reason:
        return ReviewState.REVIEW.value, reason
    return ReviewState.READY.value, None


class EntryBuilder:
    """Turns grouped accounting facts into filing entries and periods."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def build_entries(
        self, facts: Iterable[AccountingFact], source: EntrySource
    ) -> tuple[list[OSSUnionEntry], list[PeriodicSummaryEntry], list[FilingPeriod]]:
        """Build OSS and periodic summary entries plus the periods they touch."""
        grouped: dict[str, list[AccountingFact]] = defaultdict(list)
        for fact in facts:
            if is_filing_source_group(fact.source_group_id):
                grouped[fact.source_group_id].append(fact)

        oss_entries: list[OSSUnionEntry] = []
        ps_entries: list[PeriodicSummaryEntry] = []
        periods: dict[str, FilingPeriod] = {}
        for group_id in sorted(grouped):
            ctx = self.build_group_context(grouped[group_id], source)
            if ctx is None:
                continue
            if is_oss_candidate(ctx):
                oss = self.build_oss_union_entry(ctx)
                oss_entries.append(oss)
                periods[period_key(FilingKind.OSS_UNION, oss.filing_period)] = self.period_for_kind(
                    FilingKind.OSS_UNION, oss.filing_period
                )
            if is_ps_candidate(ctx):
                ps = self.build_periodic_summary_entry(ctx)
                ps_entries.append(ps)
                periods[period_key(FilingKind.PERIODIC_SUMMARY, ps.filing_period)] = self.period_for_kind(
                    FilingKind.PERIODIC_SUMMARY, ps.filing_period
                )

        ordered = sorted(periods.values(), key=lambda item: (_kind_text(item.kind), item.period))
        return oss_entries, ps_entries, ordered

    def build_group_context(self, facts: Iterable[AccountingFact], source: EntrySource) -> FilingContext | None:
        """Collect the facts of one source group and its tax case into a context."""
        ordered = sorted(facts, key=lambda fact: (fact.fact_type, fact.created_at))
        if not ordered:
            return None

        summary = summarize_facts(ordered)
        rep = summary.representative
        ctx = FilingContext(
            tax_case_id=rep.tax_case_id,
            group_id=rep.source_group_id,
            source_object_type=rep.source_object_type,
            source_object_id=rep.source_object_id,
            stripe_event_id=rep.stripe_event_id,
            posting_date=rep.posting_date,
            original_supply_date=rep.posting_date,
            market_code=summary.market_code,
            vat_treatment=summary.vat_treatment,
            revenue_sek_ore=summary.revenue_sek_ore,
            vat_sek_ore=summary.vat_sek_ore,
            source_currency=summary.source_currency,
            source_amount_minor=summary.source_amount,
            has_source_amount=summary.has_source_minor,
            review_reason=summary.review_reason,
        )

        if rep.tax_case_id is None:
            ctx.review_reason = "accounting facts are missing tax_case_id"
            return ctx
        try:
            tax_case = source.tax_case(rep.tax_case_id)
        except NotFoundError:
            ctx.review_reason = "tax case is missing"
            return ctx

        ctx.tax_status = (tax_case.tax_status or "").strip()
        ctx.reportability_state = tax_case.reportability_state
        ctx.sale_type = (tax_case.sale_type or "").strip()
        ctx.country = (tax_case.country or "").strip()
        ctx.buyer_vat_number = (tax_case.buyer_vat_number or "").strip()
        ctx.amount_sek_ore = summary.gross_sek_ore
        if tax_case.source_currency is not None:
            ctx.source_currency = tax_case.source_currency.strip().upper()
        if tax_case.source_amount_minor is not None:
            ctx.source_amount_minor = tax_case.source_amount_minor
            ctx.has_source_amount = True

        if not ctx.review_reason:
            if rep.source_object_type == "charge":
                try:
                    charge = decode_charge(rep.payload)
                except ValueError:
                    charge = None
                if charge is not None and charge.created > 0:
                    ctx.original_supply_date = datetime.fromtimestamp(charge.created, tz=_location(self.settings))
            elif rep.source_object_type == "refund":
                try:
                    refund = decode_refund(rep.payload)
                except ValueError:
                    refund = None
                if refund is not None:
                    ctx.source_currency = refund.currency.upper()
                    ctx.source_amount_minor = -refund.amount
                    ctx.has_source_amount = True
            if ctx.original_supply_date is None:
                ctx.original_supply_date = rep.posting_date
            reason = filing_unsupported_reason(ctx)
            if reason:
                ctx.review_reason = reason

        if rep.source_object_type == "refund":
            ctx.amount_sek_ore = -summary.gross_sek_ore
            ctx.revenue_sek_ore = -summary.revenue_sek_ore
            ctx.vat_sek_ore = -summary.vat_sek_ore
        return ctx

    def build_oss_union_entry(self, ctx: FilingContext) -> OSSUnionEntry:
        """Build the OSS union entry for one EU B2C context."""
        filing = quarter_period(ctx.posting_date or datetime.min)
        original = quarter_period(ctx.original_supply_date or datetime.min)
        review_state, review_reason = _review(ctx.review_reason)
        origin = self.settings.filings.oss_union.origin_country.strip().upper()

        entry = OSSUnionEntry(
            id=uuid4(),
            bokio_company_id=self.settings.company_id,
            tax_case_id=ctx.tax_case_id,
            source_group_id=ctx.group_id,
            source_object_type=ctx.source_object_type,
            source_object_id=ctx.source_object_id,
            stripe_event_id=ctx.stripe_event_id,
            original_supply_period=original,
            filing_period=filing,
            consumption_country=ctx.country.strip().upper(),
            origin_country=origin,
            origin_identifier=origin,
            sale_type=ctx.sale_type,
            review_state=review_state,
            review_reason=review_reason,
        )
        configured = configured_vat_rate_basis_points(self.settings, entry.consumption_country)
        entry.vat_rate_basis_points = (
            configured if configured is not None else vat_rate_basis_points(ctx.revenue_sek_ore, ctx.vat_sek_ore)
        )
        if review_state == ReviewState.READY:
            entry.taxable_amount_eur_cents = ctx.revenue_sek_ore
            entry.vat_amount_eur_cents = ctx.vat_sek_ore
        if ctx.source_object_type == "refund" and filing != original:
            entry.correction_target_period = original
        entry.payload = build_entry_payload(ctx)
        if review_state == ReviewState.READY and not (
            can_encode_latin1(entry.origin_identifier) and can_encode_latin1(entry.consumption_country)
        ):
            entry.review_state = ReviewState.REVIEW.value
            entry.review_reason = "OSS entry contains characters outside ISO-8859-1"
            entry.taxable_amount_eur_cents = 0
            entry.vat_amount_eur_cents = 0
        return entry

    def build_periodic_summary_entry(self, ctx: FilingContext) -> PeriodicSummaryEntry:
        """Build the periodic summary entry for one EU B2B context."""
        filing = month_period(ctx.posting_date or datetime.min)
        review_state, review_reason = _review(ctx.review_reason)

        row_type = map_ps_sale_type(ctx.sale_type)
        if not row_type:
            review_state = ReviewState.REVIEW.value
            review_reason = "periodic summary row type could not be resolved"

        amount = ctx.amount_sek_ore
        if review_state == ReviewState.READY and amount == 0:
            review_state = ReviewState.REVIEW.value
            review_reason = "periodic summary entry is missing settled SEK amount"
        if review_state == ReviewState.REVIEW:
            amount = 0

        entry = PeriodicSummaryEntry(
            id=uuid4(),
            bokio_company_id=self.settings.company_id,
            tax_case_id=ctx.tax_case_id,
            source_group_id=ctx.group_id,
            source_object_type=ctx.source_object_type,
            source_object_id=ctx.source_object_id,
            stripe_event_id=ctx.stripe_event_id,
            filing_period=filing,
            buyer_vat_number=ctx.buyer_vat_number.strip().upper(),
            row_type=row_type,
            amount_sek_ore=amount,
            exported_amount_sek=ore_to_whole_sek(amount),
            review_state=review_state,
            review_reason=review_reason,
            payload=build_entry_payload(ctx),
        )
        if review_state == ReviewState.READY and not can_encode_latin1(entry.buyer_vat_number):
            entry.review_state = ReviewState.REVIEW.value
            entry.review_reason = "periodic summary buyer VAT number contains characters outside ISO-8859-1"
            entry.amount_sek_ore = 0
            entry.exported_amount_sek = 0
        return entry

    def period_for_kind(self, kind: str, period: str) -> FilingPeriod:
        """Return a pending filing period with its deadline and first send time."""
        loc = _location(self.settings)
        try:
            deadline = filing_deadline(kind, period, loc)
        except ValueError:
            deadline = None
        try:
            first_send_at = filing_first_send_at(kind, period, self.settings)
        except ValueError:
            first_send_at = None
        return FilingPeriod(
            kind=_kind_text(kind),
            period=period,
            bokio_company_id=self.settings.company_id,
            deadline_date=deadline,
            first_send_at=first_send_at,
            last_evaluation_status=FilingPeriodStatus.PENDING.value,
        )


def summarize_facts(facts: list[AccountingFact]) -> FilingFacts:
    """Fold the facts of one group into amounts and first-seen attributes."""
    if not facts:
        raise ValueError("cannot summarize an empty fact group")
    out = FilingFacts(representative=facts[0])
    for fact in facts:
        if not out.market_code and fact.market_code is not None:
            out.market_code = fact.market_code.strip()
        if not out.vat_treatment and fact.vat_treatment is not None:
            out.vat_treatment = fact.vat_treatment.strip()
        if not out.source_currency and fact.source_currency is not None:
            out.source_currency = fact.source_currency.strip().upper()
        if not out.has_source_minor and fact.source_amount_minor is not None:
            out.source_amount = fact.source_amount_minor
            out.has_source_minor = True
        if not out.review_reason and fact.review_reason is not None and fact.review_reason.strip():
            out.review_reason = fact.review_reason.strip()

        if fact.fact_type in _RECEIVABLE_FACTS:
            out.gross_sek_ore = fact.amount_sek_ore
        elif fact.fact_type in _REVENUE_FACTS:
            out.revenue_sek_ore = fact.amount_sek_ore
        elif fact.fact_type in _VAT_FACTS:
            out.vat_sek_ore = fact.amount_sek_ore
    return out


def _timestamp(moment: datetime | None) -> str:
    """Format a time as RFC 3339 with trimmed fractional seconds."""
    if moment is None:
        return "0001-01-01T00:00:00Z"
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if moment.microsecond:
        text += f".{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    if not offset:
        return text + "Z"
    sign = "+" if offset >= timedelta(0) else "-"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return str(value)


def build_entry_payload(ctx: FilingContext) -> bytes:
    """Serialise the evidence behind an entry as compact, key-sorted JSON."""
    payload = {
        "tax_case_id": str(ctx.tax_case_id) if ctx.tax_case_id is not None else None,
        "tax_status": ctx.tax_status,
        "reportability_state": ctx.reportability_state,
        "source_group_id": ctx.group_id,
        "source_object_type": ctx.source_object_type,
        "source_object_id": ctx.source_object_id,
        "market_code": ctx.market_code,
        "vat_treatment": ctx.vat_treatment,
        "sale_category": ctx.sale_category,
        "buyer_vat_number": ctx.buyer_vat_number,
        "country": ctx.country,
        "review_reason": ctx.review_reason,
        "source_currency": ctx.source_currency,
        "source_amount_minor": ctx.source_amount_minor,
        "amount_sek_ore": ctx.amount_sek_ore,
        "revenue_sek_ore": ctx.revenue_sek_ore,
        "vat_sek_ore": ctx.vat_sek_ore,
        "sale_type": ctx.sale_type,
        "shipping_evidence": ctx.shipping_evidence,
        "original_supply_date": _timestamp(ctx.original_supply_date),
        "filing_posting_date": _timestamp(ctx.posting_date),
    }
    try:
        text = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_plain)
    except (TypeError, ValueError) as err:
        raise ValueError(f"marshal filing payload: {err}") from err
    for char, escaped in (("<", "\\u003c"), (">", "\\u003e"), ("&", "\\u0026"), ("\u2028", "\\u2028"), ("\u2029", "\\u2029")):
        text = text.replace(char, escaped)
    return text.encode("utf-8")


def ore_to_whole_sek(amount: int) -> int:
    """Round öre to whole kronor, halves away from zero."""
    if amount >= 0:
        return (amount + 50) // 100
    return -((-amount + 50) // 100)


def can_encode_latin1(value: str) -> bool:
    if not value.strip():
        return True
    try:
        value.encode("iso-8859-1")
    except UnicodeEncodeError:
        return False
    return True