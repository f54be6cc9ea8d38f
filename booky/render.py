"""Rendering of OSS union returns and periodic summaries to Skatteverket file formats."""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass

from booky.models import OSSUnionEntry, PeriodicSummaryEntry, ReviewState, Settings

_QUARTER = re.compile(r"(\d{1,4})-Q([+-]?\d+)")


@dataclass(frozen=True)
class RenderedFile:
    filename: str
    content: bytes


def render_oss_union(settings: Settings, period: str, entries: Iterable[OSSUnionEntry]) -> RenderedFile:
    """Render the OSS union return for a quarter from its ready entries."""
    main_lines: dict[tuple[str, str, int, str], list[int]] = defaultdict(lambda: [0, 0])
    corrections: dict[tuple[str, str], int] = defaultdict(int)
    for entry in entries:
        if entry.review_state != ReviewState.READY:
            continue
        if entry.correction_target_period is not None:
            corrections[(entry.correction_target_period, entry.consumption_country)] += entry.vat_amount_eur_cents
            continue
        line = main_lines[
            (entry.origin_identifier, entry.consumption_country, entry.vat_rate_basis_points, entry.sale_type)
        ]
        line[0] += entry.taxable_amount_eur_cents
        line[1] += entry.vat_amount_eur_cents

    year, quarter = oss_quarter_parts(period)
    rows = [
        "OSS_001;",
        f"{settings.filings.oss_union.identifier_number.strip()};{quarter};{year:04d};",
    ]
    for (origin, country, rate, sale_type), (taxable, vat) in sorted(main_lines.items()):
        if taxable == 0 and vat == 0:
            continue
        rows.append(
            f"{origin};{country};{format_decimal_basis_points(rate)};"
            f"{format_decimal_cents(taxable)};{format_decimal_cents(vat)};{sale_type};"
        )
    if corrections:
        rows.append("CORRECTIONS")
        for (target, country), amount in sorted(corrections.items()):
            if amount == 0:
                continue
            rows.append(f"{compact_quarter_period(target)};{country};{format_decimal_cents(amount)};")

    return RenderedFile(
        filename=f"oss-union-{period}.txt",
        content=encode_iso88591("\r\n".join(rows) + "\r\n"),
    )


def render_periodic_summary(
    settings: Settings, period: str, entries: Iterable[PeriodicSummaryEntry]
) -> RenderedFile:
    """Render the monthly periodic summary, one row per buyer VAT number."""
    goods: dict[str, int] = defaultdict(int)
    services: dict[str, int] = defaultdict(int)
    buyers: set[str] = set()
    for entry in entries:
        if entry.review_state != ReviewState.READY:
            continue
        buyers.add(entry.buyer_vat_number)
        if entry.row_type == "goods":
            goods[entry.buyer_vat_number] += entry.exported_amount_sek
        elif entry.row_type == "services":
            services[entry.buyer_vat_number] += entry.exported_amount_sek

    ps = settings.filings.periodic_summary
    rows = [
        "SKV574008;",
        ";".join(
            [
                ps.reporting_vat_number.strip(),
                ps_period_code(period),
                ps.responsible_name.strip(),
                ps.responsible_phone.strip(),
                ps.responsible_email.strip(),
            ]
        ),
    ]
    for buyer in sorted(buyers):
        has_goods, has_services = buyer in goods, buyer in services
        if not has_goods and not has_services:
            continue
        rows.append(
            f"{buyer};{ps_amount_field(goods.get(buyer, 0), has_goods)};;"
            f"{ps_amount_field(services.get(buyer, 0), has_services)};"
        )

    return RenderedFile(
        filename=f"periodisk-sammanstallning-{period}.txt",
        content=encode_iso88591("\r\n".join(rows) + "\r\n"),
    )


def oss_quarter_parts(period: str) -> tuple[int, int]:
    """Split a period such as 2026-Q1 into (year, quarter)."""
    match = _QUARTER.match(period)
    if match is None:
        raise ValueError(f"invalid quarter period {period!r}")
    year, quarter = int(match.group(1)), int(match.group(2))
    if not 1 <= quarter <= 4:
        raise ValueError(f"invalid quarter period {period!r}")
    return year, quarter


def compact_quarter_period(period: str) -> str:
    try:
        year, quarter = oss_quarter_parts(period)
    except ValueError:
        return period
    return f"{year:04d}Q{quarter}"


def ps_period_code(period: str) -> str:
    if len(period) != len("2006-01"):
        return period
    return period[2:4] + period[5:7]


def format_decimal_basis_points(bps: int) -> str:
    return f"{bps / 100.0:.2f}".replace(".", ",")


def format_decimal_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, rest = divmod(abs(cents), 100)
    return f"{sign}{whole},{rest:02d}"


def ps_amount_field(value: int, present: bool) -> str:
    return str(value) if present else ""


def encode_iso88591(text: str) -> bytes:
    try:
        return text.encode("iso-8859-1")
    except UnicodeEncodeError as err:
        raise ValueError(f"encode ISO-8859-1: {err}") from err