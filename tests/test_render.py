import pytest

from booky.models import (
    FilingsSettings,
    OSSUnionEntry,
    OSSUnionSettings,
    PeriodicSummaryEntry,
    PeriodicSummarySettings,
    ReviewState,
    Settings,
)
from booky.render import (
    compact_quarter_period,
    encode_iso88591,
    format_decimal_basis_points,
    format_decimal_cents,
    oss_quarter_parts,
    ps_amount_field,
    ps_period_code,
    render_oss_union,
    render_periodic_summary,
)


def _settings():
    return Settings(
        filings=FilingsSettings(
            oss_union=OSSUnionSettings(identifier_number="SE556000016701", origin_country="SE"),
            periodic_summary=PeriodicSummarySettings(
                reporting_vat_number="SE556000016701",
                responsible_name="eclean Finance",
                responsible_phone="+4600",
                responsible_email="finance@example.com",
            ),
        )
    )


def test_render_oss_union_includes_corrections():
    rendered = render_oss_union(
        _settings(),
        "2026-Q1",
        [
            OSSUnionEntry(
                origin_identifier="SE",
                consumption_country="DE",
                sale_type="SERVICES",
                vat_rate_basis_points=1900,
                taxable_amount_eur_cents=100050,
                vat_amount_eur_cents=19010,
                review_state=ReviewState.READY,
            ),
            OSSUnionEntry(
                origin_identifier="SE",
                consumption_country="DE",
                sale_type="SERVICES",
                vat_rate_basis_points=1900,
                taxable_amount_eur_cents=-20000,
                vat_amount_eur_cents=-3800,
                correction_target_period="2025-Q4",
                review_state=ReviewState.READY,
            ),
        ],
    )
    got = rendered.content.decode("iso-8859-1")
    assert "OSS_001;\r\nSE556000016701;1;2026;\r\n" in got
    assert "SE;DE;19,00;1000,50;190,10;SERVICES;" in got
    assert "CORRECTIONS\r\n2025Q4;DE;-38,00;" in got
    assert rendered.filename == "oss-union-2026-Q1.txt"
    assert got.endswith("\r\n")


def test_render_oss_union_skips_review_entries_and_rejects_bad_period():
    rendered = render_oss_union(
        _settings(),
        "2026-Q2",
        [OSSUnionEntry(consumption_country="DE", taxable_amount_eur_cents=100, review_state=ReviewState.REVIEW)],
    )
    assert rendered.content == b"OSS_001;\r\nSE556000016701;2;2026;\r\n"
    with pytest.raises(ValueError, match="invalid quarter period"):
        render_oss_union(_settings(), "2026-05", [])


def test_render_periodic_summary_groups_buyer_rows():
    rendered = render_periodic_summary(
        _settings(),
        "2026-03",
        [
            PeriodicSummaryEntry(
                buyer_vat_number="DE123456789",
                row_type="goods",
                exported_amount_sek=2500,
                review_state=ReviewState.READY,
            ),
            PeriodicSummaryEntry(
                buyer_vat_number="DE123456789",
                row_type="services",
                exported_amount_sek=-300,
                review_state=ReviewState.READY,
            ),
        ],
    )
    got = rendered.content.decode("iso-8859-1")
    assert "SKV574008;\r\nSE556000016701;2603;eclean Finance;+4600;finance@example.com\r\n" in got
    assert "DE123456789;2500;;-300;" in got
    assert rendered.filename == "periodisk-sammanstallning-2026-03.txt"


def test_render_periodic_summary_omits_buyers_without_known_rows():
    rendered = render_periodic_summary(
        _settings(),
        "2026-03",
        [PeriodicSummaryEntry(buyer_vat_number="FR1", row_type="", review_state=ReviewState.READY)],
    )
    assert b"FR1" not in rendered.content


def test_format_helpers():
    assert format_decimal_basis_points(1900) == "19,00"
    assert format_decimal_cents(100050) == "1000,50"
    assert format_decimal_cents(-3800) == "-38,00"
    assert compact_quarter_period("2025-Q4") == "2025Q4"
    assert compact_quarter_period("bogus") == "bogus"
    assert ps_period_code("2026-03") == "2603"
    assert ps_period_code("2026-3") == "2026-3"
    assert ps_amount_field(2500, True) == "2500"
    assert ps_amount_field(2500, False) == ""
    assert oss_quarter_parts("2026-Q1") == (2026, 1)


def test_encode_iso88591_rejects_characters_outside_latin1():
    assert encode_iso88591("Sammanställning") == "Sammanställning".encode("latin-1")
    with pytest.raises(ValueError, match="encode ISO-8859-1"):
        encode_iso88591("€")