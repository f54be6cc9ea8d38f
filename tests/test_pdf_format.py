from types import SimpleNamespace

import pytest

from booky.pdf_format import (
    currency_exponent,
    format_minor_amount,
    format_sek,
    format_summary_value,
    source_amount_label,
    source_object_label,
    summary_string,
)


def make_fact(object_type="charge", object_id="ch_123", currency="EUR", amount=1200):
    return SimpleNamespace(
        source_object_type=object_type,
        source_object_id=object_id,
        source_currency=currency,
        source_amount_minor=amount,
    )


def test_format_summary_value_for_ore_keys():
    assert format_summary_value("amount_ore", 1234) == "12.34 SEK"
    assert format_summary_value("rounding_amount_ore", 0) == "0.00 SEK"
    assert format_summary_value("amount_ore", 1234.9) == "12.34 SEK"


def test_format_summary_value_for_other_keys():
    assert format_summary_value("fact_count", 12) == "12"
    assert format_summary_value("journal_checksum", "checksum") == "checksum"
    assert format_summary_value("balanced", True) == "true"
    assert format_summary_value("ratio", 0.5) == "0.5"
    assert format_summary_value("ratio", 2.0) == "2"


def test_summary_string():
    assert summary_string(None, "journal_checksum") == ""
    assert summary_string({}, "journal_checksum") == ""
    assert summary_string({"journal_checksum": "checksum"}, "journal_checksum") == "checksum"
    assert summary_string({"missing": None}, "missing") == "<nil>"


def test_source_object_label():
    assert source_object_label(make_fact()) == "charge:ch_123"
    assert source_object_label(make_fact(object_type="")) == "ch_123"
    assert source_object_label(make_fact(object_id="")) == "charge"
    assert source_object_label(make_fact(object_type="", object_id="")) == ""


def test_source_amount_label():
    assert source_amount_label(make_fact()) == "12.00 EUR"
    assert source_amount_label(make_fact(amount=None)) == "EUR"
    assert source_amount_label(make_fact(currency=None)) == "1200"
    assert source_amount_label(make_fact(currency=None, amount=None)) == ""
    assert source_amount_label(make_fact(currency="JPY", amount=500)) == "500 JPY"


@pytest.mark.parametrize(
    ("amount", "currency", "expected"),
    [(230, "SEK", "2.30"), (100, "JPY", "100"), (-150, "EUR", "-1.50"), (5, "krw", "5")],
)
def test_format_minor_amount(amount, currency, expected):
    assert format_minor_amount(amount, currency) == expected


def test_currency_exponent():
    assert currency_exponent("JPY") == 0
    assert currency_exponent(" vnd ") == 0
    assert currency_exponent("SEK") == 2


def test_format_sek():
    assert format_sek(1234) == "12.34"
    assert format_sek(0) == "0.00"
    assert format_sek(-5) == "-0.05"