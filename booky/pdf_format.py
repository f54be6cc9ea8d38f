"""Text formatting helpers for journal draft reports."""

from __future__ import annotations

import math
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

_ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    number = Decimal(repr(value))
    exponent = number.adjusted() if number else 0
    if -4 <= exponent < 21:
        text = format(number, "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text
    mantissa, _, power = format(number.normalize(), "e").partition("e")
    sign, digits = power[0], power[1:]
    return f"{mantissa}e{sign}{digits.zfill(2)}"


def _display(value: Any) -> str:
    """Format a value the way the report's generic value rendering does."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, Mapping):
        items = " ".join(f"{_display(key)}:{_display(value[key])}" for key in sorted(value, key=str))
        return f"map[{items}]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_display(item) for item in value) + "]"
    return str(value)


def format_sek(ore: int) -> str:
    return f"{ore / 100.0:.2f}"


def format_summary_value(key: str, value: Any) -> str:
    """Show öre amounts (keys ending in _ore) as SEK, anything else as is."""
    if key.endswith("_ore") and isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"{format_sek(int(value))} SEK"
    return _display(value)


def summary_string(summary: Mapping[str, Any] | None, key: str) -> str:
    if summary is None or key not in summary:
        return ""
    return _display(summary[key])


def source_object_label(fact: Any) -> str:
    object_type = fact.source_object_type or ""
    object_id = fact.source_object_id or ""
    if not object_type:
        return object_id
    if not object_id:
        return object_type
    return f"{object_type}:{object_id}"


def source_amount_label(fact: Any) -> str:
    amount = fact.source_amount_minor
    currency = fact.source_currency or ""
    if amount is None:
        return currency
    if not currency:
        return str(amount)
    return f"{format_minor_amount(amount, currency)} {currency}"


def format_minor_amount(amount_minor: int, currency: str) -> str:
    """Format an amount in minor units with the currency's number of decimals."""
    exponent = currency_exponent(currency)
    return f"{amount_minor / 10**exponent:.{exponent}f}"


def currency_exponent(currency: str) -> int:
    """Number of decimals the currency uses for its minor unit."""
    code = currency.strip().upper()
    if code in _ZERO_DECIMAL_CURRENCIES:
        return 0
    return 2