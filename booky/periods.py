"""Filing period arithmetic: period codes, bounds, deadlines and send times."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone, tzinfo

from booky.models import FilingKind, Settings

_QUARTER = re.compile(r"(\d{1,4})-Q([+-]?\d+)")
_MONTH = re.compile(r"(\d{4})-(\d{2})")


def _location_or_utc(settings: Settings) -> tzinfo:
    try:
        return settings.location()
    except ValueError:
        return timezone.utc


def _kind_text(kind: object) -> str:
    return getattr(kind, "value", kind)


def _add_months(moment: datetime, months: int, days: int = 0) -> datetime:
    """Shift by calendar months then days, normalising overflowing days forward."""
    index = moment.year * 12 + (moment.month - 1) + months
    year, month0 = divmod(index, 12)
    first = moment.replace(year=year, month=month0 + 1, day=1)
    return first + timedelta(days=moment.day - 1 + days)


def filing_deadline(kind: str, period: str, tz: tzinfo) -> datetime:
    """Return the filing deadline for a period of the given kind."""
    if kind == FilingKind.OSS_UNION:
        next_quarter = _add_months(quarter_start(period, tz), 3)
        return datetime(next_quarter.year, next_quarter.month, 30, tzinfo=tz)
    if kind == FilingKind.PERIODIC_SUMMARY:
        next_month = _add_months(month_period_start(period, tz), 1)
        return datetime(next_month.year, next_month.month, 25, tzinfo=tz)
    raise ValueError(f"unsupported filing kind {_kind_text(kind)!r}")


def filing_first_send_at(kind: str, period: str, settings: Settings) -> datetime:
    """Return when the first draft for a period should be sent."""
    loc = _location_or_utc(settings)
    deadline = filing_deadline(kind, period, loc)
    hour, minute = settings.filings_send_hour_minute()
    send_date = deadline - timedelta(days=settings.filings.lead_time_days)
    return datetime(send_date.year, send_date.month, send_date.day, hour, minute, tzinfo=loc)


def month_period(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def quarter_period(moment: datetime) -> str:
    quarter = (moment.month - 1) // 3 + 1
    return f"{moment.year:04d}-Q{quarter}"


def quarter_start(period: str, tz: tzinfo) -> datetime:
    match = _QUARTER.match(period)
    if match is None:
        raise ValueError(f"invalid quarter period {period!r}")
    year, quarter = int(match.group(1)), int(match.group(2))
    if not 1 <= quarter <= 4 or year < 1:
        raise ValueError(f"invalid quarter period {period!r}")
    return datetime(year, (quarter - 1) * 3 + 1, 1, tzinfo=tz)


def quarter_period_end(period: str, tz: tzinfo) -> datetime:
    return _add_months(quarter_start(period, tz), 3, -1)


def month_period_start(period: str, tz: tzinfo) -> datetime:
    match = _MONTH.fullmatch(period)
    if match is None:
        raise ValueError(f"invalid month period {period!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12 or year < 1:
        raise ValueError(f"invalid month period {period!r}: month out of range")
    return datetime(year, month, 1, tzinfo=tz)


def monthly_bounds(period: str, tz: tzinfo) -> tuple[datetime, datetime]:
    start = month_period_start(period, tz)
    return start, _add_months(start, 1, -1)


def period_date_range(kind: str, period: str, settings: Settings) -> tuple[datetime, datetime]:
    """Return the first and last day covered by a filing period."""
    loc = _location_or_utc(settings)
    if kind == FilingKind.OSS_UNION:
        start = quarter_start(period, loc)
        return start, _add_months(start, 3, -1)
    if kind == FilingKind.PERIODIC_SUMMARY:
        return monthly_bounds(period, loc)
    raise ValueError(f"unsupported filing kind {_kind_text(kind)!r}")


def completed_quarter_periods(now: datetime, count: int) -> list[str]:
    """Return the most recent completed quarters, newest first."""
    periods = []
    cursor = _add_months(start_of_quarter(now), -3)
    while len(periods) < count:
        periods.append(quarter_period(cursor))
        cursor = _add_months(cursor, -3)
    return periods


def start_of_quarter(moment: datetime) -> datetime:
    month = (moment.month - 1) // 3 * 3 + 1
    return datetime(moment.year, month, 1, tzinfo=moment.tzinfo)