import re
from dataclasses import dataclass
from datetime import date
from typing import Optional, Union

from errors import ValidationFailed

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_DAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_bounds(value: date) -> tuple[date, date]:
    first = value.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return first, next_month - date.resolution


def normalize_month_period(value: Union[str, date]) -> date:
    """Return the first day of the calendar month named by ``value``.

    Accepts a ``date`` or a ``YYYY-MM`` / ``YYYY-MM-DD`` string.
    """
    if isinstance(value, date):
        return value.replace(day=1)
    raw = (value or "").strip()
    match = _MONTH_RE.match(raw) or _DAY_RE.match(raw)
    if not match:
        raise ValidationFailed(
            f"Invalid period {value!r}: expected YYYY-MM or YYYY-MM-DD"
        )
    year, month = int(match.group(1)), int(match.group(2))
    day = int(match.group(3)) if match.lastindex == 3 else 1
    try:
        date(year, month, day)
    except ValueError as exc:
        raise ValidationFailed(f"Invalid period {value!r}: {exc}") from exc
    return date(year, month, 1)


def month_period(value: Union[str, date]) -> Period:
    start = normalize_month_period(value)
    _, end = month_bounds(start)
    return Period(start.strftime("%Y-%m"), start, end)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        return Period("last_month", last_month_end.replace(day=1), last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValidationFailed("Custom period requires start and end dates")
        try:
            start_date = date.fromisoformat(start)
            end_date = date.fromisoformat(end)
        except ValueError as exc:
            raise ValidationFailed(f"Invalid date: {exc}") from exc
        if start_date > end_date:
            raise ValidationFailed("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period == "this_month":
        first, last = month_bounds(today)
        return Period("this_month", first, last)
    return month_period(period)
