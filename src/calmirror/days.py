"""Day counts relative to calendar periods, for sizing the sync window.

``start_of_*`` helpers return how many days lie between the start of the
period and now (use them as ``past_days``); ``end_of_*`` helpers return how
many days lie between now and the end of the period (use them as
``next_days``). Weeks start on Monday. ``offset`` moves the boundary by whole
periods away from now.
"""

import math
import re
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Optional, Union

from dateutil.relativedelta import relativedelta

ONE_MICROSECOND = timedelta(microseconds=1)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now()


def _midnight(day: date, like: datetime) -> datetime:
    return datetime.combine(day, time(), tzinfo=like.tzinfo)


def past_days(moment: datetime, now: Optional[datetime] = None) -> int:
    """Whole days from ``moment`` until now."""
    seconds = (_now(now) - moment).total_seconds()
    return max(0, math.floor(seconds / 86400))


def next_days(moment: datetime, now: Optional[datetime] = None) -> int:
    """Whole days from now until ``moment``."""
    seconds = (moment - _now(now)).total_seconds()
    return max(0, math.floor(seconds / 86400))


def _first_of_month(now: datetime) -> datetime:
    return _midnight(now.date().replace(day=1), now)


def _end_of_month(first_of_month: datetime) -> datetime:
    return first_of_month + relativedelta(months=1) - ONE_MICROSECOND


def start_of_week(offset: int = 0, now: Optional[datetime] = None) -> int:
    now = _now(now)
    monday = _midnight(now.date() - timedelta(days=now.weekday()), now)
    return past_days(monday - timedelta(weeks=offset), now)


def end_of_week(offset: int = 0, now: Optional[datetime] = None) -> int:
    now = _now(now)
    next_monday = _midnight(now.date() + timedelta(days=7 - now.weekday()), now)
    return next_days(next_monday + timedelta(weeks=offset) - ONE_MICROSECOND, now)


def start_of_month(offset: int = 0, now: Optional[datetime] = None) -> int:
    now = _now(now)
    return past_days(_first_of_month(now) - relativedelta(months=offset), now)


def end_of_month(offset: int = 0, now: Optional[datetime] = None) -> int:
    now = _now(now)
    return next_days(_end_of_month(_first_of_month(now) + relativedelta(months=offset)), now)


def _start_of_period(months: int, offset: int, now: datetime) -> int:
    back = (now.month - 1) % months
    return past_days(_first_of_month(now) - relativedelta(months=back + offset * months), now)


def _end_of_period(months: int, offset: int, now: datetime) -> int:
    ahead = math.ceil(now.month / months) * months - now.month
    last_month = _first_of_month(now) + relativedelta(months=ahead + offset * months)
    return next_days(_end_of_month(last_month), now)


def start_of_quarter(offset: int = 0, now: Optional[datetime] = None) -> int:
    return _start_of_period(3, offset, _now(now))


def end_of_quarter(offset: int = 0, now: Optional[datetime] = None) -> int:
    return _end_of_period(3, offset, _now(now))


def start_of_halfyear(offset: int = 0, now: Optional[datetime] = None) -> int:
    return _start_of_period(6, offset, _now(now))


def end_of_halfyear(offset: int = 0, now: Optional[datetime] = None) -> int:
    return _end_of_period(6, offset, _now(now))


def start_of_year(offset: int = 0, now: Optional[datetime] = None) -> int:
    return _start_of_period(12, offset, _now(now))


def end_of_year(offset: int = 0, now: Optional[datetime] = None) -> int:
    return _end_of_period(12, offset, _now(now))


HELPERS: Dict[str, Callable[..., int]] = {
    'start_of_week': start_of_week,
    'end_of_week': end_of_week,
    'start_of_month': start_of_month,
    'end_of_month': end_of_month,
    'start_of_quarter': start_of_quarter,
    'end_of_quarter': end_of_quarter,
    'start_of_halfyear': start_of_halfyear,
    'end_of_halfyear': end_of_halfyear,
    'start_of_year': start_of_year,
    'end_of_year': end_of_year,
}

_EXPRESSION = re.compile(r"^\s*([a-z_]+)\s*(?:\+\s*(\d+))?\s*$")


def resolve_days(value: Union[int, str], now: Optional[datetime] = None) -> int:
    """Turn a day count or an expression like ``end_of_quarter+1`` into days.

    Raises:
        ValueError: If the value is negative or not a known expression
    """
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Day count must not be negative: {value}")
        return value
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    match = _EXPRESSION.match(text)
    if not match or match.group(1) not in HELPERS:
        raise ValueError(
            f"Unknown day expression '{value}'; use a number or one of {sorted(HELPERS)} with an optional +N"
        )
    return HELPERS[match.group(1)](int(match.group(2) or 0), now)


def validate_days(value: Union[int, str]) -> Union[int, str]:
    """Check a configured day value without pinning it to today."""
    resolve_days(value)
    return value
