"""Regular-session calendar for US equities (NYSE/Nasdaq)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time as clock_time, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from .models import utcnow


EXCHANGE_TZ = ZoneInfo("America/New_York")
SESSION_OPEN = clock_time(9, 30)
SESSION_CLOSE = clock_time(16, 0)


@dataclass(frozen=True)
class MarketStatus:
    is_open: bool
    reason: str
    exchange_time: datetime


def nth_weekday(year: int, month: int, weekday: int, occurrence: int) -> date:
    first = date(year, month, 1)
    return first + timedelta(days=(weekday - first.weekday()) % 7 + (occurrence - 1) * 7)


def last_weekday(year: int, month: int, weekday: int) -> date:
    month_end = date(year + (month == 12), month % 12 + 1, 1) - timedelta(days=1)
    return month_end - timedelta(days=(month_end.weekday() - weekday) % 7)


def observed(day: date) -> date:
    # Saturday holidays close Friday, Sunday holidays close Monday
    if day.weekday() == 5:
        return day - timedelta(days=1)
    if day.weekday() == 6:
        return day + timedelta(days=1)
    return day


def easter_sunday(year: int) -> date:
    """Anonymous Gregorian computus."""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    g = (b - (b + 8) // 25 + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


@lru_cache(maxsize=16)
def exchange_holidays(year: int) -> frozenset[date]:
    days = {
        observed(date(year, 1, 1)),
        nth_weekday(year, 1, 0, 3),        # MLK day
        nth_weekday(year, 2, 0, 3),        # Presidents' day
        easter_sunday(year) - timedelta(days=2),
        last_weekday(year, 5, 0),          # Memorial day
        observed(date(year, 6, 19)),
        observed(date(year, 7, 4)),
        nth_weekday(year, 9, 0, 1),        # Labor day
        nth_weekday(year, 11, 3, 4),       # Thanksgiving
        observed(date(year, 12, 25)),
    }
    # next New Year's observed on Dec 31 of this year
    days.add(observed(date(year + 1, 1, 1)))
    return frozenset(day for day in days if day.year == year)


def market_status(now: datetime | None = None) -> MarketStatus:
    local = (now or utcnow()).astimezone(EXCHANGE_TZ)
    if local.weekday() >= 5:
        return MarketStatus(False, "weekend", local)
    if local.date() in exchange_holidays(local.year):
        return MarketStatus(False, "holiday", local)
    if local.time() < SESSION_OPEN:
        return MarketStatus(False, "pre_market", local)
    if local.time() >= SESSION_CLOSE:
        return MarketStatus(False, "after_hours", local)
    return MarketStatus(True, "regular_session", local)


def is_market_open(now: datetime | None = None) -> bool:
    return market_status(now).is_open
