from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    day = desired_day or base.day
    dim = days_in_month(year, month)
    if day > dim:
        day = dim
    return date(year, month, day)


FREQUENCY_MONTHS = {
    Frequency.monthly: 1,
    Frequency.quarterly: 3,
    Frequency.yearly: 12,
}

FREQUENCY_DAYS = {
    Frequency.weekly: 7,
    Frequency.fortnightly: 14,
}


def next_expected_date(
    frequency: Frequency, last_seen: date, typical_day: Optional[int] = None
) -> date:
    if frequency in FREQUENCY_DAYS:
        return last_seen + timedelta(days=FREQUENCY_DAYS[frequency])
    return add_months(
        last_seen, FREQUENCY_MONTHS[frequency], desired_day=typical_day
    )
