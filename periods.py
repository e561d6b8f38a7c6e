import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


DASHBOARD_PERIODS = ("week", "month", "quarter", "year")

PERIOD_LABELS = {
    "week": "7 derniers jours",
    "month": "30 derniers jours",
    "quarter": "3 derniers mois",
    "year": "12 derniers mois",
}


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def label(self) -> str:
        return PERIOD_LABELS.get(self.slug, self.slug)


def local_today() -> date:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).date()


def month_start(day: date) -> date:
    return day.replace(day=1)


def month_end(day: date) -> date:
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=last)


def shift_months(day: date, months: int) -> date:
    """Move `day` by `months` calendar months, clamping to the target month's length."""
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last))


def resolve_dashboard_period(period: Optional[str], today: Optional[date] = None) -> Period:
    today = today or local_today()
    slug = period if period in DASHBOARD_PERIODS else "month"
    if slug == "week":
        start = today - timedelta(days=7)
    elif slug == "quarter":
        start = shift_months(today, -3)
    elif slug == "year":
        start = shift_months(today, -12)
    else:
        start = shift_months(today, -1)
    return Period(slug, start, today)


def current_month(today: Optional[date] = None) -> Period:
    today = today or local_today()
    return Period("this_month", month_start(today), today)


def trailing_months(count: int, today: Optional[date] = None) -> list[date]:
    """First day of each of the last `count` calendar months, oldest first."""
    today = today or local_today()
    first = month_start(today)
    return [shift_months(first, -offset) for offset in range(count - 1, -1, -1)]
