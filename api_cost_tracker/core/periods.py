"""
Calendar-month accounting periods.

All timestamps are handled as timezone-aware UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return value as aware UTC; naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, order=True)
class Period:
    """A calendar month, the window used for budgets and subscriptions."""
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"month must be between 1 and 12, got {self.month}")

    @classmethod
    def containing(cls, moment: datetime) -> "Period":
        moment = as_utc(moment)
        return cls(moment.year, moment.month)

    @classmethod
    def parse(cls, key: str) -> "Period":
        """Parse a ``YYYY-MM`` key."""
        try:
            year, month = key.split("-")
            return cls(int(year), int(month))
        except (AttributeError, ValueError):
            raise ValueError(f"Invalid period '{key}', expected YYYY-MM")

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def start(self) -> datetime:
        return datetime(self.year, self.month, 1, tzinfo=timezone.utc)

    @property
    def end(self) -> datetime:
        """Exclusive end: the first instant of the next month."""
        return self.next().start

    def next(self) -> "Period":
        if self.month == 12:
            return Period(self.year + 1, 1)
        return Period(self.year, self.month + 1)

    def previous(self) -> "Period":
        if self.month == 1:
            return Period(self.year - 1, 12)
        return Period(self.year, self.month - 1)

    def contains(self, moment: datetime) -> bool:
        return self.start <= as_utc(moment) < self.end

    def is_closed(self, now: Optional[datetime] = None) -> bool:
        """True once the period's end has passed and no new events can land in it."""
        return is_closed(self.end, now)

    def days(self) -> int:
        return (self.end - self.start).days

    def __str__(self) -> str:
        return self.key


def is_closed(end: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """A range is closed (safe for exact reporting) once its end has passed."""
    if end is None:
        return False
    return as_utc(end) <= as_utc(now or utcnow())


def add_months(moment: datetime, months: int) -> datetime:
    """Shift a datetime by whole months, clamping the day to the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    last_day = (Period(year, month).end - timedelta(days=1)).day
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


TIME_BUCKETS = ("day", "week", "month")


def bucket_label(moment: datetime, group_by: str) -> str:
    """Label of the day, ISO week or month containing ``moment``."""
    moment = as_utc(moment)
    if group_by == "day":
        return moment.strftime("%Y-%m-%d")
    if group_by == "week":
        iso_year, iso_week, _ = moment.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    if group_by == "month":
        return moment.strftime("%Y-%m")
    raise ValueError(f"group_by must be one of: {list(TIME_BUCKETS)}")
