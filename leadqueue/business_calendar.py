"""Working days and working hours for queue scheduling."""
import calendar
from datetime import date, datetime, timedelta
from itertools import islice
from typing import Iterator, List

from leadqueue.errors import ConfigurationError
from leadqueue.policy import BusinessDayPolicy

# A policy whose holidays cover more than this many consecutive working days is
# treated as having no next working day at all.
MAX_SEARCH_DAYS = 366 * 2


class BusinessCalendar:
    """Pure date arithmetic over a BusinessDayPolicy.

    All returned datetimes are timezone aware in the policy timezone. Naive
    inputs are taken to be local time in that timezone.
    """

    def __init__(self, policy: BusinessDayPolicy):
        self.policy = policy
        self.tz = policy.tz

    def localize(self, instant: datetime) -> datetime:
        if instant.tzinfo is None:
            return instant.replace(tzinfo=self.tz)
        return instant.astimezone(self.tz)

    def is_working_day(self, day: date) -> bool:
        if isinstance(day, datetime):
            day = self.localize(day).date()
        return day.isoweekday() in self.policy.work_days and day not in self.policy.holidays

    def opening(self, day: date) -> datetime:
        return datetime.combine(day, self.policy.start, tzinfo=self.tz)

    def closing(self, day: date) -> datetime:
        return datetime.combine(day, self.policy.end, tzinfo=self.tz)

    def is_within_business_hours(self, instant: datetime) -> bool:
        local = self.localize(instant)
        day = local.date()
        return self.is_working_day(day) and self.opening(day) <= local < self.closing(day)

    def next_working_day(self, day: date) -> date:
        """First working day strictly after ``day``."""
        return next(self.iter_working_days(day + timedelta(days=1)))

    def next_working_instant(self, start: datetime) -> datetime:
        """Smallest instant >= ``start`` inside working hours of a working day."""
        local = self.localize(start)
        day = local.date()
        if self.is_working_day(day):
            if local < self.opening(day):
                return self.opening(day)
            if local < self.closing(day):
                return local
        return self.opening(self.next_working_day(day))

    def iter_working_days(self, start: date) -> Iterator[date]:
        """Lazily yield working days from ``start`` (inclusive) onwards."""
        day = start
        gap = 0
        while True:
            if self.is_working_day(day):
                gap = 0
                yield day
            else:
                gap += 1
                if gap > MAX_SEARCH_DAYS:
                    raise ConfigurationError(f"No working day within {MAX_SEARCH_DAYS} days of {day}")
            day += timedelta(days=1)

    def working_days_between(self, start: date, end: date) -> List[date]:
        """Working days from ``start`` to ``end``, both inclusive."""
        days = []
        day = start
        while day <= end:
            if self.is_working_day(day):
                days.append(day)
            day += timedelta(days=1)
        return days

    def first_working_days(self, start: date, count: int) -> List[date]:
        return list(islice(self.iter_working_days(start), count))

    def working_days_in_month(self, year: int, month: int) -> int:
        last = calendar.monthrange(year, month)[1]
        return len(self.working_days_between(date(year, month, 1), date(year, month, last)))

    def remaining_working_days_in_month(self, today: date) -> int:
        last = calendar.monthrange(today.year, today.month)[1]
        return len(self.working_days_between(today, date(today.year, today.month, last)))
