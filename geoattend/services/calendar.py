"""
Company working-day calendar.

Answers "is today a working day?" and "which dates make up a reporting
window?" in the company's own timezone. A broken configuration never
blocks anyone: unknown timezones fall back to UTC and empty or malformed
working-day sets fall back to Monday-Friday.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from geoattend.core.timeutils import Clock, ensure_utc, utcnow
from geoattend.models.company import Company

logger = logging.getLogger(__name__)

DEFAULT_WORKING_DAYS: frozenset[int] = frozenset({1, 2, 3, 4, 5})
_UTC = ZoneInfo("UTC")


def parse_time_of_day(value: str | time | None, default: time) -> time:
    """Parse ``HH:MM`` / ``HH:MM:SS``; fall back to *default* when unparsable."""
    if isinstance(value, time):
        return value
    if not value:
        return default
    try:
        parts = [int(p) for p in str(value).strip().split(":")]
        hour, minute = parts[0], parts[1] if len(parts) > 1 else 0
        second = parts[2] if len(parts) > 2 else 0
        return time(hour, minute, second)
    except (ValueError, IndexError):
        logger.warning("Unparsable time-of-day %r, using %s", value, default)
        return default


def normalise_working_days(raw: object) -> frozenset[int]:
    """Coerce the stored working-day config into a set of ISO weekdays.

    Accepts a list of ints (``0`` is read as Sunday), the legacy
    ``{"1": true, ...}`` mapping, or either form JSON-encoded.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return DEFAULT_WORKING_DAYS

    days: set[int] = set()
    if isinstance(raw, dict):
        candidates = [k for k, enabled in raw.items() if enabled]
    elif isinstance(raw, (list, tuple, set, frozenset)):
        candidates = list(raw)
    else:
        return DEFAULT_WORKING_DAYS

    for candidate in candidates:
        try:
            day = int(candidate)
        except (TypeError, ValueError):
            continue
        if day == 0:
            day = 7
        if 1 <= day <= 7:
            days.add(day)

    return frozenset(days) if days else DEFAULT_WORKING_DAYS


class WorkCalendarResolver:
    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ── Timezone ────────────────────────────────────────────────────
    def zone(self, company: Company) -> ZoneInfo:
        name = company.timezone or "UTC"
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r for company %s, using UTC", name, company.id)
            return _UTC

    def local_now(self, company: Company) -> datetime:
        return self.to_local(company, self._clock())

    def to_local(self, company: Company, moment: datetime) -> datetime:
        return ensure_utc(moment).astimezone(self.zone(company))  # type: ignore[union-attr]

    def local_date(self, company: Company, moment: datetime | None = None) -> date:
        return self.to_local(company, moment or self._clock()).date()

    def local_time(self, company: Company, moment: datetime | None = None) -> time:
        return self.to_local(company, moment or self._clock()).time()

    def local_bounds(self, company: Company, day: date) -> tuple[datetime, datetime]:
        """UTC instants covering the whole company-local *day*."""
        tz = self.zone(company)
        start = datetime.combine(day, time.min, tzinfo=tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
        return ensure_utc(start), ensure_utc(end)  # type: ignore[return-value]

    # ── Working days ────────────────────────────────────────────────
    def working_days(self, company: Company) -> frozenset[int]:
        return normalise_working_days(company.working_days)

    def is_working_day(self, moment: datetime | date, company: Company) -> bool:
        if isinstance(moment, datetime):
            day = self.to_local(company, moment).date()
        else:
            day = moment
        return day.isoweekday() in self.working_days(company)

    def work_start(self, company: Company) -> time:
        return parse_time_of_day(company.work_start_time, time(9, 0))

    def work_end(self, company: Company) -> time:
        return parse_time_of_day(company.work_end_time, time(17, 0))

    # ── Reporting windows ───────────────────────────────────────────
    def resolve_reporting_window(
        self,
        company: Company,
        explicit_start: date | None = None,
        explicit_end: date | None = None,
        default_days: int = 30,
    ) -> tuple[date, date]:
        today = self.local_date(company)
        if explicit_start is not None and explicit_end is not None:
            return explicit_start, explicit_end
        end = explicit_end or today
        start = explicit_start or end - timedelta(days=max(default_days, 1) - 1)
        return start, end

    def expected_work_days(self, company: Company, start: date, end: date) -> int:
        if end < start:
            return 0
        days = self.working_days(company)
        total = 0
        current = start
        while current <= end:
            if current.isoweekday() in days:
                total += 1
            current += timedelta(days=1)
        return total
