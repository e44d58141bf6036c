"""
Business-hours and availability-window helpers.
Used for on-call contact rotation and appointment slot generation.
"""
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from serviceai.config import settings


def load_zone(key: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(key or settings.default_timezone)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Time zone data for '{key}' not found. Install the 'tzdata' package."
        ) from exc


def parse_hhmm(value: Optional[str]) -> Optional[time]:
    """"08:30" -> time(8, 30); None/blank -> None"""
    if not value:
        return None
    hour, _, minute = value.strip().partition(":")
    return time(hour=int(hour), minute=int(minute or 0))


@dataclass(frozen=True)
class OfficeHours:
    start: time
    end: time

    def contains(self, dt: datetime) -> bool:
        """Check if datetime falls within these hours (overnight windows wrap past midnight)"""
        local_time = dt.time()
        if self.start <= self.end:
            return self.start <= local_time <= self.end
        return local_time >= self.start or local_time <= self.end


def to_local(reference_time: datetime, tz_key: Optional[str]) -> datetime:
    """Normalize a datetime to the organization's timezone. Naive values are UTC."""
    if reference_time.tzinfo is None:
        reference_time = reference_time.replace(tzinfo=timezone.utc)
    return reference_time.astimezone(load_zone(tz_key))


def default_office_hours() -> OfficeHours:
    return OfficeHours(
        start=parse_hhmm(settings.business_hours_start),
        end=parse_hhmm(settings.business_hours_end),
    )


def is_available(
    at: datetime,
    tz_key: Optional[str],
    available_days,
    hours_start: Optional[str],
    hours_end: Optional[str]
) -> bool:
    """
    Day-of-week + hour-window match for an on-call contact.
    Missing hours mean "all day".
    """
    local = to_local(at, tz_key)
    if available_days is not None and local.weekday() not in available_days:
        return False
    start, end = parse_hhmm(hours_start), parse_hhmm(hours_end)
    if start is None or end is None:
        return True
    return OfficeHours(start=start, end=end).contains(local)
