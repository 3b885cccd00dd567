import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidTimezoneError

EPOCH_DATE = date(1970, 1, 1)
DEFAULT_LOOKBACK_DAYS = 365
MIN_LOOKBACK_DAYS = 30
MAX_LOOKBACK_DAYS = 3650


@dataclass(frozen=True)
class DateWindow:
    start_date: str
    end_date: str
    start_day_index: int
    end_day_index: int
    lookback_days: int


def _zone(time_zone: str) -> ZoneInfo:
    if not time_zone or not isinstance(time_zone, str):
        raise InvalidTimezoneError(f"Invalid timezone: {time_zone!r}")
    try:
        return ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise InvalidTimezoneError(f"Invalid timezone: {time_zone!r}")


def is_valid_timezone(time_zone: str) -> bool:
    try:
        _zone(time_zone)
    except InvalidTimezoneError:
        return False
    return True


def format_date_in_timezone(instant: datetime, time_zone: str) -> str:
    """Civil date (YYYY-MM-DD) of an absolute instant as seen in time_zone."""
    zone = _zone(time_zone)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(zone).date().isoformat()


civil_date = format_date_in_timezone


def date_to_day_index(value: str) -> int:
    return (date.fromisoformat(value) - EPOCH_DATE).days


def day_index_to_date(day_index: int) -> str:
    return (EPOCH_DATE + timedelta(days=day_index)).isoformat()


def list_dates_in_range(start_date: str, end_date: str) -> list[str]:
    # An inverted range yields an empty list rather than an error.
    start_index = date_to_day_index(start_date)
    end_index = date_to_day_index(end_date)
    return [day_index_to_date(i) for i in range(start_index, end_index + 1)]


def clamp_lookback_days(value: int | float | None) -> int:
    if value is None or isinstance(value, bool):
        return DEFAULT_LOOKBACK_DAYS
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return DEFAULT_LOOKBACK_DAYS
    if not math.isfinite(numeric):
        return DEFAULT_LOOKBACK_DAYS
    return min(MAX_LOOKBACK_DAYS, max(MIN_LOOKBACK_DAYS, math.floor(numeric)))


def date_range_in_timezone(time_zone: str, lookback_days: int, now: datetime | None = None) -> DateWindow:
    end_date = format_date_in_timezone(now or datetime.now(timezone.utc), time_zone)
    end_day_index = date_to_day_index(end_date)
    start_day_index = end_day_index - lookback_days + 1
    return DateWindow(
        start_date=day_index_to_date(start_day_index),
        end_date=end_date,
        start_day_index=start_day_index,
        end_day_index=end_day_index,
        lookback_days=lookback_days,
    )


def date_range_from_start_date(time_zone: str, start_date: str, now: datetime | None = None) -> DateWindow:
    """Window from start_date through today in time_zone (lifetime range)."""
    end_date = format_date_in_timezone(now or datetime.now(timezone.utc), time_zone)
    end_day_index = date_to_day_index(end_date)
    # A creation date "after" today (clock skew) collapses to a one-day window.
    start_day_index = min(date_to_day_index(start_date), end_day_index)
    return DateWindow(
        start_date=day_index_to_date(start_day_index),
        end_date=end_date,
        start_day_index=start_day_index,
        end_day_index=end_day_index,
        lookback_days=end_day_index - start_day_index + 1,
    )
