"""
Date and timestamp helpers shared by the collector, normalizer and accrual code.
"""
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterator, Optional, Union

from dateutil import parser as date_parser

DAY_MS = 24 * 60 * 60 * 1000
# datetime cannot represent anything past 9999-12-31
MAX_MS = 253_402_300_799_999


def _number_to_ms(num: float) -> Optional[int]:
    if not math.isfinite(num) or num <= 0:
        return None
    ms = num if num > 1e12 else num * 1000
    if ms > MAX_MS:
        return None
    return int(ms)


def parse_ms(value: Any) -> Optional[int]:
    """
    Convert a provider timestamp into epoch milliseconds.

    Numbers above 1e12 are already milliseconds, smaller positive numbers are
    seconds. Numeric strings follow the same rule; any other string is parsed
    as a date. Returns None when nothing usable is found.
    """
    if value is None or value == '' or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return _number_to_ms(float(value))
        except OverflowError:
            return None
    if isinstance(value, str):
        raw = value.strip()
        try:
            num = float(raw)
        except ValueError:
            num = None
        if num is not None:
            return _number_to_ms(num)
        try:
            try:
                dt = date_parser.isoparse(raw)
            except ValueError:
                dt = date_parser.parse(raw)
        except (ValueError, OverflowError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def ms_to_iso(ms: int) -> str:
    return ms_to_datetime(ms).isoformat().replace('+00:00', 'Z')


def ms_to_date_str(ms: int) -> str:
    return ms_to_datetime(ms).date().isoformat()


def to_date(value: Union[str, date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def day_start_ms(value: Union[str, date]) -> int:
    d = to_date(value)
    return int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp() * 1000)


def day_end_ms(value: Union[str, date]) -> int:
    return day_start_ms(value) + DAY_MS - 1


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def iter_days(start: Union[str, date], end: Union[str, date]) -> Iterator[date]:
    """Yield every calendar day from start to end inclusive."""
    current = to_date(start)
    last = to_date(end)
    while current <= last:
        yield current
        current += timedelta(days=1)


def resolve_window(
    start: Optional[str] = None,
    end: Optional[str] = None,
    days: Optional[int] = None,
    today: Optional[date] = None,
    default_days: int = 7
) -> tuple:
    """
    Resolve a (start, end) date pair from explicit dates or a day preset.

    An explicit start/end pair wins. A start on its own runs through today.
    Otherwise the window is the last `days` days ending at `end` or today
    (inclusive).
    """
    today = today or datetime.now(timezone.utc).date()
    if start:
        start_d = to_date(start)
        end_d = to_date(end) if end else today
    else:
        span = days if days in (7, 28, 60) else default_days
        end_d = to_date(end) if end else today
        start_d = end_d - timedelta(days=span - 1)
    if start_d > end_d:
        raise ValueError(f"start {start_d} is after end {end_d}")
    return start_d, end_d
