"""
Retention and selection rules for hot-tier backups.

Everything here is a pure function over a list of StorageObject values: no
storage calls, no clock reads unless a `now` is passed in. Each function
establishes its own ordering first so results do not depend on the order the
backend listed the objects in.

Policies:
- SimpleOverwrite: keep the N most recent backups
- SmartTiered: keep daily/weekly/monthly quotas anchored on calendar days
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from .errors import RangeError
from .objects import StorageObject


def _newest_first(objects: Iterable[StorageObject]) -> List[StorageObject]:
    # Key breaks ties so equal timestamps still sort deterministically
    return sorted(objects, key=lambda o: (o.last_modified, o.key), reverse=True)


def _oldest_first(objects: Iterable[StorageObject]) -> List[StorageObject]:
    return sorted(objects, key=lambda o: (o.last_modified, o.key))


def _sunday_based_weekday(ts: datetime) -> int:
    """Weekday with 0=Sunday .. 6=Saturday."""
    return (ts.weekday() + 1) % 7


def select_for_overwrite(objects: List[StorageObject], keep: int) -> List[StorageObject]:
    """
    Select everything except the `keep` most recent objects.

    Args:
        objects: Objects under one prefix
        keep: Number of most recent objects to retain

    Returns:
        Objects to delete, newest first; empty if len(objects) <= keep
    """
    if keep < 0:
        raise ValueError("keep must be >= 0")
    if len(objects) <= keep:
        return []
    return _newest_first(objects)[keep:]


@dataclass(frozen=True)
class SimpleOverwrite:
    """Keep the `keep` most recently modified backups."""

    keep: int

    def select(self, objects: List[StorageObject]) -> List[StorageObject]:
        return select_for_overwrite(objects, self.keep)


@dataclass(frozen=True)
class SmartTiered:
    """
    Date-aware retention.

    weekly_day uses 0=Sunday; monthly_day is the day of the month.
    """

    keep_daily: int = 14
    keep_weekly: int = 26
    keep_monthly: int = 6
    weekly_day: int = 0
    monthly_day: int = 1

    def __post_init__(self):
        if not 0 <= self.weekly_day <= 6:
            raise ValueError(f"weekly_day must be 0-6 (0=Sunday), got {self.weekly_day}")
        if not 1 <= self.monthly_day <= 31:
            raise ValueError(f"monthly_day must be 1-31, got {self.monthly_day}")
        for name in ('keep_daily', 'keep_weekly', 'keep_monthly'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    def classify(self, ts: datetime) -> str:
        """Return 'monthly', 'weekly' or 'daily' for a backup timestamp."""
        if ts.day == self.monthly_day:
            return 'monthly'
        if _sunday_based_weekday(ts) == self.weekly_day:
            return 'weekly'
        return 'daily'

    def select(self, objects: List[StorageObject]) -> List[StorageObject]:
        return select_smart_tiered(objects, self)


def select_smart_tiered(objects: List[StorageObject], policy: SmartTiered) -> List[StorageObject]:
    """
    Select objects that fall outside the daily/weekly/monthly quotas.

    Objects are scanned newest first. Monthly anchors are tried against the
    monthly quota, weekly anchors against the weekly quota, and anything not
    admitted there falls back to the daily quota. An object counts against at
    most one quota and is never displaced by a later one.

    Args:
        objects: Objects under one prefix
        policy: Quotas and anchor days

    Returns:
        Objects to delete, newest first
    """
    kept = {'monthly': 0, 'weekly': 0, 'daily': 0}
    limits = {
        'monthly': policy.keep_monthly,
        'weekly': policy.keep_weekly,
        'daily': policy.keep_daily
    }
    to_delete = []

    for obj in _newest_first(objects):
        bucket = policy.classify(obj.last_modified)

        if bucket != 'daily' and kept[bucket] < limits[bucket]:
            kept[bucket] += 1
        elif kept['daily'] < limits['daily']:
            kept['daily'] += 1
        else:
            to_delete.append(obj)

    return to_delete


def parse_numeric_range(range_str: str) -> Tuple[int, int]:
    """
    Parse an 'N-M' range where 1 is the most recent backup.

    Raises:
        RangeError: If the format is wrong, start < 1 or end < start
    """
    parts = range_str.split('-')
    if len(parts) != 2:
        raise RangeError("range must be in format 'N-M' (e.g., '1-10')")

    try:
        start = int(parts[0].strip())
    except ValueError:
        raise RangeError(f"invalid start value: {parts[0]!r}")

    try:
        end = int(parts[1].strip())
    except ValueError:
        raise RangeError(f"invalid end value: {parts[1]!r}")

    if start < 1:
        raise RangeError("start must be >= 1")
    if end < start:
        raise RangeError("end must be >= start")

    return start, end


def select_by_numeric_range(objects: List[StorageObject], start: int, end: int) -> List[StorageObject]:
    """
    Select a 1-based inclusive slice of objects sorted newest first.

    `end` is clamped to the list length.

    Raises:
        RangeError: If there are no objects or start is past the end of the list
    """
    if not objects:
        raise RangeError("no objects available")
    if start < 1 or end < start:
        raise RangeError(f"invalid range {start}-{end}")

    ordered = _newest_first(objects)
    if start > len(ordered):
        raise RangeError(f"start index {start} exceeds number of objects ({len(ordered)})")

    return ordered[start - 1:min(end, len(ordered))]


def parse_date_range(range_str: str) -> Tuple[datetime, datetime]:
    """
    Parse 'YYYYMMDD-YYYYMMDD' or 'YYYYMMDD:HHMMSS-YYYYMMDD:HHMMSS' (UTC).

    With the date-only form the end bound covers the whole end day.

    Raises:
        RangeError: On malformed dates or an end before the start
    """
    parts = range_str.split('-')
    if len(parts) != 2:
        raise RangeError(
            "range must be in format 'YYYYMMDD-YYYYMMDD' or 'YYYYMMDD:HHMMSS-YYYYMMDD:HHMMSS'"
        )

    start_str = parts[0].strip()
    end_str = parts[1].strip()
    date_only = ':' not in start_str
    layout = '%Y%m%d' if date_only else '%Y%m%d:%H%M%S'

    try:
        start = datetime.strptime(start_str, layout).replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise RangeError(f"invalid start date: {e}")

    try:
        end = datetime.strptime(end_str, layout).replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise RangeError(f"invalid end date: {e}")

    if date_only:
        end = end + timedelta(days=1) - timedelta(seconds=1)

    if end < start:
        raise RangeError("end date must be after start date")

    return start, end


def filter_by_date_range(objects: List[StorageObject], start: datetime, end: datetime) -> List[StorageObject]:
    """Objects with start <= last_modified <= end, newest first."""
    return [o for o in _newest_first(objects) if start <= o.last_modified <= end]


_DURATION_RE = re.compile(r'^\s*(\d+)\s*([hdwmy])\s*$', re.IGNORECASE)
_DURATION_UNITS = {
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
    'w': timedelta(weeks=1),
    'm': timedelta(days=30),
    'y': timedelta(days=365)
}


def parse_human_duration(value: str) -> timedelta:
    """
    Parse durations like '12h', '30d', '2w', '6m' or '1y'.

    Months count as 30 days and years as 365 days.
    """
    match = _DURATION_RE.match(value or '')
    if not match:
        raise ValueError(f"invalid duration: {value!r} (expected e.g. '30d', '2w', '6m')")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit.lower()]


def select_older_than(objects: List[StorageObject], age: timedelta, now: datetime) -> List[StorageObject]:
    """Objects strictly older than `now - age`, oldest first."""
    cutoff = now - age
    return [o for o in _oldest_first(objects) if o.last_modified < cutoff]


def select_oldest(
    objects: List[StorageObject],
    count: Optional[int] = None,
    percent: Optional[float] = None
) -> List[StorageObject]:
    """
    Select the oldest objects by count or by percentage of the population.

    A percentage rounds up, so any non-zero percent of a non-empty list
    selects at least one object.
    """
    if (count is None) == (percent is None):
        raise ValueError("exactly one of count or percent is required")

    ordered = _oldest_first(objects)
    if percent is not None:
        if percent < 0 or percent > 100:
            raise ValueError(f"percent must be between 0 and 100, got {percent}")
        count = math.ceil(len(ordered) * percent / 100.0)
    elif count < 0:
        raise ValueError("count must be >= 0")

    return ordered[:count]


def policy_from_settings(
    keep: Optional[int] = None,
    smart: bool = False,
    keep_daily: int = 14,
    keep_weekly: int = 26,
    keep_monthly: int = 6,
    weekly_day: int = 0,
    monthly_day: int = 1
):
    """
    Build a retention policy from stored site settings.

    Returns:
        SmartTiered when `smart` is set, SimpleOverwrite when `keep` is set,
        otherwise None (no pruning)
    """
    if smart:
        return SmartTiered(
            keep_daily=keep_daily,
            keep_weekly=keep_weekly,
            keep_monthly=keep_monthly,
            weekly_day=weekly_day,
            monthly_day=monthly_day
        )
    if keep is not None:
        return SimpleOverwrite(keep=keep)
    return None
