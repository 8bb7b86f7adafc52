"""Calendar helpers for claims, daily boards and weekly boards.

Daily claims use the civil day of one fixed timezone (``DOJO_CLAIM_TIMEZONE``)
so "today" is the same day for every student. Weekly boards use the ISO week
starting Monday 00:00 UTC.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from dojo.config import get_settings


def civil_tz() -> ZoneInfo:
    return ZoneInfo(get_settings().claim_timezone)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite returns them naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def civil_date_key(now: datetime | None = None) -> date:
    """Calendar date of ``now`` in the civil timezone."""
    if now is None:
        now = datetime.now(timezone.utc)
    return ensure_utc(now).astimezone(civil_tz()).date()


def civil_day_start(now: datetime | None = None) -> datetime:
    """Civil midnight of the day containing ``now``, as a UTC datetime."""
    local_midnight = datetime.combine(civil_date_key(now), time.min, tzinfo=civil_tz())
    return local_midnight.astimezone(timezone.utc)


def next_civil_day_start(now: datetime | None = None) -> datetime:
    """Civil midnight that ends the day containing ``now``, as UTC."""
    tomorrow = civil_date_key(now) + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=civil_tz()).astimezone(timezone.utc)


def snapshot_cycle_date(now: datetime | None = None) -> date:
    """Date of the leaderboard bonus cycle containing ``now``.

    The cycle rolls over at the configured cutoff (21:30 civil time by
    default) rather than at midnight, so the evening's final board is the
    one students claim against the next day.
    """
    settings = get_settings()
    if now is None:
        now = datetime.now(timezone.utc)
    local = ensure_utc(now).astimezone(civil_tz())
    cutoff = time(settings.snapshot_cutoff_hour, settings.snapshot_cutoff_minute)
    if local.time() >= cutoff:
        return local.date() + timedelta(days=1)
    return local.date()


def get_monday(dt: datetime | date) -> date:
    """Get the Monday of the ISO week containing dt."""
    d = dt.date() if isinstance(dt, datetime) else dt
    return d - timedelta(days=d.weekday())


def get_week_boundaries(dt: datetime | None = None) -> tuple[datetime, datetime]:
    """Get (Monday 00:00 UTC, Sunday 23:59:59 UTC) for the ISO week containing dt."""
    if dt is None:
        dt = datetime.now(timezone.utc)
    monday = get_monday(ensure_utc(dt))
    sunday = monday + timedelta(days=6)
    start = datetime.combine(monday, time.min, tzinfo=timezone.utc)
    end = datetime.combine(sunday, time(23, 59, 59), tzinfo=timezone.utc)
    return start, end
