"""Local calendar day ↔ UTC boundary conversion.

Every date-bucketing decision in blendfolio goes through this module:

- `resolve_timezone`: IANA name → `ZoneInfo` (default UTC).
- `local_day_bounds`: local date → `[start, end)` as naive UTC instants.
- `rate_lookup_date`: local date → UTC date used to pick a daily rate row.
- `local_date_of`: naive UTC instant → local calendar date.
- `local_today` / `history_window` / `iter_days`: day ranges.

Design notes
------------
- Local midnights are built with `datetime.combine(day, time.min, zone)`,
  so DST transitions (23h / 25h days) are handled by zoneinfo.
- A daily rate row stamped `rate_date` is taken to be observed at
  `rate_date 00:00 UTC`. It applies to a local day when that stamp is
  strictly before the start of the next local day, i.e. the lookup key is
  the UTC date of the last instant of the local day.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from blendfolio.constants import DEFAULT_TIMEZONE
from blendfolio.core.errors import ValidationError

UTC = timezone.utc
_EPSILON = timedelta(microseconds=1)


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Return the zone for an IANA name; empty / None means UTC."""
    key = (name or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {key}", "timezone") from e


def _zone(tz: str | ZoneInfo | None) -> ZoneInfo:
    return tz if isinstance(tz, ZoneInfo) else resolve_timezone(tz)


def _as_utc(ts: datetime) -> datetime:
    """Aware UTC view of a timestamp (naive input is taken as UTC)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def naive_utc(ts: datetime) -> datetime:
    """Naive UTC view of a timestamp, the form stored in the database."""
    return _as_utc(ts).replace(tzinfo=None)


def local_midnight_utc(day: date, tz: str | ZoneInfo | None) -> datetime:
    """Naive UTC instant at which local `day` starts in `tz`."""
    local = datetime.combine(day, time.min, tzinfo=_zone(tz))
    return local.astimezone(UTC).replace(tzinfo=None)


def local_day_bounds(day: date, tz: str | ZoneInfo | None) -> tuple[datetime, datetime]:
    """Return `[start, end)` of local `day` as naive UTC instants."""
    zone = _zone(tz)
    return local_midnight_utc(day, zone), local_midnight_utc(day + timedelta(days=1), zone)


def rate_lookup_date(day: date, tz: str | ZoneInfo | None) -> date:
    """UTC date whose daily rate is valid at the end of local `day`.

    Examples
    --------
    - UTC, 2024-01-02 → 2024-01-02
    - America/Los_Angeles, 2024-01-02 (ends 2024-01-03 08:00 UTC) → 2024-01-03
    - Asia/Tokyo, 2024-01-02 (ends 2024-01-02 15:00 UTC) → 2024-01-02
    """
    _, end = local_day_bounds(day, tz)
    return (end - _EPSILON).date()


def local_date_of(ts: datetime, tz: str | ZoneInfo | None) -> date:
    """Local calendar date of an instant (naive input is UTC)."""
    return _as_utc(ts).astimezone(_zone(tz)).date()


def local_today(tz: str | ZoneInfo | None, now: datetime | None = None) -> date:
    """Today's local date in `tz` (at `now`, default: current time)."""
    return local_date_of(now or datetime.now(UTC), tz)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every date from `start` to `end` inclusive."""
    d = start
    while d <= end:
        yield d
        d += timedelta(days=1)


def history_window(days: int, tz: str | ZoneInfo | None, now: datetime | None = None) -> tuple[date, date]:
    """Inclusive `(today - days, today)` in local dates."""
    if days < 0:
        raise ValidationError("days must be at least 0", "days")
    today = local_today(tz, now)
    return today - timedelta(days=days), today
