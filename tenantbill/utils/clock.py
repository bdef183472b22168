"""
Time helpers.

Persisted timestamps are naive UTC. Calendar questions (which month is this,
when is the invoice due, which day did we notify) are answered in the
organization's local zone, so a request at 23:30 local / 02:30 UTC lands in
the right month.
"""
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app

DEFAULT_TIMEZONE = "America/Sao_Paulo"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_zone(name: str | None = None) -> ZoneInfo:
    if not name:
        name = current_app.config.get("BILLING_TIMEZONE", DEFAULT_TIMEZONE)
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        current_app.logger.warning("unknown time zone %r, using %s", name, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def to_local(value: datetime, zone: ZoneInfo) -> datetime:
    """Naive UTC -> aware local."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(zone)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def local_today(zone: ZoneInfo, now: datetime | None = None) -> date:
    return to_local(now or utcnow(), zone).date()


def start_of_month(zone: ZoneInfo, now: datetime | None = None) -> datetime:
    """First instant of the current local calendar month, as naive UTC."""
    local = to_local(now or utcnow(), zone)
    start = datetime.combine(local.date().replace(day=1), time.min, tzinfo=zone)
    return to_utc_naive(start)


def start_of_next_month(zone: ZoneInfo, now: datetime | None = None) -> datetime:
    """First instant of the next local calendar month, as naive UTC."""
    nxt = first_day_of_next_month(local_today(zone, now))
    return to_utc_naive(datetime.combine(nxt, time.min, tzinfo=zone))


def first_day_of_next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def days_until(moment: datetime, zone: ZoneInfo, now: datetime | None = None) -> int:
    """Whole local calendar days from today until `moment` (negative when past)."""
    return (to_local(moment, zone).date() - local_today(zone, now)).days


