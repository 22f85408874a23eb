from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from ..config import MATCH_BOUNDARY_WEEKDAY, MATCH_TIMEZONE


@dataclass
class Cycle:
    cycle_id: str
    prompt: str
    release_at: datetime
    match_at: datetime
    status: str = "scheduled"
    active: bool = False
    activated_at: datetime | None = None
    matches_generated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Cycle":
        return cls(
            cycle_id=str(row["cycle_id"]),
            prompt=str(row.get("prompt") or ""),
            release_at=row["release_at"],
            match_at=row["match_at"],
            status=str(row.get("status") or "scheduled"),
            active=bool(row.get("active")),
            activated_at=row.get("activated_at"),
            matches_generated_at=row.get("matches_generated_at"),
        )


def local_date(now: datetime, tz: str = MATCH_TIMEZONE) -> date:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz)).date()


def cycle_id_for_date(day: date) -> str:
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def current_cycle_id(now: datetime, tz: str = MATCH_TIMEZONE) -> str:
    return cycle_id_for_date(local_date(now, tz))


def is_same_local_day(a: datetime, b: datetime, tz: str = MATCH_TIMEZONE) -> bool:
    return local_date(a, tz) == local_date(b, tz)


def next_weekly_boundary(now: datetime, tz: str = MATCH_TIMEZONE, weekday: int = MATCH_BOUNDARY_WEEKDAY) -> datetime:
    """Local midnight of the next ``weekday`` strictly after ``now``, in UTC.

    Called on the boundary day itself this returns the following week's
    boundary, so a record created on a Friday lives a full seven days.
    """
    zone = ZoneInfo(tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(zone)
    days_ahead = (weekday - local_now.weekday()) % 7
    boundary = datetime.combine(local_now.date() + timedelta(days=days_ahead), time(0, 0), tzinfo=zone)
    if boundary <= local_now:
        boundary = datetime.combine(boundary.date() + timedelta(days=7), time(0, 0), tzinfo=zone)
    return boundary.astimezone(timezone.utc)
