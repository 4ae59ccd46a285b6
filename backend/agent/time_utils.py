from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo


LOCAL_FORMAT = "%Y-%m-%dT%H:%M:%S"


def local_now(tz_name: str) -> datetime:
    return datetime.now(ZoneInfo(tz_name))


def is_date_only(value: str) -> bool:
    text = (value or "").strip()
    return len(text) == 10 and text[4] == "-" and text[7] == "-"


def parse_datetime(value: str, tz_name: str) -> datetime:
    text = (value or "").strip()
    if not text:
        raise ValueError("empty datetime")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(tz_name))
    return parsed


def parse_date(value: str) -> date:
    text = (value or "").strip()
    if is_date_only(text):
        return date.fromisoformat(text)
    return datetime.fromisoformat(text.replace("Z", "+00:00")).date()


def format_local(value: datetime, tz_name: str) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(tz_name))
    return value.strftime(LOCAL_FORMAT)


def add_minutes(start: str, minutes: int, tz_name: str) -> str:
    """Add minutes to an ISO start and return local wall-clock time without offset."""
    return format_local(parse_datetime(start, tz_name) + timedelta(minutes=minutes), tz_name)


def day_window(day: date, tz_name: str) -> tuple[str, str]:
    tz = ZoneInfo(tz_name)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.isoformat(), end.isoformat()


def window_around(now: datetime, *, days_back: int, days_forward: int) -> tuple[str, str]:
    return (now - timedelta(days=days_back)).isoformat(), (now + timedelta(days=days_forward)).isoformat()
