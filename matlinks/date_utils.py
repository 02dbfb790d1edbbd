from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Literal

Period = Literal["week", "month", "year"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_date(value: date) -> str:
    """``Jan 2, 2024``"""
    return f"{value:%b} {value.day}, {value.year}"


def format_date_range(start: date, end: date) -> str:
    start_day = start.date() if isinstance(start, datetime) else start
    end_day = end.date() if isinstance(end, datetime) else end
    if start_day == end_day:
        return format_date(start_day)
    return f"{format_date(start_day)} - {format_date(end_day)}"


def _plural(amount: int, unit: str) -> str:
    return f"{amount} {unit}" if amount == 1 else f"{amount} {unit}s"


def relative_time(target: datetime, now: datetime) -> str:
    seconds = (target - now).total_seconds()
    magnitude = abs(seconds)
    if magnitude < 60:
        return "just now"
    if magnitude < 3600:
        text = _plural(int(magnitude // 60), "minute")
    elif magnitude < 86400:
        text = _plural(int(magnitude // 3600), "hour")
    else:
        text = _plural(int(magnitude // 86400), "day")
    return f"in {text}" if seconds > 0 else f"{text} ago"


def date_range_for_period(period: Period, today: date) -> tuple[date, date]:
    if period == "week":
        start = today - timedelta(days=today.weekday())
        return start, start + timedelta(days=6)
    if period == "month":
        start = today.replace(day=1)
        next_month = (start + timedelta(days=32)).replace(day=1)
        return start, next_month - timedelta(days=1)
    if period == "year":
        return today.replace(month=1, day=1), today.replace(month=12, day=31)
    raise ValueError(f"Unknown period: {period}")


def generate_date_range(start: date, number_of_days: int) -> list[date]:
    return [start + timedelta(days=offset) for offset in range(number_of_days)]


def weekly_occurrences(
    start: date, end: date, weekdays: Iterable[int], start_time: time, end_time: time
) -> list[tuple[datetime, datetime]]:
    """(start, end) pairs in UTC for every day in ``[start, end]`` whose weekday is listed (Monday is 0)."""
    wanted = set(weekdays)
    occurrences = []
    for day in generate_date_range(start, (end - start).days + 1):
        if day.weekday() in wanted:
            occurrences.append(
                (
                    datetime.combine(day, start_time, tzinfo=timezone.utc),
                    datetime.combine(day, end_time, tzinfo=timezone.utc),
                )
            )
    return occurrences
