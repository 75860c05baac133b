from __future__ import annotations

from datetime import datetime, timedelta, timezone


PERIOD_HOUR = "hour"
PERIOD_DAY = "day"
PERIOD_MONTH = "month"

PERIOD_GRANULARITIES = (PERIOD_HOUR, PERIOD_DAY, PERIOD_MONTH)


def utc_now() -> datetime:
    # Use UTC for consistent period boundaries and expiry comparisons.
    return datetime.now(timezone.utc)


def format_period(now: datetime, granularity: str = PERIOD_MONTH) -> str:
    """Render the usage period containing ``now``.

    ``month`` -> ``YYYY-MM``, ``day`` -> ``YYYY-MM-DD``, ``hour`` ->
    ``YYYY-MM-DD-HH``. Naive datetimes are treated as UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    if granularity == PERIOD_HOUR:
        return f"{now.year:04d}-{now.month:02d}-{now.day:02d}-{now.hour:02d}"
    if granularity == PERIOD_DAY:
        return f"{now.year:04d}-{now.month:02d}-{now.day:02d}"
    if granularity == PERIOD_MONTH:
        return f"{now.year:04d}-{now.month:02d}"
    raise ValueError(f"Unsupported period granularity: {granularity}")


def expires_in(seconds: int, now: datetime | None = None) -> datetime:
    return (now or utc_now()) + timedelta(seconds=seconds)


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    # A missing expiry never expires.
    if expires_at is None:
        return False
    return expires_at < (now or utc_now())


def period_window(period: str) -> tuple[str, datetime, datetime]:
    """Parse a period label into ``(granularity, start, end)``.

    The granularity follows the label's shape (``YYYY-MM``, ``YYYY-MM-DD``
    or ``YYYY-MM-DD-HH``); ``end`` is the first instant of the next period.
    """
    parts = period.split("-")
    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        raise ValueError(f"Unsupported period: {period}") from None
    if len(numbers) == 2:
        year, month = numbers
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        end = datetime(year + month // 12, month % 12 + 1, 1, tzinfo=timezone.utc)
        return PERIOD_MONTH, start, end
    if len(numbers) == 3:
        start = datetime(*numbers, tzinfo=timezone.utc)
        return PERIOD_DAY, start, start + timedelta(days=1)
    if len(numbers) == 4:
        start = datetime(*numbers, tzinfo=timezone.utc)
        return PERIOD_HOUR, start, start + timedelta(hours=1)
    raise ValueError(f"Unsupported period: {period}")
