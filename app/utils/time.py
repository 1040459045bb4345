"""UTC time helpers and period boundary math shared by the analytics passes."""

from datetime import date, datetime, time, timedelta, timezone


def utc_now() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def from_epoch_ms(value: int) -> datetime:
    """Aware UTC datetime for an epoch-milliseconds timestamp."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return round(ensure_utc(value).timestamp() * 1000)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    """Midnight UTC at the start of ``day``."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Half-open [start, end) UTC bounds of one calendar day."""
    start = start_of_day(day)
    return start, start + timedelta(days=1)


def week_start(day: date) -> date:
    """First day of the week containing ``day``. Weeks start on Sunday."""
    # date.weekday(): Monday=0 ... Sunday=6
    return day - timedelta(days=(day.weekday() + 1) % 7)


def quarter_start(day: date) -> date:
    """First day of the calendar quarter containing ``day``."""
    return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)


def add_months(day: date, months: int) -> date:
    """Shift the first-of-month ``day`` by a number of months."""
    month_index = day.month - 1 + months
    return date(day.year + month_index // 12, month_index % 12 + 1, 1)


def period_bounds(period_type: str, reference: datetime) -> tuple[datetime, datetime]:
    """Compute [start, end) for the period containing ``reference``.

    Args:
        period_type: One of hour, day, week, month, quarter
        reference: Any instant inside the wanted period

    Returns:
        Tuple of aware UTC datetimes
    """
    reference = ensure_utc(reference)
    if period_type == "hour":
        start = reference.replace(minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=1)
    if period_type == "day":
        return day_bounds(reference.date())
    if period_type == "week":
        start_day = week_start(reference.date())
        return start_of_day(start_day), start_of_day(start_day + timedelta(days=7))
    if period_type == "month":
        start_day = reference.date().replace(day=1)
        return start_of_day(start_day), start_of_day(add_months(start_day, 1))
    if period_type == "quarter":
        start_day = quarter_start(reference.date())
        return start_of_day(start_day), start_of_day(add_months(start_day, 3))
    raise ValueError(f"Unsupported period type: {period_type}")
