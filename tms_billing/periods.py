import calendar
from datetime import datetime, timezone

INTERVAL_MONTHLY = "monthly"
INTERVAL_YEARLY = "yearly"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-aware month addition; days past the target month's end clamp to its last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end_for_interval(start: datetime, interval: str | None) -> datetime:
    if (interval or "").strip().lower() == INTERVAL_YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)
