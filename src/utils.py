import calendar
import logging
from datetime import UTC, datetime, timedelta

from src.domain.errors import ConfigurationError
from src.domain.models import Frequency

_FIXED_INTERVALS = {
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(days=7),
    Frequency.BIWEEKLY: timedelta(days=14),
}


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_epoch(dt: datetime) -> int:
    """Whole seconds since epoch (fractional part truncated)."""
    return int(dt.timestamp())


def now_epoch() -> int:
    return to_epoch(utc_now())


def add_months(dt: datetime, months: int) -> datetime:
    """
    Add calendar months to a datetime.

    The day is clamped to the last day of the target month, so
    2024-01-31 + 1 month -> 2024-02-29 and 2023-01-31 + 1 month -> 2023-02-28.
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def calculate_next_execution_time(frequency: Frequency, from_dt: datetime) -> int:
    """
    Compute the next due time (epoch seconds) for a plan.

    Raises ConfigurationError for a frequency the scheduler does not support.
    """
    try:
        frequency = Frequency(frequency)
    except ValueError as e:
        raise ConfigurationError(f"Unsupported frequency: {frequency}") from e

    if frequency is Frequency.MONTHLY:
        return to_epoch(add_months(from_dt, 1))

    return to_epoch(from_dt + _FIXED_INTERVALS[frequency])


def create_logger(name: str, level: str) -> logging.Logger:
    """Create and configure a logger instance."""
    logger = logging.Logger(name)
    logger.setLevel(getattr(logging, level))

    handler = logging.StreamHandler()
    handler.setLevel(getattr(logging, level))
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger
