import logging
from datetime import UTC, datetime

import pytest

from src.domain.errors import ConfigurationError
from src.domain.models import Frequency
from src.utils import (
    add_months,
    calculate_next_execution_time,
    create_logger,
    to_epoch,
)
from tests.fakes import T


def at(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_daily_adds_one_day():
    now = datetime.fromtimestamp(T, UTC)
    assert calculate_next_execution_time(Frequency.DAILY, now) == T + 86400


def test_weekly_adds_seven_days():
    now = datetime.fromtimestamp(T, UTC)
    assert calculate_next_execution_time(Frequency.WEEKLY, now) == T + 604800


def test_biweekly_adds_fourteen_days():
    now = datetime.fromtimestamp(T, UTC)
    assert calculate_next_execution_time(Frequency.BIWEEKLY, now) == T + 14 * 86400


def test_monthly_end_of_january_lands_on_leap_day():
    result = calculate_next_execution_time(Frequency.MONTHLY, at(2024, 1, 31))
    assert result == to_epoch(at(2024, 2, 29))


def test_monthly_non_leap_year_clamps_to_28th():
    result = calculate_next_execution_time(Frequency.MONTHLY, at(2023, 1, 31))
    assert result == to_epoch(at(2023, 2, 28))


def test_monthly_is_calendar_based_not_thirty_days():
    start = at(2024, 3, 15, 9, 30)
    result = calculate_next_execution_time(Frequency.MONTHLY, start)
    assert result == to_epoch(at(2024, 4, 15, 9, 30))
    assert result - to_epoch(start) == 31 * 86400


def test_add_months_rolls_over_year():
    assert add_months(at(2024, 12, 31), 1) == at(2025, 1, 31)
    assert add_months(at(2024, 11, 30), 3) == at(2025, 2, 28)


def test_result_is_truncated_to_whole_seconds():
    now = datetime.fromtimestamp(T + 0.75, UTC)
    assert calculate_next_execution_time(Frequency.DAILY, now) == T + 86400


def test_frequency_given_as_string_is_accepted():
    now = datetime.fromtimestamp(T, UTC)
    assert calculate_next_execution_time("WEEKLY", now) == T + 604800


def test_unsupported_frequency_is_configuration_error():
    with pytest.raises(ConfigurationError, match="Unsupported frequency"):
        calculate_next_execution_time("HOURLY", datetime.fromtimestamp(T, UTC))


def test_create_logger_twice_does_not_duplicate_handlers():
    first = create_logger("savings-plan", "INFO")
    second = create_logger("savings-plan", "DEBUG")

    assert len(first.handlers) == 1
    assert len(second.handlers) == 1
    assert second.level == logging.DEBUG
