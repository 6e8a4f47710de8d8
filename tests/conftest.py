"""Pytest configuration and fixtures."""

import logging
from datetime import UTC, datetime

import pytest

from tests.fakes import (
    T,
    FakeExchange,
    InMemoryDispatchQueue,
    InMemoryPlanRepository,
    InMemoryTransactionRepository,
    RecordingEventPublisher,
)


@pytest.fixture
def logger():
    return logging.getLogger("savings-plan-test")


@pytest.fixture
def plans():
    return InMemoryPlanRepository()


@pytest.fixture
def transactions():
    return InMemoryTransactionRepository()


@pytest.fixture
def queue():
    return InMemoryDispatchQueue()


@pytest.fixture
def events():
    return RecordingEventPublisher()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def clock():
    return lambda: datetime.fromtimestamp(T, UTC)
