"""Event publishing for audit and notification consumers."""

import json
import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from psycopg import Connection
from psycopg.rows import TupleRow
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from src.domain.models import EventType

EVENT_SOURCE = "bitcoin-broker.scheduler"
NOTIFY_CHANNEL = "savings_events"


def _dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)


class EventPublisher(ABC):
    """Fire-and-forget event bus. Every detail is stamped with timestamp and stage."""

    def __init__(self, stage: str):
        self.stage = stage

    def publish(self, event_type: EventType, detail: dict[str, Any]) -> None:
        stamped = {
            **detail,
            "timestamp": datetime.now(UTC).isoformat(),
            "stage": self.stage,
        }
        self._put(EventType(event_type), stamped)

    @abstractmethod
    def _put(self, event_type: EventType, detail: dict[str, Any]) -> None:
        ...


class PostgresEventPublisher(EventPublisher):
    """Appends events to savings.events and notifies listeners."""

    def __init__(self, pool: ConnectionPool[Connection[TupleRow]], stage: str):
        super().__init__(stage)
        self._pool = pool

    def _put(self, event_type: EventType, detail: dict[str, Any]) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                """
                INSERT INTO savings.events (source, detail_type, detail)
                VALUES (%s, %s, %s)
                """,
                (EVENT_SOURCE, event_type.value, Jsonb(detail, dumps=_dumps)),
            )
            conn.execute(
                "SELECT pg_notify(%s, %s)",
                (NOTIFY_CHANNEL, _dumps({"detailType": event_type.value, **detail})),
            )


class LoggingEventPublisher(EventPublisher):
    """Writes events to the log. For local runs without an event table."""

    def __init__(self, logger: logging.Logger, stage: str):
        super().__init__(stage)
        self._logger = logger

    def _put(self, event_type: EventType, detail: dict[str, Any]) -> None:
        self._logger.info(f"Event {EVENT_SOURCE}/{event_type.value}: {_dumps(detail)}")
