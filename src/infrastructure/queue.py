"""Dispatch queue between the scanner and the executor."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from psycopg import Connection
from psycopg.rows import TupleRow
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from src.domain.models import ExecutionTask


@dataclass
class QueueMessage:
    """A delivered task plus the handle used to ack or fail it."""

    message_id: str
    task: ExecutionTask


class DispatchQueue(ABC):
    """
    Ordered, deduplicating, at-least-once delivery channel.

    Messages sharing an order key are delivered one at a time in send order.
    A failed message is redelivered with attempt_count incremented until the
    queue's receive limit, after which it is dead-lettered.
    """

    @abstractmethod
    def send(self, task: ExecutionTask, dedup_key: str, order_key: str) -> None:
        """Enqueue a task. A repeated dedup_key is ignored."""
        ...

    @abstractmethod
    def receive(self, max_messages: int) -> list[QueueMessage]:
        """Receive up to max_messages, in delivery order."""
        ...

    @abstractmethod
    def ack(self, message_id: str) -> None:
        """Mark a message as processed."""
        ...

    @abstractmethod
    def fail(self, message_id: str) -> None:
        """Return a message for redelivery."""
        ...


class PostgresDispatchQueue(DispatchQueue):
    """PostgreSQL-backed dispatch queue (savings.dispatch_queue)."""

    def __init__(
        self,
        pool: ConnectionPool[Connection[TupleRow]],
        max_receive_count: int = 4,
        visibility_timeout: int = 300,
        logger: logging.Logger | None = None,
    ):
        self._pool = pool
        self.max_receive_count = max_receive_count
        self.visibility_timeout = visibility_timeout
        self._logger = logger

    def _log(self, level: int, msg: str) -> None:
        """Log a message if logger is configured."""
        if self._logger:
            self._logger.log(level, msg)

    def send(self, task: ExecutionTask, dedup_key: str, order_key: str) -> None:
        with self._pool.connection() as conn:
            row = conn.execute(
                """
                INSERT INTO savings.dispatch_queue (dedup_key, group_key, body)
                VALUES (%s, %s, %s)
                ON CONFLICT (dedup_key) DO NOTHING
                RETURNING id
                """,
                (dedup_key, order_key, Jsonb(task.to_dict())),
            ).fetchone()

        if row is None:
            self._log(logging.WARNING, f"Duplicate message {dedup_key} ignored")

    def receive(self, max_messages: int) -> list[QueueMessage]:
        with self._pool.connection() as conn:
            dead = conn.execute(
                """
                UPDATE savings.dispatch_queue
                SET dead_lettered_at = now()
                WHERE dead_lettered_at IS NULL
                  AND receive_count >= %s
                  AND visible_at <= now()
                RETURNING dedup_key
                """,
                (self.max_receive_count,),
            ).fetchall()

            for (dedup_key,) in dead:
                self._log(logging.ERROR, f"Message {dedup_key} moved to dead-letter")

            # Only the oldest live message of each group is eligible, and only
            # while it is not in flight, so one owner's tasks never overlap.
            rows = conn.execute(
                """
                WITH heads AS (
                    SELECT DISTINCT ON (group_key) id, visible_at
                    FROM savings.dispatch_queue
                    WHERE dead_lettered_at IS NULL
                    ORDER BY group_key, id
                ),
                ready AS (
                    SELECT q.id
                    FROM savings.dispatch_queue q
                    JOIN heads h ON h.id = q.id
                    WHERE h.visible_at <= now()
                    ORDER BY q.id
                    LIMIT %s
                    FOR UPDATE OF q SKIP LOCKED
                )
                UPDATE savings.dispatch_queue q
                SET receive_count = q.receive_count + 1,
                    visible_at = now() + %s * interval '1 second'
                FROM ready
                WHERE q.id = ready.id
                RETURNING q.id, q.body, q.receive_count
                """,
                (max_messages, self.visibility_timeout),
            ).fetchall()

        messages = []
        for message_id, body, receive_count in sorted(rows, key=lambda r: r[0]):
            try:
                task = ExecutionTask.from_json(body)
            except ValueError as e:
                self._log(logging.ERROR, f"Unreadable message {message_id}: {e}")
                self._dead_letter(message_id)
                continue

            task.attempt_count = receive_count - 1
            messages.append(QueueMessage(message_id=str(message_id), task=task))

        return messages

    def _dead_letter(self, message_id: int) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                "UPDATE savings.dispatch_queue SET dead_lettered_at = now() WHERE id = %s",
                (message_id,),
            )

    def ack(self, message_id: str) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                "DELETE FROM savings.dispatch_queue WHERE id = %s",
                (int(message_id),),
            )

    def fail(self, message_id: str) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                "UPDATE savings.dispatch_queue SET visible_at = now() WHERE id = %s",
                (int(message_id),),
            )
