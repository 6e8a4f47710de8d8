"""Repository interfaces and implementations for persistence."""

import json
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from psycopg import Connection
from psycopg.rows import TupleRow
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from src.domain.errors import PlanNotFoundError, PreconditionFailedError
from src.domain.models import (
    Frequency,
    PlanStatus,
    SavingsPlan,
    Transaction,
    TransactionStatus,
)

_PLAN_COLUMNS = """
    user_id, plan_id, amount, frequency, source_of_funds, status,
    next_execution_time, start_date, end_date, created_at, updated_at
"""

_TRANSACTION_COLUMNS = """
    user_id, transaction_id, plan_id, amount, bitcoin_amount, exchange_rate,
    status, timestamp, error_message, metadata
"""


def _dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)


class PlanRepository(ABC):
    """Abstract savings plan store."""

    @abstractmethod
    def get(self, user_id: str, plan_id: str) -> SavingsPlan:
        """Get a plan by key. Raises PlanNotFoundError if absent."""
        ...

    @abstractmethod
    def query_due(self, status: PlanStatus, now: int, limit: int) -> list[SavingsPlan]:
        """Plans with the given status and next_execution_time <= now. Order is unspecified."""
        ...

    @abstractmethod
    def conditional_update_status(
        self,
        user_id: str,
        plan_id: str,
        new_status: PlanStatus,
        expected_status: PlanStatus | None = None,
    ) -> None:
        """
        Set the plan status if the plan exists (and, when given, currently has
        expected_status). Raises PreconditionFailedError otherwise.
        """
        ...

    @abstractmethod
    def update_schedule(
        self,
        user_id: str,
        plan_id: str,
        new_status: PlanStatus,
        next_execution_time: int,
    ) -> None:
        """Set status and next execution time of an existing plan."""
        ...


class TransactionRepository(ABC):
    """Abstract transaction store."""

    @abstractmethod
    def insert_if_absent(self, transaction: Transaction) -> bool:
        """Insert unless (user_id, transaction_id) exists. Returns False if it did."""
        ...

    @abstractmethod
    def find_by_execution_id(self, user_id: str, execution_id: str) -> list[Transaction]:
        """All transactions recorded for one dispatch of a plan."""
        ...


class PostgresPlanRepository(PlanRepository):
    """PostgreSQL implementation of the plan store."""

    def __init__(self, pool: ConnectionPool[Connection[TupleRow]]):
        self._pool = pool

    def get(self, user_id: str, plan_id: str) -> SavingsPlan:
        with self._pool.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_PLAN_COLUMNS}
                FROM savings.plans
                WHERE user_id = %s AND plan_id = %s
                """,
                (user_id, plan_id),
            ).fetchone()

        if row is None:
            raise PlanNotFoundError(user_id, plan_id)

        return _plan_from_row(row)

    def query_due(self, status: PlanStatus, now: int, limit: int) -> list[SavingsPlan]:
        # Served by the (status, next_execution_time) index
        with self._pool.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_PLAN_COLUMNS}
                FROM savings.plans
                WHERE status = %s AND next_execution_time <= %s
                LIMIT %s
                """,
                (status.value, now, limit),
            ).fetchall()

        return [_plan_from_row(row) for row in rows]

    def conditional_update_status(
        self,
        user_id: str,
        plan_id: str,
        new_status: PlanStatus,
        expected_status: PlanStatus | None = None,
    ) -> None:
        query = """
            UPDATE savings.plans
            SET status = %s, updated_at = %s
            WHERE user_id = %s AND plan_id = %s
        """
        params: list[Any] = [new_status.value, datetime.now(UTC), user_id, plan_id]

        if expected_status is not None:
            query += " AND status = %s"
            params.append(expected_status.value)

        with self._pool.connection() as conn:
            row = conn.execute(query + " RETURNING plan_id", params).fetchone()

        if row is None:
            raise PreconditionFailedError(
                user_id, plan_id, expected_status.value if expected_status else None
            )

    def update_schedule(
        self,
        user_id: str,
        plan_id: str,
        new_status: PlanStatus,
        next_execution_time: int,
    ) -> None:
        with self._pool.connection() as conn:
            row = conn.execute(
                """
                UPDATE savings.plans
                SET status = %s, next_execution_time = %s, updated_at = %s
                WHERE user_id = %s AND plan_id = %s
                RETURNING plan_id
                """,
                (
                    new_status.value,
                    next_execution_time,
                    datetime.now(UTC),
                    user_id,
                    plan_id,
                ),
            ).fetchone()

        if row is None:
            raise PreconditionFailedError(user_id, plan_id)


class PostgresTransactionRepository(TransactionRepository):
    """PostgreSQL implementation of the transaction store."""

    def __init__(self, pool: ConnectionPool[Connection[TupleRow]]):
        self._pool = pool

    def insert_if_absent(self, transaction: Transaction) -> bool:
        with self._pool.connection() as conn:
            row = conn.execute(
                f"""
                INSERT INTO savings.transactions ({_TRANSACTION_COLUMNS}, execution_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, transaction_id) DO NOTHING
                RETURNING transaction_id
                """,
                (
                    transaction.user_id,
                    transaction.transaction_id,
                    transaction.plan_id,
                    transaction.amount,
                    transaction.bitcoin_amount,
                    transaction.exchange_rate,
                    transaction.status.value,
                    transaction.timestamp,
                    transaction.error_message,
                    Jsonb(transaction.metadata, dumps=_dumps),
                    transaction.execution_id,
                ),
            ).fetchone()

        return row is not None

    def find_by_execution_id(self, user_id: str, execution_id: str) -> list[Transaction]:
        with self._pool.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TRANSACTION_COLUMNS}
                FROM savings.transactions
                WHERE user_id = %s AND execution_id = %s
                ORDER BY timestamp
                """,
                (user_id, execution_id),
            ).fetchall()

        return [_transaction_from_row(row) for row in rows]


def _plan_from_row(row: tuple[Any, ...]) -> SavingsPlan:
    return SavingsPlan(
        user_id=row[0],
        plan_id=row[1],
        amount=row[2],
        frequency=Frequency(row[3]),
        source_of_funds=row[4],
        status=PlanStatus(row[5]),
        next_execution_time=row[6],
        start_date=row[7],
        end_date=row[8],
        created_at=row[9],
        updated_at=row[10],
    )


def _transaction_from_row(row: tuple[Any, ...]) -> Transaction:
    return Transaction(
        user_id=row[0],
        transaction_id=row[1],
        plan_id=row[2],
        amount=row[3],
        bitcoin_amount=row[4],
        exchange_rate=row[5],
        status=TransactionStatus(row[6]),
        timestamp=row[7],
        error_message=row[8],
        metadata=row[9] or {},
    )
