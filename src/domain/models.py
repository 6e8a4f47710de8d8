"""Domain models for the savings plan scheduler."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class Frequency(str, Enum):
    """How often a plan buys."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class PlanStatus(str, Enum):
    """
    Plan lifecycle.

    The scheduler only moves plans along
    ACTIVE -> PENDING_EXECUTION -> EXECUTING -> ACTIVE | FAILED.
    PAUSED, COMPLETED and CANCELLED are set by the plan owner's side.
    """

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    PENDING_EXECUTION = "PENDING_EXECUTION"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EventType(str, Enum):
    PLAN_CREATED = "PLAN_CREATED"
    PLAN_UPDATED = "PLAN_UPDATED"
    PLAN_DELETED = "PLAN_DELETED"
    EXECUTION_SCHEDULED = "EXECUTION_SCHEDULED"
    EXECUTION_STARTED = "EXECUTION_STARTED"
    EXECUTION_COMPLETED = "EXECUTION_COMPLETED"
    EXECUTION_FAILED = "EXECUTION_FAILED"


@dataclass
class SavingsPlan:
    """Recurring purchase configured by a user, keyed by (user_id, plan_id)."""

    user_id: str
    plan_id: str
    amount: Decimal
    frequency: Frequency
    source_of_funds: str
    status: PlanStatus
    next_execution_time: int
    start_date: datetime
    created_at: datetime
    updated_at: datetime
    end_date: datetime | None = None


@dataclass
class ExecutionTask:
    """One dispatch attempt of a plan, as carried on the dispatch queue."""

    user_id: str
    plan_id: str
    execution_time: datetime
    execution_id: str
    attempt_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "planId": self.plan_id,
            "executionTime": self.execution_time.isoformat(),
            "executionId": self.execution_id,
            "attemptCount": self.attempt_count,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, body: str | bytes | dict[str, Any]) -> "ExecutionTask":
        """Parse a queue message body. Raises ValueError on malformed input."""
        try:
            data = body if isinstance(body, dict) else json.loads(body)
            return cls(
                user_id=str(data["userId"]),
                plan_id=str(data["planId"]),
                execution_time=datetime.fromisoformat(data["executionTime"]),
                execution_id=str(data["executionId"]),
                attempt_count=int(data.get("attemptCount", 0)),
            )
        except (KeyError, TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"Malformed execution task: {e}") from e


@dataclass
class Transaction:
    """Outcome of one purchase attempt. Written once, never updated."""

    user_id: str
    transaction_id: str
    plan_id: str
    amount: Decimal
    bitcoin_amount: Decimal
    exchange_rate: Decimal
    status: TransactionStatus
    timestamp: datetime
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def execution_id(self) -> str | None:
        return self.metadata.get("executionId")


@dataclass
class PurchaseResult:
    """Result of an exchange purchase call."""

    success: bool
    exchange_transaction_id: str | None = None
    bitcoin_amount: Decimal | None = None
    exchange_rate: Decimal | None = None
    fees: Decimal | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
