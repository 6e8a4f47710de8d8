"""Executor: runs dispatched plans through purchase, recording and rescheduling."""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

from src.domain.errors import (
    DuplicateExecutionError,
    PlanNotFoundError,
    PurchaseFailedError,
)
from src.domain.models import (
    EventType,
    ExecutionTask,
    PlanStatus,
    PurchaseResult,
    SavingsPlan,
    Transaction,
    TransactionStatus,
)
from src.exchange_client import ExchangeClient
from src.infrastructure.events import EventPublisher
from src.infrastructure.queue import QueueMessage
from src.infrastructure.repositories import PlanRepository, TransactionRepository
from src.utils import calculate_next_execution_time, utc_now


class PlanExecutor:
    """Executes savings plan purchases delivered by the dispatch queue."""

    def __init__(
        self,
        plans: PlanRepository,
        transactions: TransactionRepository,
        exchange: ExchangeClient,
        events: EventPublisher,
        logger: logging.Logger,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._plans = plans
        self._transactions = transactions
        self._exchange = exchange
        self._events = events
        self._logger = logger
        self.max_retries = max_retries
        self._clock = clock

    def process_batch(self, messages: list[QueueMessage]) -> list[str]:
        """
        Process a delivered batch sequentially, in delivery order.

        Returns the ids of messages that failed and must be redelivered.
        Every other message counts as processed.
        """
        self._logger.info(f"Processing {len(messages)} execution tasks")
        failures: list[str] = []

        for message in messages:
            try:
                self.process_task(message.task)
            except DuplicateExecutionError as e:
                self._logger.error(f"Duplicate delivery of message {message.message_id}: {e}")
            except Exception as e:
                self._logger.error(f"Failed to process message {message.message_id}: {e}")
                failures.append(message.message_id)

        self._logger.info(
            f"Batch completed: total={len(messages)} "
            f"succeeded={len(messages) - len(failures)} failed={len(failures)}"
        )
        return failures

    def process_task(self, task: ExecutionTask) -> Transaction | None:
        """
        Execute one task.

        Returns the recorded transaction. Raises PurchaseFailedError after a
        failed purchase has been recorded, so the task is retried. Store errors
        and PlanNotFoundError propagate unchanged. A redelivered execution that
        already bought successfully is never purchased again.
        """
        self._logger.info(
            f"Processing execution {task.execution_id} for plan {task.plan_id} "
            f"(user={task.user_id}, attempt={task.attempt_count})"
        )

        previous = self._find_completed(task)
        if previous is not None:
            return self._resume_completed(task, previous)

        if task.attempt_count >= self.max_retries:
            self._logger.error(f"Maximum retry attempts exceeded for plan {task.plan_id}")
            return self._handle_max_retries(task)

        plan = self._plans.get(task.user_id, task.plan_id)

        self._plans.conditional_update_status(
            plan.user_id, plan.plan_id, PlanStatus.EXECUTING
        )
        self._publish(
            EventType.EXECUTION_STARTED,
            {
                "userId": plan.user_id,
                "planId": plan.plan_id,
                "executionId": task.execution_id,
                "amount": str(plan.amount),
                "attemptCount": task.attempt_count,
            },
        )

        result = self._exchange.purchase(
            user_id=plan.user_id,
            amount=plan.amount,
            source_of_funds=plan.source_of_funds,
            idempotency_key=task.execution_id,
        )

        transaction = self._build_transaction(plan, task, result)
        self._record(transaction)

        if result.success:
            self._complete(plan, task, transaction)
            return transaction

        self._logger.error(f"Purchase failed for plan {plan.plan_id}: {result.error_message}")

        self._plans.conditional_update_status(plan.user_id, plan.plan_id, PlanStatus.FAILED)
        self._publish(
            EventType.EXECUTION_FAILED,
            {
                "userId": plan.user_id,
                "planId": plan.plan_id,
                "executionId": task.execution_id,
                "transactionId": transaction.transaction_id,
                "amount": str(plan.amount),
                "errorMessage": result.error_message,
                "attemptCount": task.attempt_count,
            },
        )

        raise PurchaseFailedError(
            task.execution_id, transaction.transaction_id, result.error_message
        )

    def _complete(
        self, plan: SavingsPlan, task: ExecutionTask, transaction: Transaction
    ) -> None:
        """Reschedule the plan after a successful purchase."""
        next_execution_time = calculate_next_execution_time(
            plan.frequency, transaction.timestamp
        )

        self._plans.update_schedule(
            plan.user_id, plan.plan_id, PlanStatus.ACTIVE, next_execution_time
        )
        self._publish(
            EventType.EXECUTION_COMPLETED,
            {
                "userId": plan.user_id,
                "planId": plan.plan_id,
                "executionId": task.execution_id,
                "transactionId": transaction.transaction_id,
                "amount": str(plan.amount),
                "bitcoinAmount": str(transaction.bitcoin_amount),
                "nextExecutionTime": next_execution_time,
            },
        )

        self._logger.info(
            f"Successfully executed plan {plan.plan_id}: "
            f"transaction={transaction.transaction_id} "
            f"btc={transaction.bitcoin_amount} next={next_execution_time}"
        )

    def _handle_max_retries(self, task: ExecutionTask) -> Transaction | None:
        """Fail the plan for good and stop the redelivery cycle. Never calls the exchange."""
        try:
            plan = self._plans.get(task.user_id, task.plan_id)
        except PlanNotFoundError:
            self._logger.warning(
                f"Plan {task.plan_id} for user {task.user_id} no longer exists, "
                f"nothing to fail"
            )
            return None

        self._plans.conditional_update_status(plan.user_id, plan.plan_id, PlanStatus.FAILED)

        error_message = f"Maximum retry attempts ({self.max_retries}) exceeded"
        transaction = Transaction(
            user_id=plan.user_id,
            transaction_id=str(uuid.uuid4()),
            plan_id=plan.plan_id,
            amount=plan.amount,
            bitcoin_amount=Decimal("0"),
            exchange_rate=Decimal("0"),
            status=TransactionStatus.FAILED,
            timestamp=self._clock(),
            error_message=error_message,
            metadata={
                "executionId": task.execution_id,
                "attemptCount": task.attempt_count,
                "maxRetries": self.max_retries,
            },
        )
        self._record(transaction)

        self._publish(
            EventType.EXECUTION_FAILED,
            {
                "userId": plan.user_id,
                "planId": plan.plan_id,
                "executionId": task.execution_id,
                "transactionId": transaction.transaction_id,
                "amount": str(plan.amount),
                "errorMessage": error_message,
                "attemptCount": task.attempt_count,
                "maxRetriesExceeded": True,
            },
        )

        self._logger.info(
            f"Max retries exceeded for plan {plan.plan_id}. Updated status to FAILED."
        )
        return transaction

    def _find_completed(self, task: ExecutionTask) -> Transaction | None:
        for previous in self._transactions.find_by_execution_id(
            task.user_id, task.execution_id
        ):
            if previous.status is TransactionStatus.COMPLETED:
                return previous
        return None

    def _resume_completed(
        self, task: ExecutionTask, previous: Transaction
    ) -> Transaction:
        """
        Handle redelivery of an execution whose purchase already succeeded.

        If the plan is still EXECUTING the reschedule never happened, so it is
        finished from the recorded transaction without buying again. Otherwise
        the delivery is a plain duplicate and DuplicateExecutionError is raised.
        """
        try:
            plan = self._plans.get(task.user_id, task.plan_id)
        except PlanNotFoundError:
            raise DuplicateExecutionError(task.execution_id, previous.transaction_id)

        if plan.status is not PlanStatus.EXECUTING:
            raise DuplicateExecutionError(task.execution_id, previous.transaction_id)

        self._logger.warning(
            f"Execution {task.execution_id} already completed as transaction "
            f"{previous.transaction_id}, finishing reschedule of plan {plan.plan_id}"
        )
        self._complete(plan, task, previous)
        return previous

    def _build_transaction(
        self, plan: SavingsPlan, task: ExecutionTask, result: PurchaseResult
    ) -> Transaction:
        metadata: dict[str, Any] = {
            "executionId": task.execution_id,
            "exchangeTransactionId": result.exchange_transaction_id,
            "attemptCount": task.attempt_count,
            "fees": str(result.fees) if result.fees is not None else None,
        }
        if result.error_details:
            metadata["errorDetails"] = result.error_details

        return Transaction(
            user_id=plan.user_id,
            transaction_id=str(uuid.uuid4()),
            plan_id=plan.plan_id,
            amount=plan.amount,
            bitcoin_amount=result.bitcoin_amount or Decimal("0"),
            exchange_rate=result.exchange_rate or Decimal("0"),
            status=(
                TransactionStatus.COMPLETED if result.success else TransactionStatus.FAILED
            ),
            timestamp=self._clock(),
            error_message=result.error_message,
            metadata=metadata,
        )

    def _record(self, transaction: Transaction) -> None:
        if not self._transactions.insert_if_absent(transaction):
            self._logger.warning(
                f"Transaction {transaction.transaction_id} already recorded, not inserted"
            )

    def _publish(self, event_type: EventType, detail: dict[str, Any]) -> None:
        """Publish without letting a bus failure change the task outcome."""
        try:
            self._events.publish(event_type, detail)
        except Exception as e:
            self._logger.error(f"Failed to publish {event_type.value}: {e}")
