"""Scanner: picks up due plans and dispatches them for execution."""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime

from src.domain.errors import PreconditionFailedError, ScanFailedError
from src.domain.models import EventType, ExecutionTask, PlanStatus, SavingsPlan
from src.infrastructure.events import EventPublisher
from src.infrastructure.queue import DispatchQueue
from src.infrastructure.repositories import PlanRepository
from src.utils import now_epoch


@dataclass
class ScanResult:
    """Outcome of one scan run."""

    total: int = 0
    scheduled: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, BaseException] = field(default_factory=dict)


class PlanScanner:
    """Moves due ACTIVE plans to PENDING_EXECUTION and enqueues one task each."""

    def __init__(
        self,
        plans: PlanRepository,
        queue: DispatchQueue,
        events: EventPublisher,
        logger: logging.Logger,
        batch_size: int = 25,
        max_workers: int = 10,
    ):
        self._plans = plans
        self._queue = queue
        self._events = events
        self._logger = logger
        self.batch_size = batch_size
        self.max_workers = max_workers

    def run(self, now: int | None = None) -> ScanResult:
        """
        Run one scan.

        Plans are processed concurrently and independently. Plans whose status
        changed underneath us are skipped. Raises ScanFailedError after all
        plans finish if any plan failed once it had been picked up.
        """
        now = now_epoch() if now is None else now
        self._logger.info(f"Scanning for plans due at {now} (limit {self.batch_size})")

        plans = self._plans.query_due(PlanStatus.ACTIVE, now, self.batch_size)
        result = ScanResult(total=len(plans))

        if not plans:
            self._logger.info("No savings plans found due for execution")
            return result

        self._logger.info(f"Found {len(plans)} savings plans due for execution")

        workers = max(1, min(self.max_workers, len(plans)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                _plan_key(plan): pool.submit(self._dispatch, plan) for plan in plans
            }

        for key, future in futures.items():
            error = future.exception()
            if error is None:
                result.scheduled.append(key)
            elif isinstance(error, PreconditionFailedError):
                result.skipped.append(key)
            else:
                result.failed[key] = error

        self._logger.info(
            f"Scan completed: total={result.total} scheduled={len(result.scheduled)} "
            f"skipped={len(result.skipped)} failed={len(result.failed)}"
        )

        if result.failed:
            for key, error in result.failed.items():
                self._logger.error(f"Failed to process plan {key}: {error}")
            raise ScanFailedError(result.failed)

        return result

    def _dispatch(self, plan: SavingsPlan) -> str:
        """Claim one plan and enqueue it. Returns the execution id."""
        execution_id = str(uuid.uuid4())
        scheduled_time = datetime.now(UTC)

        self._logger.debug(f"Processing plan {plan.plan_id} for user {plan.user_id}")

        try:
            self._plans.conditional_update_status(
                plan.user_id,
                plan.plan_id,
                PlanStatus.PENDING_EXECUTION,
                expected_status=PlanStatus.ACTIVE,
            )
        except PreconditionFailedError:
            self._logger.warning(
                f"Plan {plan.plan_id} for user {plan.user_id} is gone or no longer "
                f"ACTIVE, skipping"
            )
            raise

        try:
            task = ExecutionTask(
                user_id=plan.user_id,
                plan_id=plan.plan_id,
                execution_time=scheduled_time,
                execution_id=execution_id,
                attempt_count=0,
            )
            self._queue.send(task, dedup_key=execution_id, order_key=plan.user_id)

            self._events.publish(
                EventType.EXECUTION_SCHEDULED,
                {
                    "userId": plan.user_id,
                    "planId": plan.plan_id,
                    "executionId": execution_id,
                    "amount": str(plan.amount),
                    "frequency": plan.frequency.value,
                    "scheduledTime": scheduled_time.isoformat(),
                },
            )
        except Exception as e:
            self._logger.error(
                f"Error dispatching plan {plan.plan_id} for user {plan.user_id}: {e}"
            )
            self._revert(plan)
            raise

        self._logger.info(
            f"Plan {plan.plan_id} for user {plan.user_id} scheduled "
            f"(executionId={execution_id})"
        )
        return execution_id

    def _revert(self, plan: SavingsPlan) -> None:
        """Best-effort return of a claimed plan to ACTIVE."""
        try:
            self._plans.conditional_update_status(
                plan.user_id,
                plan.plan_id,
                PlanStatus.ACTIVE,
                expected_status=PlanStatus.PENDING_EXECUTION,
            )
        except Exception as e:
            # Left in PENDING_EXECUTION until reconciled by hand
            self._logger.error(f"Failed to revert plan {plan.plan_id} to ACTIVE: {e}")


def _plan_key(plan: SavingsPlan) -> str:
    return f"{plan.user_id}/{plan.plan_id}"
