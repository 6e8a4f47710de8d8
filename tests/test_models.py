import json
from datetime import UTC, datetime

import pytest

from src.domain.models import ExecutionTask, Frequency, PlanStatus


def test_execution_task_wire_format():
    task = ExecutionTask(
        user_id="user-1",
        plan_id="plan-1",
        execution_time=datetime(2024, 3, 1, 12, tzinfo=UTC),
        execution_id="exec-1",
    )

    assert json.loads(task.to_json()) == {
        "userId": "user-1",
        "planId": "plan-1",
        "executionTime": "2024-03-01T12:00:00+00:00",
        "executionId": "exec-1",
        "attemptCount": 0,
    }


def test_execution_task_from_queue_body():
    task = ExecutionTask.from_json(
        '{"userId": "u", "planId": "p", "executionTime": "2024-03-01T12:00:00+00:00",'
        ' "executionId": "e", "attemptCount": 2}'
    )

    assert task.attempt_count == 2
    assert task.execution_time == datetime(2024, 3, 1, 12, tzinfo=UTC)


def test_execution_task_attempt_count_defaults_to_zero():
    task = ExecutionTask.from_json(
        {"userId": "u", "planId": "p", "executionTime": "2024-03-01T12:00:00", "executionId": "e"}
    )
    assert task.attempt_count == 0


@pytest.mark.parametrize("body", ["not json", '{"userId": "u"}', "[]"])
def test_malformed_task_raises_value_error(body):
    with pytest.raises(ValueError, match="Malformed execution task"):
        ExecutionTask.from_json(body)


def test_enums_round_trip_from_stored_strings():
    assert PlanStatus("PENDING_EXECUTION") is PlanStatus.PENDING_EXECUTION
    assert Frequency("BIWEEKLY") is Frequency.BIWEEKLY
    with pytest.raises(ValueError):
        Frequency("HOURLY")
