"""Errors raised by the scheduler core."""


class ConfigurationError(Exception):
    """Raised for unsupported settings or values (e.g. an unknown frequency)."""


class PlanNotFoundError(Exception):
    """Raised when a plan does not exist."""

    def __init__(self, user_id: str, plan_id: str):
        self.user_id = user_id
        self.plan_id = plan_id
        super().__init__(f"Savings plan {plan_id} for user {user_id} not found")


class PreconditionFailedError(Exception):
    """Raised when a conditional plan update finds the row missing or changed."""

    def __init__(self, user_id: str, plan_id: str, expected_status: str | None = None):
        self.user_id = user_id
        self.plan_id = plan_id
        self.expected_status = expected_status
        condition = f"status {expected_status}" if expected_status else "existence"
        super().__init__(
            f"Condition ({condition}) failed for plan {plan_id} of user {user_id}"
        )


class DuplicateExecutionError(Exception):
    """Raised when a task is redelivered after its purchase already completed."""

    def __init__(self, execution_id: str, transaction_id: str):
        self.execution_id = execution_id
        self.transaction_id = transaction_id
        super().__init__(
            f"Execution {execution_id} already completed as transaction {transaction_id}"
        )


class ScanFailedError(Exception):
    """Raised when one or more plans of a scan failed after being picked up."""

    def __init__(self, failures: dict[str, BaseException]):
        self.failures = failures
        super().__init__(f"Failed to process {len(failures)} plans")


class PurchaseFailedError(Exception):
    """Raised after a failed purchase has been recorded, to request a retry."""

    def __init__(self, execution_id: str, transaction_id: str, error_message: str | None):
        self.execution_id = execution_id
        self.transaction_id = transaction_id
        self.error_message = error_message
        super().__init__(f"Purchase failed: {error_message}")
