"""
Typed exception hierarchy for orderbox.

Every error has a typed class (catch by type, not by message), a ``code``
class attribute (machine-readable) and structured attributes carrying the
data a caller needs to report the failure.

    OrderboxError (base)
    |
    +-- BatchError
    |   +-- BatchHookError
    |   +-- BatchContractError
    |   +-- BatchTimeoutError
    |   +-- JobAlreadyRunningError
    |   +-- TaskNotRegisteredError
    |
    +-- ConfigError
    |
    +-- RepositoryError

Item-level failures are NOT exceptions at the runner boundary: they are
returned as failed ``ItemResult`` values and counted.  Only failures that
abort a whole run surface as ``BatchError`` subclasses.
"""


class OrderboxError(Exception):
    """
    Base exception for all orderbox errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "ORDERBOX_ERROR"


# Batch engine exceptions


class BatchError(OrderboxError):
    """Base exception for batch engine errors."""

    code: str = "BATCH_ERROR"


class BatchHookError(BatchError):
    """A chunk hook (``before_batch``, ``process_batch`` or ``after_batch``) raised; the run was aborted."""

    code: str = "BATCH_HOOK_FAILED"

    def __init__(
        self,
        task_name: str,
        hook: str,
        batch_number: int,
        message: str,
    ):
        self.task_name = task_name
        self.hook = hook
        self.batch_number = batch_number
        self.message = message
        super().__init__(
            f"{task_name}: {hook} failed on batch {batch_number}: {message}"
        )


class BatchContractError(BatchError):
    """``process_batch`` returned a result count that does not match its inputs."""

    code: str = "BATCH_CONTRACT_VIOLATION"

    def __init__(
        self,
        task_name: str,
        batch_number: int,
        expected: int,
        actual: int,
    ):
        self.task_name = task_name
        self.batch_number = batch_number
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{task_name}: process_batch returned {actual} results "
            f"for {expected} inputs on batch {batch_number}"
        )


class BatchTimeoutError(BatchError):
    """The run exceeded its wall-clock timeout."""

    code: str = "BATCH_TIMEOUT"

    def __init__(self, task_name: str, timeout_seconds: float):
        self.task_name = task_name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{task_name}: timed out after {timeout_seconds:g} seconds"
        )


class JobAlreadyRunningError(BatchError):
    """A run of the same job type is already in progress."""

    code: str = "JOB_ALREADY_RUNNING"

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Job '{job_type}' is already running")


class TaskNotRegisteredError(BatchError):
    """No task is registered for the requested job type."""

    code: str = "TASK_NOT_REGISTERED"

    def __init__(self, job_type: str, available: tuple[str, ...]):
        self.job_type = job_type
        self.available = available
        super().__init__(
            f"No task registered for type '{job_type}'. "
            f"Available: {list(available)}"
        )


# Configuration exceptions


class ConfigError(OrderboxError):
    """A configuration value is missing, malformed or out of range."""

    code: str = "CONFIG_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration '{key}': {reason}")


# Persistence exceptions


class RepositoryError(OrderboxError):
    """A repository operation failed."""

    code: str = "REPOSITORY_ERROR"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} failed: {reason}")
