"""
Error taxonomy for the worker.

Every exception carries a ``category`` used for structured logging when the
pipeline fails. Expected outcomes ("lock already held", "no work items") are
returned as data and never raised.
"""

from __future__ import annotations


class KiroWorkerError(Exception):
    """Base class for all worker errors."""

    category = "unknown"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(KiroWorkerError):
    """A precondition (branch, spec folder, pull request, config) is missing."""

    category = "validation"

    def __init__(self, message: str, validation_type: str = "", errors: list[str] | None = None):
        super().__init__(message)
        self.validation_type = validation_type
        self.errors = list(errors or [])


class ConfigurationError(ValidationError):
    """Required settings are missing or invalid."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message, "configuration", errors)


class GitOperationError(KiroWorkerError):
    category = "git-operation"

    def __init__(self, message: str, operation: str):
        super().__init__(message)
        self.operation = operation


class KiroCLIError(KiroWorkerError):
    """The code-generation CLI failed, or its output could not be collected."""

    category = "kiro-cli"

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_code: int | None = None,
        output: str = "",
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.output = output
        self.timed_out = timed_out


class TestFailureError(KiroWorkerError):
    __test__ = False  # not a pytest class

    category = "test-failure"

    def __init__(self, message: str, failed_count: int, total_count: int, failures: list | None = None):
        super().__init__(message)
        self.failed_count = failed_count
        self.total_count = total_count
        self.failures = list(failures or [])


class TestExecutionError(KiroWorkerError):
    """The test or coverage command could not produce a usable result."""

    __test__ = False

    category = "test-failure"


class CoverageThresholdError(KiroWorkerError):
    category = "coverage-threshold"

    def __init__(self, message: str, percentage: float, threshold: float, below: list[str] | None = None):
        super().__init__(message)
        self.percentage = percentage
        self.threshold = threshold
        self.below = list(below or [])


class PRUpdateError(KiroWorkerError):
    category = "pr-update"

    def __init__(self, message: str, operation: str = "update"):
        super().__init__(message)
        self.operation = operation


class LockAcquisitionError(KiroWorkerError):
    """Store-level failure while acquiring or querying locks."""

    category = "lock-acquisition"

    def __init__(self, message: str, lock_key: str = ""):
        super().__init__(message)
        self.lock_key = lock_key


class WorkItemError(KiroWorkerError):
    """The work item source could not be queried."""

    category = "work-item"

    def __init__(self, message: str, work_item_id: str | None = None):
        super().__init__(message)
        self.work_item_id = work_item_id


def categorize_error(error: BaseException) -> tuple[str, str]:
    """Return ``(message, category)`` for structured failure logging."""
    if isinstance(error, KiroWorkerError):
        return error.message, error.category
    return str(error) or type(error).__name__, "unknown"
