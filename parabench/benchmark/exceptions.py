"""Exception hierarchy for strategy runs and comparisons.

Each failure mode carries the context needed to turn it into a report record,
so a single bad (strategy, backend) combination never aborts a sweep.
"""

from __future__ import annotations

from typing import Any, Optional


class BenchmarkError(Exception):
    """Base exception for all harness errors."""
    pass


class InvalidArgument(BenchmarkError, ValueError):
    """Raised when a request is malformed before anything is dispatched.

    Attributes:
        argument: Name of the offending argument
        value: The rejected value
    """

    def __init__(self, message: str, argument: str, value: Any):
        super().__init__(message)
        self.argument = argument
        self.value = value


class SerializationError(BenchmarkError):
    """Raised when a task cannot cross the process boundary.

    Attributes:
        target: Description of the object that failed to pickle
        original_error: The pickling error
    """

    def __init__(
        self,
        message: str,
        target: str,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.target = target
        self.original_error = original_error


class WorkerFailure(BenchmarkError):
    """Raised when a worker raised while running its task.

    Attributes:
        index: Index of the failing worker (its partition index)
        cause: The exception raised inside the worker
    """

    def __init__(self, index: int, cause: BaseException):
        super().__init__(f"worker {index} failed: {type(cause).__name__}: {cause}")
        self.index = index
        self.cause = cause


class BenchmarkTimeoutError(BenchmarkError):
    """Raised when a run exceeds its watchdog timeout.

    Attributes:
        timeout_seconds: Configured limit
        elapsed_seconds: Time waited before giving up
    """

    def __init__(self, message: str, timeout_seconds: float, elapsed_seconds: float):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds
