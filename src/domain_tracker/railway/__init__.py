"""
Railway-oriented error handling for domain-tracker.

Adapters return Result[T]; orchestration chains them with flat_map and
inspects the ErrorCode of failures instead of catching exceptions.
"""

from domain_tracker.railway.assertions import ResultAssertions
from domain_tracker.railway.execution import (
    ExecutionContext,
    LoggingExecutionContext,
    NoOpExecutionContext,
)
from domain_tracker.railway.failure import ErrorCode, FailureDescription
from domain_tracker.railway.result import Failure, Result, Success

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultAssertions",
]
