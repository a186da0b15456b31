"""
Execution contexts — wrap a Result-returning computation with side effects.

The refresh jobs are pure orchestration returning Result[CycleReport]; how they
are run (timed, logged, protected against stray exceptions) lives here.

    ctx = LoggingExecutionContext(operation="domain_refresh")
    result = ctx.execute(run_domain_cycle)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol, TypeVar, runtime_checkable

import structlog

from domain_tracker.railway.failure import ErrorCode, FailureDescription
from domain_tracker.railway.result import Failure, Result

T = TypeVar("T")
log = structlog.get_logger()


@runtime_checkable
class ExecutionContext(Protocol):
    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]: ...


class NoOpExecutionContext:
    """Runs the computation as-is. Used by tests and as the innermost context."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        return computation()


class LoggingExecutionContext:
    """
    Log start, duration and outcome of a computation.

    Any exception escaping the computation is converted into a
    TECHNICAL_ERROR failure, so a scheduler job never dies on a bug
    in a single cycle.
    """

    def __init__(
        self,
        inner: ExecutionContext | None = None,
        operation: str = "unknown",
    ) -> None:
        self._inner = inner or NoOpExecutionContext()
        self._operation = operation

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        log.info("execution.started", operation=self._operation)
        start = time.monotonic()

        try:
            result = self._inner.execute(computation)
        except Exception as e:
            log.exception(
                "execution.crashed",
                operation=self._operation,
                elapsed_seconds=round(time.monotonic() - start, 3),
            )
            return Failure(FailureDescription(ErrorCode.TECHNICAL_ERROR, f"Execution failed: {e}", e))

        log.info(
            "execution.finished",
            operation=self._operation,
            elapsed_seconds=round(time.monotonic() - start, 3),
            outcome="success" if result.is_success() else "failure",
        )
        return result
