"""
Result — the two-track return type used across domain-tracker.

A Result[T] is either Success(value) or Failure(FailureDescription). Adapters
return Results instead of raising, so the refresh cycles can decide per asset
whether to skip, abort or carry on without try/except at every call site.

    registry.lookup(name)          ──Success──► repository.update_domain(...)
          │ Failure                                   │ Failure
          └──────────────► logged, asset skipped ◄────┘
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from domain_tracker.railway.failure import ErrorCode, FailureDescription

T = TypeVar("T")
U = TypeVar("U")
R = TypeVar("R")


class Result(Generic[T]):
    """
    Base of Success and Failure.

        >>> Result.success(3).map(lambda x: x + 1)
        Success(4)
        >>> Result.failure(ErrorCode.NOT_FOUND, "nope").map(lambda x: x + 1).is_failure()
        True
    """

    # ──────────────────────── Introspection ────────────────────────

    def is_success(self) -> bool:
        return isinstance(self, Success)

    def is_failure(self) -> bool:
        return isinstance(self, Failure)

    def value(self) -> T:
        """Success value. Raises ValueError on a Failure."""
        match self:
            case Success(v):
                return v
            case Failure(err):
                raise ValueError(f"Cannot get value from a Failure: {err.message}")
        raise TypeError("unreachable")  # pragma: no cover

    def error(self) -> FailureDescription:
        """Failure description. Raises ValueError on a Success."""
        match self:
            case Failure(err):
                return err
            case Success(v):
                raise ValueError(f"Cannot get error from a Success: {v!r}")
        raise TypeError("unreachable")  # pragma: no cover

    # ──────────────────────── Transformations ────────────────────────

    def either(
        self,
        on_success: Callable[[T], R],
        on_failure: Callable[[FailureDescription], R],
    ) -> R:
        match self:
            case Success(v):
                return on_success(v)
            case Failure(err):
                return on_failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def map(self, mapper: Callable[[T], U]) -> Result[U]:
        match self:
            case Success(v):
                return Success(mapper(v))
            case Failure(err):
                return Failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def flat_map(self, mapper: Callable[[T], Result[U]]) -> Result[U]:
        """Chain a Result-returning step; a Failure short-circuits the chain."""
        match self:
            case Success(v):
                return mapper(v)
            case Failure(err):
                return Failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def map_failure(self, mapper: Callable[[FailureDescription], FailureDescription]) -> Result[T]:
        match self:
            case Failure(err):
                return Failure(mapper(err))
        return self

    # ──────────────────────── Side Effects ────────────────────────

    def peek(self, action: Callable[[T], Any]) -> Result[T]:
        match self:
            case Success(v):
                action(v)
        return self

    def peek_failure(self, action: Callable[[FailureDescription], Any]) -> Result[T]:
        match self:
            case Failure(err):
                action(err)
        return self

    # ──────────────────────── Recovery ────────────────────────

    def recover(self, recovery_fn: Callable[[FailureDescription], T]) -> Result[T]:
        match self:
            case Failure(err):
                return Success(recovery_fn(err))
        return self

    def get_or_else(self, default: T) -> T:
        match self:
            case Success(v):
                return v
        return default

    # ──────────────────────── Factories ────────────────────────

    @staticmethod
    def success(value: T) -> Result[T]:
        return Success(value)

    @staticmethod
    def failure(
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
    ) -> Result[T]:
        return Failure(FailureDescription(code=code, message=message, exception=exception))

    @staticmethod
    def failure_from(error: FailureDescription) -> Result[T]:
        return Failure(error)

    @staticmethod
    def from_computation(
        computation: Callable[[], T],
        error_code: ErrorCode,
        error_message: str,
    ) -> Result[T]:
        """
        Run a computation that may raise, capturing any exception as a Failure.

        This is the adapter boundary: everything below it may raise,
        everything above it only sees Results.
        """
        try:
            return Result.success(computation())
        except Exception as e:
            return Result.failure(error_code, error_message, e)

    # ──────────────────────── Dunder ────────────────────────

    def __bool__(self) -> bool:
        return self.is_success()


@dataclass(frozen=True, slots=True)
class Success(Result[T]):
    """Happy track. None is not a valid payload; use an empty container instead."""

    _value: T

    def __init__(self, value: T) -> None:
        if value is None:
            raise TypeError("Success value must not be None")
        object.__setattr__(self, "_value", value)

    def __repr__(self) -> str:
        return f"Success({self._value!r})"


Success.__match_args__ = ("_value",)


@dataclass(frozen=True, slots=True)
class Failure(Result[T]):
    """Error track."""

    _error: FailureDescription

    def __init__(self, error: FailureDescription) -> None:
        if error is None:
            raise TypeError("Failure error must not be None")
        object.__setattr__(self, "_error", error)

    def __repr__(self) -> str:
        return f"Failure({self._error.code.value}: {self._error.message!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Failure):
            return self._error.code == other._error.code and self._error.message == other._error.message
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("Failure", self._error.code, self._error.message))


Failure.__match_args__ = ("_error",)
