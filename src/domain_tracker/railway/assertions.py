"""
Test helpers for Result values.

    value = ResultAssertions.assert_success(resolver.resolve("example.com"))
    ResultAssertions.assert_failure(result, ErrorCode.RESOLUTION_ERROR)
"""

from __future__ import annotations

from typing import TypeVar

from domain_tracker.railway.failure import ErrorCode, FailureDescription
from domain_tracker.railway.result import Result

T = TypeVar("T")


class ResultAssertions:
    """Assertions with readable messages for either track."""

    @staticmethod
    def assert_success(result: Result[T]) -> T:
        assert result.is_success(), f"Expected Success but got {result!r} ({result.error().describe()})"
        return result.value()

    @staticmethod
    def assert_failure(result: Result[T], expected_code: ErrorCode | None = None) -> FailureDescription:
        assert result.is_failure(), f"Expected Failure but got {result!r}"
        error = result.error()
        if expected_code is not None:
            assert error.code == expected_code, (
                f"Expected error code {expected_code.value} but got {error.code.value}: {error.message!r}"
            )
        return error

    @staticmethod
    def assert_failure_message_contains(result: Result[T], substring: str) -> None:
        error = ResultAssertions.assert_failure(result)
        assert substring.lower() in error.message.lower(), (
            f"Expected failure message to contain {substring!r} but message was: {error.message!r}"
        )
