"""
Registration resolution with ordered fallback between sources.

The resolver walks its sources in order (RDAP, then WHOIS in production) and
returns the first successful Registration. When every source fails the result
is a RESOLUTION_ERROR whose exception is a ResolutionError listing each
attempt, so callers can still tell "no data anywhere" (all NOT_FOUND) from
"a registry answered with junk" (PARSE_ERROR) or an outage.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from domain_tracker.domain.models import Registration
from domain_tracker.domain.ports import RegistrationSource
from domain_tracker.railway import ErrorCode, FailureDescription
from domain_tracker.railway.result import Result

log = structlog.get_logger()


class ResolutionError(Exception):
    """Every registration source failed for one domain."""

    def __init__(self, domain: str, attempts: Sequence[tuple[str, FailureDescription]]) -> None:
        self.domain = domain
        self.attempts = tuple(attempts)
        summary = "; ".join(f"{source}: {failure}" for source, failure in self.attempts)
        super().__init__(f"{domain}: {summary}")

    @property
    def not_found_everywhere(self) -> bool:
        return bool(self.attempts) and all(f.code is ErrorCode.NOT_FOUND for _, f in self.attempts)


class FallbackRegistrationResolver:
    """Implements the RegistrationResolver port over an ordered list of sources."""

    def __init__(self, sources: Sequence[RegistrationSource]) -> None:
        if not sources:
            raise ValueError("At least one registration source is required")
        self._sources = tuple(sources)

    def resolve(self, domain: str) -> Result[Registration]:
        name = domain.strip().lower().rstrip(".")
        attempts: list[tuple[str, FailureDescription]] = []

        for source in self._sources:
            result = source.lookup(name)
            if result.is_success():
                if attempts:
                    log.info("resolver.fallback_succeeded", domain=name, source=source.name)
                return result
            failure = result.error()
            attempts.append((source.name, failure))
            log.warning(
                "resolver.source_failed",
                domain=name,
                source=source.name,
                code=failure.code.value,
                error=failure.describe(),
            )

        error = ResolutionError(name, attempts)
        return Result.failure(ErrorCode.RESOLUTION_ERROR, f"No registration source could resolve {name}", error)
