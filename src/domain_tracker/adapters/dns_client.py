"""
DNS-over-HTTPS adapter — record lookups against a public JSON resolver.

Implements the RecordResolver port against the Google JSON API
(GET https://dns.google/resolve?name=...&type=...). Only answers with
Status == 0 (NOERROR) are accepted; answer records are filtered to the
requested type (the answer section also carries CNAME hops) and lowercased.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from domain_tracker.domain.models import DnsSnapshot
from domain_tracker.railway import ErrorCode
from domain_tracker.railway.result import Result

log = structlog.get_logger()

RECORD_TYPES: dict[str, int] = {
    "A": 1,
    "NS": 2,
    "CNAME": 5,
    "MX": 15,
    "TXT": 16,
    "AAAA": 28,
}


class DohRecordResolver:
    """Resolve record sets over DNS-over-HTTPS with httpx."""

    def __init__(self, doh_url: str = "https://dns.google/resolve", timeout: int = 20) -> None:
        self._doh_url = doh_url
        self._timeout = timeout

    def lookup(self, domain: str, record_type: str) -> Result[list[str]]:
        """
        Record values for `domain`, or a failure.

        Success([]) means the resolver answered and had no records of that
        type; Failure means there is no answer to trust.
        """
        rtype = record_type.upper()
        if rtype not in RECORD_TYPES:
            return Result.failure(ErrorCode.VALIDATION_ERROR, f"Unsupported record type {record_type!r}")
        return (
            Result.from_computation(
                lambda: self._query(domain, rtype),
                ErrorCode.CONNECTION_ERROR,
                f"DoH query {rtype} {domain} failed",
            )
            .flat_map(lambda body: _answers(domain, rtype, body))
        )

    def resolve_records(self, domain: str, record_type: str) -> list[str]:
        """Soft variant of lookup: failures are logged and reported as no data."""
        result = self.lookup(domain, record_type)
        if result.is_failure():
            log.warning("dns.lookup_failed", domain=domain, type=record_type, error=result.error().describe())
            return []
        return result.value()

    def snapshot(self, domain: str) -> DnsSnapshot:
        return DnsSnapshot(
            a=tuple(self.resolve_records(domain, "A")),
            aaaa=tuple(self.resolve_records(domain, "AAAA")),
            mx=tuple(self.resolve_records(domain, "MX")),
            ns=tuple(self.resolve_records(domain, "NS")),
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _query(self, domain: str, rtype: str) -> dict[str, Any]:
        with httpx.Client(timeout=self._timeout) as client:
            response = client.get(
                self._doh_url,
                params={"name": domain, "type": rtype},
                headers={"Accept": "application/dns-json"},
            )
            response.raise_for_status()
            body: dict[str, Any] = response.json()
            return body


def _answers(domain: str, rtype: str, body: dict[str, Any]) -> Result[list[str]]:
    status = body.get("Status")
    if status != 0:
        return Result.failure(ErrorCode.CONNECTION_ERROR, f"DoH status {status} for {rtype} {domain}")
    wanted = RECORD_TYPES[rtype]
    values = [
        str(answer.get("data", "")).strip().lower()
        for answer in body.get("Answer") or []
        if answer.get("type") == wanted
    ]
    return Result.success([v for v in values if v])
