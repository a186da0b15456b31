"""
WHOIS adapter — legacy text protocol via python-whois.

Implements the RegistrationSource port as the fallback behind RDAP.
python-whois runs the query and parses the free-text answer into a
dict-like WhoisEntry; this adapter only picks the fields it needs:

  expiration_date  datetime or list of datetimes (earliest wins)
  name_servers     list or single string, normalized
  registrar        free text
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
import whois

from domain_tracker.domain.models import Registration, serialize_raw_payload
from domain_tracker.nameservers import normalize_nameservers
from domain_tracker.railway import ErrorCode, FailureDescription
from domain_tracker.railway.result import Result

log = structlog.get_logger()

# Registry answers that mean "no such domain" rather than "query failed".
_NOT_FOUND_HINTS = ("no match", "not found", "no entries found", "no data found", "status: free")

type WhoisQuery = Callable[..., Any]


class WhoisRegistrationSource:
    """
    Query WHOIS for a domain.

    `query` defaults to `whois.whois`; tests pass a fake with the same shape.
    """

    name = "whois"

    def __init__(self, timeout: int = 20, query: WhoisQuery | None = None) -> None:
        self._timeout = timeout
        self._query = query or whois.whois

    def lookup(self, domain: str) -> Result[Registration]:
        return (
            Result.from_computation(
                lambda: self._query(domain, timeout=self._timeout),
                ErrorCode.CONNECTION_ERROR,
                f"WHOIS query for {domain} failed",
            )
            .map_failure(_classify_not_found)
            .flat_map(lambda entry: parse_whois_entry(domain, entry))
            .peek(lambda reg: log.info("whois.resolved", domain=domain, expiration=reg.expiration.isoformat()))
        )


def _classify_not_found(error: FailureDescription) -> FailureDescription:
    text = str(error.exception or "").lower()
    if any(hint in text for hint in _NOT_FOUND_HINTS):
        return FailureDescription(ErrorCode.NOT_FOUND, error.message, error.exception)
    return error


def parse_whois_entry(domain: str, entry: Any) -> Result[Registration]:
    """Turn a python-whois WhoisEntry (or any mapping of the same shape) into a Registration."""
    if not entry:
        return Result.failure(ErrorCode.NOT_FOUND, f"WHOIS returned nothing for {domain}")

    expiration = _earliest(entry.get("expiration_date"))
    if expiration is None:
        return Result.failure(ErrorCode.PARSE_ERROR, f"WHOIS record for {domain} has no usable expiration date")

    raw_nameservers = entry.get("name_servers") or []
    if isinstance(raw_nameservers, str):
        raw_nameservers = [raw_nameservers]

    registrar = entry.get("registrar") or ""
    if isinstance(registrar, list):
        registrar = registrar[0] if registrar else ""

    return Result.success(
        Registration(
            expiration=expiration,
            nameservers=normalize_nameservers(raw_nameservers),
            registrar=str(registrar),
            raw_payload=serialize_raw_payload(dict(entry)),
            source="whois",
        )
    )


def _earliest(value: Any) -> datetime | None:
    candidates = value if isinstance(value, list) else [value]
    dates = [
        d if d.tzinfo is not None else d.replace(tzinfo=UTC)
        for d in candidates
        if isinstance(d, datetime)
    ]
    return min(dates).astimezone(UTC) if dates else None
