"""
RDAP adapter — structured registry lookups over HTTPS via httpx.

Implements the RegistrationSource port. The registry for a TLD is taken from
the IANA RDAP bootstrap file (cached for the life of the adapter); TLDs the
bootstrap does not list go to a configurable redirector (rdap.org). A failed
bootstrap download is not retried for `bootstrap_retry_seconds`; lookups in
that window go straight to the redirector.

Extracted fields:
  expiration   eventDate of the "expiration" event (absent → PARSE_ERROR)
  nameservers  nameservers[].ldhName, normalized
  registrar    vCard "fn" of the entity whose roles include "registrar"

Transient transport errors are retried with tenacity; everything else is
turned into a Result failure at this boundary.
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from domain_tracker.domain.models import Registration, serialize_raw_payload
from domain_tracker.nameservers import normalize_nameservers
from domain_tracker.railway import ErrorCode
from domain_tracker.railway.result import Result

log = structlog.get_logger()

_RDAP_HEADERS = {"Accept": "application/rdap+json, application/json"}


class RdapRegistrationSource:
    """
    Query the authoritative RDAP server for a domain.

    Failure codes: NOT_FOUND (HTTP 404), PARSE_ERROR (unusable body),
    CONNECTION_ERROR (transport or unexpected HTTP status).
    """

    name = "rdap"

    def __init__(
        self,
        bootstrap_url: str = "https://data.iana.org/rdap/dns.json",
        fallback_url: str = "https://rdap.org",
        timeout: int = 20,
        bootstrap_retry_seconds: float = 900.0,
    ) -> None:
        self._bootstrap_url = bootstrap_url
        self._fallback_url = fallback_url.rstrip("/")
        self._timeout = timeout
        self._bootstrap_retry_seconds = bootstrap_retry_seconds
        self._services: dict[str, str] | None = None
        self._failed_at: float | None = None
        self._lock = threading.Lock()

    def lookup(self, domain: str) -> Result[Registration]:
        url = f"{self._base_url_for(domain)}/domain/{domain}"
        return (
            Result.from_computation(
                lambda: self._get(url),
                ErrorCode.CONNECTION_ERROR,
                f"RDAP query for {domain} failed",
            )
            .flat_map(lambda response: _decode(domain, response))
            .flat_map(parse_rdap_domain)
            .peek(lambda reg: log.info("rdap.resolved", domain=domain, expiration=reg.expiration.isoformat()))
        )

    # ─────────────────────── Bootstrap ───────────────────────

    def _base_url_for(self, domain: str) -> str:
        services = self._bootstrap_services()
        labels = domain.lower().rstrip(".").split(".")
        # Longest matching suffix first, so "co.uk" beats "uk" when both are listed.
        for i in range(len(labels)):
            base = services.get(".".join(labels[i:]))
            if base:
                return base
        return self._fallback_url

    def _bootstrap_services(self) -> dict[str, str]:
        with self._lock:
            if self._services is None:
                if self._failed_at is not None and time.monotonic() - self._failed_at < self._bootstrap_retry_seconds:
                    return {}
                loaded = Result.from_computation(
                    self._load_bootstrap,
                    ErrorCode.CONNECTION_ERROR,
                    "RDAP bootstrap download failed",
                )
                if loaded.is_failure():
                    self._failed_at = time.monotonic()
                    log.warning(
                        "rdap.bootstrap_unavailable",
                        error=loaded.error().describe(),
                        retry_in_seconds=self._bootstrap_retry_seconds,
                    )
                    return {}
                self._failed_at = None
                self._services = loaded.value()
                log.info("rdap.bootstrap_loaded", tlds=len(self._services))
            return self._services

    def _load_bootstrap(self) -> dict[str, str]:
        body = self._get(self._bootstrap_url)
        body.raise_for_status()
        services: dict[str, str] = {}
        for tlds, urls in body.json().get("services", []):
            https_urls = [u for u in urls if u.startswith("https://")] or urls
            if not https_urls:
                continue
            for tld in tlds:
                services[tld.lower()] = https_urls[0].rstrip("/")
        return services

    # ─────────────────────── HTTP ───────────────────────

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _get(self, url: str) -> httpx.Response:
        with httpx.Client(timeout=self._timeout, follow_redirects=True) as client:
            return client.get(url, headers=_RDAP_HEADERS)


def _decode(domain: str, response: httpx.Response) -> Result[dict[str, Any]]:
    if response.status_code == 404:
        return Result.failure(ErrorCode.NOT_FOUND, f"RDAP has no record for {domain}")
    if not response.is_success:
        return Result.failure(
            ErrorCode.CONNECTION_ERROR,
            f"RDAP answered HTTP {response.status_code} for {domain}",
        )
    return Result.from_computation(
        response.json,
        ErrorCode.PARSE_ERROR,
        f"RDAP body for {domain} is not JSON",
    ).flat_map(
        lambda body: Result.success(body)
        if isinstance(body, dict)
        else Result.failure(ErrorCode.PARSE_ERROR, f"RDAP body for {domain} is not an object")
    )


def parse_rdap_domain(payload: dict[str, Any]) -> Result[Registration]:
    """Turn an RDAP domain object into a Registration."""
    name = payload.get("ldhName") or payload.get("unicodeName") or "<unknown>"
    raw_date = next(
        (
            event.get("eventDate")
            for event in payload.get("events") or []
            if isinstance(event, dict) and event.get("eventAction") == "expiration"
        ),
        None,
    )
    if not raw_date:
        return Result.failure(ErrorCode.PARSE_ERROR, f"RDAP record for {name} has no expiration event")

    return Result.from_computation(
        lambda: _parse_timestamp(raw_date),
        ErrorCode.PARSE_ERROR,
        f"RDAP expiration date {raw_date!r} for {name} is not ISO 8601",
    ).flat_map(
        lambda expiration: Result.from_computation(
            lambda: Registration(
                expiration=expiration,
                nameservers=normalize_nameservers(
                    ns.get("ldhName") or ns.get("unicodeName") or ""
                    for ns in payload.get("nameservers") or []
                    if isinstance(ns, dict)
                ),
                registrar=_registrar_name(payload.get("entities") or []),
                raw_payload=serialize_raw_payload(payload),
                source="rdap",
            ),
            ErrorCode.PARSE_ERROR,
            f"RDAP record for {name} has malformed nameserver or entity data",
        )
    )


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _registrar_name(entities: list[Any]) -> str:
    for entity in entities:
        if not isinstance(entity, dict) or "registrar" not in (entity.get("roles") or []):
            continue
        vcard = entity.get("vcardArray") or []
        if len(vcard) == 2 and isinstance(vcard[1], list):
            for prop in vcard[1]:
                if isinstance(prop, list) and len(prop) >= 4 and prop[0] == "fn":
                    return str(prop[3])
        handle = entity.get("handle")
        if handle:
            return str(handle)
    return ""
