"""
Pipeline — the refresh-and-notify cycles run by the scheduler.

Each cycle walks the same phases:

    IDLE → FETCHING → PERSISTING → NOTIFYING → IDLE

and follows the same failure policy:

  - the initial read of the batch failing aborts the cycle (STORAGE_ERROR)
  - a fetch failure for one asset skips that asset, its stored row untouched
  - a write failure for one asset skips that asset, the others still process
  - an unexpected exception while processing one asset is logged and skips it
  - a mail failure is logged and counted; the cycle still succeeds

All I/O is injected via ports; the courtesy delay between upstream fetches
goes through an injectable `sleep` so tests run instantly. Cycles share no
state, so a manual run can overlap a scheduled one; rows are last-write-wins.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from enum import Enum
from functools import partial

import structlog

from domain_tracker.domain.models import (
    CycleReport,
    CyclePhase,
    NameserverChangeEvent,
    TrackedCertificate,
    TrackedDomain,
)
from domain_tracker.domain.ports import (
    AccountRepository,
    AssetRepository,
    CertificateFetcher,
    Notifier,
    RecordResolver,
    RegistrationResolver,
)
from domain_tracker.nameservers import detect_change, normalize_nameservers
from domain_tracker.railway.failure import ErrorCode, FailureDescription
from domain_tracker.railway.result import Result
from domain_tracker.reminders import build_reminders, is_due

log = structlog.get_logger()

type Sleep = Callable[[float], None]
type Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def _enter(job: str, phase: CyclePhase, **fields: object) -> None:
    log.info("pipeline.phase", job=job, phase=phase.value, **fields)


def _asset_failed(job: str, asset: str, stage: str, error: FailureDescription) -> None:
    log.warning(
        "pipeline.asset_failed",
        job=job,
        asset=asset,
        stage=stage,
        code=error.code.value,
        error=error.describe(),
    )


def _guarded[T](job: str, asset: str, step: Callable[[], T]) -> Result[T]:
    """Run one asset's step; an unexpected exception fails that asset only."""
    return Result.from_computation(
        step,
        ErrorCode.TECHNICAL_ERROR,
        f"Unexpected error while processing {asset}",
    ).peek_failure(lambda error: _asset_failed(job, asset, "unexpected", error))


class _Pacer:
    """Sleeps `delay` seconds before every fetch except the first one."""

    def __init__(self, delay: float, sleep: Sleep) -> None:
        self._delay = delay
        self._sleep = sleep
        self._first = True

    def wait(self) -> None:
        if not self._first and self._delay > 0:
            self._sleep(self._delay)
        self._first = False


# ─────────────────────── Domains ───────────────────────


def refresh_domains(
    repository: AssetRepository,
    resolver: RegistrationResolver,
    records: RecordResolver,
    lead_days: int,
    delay_seconds: float = 15.0,
    sleep: Sleep = time.sleep,
    clock: Clock = utc_now,
) -> Result[CycleReport]:
    """
    Re-resolve every domain inside its reminder window and store the result.

    Domains far from expiration are left alone; their registration data only
    changes at renewal, which is exactly when they enter the window again.
    """
    job = "domain_refresh"
    return repository.list_domains().map(
        lambda domains: _refresh_domain_batch(
            job, domains, repository, resolver, records, lead_days, _Pacer(delay_seconds, sleep), clock()
        )
    )


def _refresh_domain_batch(
    job: str,
    domains: list[TrackedDomain],
    repository: AssetRepository,
    resolver: RegistrationResolver,
    records: RecordResolver,
    lead_days: int,
    pacer: _Pacer,
    now: datetime,
) -> CycleReport:
    due = [d for d in domains if is_due(d.expiration, lead_days, now)]
    _enter(job, CyclePhase.FETCHING, total=len(domains), due=len(due))
    refreshed = skipped = 0

    for domain in due:
        pacer.wait()
        step = partial(_refresh_domain, job, domain, repository, resolver, records)
        if _guarded(job, domain.domain, step).get_or_else(False):
            refreshed += 1
        else:
            skipped += 1

    _enter(job, CyclePhase.IDLE)
    return CycleReport(job=job, examined=len(due), refreshed=refreshed, skipped=skipped)


def _refresh_domain(
    job: str,
    domain: TrackedDomain,
    repository: AssetRepository,
    resolver: RegistrationResolver,
    records: RecordResolver,
) -> bool:
    resolved = resolver.resolve(domain.domain)
    if resolved.is_failure():
        _asset_failed(job, domain.domain, "fetch", resolved.error())
        return False

    _enter(job, CyclePhase.PERSISTING, asset=domain.domain)
    snapshot = records.snapshot(domain.domain)
    stored = repository.update_registration(domain.id, resolved.value(), snapshot)
    if stored.is_failure():
        _asset_failed(job, domain.domain, "persist", stored.error())
        return False
    log.info("pipeline.domain_refreshed", domain=domain.domain, expiration=resolved.value().expiration.isoformat())
    return True


def send_domain_reminders(
    repository: AssetRepository,
    notifier: Notifier,
    lead_days: int,
    clock: Clock = utc_now,
) -> Result[CycleReport]:
    """Mail one reminder listing every domain inside its lead window."""
    job = "domain_reminders"

    def _notify(domains: list[TrackedDomain]) -> CycleReport:
        _enter(job, CyclePhase.NOTIFYING)
        items = build_reminders(domains, lead_days, clock(), label=lambda d: d.domain)
        report = _deliver(job, notifier.send_domain_reminders(items, lead_days), len(items))
        _enter(job, CyclePhase.IDLE)
        return replace(report, examined=len(domains))

    return repository.list_domains().map(_notify)


def run_domain_cycle(
    repository: AssetRepository,
    resolver: RegistrationResolver,
    records: RecordResolver,
    notifier: Notifier,
    lead_days: int,
    delay_seconds: float = 15.0,
    sleep: Sleep = time.sleep,
    clock: Clock = utc_now,
) -> Result[CycleReport]:
    """Refresh due domains, then send reminders from the freshly stored state."""
    return refresh_domains(repository, resolver, records, lead_days, delay_seconds, sleep, clock).flat_map(
        lambda refresh: send_domain_reminders(repository, notifier, lead_days, clock).map(
            lambda reminders: replace(
                refresh,
                notified=reminders.notified,
                undelivered=reminders.undelivered,
            )
        )
    )


# ─────────────────────── Nameservers ───────────────────────


def detect_nameserver_changes(
    repository: AssetRepository,
    records: RecordResolver,
    notifier: Notifier,
    clock: Clock = utc_now,
) -> Result[CycleReport]:
    """
    Compare stored nameservers with live NS records and mail any drift.

    Domains with no stored nameservers are skipped. A lookup that fails or
    returns no NS records is counted as unresolved and never compared, so an
    outage cannot be mistaken for "unchanged" or for "changed to nothing".
    """
    job = "nameserver_check"
    return repository.list_domains().map(
        lambda domains: _detect_batch(job, domains, repository, records, notifier, clock())
    )


def _detect_batch(
    job: str,
    domains: list[TrackedDomain],
    repository: AssetRepository,
    records: RecordResolver,
    notifier: Notifier,
    now: datetime,
) -> CycleReport:
    _enter(job, CyclePhase.FETCHING, total=len(domains))
    events: list[NameserverChangeEvent] = []
    examined = unresolved = skipped = 0

    for domain in domains:
        if not domain.nameservers:
            log.debug("nameservers.not_initialized", domain=domain.domain)
            continue
        examined += 1

        outcome = _guarded(job, domain.domain, partial(_check_nameservers, job, domain, repository, records, now))
        match outcome.get_or_else(_Check.SKIPPED):
            case NameserverChangeEvent() as event:
                events.append(event)
            case _Check.UNRESOLVED:
                unresolved += 1
            case _Check.SKIPPED:
                skipped += 1

    _enter(job, CyclePhase.NOTIFYING, changes=len(events))
    report = _deliver(job, notifier.send_nameserver_changes(events), len(events))
    _enter(job, CyclePhase.IDLE)
    return replace(
        report,
        examined=examined,
        unresolved=unresolved,
        skipped=skipped,
        changed=len(events),
    )


class _Check(Enum):
    UNCHANGED = "unchanged"
    UNRESOLVED = "unresolved"
    SKIPPED = "skipped"


def _check_nameservers(
    job: str,
    domain: TrackedDomain,
    repository: AssetRepository,
    records: RecordResolver,
    now: datetime,
) -> NameserverChangeEvent | _Check:
    looked_up = records.lookup(domain.domain, "NS")
    if looked_up.is_failure() or not looked_up.value():
        log.warning(
            "nameservers.unresolved",
            domain=domain.domain,
            error=looked_up.error().describe() if looked_up.is_failure() else "no NS records",
        )
        return _Check.UNRESOLVED

    diff = detect_change(domain.nameservers, looked_up.value())
    if not diff.changed:
        return _Check.UNCHANGED

    _enter(job, CyclePhase.PERSISTING, asset=domain.domain)
    stored = repository.update_nameservers(domain.id, diff.current)
    if stored.is_failure():
        _asset_failed(job, domain.domain, "persist", stored.error())
        return _Check.SKIPPED
    log.info("nameservers.changed", domain=domain.domain, previous=domain.nameservers, current=diff.current)
    return NameserverChangeEvent(
        domain=domain.domain,
        previous=normalize_nameservers(domain.nameservers),
        current=diff.current,
        detected_at=now,
    )


# ─────────────────────── Certificates ───────────────────────


def refresh_certificates(
    repository: AssetRepository,
    fetcher: CertificateFetcher,
    delay_seconds: float = 5.0,
    sleep: Sleep = time.sleep,
) -> Result[CycleReport]:
    """Probe every tracked host again and store the certificate it presents now."""
    job = "certificate_refresh"
    return repository.list_certificates().map(
        lambda certificates: _refresh_certificate_batch(
            job, certificates, repository, fetcher, _Pacer(delay_seconds, sleep)
        )
    )


def _refresh_certificate_batch(
    job: str,
    certificates: list[TrackedCertificate],
    repository: AssetRepository,
    fetcher: CertificateFetcher,
    pacer: _Pacer,
) -> CycleReport:
    _enter(job, CyclePhase.FETCHING, total=len(certificates))
    refreshed = skipped = 0

    for certificate in certificates:
        pacer.wait()
        step = partial(_refresh_certificate, job, certificate, repository, fetcher)
        if _guarded(job, certificate.host, step).get_or_else(False):
            refreshed += 1
        else:
            skipped += 1

    _enter(job, CyclePhase.IDLE)
    return CycleReport(job=job, examined=len(certificates), refreshed=refreshed, skipped=skipped)


def _refresh_certificate(
    job: str,
    certificate: TrackedCertificate,
    repository: AssetRepository,
    fetcher: CertificateFetcher,
) -> bool:
    fetched = fetcher.fetch_leaf_certificate(certificate.host)
    if fetched.is_failure():
        _asset_failed(job, certificate.host, "fetch", fetched.error())
        return False

    _enter(job, CyclePhase.PERSISTING, asset=certificate.host)
    stored = repository.update_certificate(certificate.id, fetched.value())
    if stored.is_failure():
        _asset_failed(job, certificate.host, "persist", stored.error())
        return False
    return True


def send_certificate_reminders(
    repository: AssetRepository,
    notifier: Notifier,
    lead_days: int,
    clock: Clock = utc_now,
) -> Result[CycleReport]:
    job = "certificate_reminders"

    def _notify(certificates: list[TrackedCertificate]) -> CycleReport:
        _enter(job, CyclePhase.NOTIFYING)
        items = build_reminders(certificates, lead_days, clock(), label=lambda c: c.common_name or c.host)
        report = _deliver(job, notifier.send_certificate_reminders(items, lead_days), len(items))
        _enter(job, CyclePhase.IDLE)
        return replace(report, examined=len(certificates))

    return repository.list_certificates().map(_notify)


def run_certificate_cycle(
    repository: AssetRepository,
    fetcher: CertificateFetcher,
    notifier: Notifier,
    lead_days: int,
    delay_seconds: float = 5.0,
    sleep: Sleep = time.sleep,
    clock: Clock = utc_now,
) -> Result[CycleReport]:
    return refresh_certificates(repository, fetcher, delay_seconds, sleep).flat_map(
        lambda refresh: send_certificate_reminders(repository, notifier, lead_days, clock).map(
            lambda reminders: replace(
                refresh,
                notified=reminders.notified,
                undelivered=reminders.undelivered,
            )
        )
    )


# ─────────────────────── Sessions ───────────────────────


def cleanup_sessions(accounts: AccountRepository, clock: Clock = utc_now) -> Result[CycleReport]:
    return (
        accounts.delete_expired_sessions(clock())
        .peek(lambda deleted: log.info("sessions.purged", deleted=deleted))
        .map(lambda deleted: CycleReport(job="session_cleanup", deleted=deleted))
    )


# ─────────────────────── Helpers ───────────────────────


def _deliver(job: str, sent: Result[int], batch_size: int) -> CycleReport:
    """Fold a notifier outcome into a report; delivery failure is not a cycle failure."""
    if sent.is_failure():
        log.error("pipeline.notification_failed", job=job, items=batch_size, error=sent.error().describe())
        return CycleReport(job=job, undelivered=batch_size)
    return CycleReport(job=job, notified=sent.value())
