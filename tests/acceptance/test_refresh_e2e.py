"""
End-to-end BDD acceptance tests for the refresh-and-notify cycles.

Exercises each cycle the scheduler runs: fake registries, resolvers and TLS
hosts → real fallback resolver, reminder batching and Jinja2 notifier →
real PostgreSQL. Mail is captured by a recording transport.

Each test follows Given/When/Then BDD structure in its docstring.

Markers: @pytest.mark.acceptance — requires Docker + PostgreSQL.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime

import psycopg
import pytest

from domain_tracker.adapters.repository import PsycopgTrackerRepository
from domain_tracker.domain.models import DnsSnapshot, LeafCertificate, Registration
from domain_tracker.notifier import (
    CERTIFICATE_REMINDER_SUBJECT,
    DOMAIN_REMINDER_SUBJECT,
    NAMESERVER_CHANGE_SUBJECT,
    EmailNotifier,
)
from domain_tracker.pipeline import detect_nameserver_changes, run_certificate_cycle, run_domain_cycle
from domain_tracker.railway import ErrorCode, Result, ResultAssertions
from domain_tracker.resolution import FallbackRegistrationResolver
from tests.conftest import NOW, days_from_now, make_leaf, make_registration

pytestmark = pytest.mark.acceptance


# ── Fake adapters (no network) ───────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class FakeRegistry:
    """Answers from a fixed table; names missing from it are NOT_FOUND."""

    name: str
    answers: dict[str, Registration] = field(default_factory=dict)

    def lookup(self, domain: str) -> Result[Registration]:
        if domain in self.answers:
            return Result.success(self.answers[domain])
        return Result.failure(ErrorCode.NOT_FOUND, f"{self.name} has no record for {domain}")


@dataclass(frozen=True, slots=True)
class FakeRecords:
    """Live NS answers per domain; domains missing from the table time out."""

    ns: dict[str, list[str]] = field(default_factory=dict)

    def lookup(self, domain: str, record_type: str) -> Result[list[str]]:
        if record_type == "NS" and domain in self.ns:
            return Result.success(self.ns[domain])
        return Result.failure(ErrorCode.CONNECTION_ERROR, "DoH provider timed out")

    def resolve_records(self, domain: str, record_type: str) -> list[str]:
        return self.lookup(domain, record_type).get_or_else([])

    def snapshot(self, domain: str) -> DnsSnapshot:
        return DnsSnapshot(a=("192.0.2.10",), ns=tuple(self.resolve_records(domain, "NS")))


@dataclass(frozen=True, slots=True)
class FakeTlsHosts:
    leaves: dict[str, LeafCertificate] = field(default_factory=dict)

    def fetch_leaf_certificate(self, host: str) -> Result[LeafCertificate]:
        if host in self.leaves:
            return Result.success(self.leaves[host])
        return Result.failure(ErrorCode.CONNECTION_ERROR, f"{host}:443 refused the connection")


@dataclass(frozen=True, slots=True)
class RecordingTransport:
    """Keeps every (subject, html) pair instead of talking to SMTP."""

    sent: list[tuple[str, str]] = field(default_factory=list)

    def send(self, subject: str, html_body: str) -> Result[str]:
        self.sent.append((subject, html_body))
        return Result.success(f"<{len(self.sent)}@test>")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _count_rows(dsn: str, table: str) -> int:
    with psycopg.connect(dsn) as conn:
        row = conn.execute(f"SELECT count(*) FROM {table}").fetchone()  # noqa: S608
        return row[0] if row else 0


def _no_sleep(_: float) -> None:
    return None


def _clock() -> datetime:
    return NOW


@pytest.fixture()
def repository(acceptance_dsn: str) -> PsycopgTrackerRepository:
    return PsycopgTrackerRepository(acceptance_dsn)


@pytest.fixture()
def client_id(repository: PsycopgTrackerRepository) -> int:
    return repository.add_client("Acme").value().id


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def notifier(transport: RecordingTransport) -> EmailNotifier:
    return EmailNotifier(transport, "https://tracker.example.org")


# ── Acceptance Tests ─────────────────────────────────────────────────────────


class TestDomainRefreshCycle:
    """End-to-end: stored domains → registry fallback → DB → reminder email."""

    def test_due_domain_is_refreshed_and_reminded(
        self,
        acceptance_dsn: str,
        repository: PsycopgTrackerRepository,
        client_id: int,
        notifier: EmailNotifier,
        transport: RecordingTransport,
    ) -> None:
        """
        GIVEN a domain expiring in 5 days and another expiring in a year
        AND RDAP has no record while WHOIS reports a renewal to 20 days
        WHEN the weekly domain cycle runs with a 30 day lead
        THEN only the due domain is refreshed from WHOIS
        AND one reminder lists it with its new expiration.
        """
        repository.add_domain("soon.com", client_id, make_registration(expires_in_days=5), DnsSnapshot(), None)
        repository.add_domain("later.com", client_id, make_registration(expires_in_days=365), DnsSnapshot(), None)
        renewed = make_registration(expires_in_days=20, registrar="Whois Registrar", source="whois")
        resolver = FallbackRegistrationResolver(
            [FakeRegistry("rdap"), FakeRegistry("whois", {"soon.com": renewed})]
        )

        report = ResultAssertions.assert_success(
            run_domain_cycle(
                repository, resolver, FakeRecords(), notifier, lead_days=30, sleep=_no_sleep, clock=_clock
            )
        )

        assert report.examined == 1
        assert report.refreshed == 1
        assert report.notified == 1
        stored = {d.domain: d for d in repository.list_domains().value()}
        assert stored["soon.com"].expiration == renewed.expiration
        assert stored["soon.com"].registrar == "Whois Registrar"
        assert stored["later.com"].expiration == days_from_now(365)
        assert _count_rows(acceptance_dsn, "domains") == 2

        ((subject, body),) = transport.sent
        assert subject == DOMAIN_REMINDER_SUBJECT
        assert "soon.com" in body
        assert "later.com" not in body
        assert "https://tracker.example.org/dash/" in body

    def test_resolution_failure_leaves_row_untouched(
        self,
        repository: PsycopgTrackerRepository,
        client_id: int,
        notifier: EmailNotifier,
        transport: RecordingTransport,
    ) -> None:
        """
        GIVEN a due domain that no registry can resolve
        WHEN the domain cycle runs
        THEN the domain is skipped and its stored row is unchanged
        AND the reminder still goes out from the stored expiration.
        """
        original = repository.add_domain(
            "gone.com", client_id, make_registration(expires_in_days=3), DnsSnapshot(), "keep"
        ).value()
        resolver = FallbackRegistrationResolver([FakeRegistry("rdap"), FakeRegistry("whois")])

        report = ResultAssertions.assert_success(
            run_domain_cycle(
                repository, resolver, FakeRecords(), notifier, lead_days=30, sleep=_no_sleep, clock=_clock
            )
        )

        assert report.skipped == 1
        assert report.refreshed == 0
        (stored,) = repository.list_domains().value()
        assert stored == original
        assert len(transport.sent) == 1

    def test_nothing_due_sends_no_mail(
        self,
        repository: PsycopgTrackerRepository,
        client_id: int,
        notifier: EmailNotifier,
        transport: RecordingTransport,
    ) -> None:
        repository.add_domain("later.com", client_id, make_registration(expires_in_days=200), DnsSnapshot(), None)
        resolver = FallbackRegistrationResolver([FakeRegistry("rdap")])

        report = ResultAssertions.assert_success(
            run_domain_cycle(
                repository, resolver, FakeRecords(), notifier, lead_days=30, sleep=_no_sleep, clock=_clock
            )
        )

        assert report.notified == 0
        assert transport.sent == []

    def test_overlapping_cycles_leave_consistent_rows(
        self,
        repository: PsycopgTrackerRepository,
        client_id: int,
        notifier: EmailNotifier,
    ) -> None:
        """
        GIVEN three due domains
        WHEN a manual refresh overlaps a scheduled one (two threads)
        THEN both cycles succeed and every row holds the refreshed data.
        """
        names = ("a.com", "b.com", "c.com")
        for name in names:
            repository.add_domain(name, client_id, make_registration(expires_in_days=2), DnsSnapshot(), None)
        renewed = make_registration(expires_in_days=25, registrar="Renewed")
        resolver = FallbackRegistrationResolver([FakeRegistry("rdap", dict.fromkeys(names, renewed))])
        results: list[Result] = []

        def _cycle() -> None:
            results.append(
                run_domain_cycle(
                    repository, resolver, FakeRecords(), notifier, lead_days=30, sleep=_no_sleep, clock=_clock
                )
            )

        threads = [threading.Thread(target=_cycle) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(results) == 2
        assert all(r.is_success() for r in results)
        for domain in repository.list_domains().value():
            assert domain.expiration == renewed.expiration
            assert domain.registrar == "Renewed"


class TestNameserverCheck:
    """End-to-end: stored nameservers → live NS → DB → change email."""

    def test_drift_is_persisted_and_notified(
        self,
        repository: PsycopgTrackerRepository,
        client_id: int,
        notifier: EmailNotifier,
        transport: RecordingTransport,
    ) -> None:
        """
        GIVEN one domain whose live NS differ from the stored set
        AND one domain whose live NS match after normalization
        AND one domain whose lookup times out
        WHEN the daily nameserver check runs
        THEN only the drifted domain is updated and reported
        AND the timed-out domain keeps its stored set.
        """
        repository.add_domain(
            "moved.com", client_id, make_registration(nameservers=("ns1.old.net", "ns2.old.net")), DnsSnapshot(), None
        )
        repository.add_domain(
            "same.com", client_id, make_registration(nameservers=("ns1.same.net",)), DnsSnapshot(), None
        )
        repository.add_domain(
            "dark.com", client_id, make_registration(nameservers=("ns1.dark.net",)), DnsSnapshot(), None
        )
        records = FakeRecords(
            ns={
                "moved.com": ["NS2.NEW.NET.", "ns1.new.net."],
                "same.com": ["NS1.SAME.NET."],
            }
        )

        report = ResultAssertions.assert_success(detect_nameserver_changes(repository, records, notifier, _clock))

        assert report.examined == 3
        assert report.changed == 1
        assert report.unresolved == 1
        stored = {d.domain: d.nameservers for d in repository.list_domains().value()}
        assert stored["moved.com"] == ("ns1.new.net", "ns2.new.net")
        assert stored["same.com"] == ("ns1.same.net",)
        assert stored["dark.com"] == ("ns1.dark.net",)

        ((subject, body),) = transport.sent
        assert subject == NAMESERVER_CHANGE_SUBJECT
        assert "moved.com" in body
        assert "ns1.old.net" in body
        assert "ns1.new.net" in body

    def test_second_pass_after_drift_is_quiet(
        self,
        repository: PsycopgTrackerRepository,
        client_id: int,
        notifier: EmailNotifier,
        transport: RecordingTransport,
    ) -> None:
        repository.add_domain(
            "moved.com", client_id, make_registration(nameservers=("ns1.old.net",)), DnsSnapshot(), None
        )
        records = FakeRecords(ns={"moved.com": ["ns1.new.net."]})

        detect_nameserver_changes(repository, records, notifier, _clock)
        second = ResultAssertions.assert_success(detect_nameserver_changes(repository, records, notifier, _clock))

        assert second.changed == 0
        assert len(transport.sent) == 1


class TestCertificateCycle:
    """End-to-end: tracked hosts → TLS probe → DB → reminder email."""

    def test_certificates_refreshed_and_reminded(
        self,
        repository: PsycopgTrackerRepository,
        client_id: int,
        notifier: EmailNotifier,
        transport: RecordingTransport,
    ) -> None:
        """
        GIVEN two tracked hosts, one of which refuses connections
        WHEN the certificate cycle runs with a 14 day lead
        THEN the reachable host gets its new certificate stored
        AND the unreachable host keeps its row
        AND one reminder lists the certificate that is still inside the window.
        """
        repository.add_certificate("www.example.com", client_id, make_leaf("www.example.com", 30), None)
        down = repository.add_certificate("down.example.com", client_id, make_leaf("down.example.com", 3), None).value()
        fresh = make_leaf("www.example.com", expires_in_days=60, issuer="New CA")
        hosts = FakeTlsHosts({"www.example.com": fresh})

        report = ResultAssertions.assert_success(
            run_certificate_cycle(
                repository, hosts, notifier, lead_days=14, sleep=_no_sleep, clock=_clock
            )
        )

        assert report.refreshed == 1
        assert report.skipped == 1
        assert report.notified == 1
        stored = {c.host: c for c in repository.list_certificates().value()}
        assert stored["www.example.com"].expiration == fresh.not_after
        assert stored["www.example.com"].authority == "New CA"
        assert stored["down.example.com"] == down

        ((subject, body),) = transport.sent
        assert subject == CERTIFICATE_REMINDER_SUBJECT
        assert "down.example.com" in body
        assert "www.example.com" not in body
