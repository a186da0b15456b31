"""
Unit tests for the refresh cycles — orchestration over mocked ports.

Uses mock ports (fake adapters) to test each cycle in isolation. The courtesy
delay goes through a recording `sleep` and the clock is pinned, so the
tests run instantly and deterministically.

Test categories:
  - Domain refresh: only due domains are fetched, paced, written back
  - Failure isolation: one asset failing never stops or corrupts the others
  - Nameserver detection: change / unchanged / uninitialized / unresolved
  - Certificate refresh and reminders
  - Notification failure: counted as undelivered, cycle still succeeds
  - Storage read failure: the cycle fails as a whole
"""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock, call

from domain_tracker.domain.models import DnsSnapshot, Urgency
from domain_tracker.pipeline import (
    cleanup_sessions,
    detect_nameserver_changes,
    refresh_certificates,
    refresh_domains,
    run_certificate_cycle,
    run_domain_cycle,
    send_certificate_reminders,
    send_domain_reminders,
)
from domain_tracker.railway import ErrorCode, Result, ResultAssertions
from tests.conftest import NOW, make_certificate, make_domain, make_leaf, make_registration

SNAPSHOT = DnsSnapshot(a=("1.2.3.4",), ns=("ns1.example.net",))

# ─────────────────────── Mock Port Factories ───────────────────────


def _clock() -> datetime:
    return NOW


def _make_repository(domains: list | None = None, certificates: list | None = None) -> MagicMock:
    """Create a mock repository whose writes all succeed."""
    mock = MagicMock()
    mock.list_domains.return_value = Result.success(domains or [])
    mock.list_certificates.return_value = Result.success(certificates or [])
    mock.update_registration.return_value = Result.success(1)
    mock.update_nameservers.return_value = Result.success(1)
    mock.update_certificate.return_value = Result.success(1)
    mock.delete_expired_sessions.return_value = Result.success(0)
    return mock


def _make_resolver(results: dict[str, Result]) -> MagicMock:
    """Create a mock RegistrationResolver answering per domain name."""
    mock = MagicMock()
    mock.resolve.side_effect = lambda name: results[name]
    return mock


def _make_records(ns: dict[str, Result] | None = None) -> MagicMock:
    """Create a mock RecordResolver with per-domain NS answers."""
    mock = MagicMock()
    mock.snapshot.return_value = SNAPSHOT
    mock.lookup.side_effect = lambda name, rtype: (ns or {})[name]
    return mock


def _make_fetcher(results: dict[str, Result]) -> MagicMock:
    mock = MagicMock()
    mock.fetch_leaf_certificate.side_effect = lambda host: results[host]
    return mock


def _make_notifier(result: Result[int] | None = None) -> MagicMock:
    """Create a mock Notifier; by default every send reports the batch size."""
    mock = MagicMock()
    if result is None:
        mock.send_domain_reminders.side_effect = lambda items, lead: Result.success(len(items))
        mock.send_certificate_reminders.side_effect = lambda items, lead: Result.success(len(items))
        mock.send_nameserver_changes.side_effect = lambda events: Result.success(len(events))
    else:
        mock.send_domain_reminders.return_value = result
        mock.send_certificate_reminders.return_value = result
        mock.send_nameserver_changes.return_value = result
    return mock


# ─────────────────────── Domain refresh ───────────────────────


class TestRefreshDomains:
    def test_refreshes_only_due_domains(self) -> None:
        """
        GIVEN one domain 10 days from expiry and one 300 days from expiry (lead 30)
        WHEN refresh_domains runs
        THEN only the due domain is resolved and written back with a DNS snapshot.
        """
        due = make_domain(id=1, domain="due.com", expires_in_days=10)
        far = make_domain(id=2, domain="far.com", expires_in_days=300)
        renewed = make_registration(expires_in_days=375)
        repository = _make_repository(domains=[due, far])
        resolver = _make_resolver({"due.com": Result.success(renewed)})
        records = _make_records()

        result = refresh_domains(repository, resolver, records, 30, sleep=MagicMock(), clock=_clock)

        report = ResultAssertions.assert_success(result)
        assert (report.examined, report.refreshed, report.skipped) == (1, 1, 0)
        resolver.resolve.assert_called_once_with("due.com")
        records.snapshot.assert_called_once_with("due.com")
        repository.update_registration.assert_called_once_with(1, renewed, SNAPSHOT)

    def test_sleeps_between_fetches_but_not_before_the_first(self) -> None:
        domains = [make_domain(id=i, domain=f"d{i}.com", expires_in_days=5) for i in range(1, 4)]
        resolver = _make_resolver({d.domain: Result.success(make_registration()) for d in domains})
        sleep = MagicMock()

        refresh_domains(_make_repository(domains=domains), resolver, _make_records(), 30, 15.0, sleep, _clock)

        assert sleep.call_args_list == [call(15.0), call(15.0)]

    def test_resolution_failure_skips_domain_without_writing(self) -> None:
        """
        GIVEN both RDAP and WHOIS fail for a.com, and b.com resolves
        WHEN refresh_domains runs
        THEN a.com is skipped with its stored row untouched and b.com is updated.
        """
        a = make_domain(id=1, domain="a.com", expires_in_days=5)
        b = make_domain(id=2, domain="b.com", expires_in_days=5)
        repository = _make_repository(domains=[a, b])
        resolver = _make_resolver(
            {
                "a.com": Result.failure(ErrorCode.RESOLUTION_ERROR, "No registration source could resolve a.com"),
                "b.com": Result.success(make_registration()),
            }
        )

        report = refresh_domains(repository, resolver, _make_records(), 30, sleep=MagicMock(), clock=_clock).value()

        assert (report.refreshed, report.skipped) == (1, 1)
        assert [c.args[0] for c in repository.update_registration.call_args_list] == [2]

    def test_write_failure_does_not_stop_the_batch(self) -> None:
        domains = [make_domain(id=1, domain="a.com", expires_in_days=5), make_domain(id=2, domain="b.com", expires_in_days=5)]
        repository = _make_repository(domains=domains)
        repository.update_registration.side_effect = [
            Result.failure(ErrorCode.STORAGE_ERROR, "deadlock"),
            Result.success(1),
        ]
        resolver = _make_resolver({d.domain: Result.success(make_registration()) for d in domains})

        report = refresh_domains(repository, resolver, _make_records(), 30, sleep=MagicMock(), clock=_clock).value()

        assert (report.refreshed, report.skipped) == (1, 1)

    def test_unexpected_exception_skips_only_that_domain(self) -> None:
        """
        GIVEN a resolver that raises for the first due domain
        WHEN the domain cycle runs
        THEN that domain is skipped, the next one is refreshed
        AND reminders are still sent.
        """
        domains = [
            make_domain(id=1, domain="bad.com", expires_in_days=5),
            make_domain(id=2, domain="good.com", expires_in_days=5),
        ]
        repository = _make_repository(domains=domains)
        resolver = MagicMock()
        resolver.resolve.side_effect = [
            AttributeError("'int' object has no attribute 'strip'"),
            Result.success(make_registration()),
        ]
        notifier = _make_notifier()

        result = run_domain_cycle(repository, resolver, _make_records(), notifier, 30, sleep=MagicMock(), clock=_clock)

        report = ResultAssertions.assert_success(result)
        assert (report.refreshed, report.skipped) == (1, 1)
        assert [c.args[0] for c in repository.update_registration.call_args_list] == [2]
        notifier.send_domain_reminders.assert_called_once()

    def test_read_failure_fails_the_cycle(self) -> None:
        repository = _make_repository()
        repository.list_domains.return_value = Result.failure(ErrorCode.STORAGE_ERROR, "connection refused")
        resolver = _make_resolver({})

        result = refresh_domains(repository, resolver, _make_records(), 30, sleep=MagicMock(), clock=_clock)

        ResultAssertions.assert_failure(result, ErrorCode.STORAGE_ERROR)
        resolver.resolve.assert_not_called()


class TestDomainReminders:
    def test_sends_due_domains_with_bands(self) -> None:
        domains = [
            make_domain(id=1, domain="a.com", expires_in_days=5),
            make_domain(id=2, domain="b.com", expires_in_days=12),
            make_domain(id=3, domain="c.com", expires_in_days=20),
            make_domain(id=4, domain="d.com", expires_in_days=45),
        ]
        notifier = _make_notifier()

        report = send_domain_reminders(_make_repository(domains=domains), notifier, 30, clock=_clock).value()

        items, lead = notifier.send_domain_reminders.call_args.args
        assert lead == 30
        assert [(i.name, i.urgency) for i in items] == [
            ("a.com", Urgency.CRITICAL),
            ("b.com", Urgency.WARNING),
            ("c.com", Urgency.INFO),
        ]
        assert (report.examined, report.notified) == (4, 3)

    def test_delivery_failure_is_undelivered_not_a_cycle_failure(self) -> None:
        notifier = _make_notifier(Result.failure(ErrorCode.TRANSPORT_ERROR, "smtp down"))
        domains = [make_domain(expires_in_days=3)]

        result = send_domain_reminders(_make_repository(domains=domains), notifier, 30, clock=_clock)

        report = ResultAssertions.assert_success(result)
        assert (report.notified, report.undelivered) == (0, 1)


class TestRunDomainCycle:
    def test_reminders_use_the_refreshed_state(self) -> None:
        """
        GIVEN a domain stored as expiring in 10 days that was renewed for a year
        WHEN the domain cycle runs
        THEN the reminder batch read after the refresh no longer contains it.
        """
        stale = make_domain(id=1, domain="renewed.com", expires_in_days=10)
        fresh = make_domain(id=1, domain="renewed.com", expires_in_days=375)
        repository = _make_repository()
        repository.list_domains.side_effect = [Result.success([stale]), Result.success([fresh])]
        resolver = _make_resolver({"renewed.com": Result.success(make_registration(expires_in_days=375))})
        notifier = _make_notifier()

        report = run_domain_cycle(
            repository, resolver, _make_records(), notifier, 30, sleep=MagicMock(), clock=_clock
        ).value()

        assert report.refreshed == 1
        assert report.notified == 0
        assert notifier.send_domain_reminders.call_args.args[0] == []


# ─────────────────────── Nameservers ───────────────────────


class TestDetectNameserverChanges:
    def test_change_is_persisted_then_notified(self) -> None:
        """
        GIVEN stored NS [ns1.old.net, ns2.old.net] and live NS [ns1.new.net., ns2.new.net.]
        WHEN detect_nameserver_changes runs
        THEN the new set is stored and one change event is mailed.
        """
        domain = make_domain(id=7, domain="moved.com", nameservers=("ns1.old.net", "ns2.old.net"))
        repository = _make_repository(domains=[domain])
        records = _make_records({"moved.com": Result.success(["ns2.new.net.", "ns1.new.net."])})
        notifier = _make_notifier()

        report = detect_nameserver_changes(repository, records, notifier, clock=_clock).value()

        repository.update_nameservers.assert_called_once_with(7, ("ns1.new.net", "ns2.new.net"))
        (events,) = notifier.send_nameserver_changes.call_args.args
        assert len(events) == 1
        assert events[0].previous == ("ns1.old.net", "ns2.old.net")
        assert events[0].current == ("ns1.new.net", "ns2.new.net")
        assert events[0].detected_at == NOW
        assert (report.examined, report.changed, report.notified) == (1, 1, 1)

    def test_same_set_is_not_a_change(self) -> None:
        domain = make_domain(nameservers=("ns1.x.com", "ns2.x.com"))
        repository = _make_repository(domains=[domain])
        records = _make_records({"example.com": Result.success(["NS2.x.com.", "ns1.x.com."])})
        notifier = _make_notifier()

        report = detect_nameserver_changes(repository, records, notifier, clock=_clock).value()

        repository.update_nameservers.assert_not_called()
        assert notifier.send_nameserver_changes.call_args.args[0] == []
        assert report.changed == 0

    def test_uninitialized_domain_is_skipped(self) -> None:
        domain = make_domain(nameservers=())
        records = _make_records({})

        report = detect_nameserver_changes(_make_repository(domains=[domain]), records, _make_notifier(), _clock).value()

        records.lookup.assert_not_called()
        assert report.examined == 0

    def test_failed_or_empty_lookup_is_unresolved(self) -> None:
        """
        GIVEN one lookup fails and another returns no NS records
        WHEN detect_nameserver_changes runs
        THEN neither domain is compared or written and both count as unresolved.
        """
        domains = [make_domain(id=1, domain="a.com"), make_domain(id=2, domain="b.com")]
        repository = _make_repository(domains=domains)
        records = _make_records(
            {
                "a.com": Result.failure(ErrorCode.CONNECTION_ERROR, "DoH status 2"),
                "b.com": Result.success([]),
            }
        )

        report = detect_nameserver_changes(repository, records, _make_notifier(), clock=_clock).value()

        repository.update_nameservers.assert_not_called()
        assert (report.examined, report.unresolved, report.changed) == (2, 2, 0)

    def test_write_failure_is_not_reported_as_change(self) -> None:
        domain = make_domain(nameservers=("ns1.old.net",))
        repository = _make_repository(domains=[domain])
        repository.update_nameservers.return_value = Result.failure(ErrorCode.STORAGE_ERROR, "down")
        records = _make_records({"example.com": Result.success(["ns1.new.net."])})
        notifier = _make_notifier()

        report = detect_nameserver_changes(repository, records, notifier, clock=_clock).value()

        assert notifier.send_nameserver_changes.call_args.args[0] == []
        assert (report.skipped, report.changed) == (1, 0)

    def test_lookup_exception_skips_domain_and_keeps_going(self) -> None:
        crashing = make_domain(id=1, domain="crash.com", nameservers=("ns1.old.net",))
        moved = make_domain(id=2, domain="moved.com", nameservers=("ns1.old.net",))
        records = MagicMock()
        records.lookup.side_effect = [RuntimeError("boom"), Result.success(["ns1.new.net."])]
        repository = _make_repository(domains=[crashing, moved])

        report = detect_nameserver_changes(repository, records, _make_notifier(), clock=_clock).value()

        assert (report.examined, report.skipped, report.changed) == (2, 1, 1)
        repository.update_nameservers.assert_called_once_with(2, ("ns1.new.net",))

    def test_notification_failure_still_succeeds(self) -> None:
        domain = make_domain(nameservers=("ns1.old.net",))
        records = _make_records({"example.com": Result.success(["ns1.new.net."])})
        notifier = _make_notifier(Result.failure(ErrorCode.TRANSPORT_ERROR, "smtp down"))

        report = detect_nameserver_changes(_make_repository(domains=[domain]), records, notifier, _clock).value()

        assert (report.changed, report.undelivered) == (1, 1)


# ─────────────────────── Certificates ───────────────────────


class TestCertificates:
    def test_refresh_stores_every_fetched_certificate(self) -> None:
        certificates = [make_certificate(id=1, host="a.com"), make_certificate(id=2, host="b.com")]
        leaf_a = make_leaf("a.com", expires_in_days=80)
        repository = _make_repository(certificates=certificates)
        fetcher = _make_fetcher(
            {
                "a.com": Result.success(leaf_a),
                "b.com": Result.failure(ErrorCode.TLS_ERROR, "certificate has expired"),
            }
        )
        sleep = MagicMock()

        report = refresh_certificates(repository, fetcher, 5.0, sleep).value()

        repository.update_certificate.assert_called_once_with(1, leaf_a)
        assert (report.examined, report.refreshed, report.skipped) == (2, 1, 1)
        sleep.assert_called_once_with(5.0)

    def test_fetch_exception_is_counted_as_skipped(self) -> None:
        certificates = [make_certificate(id=1, host="a.com"), make_certificate(id=2, host="b.com")]
        repository = _make_repository(certificates=certificates)
        fetcher = MagicMock()
        fetcher.fetch_leaf_certificate.side_effect = [ValueError("bad DER"), Result.success(make_leaf("b.com"))]

        report = refresh_certificates(repository, fetcher, 0, MagicMock()).value()

        assert (report.refreshed, report.skipped) == (1, 1)
        repository.update_certificate.assert_called_once()

    def test_reminders_label_by_common_name(self) -> None:
        certificates = [make_certificate(host="www.example.com", expires_in_days=3)]
        notifier = _make_notifier()

        send_certificate_reminders(_make_repository(certificates=certificates), notifier, 14, clock=_clock)

        items, lead = notifier.send_certificate_reminders.call_args.args
        assert lead == 14
        assert items[0].name == "www.example.com"
        assert items[0].urgency is Urgency.CRITICAL

    def test_cycle_combines_refresh_and_reminders(self) -> None:
        certificate = make_certificate(host="a.com", expires_in_days=3)
        repository = _make_repository(certificates=[certificate])
        fetcher = _make_fetcher({"a.com": Result.success(make_leaf("a.com", expires_in_days=3))})

        report = run_certificate_cycle(
            repository, fetcher, _make_notifier(), 14, sleep=MagicMock(), clock=_clock
        ).value()

        assert (report.refreshed, report.notified) == (1, 1)


# ─────────────────────── Sessions ───────────────────────


class TestCleanupSessions:
    def test_reports_deleted_count(self) -> None:
        accounts = MagicMock()
        accounts.delete_expired_sessions.return_value = Result.success(4)

        report = cleanup_sessions(accounts, clock=_clock).value()

        accounts.delete_expired_sessions.assert_called_once_with(NOW)
        assert report.deleted == 4
