"""
Application entry point — wires dependencies and starts the scheduler.

Composition root: creates concrete adapters from the settings snapshot,
binds them into the refresh cycles with functools.partial, and hands the
resulting jobs to the scheduler. The ASGI app (domain_tracker.asgi) reuses
build_services() so both entry points share one wiring.

This is the ONLY place where concrete adapter classes are instantiated.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import timedelta
from functools import partial

import structlog

from domain_tracker import __version__
from domain_tracker.adapters.dns_client import DohRecordResolver
from domain_tracker.adapters.mailer import SmtpMailTransport
from domain_tracker.adapters.rdap_client import RdapRegistrationSource
from domain_tracker.adapters.repository import PsycopgTrackerRepository
from domain_tracker.adapters.tls_probe import TlsCertificateFetcher
from domain_tracker.adapters.whois_client import WhoisRegistrationSource
from domain_tracker.auth import SessionAuthenticator, ensure_admin
from domain_tracker.config import AppSettings, get_settings
from domain_tracker.notifier import EmailNotifier
from domain_tracker.pipeline import (
    cleanup_sessions,
    detect_nameserver_changes,
    run_certificate_cycle,
    run_domain_cycle,
)
from domain_tracker.railway.result import Result
from domain_tracker.resolution import FallbackRegistrationResolver
from domain_tracker.scheduler import (
    JobRunRecorder,
    JobSpec,
    create_scheduler,
    register_shutdown_signals,
)

DOMAIN_REFRESH = "domain_refresh"
NAMESERVER_CHECK = "nameserver_check"
CERTIFICATE_REFRESH = "certificate_refresh"
SESSION_CLEANUP = "session_cleanup"


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog once per process.

    Context variables (job, trigger) bound by the scheduler are merged into
    every event logged while a cycle runs.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass(frozen=True, slots=True)
class Services:
    """Everything the scheduler and the API need, wired once."""

    settings: AppSettings
    repository: PsycopgTrackerRepository
    resolver: FallbackRegistrationResolver
    records: DohRecordResolver
    fetcher: TlsCertificateFetcher
    notifier: EmailNotifier
    authenticator: SessionAuthenticator
    recorder: JobRunRecorder
    jobs: dict[str, JobSpec]


def build_services(settings: AppSettings) -> Services:
    """Instantiate adapters from settings and bind them into named jobs."""
    repository = PsycopgTrackerRepository(
        dsn=settings.database.get_dsn(),
        raw_payload_max_chars=settings.raw_payload_max_chars,
    )
    resolver = FallbackRegistrationResolver(
        [
            RdapRegistrationSource(
                bootstrap_url=settings.rdap_bootstrap_url,
                fallback_url=settings.rdap_fallback_url,
                timeout=settings.http_timeout_seconds,
            ),
            WhoisRegistrationSource(timeout=settings.whois_timeout_seconds),
        ]
    )
    records = DohRecordResolver(doh_url=settings.doh_url, timeout=settings.http_timeout_seconds)
    fetcher = TlsCertificateFetcher(timeout=settings.tls_timeout_seconds)
    notifier = EmailNotifier(
        SmtpMailTransport(
            host=settings.mail.smtp_host,
            port=settings.mail.smtp_port,
            username=settings.mail.username,
            password=settings.mail.password.get_secret_value(),
            from_address=settings.mail.from_address,
            to_address=settings.mail.to_address,
            timeout=settings.mail.timeout_seconds,
        ),
        base_url=settings.base_url,
    )
    authenticator = SessionAuthenticator(
        repository,
        admin_username=settings.admin.username,
        ttl=timedelta(hours=settings.session_ttl_hours),
    )

    cron = settings.scheduler
    jobs = [
        JobSpec(
            id=DOMAIN_REFRESH,
            name="Domain refresh and reminders",
            cron=cron.domain_refresh_cron,
            run=partial(
                run_domain_cycle,
                repository=repository,
                resolver=resolver,
                records=records,
                notifier=notifier,
                lead_days=settings.reminders.domain_lead_days,
                delay_seconds=cron.domain_refresh_delay_seconds,
            ),
        ),
        JobSpec(
            id=NAMESERVER_CHECK,
            name="Nameserver change detection",
            cron=cron.nameserver_check_cron,
            run=partial(detect_nameserver_changes, repository=repository, records=records, notifier=notifier),
        ),
        JobSpec(
            id=CERTIFICATE_REFRESH,
            name="Certificate refresh and reminders",
            cron=cron.certificate_refresh_cron,
            run=partial(
                run_certificate_cycle,
                repository=repository,
                fetcher=fetcher,
                notifier=notifier,
                lead_days=settings.reminders.certificate_lead_days,
                delay_seconds=cron.certificate_refresh_delay_seconds,
            ),
        ),
        JobSpec(
            id=SESSION_CLEANUP,
            name="Expired session cleanup",
            cron=cron.session_cleanup_cron,
            run=partial(cleanup_sessions, accounts=repository),
        ),
    ]

    return Services(
        settings=settings,
        repository=repository,
        resolver=resolver,
        records=records,
        fetcher=fetcher,
        notifier=notifier,
        authenticator=authenticator,
        recorder=JobRunRecorder(),
        jobs={job.id: job for job in jobs},
    )


def prepare_storage(services: Services) -> Result[bool]:
    """Create tables and the admin account; both are idempotent."""
    admin = services.settings.admin
    return services.repository.initialize_schema().flat_map(
        lambda _: ensure_admin(services.repository, admin.username, admin.password.get_secret_value()).map(
            lambda _: True
        )
    )


def main() -> None:
    """Wire dependencies and run the scheduled jobs (worker mode, no HTTP API)."""
    try:
        settings = get_settings()
    except Exception as e:
        print(f"FATAL: Configuration error: {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()

    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        domain_lead_days=settings.reminders.domain_lead_days,
        certificate_lead_days=settings.reminders.certificate_lead_days,
    )

    services = build_services(settings)
    prepared = prepare_storage(services)
    if prepared.is_failure():
        log.error("app.storage_unavailable", failure=str(prepared.error()))
        sys.exit(1)

    scheduler = create_scheduler(
        list(services.jobs.values()),
        services.recorder,
        run_on_startup=settings.run_on_startup,
    )
    register_shutdown_signals(scheduler)

    log.info("app.scheduler_starting", jobs=sorted(services.jobs))

    try:
        scheduler.start()
    except KeyboardInterrupt:
        log.info("app.shutdown", reason="signal received")
    except SystemExit:
        log.info("app.shutdown", reason="signal received")
        raise
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
