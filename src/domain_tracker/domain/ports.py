"""
Ports — Protocol-based contracts between the refresh cycles and infrastructure.

  cycles / API ← Ports (protocols) ← Adapters (rdap, whois, doh, tls, smtp, psycopg)

Adapters satisfy a port structurally; nothing inherits from these classes.
Every operation that touches the network or the database returns a Result so
that failures are values the caller can inspect per asset.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from domain_tracker.domain.models import (
    Client,
    DnsSnapshot,
    LeafCertificate,
    NameserverChangeEvent,
    Registration,
    ReminderItem,
    Session,
    TrackedCertificate,
    TrackedDomain,
    User,
)
from domain_tracker.railway.result import Result


# ─────────────────────── Network ───────────────────────


@runtime_checkable
class RegistrationSource(Protocol):
    """
    Port: one registry protocol (RDAP, WHOIS) queried for a single domain.

    Failure codes tell the resolver why the source gave up:
      NOT_FOUND         the registry has no record for the name
      PARSE_ERROR       a record exists but lacks usable fields
      CONNECTION_ERROR  the registry could not be reached
    """

    name: str

    def lookup(self, domain: str) -> Result[Registration]: ...


@runtime_checkable
class RegistrationResolver(Protocol):
    """Port: registration data for a domain, from whichever source answers first."""

    def resolve(self, domain: str) -> Result[Registration]: ...


@runtime_checkable
class RecordResolver(Protocol):
    """
    Port: current DNS record values for a name.

    `lookup` distinguishes transport failure (Failure) from no records
    (Success([])). `resolve_records` is the soft variant: any failure is
    logged and reported as an empty list.
    """

    def lookup(self, domain: str, record_type: str) -> Result[list[str]]: ...

    def resolve_records(self, domain: str, record_type: str) -> list[str]: ...

    def snapshot(self, domain: str) -> DnsSnapshot: ...


@runtime_checkable
class CertificateFetcher(Protocol):
    """Port: leaf certificate presented by host:443 (CONNECTION_ERROR / TLS_ERROR)."""

    def fetch_leaf_certificate(self, host: str) -> Result[LeafCertificate]: ...


@runtime_checkable
class MailTransport(Protocol):
    """Port: deliver one HTML message. Success carries the Message-ID."""

    def send(self, subject: str, html_body: str) -> Result[str]: ...


@runtime_checkable
class Notifier(Protocol):
    """
    Port: render and send one notification per batch.

    Each method returns the number of items mailed; an empty batch yields
    Success(0) and never reaches the transport.
    """

    def send_domain_reminders(self, items: list[ReminderItem], lead_days: int) -> Result[int]: ...

    def send_certificate_reminders(self, items: list[ReminderItem], lead_days: int) -> Result[int]: ...

    def send_nameserver_changes(self, events: list[NameserverChangeEvent]) -> Result[int]: ...


# ─────────────────────── Storage ───────────────────────


@runtime_checkable
class AssetRepository(Protocol):
    """
    Port: clients, tracked domains and tracked certificates.

    Writes overwrite the row (last write wins). Deleting a client that still
    owns records fails with CONFLICT; an unknown id fails with NOT_FOUND.
    """

    def list_domains(self) -> Result[list[TrackedDomain]]: ...

    def add_domain(
        self, domain: str, client_id: int, registration: Registration, dns: DnsSnapshot, notes: str | None
    ) -> Result[TrackedDomain]: ...

    def edit_domain(self, domain_id: int, client_id: int, notes: str | None) -> Result[int]: ...

    def delete_domain(self, domain_id: int) -> Result[int]: ...

    def update_registration(self, domain_id: int, registration: Registration, dns: DnsSnapshot) -> Result[int]: ...

    def update_nameservers(self, domain_id: int, nameservers: tuple[str, ...]) -> Result[int]: ...

    def list_certificates(self) -> Result[list[TrackedCertificate]]: ...

    def add_certificate(
        self, host: str, client_id: int, leaf: LeafCertificate, notes: str | None
    ) -> Result[TrackedCertificate]: ...

    def update_certificate(self, certificate_id: int, leaf: LeafCertificate) -> Result[int]: ...

    def delete_certificate(self, certificate_id: int) -> Result[int]: ...

    def list_clients(self) -> Result[list[Client]]: ...

    def add_client(self, name: str) -> Result[Client]: ...

    def delete_client(self, client_id: int) -> Result[int]: ...


@runtime_checkable
class AccountRepository(Protocol):
    """Port: users and login sessions."""

    def find_user(self, username: str) -> Result[User]: ...

    def get_user(self, user_id: int) -> Result[User]: ...

    def create_user(self, username: str, password_hash: str) -> Result[User]: ...

    def create_session(self, user_id: int, token: str, expires: datetime) -> Result[Session]: ...

    def find_session(self, token: str) -> Result[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> Result[int]: ...
