"""
PostgreSQL repository adapter — clients, tracked assets, users and sessions.

Adapter layer — implements the AssetRepository and AccountRepository ports
using psycopg (v3) with raw parameterized SQL. Every operation opens its own
connection and transaction and closes it before returning; no connection is
shared between jobs or requests.

Table mapping:
  Client             → clients
  TrackedDomain      → domains   (nameservers TEXT[], dns JSONB)
  TrackedCertificate → crts      (raw_data BYTEA, DER)
  User               → users     (bcrypt hash)
  Session            → sessions

Errors are caught at this boundary: integrity violations (duplicate name,
client still owning records) become CONFLICT, a missing row NOT_FOUND,
anything else STORAGE_ERROR.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

import psycopg
import structlog
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from domain_tracker.domain.models import (
    Client,
    DnsSnapshot,
    LeafCertificate,
    Registration,
    Session,
    TrackedCertificate,
    TrackedDomain,
    User,
)
from domain_tracker.railway import ErrorCode, FailureDescription
from domain_tracker.railway.result import Result

T = TypeVar("T")
log = structlog.get_logger()

TRUNCATION_MARKER = "...[truncated]"

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id        SERIAL PRIMARY KEY,
    username  TEXT NOT NULL UNIQUE,
    password  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    token    TEXT PRIMARY KEY,
    user_id  INTEGER NOT NULL REFERENCES users(id),
    expires  TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS clients (
    id    SERIAL PRIMARY KEY,
    name  TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS domains (
    id              SERIAL PRIMARY KEY,
    domain          TEXT NOT NULL UNIQUE,
    expiration      TIMESTAMPTZ NOT NULL,
    nameservers     TEXT[] NOT NULL DEFAULT '{}',
    registrar       TEXT NOT NULL DEFAULT '',
    dns             JSONB NOT NULL DEFAULT '{}',
    client_id       INTEGER NOT NULL REFERENCES clients(id),
    raw_whois_data  TEXT NOT NULL DEFAULT '',
    notes           TEXT
);

CREATE TABLE IF NOT EXISTS crts (
    id           SERIAL PRIMARY KEY,
    domain       TEXT NOT NULL UNIQUE,
    common_name  TEXT NOT NULL UNIQUE,
    expiration   TIMESTAMPTZ NOT NULL,
    authority    TEXT NOT NULL DEFAULT '',
    client_id    INTEGER NOT NULL REFERENCES clients(id),
    raw_data     BYTEA,
    notes        TEXT
);
"""

_DOMAIN_COLUMNS = "id, domain, expiration, nameservers, registrar, dns, client_id, raw_whois_data, notes"
_CERT_COLUMNS = "id, domain, common_name, expiration, authority, client_id, raw_data, notes"

_SELECT_DOMAINS = f"SELECT {_DOMAIN_COLUMNS} FROM domains ORDER BY id"

_INSERT_DOMAIN = f"""
INSERT INTO domains (domain, expiration, nameservers, registrar, dns, client_id, raw_whois_data, notes)
VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
RETURNING {_DOMAIN_COLUMNS}
"""

_UPDATE_REGISTRATION = """
UPDATE domains
SET expiration = %s, nameservers = %s, registrar = %s, raw_whois_data = %s, dns = %s
WHERE id = %s
"""

_SELECT_CERTS = f"SELECT {_CERT_COLUMNS} FROM crts ORDER BY id"

_INSERT_CERT = f"""
INSERT INTO crts (domain, common_name, expiration, authority, client_id, raw_data, notes)
VALUES (%s, %s, %s, %s, %s, %s, %s)
RETURNING {_CERT_COLUMNS}
"""

_UPDATE_CERT = """
UPDATE crts SET common_name = %s, expiration = %s, authority = %s, raw_data = %s
WHERE id = %s
"""


def _integrity_as_conflict(error: FailureDescription) -> FailureDescription:
    if isinstance(error.exception, psycopg.IntegrityError):
        return FailureDescription(ErrorCode.CONFLICT, error.message, error.exception)
    return error


def _require_row(count: int, what: str) -> Result[int]:
    if count == 0:
        return Result.failure(ErrorCode.NOT_FOUND, f"{what} does not exist")
    return Result.success(count)


class PsycopgTrackerRepository:
    """
    Persist tracker state in PostgreSQL.

    Implements AssetRepository and AccountRepository. Raw registry payloads
    longer than `raw_payload_max_chars` are truncated before storage; only
    the latest payload per domain is kept.
    """

    def __init__(self, dsn: str, raw_payload_max_chars: int = 262_144) -> None:
        self._dsn = dsn
        self._raw_payload_max_chars = raw_payload_max_chars

    # ─────────────────────── Plumbing ───────────────────────

    def _run(self, operation: Callable[[psycopg.Cursor[Any]], T], message: str) -> Result[T]:
        """Run `operation` in its own connection and transaction."""

        def _in_transaction() -> T:
            with psycopg.connect(self._dsn) as conn, conn.transaction(), conn.cursor(row_factory=dict_row) as cur:
                return operation(cur)

        return Result.from_computation(_in_transaction, ErrorCode.STORAGE_ERROR, message).map_failure(
            _integrity_as_conflict
        )

    def _bounded(self, raw_payload: str) -> str:
        limit = self._raw_payload_max_chars
        if len(raw_payload) <= limit:
            return raw_payload
        return raw_payload[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER

    def initialize_schema(self) -> Result[bool]:
        """Create all tables when missing. Safe to run on every start."""

        def _create(cur: psycopg.Cursor[Any]) -> bool:
            cur.execute(SCHEMA)
            log.info("repository.schema_ready")
            return True

        return self._run(_create, "Failed to create database schema")

    # ─────────────────────── Domains ───────────────────────

    def list_domains(self) -> Result[list[TrackedDomain]]:
        return self._run(
            lambda cur: [_to_domain(row) for row in cur.execute(_SELECT_DOMAINS).fetchall()],
            "Failed to read tracked domains",
        )

    def add_domain(
        self,
        domain: str,
        client_id: int,
        registration: Registration,
        dns: DnsSnapshot,
        notes: str | None,
    ) -> Result[TrackedDomain]:
        def _insert(cur: psycopg.Cursor[Any]) -> TrackedDomain:
            cur.execute(
                _INSERT_DOMAIN,
                (
                    domain,
                    registration.expiration,
                    list(registration.nameservers),
                    registration.registrar,
                    Jsonb(dns.as_dict()),
                    client_id,
                    self._bounded(registration.raw_payload),
                    notes,
                ),
            )
            return _to_domain(cur.fetchone())

        return self._run(_insert, f"Failed to add domain {domain}")

    def edit_domain(self, domain_id: int, client_id: int, notes: str | None) -> Result[int]:
        return self._run(
            lambda cur: cur.execute(
                "UPDATE domains SET client_id = %s, notes = %s WHERE id = %s", (client_id, notes, domain_id)
            ).rowcount,
            f"Failed to edit domain {domain_id}",
        ).flat_map(lambda count: _require_row(count, f"Domain {domain_id}"))

    def delete_domain(self, domain_id: int) -> Result[int]:
        return self._run(
            lambda cur: cur.execute("DELETE FROM domains WHERE id = %s", (domain_id,)).rowcount,
            f"Failed to delete domain {domain_id}",
        ).flat_map(lambda count: _require_row(count, f"Domain {domain_id}"))

    def update_registration(self, domain_id: int, registration: Registration, dns: DnsSnapshot) -> Result[int]:
        return self._run(
            lambda cur: cur.execute(
                _UPDATE_REGISTRATION,
                (
                    registration.expiration,
                    list(registration.nameservers),
                    registration.registrar,
                    self._bounded(registration.raw_payload),
                    Jsonb(dns.as_dict()),
                    domain_id,
                ),
            ).rowcount,
            f"Failed to update registration of domain {domain_id}",
        ).flat_map(lambda count: _require_row(count, f"Domain {domain_id}"))

    def update_nameservers(self, domain_id: int, nameservers: tuple[str, ...]) -> Result[int]:
        return self._run(
            lambda cur: cur.execute(
                "UPDATE domains SET nameservers = %s WHERE id = %s", (list(nameservers), domain_id)
            ).rowcount,
            f"Failed to update nameservers of domain {domain_id}",
        ).flat_map(lambda count: _require_row(count, f"Domain {domain_id}"))

    # ─────────────────────── Certificates ───────────────────────

    def list_certificates(self) -> Result[list[TrackedCertificate]]:
        return self._run(
            lambda cur: [_to_certificate(row) for row in cur.execute(_SELECT_CERTS).fetchall()],
            "Failed to read tracked certificates",
        )

    def add_certificate(
        self, host: str, client_id: int, leaf: LeafCertificate, notes: str | None
    ) -> Result[TrackedCertificate]:
        def _insert(cur: psycopg.Cursor[Any]) -> TrackedCertificate:
            cur.execute(
                _INSERT_CERT,
                (host, leaf.common_name, leaf.not_after, leaf.issuer_organization, client_id, leaf.der, notes),
            )
            return _to_certificate(cur.fetchone())

        return self._run(_insert, f"Failed to add certificate for {host}")

    def update_certificate(self, certificate_id: int, leaf: LeafCertificate) -> Result[int]:
        return self._run(
            lambda cur: cur.execute(
                _UPDATE_CERT,
                (leaf.common_name, leaf.not_after, leaf.issuer_organization, leaf.der, certificate_id),
            ).rowcount,
            f"Failed to update certificate {certificate_id}",
        ).flat_map(lambda count: _require_row(count, f"Certificate {certificate_id}"))

    def delete_certificate(self, certificate_id: int) -> Result[int]:
        return self._run(
            lambda cur: cur.execute("DELETE FROM crts WHERE id = %s", (certificate_id,)).rowcount,
            f"Failed to delete certificate {certificate_id}",
        ).flat_map(lambda count: _require_row(count, f"Certificate {certificate_id}"))

    # ─────────────────────── Clients ───────────────────────

    def list_clients(self) -> Result[list[Client]]:
        return self._run(
            lambda cur: [
                Client(id=row["id"], name=row["name"])
                for row in cur.execute("SELECT id, name FROM clients ORDER BY name").fetchall()
            ],
            "Failed to read clients",
        )

    def add_client(self, name: str) -> Result[Client]:
        def _insert(cur: psycopg.Cursor[Any]) -> Client:
            row = cur.execute("INSERT INTO clients (name) VALUES (%s) RETURNING id, name", (name,)).fetchone()
            return Client(id=row["id"], name=row["name"])

        return self._run(_insert, f"Failed to add client {name!r}")

    def delete_client(self, client_id: int) -> Result[int]:
        return self._run(
            lambda cur: cur.execute("DELETE FROM clients WHERE id = %s", (client_id,)).rowcount,
            f"Failed to delete client {client_id}",
        ).flat_map(lambda count: _require_row(count, f"Client {client_id}"))

    # ─────────────────────── Users & sessions ───────────────────────

    def find_user(self, username: str) -> Result[User]:
        return self._run(
            lambda cur: _one_or_empty(
                cur.execute("SELECT id, username, password FROM users WHERE username = %s", (username,))
            ),
            "Failed to look up user",
        ).flat_map(lambda row: _to_user(row, f"User {username!r}"))

    def get_user(self, user_id: int) -> Result[User]:
        return self._run(
            lambda cur: _one_or_empty(cur.execute("SELECT id, username, password FROM users WHERE id = %s", (user_id,))),
            "Failed to look up user",
        ).flat_map(lambda row: _to_user(row, f"User {user_id}"))

    def create_user(self, username: str, password_hash: str) -> Result[User]:
        def _insert(cur: psycopg.Cursor[Any]) -> User:
            row = cur.execute(
                "INSERT INTO users (username, password) VALUES (%s, %s) RETURNING id, username, password",
                (username, password_hash),
            ).fetchone()
            return User(id=row["id"], username=row["username"], password_hash=row["password"])

        return self._run(_insert, f"Failed to create user {username!r}")

    def create_session(self, user_id: int, token: str, expires: datetime) -> Result[Session]:
        def _insert(cur: psycopg.Cursor[Any]) -> Session:
            cur.execute(
                "INSERT INTO sessions (token, user_id, expires) VALUES (%s, %s, %s)", (token, user_id, expires)
            )
            return Session(token=token, user_id=user_id, expires=expires)

        return self._run(_insert, "Failed to create session")

    def find_session(self, token: str) -> Result[Session]:
        return self._run(
            lambda cur: _one_or_empty(
                cur.execute("SELECT token, user_id, expires FROM sessions WHERE token = %s", (token,))
            ),
            "Failed to look up session",
        ).flat_map(
            lambda row: Result.success(Session(token=row["token"], user_id=row["user_id"], expires=row["expires"]))
            if row
            else Result.failure(ErrorCode.NOT_FOUND, "Session does not exist")
        )

    def delete_expired_sessions(self, now: datetime) -> Result[int]:
        return self._run(
            lambda cur: cur.execute("DELETE FROM sessions WHERE expires < %s", (now,)).rowcount,
            "Failed to delete expired sessions",
        )


# ─────────────────────── Row mapping ───────────────────────


def _to_domain(row: dict[str, Any]) -> TrackedDomain:
    return TrackedDomain(
        id=row["id"],
        domain=row["domain"],
        expiration=row["expiration"],
        nameservers=tuple(row["nameservers"] or ()),
        registrar=row["registrar"],
        client_id=row["client_id"],
        dns=DnsSnapshot.from_dict(row["dns"]),
        raw_payload=row["raw_whois_data"],
        notes=row["notes"],
    )


def _to_certificate(row: dict[str, Any]) -> TrackedCertificate:
    return TrackedCertificate(
        id=row["id"],
        host=row["domain"],
        common_name=row["common_name"],
        expiration=row["expiration"],
        authority=row["authority"],
        client_id=row["client_id"],
        raw_data=bytes(row["raw_data"] or b""),
        notes=row["notes"],
    )


def _one_or_empty(cur: psycopg.Cursor[Any]) -> dict[str, Any]:
    """First row of a lookup, or {} when there is none (a Success cannot carry None)."""
    return cur.fetchone() or {}


def _to_user(row: dict[str, Any], what: str) -> Result[User]:
    if not row:
        return Result.failure(ErrorCode.NOT_FOUND, f"{what} does not exist")
    return Result.success(User(id=row["id"], username=row["username"], password_hash=row["password"]))
