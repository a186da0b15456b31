"""
Domain models — immutable records for tracked assets and refresh bookkeeping.

Stored records (TrackedDomain, TrackedCertificate, Client, User, Session) map
one-to-one onto the PostgreSQL tables. Fetch results (Registration,
LeafCertificate, DnsSnapshot) are what the network adapters produce before a
refresh cycle writes them back.

All models are frozen dataclasses; timestamps are timezone-aware UTC.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Sentinel stored when a registry payload cannot be serialized.
RAW_PAYLOAD_UNAVAILABLE = "<unavailable>"


def serialize_raw_payload(payload: Any) -> str:
    """Best-effort JSON rendering of a registry answer, kept for audit."""
    try:
        return json.dumps(payload, default=str, sort_keys=True)
    except (TypeError, ValueError):
        return RAW_PAYLOAD_UNAVAILABLE


# ─────────────────────── Fetch results ───────────────────────


@dataclass(frozen=True, slots=True)
class DnsSnapshot:
    """A/AAAA/MX/NS record values captured alongside a registration lookup."""

    a: tuple[str, ...] = ()
    aaaa: tuple[str, ...] = ()
    mx: tuple[str, ...] = ()
    ns: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, list[str]]:
        return {"A": list(self.a), "AAAA": list(self.aaaa), "MX": list(self.mx), "NS": list(self.ns)}

    @staticmethod
    def from_dict(data: dict[str, list[str]] | None) -> DnsSnapshot:
        data = data or {}
        return DnsSnapshot(
            a=tuple(data.get("A", ())),
            aaaa=tuple(data.get("AAAA", ())),
            mx=tuple(data.get("MX", ())),
            ns=tuple(data.get("NS", ())),
        )


@dataclass(frozen=True, slots=True)
class Registration:
    """
    What a registration source knows about a domain.

    `nameservers` is already normalized (lowercase, no trailing dot, sorted).
    `source` names the strategy that produced it ("rdap" or "whois").
    """

    expiration: datetime
    nameservers: tuple[str, ...]
    registrar: str
    raw_payload: str = field(repr=False)
    source: str = ""


@dataclass(frozen=True, slots=True)
class LeafCertificate:
    """End-entity certificate presented first in a TLS handshake."""

    common_name: str
    not_after: datetime
    issuer_organization: str
    der: bytes = field(repr=False)


# ─────────────────────── Stored records ───────────────────────


@dataclass(frozen=True, slots=True)
class TrackedDomain:
    id: int
    domain: str
    expiration: datetime
    nameservers: tuple[str, ...]
    registrar: str
    client_id: int
    dns: DnsSnapshot = field(default_factory=DnsSnapshot)
    raw_payload: str = field(default="", repr=False)
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class TrackedCertificate:
    id: int
    host: str
    common_name: str
    expiration: datetime
    authority: str
    client_id: int
    raw_data: bytes = field(default=b"", repr=False)
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class Client:
    id: int
    name: str


@dataclass(frozen=True, slots=True)
class User:
    id: int
    username: str
    password_hash: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class Session:
    token: str = field(repr=False)
    user_id: int
    expires: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires <= now


# ─────────────────────── Notification inputs ───────────────────────


@dataclass(frozen=True, slots=True)
class NameserverChangeEvent:
    """Nameserver drift observed during one detection pass. Never persisted."""

    domain: str
    previous: tuple[str, ...]
    current: tuple[str, ...]
    detected_at: datetime


class Urgency(Enum):
    """Reminder band relative to the configured lead window."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True, slots=True)
class ReminderItem:
    """One asset selected for a reminder, with its band and dashboard label."""

    name: str
    expiration: datetime
    urgency: Urgency
    remaining_days: int


# ─────────────────────── Cycle bookkeeping ───────────────────────


class CyclePhase(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    NOTIFYING = "notifying"


@dataclass(frozen=True, slots=True)
class CycleReport:
    """
    Outcome of one refresh or detection cycle.

    `skipped` counts assets whose fetch or write failed; `unresolved` counts
    nameserver checks with no usable answer; `notified` is the number of
    items in the email that went out (0 when none was sent) and
    `undelivered` the number of items whose email could not be delivered.
    """

    job: str
    examined: int = 0
    refreshed: int = 0
    skipped: int = 0
    unresolved: int = 0
    changed: int = 0
    notified: int = 0
    undelivered: int = 0
    deleted: int = 0

    def as_dict(self) -> dict[str, int | str]:
        return {
            "job": self.job,
            "examined": self.examined,
            "refreshed": self.refreshed,
            "skipped": self.skipped,
            "unresolved": self.unresolved,
            "changed": self.changed,
            "notified": self.notified,
            "undelivered": self.undelivered,
            "deleted": self.deleted,
        }
