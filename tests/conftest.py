"""
Shared test fixtures and helpers for the domain-tracker test suite.

Provides a fixed clock and factories for the domain records the unit,
integration and acceptance suites all build.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from domain_tracker.domain.models import (
    DnsSnapshot,
    LeafCertificate,
    Registration,
    TrackedCertificate,
    TrackedDomain,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def now() -> datetime:
    """Return the fixed point in time every time-dependent test runs at."""
    return NOW


def days_from_now(days: float) -> datetime:
    return NOW + timedelta(days=days)


def make_registration(
    expires_in_days: float = 365,
    nameservers: tuple[str, ...] = ("ns1.example.net", "ns2.example.net"),
    registrar: str = "Example Registrar, Inc.",
    source: str = "rdap",
) -> Registration:
    return Registration(
        expiration=days_from_now(expires_in_days),
        nameservers=nameservers,
        registrar=registrar,
        raw_payload='{"ldhName": "example.com"}',
        source=source,
    )


def make_domain(
    id: int = 1,
    domain: str = "example.com",
    expires_in_days: float = 365,
    nameservers: tuple[str, ...] = ("ns1.example.net", "ns2.example.net"),
    client_id: int = 1,
) -> TrackedDomain:
    return TrackedDomain(
        id=id,
        domain=domain,
        expiration=days_from_now(expires_in_days),
        nameservers=nameservers,
        registrar="Example Registrar, Inc.",
        client_id=client_id,
        dns=DnsSnapshot(a=("93.184.216.34",), ns=nameservers),
    )


def make_leaf(
    common_name: str = "example.com",
    expires_in_days: float = 90,
    issuer: str = "Let's Encrypt",
) -> LeafCertificate:
    return LeafCertificate(
        common_name=common_name,
        not_after=days_from_now(expires_in_days),
        issuer_organization=issuer,
        der=b"\x30\x82\x01\x0a",
    )


def make_certificate(
    id: int = 1,
    host: str = "example.com",
    expires_in_days: float = 90,
    client_id: int = 1,
) -> TrackedCertificate:
    return TrackedCertificate(
        id=id,
        host=host,
        common_name=host,
        expiration=days_from_now(expires_in_days),
        authority="Let's Encrypt",
        client_id=client_id,
    )
