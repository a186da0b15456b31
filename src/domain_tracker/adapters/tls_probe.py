"""
TLS adapter — fetch the leaf certificate a host presents on port 443.

Implements the CertificateFetcher port with the standard ssl module (default
trust store, hostname verification, SNI) and parses the DER bytes with
cryptography's x509 loader.

Failure codes:
  TLS_ERROR         handshake or verification failed
  CONNECTION_ERROR  name resolution, TCP connect or timeout
"""

from __future__ import annotations

import socket
import ssl

import structlog
from cryptography import x509
from cryptography.x509.oid import NameOID

from domain_tracker.domain.models import LeafCertificate
from domain_tracker.railway import ErrorCode
from domain_tracker.railway.result import Result

log = structlog.get_logger()

TLS_PORT = 443


class TlsCertificateFetcher:
    """Open a verified TLS connection and return the peer's leaf certificate."""

    def __init__(self, timeout: int = 10, port: int = TLS_PORT) -> None:
        self._timeout = timeout
        self._port = port
        self._context = ssl.create_default_context()

    def fetch_leaf_certificate(self, host: str) -> Result[LeafCertificate]:
        hostname = host.strip().lower().rstrip(".")
        try:
            der = self._handshake(hostname)
        except ssl.SSLError as e:
            # SSLError subclasses OSError, so it has to be matched first.
            return Result.failure(ErrorCode.TLS_ERROR, f"TLS handshake with {hostname} failed", e)
        except OSError as e:
            return Result.failure(ErrorCode.CONNECTION_ERROR, f"Could not connect to {hostname}:{self._port}", e)

        return parse_leaf_certificate(der).peek(
            lambda leaf: log.info(
                "tls.fetched",
                host=hostname,
                common_name=leaf.common_name,
                not_after=leaf.not_after.isoformat(),
            )
        )

    def _handshake(self, hostname: str) -> bytes:
        with socket.create_connection((hostname, self._port), timeout=self._timeout) as sock:
            with self._context.wrap_socket(sock, server_hostname=hostname) as tls:
                der = tls.getpeercert(binary_form=True)
        if not der:
            raise ssl.SSLError(f"{hostname} presented no certificate")
        return der


def parse_leaf_certificate(der: bytes) -> Result[LeafCertificate]:
    return Result.from_computation(
        lambda: _to_leaf(x509.load_der_x509_certificate(der), der),
        ErrorCode.TLS_ERROR,
        "Peer certificate could not be parsed",
    )


def _to_leaf(cert: x509.Certificate, der: bytes) -> LeafCertificate:
    common_name = _first_attribute(cert.subject, NameOID.COMMON_NAME)
    if not common_name:
        # Certificates without a subject CN still name the host in the SAN.
        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            names = san.value.get_values_for_type(x509.DNSName)
            common_name = names[0] if names else ""
        except x509.ExtensionNotFound:
            common_name = ""
    issuer = (
        _first_attribute(cert.issuer, NameOID.ORGANIZATION_NAME)
        or _first_attribute(cert.issuer, NameOID.COMMON_NAME)
    )
    return LeafCertificate(
        common_name=common_name.lower(),
        not_after=cert.not_valid_after_utc,
        issuer_organization=issuer,
        der=der,
    )


def _first_attribute(name: x509.Name, oid: x509.ObjectIdentifier) -> str:
    attributes = name.get_attributes_for_oid(oid)
    if not attributes:
        return ""
    value = attributes[0].value
    return value.decode() if isinstance(value, bytes) else str(value)
