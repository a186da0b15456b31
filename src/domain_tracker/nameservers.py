"""
Nameserver drift detection.

Stored and resolved nameserver sets are compared in one canonical form:
lowercase, trailing dot stripped, duplicates removed, sorted ascending.
Comparison is therefore insensitive to ordering and to the presence of the
root dot that DNS answers carry ("ns1.example.com." vs "ns1.example.com").
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


def normalize_nameservers(nameservers: Iterable[str]) -> tuple[str, ...]:
    """Canonical form of a nameserver set. Blank entries are dropped."""
    cleaned = {ns.strip().lower().rstrip(".") for ns in nameservers}
    cleaned.discard("")
    return tuple(sorted(cleaned))


@dataclass(frozen=True, slots=True)
class NameserverDiff:
    changed: bool
    current: tuple[str, ...]


def detect_change(stored: Iterable[str], current: Iterable[str]) -> NameserverDiff:
    """
    Compare a stored nameserver set with a freshly resolved one.

    A domain with no stored nameservers has never been initialized and is
    reported as unchanged. Callers must not pass an empty `current` set from a
    failed lookup; that case is handled as "unresolved" before comparing.

        >>> detect_change(["NS1.example.com."], ["ns1.example.com"]).changed
        False
    """
    normalized_stored = normalize_nameservers(stored)
    normalized_current = normalize_nameservers(current)
    if not normalized_stored:
        return NameserverDiff(changed=False, current=normalized_current)
    return NameserverDiff(changed=normalized_stored != normalized_current, current=normalized_current)
