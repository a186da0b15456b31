"""
Reminder batching — which assets are due, and how urgent each one is.

An asset is due when `now + lead_days` is past its expiration. Due assets are
split into three bands by remaining time relative to the lead window L:

    remaining < L/3          CRITICAL
    L/3 <= remaining < L/2   WARNING
    remaining >= L/2         INFO

Both thresholds are exclusive upper bounds, so every critical asset would
also satisfy the warning test and the bands never overlap. Assets already
past expiration have negative remaining time and are always CRITICAL.

Everything here is a pure function of `now` and the stored records.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Protocol, TypeVar

from domain_tracker.domain.models import ReminderItem, Urgency


class _Expiring(Protocol):
    @property
    def expiration(self) -> datetime: ...


A = TypeVar("A", bound=_Expiring)


def is_due(expiration: datetime, lead_days: int, now: datetime) -> bool:
    return now + timedelta(days=lead_days) > expiration


def select_due_for_reminder(assets: Iterable[A], lead_days: int, now: datetime) -> list[A]:
    """Assets inside the lead window, soonest expiration first."""
    due = [asset for asset in assets if is_due(asset.expiration, lead_days, now)]
    return sorted(due, key=lambda asset: asset.expiration)


def classify_urgency(expiration: datetime, lead_days: int, now: datetime) -> Urgency:
    remaining = expiration - now
    window = timedelta(days=lead_days)
    if remaining < window / 3:
        return Urgency.CRITICAL
    if remaining < window / 2:
        return Urgency.WARNING
    return Urgency.INFO


def build_reminders(
    assets: Iterable[A],
    lead_days: int,
    now: datetime,
    label: Callable[[A], str],
) -> list[ReminderItem]:
    """Select due assets and wrap each one with its label and urgency band."""
    return [
        ReminderItem(
            name=label(asset),
            expiration=asset.expiration,
            urgency=classify_urgency(asset.expiration, lead_days, now),
            remaining_days=(asset.expiration - now).days,
        )
        for asset in select_due_for_reminder(assets, lead_days, now)
    ]
