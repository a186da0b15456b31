"""
Notifier — render reminder and drift batches as HTML and hand them to mail.

Templates live in domain_tracker/templates and are rendered with Jinja2
(autoescaped). Each batch becomes exactly one message; an empty batch is never
sent. A transport failure is logged and returned as a Failure, and the caller
carries on: there is no retry within the same cycle.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from domain_tracker.domain.models import NameserverChangeEvent, ReminderItem
from domain_tracker.domain.ports import MailTransport
from domain_tracker.railway.result import Result

log = structlog.get_logger()

TEMPLATES_DIR = Path(__file__).parent / "templates"

DOMAIN_REMINDER_SUBJECT = "Domains expiring soon"
CERTIFICATE_REMINDER_SUBJECT = "TLS certificates expiring soon"
NAMESERVER_CHANGE_SUBJECT = "Domain nameserver changes detected"


def format_timestamp(value: datetime) -> str:
    return value.strftime("%m/%d/%Y @ %I:%M:%S%p UTC")


def describe_remaining(days: int) -> str:
    """Human wording for whole days left until expiration."""
    if days < 0:
        return "expired" if days == -1 else f"expired {-days} days ago"
    if days == 0:
        return "less than a day"
    if days == 1:
        return "1 day"
    return f"{days} days"


def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        autoescape=select_autoescape(["html", "xml", "j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["timestamp"] = format_timestamp
    env.filters["remaining"] = describe_remaining
    return env


class EmailNotifier:
    """Implements the Notifier port on top of a MailTransport."""

    def __init__(self, transport: MailTransport, base_url: str) -> None:
        self._transport = transport
        self._base_url = base_url.rstrip("/")
        self._env = _environment()

    def notify(self, subject: str, html_body: str) -> Result[str]:
        return (
            self._transport.send(subject, html_body)
            .peek(lambda message_id: log.info("notifier.sent", subject=subject, message_id=message_id))
            .peek_failure(
                lambda err: log.error(
                    "notifier.delivery_failed", subject=subject, code=err.code.value, error=err.describe()
                )
            )
        )

    def send_domain_reminders(self, items: list[ReminderItem], lead_days: int) -> Result[int]:
        return self._send_batch(
            DOMAIN_REMINDER_SUBJECT,
            "domain_reminders.html.j2",
            items,
            lead_days=lead_days,
            link_path="/dash/",
        )

    def send_certificate_reminders(self, items: list[ReminderItem], lead_days: int) -> Result[int]:
        return self._send_batch(
            CERTIFICATE_REMINDER_SUBJECT,
            "certificate_reminders.html.j2",
            items,
            lead_days=lead_days,
            link_path="/dash/tls/",
        )

    def send_nameserver_changes(self, events: list[NameserverChangeEvent]) -> Result[int]:
        return self._send_batch(NAMESERVER_CHANGE_SUBJECT, "nameserver_changes.html.j2", events)

    def render(self, template_name: str, **context: object) -> str:
        return self._env.get_template(template_name).render(base_url=self._base_url, **context)

    def _send_batch(self, subject: str, template_name: str, items: list, **context: object) -> Result[int]:
        if not items:
            log.info("notifier.nothing_to_send", subject=subject)
            return Result.success(0)
        body = self.render(template_name, items=items, **context)
        return self.notify(subject, body).map(lambda _: len(items))
