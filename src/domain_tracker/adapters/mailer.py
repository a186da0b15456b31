"""
SMTP adapter — deliver HTML notifications over implicit TLS.

Implements the MailTransport port with smtplib.SMTP_SSL and an
authenticated login. One connection per message; notifications go out at
most a few times a day.
"""

from __future__ import annotations

import smtplib
import ssl
from collections.abc import Callable
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

import structlog

from domain_tracker import __version__
from domain_tracker.railway import ErrorCode
from domain_tracker.railway.result import Result

log = structlog.get_logger()

type SmtpFactory = Callable[..., smtplib.SMTP]


class SmtpMailTransport:
    """Send one message per call; failures come back as TRANSPORT_ERROR."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        to_address: str,
        timeout: int = 30,
        smtp_factory: SmtpFactory = smtplib.SMTP_SSL,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from_address = from_address
        self._to_address = to_address
        self._timeout = timeout
        self._smtp_factory = smtp_factory

    def send(self, subject: str, html_body: str) -> Result[str]:
        message = self._build_message(subject, html_body)
        return Result.from_computation(
            lambda: self._deliver(message),
            ErrorCode.TRANSPORT_ERROR,
            f"Mail delivery via {self._host}:{self._port} failed",
        )

    def _build_message(self, subject: str, html_body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._from_address
        message["To"] = self._to_address
        message["Date"] = formatdate(localtime=False, usegmt=True)
        message["Message-ID"] = make_msgid(domain="domain-tracker")
        message["X-Mailer"] = f"domain-tracker/{__version__}"
        message.set_content("This notification is best viewed in an HTML-capable mail client.")
        message.add_alternative(html_body, subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> str:
        with self._smtp_factory(
            self._host, self._port, timeout=self._timeout, context=ssl.create_default_context()
        ) as smtp:
            smtp.login(self._username, self._password)
            smtp.send_message(message)
        message_id = str(message["Message-ID"])
        log.info("mail.sent", subject=message["Subject"], message_id=message_id)
        return message_id
