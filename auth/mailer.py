"""
auth/mailer.py -- Outbound notifier for account emails.

Contract:
    notifier.send(to_address, subject, body) -> None
    raises DeliveryError when the message could not be handed off.

Callers treat delivery as best effort: the email-change workflow logs a
DeliveryError and carries on, it never rolls back persisted state because of
one.

LogNotifier is the default. It writes the message to the "pollhub.mailer"
logger instead of sending it, which is how development and test environments
get at confirmation links. SmtpNotifier is selected when SMTP_HOST is set; its
socket timeout bounds how long a request can wait on the mail server, and it
does not retry.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from core.config import Settings

logger = logging.getLogger("pollhub.mailer")


class DeliveryError(Exception):
    """The notifier could not hand the message off."""


class Notifier(Protocol):
    def send(self, to_address: str, subject: str, body: str) -> None: ...


class LogNotifier:
    def send(self, to_address: str, subject: str, body: str) -> None:
        logger.info("=== EMAIL WOULD BE SENT === To: %s Subject: %s", to_address, subject)
        logger.info("Body:\n%s", body)


class SmtpNotifier:
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.timeout = timeout

    def send(self, to_address: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to_address
        msg.set_content(body)
        try:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as smtp:
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP delivery to {to_address} failed: {exc}") from exc


def build_notifier(settings: Settings) -> Notifier:
    """Pick the notifier for the configured environment."""
    if settings.smtp_host:
        return SmtpNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.mail_from,
            username=settings.smtp_user,
            password=settings.smtp_password,
            timeout=settings.smtp_timeout_seconds,
        )
    return LogNotifier()


def email_confirmation_message(username: str, new_email: str, confirmation_url: str, ttl_hours: int) -> tuple[str, str]:
    """Return (subject, body) for the email-change confirmation message."""
    subject = "Confirm your new email address"
    body = (
        f"Hello {username},\n"
        "\n"
        f"You have requested to change your email address to: {new_email}\n"
        "\n"
        "Please click the following link to confirm this change:\n"
        f"{confirmation_url}\n"
        "\n"
        f"This link will expire in {ttl_hours} hours.\n"
        "\n"
        "If you did not request this change, please ignore this email.\n"
        "\n"
        "Best regards,\n"
        "Community Poll Hub Team\n"
    )
    return subject, body
