"""SMTP delivery of run reports."""
from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Sequence

from ..core.config import Settings

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when a message cannot be handed to the SMTP relay."""


class SmtpMailTransport:
    """Send plain-text mail through the configured SMTP relay."""

    def __init__(self, settings: Settings, *, timeout: float = 30.0):
        self._settings = settings
        self._timeout = timeout

    def build_message(self, to: Sequence[str], sender: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = sender
        message["To"] = ", ".join(to)
        message["Subject"] = subject
        message.set_content(body)
        return message

    def send(self, to: Sequence[str], sender: str, subject: str, body: str) -> None:
        settings = self._settings
        if not settings.smtp_server:
            raise TransportError("SMTP server is not configured")
        if not to:
            raise TransportError("No recipients configured")

        message = self.build_message(to, sender, subject, body)
        logger.debug(
            "Sending mail via %s:%s (tls=%s) to %s",
            settings.smtp_server,
            settings.smtp_port,
            settings.smtp_use_tls,
            ", ".join(to),
        )
        try:
            with smtplib.SMTP(settings.smtp_server, settings.smtp_port, timeout=self._timeout) as client:
                if settings.smtp_use_tls:
                    client.starttls(context=ssl.create_default_context())
                if settings.has_smtp_credential():
                    client.login(settings.smtp_username, settings.smtp_password)
                client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(f"SMTP delivery via {settings.smtp_server} failed: {exc}") from exc

        logger.info("Mail delivered to %s", ", ".join(to))


__all__ = ["SmtpMailTransport", "TransportError"]
