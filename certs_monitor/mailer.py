"""
Mail transports for Certs Monitor.
"""

import asyncio
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import List, Optional, Protocol

from certs_monitor.config import Config
from certs_monitor.errors import DeliveryError
from certs_monitor.logger import get_logger


class MailTransport(Protocol):
    """Anything that can deliver an HTML email or raise DeliveryError."""

    async def send(
        self, recipients: List[str], subject: str, html: str, tag: Optional[str] = None
    ) -> None:
        ...


class SmtpMailer:
    """Delivers email through an SMTP relay."""

    def __init__(self, config: Config):
        self.config = config
        self.logger = get_logger("mailer")
        self.sender = formataddr((config.mail_from_name, config.mail_from_address))

    def build_message(
        self, recipients: List[str], subject: str, html: str, tag: Optional[str] = None
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=self.config.mail_from_address.split("@")[-1])
        if tag:
            message["X-Tag"] = tag
        message.set_content("This message requires an HTML capable email client.")
        message.add_alternative(html, subtype="html")
        return message

    def _send_sync(self, message: EmailMessage) -> None:
        with smtplib.SMTP(
            self.config.smtp_host, self.config.smtp_port, timeout=self.config.smtp_timeout
        ) as server:
            if self.config.smtp_starttls:
                server.starttls(context=ssl.create_default_context())
            if self.config.smtp_username and self.config.smtp_password:
                server.login(self.config.smtp_username, self.config.smtp_password)
            server.send_message(message)

    async def send(
        self, recipients: List[str], subject: str, html: str, tag: Optional[str] = None
    ) -> None:
        """
        Send one email.

        Raises:
            DeliveryError: If the relay rejects the message or cannot be reached
        """
        if not recipients:
            raise DeliveryError("No recipients given")

        message = self.build_message(recipients, subject, html, tag)
        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP delivery to {', '.join(recipients)} failed: {e}") from e

        self.logger.debug(f"Email '{subject}' sent to {', '.join(recipients)}")


class LogMailer:
    """Dry-run transport that only logs what would have been sent."""

    def __init__(self) -> None:
        self.logger = get_logger("mailer")

    async def send(
        self, recipients: List[str], subject: str, html: str, tag: Optional[str] = None
    ) -> None:
        self.logger.info(
            f"[dry-run] Would send '{subject}' to {', '.join(recipients)} "
            f"(tag={tag}, {len(html)} bytes)"
        )


def create_mailer(config: Config) -> MailTransport:
    """Pick the transport for the configured operation mode."""
    if config.dry_run:
        return LogMailer()
    return SmtpMailer(config)
