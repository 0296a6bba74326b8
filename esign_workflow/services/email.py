"""
Email senders

``SMTPEmailSender`` delivers through an SMTP relay; ``LogEmailSender`` only
logs and is used when no SMTP host is configured. Both return an
``EmailResult`` instead of raising. A logged message was not delivered, so
``LogEmailSender`` reports it as a failure.
"""

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional

from esign_workflow.models.reminder import EmailResult
from esign_workflow.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

NOT_DELIVERED = "No SMTP host configured, message logged only"


class EmailSender(ABC):
    """Outbound email transport."""

    @abstractmethod
    async def send(self, to: str, subject: str, html: str, text: str) -> EmailResult:
        """Send one message. Never raises."""


class SMTPEmailSender(EmailSender):
    """
    Sends multipart (text + HTML) email via SMTP.
    The blocking smtplib session runs in a worker thread.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _build_message(self, to: str, subject: str, html: str, text: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.settings.email_sender_name, self.settings.email_sender))
        msg["To"] = to
        msg["Message-ID"] = make_msgid(domain=self.settings.email_sender.split("@")[-1])
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def _deliver(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30) as server:
            if self.settings.smtp_use_tls:
                server.starttls()
            if self.settings.smtp_user and self.settings.smtp_password:
                server.login(self.settings.smtp_user, self.settings.smtp_password)
            server.send_message(msg)

    async def send(self, to: str, subject: str, html: str, text: str) -> EmailResult:
        try:
            msg = self._build_message(to, subject, html, text)
            await asyncio.to_thread(self._deliver, msg)
            logger.info(f"Email sent to {to}: {subject}")
            return EmailResult(success=True, message_id=msg["Message-ID"])
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to}: {e}")
            return EmailResult(success=False, error=str(e))


class LogEmailSender(EmailSender):
    """Logs emails instead of sending them."""

    async def send(self, to: str, subject: str, html: str, text: str) -> EmailResult:
        logger.info(f"[email not sent, no SMTP host] to={to} subject={subject!r}")
        return EmailResult(success=False, error=NOT_DELIVERED)


def get_email_sender(settings: Optional[Settings] = None) -> EmailSender:
    """SMTP sender when a host is configured, otherwise the logging sender."""
    settings = settings or get_settings()
    if settings.smtp_host:
        return SMTPEmailSender(settings)
    logger.warning("SMTP_HOST not set, emails will only be logged")
    return LogEmailSender()
