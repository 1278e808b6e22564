"""
Invoice Reminders -- Mail Senders

The dispatch engine talks to a ``MailSender``; which provider sits behind
it is chosen from config at process start:

    resend  -- Resend HTTP API via the ``resend`` SDK (default)
    smtp    -- any SMTP relay via ``smtplib`` with STARTTLS

A send either returns a SendReceipt carrying the provider's message id or
raises MailSendError.  A provider answer without a message id counts as a
failure.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Protocol

import resend

from .config import MailSettings, ReminderConfig, SenderInfo
from .errors import MailConfigurationError, MailSendError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OutgoingEmail:
    """What the engine hands to a mail sender."""

    from_: str
    to: str
    subject: str
    text: str
    html: str


@dataclass(frozen=True)
class SendReceipt:
    """Provider acknowledgment of an accepted message."""

    message_id: str


class MailSender(Protocol):
    def check_configured(self) -> None:
        """Raise MailConfigurationError if the sender cannot send at all."""

    def send(self, message: OutgoingEmail) -> SendReceipt:
        """Deliver one message or raise MailSendError."""


# ---------------------------------------------------------------------------
# Resend
# ---------------------------------------------------------------------------

class ResendMailSender:
    """Sends through the Resend API."""

    def __init__(self, api_key: str, sender: SenderInfo) -> None:
        self.api_key = api_key
        self.sender = sender

    def check_configured(self) -> None:
        if not self.api_key:
            raise MailConfigurationError("RESEND_API_KEY is not configured")
        if not self.sender.email:
            raise MailConfigurationError("EMAIL_FROM is not configured")

    def send(self, message: OutgoingEmail) -> SendReceipt:
        resend.api_key = self.api_key
        params = {
            "from": message.from_,
            "to": [message.to],
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        }
        try:
            result = resend.Emails.send(params)
        except Exception as exc:
            raise MailSendError(f"Resend API error: {exc}") from exc

        if isinstance(result, dict):
            message_id = result.get("id")
        else:
            message_id = getattr(result, "id", None)
        if not message_id:
            raise MailSendError(
                f"Resend API returned success but no email ID. Response: {result!r}"
            )
        return SendReceipt(message_id=str(message_id))


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

class SmtpMailSender:
    """Sends through an SMTP relay, one connection per message."""

    def __init__(self, settings: MailSettings, sender: SenderInfo) -> None:
        self.settings = settings
        self.sender = sender

    def check_configured(self) -> None:
        if not self.settings.smtp_host:
            raise MailConfigurationError("SMTP_HOST is not configured")
        if not self.sender.email:
            raise MailConfigurationError("EMAIL_FROM is not configured")

    def _build_message(self, message: OutgoingEmail, message_id: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = message.from_
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(message.text, "plain", "utf-8"))
        msg.attach(MIMEText(message.html, "html", "utf-8"))
        return msg

    def send(self, message: OutgoingEmail) -> SendReceipt:
        if not message.to:
            raise MailSendError("No recipient email address")

        domain = self.sender.email.rpartition("@")[2] or None
        message_id = make_msgid(domain=domain)
        msg = self._build_message(message, message_id)
        s = self.settings

        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.send_timeout_seconds) as server:
                if s.smtp_use_tls:
                    server.starttls(context=ssl.create_default_context())
                if s.smtp_username and s.smtp_password:
                    server.login(s.smtp_username, s.smtp_password)
                server.sendmail(self.sender.email, [message.to], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise MailSendError(f"SMTP authentication failed: {exc}") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise MailSendError(f"Recipients refused: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise MailSendError(f"SMTP send failed: {exc}") from exc

        logger.info("Sent reminder via SMTP to %s (%s)", message.to, message_id)
        return SendReceipt(message_id=message_id)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_mail_sender(config: ReminderConfig) -> MailSender:
    """Construct the sender named by ``config.mail.provider``."""
    provider = (config.mail.provider or "").strip().lower()
    if provider == "resend":
        return ResendMailSender(config.mail.resend_api_key, config.sender)
    if provider == "smtp":
        return SmtpMailSender(config.mail, config.sender)
    raise MailConfigurationError(f"Unknown mail provider: {config.mail.provider!r}")
