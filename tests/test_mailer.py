"""Tests for invoice_reminders.mailer -- Resend and SMTP senders.

The provider SDK and smtplib are replaced with in-process fakes; nothing
leaves the machine.
"""

import smtplib

import pytest
import resend

from invoice_reminders.config import MailSettings, ReminderConfig, SenderInfo
from invoice_reminders.errors import MailConfigurationError, MailSendError
from invoice_reminders.mailer import (
    OutgoingEmail,
    ResendMailSender,
    SmtpMailSender,
    build_mail_sender,
)

SENDER = SenderInfo(name="Acme Billing", email="billing@acme.test")
MESSAGE = OutgoingEmail(
    from_="Acme Billing <billing@acme.test>",
    to="ap@client.test",
    subject="Invoice due",
    text="Hi",
    html="<p>Hi</p>",
)


# ============================================================================
# Resend
# ============================================================================

class TestResendMailSender:

    def test_check_configured(self, monkeypatch):
        monkeypatch.delenv("EMAIL_FROM", raising=False)
        with pytest.raises(MailConfigurationError, match="RESEND_API_KEY"):
            ResendMailSender("", SENDER).check_configured()
        with pytest.raises(MailConfigurationError, match="EMAIL_FROM"):
            ResendMailSender("re_test", SenderInfo(name="x", email="")).check_configured()
        ResendMailSender("re_test", SENDER).check_configured()

    def test_send_success(self, monkeypatch):
        captured = {}

        def fake_send(params):
            captured.update(params)
            return {"id": "email_123"}

        monkeypatch.setattr(resend.Emails, "send", fake_send)
        receipt = ResendMailSender("re_test", SENDER).send(MESSAGE)

        assert receipt.message_id == "email_123"
        assert resend.api_key == "re_test"
        assert captured["to"] == ["ap@client.test"]
        assert captured["from"] == MESSAGE.from_
        assert captured["html"] == "<p>Hi</p>"
        assert captured["text"] == "Hi"

    def test_success_without_id_is_failure(self, monkeypatch):
        monkeypatch.setattr(resend.Emails, "send", lambda params: {})
        with pytest.raises(MailSendError, match="no email ID"):
            ResendMailSender("re_test", SENDER).send(MESSAGE)

    def test_provider_error_wrapped(self, monkeypatch):
        def fake_send(params):
            raise RuntimeError("422 invalid recipient")

        monkeypatch.setattr(resend.Emails, "send", fake_send)
        with pytest.raises(MailSendError, match="invalid recipient"):
            ResendMailSender("re_test", SENDER).send(MESSAGE)


# ============================================================================
# SMTP
# ============================================================================

class FakeSMTP:
    instances: list["FakeSMTP"] = []
    refuse = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def sendmail(self, from_addr, to_addrs, msg):
        if FakeSMTP.refuse:
            raise smtplib.SMTPRecipientsRefused({to_addrs[0]: (550, b"No such user")})
        self.sent.append((from_addr, to_addrs, msg))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.refuse = False
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


class TestSmtpMailSender:

    def _settings(self, **kwargs):
        defaults = dict(
            provider="smtp",
            smtp_host="smtp.acme.test",
            smtp_port=2525,
            smtp_username="mailer",
            smtp_password="pw",
            send_timeout_seconds=5.0,
        )
        defaults.update(kwargs)
        return MailSettings(**defaults)

    def test_check_configured(self, monkeypatch):
        monkeypatch.delenv("SMTP_HOST", raising=False)
        with pytest.raises(MailConfigurationError, match="SMTP_HOST"):
            SmtpMailSender(self._settings(smtp_host=""), SENDER).check_configured()

    def test_send(self, fake_smtp):
        receipt = SmtpMailSender(self._settings(), SENDER).send(MESSAGE)

        server = fake_smtp.instances[0]
        assert (server.host, server.port, server.timeout) == ("smtp.acme.test", 2525, 5.0)
        assert server.started_tls
        assert server.logged_in == ("mailer", "pw")
        from_addr, to_addrs, raw = server.sent[0]
        assert from_addr == "billing@acme.test"
        assert to_addrs == ["ap@client.test"]
        assert "Subject: Invoice due" in raw
        assert receipt.message_id.endswith("@acme.test>")
        assert f"Message-ID: {receipt.message_id}" in raw

    def test_refused_recipient(self, fake_smtp):
        fake_smtp.refuse = True
        with pytest.raises(MailSendError, match="Recipients refused"):
            SmtpMailSender(self._settings(), SENDER).send(MESSAGE)

    def test_empty_recipient(self, fake_smtp):
        message = OutgoingEmail(from_="x", to="", subject="s", text="t", html="h")
        with pytest.raises(MailSendError):
            SmtpMailSender(self._settings(), SENDER).send(message)
        assert fake_smtp.instances == []


# ============================================================================
# Factory
# ============================================================================

class TestBuildMailSender:

    def test_resend_default(self):
        cfg = ReminderConfig(mail=MailSettings(resend_api_key="re_test"))
        assert isinstance(build_mail_sender(cfg), ResendMailSender)

    def test_smtp(self):
        cfg = ReminderConfig(mail=MailSettings(provider="SMTP", smtp_host="smtp.acme.test"))
        assert isinstance(build_mail_sender(cfg), SmtpMailSender)

    def test_unknown(self):
        cfg = ReminderConfig(mail=MailSettings(provider="carrier-pigeon"))
        with pytest.raises(MailConfigurationError):
            build_mail_sender(cfg)
