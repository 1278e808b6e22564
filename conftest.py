"""Root conftest.py -- makes `invoice_reminders` importable and shares fixtures."""

import sys
from pathlib import Path

import pytest

# Add the project root to sys.path so `from invoice_reminders.x import ...` works.
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from invoice_reminders.config import (  # noqa: E402
    DatabaseConfig,
    DispatchConfig,
    MailSettings,
    ReminderConfig,
    ScheduleConfig,
    SenderInfo,
    TrackingConfig,
)
from invoice_reminders.errors import MailConfigurationError, MailSendError  # noqa: E402
from invoice_reminders.mailer import OutgoingEmail, SendReceipt  # noqa: E402
from invoice_reminders.store import ReminderStore  # noqa: E402


class RecordingMailSender:
    """In-memory mail sender: records messages, fails for chosen recipients."""

    def __init__(self, fail_for=(), configured=True):
        self.sent: list[OutgoingEmail] = []
        self.attempts: list[OutgoingEmail] = []
        self.fail_for = set(fail_for)
        self.configured = configured

    def check_configured(self) -> None:
        if not self.configured:
            raise MailConfigurationError("RESEND_API_KEY is not configured")

    def send(self, message: OutgoingEmail) -> SendReceipt:
        self.attempts.append(message)
        if message.to in self.fail_for:
            raise MailSendError(f"Recipient rejected: {message.to}")
        self.sent.append(message)
        return SendReceipt(message_id=f"msg-{len(self.sent)}")


@pytest.fixture
def config(tmp_path):
    """Config isolated from config.yaml and the environment."""
    return ReminderConfig(
        sender=SenderInfo(name="Acme Billing", email="billing@acme.test"),
        mail=MailSettings(provider="resend", resend_api_key="re_test", send_timeout_seconds=2.0),
        tracking=TrackingConfig(app_url="https://app.test"),
        schedule=ScheduleConfig(timezone="UTC"),
        dispatch=DispatchConfig(cron_secret="s3cret"),
        database=DatabaseConfig(path=str(tmp_path / "reminders.db")),
    )


@pytest.fixture
def store(tmp_path):
    return ReminderStore(tmp_path / "reminders.db")


@pytest.fixture
def mailer():
    return RecordingMailSender()


@pytest.fixture
def user_id(store):
    return store.add_user("owner@acme.test", display_name="Jane Owner")


@pytest.fixture
def make_mailer():
    """Factory for RecordingMailSender with custom failure behavior."""
    return RecordingMailSender
