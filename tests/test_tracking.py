"""Tests for invoice_reminders.tracking -- tokens, pixel URL, open correlation.

Covers:
- Token issuance and syntax validation
- Pixel URL construction from config
- First-open timestamp kept, open count incremented per hit
- Malformed / unknown tokens and store failures never raise
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from invoice_reminders.config import TrackingConfig
from invoice_reminders.models import Reminder, ReminderCategory, ReminderStatus
from invoice_reminders.tracking import (
    PIXEL_HEADERS,
    TRANSPARENT_PIXEL,
    OpenTracker,
    is_valid_token,
    issue_token,
    pixel_url,
)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def reminder(store, user_id):
    invoice = store.add_invoice(user_id, "Acme Ltd", "ap@acme.test", "1200.00", date(2024, 3, 15))
    reminder = Reminder(
        id="r-1",
        invoice_id=invoice.id,
        reminder_type=ReminderCategory.ON_DUE,
        sent_at=datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc),
        sent_day=date(2024, 3, 15),
        status=ReminderStatus.PENDING,
        tracking_id=issue_token(),
    )
    assert store.claim_reminder(reminder)
    store.complete_reminder(reminder.id, ReminderStatus.SENT, provider_message_id="msg-1")
    return reminder


# ============================================================================
# Tokens
# ============================================================================

class TestTokens:

    def test_issue_token_is_valid_and_unique(self):
        tokens = {issue_token() for _ in range(50)}
        assert len(tokens) == 50
        assert all(is_valid_token(t) for t in tokens)

    @pytest.mark.parametrize("token", [
        None,
        "",
        "not-a-uuid",
        "0b5e3c9e6d7f4b1a9c2d1e2f3a4b5c6d",
        "0b5e3c9e-6d7f-4b1a-9c2d-1e2f3a4b5c6",
        "0b5e3c9e-6d7f-4b1a-9c2d-1e2f3a4b5c6d'; DROP TABLE reminders;--",
        "zzzzzzzz-6d7f-4b1a-9c2d-1e2f3a4b5c6d",
    ])
    def test_invalid_tokens(self, token):
        assert not is_valid_token(token)

    def test_uppercase_accepted(self):
        assert is_valid_token("0B5E3C9E-6D7F-4B1A-9C2D-1E2F3A4B5C6D")

    def test_pixel_url(self):
        tracking = TrackingConfig(app_url="https://app.test/")
        token = "0b5e3c9e-6d7f-4b1a-9c2d-1e2f3a4b5c6d"
        assert pixel_url(token, tracking) == f"https://app.test/api/track/open?rid={token}"


class TestPixelPayload:

    def test_png_signature(self):
        assert TRANSPARENT_PIXEL.startswith(b"\x89PNG\r\n\x1a\n")

    def test_cache_headers(self):
        assert "no-store" in PIXEL_HEADERS["Cache-Control"]
        assert PIXEL_HEADERS["Pragma"] == "no-cache"
        assert PIXEL_HEADERS["Expires"] == "0"


# ============================================================================
# OpenTracker
# ============================================================================

class TestOpenTracker:

    def test_first_open_kept_and_count_incremented(self, store, reminder):
        clock = FakeClock(datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc))
        tracker = OpenTracker(store, clock=clock)

        assert tracker.record_open(reminder.tracking_id)
        clock.advance(hours=3)
        assert tracker.record_open(reminder.tracking_id)

        stored = store.get_reminder(reminder.id)
        assert stored.open_count == 2
        assert stored.opened_at == datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)

    def test_uppercase_token_matches(self, store, reminder):
        assert OpenTracker(store).record_open(reminder.tracking_id.upper())
        assert store.get_reminder(reminder.id).open_count == 1

    def test_unknown_token(self, store, reminder):
        assert not OpenTracker(store).record_open(issue_token())
        assert store.get_reminder(reminder.id).open_count == 0

    def test_malformed_token_skips_lookup(self, store, monkeypatch):
        calls = []
        monkeypatch.setattr(store, "record_open", lambda *a: calls.append(a) or True)
        assert not OpenTracker(store).record_open("garbage")
        assert calls == []

    def test_store_error_swallowed(self, store, monkeypatch):
        def boom(*args):
            raise RuntimeError("connection lost")

        monkeypatch.setattr(store, "record_open", boom)
        assert not OpenTracker(store).record_open(issue_token())
