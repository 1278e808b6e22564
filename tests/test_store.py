"""Tests for invoice_reminders.store -- SQLite persistence.

Covers:
- Invoice and payment round trips, unpaid listing
- Template versions: one active at a time, activation switch
- Workflow binding: prior holder cleared, ownership checks
- Reminder claim idempotency (automated vs manual), completion
- Run lock acquisition, contention and stale takeover
- Dispatch run bookkeeping
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from invoice_reminders.errors import NotFoundError, TemplateBindingError
from invoice_reminders.models import (
    Reminder,
    ReminderCategory,
    ReminderStatus,
    TemplateSource,
    Tone,
)
from invoice_reminders.tracking import issue_token

NOW = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def invoice(store, user_id):
    return store.add_invoice(user_id, "Acme Ltd", "ap@acme.test", Decimal("1200.00"), date(2024, 3, 15))


def _reminder(invoice_id, category=ReminderCategory.ON_DUE, day=date(2024, 3, 15), manual=False):
    return Reminder(
        id=issue_token(),
        invoice_id=invoice_id,
        reminder_type=category,
        sent_at=NOW,
        sent_day=day,
        status=ReminderStatus.PENDING,
        tracking_id=issue_token(),
        is_manual=manual,
    )


# ============================================================================
# Invoices & Payments
# ============================================================================

class TestInvoices:

    def test_round_trip(self, store, invoice):
        loaded = store.get_invoice(invoice.id)
        assert loaded.client_name == "Acme Ltd"
        assert loaded.amount == Decimal("1200.00")
        assert loaded.due_date == date(2024, 3, 15)
        assert not loaded.is_paid

    def test_scoped_to_owner(self, store, invoice):
        assert store.get_invoice(invoice.id, user_id="someone-else") is None
        assert store.get_invoice(invoice.id, user_id=invoice.user_id) is not None

    def test_unpaid_listing_excludes_paid(self, store, invoice, user_id):
        paid = store.add_invoice(user_id, "Paid Co", "ap@paid.test", "50", date(2024, 3, 1), is_paid=True)
        ids = [i.id for i in store.list_unpaid_invoices()]
        assert invoice.id in ids
        assert paid.id not in ids

    def test_mark_paid(self, store, invoice):
        assert store.mark_invoice_paid(invoice.id)
        assert store.list_unpaid_invoices() == []


class TestPayments:

    def test_add_and_list(self, store, invoice):
        store.add_payment(invoice.id, 40000, date(2024, 3, 1), note="bank transfer")
        payments = store.list_payments(invoice.id)
        assert len(payments) == 1
        assert payments[0].amount == Decimal("400.00")
        assert invoice.outstanding(payments) == Decimal("800.00")

    def test_rejects_non_positive(self, store, invoice):
        with pytest.raises(ValueError):
            store.add_payment(invoice.id, 0, date(2024, 3, 1))

    def test_unknown_invoice(self, store):
        with pytest.raises(NotFoundError):
            store.add_payment("missing", 100, date(2024, 3, 1))

    def test_delete(self, store, invoice):
        payment = store.add_payment(invoice.id, 100, date(2024, 3, 1))
        assert store.delete_payment(payment.id, invoice.id)
        assert store.list_payments(invoice.id) == []


# ============================================================================
# Templates
# ============================================================================

class TestTemplateVersions:

    def test_create_makes_active_v1(self, store, user_id):
        template = store.create_template("Mine", Tone.FRIENDLY, "S1", "B1", user_id=user_id)
        active = store.get_active_version(template.id)
        assert active.version_number == 1
        assert active.subject == "S1"

    def test_activate_switches_single_active(self, store, user_id):
        template = store.create_template("Mine", Tone.FRIENDLY, "S1", "B1", user_id=user_id)
        v2 = store.add_version(template.id, "S2", "B2")
        assert v2.version_number == 2
        assert store.get_active_version(template.id).subject == "S1"

        store.activate_version(template.id, v2.id)
        versions = store.list_versions(template.id)
        assert [v.is_active for v in versions] == [True, False]
        assert store.get_active_version(template.id).subject == "S2"

    def test_activate_foreign_version(self, store, user_id):
        a = store.create_template("A", Tone.FRIENDLY, "S", "B", user_id=user_id)
        b = store.create_template("B", Tone.FIRM, "S", "B", user_id=user_id)
        b_version = store.get_active_version(b.id)
        with pytest.raises(NotFoundError):
            store.activate_version(a.id, b_version.id)


class TestWorkflowBinding:

    def test_binding_clears_prior_holder(self, store, user_id):
        first = store.create_template("First", Tone.FIRM, "S", "B", user_id=user_id)
        second = store.create_template("Second", Tone.FINAL, "S", "B", user_id=user_id)
        store.bind_template_category(first.id, user_id, ReminderCategory.AFTER_DUE)
        store.bind_template_category(second.id, user_id, "after_due")

        assert store.get_template(first.id).reminder_type is None
        assert store.get_template(second.id).reminder_type == ReminderCategory.AFTER_DUE
        assert store.find_workflow_template(user_id, ReminderCategory.AFTER_DUE).id == second.id

    def test_unbind(self, store, user_id):
        template = store.create_template("T", Tone.FIRM, "S", "B", user_id=user_id)
        store.bind_template_category(template.id, user_id, ReminderCategory.ON_DUE)
        store.bind_template_category(template.id, user_id, None)
        assert store.find_workflow_template(user_id, ReminderCategory.ON_DUE) is None

    def test_other_users_holder_untouched(self, store, user_id):
        other = store.add_user("other@acme.test")
        theirs = store.create_template("Theirs", Tone.FIRM, "S", "B", user_id=other)
        mine = store.create_template("Mine", Tone.FIRM, "S", "B", user_id=user_id)
        store.bind_template_category(theirs.id, other, ReminderCategory.ON_DUE)
        store.bind_template_category(mine.id, user_id, ReminderCategory.ON_DUE)
        assert store.get_template(theirs.id).reminder_type == ReminderCategory.ON_DUE

    def test_not_owner(self, store, user_id):
        template = store.create_template("T", Tone.FIRM, "S", "B", user_id=user_id)
        with pytest.raises(TemplateBindingError):
            store.bind_template_category(template.id, "intruder", ReminderCategory.ON_DUE)

    def test_system_template_cannot_be_bound(self, store, user_id):
        system = store.create_template("Sys", Tone.NEUTRAL, "S", "B", is_system=True, slug="due-today")
        with pytest.raises(TemplateBindingError):
            store.bind_template_category(system.id, user_id, ReminderCategory.ON_DUE)

    def test_missing_template(self, store, user_id):
        with pytest.raises(NotFoundError):
            store.bind_template_category("missing", user_id, ReminderCategory.ON_DUE)


# ============================================================================
# Reminders
# ============================================================================

class TestReminderClaims:

    def test_one_automated_claim_per_day(self, store, invoice):
        assert store.claim_reminder(_reminder(invoice.id))
        assert not store.claim_reminder(_reminder(invoice.id))
        assert len(store.list_reminders(invoice.id)) == 1

    def test_next_day_and_other_category_allowed(self, store, invoice):
        assert store.claim_reminder(_reminder(invoice.id))
        assert store.claim_reminder(_reminder(invoice.id, day=date(2024, 3, 16)))
        assert store.claim_reminder(_reminder(invoice.id, category=ReminderCategory.AFTER_DUE))

    def test_manual_not_limited(self, store, invoice):
        assert store.claim_reminder(_reminder(invoice.id))
        assert store.claim_reminder(_reminder(invoice.id, manual=True))
        assert store.claim_reminder(_reminder(invoice.id, manual=True))
        assert store.sent_categories_on(invoice.id, date(2024, 3, 15)) == {ReminderCategory.ON_DUE}

    def test_complete_only_from_pending(self, store, invoice):
        reminder = _reminder(invoice.id)
        store.claim_reminder(reminder)
        assert store.complete_reminder(
            reminder.id,
            ReminderStatus.SENT,
            provider_message_id="msg-1",
            template_type="neutral",
            template_source=TemplateSource.BUILTIN,
        )
        assert not store.complete_reminder(reminder.id, ReminderStatus.FAILED, error_message="late")

        stored = store.get_reminder(reminder.id)
        assert stored.status == ReminderStatus.SENT
        assert stored.provider_message_id == "msg-1"
        assert stored.template_source == TemplateSource.BUILTIN
        assert stored.error_message is None

    def test_lookup_by_tracking_id(self, store, invoice):
        reminder = _reminder(invoice.id)
        store.claim_reminder(reminder)
        assert store.get_reminder_by_tracking_id(reminder.tracking_id).id == reminder.id

    def test_record_open_unknown(self, store):
        assert not store.record_open(issue_token(), NOW)


# ============================================================================
# Run locks & runs
# ============================================================================

class TestRunLocks:

    def test_contention(self, store):
        stale = timedelta(minutes=60)
        assert store.acquire_lock("reminder-dispatch", "a", NOW, stale)
        assert not store.acquire_lock("reminder-dispatch", "b", NOW + timedelta(minutes=5), stale)
        assert store.release_lock("reminder-dispatch", "a")
        assert store.acquire_lock("reminder-dispatch", "b", NOW + timedelta(minutes=6), stale)

    def test_release_requires_owner(self, store):
        store.acquire_lock("reminder-dispatch", "a", NOW, timedelta(minutes=60))
        assert not store.release_lock("reminder-dispatch", "b")

    def test_stale_lock_taken_over(self, store):
        stale = timedelta(minutes=60)
        store.acquire_lock("reminder-dispatch", "crashed", NOW, stale)
        assert store.acquire_lock("reminder-dispatch", "fresh", NOW + timedelta(minutes=61), stale)


class TestDispatchRuns:

    def test_start_and_complete(self, store):
        store.start_run("run-1", NOW)
        store.complete_run("run-1", NOW + timedelta(seconds=5), processed=3, sent=2, failed=1, skipped=0)
        runs = store.get_runs()
        assert len(runs) == 1
        assert runs[0]["processed"] == 3
        assert runs[0]["failed"] == 1
