"""Invoice Reminders -- Dispatch Engine.

One run walks every unpaid invoice once:

    1. Verify the mail sender is configured (fatal for the run if not)
    2. Take the "reminder-dispatch" run lock
    3. For each unpaid invoice:
         a. Skip it when payments already cover the amount
         b. Classify the due date against today's calendar day
         c. Claim the (invoice, category, day) slot with a pending row
         d. Resolve the template, render it, send it
         e. Mark the row sent (with the provider id) or failed (with
            the error text)
    4. Record the run totals and release the lock

A failure for one invoice never stops the run.  The claim in step 3c is a
single conditional insert, so two overlapping runs cannot both send the
same reminder even without the run lock.

Usage::

    from invoice_reminders.dispatch import ReminderDispatcher

    dispatcher = ReminderDispatcher(store, mailer, config)
    summary = dispatcher.run()
    print(summary.to_dict())   # {"processed": 3, "sent": 2, "failed": 1}
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from .config import ReminderConfig, get_config
from .due_date_classifier import classify, local_day
from .errors import (
    DispatchInProgressError,
    InvoicePaidError,
    MailSendError,
    NotFoundError,
)
from .mailer import MailSender, OutgoingEmail, SendReceipt
from .models import (
    DispatchSummary,
    Invoice,
    Payment,
    Reminder,
    ReminderCategory,
    ReminderStatus,
    ResolvedTemplate,
)
from .store import ReminderStore
from .template_engine import TemplateEngine
from .template_resolver import TemplateResolver
from .tracking import issue_token

logger = logging.getLogger(__name__)


# ===========================================================================
# Dispatcher
# ===========================================================================

class ReminderDispatcher:
    """Runs scheduled reminders and manual resends.

    Attributes:
        store: Reminder store (invoices, payments, templates, history).
        mailer: Mail sender used for every outgoing reminder.
        config: Engine configuration.
        resolver: Template resolver, built from ``store`` by default.
        engine: Template engine, built from ``config`` by default.
    """

    def __init__(
        self,
        store: ReminderStore,
        mailer: MailSender,
        config: ReminderConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        resolver: TemplateResolver | None = None,
        engine: TemplateEngine | None = None,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.config = config or get_config()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.resolver = resolver or TemplateResolver(store)
        self.engine = engine or TemplateEngine(config=self.config)

    # ------------------------------------------------------------------
    # Scheduled run
    # ------------------------------------------------------------------

    def run(self, now: datetime | None = None) -> DispatchSummary:
        """Process every unpaid invoice once.

        Args:
            now: The run's current instant.  Defaults to the clock.  Used
                for classification and for the once-per-day guard.

        Returns:
            DispatchSummary with processed/sent/failed/skipped counts.

        Raises:
            MailConfigurationError: Mail sender is not configured; nothing
                is sent.
            DispatchInProgressError: Another run holds the lock.
        """
        now = now or self._clock()
        self.mailer.check_configured()

        dispatch = self.config.dispatch
        owner = str(uuid.uuid4())
        stale_after = timedelta(minutes=dispatch.lock_stale_after_minutes)
        if not self.store.acquire_lock(dispatch.lock_name, owner, now, stale_after):
            raise DispatchInProgressError(
                f"Dispatch run already in progress ({dispatch.lock_name})"
            )

        summary = DispatchSummary(started_at=now)
        run_id = owner
        try:
            self.store.start_run(run_id, now)
            today = local_day(now, self.config.schedule.tzinfo)
            invoices = self.store.list_unpaid_invoices()
            logger.info("Dispatch run %s: %d unpaid invoice(s) for %s",
                        run_id[:8], len(invoices), today.isoformat())

            for invoice in invoices:
                summary.processed += 1
                try:
                    self._process_invoice(invoice, now, today, summary)
                except Exception as exc:
                    logger.error("Failed to process invoice %s: %s", invoice.id, exc)
                    summary.errors.append(f"{invoice.id}: {exc}")

            summary.completed_at = self._clock()
            self.store.complete_run(
                run_id,
                summary.completed_at,
                summary.processed,
                summary.sent,
                summary.failed,
                summary.skipped,
            )
        finally:
            self.store.release_lock(dispatch.lock_name, owner)

        logger.info(
            "Dispatch run %s complete: processed=%d sent=%d failed=%d skipped=%d",
            run_id[:8], summary.processed, summary.sent, summary.failed, summary.skipped,
        )
        return summary

    def _process_invoice(
        self,
        invoice: Invoice,
        now: datetime,
        today: date,
        summary: DispatchSummary,
    ) -> None:
        payments = self.store.list_payments(invoice.id)
        if invoice.is_effectively_paid(payments):
            logger.debug("Invoice %s is covered by payments, skipping", invoice.id)
            return

        schedule = self.config.schedule
        result = classify(
            invoice.due_date,
            today,
            self.store.sent_categories_on(invoice.id, today),
            days_before_due=schedule.days_before_due,
            overdue_interval=schedule.overdue_interval_days,
        )
        if result.category is None:
            return
        if result.already_sent:
            logger.debug("Invoice %s already has %s today", invoice.id, result.category.value)
            summary.skipped += 1
            return

        reminder = self._new_reminder(invoice, result.category, now, today, manual=False)
        if not self.store.claim_reminder(reminder):
            # Lost the race to a concurrent run
            logger.debug("Invoice %s %s already claimed today", invoice.id, result.category.value)
            summary.skipped += 1
            return

        completed = self._deliver(reminder, invoice, payments)
        if completed.status is ReminderStatus.SENT:
            summary.sent += 1
        else:
            summary.failed += 1
            summary.errors.append(f"{invoice.id}: {completed.error_message}")

    # ------------------------------------------------------------------
    # Manual resend
    # ------------------------------------------------------------------

    def send_manual(
        self,
        invoice_id: str,
        category: ReminderCategory | str,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> Reminder:
        """Send one reminder on demand, outside the daily schedule.

        Manual sends are not limited to one per day.  The send outcome is
        recorded on the returned Reminder; it is not raised.

        Raises:
            MailConfigurationError: Mail sender is not configured.
            NotFoundError: No such invoice (for ``user_id`` when given).
            InvoicePaidError: The invoice is already paid.
        """
        now = now or self._clock()
        category = ReminderCategory(category)
        self.mailer.check_configured()

        invoice = self.store.get_invoice(invoice_id, user_id)
        if invoice is None:
            raise NotFoundError("Invoice not found")
        payments = self.store.list_payments(invoice.id)
        if invoice.is_effectively_paid(payments):
            raise InvoicePaidError("Cannot send reminders for paid invoices")

        today = local_day(now, self.config.schedule.tzinfo)
        reminder = self._new_reminder(invoice, category, now, today, manual=True)
        self.store.claim_reminder(reminder)
        completed = self._deliver(reminder, invoice, payments)
        logger.info("Manual %s reminder for invoice %s: %s",
                    category.value, invoice.id, completed.status.value)
        return completed

    # ------------------------------------------------------------------
    # Shared send path
    # ------------------------------------------------------------------

    @staticmethod
    def _new_reminder(
        invoice: Invoice,
        category: ReminderCategory,
        now: datetime,
        today: date,
        *,
        manual: bool,
    ) -> Reminder:
        return Reminder(
            id=str(uuid.uuid4()),
            invoice_id=invoice.id,
            reminder_type=category,
            sent_at=now,
            sent_day=today,
            status=ReminderStatus.PENDING,
            tracking_id=issue_token(),
            is_manual=manual,
        )

    def _deliver(
        self,
        reminder: Reminder,
        invoice: Invoice,
        payments: list[Payment],
    ) -> Reminder:
        """Resolve, render and send a claimed reminder, then record the outcome."""
        resolved: Optional[ResolvedTemplate] = None
        receipt: Optional[SendReceipt] = None
        error: Optional[str] = None

        try:
            resolved = self.resolver.resolve(invoice.user_id, reminder.reminder_type)
            sender_name = (
                self.store.get_user_display_name(invoice.user_id) or self.config.sender.name
            )
            rendered = self.engine.render(
                resolved, invoice, payments, reminder.tracking_id, sender_name=sender_name
            )
            receipt = self._send_with_timeout(OutgoingEmail(
                from_=self.config.sender.from_header,
                to=rendered.to,
                subject=rendered.subject,
                text=rendered.text,
                html=rendered.html,
            ))
        except MailSendError as exc:
            error = str(exc) or "Mail send failed"
        except Exception as exc:
            logger.exception("Unexpected error sending reminder for invoice %s", invoice.id)
            error = f"{type(exc).__name__}: {exc}"

        if receipt is not None:
            status = ReminderStatus.SENT
            logger.info("Sent %s reminder for invoice %s (%s)",
                        reminder.reminder_type.value, invoice.id, receipt.message_id)
        else:
            status = ReminderStatus.FAILED
            logger.error("Reminder %s for invoice %s failed: %s",
                         reminder.reminder_type.value, invoice.id, error)

        # The send outcome stands even when it cannot be written; the row
        # then stays pending and keeps the day claimed.
        try:
            self.store.complete_reminder(
                reminder.id,
                status,
                error_message=error,
                provider_message_id=receipt.message_id if receipt else None,
                template_id=resolved.template_id if resolved else None,
                template_type=resolved.tone if resolved else None,
                template_source=resolved.source if resolved else None,
            )
        except Exception:
            logger.exception(
                "Could not record %s outcome of reminder %s for invoice %s",
                status.value, reminder.id, invoice.id,
            )

        reminder.status = status
        reminder.error_message = error
        reminder.provider_message_id = receipt.message_id if receipt else None
        if resolved is not None:
            reminder.template_id = resolved.template_id
            reminder.template_type = resolved.tone
            reminder.template_source = resolved.source
        return reminder

    def _send_with_timeout(self, message: OutgoingEmail) -> SendReceipt:
        """Call the mail sender in a worker thread, bounded by the send timeout.

        A timed-out call is not interrupted.  If the provider accepts it
        afterwards the message is delivered while its row says failed; the
        late message id is logged so the two can be reconciled.
        """
        timeout = self.config.mail.send_timeout_seconds
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reminder-send")
        try:
            future = executor.submit(self.mailer.send, message)
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            future.add_done_callback(_log_late_delivery)
            raise MailSendError(f"Mail provider timed out after {timeout:g}s") from exc
        finally:
            executor.shutdown(wait=False)


def _log_late_delivery(future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    receipt = future.result()
    if receipt is None:
        return
    logger.warning(
        "Timed-out send was delivered late (%s); its reminder stays failed",
        receipt.message_id,
    )
