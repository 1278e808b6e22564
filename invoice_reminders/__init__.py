"""Invoice Reminders - scheduled payment reminder emails with open tracking.

Decides which unpaid invoices are owed a reminder today, picks the
template for each, sends it through a mail provider, records the outcome
and correlates tracking-pixel hits back to the send.
"""

from .models import (
    DispatchSummary,
    Invoice,
    Payment,
    Reminder,
    ReminderCategory,
    ReminderStatus,
    ResolvedTemplate,
    Template,
    TemplateSource,
    TemplateVersion,
    Tone,
)

from .dispatch import ReminderDispatcher
from .store import ReminderStore

__all__ = [
    "DispatchSummary",
    "Invoice",
    "Payment",
    "Reminder",
    "ReminderCategory",
    "ReminderDispatcher",
    "ReminderStatus",
    "ReminderStore",
    "ResolvedTemplate",
    "Template",
    "TemplateSource",
    "TemplateVersion",
    "Tone",
]
