"""Exception hierarchy for the reminder engine.

Only ``MailConfigurationError`` is allowed to abort a dispatch run; every
other error is handled per invoice or per pixel request.
"""


class ReminderError(Exception):
    """Base class for all reminder engine errors."""


class MailConfigurationError(ReminderError):
    """Mail provider credentials or sender address are missing."""


class MailSendError(ReminderError):
    """The mail provider rejected, timed out on, or garbled a send."""


class DispatchInProgressError(ReminderError):
    """Another dispatch run holds the run lock."""


class StoreError(ReminderError):
    """A data store operation could not be completed."""


class NotFoundError(StoreError):
    """The requested row does not exist (or is not visible to the caller)."""


class TemplateBindingError(StoreError):
    """A template cannot be bound to a workflow category."""


class InvoicePaidError(ReminderError):
    """A reminder was requested for an invoice that is already paid."""
