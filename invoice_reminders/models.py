"""Data models for the invoice reminder engine.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
rows come out of SQLite via ``store.py`` and are converted to these
dataclasses at the boundary.

Money conventions:
  - ``Invoice.amount`` is a Decimal in major currency units (1200.00).
  - ``Payment.amount_cents`` is an int in minor units (40000 == 400.00).
  - Outstanding and paid totals are always recomputed from payments and
    never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

_CENT = Decimal("0.01")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Tone(str, Enum):
    """User-facing template tone labels."""

    FRIENDLY = "friendly"
    NEUTRAL = "neutral"
    POLITE = "polite"
    FIRM = "firm"
    FINAL = "final"
    PARTIAL = "partial"


class ReminderCategory(str, Enum):
    """When, relative to the due date, a reminder is sent."""

    BEFORE_DUE = "before_due"
    ON_DUE = "on_due"
    AFTER_DUE = "after_due"
    PARTIAL_PAYMENT = "partial_payment"

    @property
    def legacy_tone(self) -> Tone:
        """Tone used to match user templates that have no workflow binding."""
        return _LEGACY_TONES[self]

    @property
    def system_slug(self) -> Optional[str]:
        """Slug of the shared system template for this category, if any."""
        return _SYSTEM_SLUGS.get(self)


_LEGACY_TONES: dict[ReminderCategory, Tone] = {
    ReminderCategory.BEFORE_DUE: Tone.FRIENDLY,
    ReminderCategory.ON_DUE: Tone.NEUTRAL,
    ReminderCategory.AFTER_DUE: Tone.FIRM,
    ReminderCategory.PARTIAL_PAYMENT: Tone.PARTIAL,
}

_SYSTEM_SLUGS: dict[ReminderCategory, str] = {
    ReminderCategory.BEFORE_DUE: "friendly-pre-due",
    ReminderCategory.ON_DUE: "due-today",
    ReminderCategory.AFTER_DUE: "firm-follow-up",
}


class ReminderStatus(str, Enum):
    """Outcome of a send attempt.  PENDING only lives between claim and send."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Provenance(str, Enum):
    """Who triggered a reminder."""

    AUTOMATED = "automated"
    MANUAL = "manual"


class TemplateSource(str, Enum):
    """Which resolution tier produced a reminder's subject and body."""

    WORKFLOW = "workflow"
    TONE = "tone"
    SYSTEM = "system"
    BUILTIN = "builtin"


# ---------------------------------------------------------------------------
# Core Data Models
# ---------------------------------------------------------------------------

@dataclass
class Payment:
    """A payment recorded against one invoice."""

    id: str
    invoice_id: str
    amount_cents: int
    paid_at: date
    note: str | None = None
    created_at: datetime | None = None

    @property
    def amount(self) -> Decimal:
        """Payment amount in major units."""
        return (Decimal(self.amount_cents) / 100).quantize(_CENT)


@dataclass
class Invoice:
    """An invoice owned by one user, as stored in the invoices table."""

    id: str
    user_id: str
    client_name: str
    client_email: str
    amount: Decimal
    due_date: date
    is_paid: bool = False
    created_at: datetime | None = None

    def paid_total(self, payments: list[Payment]) -> Decimal:
        """Sum of payments recorded against this invoice."""
        cents = sum(p.amount_cents for p in payments if p.invoice_id == self.id)
        return (Decimal(cents) / 100).quantize(_CENT)

    def outstanding(self, payments: list[Payment]) -> Decimal:
        """Amount still owed, never below zero."""
        remaining = Decimal(self.amount) - self.paid_total(payments)
        return max(remaining, Decimal("0")).quantize(_CENT)

    def is_effectively_paid(self, payments: list[Payment]) -> bool:
        """True when explicitly marked paid or nothing is left to pay."""
        if self.is_paid:
            return True
        return Decimal(self.amount) - self.paid_total(payments) <= 0

    @property
    def reference(self) -> str:
        """Short display reference, e.g. '3F2A9C1B'."""
        return self.id.replace("-", "")[:8].upper()


@dataclass
class TemplateVersion:
    """One immutable revision of a template's subject and body."""

    id: str
    template_id: str
    subject: str
    body: str
    is_active: bool = False
    version_number: int = 1
    created_at: datetime | None = None


@dataclass
class Template:
    """A user-defined or shared system email template.

    ``reminder_type`` is the workflow-category binding: at most one of a
    user's templates holds a given category at any time.
    """

    id: str
    name: str
    tone: Tone
    user_id: str | None = None
    is_system: bool = False
    slug: str | None = None
    reminder_type: ReminderCategory | None = None
    description: str | None = None
    created_at: datetime | None = None


@dataclass
class Reminder:
    """One attempted send, successful or not."""

    id: str
    invoice_id: str
    reminder_type: ReminderCategory
    sent_at: datetime
    sent_day: date
    status: ReminderStatus
    tracking_id: str
    error_message: str | None = None
    provider_message_id: str | None = None
    opened_at: datetime | None = None
    open_count: int = 0
    is_manual: bool = False
    template_id: str | None = None
    template_type: str | None = None
    template_source: TemplateSource | None = None

    @property
    def provenance(self) -> Provenance:
        return Provenance.MANUAL if self.is_manual else Provenance.AUTOMATED

    @property
    def was_opened(self) -> bool:
        return self.opened_at is not None


# ---------------------------------------------------------------------------
# Pipeline Values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedTemplate:
    """Subject and body picked for a (user, category) pair.

    ``source`` records which tier matched; ``template_id`` is None only for
    the built-in defaults.
    """

    subject: str
    body: str
    source: TemplateSource
    tone: str
    template_id: str | None = None
    template_name: str | None = None


@dataclass(frozen=True)
class RenderedReminder:
    """A reminder ready to hand to the mail sender."""

    to: str
    subject: str
    text: str
    html: str
    tracking_id: str


@dataclass
class DispatchSummary:
    """Aggregate counts for one dispatch run."""

    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Shape returned by the trigger endpoint."""
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
        }
