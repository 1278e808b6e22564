"""
Due-Date Classifier

Decides, for one invoice and one instant, which reminder category (if any)
is owed today.

Schedule (days_until_due = due_date - today, in calendar days):
    BEFORE_DUE:   days_until_due == 3
    ON_DUE:       days_until_due == 0
    AFTER_DUE:    7 days late, then every further multiple of 7 (14, 21, ...)

"Today" is the calendar day of ``now`` in the configured timezone.  The
same ``now`` is used for the once-per-day guard, so a run that starts
just before midnight stays on one day throughout.

Known gap: the schedule is recomputed purely from elapsed days.  If the
scheduler misses the day an overdue checkpoint falls on, that reminder is
not caught up later; the next one fires on the following multiple of 7.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from typing import Iterable, Optional

from .models import ReminderCategory

# ---------------------------------------------------------------------------
# Schedule Constants
# ---------------------------------------------------------------------------

DAYS_BEFORE_DUE: int = 3          # BEFORE_DUE fires this many days ahead
OVERDUE_INTERVAL_DAYS: int = 7    # AFTER_DUE fires every N days once late


# ---------------------------------------------------------------------------
# Classification Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DueClassification:
    """
    The result of classifying one invoice for one run.

    Attributes:
        today: Calendar day the classification was made for.
        days_until_due: Calendar days from today to the due date
            (negative once the invoice is late).
        category: The category owed today, or None.
        already_sent: True if ``category`` was already attempted today.
    """
    today: date
    days_until_due: int
    category: Optional[ReminderCategory]
    already_sent: bool = False

    @property
    def days_overdue(self) -> int:
        return -self.days_until_due if self.days_until_due < 0 else 0

    @property
    def is_due(self) -> bool:
        """True when a reminder should be sent now."""
        return self.category is not None and not self.already_sent


# ---------------------------------------------------------------------------
# Core Classification Functions
# ---------------------------------------------------------------------------

def local_day(now: datetime | date, tz: tzinfo | None = None) -> date:
    """Calendar day of ``now`` in ``tz``.

    Naive datetimes are taken as already local; plain dates pass through.
    """
    if not isinstance(now, datetime):
        return now
    if tz is not None and now.tzinfo is not None:
        now = now.astimezone(tz)
    return now.date()


def days_until_due(due_date: date, today: date) -> int:
    """Whole calendar days from ``today`` to ``due_date``."""
    return (due_date - today).days


def category_for_days(
    days: int,
    *,
    days_before_due: int = DAYS_BEFORE_DUE,
    overdue_interval: int = OVERDUE_INTERVAL_DAYS,
) -> Optional[ReminderCategory]:
    """
    Map days-until-due onto the reminder schedule.

    Examples:
        >>> category_for_days(3)
        <ReminderCategory.BEFORE_DUE: 'before_due'>
        >>> category_for_days(0)
        <ReminderCategory.ON_DUE: 'on_due'>
        >>> category_for_days(-7)
        <ReminderCategory.AFTER_DUE: 'after_due'>
        >>> category_for_days(-21)
        <ReminderCategory.AFTER_DUE: 'after_due'>
        >>> category_for_days(-3) is None
        True
    """
    if days == days_before_due:
        return ReminderCategory.BEFORE_DUE
    if days == 0:
        return ReminderCategory.ON_DUE
    if days < 0:
        overdue = abs(days)
        if overdue == overdue_interval or (
            overdue > overdue_interval and overdue % overdue_interval == 0
        ):
            return ReminderCategory.AFTER_DUE
    return None


def classify(
    due_date: date,
    now: datetime | date,
    sent_today: Iterable[ReminderCategory] = (),
    *,
    tz: tzinfo | None = None,
    days_before_due: int = DAYS_BEFORE_DUE,
    overdue_interval: int = OVERDUE_INTERVAL_DAYS,
) -> DueClassification:
    """
    Classify one invoice for the run happening at ``now``.

    Args:
        due_date: The invoice due date.
        now: The run's notion of the current instant (or day).
        sent_today: Categories already attempted for this invoice today.
        tz: Timezone whose calendar day counts as "today".

    Returns:
        DueClassification; ``is_due`` tells the caller whether to send.

    Examples:
        >>> classify(date(2024, 3, 15), date(2024, 3, 12)).category
        <ReminderCategory.BEFORE_DUE: 'before_due'>
        >>> classify(date(2024, 3, 15), date(2024, 3, 18)).is_due
        False
    """
    today = local_day(now, tz)
    days = days_until_due(due_date, today)
    category = category_for_days(
        days,
        days_before_due=days_before_due,
        overdue_interval=overdue_interval,
    )
    already_sent = category is not None and category in set(sent_today)
    return DueClassification(
        today=today,
        days_until_due=days,
        category=category,
        already_sent=already_sent,
    )
