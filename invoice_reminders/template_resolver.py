"""
Template Resolver

Picks the subject and body for a reminder.  Resolution order, first match
wins:

    1. WORKFLOW  the user's template bound to the reminder category
    2. TONE      the user's unbound template whose tone matches the
                 category's legacy tone (friendly/neutral/firm/partial)
    3. SYSTEM    the shared system template keyed by the category's slug
    4. BUILTIN   hardcoded defaults keyed by tone

Tiers 1-3 only count when the template has an active version.  A missing
row, a failed lookup or a stored row with an unknown tone or category
drops through to the next tier, so ``resolve`` always returns content.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Optional

from .models import (
    ReminderCategory,
    ResolvedTemplate,
    Template,
    TemplateSource,
    Tone,
)
from .store import ReminderStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Built-in defaults
# ---------------------------------------------------------------------------

DEFAULT_TEMPLATES: dict[Tone, dict[str, str]] = {
    Tone.FRIENDLY: {
        "subject": "Friendly Reminder: Invoice Payment Due",
        "body": (
            "Hi {client_name}, Just a friendly reminder that your invoice for "
            "£{amount} is due on {due_date}. Thank you!"
        ),
    },
    Tone.NEUTRAL: {
        "subject": "Invoice {invoice_number} due today",
        "body": (
            "Hi {client_name}, This is a reminder that invoice {invoice_number} "
            "for £{amount} is due today ({due_date}). Please arrange payment at "
            "your earliest convenience."
        ),
    },
    Tone.FIRM: {
        "subject": "Overdue invoice - action required",
        "body": (
            "Hi {client_name}, Invoice {invoice_number} for £{amount} remains "
            "outstanding since {due_date}. Please confirm when payment will be made."
        ),
    },
    Tone.PARTIAL: {
        "subject": "Invoice {invoice_number} - remaining balance",
        "body": (
            "Hi {client_name}, Thank you for your payment of £{paid_amount} "
            "towards invoice {invoice_number}. The remaining balance of "
            "£{outstanding_amount} is still outstanding. Please arrange payment "
            "by {final_date}."
        ),
    },
}


def builtin_template(tone: Tone) -> ResolvedTemplate:
    """Tier 4: the hardcoded default for ``tone`` (friendly if unknown)."""
    default = DEFAULT_TEMPLATES.get(tone, DEFAULT_TEMPLATES[Tone.FRIENDLY])
    return ResolvedTemplate(
        subject=default["subject"],
        body=default["body"],
        source=TemplateSource.BUILTIN,
        tone=tone.value,
        template_id=None,
        template_name=None,
    )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class TemplateResolver:
    """Resolves (user, category) to a ResolvedTemplate using the store."""

    def __init__(self, store: ReminderStore) -> None:
        self.store = store

    def resolve(self, user_id: str, category: ReminderCategory | str) -> ResolvedTemplate:
        """Return the subject/body to use.  Never raises for missing rows."""
        category = ReminderCategory(category)
        tone = category.legacy_tone

        tiers: list[tuple[TemplateSource, Callable[[], Optional[Template]]]] = [
            (TemplateSource.WORKFLOW, lambda: self.store.find_workflow_template(user_id, category)),
            (TemplateSource.TONE, lambda: self.store.find_tone_template(user_id, tone)),
        ]
        slug = category.system_slug
        if slug:
            tiers.append((TemplateSource.SYSTEM, lambda: self.store.find_system_template(slug)))

        for source, lookup in tiers:
            resolved = self._try_tier(source, lookup, tone)
            if resolved is not None:
                logger.debug(
                    "Resolved %s template for user %s / %s: %s",
                    source.value, user_id, category.value, resolved.template_id,
                )
                return resolved

        logger.debug("Using built-in %s template for user %s", tone.value, user_id)
        return builtin_template(tone)

    def _try_tier(
        self,
        source: TemplateSource,
        lookup: Callable[[], Optional[Template]],
        tone: Tone,
    ) -> Optional[ResolvedTemplate]:
        try:
            template = lookup()
            if template is None:
                return None
            version = self.store.get_active_version(template.id)
        except (sqlite3.Error, ValueError) as exc:
            logger.warning("Template lookup failed at %s tier: %s", source.value, exc)
            return None

        if version is None or not version.subject.strip() or not version.body.strip():
            return None

        # Workflow templates report their own tone; the others report the
        # tone they were matched by.
        if source is TemplateSource.WORKFLOW:
            tone_label = template.tone.value
        else:
            tone_label = tone.value

        return ResolvedTemplate(
            subject=version.subject,
            body=version.body,
            source=source,
            tone=tone_label,
            template_id=template.id,
            template_name=template.name,
        )
