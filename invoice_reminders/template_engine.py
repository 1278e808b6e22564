"""
Invoice Reminders -- Template Engine

Turns a resolved subject/body into a finished reminder:

  1. Build the placeholder values from the Invoice, its Payments and config
  2. Replace every recognized ``{placeholder}`` in subject and body
  3. Render the HTML part through a Jinja2 template (escaped body with
     newlines as ``<br/>``, followed by the 1x1 tracking image)
  4. Return a RenderedReminder ready for the mail sender

Placeholders are plain ``{name}`` tokens, not Jinja2 syntax: user-written
templates are never executed, only substituted.  Unknown tokens are left
as they are.

Usage:
    from invoice_reminders.template_engine import TemplateEngine

    engine = TemplateEngine(config=cfg)
    rendered = engine.render(resolved, invoice, payments, tracking_id, sender_name="Jane")
    print(rendered.subject)
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup, escape

from .config import ReminderConfig, get_config
from .models import Invoice, Payment, RenderedReminder, ResolvedTemplate
from .tracking import pixel_url

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PLACEHOLDERS: tuple[str, ...] = (
    "client_name",
    "client_email",
    "invoice_number",
    "amount",
    "due_date",
    "outstanding_amount",
    "paid_amount",
    "final_date",
    "sender_name",
)

_PLACEHOLDER_RE = re.compile(r"\{(" + "|".join(PLACEHOLDERS) + r")\}")

FINAL_NOTICE_OFFSET_DAYS = 14


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def format_date(d: date | None) -> str:
    """Format a date as 'Month D, YYYY' (e.g. 'March 15, 2024').

    Returns empty string for None.
    """
    if d is None:
        return ""
    return f"{d:%B} {d.day}, {d.year}"


def format_amount(amount: Decimal | int | float | None) -> str:
    """Two-decimal amount without currency symbol: '800.00'."""
    if amount is None:
        return "0.00"
    return f"{Decimal(str(amount)).quantize(Decimal('0.01')):.2f}"


def nl2br(value: str) -> Markup:
    """Escape text for HTML and turn newlines into ``<br/>``."""
    escaped = escape(value.replace("\r\n", "\n"))
    return Markup(str(escaped).replace("\n", "<br/>"))


# ---------------------------------------------------------------------------
# Interpolation
# ---------------------------------------------------------------------------

def build_variables(
    invoice: Invoice,
    payments: list[Payment],
    sender_name: str = "",
    final_offset_days: int = FINAL_NOTICE_OFFSET_DAYS,
) -> dict[str, str]:
    """Compute every placeholder value for one invoice.

    Outstanding and paid totals are derived from ``payments`` on each call.
    """
    return {
        "client_name": invoice.client_name,
        "client_email": invoice.client_email,
        "invoice_number": invoice.reference,
        "amount": format_amount(invoice.amount),
        "due_date": format_date(invoice.due_date),
        "outstanding_amount": format_amount(invoice.outstanding(payments)),
        "paid_amount": format_amount(invoice.paid_total(payments)),
        "final_date": format_date(invoice.due_date + timedelta(days=final_offset_days)),
        "sender_name": sender_name,
    }


def interpolate(text: str, variables: dict[str, str]) -> str:
    """Replace every occurrence of each recognized ``{name}`` token.

    Single pass: substituted values are never scanned again.
    """
    def _sub(match: re.Match) -> str:
        name = match.group(1)
        return variables.get(name, match.group(0))

    return _PLACEHOLDER_RE.sub(_sub, text)


# ===========================================================================
# Main Template Engine Class
# ===========================================================================

class TemplateEngine:
    """Renders resolved templates into subject, text and HTML parts.

    Attributes:
        env: Jinja2 environment for the HTML envelope.
        template_dir: Directory holding ``reminder_email.html``.
    """

    def __init__(
        self,
        template_dir: str | Path | None = None,
        config: ReminderConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        if template_dir is None:
            self.template_dir = self.config.template_paths.resolved_dir
        else:
            self.template_dir = Path(template_dir)

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["nl2br"] = nl2br
        self.env.filters["format_date"] = format_date

    def render(
        self,
        resolved: ResolvedTemplate,
        invoice: Invoice,
        payments: list[Payment],
        tracking_id: str,
        sender_name: Optional[str] = None,
    ) -> RenderedReminder:
        """Interpolate and render one reminder for ``invoice``."""
        variables = build_variables(
            invoice,
            payments,
            sender_name=sender_name or self.config.sender.name,
            final_offset_days=self.config.schedule.final_notice_offset_days,
        )
        subject = interpolate(resolved.subject, variables)
        text = interpolate(resolved.body, variables)
        html = self.render_html(text, tracking_id)
        return RenderedReminder(
            to=invoice.client_email,
            subject=subject,
            text=text,
            html=html,
            tracking_id=tracking_id,
        )

    def render_html(self, text: str, tracking_id: str) -> str:
        """HTML part: escaped body plus the invisible tracking image."""
        template = self.env.get_template(self.config.template_paths.html_template)
        return template.render(
            body=text,
            pixel_url=pixel_url(tracking_id, self.config.tracking),
        )
