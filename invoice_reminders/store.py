"""
Invoice Reminders -- SQLite Data Store

Persistent store for invoices, payments, templates and the reminder send
history.  Every public method opens its own connection, so the store can
be shared between the dispatch engine, the HTTP handlers and the CLI.

Guarantees enforced by the schema rather than by application code:
    - At most one automated reminder per invoice x category x day
      (partial UNIQUE index, claimed with INSERT ... ON CONFLICT DO NOTHING)
    - Tracking tokens are unique
    - At most one of a user's templates holds a workflow category
    - At most one active version per template

Database schema:
    users               - Account owners (display name used as sender name)
    invoices            - Invoices owned by a user
    invoice_payments    - Payments in minor currency units
    templates           - User and system templates
    template_versions   - Versioned subject/body, one active per template
    reminders           - One row per send attempt, with open tracking
    dispatch_runs       - One row per scheduler run
    run_locks           - Run-level mutual exclusion

Usage:
    from invoice_reminders.store import ReminderStore

    store = ReminderStore("data/reminders.db")
    invoice = store.add_invoice(user_id, "Acme", "ap@acme.test", Decimal("1200"), date(2024, 3, 15))
    store.add_payment(invoice.id, 40000, date(2024, 3, 1))
    history = store.list_reminders(invoice.id)
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from .errors import NotFoundError, TemplateBindingError
from .models import (
    Invoice,
    Payment,
    Reminder,
    ReminderCategory,
    ReminderStatus,
    Template,
    TemplateSource,
    TemplateVersion,
    Tone,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id              TEXT PRIMARY KEY,
    email           TEXT NOT NULL DEFAULT '',
    display_name    TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS invoices (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    client_name     TEXT NOT NULL,
    client_email    TEXT NOT NULL,
    amount          TEXT NOT NULL,                      -- Decimal as text
    due_date        TEXT NOT NULL,                      -- ISO date
    is_paid         INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS invoice_payments (
    id              TEXT PRIMARY KEY,
    invoice_id      TEXT NOT NULL,
    amount_cents    INTEGER NOT NULL CHECK (amount_cents > 0),
    paid_at         TEXT NOT NULL,
    note            TEXT,
    created_at      TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS templates (
    id              TEXT PRIMARY KEY,
    user_id         TEXT,
    is_system       INTEGER NOT NULL DEFAULT 0,
    slug            TEXT,
    name            TEXT NOT NULL,
    tone            TEXT NOT NULL,
    reminder_type   TEXT,                               -- workflow binding
    description     TEXT,
    created_at      TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS template_versions (
    id              TEXT PRIMARY KEY,
    template_id     TEXT NOT NULL,
    version_number  INTEGER NOT NULL DEFAULT 1,
    subject         TEXT NOT NULL,
    body            TEXT NOT NULL,
    is_active       INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (template_id) REFERENCES templates(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS reminders (
    id                  TEXT PRIMARY KEY,
    invoice_id          TEXT NOT NULL,
    reminder_type       TEXT NOT NULL,
    sent_at             TEXT NOT NULL,
    sent_day            TEXT NOT NULL,                  -- local calendar day
    status              TEXT NOT NULL DEFAULT 'pending',
    tracking_id         TEXT NOT NULL UNIQUE,
    error_message       TEXT,
    provider_message_id TEXT,
    opened_at           TEXT,
    open_count          INTEGER NOT NULL DEFAULT 0,
    is_manual           INTEGER NOT NULL DEFAULT 0,
    template_id         TEXT,
    template_type       TEXT,
    template_source     TEXT,
    FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS dispatch_runs (
    run_id          TEXT PRIMARY KEY,
    started_at      TEXT NOT NULL,
    completed_at    TEXT,
    processed       INTEGER NOT NULL DEFAULT 0,
    sent            INTEGER NOT NULL DEFAULT 0,
    failed          INTEGER NOT NULL DEFAULT 0,
    skipped         INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS run_locks (
    name            TEXT PRIMARY KEY,
    owner           TEXT NOT NULL,
    acquired_at     TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_reminders_daily
    ON reminders(invoice_id, reminder_type, sent_day) WHERE is_manual = 0;
CREATE UNIQUE INDEX IF NOT EXISTS idx_templates_workflow
    ON templates(user_id, reminder_type)
    WHERE is_system = 0 AND reminder_type IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_templates_system_slug
    ON templates(slug) WHERE is_system = 1;
CREATE UNIQUE INDEX IF NOT EXISTS idx_versions_active
    ON template_versions(template_id) WHERE is_active = 1;

CREATE INDEX IF NOT EXISTS idx_invoices_unpaid ON invoices(is_paid);
CREATE INDEX IF NOT EXISTS idx_invoices_user ON invoices(user_id);
CREATE INDEX IF NOT EXISTS idx_payments_invoice ON invoice_payments(invoice_id);
CREATE INDEX IF NOT EXISTS idx_reminders_invoice ON reminders(invoice_id);
CREATE INDEX IF NOT EXISTS idx_templates_user ON templates(user_id);
"""


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        user_id=row["user_id"],
        client_name=row["client_name"],
        client_email=row["client_email"],
        amount=Decimal(row["amount"]),
        due_date=date.fromisoformat(row["due_date"]),
        is_paid=bool(row["is_paid"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_payment(row: sqlite3.Row) -> Payment:
    return Payment(
        id=row["id"],
        invoice_id=row["invoice_id"],
        amount_cents=int(row["amount_cents"]),
        paid_at=date.fromisoformat(row["paid_at"]),
        note=row["note"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_template(row: sqlite3.Row) -> Template:
    reminder_type = row["reminder_type"]
    return Template(
        id=row["id"],
        name=row["name"],
        tone=Tone(row["tone"]),
        user_id=row["user_id"],
        is_system=bool(row["is_system"]),
        slug=row["slug"],
        reminder_type=ReminderCategory(reminder_type) if reminder_type else None,
        description=row["description"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_version(row: sqlite3.Row) -> TemplateVersion:
    return TemplateVersion(
        id=row["id"],
        template_id=row["template_id"],
        subject=row["subject"],
        body=row["body"],
        is_active=bool(row["is_active"]),
        version_number=int(row["version_number"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_reminder(row: sqlite3.Row) -> Reminder:
    source = row["template_source"]
    return Reminder(
        id=row["id"],
        invoice_id=row["invoice_id"],
        reminder_type=ReminderCategory(row["reminder_type"]),
        sent_at=_parse_dt(row["sent_at"]),
        sent_day=date.fromisoformat(row["sent_day"]),
        status=ReminderStatus(row["status"]),
        tracking_id=row["tracking_id"],
        error_message=row["error_message"],
        provider_message_id=row["provider_message_id"],
        opened_at=_parse_dt(row["opened_at"]),
        open_count=int(row["open_count"] or 0),
        is_manual=bool(row["is_manual"]),
        template_id=row["template_id"],
        template_type=row["template_type"],
        template_source=TemplateSource(source) if source else None,
    )


# ---------------------------------------------------------------------------
# ReminderStore -- the main public API
# ---------------------------------------------------------------------------

class ReminderStore:
    """Relational store backed by SQLite.

    Thread safety: each method opens/closes its own connection.  WAL
    journal mode lets pixel requests read while a dispatch run writes.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        try:
            return conn.execute(sql, params).fetchone()
        finally:
            conn.close()

    def _fetch_all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = self._get_conn()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        """Run one write statement in its own transaction, return rowcount."""
        conn = self._get_conn()
        try:
            result = conn.execute(sql, params)
            conn.commit()
            return result.rowcount
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, email: str, display_name: str = "", user_id: str | None = None) -> str:
        """Create a user row and return its id."""
        uid = user_id or _new_id()
        self._execute(
            "INSERT INTO users (id, email, display_name, created_at) VALUES (?, ?, ?, ?)",
            (uid, email, display_name, _now_iso()),
        )
        return uid

    def get_user_display_name(self, user_id: str) -> str | None:
        row = self._fetch_one("SELECT display_name FROM users WHERE id = ?", (user_id,))
        if row is None:
            return None
        return row["display_name"] or None

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def add_invoice(
        self,
        user_id: str,
        client_name: str,
        client_email: str,
        amount: Decimal | str | int,
        due_date: date,
        *,
        is_paid: bool = False,
        invoice_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Invoice:
        """Insert an invoice and return it."""
        invoice = Invoice(
            id=invoice_id or _new_id(),
            user_id=user_id,
            client_name=client_name,
            client_email=client_email,
            amount=Decimal(str(amount)),
            due_date=due_date,
            is_paid=is_paid,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self._execute(
            """INSERT INTO invoices
               (id, user_id, client_name, client_email, amount, due_date, is_paid, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                invoice.id,
                invoice.user_id,
                invoice.client_name,
                invoice.client_email,
                str(invoice.amount),
                invoice.due_date.isoformat(),
                1 if invoice.is_paid else 0,
                _to_iso(invoice.created_at),
            ),
        )
        return invoice

    def get_invoice(self, invoice_id: str, user_id: str | None = None) -> Invoice | None:
        """Fetch one invoice, optionally scoped to its owner."""
        if user_id is None:
            row = self._fetch_one("SELECT * FROM invoices WHERE id = ?", (invoice_id,))
        else:
            row = self._fetch_one(
                "SELECT * FROM invoices WHERE id = ? AND user_id = ?",
                (invoice_id, user_id),
            )
        return _row_to_invoice(row) if row else None

    def list_unpaid_invoices(self) -> list[Invoice]:
        """All invoices whose explicit paid flag is not set, oldest due first."""
        rows = self._fetch_all(
            "SELECT * FROM invoices WHERE is_paid = 0 ORDER BY due_date ASC, created_at ASC"
        )
        return [_row_to_invoice(r) for r in rows]

    def mark_invoice_paid(self, invoice_id: str, paid: bool = True) -> bool:
        return self._execute(
            "UPDATE invoices SET is_paid = ? WHERE id = ?",
            (1 if paid else 0, invoice_id),
        ) > 0

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def add_payment(
        self,
        invoice_id: str,
        amount_cents: int,
        paid_at: date,
        note: str | None = None,
    ) -> Payment:
        """Record a payment (minor units) against an invoice."""
        if amount_cents <= 0:
            raise ValueError("Payment amount must be greater than 0")
        if self.get_invoice(invoice_id) is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        payment = Payment(
            id=_new_id(),
            invoice_id=invoice_id,
            amount_cents=int(amount_cents),
            paid_at=paid_at,
            note=note,
            created_at=datetime.now(timezone.utc),
        )
        self._execute(
            """INSERT INTO invoice_payments (id, invoice_id, amount_cents, paid_at, note, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                payment.id,
                payment.invoice_id,
                payment.amount_cents,
                payment.paid_at.isoformat(),
                payment.note,
                _to_iso(payment.created_at),
            ),
        )
        return payment

    def list_payments(self, invoice_id: str) -> list[Payment]:
        rows = self._fetch_all(
            "SELECT * FROM invoice_payments WHERE invoice_id = ? ORDER BY paid_at ASC, created_at ASC",
            (invoice_id,),
        )
        return [_row_to_payment(r) for r in rows]

    def delete_payment(self, payment_id: str, invoice_id: str) -> bool:
        return self._execute(
            "DELETE FROM invoice_payments WHERE id = ? AND invoice_id = ?",
            (payment_id, invoice_id),
        ) > 0

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_template(
        self,
        name: str,
        tone: Tone | str,
        subject: str,
        body: str,
        *,
        user_id: str | None = None,
        is_system: bool = False,
        slug: str | None = None,
        description: str | None = None,
        created_at: datetime | None = None,
    ) -> Template:
        """Create a template together with its first, active version."""
        template = Template(
            id=_new_id(),
            name=name,
            tone=Tone(tone),
            user_id=user_id,
            is_system=is_system,
            slug=slug,
            description=description,
            created_at=created_at or datetime.now(timezone.utc),
        )
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO templates
                   (id, user_id, is_system, slug, name, tone, reminder_type, description, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)""",
                (
                    template.id,
                    template.user_id,
                    1 if template.is_system else 0,
                    template.slug,
                    template.name,
                    template.tone.value,
                    template.description,
                    _to_iso(template.created_at),
                ),
            )
            conn.execute(
                """INSERT INTO template_versions
                   (id, template_id, version_number, subject, body, is_active, created_at)
                   VALUES (?, ?, 1, ?, ?, 1, ?)""",
                (_new_id(), template.id, subject, body, _now_iso()),
            )
            conn.commit()
        finally:
            conn.close()
        return template

    def get_template(self, template_id: str) -> Template | None:
        row = self._fetch_one("SELECT * FROM templates WHERE id = ?", (template_id,))
        return _row_to_template(row) if row else None

    def add_version(
        self,
        template_id: str,
        subject: str,
        body: str,
        *,
        activate: bool = False,
    ) -> TemplateVersion:
        """Append a new version to a template, optionally making it active."""
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT COALESCE(MAX(version_number), 0) AS n FROM template_versions WHERE template_id = ?",
                (template_id,),
            ).fetchone()
            version = TemplateVersion(
                id=_new_id(),
                template_id=template_id,
                subject=subject,
                body=body,
                is_active=False,
                version_number=int(row["n"]) + 1,
                created_at=datetime.now(timezone.utc),
            )
            conn.execute(
                """INSERT INTO template_versions
                   (id, template_id, version_number, subject, body, is_active, created_at)
                   VALUES (?, ?, ?, ?, ?, 0, ?)""",
                (
                    version.id,
                    version.template_id,
                    version.version_number,
                    version.subject,
                    version.body,
                    _to_iso(version.created_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        if activate:
            self.activate_version(template_id, version.id)
            version.is_active = True
        return version

    def activate_version(self, template_id: str, version_id: str) -> TemplateVersion:
        """Make one version active and every other version inactive.

        Both updates run in one transaction, so readers only ever see the
        old or the new active version.

        Raises:
            NotFoundError: If the version does not belong to the template.
        """
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM template_versions WHERE id = ? AND template_id = ?",
                (version_id, template_id),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Version {version_id} not found for template {template_id}")
            conn.execute(
                "UPDATE template_versions SET is_active = 0 WHERE template_id = ?",
                (template_id,),
            )
            conn.execute(
                "UPDATE template_versions SET is_active = 1 WHERE id = ?",
                (version_id,),
            )
            conn.commit()
            active = conn.execute(
                "SELECT * FROM template_versions WHERE id = ?", (version_id,)
            ).fetchone()
            return _row_to_version(active)
        finally:
            conn.close()

    def list_versions(self, template_id: str) -> list[TemplateVersion]:
        rows = self._fetch_all(
            "SELECT * FROM template_versions WHERE template_id = ? ORDER BY version_number DESC",
            (template_id,),
        )
        return [_row_to_version(r) for r in rows]

    def get_active_version(self, template_id: str) -> TemplateVersion | None:
        row = self._fetch_one(
            "SELECT * FROM template_versions WHERE template_id = ? AND is_active = 1",
            (template_id,),
        )
        return _row_to_version(row) if row else None

    def bind_template_category(
        self,
        template_id: str,
        user_id: str,
        category: ReminderCategory | str | None,
    ) -> Template:
        """Assign (or clear) a template's workflow category.

        Any other template of the same user holding that category is
        cleared first, in the same transaction.

        Raises:
            NotFoundError: If the template does not exist.
            TemplateBindingError: If it is a system template or owned by
                someone else.
        """
        category = ReminderCategory(category) if category else None
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT id, user_id, is_system FROM templates WHERE id = ?",
                (template_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Template {template_id} not found")
            if row["is_system"] or row["user_id"] != user_id:
                raise TemplateBindingError("Unauthorized to modify this template")

            if category is not None:
                conn.execute(
                    """UPDATE templates SET reminder_type = NULL
                       WHERE user_id = ? AND reminder_type = ? AND id != ?""",
                    (user_id, category.value, template_id),
                )
            conn.execute(
                "UPDATE templates SET reminder_type = ? WHERE id = ?",
                (category.value if category else None, template_id),
            )
            conn.commit()
            updated = conn.execute(
                "SELECT * FROM templates WHERE id = ?", (template_id,)
            ).fetchone()
            return _row_to_template(updated)
        finally:
            conn.close()

    # --- resolver lookups ---

    def find_workflow_template(self, user_id: str, category: ReminderCategory) -> Template | None:
        """The user's non-system template bound to ``category``."""
        row = self._fetch_one(
            """SELECT * FROM templates
               WHERE user_id = ? AND is_system = 0 AND reminder_type = ?
               ORDER BY created_at ASC, id ASC LIMIT 1""",
            (user_id, category.value),
        )
        return _row_to_template(row) if row else None

    def find_tone_template(self, user_id: str, tone: Tone) -> Template | None:
        """The user's oldest unbound non-system template with ``tone``."""
        row = self._fetch_one(
            """SELECT * FROM templates
               WHERE user_id = ? AND is_system = 0 AND tone = ? AND reminder_type IS NULL
               ORDER BY created_at ASC, id ASC LIMIT 1""",
            (user_id, tone.value),
        )
        return _row_to_template(row) if row else None

    def find_system_template(self, slug: str) -> Template | None:
        row = self._fetch_one(
            "SELECT * FROM templates WHERE is_system = 1 AND slug = ? LIMIT 1",
            (slug,),
        )
        return _row_to_template(row) if row else None

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def claim_reminder(self, reminder: Reminder) -> bool:
        """Insert a send record unless one already exists for the same
        invoice, category and day.

        Single atomic statement backed by ``idx_reminders_daily``; manual
        reminders are outside that index and always insert.

        Returns:
            True if the row was inserted (this caller owns the send).
        """
        result = self._execute(
            """INSERT INTO reminders
               (id, invoice_id, reminder_type, sent_at, sent_day, status, tracking_id,
                error_message, provider_message_id, opened_at, open_count, is_manual,
                template_id, template_type, template_source)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 0, ?, ?, ?, ?)
               ON CONFLICT DO NOTHING""",
            (
                reminder.id,
                reminder.invoice_id,
                reminder.reminder_type.value,
                _to_iso(reminder.sent_at),
                reminder.sent_day.isoformat(),
                reminder.status.value,
                reminder.tracking_id,
                reminder.error_message,
                reminder.provider_message_id,
                1 if reminder.is_manual else 0,
                reminder.template_id,
                reminder.template_type,
                reminder.template_source.value if reminder.template_source else None,
            ),
        )
        return result == 1

    def complete_reminder(
        self,
        reminder_id: str,
        status: ReminderStatus,
        *,
        error_message: str | None = None,
        provider_message_id: str | None = None,
        template_id: str | None = None,
        template_type: str | None = None,
        template_source: TemplateSource | None = None,
    ) -> bool:
        """Record the outcome of a claimed send.

        Only transitions from 'pending'.  Returns True if the row changed.
        """
        return self._execute(
            """UPDATE reminders
               SET status = ?, error_message = ?, provider_message_id = ?,
                   template_id = COALESCE(?, template_id),
                   template_type = COALESCE(?, template_type),
                   template_source = COALESCE(?, template_source)
               WHERE id = ? AND status = ?""",
            (
                status.value,
                error_message,
                provider_message_id,
                template_id,
                template_type,
                template_source.value if template_source else None,
                reminder_id,
                ReminderStatus.PENDING.value,
            ),
        ) > 0

    def record_open(self, tracking_id: str, opened_at: datetime) -> bool:
        """Count one open for a tracking token.

        The increment and the first-open timestamp are a single UPDATE;
        ``opened_at`` is only written when it is still NULL.

        Returns:
            True if a reminder matched the token.
        """
        return self._execute(
            """UPDATE reminders
               SET open_count = open_count + 1,
                   opened_at = COALESCE(opened_at, ?)
               WHERE tracking_id = ?""",
            (_to_iso(opened_at), tracking_id),
        ) > 0

    def get_reminder(self, reminder_id: str) -> Reminder | None:
        row = self._fetch_one("SELECT * FROM reminders WHERE id = ?", (reminder_id,))
        return _row_to_reminder(row) if row else None

    def get_reminder_by_tracking_id(self, tracking_id: str) -> Reminder | None:
        row = self._fetch_one("SELECT * FROM reminders WHERE tracking_id = ?", (tracking_id,))
        return _row_to_reminder(row) if row else None

    def list_reminders(self, invoice_id: str) -> list[Reminder]:
        """Send history for one invoice, newest first."""
        rows = self._fetch_all(
            "SELECT * FROM reminders WHERE invoice_id = ? ORDER BY sent_at DESC",
            (invoice_id,),
        )
        return [_row_to_reminder(r) for r in rows]

    def sent_categories_on(self, invoice_id: str, day: date) -> set[ReminderCategory]:
        """Categories with an automated attempt for this invoice on ``day``."""
        rows = self._fetch_all(
            """SELECT DISTINCT reminder_type FROM reminders
               WHERE invoice_id = ? AND sent_day = ? AND is_manual = 0""",
            (invoice_id, day.isoformat()),
        )
        return {ReminderCategory(r["reminder_type"]) for r in rows}

    # ------------------------------------------------------------------
    # Run Locks
    # ------------------------------------------------------------------

    def acquire_lock(
        self,
        name: str,
        owner: str,
        now: datetime,
        stale_after: timedelta,
    ) -> bool:
        """Take a named run lock, stealing it if its holder went stale."""
        cutoff = _to_iso(now - stale_after)
        conn = self._get_conn()
        try:
            stale = conn.execute(
                "DELETE FROM run_locks WHERE name = ? AND acquired_at < ?",
                (name, cutoff),
            )
            if stale.rowcount:
                logger.warning("Removed stale run lock %r", name)
            result = conn.execute(
                """INSERT INTO run_locks (name, owner, acquired_at) VALUES (?, ?, ?)
                   ON CONFLICT(name) DO NOTHING""",
                (name, owner, _to_iso(now)),
            )
            conn.commit()
            return result.rowcount == 1
        finally:
            conn.close()

    def release_lock(self, name: str, owner: str) -> bool:
        return self._execute(
            "DELETE FROM run_locks WHERE name = ? AND owner = ?",
            (name, owner),
        ) > 0

    # ------------------------------------------------------------------
    # Dispatch Run Tracking
    # ------------------------------------------------------------------

    def start_run(self, run_id: str, started_at: datetime) -> None:
        self._execute(
            "INSERT INTO dispatch_runs (run_id, started_at) VALUES (?, ?)",
            (run_id, _to_iso(started_at)),
        )

    def complete_run(
        self,
        run_id: str,
        completed_at: datetime,
        processed: int,
        sent: int,
        failed: int,
        skipped: int,
    ) -> bool:
        return self._execute(
            """UPDATE dispatch_runs
               SET completed_at = ?, processed = ?, sent = ?, failed = ?, skipped = ?
               WHERE run_id = ?""",
            (_to_iso(completed_at), processed, sent, failed, skipped, run_id),
        ) > 0

    def get_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Recent dispatch runs, newest first."""
        rows = self._fetch_all(
            "SELECT * FROM dispatch_runs ORDER BY started_at DESC LIMIT ?",
            (limit,),
        )
        return [dict(r) for r in rows]
