"""Invoice Reminders -- Command Line Entry Point.

Subcommands::

    init-db    create the SQLite schema
    run        one dispatch run over all unpaid invoices (prints JSON)
    send       manual reminder for one invoice
    history    reminder history of one invoice
    serve      HTTP API (cron trigger + tracking pixel) under uvicorn

Usage::

    python -m invoice_reminders.main init-db
    python -m invoice_reminders.main run
    python -m invoice_reminders.main send --invoice <id> --type on_due
    python -m invoice_reminders.main history --invoice <id>
    python -m invoice_reminders.main serve --port 8000
    python -m invoice_reminders.main --config custom.yaml --verbose run
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from .config import ReminderConfig, get_config
from .dispatch import ReminderDispatcher
from .errors import (
    DispatchInProgressError,
    InvoicePaidError,
    MailConfigurationError,
    NotFoundError,
)
from .mailer import build_mail_sender
from .models import Reminder, ReminderCategory
from .store import ReminderStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _format_reminder(reminder: Reminder) -> str:
    opened = reminder.opened_at.strftime("%Y-%m-%d %H:%M") if reminder.opened_at else "-"
    sent_at = reminder.sent_at.strftime("%Y-%m-%d %H:%M") if reminder.sent_at else "-"
    line = (
        f"  {sent_at:<16s}  {reminder.reminder_type.value:<15s} "
        f"{reminder.status.value:<7s} {reminder.provenance.value:<9s} "
        f"opens={reminder.open_count:<3d} first={opened}"
    )
    if reminder.error_message:
        line += f"\n      error: {reminder.error_message}"
    return line


def _print_history(store: ReminderStore, invoice_id: str) -> int:
    invoice = store.get_invoice(invoice_id)
    if invoice is None:
        print(f"\nERROR: Invoice {invoice_id} not found")
        return 1

    reminders = store.list_reminders(invoice.id)
    print()
    print("=" * 65)
    print(f"  Invoice {invoice.reference} -- {invoice.client_name} <{invoice.client_email}>")
    print(f"  Amount {invoice.amount:.2f}, due {invoice.due_date.isoformat()}")
    print("=" * 65)
    if not reminders:
        print("  No reminders sent yet.")
    for reminder in reminders:
        print(_format_reminder(reminder))
    print("=" * 65)
    return 0


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def _cmd_init_db(config: ReminderConfig, args: argparse.Namespace) -> int:
    path = config.database.resolved_path
    ReminderStore(path)
    print(f"Database ready at {path}")
    return 0


def _cmd_run(config: ReminderConfig, args: argparse.Namespace) -> int:
    store = ReminderStore(config.database.resolved_path)
    dispatcher = ReminderDispatcher(store, build_mail_sender(config), config)
    summary = dispatcher.run()
    print(json.dumps(summary.to_dict(), indent=2))
    return 0


def _cmd_send(config: ReminderConfig, args: argparse.Namespace) -> int:
    store = ReminderStore(config.database.resolved_path)
    dispatcher = ReminderDispatcher(store, build_mail_sender(config), config)
    reminder = dispatcher.send_manual(args.invoice, args.type, user_id=args.user)
    print(_format_reminder(reminder))
    return 0 if reminder.error_message is None else 1


def _cmd_history(config: ReminderConfig, args: argparse.Namespace) -> int:
    store = ReminderStore(config.database.resolved_path)
    return _print_history(store, args.invoice)


def _cmd_serve(config: ReminderConfig, args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(config=config), host=args.host, port=args.port)
    return 0


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Invoice Reminders - scheduled payment reminder emails",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m invoice_reminders.main run\n"
            "  python -m invoice_reminders.main send --invoice <id> --type after_due\n"
            "  python -m invoice_reminders.main --config custom.yaml serve\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: ./config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema").set_defaults(func=_cmd_init_db)
    sub.add_parser("run", help="Run one dispatch pass").set_defaults(func=_cmd_run)

    send = sub.add_parser("send", help="Send a reminder now for one invoice")
    send.add_argument("--invoice", required=True, help="Invoice id")
    send.add_argument(
        "--type",
        required=True,
        choices=[c.value for c in ReminderCategory],
        help="Reminder category",
    )
    send.add_argument("--user", default=None, help="Restrict to invoices of this user id")
    send.set_defaults(func=_cmd_send)

    history = sub.add_parser("history", help="Show reminder history for one invoice")
    history.add_argument("--invoice", required=True, help="Invoice id")
    history.set_defaults(func=_cmd_history)

    serve = sub.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = build_parser().parse_args(argv)
    config = get_config(args.config)

    log_level = logging.DEBUG if args.verbose else getattr(
        logging, str(config.logging.level).upper(), logging.INFO
    )
    logging.basicConfig(
        level=log_level,
        format=config.logging.format,
        datefmt=config.logging.datefmt,
    )

    try:
        return args.func(config, args)
    except MailConfigurationError as exc:
        logger.error("Mail configuration error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except DispatchInProgressError as exc:
        logger.warning("%s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except (NotFoundError, InvoicePaidError) as exc:
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
