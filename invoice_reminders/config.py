"""
Invoice Reminders -- Configuration Module

Centralizes all configuration for the reminder dispatch engine.
Loads defaults from dataclasses, overlays any overrides from config.yaml,
and pulls secrets (API keys, the cron secret) from the environment.

Usage:
    from invoice_reminders.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.sender.email)                    # reminders@example.com
    print(cfg.schedule.days_before_due)        # 3
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

import yaml

# ---------------------------------------------------------------------------
# Path constants -- bundled files live in the package, runtime files under
# the working directory
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # invoice_reminders/
PACKAGE_TEMPLATE_DIR = _THIS_DIR / "templates"
DEFAULT_CONFIG_PATH = Path("config.yaml")


# ===================================================================
# 1. Sender Info
# ===================================================================

@dataclass
class SenderInfo:
    """Default FROM identity for outgoing reminders."""
    name: str = "Accounts Receivable"
    email: str = ""                 # set via env var EMAIL_FROM

    def __post_init__(self):
        self.email = self.email or os.environ.get("EMAIL_FROM", "")

    @property
    def from_header(self) -> str:
        """'Name <address>' when a name is set, else the bare address."""
        if self.name and self.email:
            return f"{self.name} <{self.email}>"
        return self.email


# ===================================================================
# 2. Mail Provider
# ===================================================================

@dataclass
class MailSettings:
    """Which provider delivers reminders and how to reach it.

    ``provider`` is either ``"resend"`` (HTTP API) or ``"smtp"``.
    Credentials are read from the environment when not set in YAML.
    """
    provider: str = "resend"
    resend_api_key: str = ""        # set via env var RESEND_API_KEY
    smtp_host: str = ""             # set via env var SMTP_HOST
    smtp_port: int = 587
    smtp_use_tls: bool = True
    smtp_username: str = ""         # set via env var SMTP_USERNAME
    smtp_password: str = ""         # set via env var SMTP_PASSWORD
    send_timeout_seconds: float = 15.0

    def __post_init__(self):
        self.resend_api_key = self.resend_api_key or os.environ.get("RESEND_API_KEY", "")
        self.smtp_host = self.smtp_host or os.environ.get("SMTP_HOST", "")
        self.smtp_username = self.smtp_username or os.environ.get("SMTP_USERNAME", "")
        self.smtp_password = self.smtp_password or os.environ.get("SMTP_PASSWORD", "")


# ===================================================================
# 3. Open Tracking
# ===================================================================

@dataclass
class TrackingConfig:
    """Where the open-tracking pixel is served from."""
    app_url: str = ""               # set via env var APP_URL
    pixel_path: str = "/api/track/open"
    token_param: str = "rid"

    def __post_init__(self):
        self.app_url = self.app_url or os.environ.get("APP_URL", "http://localhost:8000")


# ===================================================================
# 4. Schedule
# ===================================================================

@dataclass
class ScheduleConfig:
    """Reminder timing rules.

    The calendar day used for classification and for the once-per-day
    guard is taken in ``timezone``.  ``run_time`` documents when the
    external scheduler is expected to call the trigger endpoint.
    """
    timezone: str = "UTC"
    run_time: str = "09:00"          # 24h format, local time
    days_before_due: int = 3
    overdue_interval_days: int = 7
    final_notice_offset_days: int = 14

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# ===================================================================
# 5. Dispatch
# ===================================================================

@dataclass
class DispatchConfig:
    """Trigger authentication and run-level locking."""
    cron_secret: str = ""           # set via env var CRON_SECRET
    lock_name: str = "reminder-dispatch"
    lock_stale_after_minutes: int = 60

    def __post_init__(self):
        self.cron_secret = self.cron_secret or os.environ.get("CRON_SECRET", "")


# ===================================================================
# 6. Database
# ===================================================================

@dataclass
class DatabaseConfig:
    """SQLite file holding invoices, templates and reminder history."""
    path: str = "data/reminders.db"

    @property
    def resolved_path(self) -> Path:
        p = Path(os.environ.get("REMINDERS_DB_PATH", "") or self.path)
        if not p.is_absolute():
            p = Path.cwd() / p
        return p


# ===================================================================
# 7. Templates and Logging
# ===================================================================

@dataclass
class TemplatePaths:
    """Where the HTML Jinja2 envelope templates live.

    An empty ``template_dir`` means the templates bundled with the package.
    """
    template_dir: str = ""
    html_template: str = "reminder_email.html"

    @property
    def resolved_dir(self) -> Path:
        if not self.template_dir:
            return PACKAGE_TEMPLATE_DIR
        p = Path(self.template_dir)
        if not p.is_absolute():
            p = Path.cwd() / p
        return p


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    datefmt: str = "%H:%M:%S"


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class ReminderConfig:
    """Top-level configuration container for the reminder engine."""
    sender: SenderInfo = field(default_factory=SenderInfo)
    mail: MailSettings = field(default_factory=MailSettings)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    template_paths: TemplatePaths = field(default_factory=TemplatePaths)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: ReminderConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a ReminderConfig instance."""
    _section_map = {
        "sender": cfg.sender,
        "mail": cfg.mail,
        "tracking": cfg.tracking,
        "schedule": cfg.schedule,
        "dispatch": cfg.dispatch,
        "database": cfg.database,
        "template_paths": cfg.template_paths,
        "logging": cfg.logging,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> ReminderConfig:
    """Build a ReminderConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml in the working directory.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated ReminderConfig instance.
    """
    cfg = ReminderConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    return cfg
