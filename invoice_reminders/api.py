"""HTTP surface for the reminder engine.

Routes:
    GET /api/cron/reminders   scheduler trigger, bearer-token protected
    GET /api/track/open       open-tracking pixel (always the same image)
    GET /api/health           liveness probe

The store, mail sender, dispatcher and tracker live on ``app.state``; the
process that calls ``create_app`` owns them.  Serve with::

    uvicorn invoice_reminders.api:create_app --factory
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response

from .config import ReminderConfig, get_config
from .dispatch import ReminderDispatcher
from .errors import DispatchInProgressError, MailConfigurationError
from .mailer import MailSender, build_mail_sender
from .store import ReminderStore
from .tracking import PIXEL_HEADERS, PIXEL_MEDIA_TYPE, TRANSPARENT_PIXEL, OpenTracker

logger = logging.getLogger(__name__)


def _authorized(authorization: Optional[str], secret: str) -> bool:
    """Constant-time check of ``Authorization: Bearer <secret>``."""
    if not secret or not authorization:
        return False
    expected = f"Bearer {secret}".encode("utf-8")
    return hmac.compare_digest(authorization.encode("utf-8"), expected)


def create_app(
    config: ReminderConfig | None = None,
    store: ReminderStore | None = None,
    mailer: MailSender | None = None,
) -> FastAPI:
    cfg = config or get_config()
    store = store or ReminderStore(cfg.database.resolved_path)
    mailer = mailer or build_mail_sender(cfg)

    app = FastAPI(title="Invoice Reminders API", version="1.0.0")
    app.state.config = cfg
    app.state.store = store
    app.state.mailer = mailer
    app.state.dispatcher = ReminderDispatcher(store, mailer, cfg)
    app.state.tracker = OpenTracker(store)

    @app.get("/api/cron/reminders")
    def cron_reminders(request: Request, authorization: Optional[str] = Header(None)):
        if not _authorized(authorization, cfg.dispatch.cron_secret):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        try:
            summary = request.app.state.dispatcher.run()
        except MailConfigurationError as exc:
            logger.error("Cron job aborted: %s", exc)
            return JSONResponse({"error": str(exc)}, status_code=500)
        except DispatchInProgressError as exc:
            logger.warning("Cron job skipped: %s", exc)
            return JSONResponse({"error": str(exc)}, status_code=409)
        except Exception as exc:
            logger.exception("Cron job error")
            return JSONResponse({"error": str(exc) or "Cron job failed"}, status_code=500)

        message = "Reminders processed" if summary.processed else "No unpaid invoices"
        return {"message": message, **summary.to_dict()}

    @app.get(cfg.tracking.pixel_path)
    def track_open(request: Request):
        token = request.query_params.get(cfg.tracking.token_param)
        request.app.state.tracker.record_open(token)
        return Response(
            content=TRANSPARENT_PIXEL,
            media_type=PIXEL_MEDIA_TYPE,
            headers=PIXEL_HEADERS,
        )

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    return app
