"""
Open Tracking

Every reminder carries an unguessable tracking token (a random UUID)
embedded in a 1x1 image URL.  When the mail client fetches the image the
token is correlated back to its reminder row and the open is counted.

The pixel response never depends on the token: missing, malformed,
unknown and valid tokens all receive the same bytes and headers.
"""

from __future__ import annotations

import base64
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import urlencode

from .config import TrackingConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pixel payload
# ---------------------------------------------------------------------------

TRANSPARENT_PIXEL: bytes = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
)

PIXEL_MEDIA_TYPE = "image/png"

PIXEL_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

_TOKEN_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------

def issue_token() -> str:
    """New tracking token: a random (version 4) UUID in canonical form."""
    return str(uuid.uuid4())


def is_valid_token(token: Optional[str]) -> bool:
    """True when ``token`` has the canonical 8-4-4-4-12 UUID shape."""
    return bool(token) and _TOKEN_RE.fullmatch(token) is not None


def pixel_url(token: str, tracking: TrackingConfig) -> str:
    """Absolute URL of the tracking image for ``token``."""
    base = tracking.app_url.rstrip("/")
    return f"{base}{tracking.pixel_path}?{urlencode({tracking.token_param: token})}"


# ---------------------------------------------------------------------------
# Correlator
# ---------------------------------------------------------------------------

class OpenTracker:
    """Maps pixel hits back to reminder rows.

    ``store`` must provide ``record_open(token, opened_at) -> bool``.
    """

    def __init__(self, store, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record_open(self, token: Optional[str]) -> bool:
        """Count one open.  Returns True if a reminder matched.

        Never raises: malformed tokens are ignored before any lookup and
        store errors are logged.
        """
        if not is_valid_token(token):
            return False
        try:
            matched = self.store.record_open(token.lower(), self._clock())
        except Exception:
            logger.exception("Error tracking email open")
            return False
        if not matched:
            logger.debug("Open for unknown tracking token")
        return matched
